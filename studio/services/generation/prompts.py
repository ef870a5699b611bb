import re
from typing import Optional

SKETCH_INSTRUCTION = """Convert this illustration into a natural pencil sketch with authentic graphite texture. Black and white only.

STYLE: Rough pencil lines with visible grain, uneven pressure, wobble, and broken strokes. Include construction lines, smudges, and overlapping marks. No smooth digital lines, fills, or gradients.

FIDELITY RULES (STRICT):
1. DO NOT add anything not visible in the original (no extra limbs, objects, details, or background elements)
2. DO NOT remove or omit any visible element (every contour, shape, and detail must be present)
3. Maintain an exact 1:1 structural replica (only the style changes from color to pencil)

Reproduce structure exactly, invent nothing, omit nothing. Preserve all proportions, positions, poses, expressions and composition."""

CHARACTER_STYLE_SUFFIX = (
    "children's book character illustration, COLORED, hand-drawn style, warm and inviting, "
    "NOT photorealistic, professional children's book quality"
)

STYLE_RULES_ANCHORED = """STYLE & RENDERING RULES (STRICT CONSISTENCY):
1. GLOBAL STYLE ANCHOR: the main character reference defines the art style of the entire scene. Render every background element in the same medium and dimensionality.
2. NO UNINTENDED REALISM: do not add lighting, texture or shading the references do not have.
3. UNIFIED DIMENSIONALITY: characters and background must look like they belong to the same artistic universe."""

STYLE_RULES_UNANCHORED = """STYLE & TECHNIQUE INSTRUCTIONS:
1. CHARACTER IDENTITY (ABSOLUTE PRIORITY): follow the provided character references exactly.
2. The main character's style dictates the scene style."""

MAIN_CHARACTER_PLACEHOLDER = "THE MAIN CHARACTER"


def character_instruction(name: Optional[str], role: Optional[str], description: Optional[str], *, styled: bool) -> str:
    who = f"named {name}" if name else (role or "a character")
    bits = [who]
    if role and name:
        bits.append(f"the {role}")
    if description:
        bits.append(description.strip())
    bits.append(CHARACTER_STYLE_SUFFIX)
    if styled:
        bits.append("in the exact style of the reference character illustration provided")
    return "TARGET CHARACTER DESCRIPTION:\n" + ", ".join(bits)


def scrub_main_name(text: str, main_name: Optional[str]) -> str:
    """Replace the main character's name with a neutral placeholder so the text does not fight the reference."""
    if not text or not main_name:
        return text
    pattern = re.compile(rf"\b{re.escape(main_name)}(?:'s|s)?\b", re.IGNORECASE)
    return pattern.sub(MAIN_CHARACTER_PLACEHOLDER, text)


def page_instruction(
    scene_description: Optional[str],
    story_text: Optional[str],
    *,
    main_name: Optional[str],
    anchored: bool,
) -> str:
    scene = scrub_main_name(scene_description or "A scene from the story.", main_name)
    story = story_text or ""
    style = STYLE_RULES_ANCHORED if anchored else STYLE_RULES_UNANCHORED
    return f"""TASK: ILLUSTRATION GENERATION

SCENE CONTEXT:
{scene}

{style}

STORY CONTEXT (FOR SCENE MOOD ONLY):
"{story}"

IMPORTANT: Do NOT render any text in the illustration. The story text is printed separately."""


def edit_instruction(custom_prompt: str) -> str:
    return f"""MODE: IMAGE EDITING
INSTRUCTIONS:
{custom_prompt.strip()}

IMAGE CONTEXT:
1. The SCENE BASE is the target image to be edited. Keep its composition and style unless instructed otherwise.
2. Any additional visual references are guides for the requested changes."""
