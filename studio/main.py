import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .background import drain
from .database import init_db
from .errors import StudioError
from .routers.admin import router as admin_router
from .routers.review import router as review_router
from .settings.config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Picture Book Studio")

# Static file serving (generated images live under <STATIC_DIR>/uploads)
os.makedirs(settings.STATIC_DIR, exist_ok=True)
app.mount(settings.STATIC_URL_PREFIX, StaticFiles(directory=settings.STATIC_DIR), name="static")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Route Includes
# ----------------------
app.include_router(admin_router)
app.include_router(review_router)


@app.exception_handler(StudioError)
async def _studio_error_handler(request: Request, exc: StudioError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.on_event("startup")
async def on_startup():
    await init_db()
    logger.info("studio started (db create_all=%s)", settings.RUN_DB_CREATE_ALL)


@app.on_event("shutdown")
async def on_shutdown():
    # let queued notifications and sketches finish
    await drain(timeout=30)
