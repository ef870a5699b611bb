import secrets


def new_review_token() -> str:
    # ~43 url-safe chars; rotating replaces the only valid token
    return secrets.token_urlsafe(32)
