"""
csrf.py — double-submit CSRF check.

Each session owns one CSRF token (rotated with the session on login). Unsafe
requests must echo it in the X-CSRF-Token header or the _csrf form field.
Share-link routes are exempt: they authenticate with the unguessable token in
the URL, not an ambient cookie.
"""

from fastapi import Request

from config import CONFIG
from errors import CSRFMismatch
from security import tokens_match

CSRF_HEADER = "X-CSRF-Token"
CSRF_FORM_FIELD = "_csrf"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def is_exempt(method: str, path: str, cfg=CONFIG) -> bool:
    if method.upper() in SAFE_METHODS:
        return True
    return path.startswith(cfg.route("/s/"))


def verify(method: str, path: str, provided: str, session_token: str, cfg=CONFIG) -> bool:
    if is_exempt(method, path, cfg):
        return True
    return tokens_match((provided or "").strip(), session_token or "")


async def extract_token(request: Request) -> str:
    provided = (request.headers.get(CSRF_HEADER) or "").strip()
    if provided:
        return provided
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        value = form.get(CSRF_FORM_FIELD)
        if isinstance(value, str):
            return value.strip()
    return ""


async def csrf_protect(request: Request) -> None:
    """FastAPI dependency; runs before the handler body, so nothing is mutated on failure."""
    if is_exempt(request.method, request.url.path):
        return
    ctx = request.state.ctx
    provided = await extract_token(request)
    if not verify(request.method, request.url.path, provided, ctx.session.csrf_token):
        raise CSRFMismatch()
