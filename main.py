import logging
import os
from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, Form, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import CONFIG, SESSION_COOKIE_NAME

logging.basicConfig(
    level=getattr(logging, CONFIG.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

import schemas, sessions, shares, throttle  # noqa: E402
import file_service  # noqa: E402
from app_settings import AppSettings, apply_startup_overrides, ensure_default_settings  # noqa: E402
from audit import record_audit  # noqa: E402
from auth import derive_principal  # noqa: E402
from csrf import csrf_protect  # noqa: E402
from database import SessionLocal, get_db, init_db  # noqa: E402
from dependencies import (  # noqa: E402
    RequestContext, audit_request, client_ip, get_context, get_effective_settings, get_permissions,
    require_browse, require_share, require_write, serve_download, upload_files, upload_settings,
)
from errors import AccountLocked, InvalidCredentials, InvalidHashError, TreeShareError, format_duration  # noqa: E402
from permissions import Permissions  # noqa: E402
from sandbox import normalize_rel_path, safe_join  # noqa: E402
from security import MIN_PASSWORD_LENGTH, dummy_verify, hash_password, password_needs_rehash, verify_password  # noqa: E402
from users import admin_count, get_user_by_username, normalize_username, user_to_dict  # noqa: E402

VERSION = "1.0.0"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": (
        "default-src 'self'; img-src 'self' data:; style-src 'self' 'unsafe-inline'; "
        "script-src 'self'; form-action 'self'"
    ),
}


# ─── Startup ──────────────────────────────────────────────────────────────────

def startup():
    init_db()
    db = SessionLocal()
    try:
        ensure_default_settings(db)
        apply_startup_overrides(db)
        sessions.purge_expired(db)
        if not CONFIG.auth_enabled:
            logger.warning("Authentication is DISABLED: every client acts as an admin")
        elif admin_count(db) == 0:
            logger.warning("No active admin account exists; create one with `python manage.py create-user --admin`")
    finally:
        db.close()
    if not os.path.isdir(CONFIG.root_dir):
        logger.warning(f"Shared root {CONFIG.root_dir} is not a directory")
    logger.info(f"Sharing {CONFIG.root_dir} at {CONFIG.route('/')}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await run_in_threadpool(startup)
    yield


# ─── App created FIRST before any include_router ─────────────────────────────
app = FastAPI(
    title="TreeShare API",
    description="Share one directory tree over HTTP with sessions, share links and audit",
    version=VERSION,
    lifespan=lifespan,
)


# ─── Middleware ───────────────────────────────────────────────────────────────

def _load_context(token: str, ip: str, user_agent: str) -> RequestContext:
    db = SessionLocal(expire_on_commit=False)
    try:
        record, _ = sessions.resolve(db, token, ip, user_agent)
        principal = derive_principal(db, record, CONFIG.auth_enabled)
        return RequestContext(session=record, principal=principal)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _sets_session_cookie(response) -> bool:
    prefix = f"{SESSION_COOKIE_NAME}="
    return any(v.startswith(prefix) for v in response.headers.getlist("set-cookie"))


@app.middleware("http")
async def session_middleware(request: Request, call_next):
    token = request.cookies.get(SESSION_COOKIE_NAME)
    ctx = await run_in_threadpool(
        _load_context, token, client_ip(request), request.headers.get("user-agent", "")
    )
    request.state.ctx = ctx
    response = await call_next(request)
    # login and logout manage the cookie themselves
    if not _sets_session_cookie(response):
        sessions.set_session_cookie(response, ctx.session)
    return response


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


# ─── Exception handlers ───────────────────────────────────────────────────────

@app.exception_handler(TreeShareError)
async def treeshare_error_handler(request: Request, exc: TreeShareError):
    content = {"error": exc.message}
    headers = None
    if isinstance(exc, AccountLocked):
        seconds = max(1, int(exc.retry_after.total_seconds()))
        content["retryAfter"] = seconds
        headers = {"Retry-After": str(seconds)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = errors[0].get("msg", "invalid payload") if errors else "invalid payload"
    return JSONResponse(status_code=400, content={"error": f"invalid payload: {detail}"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "internal server error"})


# ─── Helpers ──────────────────────────────────────────────────────────────────

router = APIRouter(prefix="" if CONFIG.base_path == "/" else CONFIG.base_path)


def _principal_dict(ctx: RequestContext):
    if ctx.principal.anonymous:
        return None
    return {"id": ctx.principal.user_id, "username": ctx.principal.username, "role": ctx.principal.role}


def absolute_url(request: Request, path: str) -> str:
    scheme = "https" if CONFIG.https else request.url.scheme
    host = request.headers.get("host") or f"{CONFIG.bind}:{CONFIG.port}"
    if CONFIG.public_host:
        host = CONFIG.public_host
        if ":" not in host:
            host = f"{host}:{CONFIG.port}"
    return f"{scheme}://{host}{path}"


# ─── Root & Health ────────────────────────────────────────────────────────────

@router.get("/health", tags=["System"])
def health():
    return {"status": "ok", "service": "TreeShare", "version": VERSION}


# ─── Auth ─────────────────────────────────────────────────────────────────────

@router.get("/login", tags=["Auth"])
def login_page(ctx: RequestContext = Depends(get_context)):
    return {
        "authenticated": not ctx.principal.anonymous,
        "csrfToken": ctx.session.csrf_token,
        "authEnabled": CONFIG.auth_enabled,
    }


@router.post("/login", tags=["Auth"], dependencies=[Depends(csrf_protect)])
def login(
    request: Request,
    username: str = Form(""),
    password: str = Form(""),
    remember: str = Form(""),
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    if not CONFIG.auth_enabled:
        return {"ok": True, "authEnabled": False}

    username = normalize_username(username)
    if not username or not password:
        raise TreeShareError("username and password are required")

    ip = client_ip(request)
    key = throttle.throttle_key(ip, username)
    locked, retry_after = throttle.check_allowed(db, key)
    if locked:
        raise AccountLocked(retry_after)

    user = get_user_by_username(db, username)
    ok = False
    if user is None or user.disabled:
        dummy_verify()
    else:
        try:
            ok = verify_password(user.password_hash, password)
        except InvalidHashError:
            logger.error(f"Stored password hash for '{username}' is unreadable")
            ok = False

    if not ok:
        lock = throttle.register_failure(db, key)
        record_audit(db, "login.failed", target=username, ip_address=ip)
        message = "invalid credentials"
        if lock:
            message = f"invalid credentials. account locked for {format_duration(lock)}"
        raise InvalidCredentials(message)

    throttle.reset(db, key)
    if password_needs_rehash(user.password_hash) and len(password) >= MIN_PASSWORD_LENGTH:
        user.password_hash = hash_password(password)
        db.commit()

    remember_me = remember.strip().lower() in ("1", "on", "true", "yes")
    record = sessions.issue_authenticated(
        db, ctx.session.token, user.id, remember_me, ip, request.headers.get("user-agent", "")
    )
    record_audit(db, "login.success", target=user.username, actor_user_id=user.id,
                 actor=user.username, ip_address=ip)

    response = JSONResponse({"ok": True, "user": user_to_dict(user), "csrfToken": record.csrf_token})
    sessions.set_session_cookie(response, record)
    return response


@router.post("/logout", tags=["Auth"], dependencies=[Depends(csrf_protect)])
def logout(request: Request, ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db)):
    sessions.destroy(db, ctx.session.token)
    if not ctx.principal.anonymous:
        audit_request(db, request, "logout", target=ctx.principal.username)
    response = JSONResponse({"ok": True})
    sessions.clear_session_cookie(response)
    return response


@router.get("/api/me", tags=["Auth"])
def me(ctx: RequestContext = Depends(get_context), perms: Permissions = Depends(get_permissions)):
    return {
        "user": _principal_dict(ctx),
        "permissions": perms.to_dict(),
        "csrfToken": ctx.session.csrf_token,
        "authEnabled": CONFIG.auth_enabled,
    }


# ─── Files ────────────────────────────────────────────────────────────────────

@router.get("/api/list", tags=["Files"], dependencies=[Depends(require_browse)])
def list_directory(path: str = Query("")):
    rel = normalize_rel_path(path)
    return {
        "path": rel,
        "entries": file_service.list_dir(CONFIG.root_dir, rel),
        "breadcrumbs": file_service.breadcrumbs(rel),
    }


@router.get("/api/download", tags=["Files"], dependencies=[Depends(require_browse)])
def download(path: str = Query("")):
    rel = normalize_rel_path(path)
    target, _ = file_service.resolve_existing(CONFIG.root_dir, rel)
    if os.path.isdir(target):
        return RedirectResponse(f"{CONFIG.route('/api/zip')}?path={quote(rel)}", status_code=303)
    return serve_download(rel)


@router.get("/api/preview", tags=["Files"], dependencies=[Depends(require_browse)])
def preview(path: str = Query("")):
    return file_service.preview(CONFIG.root_dir, normalize_rel_path(path))


@router.get("/api/zip", tags=["Files"], dependencies=[Depends(require_browse)])
def download_zip(path: str = Query("")):
    rel = normalize_rel_path(path)
    return StreamingResponse(
        file_service.iter_zip(CONFIG.root_dir, rel),
        media_type="application/zip",
        headers={"Content-Disposition": file_service.content_disposition(file_service.zip_name_for(rel))},
    )


# The body is parsed in the handler: FastAPI reads File()/Form() parameters
# before any dependency runs, and these checks must pass before spooling.
@router.post("/api/upload", tags=["Files"],
             dependencies=[Depends(require_write("upload")), Depends(upload_settings), Depends(csrf_protect)])
async def upload(
    request: Request,
    ctx: RequestContext = Depends(get_context),
    settings: AppSettings = Depends(upload_settings),
    db: Session = Depends(get_db),
):
    async with request.form() as form:
        files = upload_files(form)
        if not files:
            raise TreeShareError("no files uploaded")
        path = form.get("path")
        requested = path if isinstance(path, str) else request.query_params.get("path", "")
        base_rel = file_service.upload_base(requested, settings.upload_subdir)
        uploaded, issues = await run_in_threadpool(
            file_service.save_uploads, CONFIG.root_dir, base_rel, files, settings
        )

    action = "upload.guest" if ctx.principal.anonymous else "upload"
    await run_in_threadpool(audit_request, db, request, action, target=",".join(uploaded),
                            metadata={"files": uploaded, "errors": issues})
    return {"uploaded": uploaded, "errors": issues}


@router.post("/api/delete", tags=["Files"],
             dependencies=[Depends(csrf_protect), Depends(require_write("delete"))])
def delete(req: schemas.PathRequest, request: Request, db: Session = Depends(get_db)):
    rel = file_service.delete_path(CONFIG.root_dir, req.path)
    audit_request(db, request, "file.delete", target=rel)
    return {"ok": True}


@router.post("/api/rename", tags=["Files"],
             dependencies=[Depends(csrf_protect), Depends(require_write("rename"))])
def rename(req: schemas.RenameRequest, request: Request, db: Session = Depends(get_db)):
    old_rel = normalize_rel_path(req.path)
    new_rel = file_service.rename_path(CONFIG.root_dir, old_rel, req.new_name)
    audit_request(db, request, "file.rename", target=f"{old_rel} -> {new_rel}")
    return {"ok": True, "path": new_rel}


# ─── Share links ──────────────────────────────────────────────────────────────

@router.post("/api/share/create", tags=["Sharing"], dependencies=[Depends(csrf_protect)])
def create_share(
    req: schemas.ShareCreateRequest,
    request: Request,
    ctx: RequestContext = Depends(get_context),
    perms: Permissions = Depends(require_share),
    settings: AppSettings = Depends(get_effective_settings),
    db: Session = Depends(get_db),
):
    rel = normalize_rel_path(req.path)
    safe_join(CONFIG.root_dir, rel)
    expiry = (req.expiry or "").strip() or settings.default_share_expiry
    try:
        expires_in = shares.parse_duration(expiry)
    except ValueError:
        raise TreeShareError("invalid expiry duration")

    # the synthetic unsafe-admin (id 0) has no users row to reference
    created_by = ctx.principal.user_id if not ctx.principal.anonymous and ctx.principal.user_id else None
    link = shares.create_link(db, rel, req.mode or shares.MODE_BROWSE, expires_in, created_by)
    audit_request(db, request, "share.create", target=rel, metadata={"mode": link.mode})
    return {
        "token": link.token,
        "url": absolute_url(request, CONFIG.route(f"/s/{link.token}")),
        "expiresAt": link.expires_at.isoformat(),
        "mode": link.mode,
    }


@router.post("/api/share/revoke", tags=["Sharing"], dependencies=[Depends(csrf_protect)])
def revoke_share(
    req: schemas.TokenRequest,
    request: Request,
    ctx: RequestContext = Depends(get_context),
    perms: Permissions = Depends(require_share),
    db: Session = Depends(get_db),
):
    shares.revoke_link(db, req.token, ctx.principal, perms)
    audit_request(db, request, "share.revoke", target=req.token)
    return {"ok": True}


# ─── Register routers ─────────────────────────────────────────────────────────
from share_routes import router as share_router  # noqa: E402
from admin_routes import router as admin_router  # noqa: E402

app.include_router(router)
app.include_router(share_router)
app.include_router(admin_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=CONFIG.bind,
        port=CONFIG.port,
        ssl_certfile=CONFIG.cert_file or None,
        ssl_keyfile=CONFIG.key_file or None,
        proxy_headers=CONFIG.trust_proxy,
        timeout_keep_alive=60,
        timeout_graceful_shutdown=5,
        log_level=CONFIG.log_level.lower(),
    )
