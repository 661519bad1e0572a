"""
dependencies.py — FastAPI dependencies shared by every router.

The session middleware in main.py stores a RequestContext on request.state;
everything here builds on it. Settings and permissions are recomputed for
every request.
"""

import os
from dataclasses import dataclass
from typing import List

from fastapi import Depends, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse
from starlette.datastructures import UploadFile
from sqlalchemy.orm import Session

import file_service
import models
from app_settings import AppSettings, get_app_settings
from audit import record_audit
from auth import Principal
from config import CONFIG
from database import get_db
from errors import UploadTooLarge
from permissions import Permissions, resolve_permissions


@dataclass
class RequestContext:
    session: models.SessionRecord
    principal: Principal


def get_context(request: Request) -> RequestContext:
    return request.state.ctx


def get_effective_settings(db: Session = Depends(get_db)) -> AppSettings:
    return get_app_settings(db)


def get_permissions(
    ctx: RequestContext = Depends(get_context),
    settings: AppSettings = Depends(get_effective_settings),
) -> Permissions:
    return resolve_permissions(ctx.principal, settings, CONFIG.auth_enabled)


def require_browse(perms: Permissions = Depends(get_permissions)) -> Permissions:
    if not perms.browse:
        raise HTTPException(status_code=401, detail="authentication required")
    return perms


def require_admin(perms: Permissions = Depends(get_permissions)) -> Permissions:
    if not perms.admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return perms


def require_share(perms: Permissions = Depends(get_permissions)) -> Permissions:
    if not perms.share:
        raise HTTPException(status_code=403, detail="share link creation not allowed")
    return perms


def require_write(action: str):
    """Dependency factory for upload/delete/rename; read-only wins over role."""

    def _check(perms: Permissions = Depends(get_permissions)) -> Permissions:
        if perms.read_only:
            raise HTTPException(status_code=403, detail="read-only mode enabled")
        allowed = {"upload": perms.upload, "delete": perms.delete, "rename": perms.rename}
        if not allowed.get(action, False):
            raise HTTPException(status_code=403, detail=f"{action} not allowed")
        return perms

    return _check


def client_ip(request: Request, cfg=CONFIG) -> str:
    """Peer address; X-Forwarded-For is only believed behind a trusted proxy."""
    if cfg.trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded and forwarded.split(",")[0].strip():
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def audit_request(db: Session, request: Request, action: str, target: str = "", metadata: dict = None) -> None:
    """Record an audit entry attributed to the requesting principal."""
    principal = request.state.ctx.principal
    record_audit(
        db, action, target=target,
        actor_user_id=None if principal.anonymous else principal.user_id,
        actor=principal.username,
        metadata=metadata,
        ip_address=client_ip(request),
    )


def check_upload_size(request: Request, settings: AppSettings) -> None:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.max_upload_bytes:
        raise UploadTooLarge()


def upload_settings(request: Request, settings: AppSettings = Depends(get_effective_settings)) -> AppSettings:
    """Settings for an upload request whose declared size is within the ceiling.

    Reads headers only; upload routes parse the body themselves, after this
    and the permission checks have passed.
    """
    check_upload_size(request, settings)
    return settings


def upload_files(form) -> List[UploadFile]:
    return [item for item in form.getlist("files") if isinstance(item, UploadFile)]


def serve_download(rel: str):
    """A file as an attachment; a directory as a streamed zip."""
    target, _ = file_service.resolve_existing(CONFIG.root_dir, rel)
    if os.path.isdir(target):
        return StreamingResponse(
            file_service.iter_zip(CONFIG.root_dir, rel),
            media_type="application/zip",
            headers={"Content-Disposition": file_service.content_disposition(file_service.zip_name_for(rel))},
        )
    name = os.path.basename(target)
    return FileResponse(target, media_type=file_service.detect_mime(name), filename=name)
