# share_routes.py

import os
import posixpath
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

import file_service
import shares
from app_settings import get_app_settings
from audit import record_audit
from config import CONFIG
from database import get_db
from dependencies import check_upload_size, client_ip, serve_download, upload_files
from errors import NotAllowed, TreeShareError
from sandbox import safe_join

router = APIRouter(prefix=CONFIG.route("/s"), tags=["Share links"])


def _link_url(token: str, rel: str, download: bool = False) -> str:
    url = CONFIG.route(f"/s/{token}") + f"?p={quote(rel)}"
    return url + "&download=1" if download else url


# ─── OPEN ─────────────────────────────────────────────

@router.get("/{token}")
def open_share(
    token: str,
    p: str = Query(""),
    download: str = Query(""),
    db: Session = Depends(get_db),
):
    """
    browse:   list anything under the link path (?p= selects a sub-path)
    download: the link path itself, file or zipped subtree; ?p= is ignored
    upload:   describes where files will land; nothing is readable
    """
    link = shares.access(db, token)

    if link.mode == shares.MODE_UPLOAD:
        return {
            "mode": link.mode,
            "path": link.path,
            "uploadUrl": CONFIG.route(f"/s/{link.token}/upload"),
            "expiresAt": link.expires_at.isoformat(),
        }

    if link.mode == shares.MODE_DOWNLOAD:
        return serve_download(link.path)

    scoped = shares.resolve_scoped(link.path, p, CONFIG.root_dir)
    if download:
        return serve_download(scoped)
    target, _ = file_service.resolve_existing(CONFIG.root_dir, scoped)
    if not os.path.isdir(target):
        return serve_download(scoped)

    entries = file_service.list_dir(CONFIG.root_dir, scoped)
    for entry in entries:
        entry["url"] = _link_url(link.token, entry["path"], download=not entry["isDir"])
    parent = None
    if scoped != link.path:
        parent = _link_url(link.token, posixpath.dirname(scoped))
    return {
        "mode": link.mode,
        "path": scoped,
        "base": link.path,
        "parentUrl": parent,
        "zipUrl": _link_url(link.token, scoped, download=True),
        "entries": entries,
    }


# ─── UPLOAD ───────────────────────────────────────────

def _upload_target(token: str, request: Request, db: Session = Depends(get_db)):
    """Everything that can refuse the upload, checked before the body is read."""
    link = shares.access(db, token)
    if link.mode != shares.MODE_UPLOAD:
        raise NotAllowed("upload not allowed for this link")
    settings = get_app_settings(db)
    if settings.read_only:
        raise NotAllowed("read-only mode enabled")
    check_upload_size(request, settings)

    # a link to a single file accepts uploads beside it
    base = link.path
    if os.path.isfile(safe_join(CONFIG.root_dir, base)):
        base = posixpath.dirname(base)
    return link, settings, file_service.upload_base(base, settings.upload_subdir)


@router.post("/{token}/upload")
async def upload_to_share(
    request: Request,
    target=Depends(_upload_target),
    db: Session = Depends(get_db),
):
    link, settings, base_rel = target
    async with request.form() as form:
        files = upload_files(form)
        if not files:
            raise TreeShareError("no files uploaded")
        uploaded, issues = await run_in_threadpool(
            file_service.save_uploads, CONFIG.root_dir, base_rel, files, settings
        )

    await run_in_threadpool(
        record_audit, db, "share.upload", target=",".join(uploaded),
        actor_user_id=link.created_by, actor="share-link",
        metadata={"token": link.token, "errors": issues},
        ip_address=client_ip(request),
    )
    return {"uploaded": uploaded, "errors": issues}
