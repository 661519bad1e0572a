# admin_routes.py

import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

import schemas
import shares
import users
from app_settings import AppSettings, get_app_settings, save_app_settings
from audit import list_audit, verify_audit_chain
from config import CONFIG
from csrf import csrf_protect
from database import get_db
from dependencies import audit_request, require_admin
from errors import TreeShareError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=CONFIG.route("/api/admin"),
    tags=["Admin"],
    dependencies=[Depends(require_admin), Depends(csrf_protect)],
)


# ─── SETTINGS ─────────────────────────────────────────

@router.get("/settings")
def read_settings(db: Session = Depends(get_db)):
    return {"settings": get_app_settings(db).model_dump(), "forcedReadOnly": CONFIG.read_only}


@router.post("/settings")
def update_settings(req: schemas.SettingsUpdate, request: Request, db: Session = Depends(get_db)):
    # merge over the stored values, not the process-forced view
    current = get_app_settings(db, force_read_only=False).model_dump()
    changes = req.model_dump(exclude_none=True)
    current.update(changes)
    try:
        updated = AppSettings(**current)
    except ValidationError as e:
        first = e.errors()[0]
        field = first["loc"][0] if first.get("loc") else "settings"
        raise TreeShareError(f"invalid {field}")
    save_app_settings(db, updated)
    audit_request(db, request, "admin.settings.update", target="settings", metadata={"fields": sorted(changes)})
    logger.info(f"Settings updated: {', '.join(sorted(changes)) or 'no changes'}")
    return {"ok": True, "settings": get_app_settings(db).model_dump()}


# ─── USERS ────────────────────────────────────────────

@router.get("/users")
def list_users(db: Session = Depends(get_db)):
    return {"users": [users.user_to_dict(u) for u in users.list_users(db)]}


@router.post("/users/create")
def create_user(req: schemas.UserCreateRequest, request: Request, db: Session = Depends(get_db)):
    user = users.create_user(db, req.username, req.password, req.role)
    audit_request(db, request, "admin.user.create", target=user.username, metadata={"role": user.role})
    return {"ok": True, "user": users.user_to_dict(user)}


@router.post("/users/password")
def set_password(req: schemas.PasswordResetRequest, request: Request, db: Session = Depends(get_db)):
    user = users.set_password(db, req.username, req.password)
    audit_request(db, request, "admin.user.password", target=user.username)
    return {"ok": True}


@router.post("/users/disable")
def disable_user(req: schemas.DisableUserRequest, request: Request, db: Session = Depends(get_db)):
    user = users.set_disabled(db, req.username, req.disabled)
    audit_request(db, request, "admin.user.disable", target=user.username, metadata={"disabled": req.disabled})
    return {"ok": True}


@router.post("/users/delete")
def delete_user(req: schemas.UsernameRequest, request: Request, db: Session = Depends(get_db)):
    username = users.normalize_username(req.username)
    users.delete_user(db, username)
    audit_request(db, request, "admin.user.delete", target=username)
    return {"ok": True}


@router.post("/users/role")
def change_role(req: schemas.ChangeRoleRequest, request: Request, db: Session = Depends(get_db)):
    user = users.set_role(db, req.username, req.role)
    audit_request(db, request, "admin.user.role", target=user.username, metadata={"role": user.role})
    return {"ok": True, "user": users.user_to_dict(user)}


# ─── LINKS & AUDIT ────────────────────────────────────

@router.get("/links")
def list_links(db: Session = Depends(get_db)):
    return {"links": [shares.link_to_dict(link) for link in shares.list_links(db)]}


@router.get("/audit")
def audit_log(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    return {"logs": list_audit(db, limit)}


@router.get("/audit/verify")
def audit_verify(db: Session = Depends(get_db)):
    return verify_audit_chain(db)
