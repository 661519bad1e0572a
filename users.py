"""
users.py — the user directory.

Usernames are stored trimmed and lower-cased; every lookup normalizes the
same way. The last active admin can never be disabled, deleted or demoted.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

import models
from errors import LastAdminProtection, TreeShareError, UserNotFound
from security import hash_password

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)


def normalize_username(username: str) -> str:
    return (username or "").strip().lower()


def get_user_by_username(db: Session, username: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.username == normalize_username(username)).first()


def get_user_by_id(db: Session, user_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()


def list_users(db: Session) -> List[models.User]:
    return db.query(models.User).order_by(models.User.username.asc()).all()


def admin_count(db: Session) -> int:
    return db.query(models.User).filter(
        models.User.role == ROLE_ADMIN,
        models.User.disabled == False,  # noqa: E712
    ).count()


def create_user(db: Session, username: str, password: str, role: str = ROLE_USER) -> models.User:
    username = normalize_username(username)
    if not username:
        raise TreeShareError("username/password required")
    if role not in ROLES:
        role = ROLE_USER
    if get_user_by_username(db, username):
        raise TreeShareError("username already taken")
    user = models.User(username=username, password_hash=hash_password(password), role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user '{username}' role={role}")
    return user


def _require(db: Session, username: str) -> models.User:
    user = get_user_by_username(db, username)
    if not user:
        raise UserNotFound()
    return user


def _is_last_active_admin(db: Session, user: models.User) -> bool:
    return user.role == ROLE_ADMIN and not user.disabled and admin_count(db) <= 1


def set_password(db: Session, username: str, password: str) -> models.User:
    user = _require(db, username)
    user.password_hash = hash_password(password)
    db.commit()
    return user


def set_disabled(db: Session, username: str, disabled: bool) -> models.User:
    user = _require(db, username)
    if disabled and _is_last_active_admin(db, user):
        raise LastAdminProtection("cannot disable last active admin")
    user.disabled = disabled
    db.commit()
    logger.info(f"User '{user.username}' disabled={disabled}")
    return user


def set_role(db: Session, username: str, role: str) -> models.User:
    if role not in ROLES:
        raise TreeShareError("role must be admin or user")
    user = _require(db, username)
    if role != ROLE_ADMIN and _is_last_active_admin(db, user):
        raise LastAdminProtection("cannot demote last active admin")
    user.role = role
    db.commit()
    return user


def delete_user(db: Session, username: str) -> None:
    user = _require(db, username)
    if _is_last_active_admin(db, user):
        raise LastAdminProtection("cannot remove last active admin")
    db.query(models.SessionRecord).filter(models.SessionRecord.user_id == user.id).delete()
    db.delete(user)
    db.commit()
    logger.info(f"Deleted user '{user.username}'")


def user_to_dict(user: models.User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "role": user.role,
        "disabled": user.disabled,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "updated_at": user.updated_at.isoformat() if user.updated_at else None,
    }
