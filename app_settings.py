"""
app_settings.py — the global settings provider.

Settings live in the key/value `settings` table so an admin change applies to
the very next request. Callers must read them fresh per request with
get_app_settings(); nothing here is cached.
"""

import logging
import re

from pydantic import BaseModel, ValidationError, field_validator
from sqlalchemy.orm import Session

import models
from config import COLLISION_POLICIES, COLLISION_RENAME, GUEST_MODES, GUEST_OFF, CONFIG
from shares import parse_duration

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "guest_mode": GUEST_OFF,
    "max_upload_size_mb": "1024",
    "upload_allow_regex": "",
    "upload_deny_regex": "",
    "upload_subdir": "",
    "collision_policy": COLLISION_RENAME,
    "default_share_expiry": "24h",
    "allow_delete": "false",
    "allow_rename": "false",
    "read_only": "false",
    "virus_scan_command": "",
}


class AppSettings(BaseModel):
    guest_mode: str = GUEST_OFF
    max_upload_size_mb: int = 1024
    upload_allow_regex: str = ""
    upload_deny_regex: str = ""
    upload_subdir: str = ""
    collision_policy: str = COLLISION_RENAME
    default_share_expiry: str = "24h"
    allow_delete: bool = False
    allow_rename: bool = False
    read_only: bool = False
    virus_scan_command: str = ""

    @field_validator("guest_mode")
    @classmethod
    def _check_guest_mode(cls, v: str) -> str:
        if v not in GUEST_MODES:
            raise ValueError("invalid guest mode")
        return v

    @field_validator("collision_policy")
    @classmethod
    def _check_collision_policy(cls, v: str) -> str:
        if v not in COLLISION_POLICIES:
            raise ValueError("invalid collision policy")
        return v

    @field_validator("max_upload_size_mb")
    @classmethod
    def _check_max_upload(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_upload_size_mb must be positive")
        return v

    @field_validator("default_share_expiry")
    @classmethod
    def _check_expiry(cls, v: str) -> str:
        v = (v or "").strip() or "24h"
        parse_duration(v)
        return v

    @field_validator("upload_allow_regex", "upload_deny_regex")
    @classmethod
    def _check_regex(cls, v: str) -> str:
        if v and v.strip():
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid regex: {e}") from e
        return v

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "t", "true", "yes", "on")


def _to_storage(settings: AppSettings) -> dict:
    out = {}
    for key, value in settings.model_dump().items():
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        else:
            out[key] = str(value)
    return out


def ensure_default_settings(db: Session) -> None:
    existing = {row.key for row in db.query(models.Setting.key).all()}
    for key, value in DEFAULT_SETTINGS.items():
        if key not in existing:
            db.add(models.Setting(key=key, value=value))
    db.commit()


def set_setting(db: Session, key: str, value: str, commit: bool = True) -> None:
    row = db.query(models.Setting).filter(models.Setting.key == key).first()
    if row is None:
        db.add(models.Setting(key=key, value=value))
    else:
        row.value = value
    if commit:
        db.commit()


def get_app_settings(db: Session, force_read_only: bool = None) -> AppSettings:
    """Read the current settings. A process-level read-only flag always wins."""
    if force_read_only is None:
        force_read_only = CONFIG.read_only
    raw = dict(DEFAULT_SETTINGS)
    for row in db.query(models.Setting).all():
        raw[row.key] = row.value

    try:
        max_mb = int(raw["max_upload_size_mb"])
    except ValueError:
        max_mb = 1024
    values = {
        "guest_mode": raw["guest_mode"],
        "max_upload_size_mb": max_mb if max_mb > 0 else 1024,
        "upload_allow_regex": raw["upload_allow_regex"],
        "upload_deny_regex": raw["upload_deny_regex"],
        "upload_subdir": raw["upload_subdir"],
        "collision_policy": raw["collision_policy"],
        "default_share_expiry": raw["default_share_expiry"],
        "allow_delete": _parse_bool(raw["allow_delete"]),
        "allow_rename": _parse_bool(raw["allow_rename"]),
        "read_only": _parse_bool(raw["read_only"]),
        "virus_scan_command": raw["virus_scan_command"],
    }
    try:
        settings = AppSettings(**values)
    except ValidationError as e:
        logger.error(f"Stored settings are invalid ({e}). Falling back to locked-down defaults.")
        settings = AppSettings()
    if force_read_only:
        settings.read_only = True
    return settings


def save_app_settings(db: Session, settings: AppSettings) -> None:
    """Write every setting in one transaction."""
    for key, value in _to_storage(settings).items():
        set_setting(db, key, value, commit=False)
    db.commit()


def apply_startup_overrides(db: Session, cfg=CONFIG) -> None:
    if cfg.guest_mode:
        set_setting(db, "guest_mode", cfg.guest_mode)
    if cfg.read_only:
        set_setting(db, "read_only", "true")
