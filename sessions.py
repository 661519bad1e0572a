"""
sessions.py — server-side browser sessions.

Lifecycle: unknown token -> anonymous (created) -> authenticated (rotated on
login) -> expired, which is handled exactly like an unknown token. Logout
deletes the row. Every valid request slides the expiry forward.

Login never upgrades a session in place: issue_authenticated() deletes the
pre-login row and inserts a new one with a fresh token and CSRF token in one
transaction, so a token planted before login is worthless afterwards.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sqlalchemy.orm import Session

import models
from config import CONFIG, SESSION_COOKIE_NAME
from database import utcnow
from security import CSRF_TOKEN_BYTES, SESSION_TOKEN_BYTES, new_token

logger = logging.getLogger(__name__)

ANON_TTL = timedelta(hours=24)
AUTH_TTL = timedelta(hours=12)
REMEMBER_TTL = timedelta(days=30)


def ttl_for(user_id: Optional[int], remember: bool) -> timedelta:
    if user_id is None:
        return ANON_TTL
    return REMEMBER_TTL if remember else AUTH_TTL


def _new_record(user_id, remember, ip, user_agent, now) -> models.SessionRecord:
    return models.SessionRecord(
        token=new_token(SESSION_TOKEN_BYTES),
        user_id=user_id,
        csrf_token=new_token(CSRF_TOKEN_BYTES),
        remember=bool(remember) if user_id is not None else False,
        ip=ip,
        user_agent=user_agent,
        expires_at=now + ttl_for(user_id, remember),
        created_at=now,
        last_seen_at=now,
    )


def get_valid(db: Session, token: str, now: Optional[datetime] = None) -> Optional[models.SessionRecord]:
    """Fetch a live session by token; expired rows are deleted on sight."""
    if not token:
        return None
    now = now or utcnow()
    record = db.query(models.SessionRecord).filter(models.SessionRecord.token == token).first()
    if record is None:
        return None
    if record.expires_at <= now:
        db.delete(record)
        db.commit()
        return None
    return record


def create_anonymous(db: Session, ip: str = None, user_agent: str = None,
                     now: Optional[datetime] = None) -> models.SessionRecord:
    now = now or utcnow()
    record = _new_record(None, False, ip, user_agent, now)
    db.add(record)
    db.commit()
    return record


def resolve(db: Session, token: Optional[str], ip: str = None, user_agent: str = None,
            now: Optional[datetime] = None) -> Tuple[models.SessionRecord, bool]:
    """
    Return (session, created). Unknown or expired tokens get a brand new
    anonymous session; a live session has its expiry extended.
    """
    now = now or utcnow()
    record = get_valid(db, token, now)
    if record is None:
        return create_anonymous(db, ip, user_agent, now), True
    record.expires_at = now + ttl_for(record.user_id, record.remember)
    record.last_seen_at = now
    db.commit()
    return record, False


def issue_authenticated(db: Session, old_token: Optional[str], user_id: int, remember: bool,
                        ip: str = None, user_agent: str = None,
                        now: Optional[datetime] = None) -> models.SessionRecord:
    """Replace old_token with a new session bound to user_id, atomically."""
    now = now or utcnow()
    record = _new_record(user_id, remember, ip, user_agent, now)
    try:
        if old_token:
            db.query(models.SessionRecord).filter(
                models.SessionRecord.token == old_token
            ).delete(synchronize_session=False)
        db.add(record)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return record


def destroy(db: Session, token: Optional[str]) -> None:
    if not token:
        return
    db.query(models.SessionRecord).filter(models.SessionRecord.token == token).delete(synchronize_session=False)
    db.commit()


def purge_expired(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    removed = db.query(models.SessionRecord).filter(
        models.SessionRecord.expires_at < now
    ).delete(synchronize_session=False)
    db.commit()
    if removed:
        logger.info(f"Purged {removed} expired sessions")
    return removed


# ─── Cookies ──────────────────────────────────────────────────────────────────

def set_session_cookie(response, record: models.SessionRecord, cfg=CONFIG) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=record.token,
        # naive UTC -> aware, so Starlette renders the right Expires
        expires=record.expires_at.replace(tzinfo=timezone.utc),
        path=cfg.base_path,
        secure=cfg.https,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response, cfg=CONFIG) -> None:
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path=cfg.base_path,
        secure=cfg.https,
        httponly=True,
        samesite="lax",
    )
