"""
throttle.py — failed-login counters and exponential lockout.

The key combines the client address and the normalized username. A shared
address (NAT, proxy) therefore throttles unrelated people who try the same
username together; that is accepted behaviour.

Lockout starts at the 5th consecutive failure and doubles per failure:
1, 2, 4, 8, 16, then 32 minutes for every failure after that.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

import models
from database import utcnow
from users import normalize_username

logger = logging.getLogger(__name__)

LOCK_THRESHOLD = 5
MAX_LOCK_EXPONENT = 5


def throttle_key(client_ip: str, username: str) -> str:
    return f"{client_ip}|{normalize_username(username)}"


def lock_duration_for(failed_count: int) -> timedelta:
    if failed_count < LOCK_THRESHOLD:
        return timedelta(0)
    power = min(failed_count - LOCK_THRESHOLD, MAX_LOCK_EXPONENT)
    return timedelta(minutes=2 ** power)


def check_allowed(db: Session, key: str, now: Optional[datetime] = None) -> Tuple[bool, timedelta]:
    """Return (locked, retry_after) for key."""
    now = now or utcnow()
    attempt = db.query(models.LoginAttempt).filter(models.LoginAttempt.key == key).first()
    if attempt is None or attempt.locked_until is None:
        return False, timedelta(0)
    if attempt.locked_until > now:
        return True, attempt.locked_until - now
    return False, timedelta(0)


def _increment_stmt(db: Session, key: str, now: datetime):
    insert = postgresql.insert if db.get_bind().dialect.name == "postgresql" else sqlite.insert
    table = models.LoginAttempt.__table__
    stmt = insert(table).values(key=key, failed_count=1, updated_at=now)
    return stmt.on_conflict_do_update(
        index_elements=[table.c.key],
        set_={"failed_count": table.c.failed_count + 1, "updated_at": now},
    )


def register_failure(db: Session, key: str, now: Optional[datetime] = None) -> timedelta:
    """
    Count one failed login for key and return the lock it triggers (zero if none).

    The increment is a single upsert and the lock is written in the same
    transaction, so concurrent failures on one key cannot lose updates.
    """
    now = now or utcnow()
    try:
        db.execute(_increment_stmt(db, key, now))
        failed = db.query(models.LoginAttempt.failed_count).filter(
            models.LoginAttempt.key == key
        ).scalar()
        lock = lock_duration_for(failed)
        db.query(models.LoginAttempt).filter(models.LoginAttempt.key == key).update(
            {"locked_until": now + lock if lock else None},
            synchronize_session=False,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    if lock:
        logger.warning(f"Login locked for key={key!r} after {failed} failures ({lock})")
    return lock


def reset(db: Session, key: str) -> None:
    db.query(models.LoginAttempt).filter(models.LoginAttempt.key == key).delete(synchronize_session=False)
    db.commit()
