import hashlib
import json
import logging
import uuid
from typing import Optional

from sqlalchemy.orm import Session

import models
from database import utcnow

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


def _entry_hash(entry_id, created_at, actor, action, target, meta_data, ip_address, previous_hash) -> str:
    record = "|".join([
        entry_id,
        created_at.isoformat(),
        actor,
        action,
        target or "",
        meta_data or "",
        ip_address or "",
        previous_hash,
    ])
    return hashlib.sha256(record.encode()).hexdigest()


def record_audit(
    db: Session,
    action: str,
    target: str = "",
    actor_user_id: Optional[int] = None,
    actor: str = "system",
    metadata: Optional[dict] = None,
    ip_address: Optional[str] = None,
) -> str:
    # Read last hash from DB so the chain survives restarts
    last_log = db.query(models.AuditLog).order_by(models.AuditLog.id.desc()).first()
    previous_hash = last_log.current_hash if last_log else GENESIS_HASH

    entry_id = uuid.uuid4().hex[:16]
    created_at = utcnow()
    # user id 0 is the synthetic unsafe-admin; it has no users row
    actor_id = actor_user_id or None
    meta_data = json.dumps(metadata, sort_keys=True) if metadata else None
    current_hash = _entry_hash(entry_id, created_at, actor, action, target, meta_data, ip_address, previous_hash)

    log = models.AuditLog(
        entry_id=entry_id,
        created_at=created_at,
        actor_user_id=actor_id,
        actor=actor,
        action=action,
        target=target or "",
        meta_data=meta_data,
        ip_address=ip_address,
        previous_hash=previous_hash,
        current_hash=current_hash,
    )
    try:
        db.add(log)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.debug(f"audit {action} target={target!r} actor={actor}")
    return current_hash


def list_audit(db: Session, limit: int = 100) -> list:
    limit = max(1, min(int(limit), 1000))
    rows = (
        db.query(models.AuditLog)
        .order_by(models.AuditLog.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "entry_id": log.entry_id,
            "created_at": log.created_at.isoformat(),
            "actor": log.actor,
            "action": log.action,
            "target": log.target,
            "meta": json.loads(log.meta_data) if log.meta_data else None,
            "ip": log.ip_address,
            "hash": log.current_hash,
        }
        for log in rows
    ]


def verify_audit_chain(db: Session) -> dict:
    logs = db.query(models.AuditLog).order_by(models.AuditLog.id.asc()).all()
    if not logs:
        return {"valid": True, "entries_checked": 0, "message": "No logs to verify"}

    prev = GENESIS_HASH
    for log in logs:
        expected = _entry_hash(
            log.entry_id, log.created_at, log.actor, log.action,
            log.target, log.meta_data, log.ip_address, log.previous_hash,
        )
        if log.previous_hash != prev or log.current_hash != expected:
            logger.error(f"Audit chain broken at entry {log.entry_id}")
            return {
                "valid": False,
                "entries_checked": len(logs),
                "broken_at_entry_id": log.entry_id,
                "message": "Chain integrity violation detected",
            }
        prev = log.current_hash

    return {
        "valid": True,
        "entries_checked": len(logs),
        "message": "Audit chain verified",
    }
