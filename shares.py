"""
shares.py — bearer-token share links.

A link grants one capability on one path of the tree:

  browse    read-only listing and zip download of anything under the path
  download  fetch of the path itself (file, or zip of the subtree); no listing
  upload    write-only uploads into the path

Links are an insert-only ledger; the only fields that ever change after
creation are `revoked` and `last_accessed_at`.
"""

import logging
import os
import posixpath
import re
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

import models
from database import utcnow
from errors import LinkGone, LinkNotFound, NotAllowed, PathEscape, ScopeEscape, TreeShareError
from sandbox import normalize_rel_path, safe_join
from security import SHARE_TOKEN_BYTES, new_token

logger = logging.getLogger(__name__)

MODE_BROWSE = "browse"
MODE_DOWNLOAD = "download"
MODE_UPLOAD = "upload"
MODES = (MODE_BROWSE, MODE_DOWNLOAD, MODE_UPLOAD)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}

# keeps now + duration far inside datetime's range
MAX_DURATION = timedelta(days=100 * 365)


def parse_duration(value: str) -> timedelta:
    """Parse durations like "24h", "1h30m", "90s" or "7d". Raises ValueError.

    Durations longer than MAX_DURATION are rejected as out of range.
    """
    raw = (value or "").strip().lower()
    if not raw:
        raise ValueError("empty duration")
    pos = 0
    total = timedelta(0)
    for match in _DURATION_PART.finditer(raw):
        if match.start() != pos:
            break
        try:
            total += float(match.group(1)) * _UNITS[match.group(2)]
        except OverflowError:
            raise ValueError(f"duration out of range {value!r}")
        if total > MAX_DURATION:
            raise ValueError(f"duration out of range {value!r}")
        pos = match.end()
    if pos != len(raw):
        raise ValueError(f"invalid duration {value!r}")
    return total


def _within(base: str, rel: str) -> bool:
    return rel == base or rel.startswith(base + "/")


def resolve_scoped(base: str, sub: str, root: Optional[str] = None) -> str:
    """
    Resolve a requested sub-path against a link's base path.

    sub may be relative to the base ("images") or a root-relative path that
    already lies under it ("docs/images", as the browse listing hands out).
    The result must be the base itself or a path-segment descendant, so the
    sibling "docs2" is never inside "docs". Raises ScopeEscape otherwise.

    A relative sub that merely starts with the base name ("docs-old" under
    "docs") looks like a sibling and is refused, unless root is given and
    base/sub exists there.
    """
    base = normalize_rel_path(base)
    candidate = (sub or "").strip().replace("\\", "/").lstrip("/")
    while candidate.startswith("./"):
        candidate = candidate[2:]
    if candidate in ("", "."):
        return base
    if not base:
        return normalize_rel_path(candidate)

    relative = normalize_rel_path(posixpath.join(base, candidate))
    if _within(base, candidate):
        joined = normalize_rel_path(candidate)
    elif candidate.startswith(base):
        if root is None or not _within(base, relative):
            raise ScopeEscape()
        try:
            exists = os.path.lexists(safe_join(root, relative))
        except PathEscape:
            raise ScopeEscape()
        if not exists:
            raise ScopeEscape()
        joined = relative
    else:
        joined = relative
    if _within(base, joined):
        return joined
    raise ScopeEscape()


def create_link(db: Session, path: str, mode: str, expires_in: timedelta,
                created_by: Optional[int] = None, now: Optional[datetime] = None) -> models.ShareLink:
    mode = (mode or MODE_BROWSE).strip().lower()
    if mode not in MODES:
        raise TreeShareError("invalid mode")
    if expires_in <= timedelta(0) or expires_in > MAX_DURATION:
        raise TreeShareError("invalid expiry duration")
    now = now or utcnow()
    link = models.ShareLink(
        token=new_token(SHARE_TOKEN_BYTES),
        path=normalize_rel_path(path),
        mode=mode,
        created_by=created_by,
        expires_at=now + expires_in,
        revoked=False,
        created_at=now,
    )
    db.add(link)
    db.commit()
    db.refresh(link)
    return link


def get_link(db: Session, token: str) -> Optional[models.ShareLink]:
    if not token:
        return None
    return db.query(models.ShareLink).filter(models.ShareLink.token == token).first()


def is_live(link: models.ShareLink, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return not link.revoked and now <= link.expires_at


def touch(db: Session, token: str, now: Optional[datetime] = None) -> None:
    """Record an access. Best effort: a failure here never fails the request."""
    try:
        db.query(models.ShareLink).filter(models.ShareLink.token == token).update(
            {"last_accessed_at": now or utcnow()}, synchronize_session=False
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Could not record share link access: {e}")


def access(db: Session, token: str, now: Optional[datetime] = None) -> models.ShareLink:
    """
    Return the live link for token.

    Raises LinkNotFound for unknown tokens and LinkGone for revoked or expired
    ones; the two "gone" causes are deliberately indistinguishable.
    """
    now = now or utcnow()
    link = get_link(db, token)
    if link is None:
        raise LinkNotFound()
    if not is_live(link, now):
        raise LinkGone()
    touch(db, token, now)
    return link


def revoke_link(db: Session, token: str, principal, permissions) -> models.ShareLink:
    """Revoke a link; allowed for its creator and for admins only."""
    link = get_link(db, token)
    if link is None:
        raise LinkNotFound()
    if not permissions.admin:
        if link.created_by is None or principal.anonymous or principal.user_id != link.created_by:
            raise NotAllowed("only owner or admin can revoke")
    link.revoked = True
    db.commit()
    return link


def list_links(db: Session) -> List[models.ShareLink]:
    return db.query(models.ShareLink).order_by(models.ShareLink.created_at.desc()).all()


def link_to_dict(link: models.ShareLink) -> dict:
    return {
        "token": link.token,
        "path": link.path,
        "mode": link.mode,
        "created_by": link.created_by,
        "expires_at": link.expires_at.isoformat(),
        "revoked": link.revoked,
        "created_at": link.created_at.isoformat() if link.created_at else None,
        "last_accessed": link.last_accessed_at.isoformat() if link.last_accessed_at else None,
    }
