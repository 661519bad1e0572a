from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey

from database import Base, utcnow


# ─────────────────────────────────────────────────────────────
# User Model
# ─────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)  # lower-cased
    password_hash = Column(String, nullable=False)
    role = Column(String, nullable=False, default="user")  # admin | user
    disabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ─────────────────────────────────────────────────────────────
# Browser Sessions
# ─────────────────────────────────────────────────────────────
class SessionRecord(Base):
    __tablename__ = "sessions"

    token = Column(String, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    csrf_token = Column(String, nullable=False)
    remember = Column(Boolean, nullable=False, default=False)
    ip = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=utcnow)


# ─────────────────────────────────────────────────────────────
# Login Throttling
# ─────────────────────────────────────────────────────────────
class LoginAttempt(Base):
    __tablename__ = "login_attempts"

    key = Column(String, primary_key=True)  # "<ip>|<username>"
    failed_count = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


# ─────────────────────────────────────────────────────────────
# Share Links (only revoked / last_accessed_at ever change)
# ─────────────────────────────────────────────────────────────
class ShareLink(Base):
    __tablename__ = "share_links"

    token = Column(String, primary_key=True, index=True)
    path = Column(String, nullable=False)
    mode = Column(String, nullable=False)  # browse | download | upload
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    revoked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_accessed_at = Column(DateTime, nullable=True)


# ─────────────────────────────────────────────────────────────
# Global Settings (key/value)
# ─────────────────────────────────────────────────────────────
class Setting(Base):
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ─────────────────────────────────────────────────────────────
# Audit Log
# ─────────────────────────────────────────────────────────────
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    entry_id = Column(String, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    actor_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor = Column(String, nullable=False, default="system")  # username at the time, hashed
    action = Column(String, nullable=False)
    target = Column(String, nullable=False, default="")
    meta_data = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    previous_hash = Column(String)
    current_hash = Column(String, unique=True)
