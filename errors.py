"""
errors.py — exceptions raised at the security boundary.

Each TreeShareError carries the HTTP status and the public message the API
returns as {"error": message}. Messages never include internal detail such as
failure counts or host paths.
"""

from datetime import timedelta


class TreeShareError(Exception):
    status_code = 400
    message = "bad request"

    def __init__(self, message: str = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class PathEscape(TreeShareError):
    """Resolved path would leave the shared root (lexically or via a symlink)."""
    status_code = 400
    message = "invalid path"


class ScopeEscape(TreeShareError):
    """Share-link sub-path leaves the link's base path."""
    status_code = 400
    message = "invalid path"


class CSRFMismatch(TreeShareError):
    status_code = 403
    message = "csrf validation failed"


class NotAllowed(TreeShareError):
    status_code = 403
    message = "not allowed"


class InvalidCredentials(TreeShareError):
    status_code = 401
    message = "invalid credentials"


class AccountLocked(TreeShareError):
    status_code = 429

    def __init__(self, retry_after: timedelta):
        self.retry_after = retry_after
        super().__init__(f"too many attempts, retry in {format_duration(retry_after)}")


class LastAdminProtection(TreeShareError):
    status_code = 409
    message = "cannot disable or remove the last active admin"


class UserNotFound(TreeShareError):
    status_code = 404
    message = "user not found"


class LinkNotFound(TreeShareError):
    status_code = 404
    message = "link not found"


class LinkGone(TreeShareError):
    status_code = 410
    message = "share link expired or revoked"


class FileMissing(TreeShareError):
    status_code = 404
    message = "not found"


class UploadTooLarge(TreeShareError):
    status_code = 413
    message = "upload exceeds size limit"


class PasswordTooShort(TreeShareError):
    status_code = 400


class InvalidHashError(ValueError):
    """Stored password hash is malformed or uses an unknown scheme."""


def format_duration(d: timedelta) -> str:
    """Render a duration like 1h2m3s, rounded to whole seconds."""
    total = max(0, int(round(d.total_seconds())))
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if hours or minutes:
        out += f"{minutes}m"
    out += f"{seconds}s"
    return out
