from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

import models
from users import ROLE_ADMIN, get_user_by_id

ROLE_GUEST = "guest"


@dataclass(frozen=True)
class Principal:
    """Who is making the request. Derived per request, never stored."""
    user_id: Optional[int] = None
    username: str = "guest"
    role: str = ROLE_GUEST
    anonymous: bool = True

    @property
    def is_admin(self) -> bool:
        return not self.anonymous and self.role == ROLE_ADMIN


ANONYMOUS = Principal()

# with auth turned off every client acts as this principal
UNSAFE_ADMIN = Principal(user_id=0, username="unsafe-admin", role=ROLE_ADMIN, anonymous=False)


def derive_principal(db: Session, session: models.SessionRecord, auth_enabled: bool = True) -> Principal:
    """
    Map a session to a principal. A session bound to a user that has since
    been disabled or deleted yields the anonymous principal.
    """
    if not auth_enabled:
        return UNSAFE_ADMIN
    if session is None or session.user_id is None:
        return ANONYMOUS
    user = get_user_by_id(db, session.user_id)
    if not user or user.disabled:
        return ANONYMOUS
    return Principal(user_id=user.id, username=user.username, role=user.role, anonymous=False)
