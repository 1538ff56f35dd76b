from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional

from elibrary.config import settings
from elibrary.models import UserProfile


class SessionStatus(str, Enum):
    ANONYMOUS = "anonymous"
    VERIFYING = "verifying"
    AUTHENTICATED = "authenticated"
    INVALID = "invalid"


@dataclass(frozen=True)
class Session:
    """Immutable snapshot of the current authentication state.

    ``SessionManager`` replaces the snapshot on every transition, so a
    consumer holding one never sees it change underneath it.
    """

    token: Optional[str] = field(default=None, repr=False)
    identity: Optional[UserProfile] = None
    roles: FrozenSet[str] = frozenset()
    status: SessionStatus = SessionStatus.ANONYMOUS

    def __post_init__(self) -> None:
        authenticated = self.token is not None and self.identity is not None
        if authenticated != (self.status is SessionStatus.AUTHENTICATED):
            raise ValueError(
                f"inconsistent session: status={self.status.value}, "
                f"token={'set' if self.token else 'none'}, "
                f"identity={'set' if self.identity else 'none'}"
            )

    @classmethod
    def authenticated(cls, token: str, identity: UserProfile) -> "Session":
        return cls(
            token=token,
            identity=identity,
            roles=frozenset(identity.roles),
            status=SessionStatus.AUTHENTICATED,
        )

    @property
    def is_authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED

    @property
    def is_admin(self) -> bool:
        return self.is_authenticated and settings.admin_role in self.roles

    @property
    def user_id(self) -> Optional[int]:
        return self.identity.id if self.identity else None
