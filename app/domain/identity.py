from dataclasses import dataclass
from enum import Enum


class UserRole(str, Enum):
    CLIENT = "client"
    MASTER = "master"
    ADMIN = "admin"


@dataclass(frozen=True)
class AuthContext:
    """Caller identity supplied by the authentication layer."""

    user_id: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
