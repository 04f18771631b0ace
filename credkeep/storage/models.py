from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Fixed role set; seeded once and never created at runtime."""

    USER = "ROLE_USER"
    ADMIN = "ROLE_ADMIN"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    password_algo: str = "argon2id"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: bool = False
    tfa_enabled: bool = False
    tfa_secret: Optional[str] = None
    roles: Set[Role] = field(default_factory=lambda: {Role.USER})
    created_at: datetime = field(default_factory=utcnow)

    @property
    def role_names(self) -> List[str]:
        return sorted(role.value for role in self.roles)


@dataclass
class RefreshToken:
    token: str
    user_id: str
    expiry_date: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expiry_date


@dataclass
class PasswordResetToken:
    token: str
    user_id: str
    expiry_date: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expiry_date


@dataclass
class EmailVerificationToken:
    token: str
    user_id: str
    expiry_date: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expiry_date
