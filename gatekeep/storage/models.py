from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class TokenKind(str, Enum):
    """Independent namespaces for short-lived secrets; never cross-matched."""

    PASSWORD_RESET = "password_reset"
    VERIFICATION = "verification"
    TWO_FACTOR = "two_factor"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    password_hash: Optional[str] = None
    role: UserRole = UserRole.USER
    email_verified: Optional[datetime] = None
    is_two_factor_enabled: bool = False
    image: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: UserRole = UserRole.USER,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            password_hash=password_hash,
            role=role,
        )


@dataclass
class Token:
    id: str
    kind: TokenKind
    email: str
    token: str
    expires: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires < now


@dataclass
class TwoFactorConfirmation:
    id: str
    user_id: str


@dataclass
class Account:
    """An external identity linked to a user."""

    id: str
    user_id: str
    provider: str
    provider_account_id: str
    type: str = "oauth"
    created_at: datetime = field(default_factory=utcnow)
