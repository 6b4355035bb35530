"""Store contract and helpers shared between memory and postgres implementations.

The authentication services only ever reach persistent state through the
``SecretStore`` protocol below. Every method that touches more than one record
is atomic: either all of its writes become visible or none do.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional, Protocol

from gatekeep.storage.models import (
    Account,
    Token,
    TokenKind,
    TwoFactorConfirmation,
    User,
    UserRole,
)

# Columns a caller may change through ``update_user``
UPDATABLE_USER_FIELDS = frozenset(
    {
        "name",
        "email",
        "password_hash",
        "role",
        "email_verified",
        "is_two_factor_enabled",
        "image",
    }
)


class SecretStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: UserRole = UserRole.USER,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    # tokens
    def get_token_by_value(self, kind: TokenKind, value: str) -> Optional[Token]: ...

    def get_token_by_email(self, kind: TokenKind, email: str) -> Optional[Token]: ...

    def replace_token(
        self, kind: TokenKind, email: str, value: str, expires: datetime
    ) -> Token: ...

    def delete_token(self, kind: TokenKind, token_id: str) -> bool: ...

    # two-factor confirmations
    def get_two_factor_confirmation(
        self, user_id: str
    ) -> Optional[TwoFactorConfirmation]: ...

    def confirm_two_factor(
        self, token_id: str, user_id: str
    ) -> TwoFactorConfirmation: ...

    def delete_two_factor_confirmation(self, confirmation_id: str) -> bool: ...

    # external identities
    def get_account_by_user_id(self, user_id: str) -> Optional[Account]: ...

    def link_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        linked_at: datetime,
        type: str = "oauth",
    ) -> Account: ...

    # compound operations
    def reset_password(self, user_id: str, password_hash: str, token_id: str) -> User: ...

    def verify_email(
        self, user_id: str, email: str, verified_at: datetime, token_id: str
    ) -> User: ...


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return email.strip().lower()


def check_user_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_USER_FIELDS
    if unknown:
        raise ValueError(f"unknown user fields: {', '.join(sorted(unknown))}")


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict-like row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def user_from_row(row: Any) -> User:
    raw_role = safe_row_value(row, "role", UserRole.USER.value)
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=safe_row_value(row, "name"),
        password_hash=safe_row_value(row, "password"),
        role=UserRole(raw_role),
        email_verified=safe_row_value(row, "email_verified"),
        is_two_factor_enabled=bool(safe_row_value(row, "is_two_factor_enabled", False)),
        image=safe_row_value(row, "image"),
    )


def token_from_row(kind: TokenKind, row: Any) -> Token:
    return Token(
        id=str(row["id"]),
        kind=kind,
        email=row["email"],
        token=row["token"],
        expires=row["expires"],
    )
