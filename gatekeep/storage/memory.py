from __future__ import annotations

import contextlib
import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from gatekeep.logging import get_logger
from gatekeep.storage.common import (
    check_user_fields,
    generate_uuid,
    normalize_email,
)
from gatekeep.storage.errors import ConstraintViolation, StoreTransactionError
from gatekeep.storage.models import (
    Account,
    Token,
    TokenKind,
    TwoFactorConfirmation,
    User,
    UserRole,
)


class MemoryStore:
    """In-process store used for tests and single-node development.

    All reads and writes go through one re-entrant lock, which gives the
    serializable isolation the token invariants rely on. Compound writes run
    inside ``_transaction`` and are rolled back from a snapshot on failure.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[TokenKind, Dict[str, Token]] = {kind: {} for kind in TokenKind}
        self.two_factor_confirmations: Dict[str, TwoFactorConfirmation] = {}
        self.accounts: List[Account] = []
        # RLock so compound operations can call the single-record helpers
        self._data_lock = threading.RLock()

    @contextlib.contextmanager
    def _transaction(self, operation: str) -> Iterator[None]:
        with self._data_lock:
            snapshot = (
                copy.deepcopy(self.users),
                copy.deepcopy(self.tokens),
                copy.deepcopy(self.two_factor_confirmations),
                copy.deepcopy(self.accounts),
            )
            try:
                yield
            except ConstraintViolation:
                self._restore(snapshot)
                raise
            except Exception as exc:
                self._restore(snapshot)
                self.logger.error(
                    "memory_transaction_rolled_back", operation=operation, error=str(exc)
                )
                raise StoreTransactionError(
                    f"{operation} failed", {"operation": operation}
                ) from exc

    def _restore(self, snapshot: tuple) -> None:
        (
            self.users,
            self.tokens,
            self.two_factor_confirmations,
            self.accounts,
        ) = snapshot

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: UserRole = UserRole.USER,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email, name=name, password_hash=password_hash, role=role)
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        check_user_fields(fields)
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self._data_lock:
            return self._update_user(user_id, fields)

    def _update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        user = self.users.get(user_id)
        if not user:
            return None
        new_email = fields.get("email")
        if new_email and new_email != user.email:
            if any(u.email == new_email for u in self.users.values() if u.id != user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
        updated = replace(user, **fields)
        self.users[user_id] = updated
        return updated

    # tokens
    def get_token_by_value(self, kind: TokenKind, value: str) -> Optional[Token]:
        with self._data_lock:
            return next(
                (t for t in self.tokens[kind].values() if t.token == value), None
            )

    def get_token_by_email(self, kind: TokenKind, email: str) -> Optional[Token]:
        email = normalize_email(email)
        with self._data_lock:
            return next(
                (t for t in self.tokens[kind].values() if t.email == email), None
            )

    def replace_token(
        self, kind: TokenKind, email: str, value: str, expires: datetime
    ) -> Token:
        email = normalize_email(email)
        with self._transaction(f"replace_{kind.value}_token"):
            stale = [t.id for t in self.tokens[kind].values() if t.email == email]
            for token_id in stale:
                self._delete_token(kind, token_id)
            if any(t.token == value for t in self.tokens[kind].values()):
                raise ConstraintViolation("token value already exists", {"field": "token"})
            token = Token(
                id=generate_uuid(), kind=kind, email=email, token=value, expires=expires
            )
            self.tokens[kind][token.id] = token
            return token

    def delete_token(self, kind: TokenKind, token_id: str) -> bool:
        with self._data_lock:
            return self._delete_token(kind, token_id)

    def _delete_token(self, kind: TokenKind, token_id: str) -> bool:
        return self.tokens[kind].pop(token_id, None) is not None

    # two-factor confirmations
    def get_two_factor_confirmation(
        self, user_id: str
    ) -> Optional[TwoFactorConfirmation]:
        with self._data_lock:
            return next(
                (
                    c
                    for c in self.two_factor_confirmations.values()
                    if c.user_id == user_id
                ),
                None,
            )

    def confirm_two_factor(self, token_id: str, user_id: str) -> TwoFactorConfirmation:
        with self._transaction("confirm_two_factor"):
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if not self._delete_token(TokenKind.TWO_FACTOR, token_id):
                raise ConstraintViolation(
                    "two-factor token already consumed", {"token_id": token_id}
                )
            for existing in list(self.two_factor_confirmations.values()):
                if existing.user_id == user_id:
                    self.two_factor_confirmations.pop(existing.id, None)
            confirmation = TwoFactorConfirmation(id=generate_uuid(), user_id=user_id)
            self.two_factor_confirmations[confirmation.id] = confirmation
            return confirmation

    def delete_two_factor_confirmation(self, confirmation_id: str) -> bool:
        with self._data_lock:
            return self.two_factor_confirmations.pop(confirmation_id, None) is not None

    # external identities
    def get_account_by_user_id(self, user_id: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts if a.user_id == user_id), None)

    def link_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        linked_at: datetime,
        type: str = "oauth",
    ) -> Account:
        with self._transaction("link_account"):
            for existing in self.accounts:
                if (
                    existing.provider == provider
                    and existing.provider_account_id == provider_account_id
                ):
                    if existing.user_id != user_id:
                        raise ConstraintViolation(
                            "external identity linked to another user",
                            {"provider": provider},
                        )
                    return existing
            if self._update_user(user_id, {"email_verified": linked_at}) is None:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            account = Account(
                id=generate_uuid(),
                user_id=user_id,
                provider=provider,
                provider_account_id=provider_account_id,
                type=type,
                created_at=linked_at,
            )
            self.accounts.append(account)
            return account

    # compound operations
    def reset_password(self, user_id: str, password_hash: str, token_id: str) -> User:
        with self._transaction("reset_password"):
            user = self._update_user(user_id, {"password_hash": password_hash})
            if user is None:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if not self._delete_token(TokenKind.PASSWORD_RESET, token_id):
                raise ConstraintViolation(
                    "password reset token already consumed", {"token_id": token_id}
                )
            return user

    def verify_email(
        self, user_id: str, email: str, verified_at: datetime, token_id: str
    ) -> User:
        with self._transaction("verify_email"):
            user = self._update_user(
                user_id,
                {"email_verified": verified_at, "email": normalize_email(email)},
            )
            if user is None:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if not self._delete_token(TokenKind.VERIFICATION, token_id):
                raise ConstraintViolation(
                    "verification token already consumed", {"token_id": token_id}
                )
            return user
