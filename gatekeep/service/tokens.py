from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from gatekeep.config import Settings
from gatekeep.logging import email_hash, get_logger
from gatekeep.service.errors import ExpiredError, NotFoundError
from gatekeep.storage.common import SecretStore
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Token, TokenKind

logger = get_logger(__name__)

TWO_FACTOR_CODE_MIN = 100_000
TWO_FACTOR_CODE_MAX = 999_999
ISSUE_ATTEMPTS = 5


def uuid_token() -> str:
    return str(uuid.uuid4())


def numeric_code() -> str:
    """Uniform six-digit code in [100000, 999999]."""
    return str(
        TWO_FACTOR_CODE_MIN + secrets.randbelow(TWO_FACTOR_CODE_MAX - TWO_FACTOR_CODE_MIN + 1)
    )


@dataclass(frozen=True)
class TokenPolicy:
    kind: TokenKind
    ttl: timedelta
    generate: Callable[[], str]


def default_policies(settings: Optional[Settings] = None) -> Dict[TokenKind, TokenPolicy]:
    reset_minutes = settings.password_reset_token_ttl_minutes if settings else 60
    verify_minutes = settings.verification_token_ttl_minutes if settings else 60
    two_factor_minutes = settings.two_factor_token_ttl_minutes if settings else 5
    return {
        TokenKind.PASSWORD_RESET: TokenPolicy(
            TokenKind.PASSWORD_RESET, timedelta(minutes=reset_minutes), uuid_token
        ),
        TokenKind.VERIFICATION: TokenPolicy(
            TokenKind.VERIFICATION, timedelta(minutes=verify_minutes), uuid_token
        ),
        TokenKind.TWO_FACTOR: TokenPolicy(
            TokenKind.TWO_FACTOR, timedelta(minutes=two_factor_minutes), numeric_code
        ),
    }


class TokenLifecycleManager:
    """Creates, looks up, expires and consumes short-lived secrets.

    One manager serves every ``TokenKind``; the kind selects the TTL and the
    value generator. Expiry is evaluated by ``redeem`` at the moment of use,
    never by a background sweep, so an expired token can still be present in
    the store and is reported with ``ExpiredError`` rather than ``NotFoundError``.
    """

    def __init__(
        self,
        store: SecretStore,
        *,
        policies: Optional[Dict[TokenKind, TokenPolicy]] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policies = policies or default_policies()
        self._clock = now or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    async def issue(self, kind: TokenKind, email: str) -> Token:
        policy = self.policies[kind]
        expires = self.now() + policy.ttl
        # replace_token deletes any live token for (kind, email) in the same
        # transaction as the insert. Values are unique per kind, so a
        # six-digit code that collides with another address is regenerated.
        for attempt in range(ISSUE_ATTEMPTS):
            try:
                token = self.store.replace_token(kind, email, policy.generate(), expires)
                break
            except ConstraintViolation:
                if attempt == ISSUE_ATTEMPTS - 1:
                    raise
                logger.debug("token_value_collision", kind=kind.value, attempt=attempt)
        logger.info(
            "token_issued",
            kind=kind.value,
            email_hash=email_hash(email),
            expires=expires.isoformat(),
        )
        return token

    async def lookup_by_value(self, kind: TokenKind, value: str) -> Optional[Token]:
        return self.store.get_token_by_value(kind, value)

    async def lookup_by_email(self, kind: TokenKind, email: str) -> Optional[Token]:
        return self.store.get_token_by_email(kind, email)

    async def consume(self, kind: TokenKind, token_id: str) -> bool:
        deleted = self.store.delete_token(kind, token_id)
        logger.info("token_consumed", kind=kind.value, token_id=token_id, deleted=deleted)
        return deleted

    def is_expired(self, token: Token) -> bool:
        return token.is_expired(self.now())

    async def redeem(
        self,
        kind: TokenKind,
        value: str,
        *,
        missing_message: str = "Token does not exist!",
        expired_message: str = "Token has expired!",
    ) -> Token:
        """Return the live token for ``value`` or raise.

        The token is not deleted; the caller consumes it together with the
        action it authorizes.
        """
        token = await self.lookup_by_value(kind, value)
        if not token:
            logger.warning("token_not_found", kind=kind.value, token_prefix=value[:4])
            raise NotFoundError(missing_message, detail={"kind": kind.value})
        if self.is_expired(token):
            logger.warning(
                "token_expired",
                kind=kind.value,
                email_hash=email_hash(token.email),
                expired_at=token.expires.isoformat(),
            )
            raise ExpiredError(expired_message, detail={"kind": kind.value})
        return token
