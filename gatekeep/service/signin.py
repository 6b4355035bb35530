"""Sign-in decision state machine.

A sign-in attempt moves through explicit states::

    Start -> CredentialOrIdentityCheck -> EmailVerifiedCheck -> TwoFactorCheck
          -> Granted | Denied

Each state is a small frozen dataclass and ``SignInDecisionMachine.step`` maps
one state to the next, so every branch can be exercised on its own. External
identity attempts (the OAuth handshake already vouched for the user) jump from
``Start`` straight to ``Granted``.

The two-factor code submission and the account-link event are side entries
that prepare state the machine later reads; they do not run the machine.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional, Union

from gatekeep.logging import email_hash, get_logger
from gatekeep.service.credentials import CredentialVerifier
from gatekeep.service.errors import ExpiredError, NotFoundError, ValidationError
from gatekeep.service.tokens import TokenLifecycleManager
from gatekeep.storage.common import SecretStore, normalize_email
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Account, TokenKind, TwoFactorConfirmation, User

logger = get_logger(__name__)

# Stable denial reasons
INVALID_CREDENTIALS = "invalid_credentials"
EMAIL_UNVERIFIED = "email_unverified"
TWO_FACTOR_UNCONFIRMED = "two_factor_unconfirmed"
TWO_FACTOR_REPLAYED = "two_factor_replayed"


@dataclass(frozen=True)
class CredentialAttempt:
    email: str
    password: str


@dataclass(frozen=True)
class IdentityAttempt:
    """A sign-in vouched for by an external identity provider."""

    provider: str
    user_id: Optional[str] = None


Attempt = Union[CredentialAttempt, IdentityAttempt]


@dataclass(frozen=True)
class Start:
    attempt: Attempt


@dataclass(frozen=True)
class CredentialOrIdentityCheck:
    attempt: CredentialAttempt


@dataclass(frozen=True)
class EmailVerifiedCheck:
    user: User


@dataclass(frozen=True)
class TwoFactorCheck:
    user: User


@dataclass(frozen=True)
class Granted:
    # None for identity attempts; the claims pipeline resolves by subject_id
    user: Optional[User] = None
    subject_id: Optional[str] = None


@dataclass(frozen=True)
class Denied:
    reason: str


SignInState = Union[
    Start, CredentialOrIdentityCheck, EmailVerifiedCheck, TwoFactorCheck, Granted, Denied
]
Outcome = Union[Granted, Denied]


def is_terminal(state: SignInState) -> bool:
    return isinstance(state, (Granted, Denied))


class SignInDecisionMachine:
    def __init__(
        self,
        store: SecretStore,
        tokens: TokenLifecycleManager,
        credentials: CredentialVerifier,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.credentials = credentials

    async def step(self, state: SignInState) -> SignInState:
        """Advance ``state`` by exactly one transition."""
        if isinstance(state, Start):
            attempt = state.attempt
            if isinstance(attempt, IdentityAttempt):
                return Granted(subject_id=attempt.user_id)
            return CredentialOrIdentityCheck(attempt)

        if isinstance(state, CredentialOrIdentityCheck):
            user = await self.credentials.verify(state.attempt.email, state.attempt.password)
            if not user:
                return Denied(INVALID_CREDENTIALS)
            return EmailVerifiedCheck(user)

        if isinstance(state, EmailVerifiedCheck):
            # No role is exempt from verification
            if state.user.email_verified is None:
                return Denied(EMAIL_UNVERIFIED)
            return TwoFactorCheck(state.user)

        if isinstance(state, TwoFactorCheck):
            user = state.user
            if not user.is_two_factor_enabled:
                return Granted(user=user, subject_id=user.id)
            confirmation = self.store.get_two_factor_confirmation(user.id)
            if not confirmation:
                return Denied(TWO_FACTOR_UNCONFIRMED)
            # Only the caller whose delete removed the row may proceed
            if not self.store.delete_two_factor_confirmation(confirmation.id):
                return Denied(TWO_FACTOR_REPLAYED)
            return Granted(user=user, subject_id=user.id)

        raise ValueError(f"terminal state has no transition: {type(state).__name__}")

    async def decide(self, attempt: Attempt) -> Outcome:
        state: SignInState = Start(attempt)
        while not is_terminal(state):
            previous = type(state).__name__
            state = await self.step(state)
            logger.debug("sign_in_transition", source=previous, target=type(state).__name__)
        if isinstance(state, Denied):
            logger.warning("sign_in_denied", reason=state.reason)
        else:
            logger.info(
                "sign_in_granted",
                user_id=state.subject_id,
                path="identity" if isinstance(attempt, IdentityAttempt) else "credentials",
            )
        return state

    async def submit_two_factor_code(self, email: str, code: str) -> TwoFactorConfirmation:
        """Exchange a live two-factor code for a single-use confirmation.

        A wrong code leaves the live token in place so the user can retry.
        """
        email = normalize_email(email)
        token = await self.tokens.lookup_by_email(TokenKind.TWO_FACTOR, email)
        if not token or not hmac.compare_digest(token.token.encode(), code.encode()):
            logger.warning("two_factor_code_rejected", email_hash=email_hash(email))
            raise NotFoundError("Invalid code!", detail={"kind": TokenKind.TWO_FACTOR.value})
        if self.tokens.is_expired(token):
            logger.warning("two_factor_code_expired", email_hash=email_hash(email))
            raise ExpiredError("Code expired!", detail={"kind": TokenKind.TWO_FACTOR.value})
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("Email does not exist!")
        try:
            confirmation = self.store.confirm_two_factor(token.id, user.id)
        except ConstraintViolation as exc:
            # A concurrent submission consumed the token first
            logger.warning("two_factor_confirm_conflict", user_id=user.id, error=exc.message)
            raise NotFoundError("Invalid code!") from exc
        logger.info("two_factor_confirmed", user_id=user.id)
        return confirmation

    async def link_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        type: str = "oauth",
    ) -> Account:
        """Attach an external identity; the user's email counts as verified from now."""
        if not self.store.get_user(user_id):
            raise NotFoundError("User does not exist!", detail={"user_id": user_id})
        try:
            account = self.store.link_account(
                user_id,
                provider,
                provider_account_id,
                linked_at=self.tokens.now(),
                type=type,
            )
        except ConstraintViolation as exc:
            raise ValidationError(
                "Account already linked!", detail={"provider": provider}
            ) from exc
        logger.info("account_linked", user_id=user_id, provider=provider)
        return account
