"""Boundary actions.

Each public action validates its input, drives the engine and converts every
``ServiceError`` into an ``ActionResult`` carrying exactly one of ``error`` or
``success``. The messages are stable per failure branch; callers and the HTTP
layer match on them.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from gatekeep.api.schemas import (
    PASSWORD_MIN_LENGTH,
    LoginSchema,
    NewPasswordSchema,
    ResetSchema,
    SettingsSchema,
)
from gatekeep.logging import email_hash, get_logger
from gatekeep.service.claims import SessionClaimsPipeline
from gatekeep.service.credentials import CredentialVerifier
from gatekeep.service.email import EmailService
from gatekeep.service.errors import (
    NotFoundError,
    ServiceError,
    TransactionError,
    UnauthorizedError,
    ValidationError,
)
from gatekeep.service.signin import (
    EMAIL_UNVERIFIED,
    INVALID_CREDENTIALS,
    TWO_FACTOR_REPLAYED,
    TWO_FACTOR_UNCONFIRMED,
    CredentialAttempt,
    Denied,
    IdentityAttempt,
    SignInDecisionMachine,
)
from gatekeep.service.tokens import TokenLifecycleManager
from gatekeep.storage.common import SecretStore
from gatekeep.storage.errors import ConstraintViolation, StoreTransactionError
from gatekeep.storage.models import TokenKind, User, UserRole

logger = get_logger(__name__)

DENIAL_MESSAGES = {
    INVALID_CREDENTIALS: "Invalid credentials!",
    EMAIL_UNVERIFIED: "Email not verified!",
    TWO_FACTOR_UNCONFIRMED: "Two-factor code required!",
    TWO_FACTOR_REPLAYED: "Two-factor code required!",
}
PASSWORD_UPDATE_FAILED = "An error occurred while updating the password."
EMAIL_VERIFY_FAILED = "An error occurred while verifying the email."


class ActionResult(BaseModel):
    error: Optional[str] = None
    success: Optional[str] = None
    two_factor: Optional[bool] = None
    session_token: Optional[str] = None

    @classmethod
    def fail(cls, message: str) -> "ActionResult":
        return cls(error=message)

    @classmethod
    def ok(cls, message: str, **extra: Any) -> "ActionResult":
        return cls(success=message, **extra)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AuthActions:
    def __init__(
        self,
        store: SecretStore,
        tokens: TokenLifecycleManager,
        credentials: CredentialVerifier,
        machine: SignInDecisionMachine,
        claims: SessionClaimsPipeline,
        email: EmailService,
        *,
        password_min_length: int = PASSWORD_MIN_LENGTH,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.credentials = credentials
        self.machine = machine
        self.claims = claims
        self.email = email
        # Passed to the schemas as validation context
        self._schema_context = {"password_min_length": password_min_length}

    async def login(self, values: Dict[str, Any]) -> ActionResult:
        try:
            return await self._login(values)
        except ServiceError as exc:
            return ActionResult.fail(exc.message)

    async def _login(self, values: Dict[str, Any]) -> ActionResult:
        try:
            data = LoginSchema.model_validate(values)
        except SchemaError:
            raise ValidationError("Invalid fields!")

        user = self.store.get_user_by_email(data.email)
        if not user or not user.email or not user.password_hash:
            raise NotFoundError("Email does not exist!")

        if user.email_verified is None:
            token = await self.tokens.issue(TokenKind.VERIFICATION, user.email)
            await asyncio.to_thread(self.email.send_verification_email, token.email, token.token)
            logger.info("login_verification_required", user_id=user.id)
            return ActionResult.ok("Confirmation email sent!")

        if user.is_two_factor_enabled:
            # The password is checked before a code is issued or consumed
            if not await self.credentials.verify(data.email, data.password):
                raise UnauthorizedError("Invalid credentials!")
            if data.code:
                await self.machine.submit_two_factor_code(user.email, data.code)
            else:
                token = await self.tokens.issue(TokenKind.TWO_FACTOR, user.email)
                await asyncio.to_thread(
                    self.email.send_two_factor_token_email, token.email, token.token
                )
                logger.info("login_two_factor_challenge", user_id=user.id)
                return ActionResult(two_factor=True)

        outcome = await self.machine.decide(CredentialAttempt(data.email, data.password))
        if isinstance(outcome, Denied):
            raise UnauthorizedError(
                DENIAL_MESSAGES.get(outcome.reason, "Invalid credentials!"),
                detail={"reason": outcome.reason},
            )
        session = await self.claims.mint(outcome.user or outcome.subject_id)
        return ActionResult.ok("Logged in!", session_token=session.token)

    async def identity_login(self, user_id: str, provider: str) -> ActionResult:
        """Sign in a user whose identity an external provider has already verified."""
        outcome = await self.machine.decide(IdentityAttempt(provider=provider, user_id=user_id))
        if isinstance(outcome, Denied):
            return ActionResult.fail(DENIAL_MESSAGES.get(outcome.reason, "Invalid credentials!"))
        session = await self.claims.mint(outcome.subject_id)
        return ActionResult.ok("Logged in!", session_token=session.token)

    async def reset(self, values: Dict[str, Any]) -> ActionResult:
        try:
            data = ResetSchema.model_validate(values)
        except SchemaError:
            return ActionResult.fail("Invalid email!")
        user = self.store.get_user_by_email(data.email)
        if not user:
            logger.info("password_reset_unknown_email", email_hash=email_hash(data.email))
            return ActionResult.fail("Email not found!")
        token = await self.tokens.issue(TokenKind.PASSWORD_RESET, user.email)
        await asyncio.to_thread(self.email.send_password_reset_email, token.email, token.token)
        return ActionResult.ok("Reset email sent!")

    async def new_password(
        self, values: Dict[str, Any], token: Optional[str] = None
    ) -> ActionResult:
        if not token:
            return ActionResult.fail("Missing token!")
        try:
            data = NewPasswordSchema.model_validate(values, context=self._schema_context)
        except SchemaError:
            return ActionResult.fail("Invalid fields!")
        try:
            await self.change_password(token, data.password)
        except ServiceError as exc:
            return ActionResult.fail(exc.message)
        return ActionResult.ok("Password updated!")

    async def change_password(self, token_value: str, password: str) -> User:
        """Set a new password with a live reset token.

        The hash update and the token deletion commit together or not at all.
        """
        token = await self.tokens.redeem(
            TokenKind.PASSWORD_RESET, token_value, missing_message="Invalid token!"
        )
        user = self.store.get_user_by_email(token.email)
        if not user:
            raise NotFoundError("Email does not exist!")
        password_hash = self.credentials.hash_password(password)
        try:
            updated = self.store.reset_password(user.id, password_hash, token.id)
        except (StoreTransactionError, ConstraintViolation) as exc:
            logger.error("password_reset_failed", user_id=user.id, error=exc.message)
            raise TransactionError(PASSWORD_UPDATE_FAILED) from exc
        logger.info("password_reset_completed", user_id=user.id)
        return updated

    async def new_verification(self, token: Optional[str]) -> ActionResult:
        if not token:
            return ActionResult.fail("Missing token!")
        try:
            await self.verify_email(token)
        except ServiceError as exc:
            return ActionResult.fail(exc.message)
        return ActionResult.ok("Email verified!")

    async def verify_email(self, token_value: str) -> User:
        token = await self.tokens.redeem(TokenKind.VERIFICATION, token_value)
        user = self.store.get_user_by_email(token.email)
        if not user:
            raise NotFoundError("Email does not exist!")
        try:
            updated = self.store.verify_email(user.id, token.email, self.tokens.now(), token.id)
        except (StoreTransactionError, ConstraintViolation) as exc:
            logger.error("email_verification_failed", user_id=user.id, error=exc.message)
            raise TransactionError(EMAIL_VERIFY_FAILED) from exc
        logger.info("email_verified", user_id=user.id)
        return updated

    async def update_settings(
        self, subject_id: Optional[str], values: Dict[str, Any]
    ) -> ActionResult:
        try:
            return await self._update_settings(subject_id, values)
        except ServiceError as exc:
            return ActionResult.fail(exc.message)

    async def _update_settings(
        self, subject_id: Optional[str], values: Dict[str, Any]
    ) -> ActionResult:
        user = self.store.get_user(subject_id) if subject_id else None
        if not user:
            raise UnauthorizedError("Unauthorized!")
        try:
            data = SettingsSchema.model_validate(values, context=self._schema_context)
        except SchemaError:
            raise ValidationError("Invalid fields!")

        requested = data.model_dump(exclude_unset=True)
        if self.store.get_account_by_user_id(user.id) is not None:
            # Identity-provider users manage these with their provider
            for key in ("email", "password", "new_password", "is_two_factor_enabled"):
                requested.pop(key, None)

        if (
            requested.get("role") is not None
            and requested["role"] != user.role
            and user.role != UserRole.ADMIN
        ):
            logger.warning("settings_role_change_denied", user_id=user.id)
            raise UnauthorizedError("Unauthorized!")

        fields: Dict[str, Any] = {}
        for key in ("name", "role", "is_two_factor_enabled"):
            if key in requested and requested[key] is not None:
                fields[key] = requested[key]

        new_email = requested.get("email")
        email_changed = bool(new_email) and new_email != user.email
        if email_changed:
            existing = self.store.get_user_by_email(new_email)
            if existing and existing.id != user.id:
                raise ValidationError("Email already in use!")
            # The new address is unverified until its token is redeemed
            fields["email"] = new_email
            fields["email_verified"] = None

        if requested.get("password") and requested.get("new_password"):
            if not user.password_hash or not self.credentials.check_hash(
                user.password_hash, requested["password"]
            ):
                raise ValidationError("Incorrect password!")
            fields["password_hash"] = self.credentials.hash_password(requested["new_password"])

        if fields:
            try:
                self.store.update_user(user.id, **fields)
            except ConstraintViolation as exc:
                raise ValidationError("Email already in use!") from exc
            logger.info("settings_updated", user_id=user.id, fields=sorted(fields))

        if email_changed:
            token = await self.tokens.issue(TokenKind.VERIFICATION, new_email)
            await asyncio.to_thread(self.email.send_verification_email, token.email, token.token)
            return ActionResult.ok("Verification email sent!")
        return ActionResult.ok("Settings Updated!")
