"""Tests for the boundary actions and their stable result messages."""

import asyncio
import time

import pytest

from gatekeep.service.actions import AuthActions
from gatekeep.service.errors import ExpiredError, TransactionError
from gatekeep.storage.models import TokenKind, UserRole

PASSWORD = "Secret-pass-1"


def _last_mail(email_service):
    assert email_service.outbox, "no mail was sent"
    return email_service.outbox[-1]


class TestLogin:
    async def test_invalid_fields(self, actions):
        result = await actions.login({"email": "not-an-email", "password": "x"})
        assert result.as_dict() == {"error": "Invalid fields!"}

    async def test_unknown_email(self, actions):
        result = await actions.login({"email": "ghost@example.com", "password": PASSWORD})
        assert result.error == "Email does not exist!"

    async def test_user_without_password(self, actions, make_user):
        make_user(password=None)
        result = await actions.login({"email": "user@example.com", "password": PASSWORD})
        assert result.error == "Email does not exist!"

    async def test_unverified_user_gets_confirmation_email(
        self, actions, make_user, tokens, email_service
    ):
        make_user(verified=False)
        result = await actions.login({"email": "user@example.com", "password": PASSWORD})

        assert result.as_dict() == {"success": "Confirmation email sent!"}
        token = await tokens.lookup_by_email(TokenKind.VERIFICATION, "user@example.com")
        assert token is not None
        to, _, body = _last_mail(email_service)
        assert to == "user@example.com"
        assert token.token in body

    async def test_wrong_password(self, actions, make_user):
        make_user()
        result = await actions.login({"email": "user@example.com", "password": "wrong-pass"})
        assert result.error == "Invalid credentials!"

    async def test_successful_login_returns_session(self, actions, make_user, claims):
        user = make_user()
        result = await actions.login({"email": "user@example.com", "password": PASSWORD})

        assert result.success == "Logged in!"
        assert claims.decode(result.session_token)["sub"] == user.id

    async def test_two_factor_challenge_issues_code(
        self, actions, make_user, tokens, email_service
    ):
        make_user(two_factor=True)
        result = await actions.login({"email": "user@example.com", "password": PASSWORD})

        assert result.as_dict() == {"two_factor": True}
        token = await tokens.lookup_by_email(TokenKind.TWO_FACTOR, "user@example.com")
        assert token.token in _last_mail(email_service)[2]

    async def test_two_factor_challenge_requires_password(self, actions, make_user, tokens):
        make_user(two_factor=True)
        result = await actions.login({"email": "user@example.com", "password": "wrong-pass"})

        assert result.error == "Invalid credentials!"
        assert await tokens.lookup_by_email(TokenKind.TWO_FACTOR, "user@example.com") is None

    async def test_two_factor_login_with_code(self, actions, make_user, tokens, memory_store):
        user = make_user(two_factor=True)
        await actions.login({"email": "user@example.com", "password": PASSWORD})
        code = (await tokens.lookup_by_email(TokenKind.TWO_FACTOR, user.email)).token

        result = await actions.login(
            {"email": "user@example.com", "password": PASSWORD, "code": code}
        )

        assert result.success == "Logged in!"
        assert memory_store.get_two_factor_confirmation(user.id) is None
        assert await tokens.lookup_by_email(TokenKind.TWO_FACTOR, user.email) is None

    async def test_two_factor_wrong_code(self, actions, make_user, tokens):
        make_user(two_factor=True)
        await actions.login({"email": "user@example.com", "password": PASSWORD})
        issued = await tokens.lookup_by_email(TokenKind.TWO_FACTOR, "user@example.com")
        wrong = "999999" if issued.token != "999999" else "999998"

        result = await actions.login(
            {"email": "user@example.com", "password": PASSWORD, "code": wrong}
        )

        assert result.error == "Invalid code!"
        assert await tokens.lookup_by_value(TokenKind.TWO_FACTOR, issued.token)

    async def test_two_factor_expired_code(self, actions, make_user, tokens, clock):
        make_user(two_factor=True)
        await actions.login({"email": "user@example.com", "password": PASSWORD})
        code = (await tokens.lookup_by_email(TokenKind.TWO_FACTOR, "user@example.com")).token
        clock.advance(minutes=10)

        result = await actions.login(
            {"email": "user@example.com", "password": PASSWORD, "code": code}
        )
        assert result.error == "Code expired!"

    async def test_malformed_code_is_invalid_fields(self, actions, make_user):
        make_user(two_factor=True)
        result = await actions.login(
            {"email": "user@example.com", "password": PASSWORD, "code": "12ab"}
        )
        assert result.error == "Invalid fields!"


class TestIdentityLogin:
    async def test_identity_login_mints_session(self, actions, machine, make_user, claims):
        user = make_user(verified=False, password=None)
        await machine.link_account(user.id, "github", "gh-1")

        result = await actions.identity_login(user.id, "github")
        payload = claims.decode(result.session_token)

        assert result.success == "Logged in!"
        assert payload["is_oauth"] is True


class TestReset:
    async def test_invalid_email(self, actions):
        assert (await actions.reset({"email": "nope"})).error == "Invalid email!"

    async def test_unknown_email(self, actions):
        assert (await actions.reset({"email": "ghost@example.com"})).error == "Email not found!"

    async def test_reset_sends_link(self, actions, make_user, tokens, email_service):
        make_user()
        result = await actions.reset({"email": "User@Example.com"})

        assert result.success == "Reset email sent!"
        token = await tokens.lookup_by_email(TokenKind.PASSWORD_RESET, "user@example.com")
        assert f"/auth/new-password?token={token.token}" in _last_mail(email_service)[2]

    async def test_slow_mail_server_does_not_stall_other_requests(
        self, actions, make_user, email_service, monkeypatch
    ):
        make_user()

        def slow_send(to_email, token):
            time.sleep(0.5)
            return True

        monkeypatch.setattr(email_service, "send_password_reset_email", slow_send)
        loop = asyncio.get_running_loop()
        gaps = []
        sending = True

        async def heartbeat():
            last = loop.time()
            while sending:
                await asyncio.sleep(0.02)
                now = loop.time()
                gaps.append(now - last)
                last = now

        ticker = asyncio.create_task(heartbeat())
        result = await actions.reset({"email": "user@example.com"})
        sending = False
        await ticker

        assert result.success == "Reset email sent!"
        assert len(gaps) > 5
        assert max(gaps) < 0.25


class TestNewPassword:
    async def _reset_token(self, actions, tokens):
        await actions.reset({"email": "user@example.com"})
        return await tokens.lookup_by_email(TokenKind.PASSWORD_RESET, "user@example.com")

    async def test_missing_token(self, actions):
        assert (await actions.new_password({"password": "abcdef"}, None)).error == "Missing token!"

    async def test_short_password(self, actions):
        result = await actions.new_password({"password": "abc"}, "some-token")
        assert result.error == "Invalid fields!"

    async def test_unknown_token(self, actions):
        result = await actions.new_password({"password": "abcdef"}, "unknown")
        assert result.error == "Invalid token!"

    async def test_password_updated(self, actions, make_user, tokens, credentials):
        make_user()
        token = await self._reset_token(actions, tokens)

        result = await actions.new_password({"password": "brand-new-pass"}, token.token)

        assert result.success == "Password updated!"
        assert await credentials.verify("user@example.com", "brand-new-pass")
        assert await credentials.verify("user@example.com", PASSWORD) is None
        assert await tokens.lookup_by_value(TokenKind.PASSWORD_RESET, token.token) is None

    async def test_token_is_single_use(self, actions, make_user, tokens):
        make_user()
        token = await self._reset_token(actions, tokens)
        await actions.new_password({"password": "brand-new-pass"}, token.token)

        again = await actions.new_password({"password": "another-pass"}, token.token)
        assert again.error == "Invalid token!"

    async def test_expired_reset_leaves_hash_unchanged(
        self, actions, make_user, tokens, clock, memory_store
    ):
        user = make_user()
        token = await self._reset_token(actions, tokens)
        clock.advance(hours=1, minutes=1)

        with pytest.raises(ExpiredError):
            await actions.change_password(token.token, "brand-new-pass")
        result = await actions.new_password({"password": "brand-new-pass"}, token.token)

        assert result.error == "Token has expired!"
        assert memory_store.get_user(user.id).password_hash == user.password_hash

    async def test_user_removed_after_token_issued(self, actions, make_user, tokens, memory_store):
        user = make_user()
        token = await self._reset_token(actions, tokens)
        memory_store.users.pop(user.id)

        result = await actions.new_password({"password": "brand-new-pass"}, token.token)
        assert result.error == "Email does not exist!"

    async def test_failure_between_writes_rolls_back_both(
        self, actions, make_user, tokens, memory_store, monkeypatch
    ):
        user = make_user()
        token = await self._reset_token(actions, tokens)

        def _fail(kind, token_id):
            raise RuntimeError("disk full")

        # The hash update has already been applied when the delete fails
        monkeypatch.setattr(memory_store, "_delete_token", _fail)
        with pytest.raises(TransactionError):
            await actions.change_password(token.token, "brand-new-pass")
        result = await actions.new_password({"password": "brand-new-pass"}, token.token)
        monkeypatch.undo()

        assert result.error == "An error occurred while updating the password."
        assert memory_store.get_user(user.id).password_hash == user.password_hash
        assert await tokens.redeem(TokenKind.PASSWORD_RESET, token.token)


class TestNewVerification:
    async def test_missing_token(self, actions):
        assert (await actions.new_verification("")).error == "Missing token!"

    async def test_unknown_token(self, actions):
        assert (await actions.new_verification("nope")).error == "Token does not exist!"

    async def test_expired_token(self, actions, make_user, tokens, clock):
        make_user(verified=False)
        token = await tokens.issue(TokenKind.VERIFICATION, "user@example.com")
        clock.advance(hours=2)
        assert (await actions.new_verification(token.token)).error == "Token has expired!"

    async def test_unknown_email(self, actions, tokens):
        token = await tokens.issue(TokenKind.VERIFICATION, "ghost@example.com")
        assert (await actions.new_verification(token.token)).error == "Email does not exist!"

    async def test_email_verified(self, actions, make_user, tokens, clock, memory_store):
        user = make_user(verified=False)
        token = await tokens.issue(TokenKind.VERIFICATION, "user@example.com")

        result = await actions.new_verification(token.token)

        assert result.success == "Email verified!"
        assert memory_store.get_user(user.id).email_verified == clock()
        assert await tokens.lookup_by_value(TokenKind.VERIFICATION, token.token) is None

    async def test_verified_user_can_log_in(self, actions, make_user, email_service):
        make_user(verified=False)
        await actions.login({"email": "user@example.com", "password": PASSWORD})
        link = _last_mail(email_service)[2]
        token_value = link.split("token=", 1)[1].split()[0]

        assert (await actions.new_verification(token_value)).success == "Email verified!"
        result = await actions.login({"email": "user@example.com", "password": PASSWORD})
        assert result.success == "Logged in!"


class TestSettings:
    async def test_requires_known_subject(self, actions):
        result = await actions.update_settings("missing", {"name": "x"})
        assert result.error == "Unauthorized!"

    async def test_update_name(self, actions, make_user, memory_store):
        user = make_user()
        result = await actions.update_settings(user.id, {"name": "New Name", "role": "USER"})

        assert result.success == "Settings Updated!"
        stored = memory_store.get_user(user.id)
        assert stored.name == "New Name"
        assert stored.role == UserRole.USER

    async def test_user_cannot_grant_self_admin(self, actions, make_user, memory_store):
        user = make_user()
        result = await actions.update_settings(user.id, {"name": "New Name", "role": "ADMIN"})

        assert result.error == "Unauthorized!"
        stored = memory_store.get_user(user.id)
        assert stored.role == UserRole.USER
        assert stored.name == "Test User"

    async def test_admin_can_change_role(self, actions, make_user, memory_store):
        user = make_user()
        memory_store.update_user(user.id, role=UserRole.ADMIN)

        result = await actions.update_settings(user.id, {"role": "USER"})

        assert result.success == "Settings Updated!"
        assert memory_store.get_user(user.id).role == UserRole.USER

    async def test_new_password_respects_configured_minimum(
        self, memory_store, tokens, credentials, machine, claims, email_service, make_user
    ):
        strict = AuthActions(
            memory_store, tokens, credentials, machine, claims, email_service,
            password_min_length=12,
        )
        user = make_user()

        short = await strict.update_settings(
            user.id, {"password": PASSWORD, "new_password": "short6"}
        )
        assert short.error == "Invalid fields!"
        long_enough = await strict.update_settings(
            user.id, {"password": PASSWORD, "new_password": "twelve-chars"}
        )
        assert long_enough.success == "Settings Updated!"

    async def test_password_without_new_password(self, actions, make_user):
        user = make_user()
        result = await actions.update_settings(user.id, {"password": PASSWORD})
        assert result.error == "Invalid fields!"

    async def test_incorrect_current_password(self, actions, make_user):
        user = make_user()
        result = await actions.update_settings(
            user.id, {"password": "wrong-pass", "new_password": "brand-new-pass"}
        )
        assert result.error == "Incorrect password!"

    async def test_change_password(self, actions, make_user, credentials):
        user = make_user()
        result = await actions.update_settings(
            user.id, {"password": PASSWORD, "new_password": "brand-new-pass"}
        )

        assert result.success == "Settings Updated!"
        assert await credentials.verify("user@example.com", "brand-new-pass")

    async def test_enable_two_factor(self, actions, make_user, memory_store):
        user = make_user()
        await actions.update_settings(user.id, {"is_two_factor_enabled": True})
        assert memory_store.get_user(user.id).is_two_factor_enabled is True

    async def test_email_change_triggers_reverification(
        self, actions, make_user, tokens, memory_store, email_service
    ):
        user = make_user()
        result = await actions.update_settings(user.id, {"email": "new@example.com"})

        assert result.success == "Verification email sent!"
        stored = memory_store.get_user(user.id)
        assert stored.email == "new@example.com"
        assert stored.email_verified is None
        token = await tokens.lookup_by_email(TokenKind.VERIFICATION, "new@example.com")
        assert _last_mail(email_service)[0] == "new@example.com"

        assert (await actions.new_verification(token.token)).success == "Email verified!"
        assert memory_store.get_user(user.id).email_verified is not None

    async def test_email_in_use(self, actions, make_user):
        make_user("taken@example.com")
        user = make_user()
        result = await actions.update_settings(user.id, {"email": "taken@example.com"})
        assert result.error == "Email already in use!"

    async def test_oauth_user_cannot_change_protected_fields(
        self, actions, machine, make_user, memory_store
    ):
        user = make_user()
        await machine.link_account(user.id, "github", "gh-1")

        result = await actions.update_settings(
            user.id,
            {
                "name": "Still Allowed",
                "email": "new@example.com",
                "password": PASSWORD,
                "new_password": "brand-new-pass",
                "is_two_factor_enabled": True,
            },
        )

        assert result.success == "Settings Updated!"
        stored = memory_store.get_user(user.id)
        assert stored.name == "Still Allowed"
        assert stored.email == "user@example.com"
        assert stored.password_hash == user.password_hash
        assert stored.is_two_factor_enabled is False
