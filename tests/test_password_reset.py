"""Password reset, password change and email verification flows."""

import pytest

from authcore.service.errors import UnauthorizedError, ValidationError

PASSWORD = "Correct-horse-1"
NEW_PASSWORD = "Battery-staple-2"


class TestPasswordReset:
    async def test_unknown_email_is_silent(self, auth_service, email_service):
        assert await auth_service.request_password_reset("nobody@example.com") is None
        assert await auth_service.request_password_reset("not-an-email") is None
        assert email_service.outbox == []

    async def test_reset_link_is_mailed(self, auth_service, verified_user, email_service):
        await verified_user()
        token = await auth_service.request_password_reset("ALICE@example.com")
        to, subject, body = email_service.outbox[-1]
        assert to == "alice@example.com"
        assert subject == "Reset your password"
        assert f"https://auth.example.com/reset-password?token={token}" in body

    async def test_complete_reset_changes_password_and_revokes_sessions(
        self, auth_service, verified_user
    ):
        await verified_user()
        first = await auth_service.login("alice@example.com", PASSWORD)
        second = await auth_service.login("alice@example.com", PASSWORD)
        token = await auth_service.request_password_reset("alice@example.com")

        revoked = await auth_service.complete_password_reset(token, NEW_PASSWORD)
        assert revoked == 2
        for result in (first, second):
            assert not (await auth_service.validate(result.session.token)).valid
        with pytest.raises(UnauthorizedError):
            await auth_service.login("alice@example.com", PASSWORD)
        assert (await auth_service.login("alice@example.com", NEW_PASSWORD)).session

    async def test_token_is_single_use(self, auth_service, verified_user):
        await verified_user()
        token = await auth_service.request_password_reset("alice@example.com")
        await auth_service.complete_password_reset(token, NEW_PASSWORD)
        with pytest.raises(UnauthorizedError):
            await auth_service.complete_password_reset(token, "Another-pass-3")
        # The second attempt did not touch the password
        assert (await auth_service.login("alice@example.com", NEW_PASSWORD)).session

    async def test_expired_token_rejected(self, auth_service, verified_user, clock, settings):
        await verified_user()
        token = await auth_service.request_password_reset("alice@example.com")
        clock.advance(minutes=settings.password_reset_ttl_minutes, seconds=1)
        with pytest.raises(UnauthorizedError):
            await auth_service.complete_password_reset(token, NEW_PASSWORD)

    async def test_weak_password_does_not_consume_token(self, auth_service, verified_user):
        await verified_user()
        token = await auth_service.request_password_reset("alice@example.com")
        with pytest.raises(ValidationError):
            await auth_service.complete_password_reset(token, "short")
        assert await auth_service.complete_password_reset(token, NEW_PASSWORD) == 0

    async def test_rejected_password_releases_token(self, auth_service, verified_user):
        await verified_user()
        token = await auth_service.request_password_reset("alice@example.com")
        with pytest.raises(ValidationError) as exc:
            await auth_service.complete_password_reset(token, "alice@example.com")
        assert exc.value.detail["reason"] == "matches_email"
        await auth_service.complete_password_reset(token, NEW_PASSWORD)

    async def test_sso_only_account_gets_notice(self, auth_service, email_service):
        auth_service.linking.resolve_or_create_user(
            "google", "g-1", email="sso@example.com", email_verified=True
        )
        assert await auth_service.request_password_reset("sso@example.com") is None
        to, subject, body = email_service.outbox[-1]
        assert to == "sso@example.com"
        assert subject == "Password reset requested"
        assert "Google" in body

    async def test_deactivated_account_gets_nothing(self, auth_service, verified_user, email_service):
        user = await verified_user()
        await auth_service.deactivate_user(user.id)
        sent = len(email_service.outbox)
        assert await auth_service.request_password_reset("alice@example.com") is None
        assert len(email_service.outbox) == sent

    async def test_requests_throttled_per_email(self, auth_service, verified_user, settings):
        await verified_user()
        tokens = [
            await auth_service.request_password_reset("alice@example.com")
            for _ in range(settings.reset_rate_limit_per_minute + 1)
        ]
        assert all(tokens[:-1])
        assert tokens[-1] is None

    async def test_reset_verifies_unverified_email(self, auth_service, memory_store):
        user = await auth_service.register("grace@example.com", PASSWORD)
        token = await auth_service.request_password_reset("grace@example.com")
        await auth_service.complete_password_reset(token, NEW_PASSWORD)
        assert memory_store.get_user(user.id).email_verified


class TestPasswordChange:
    async def test_change_keeps_current_session(self, auth_service, verified_user):
        user = await verified_user()
        current = await auth_service.login("alice@example.com", PASSWORD)
        other = await auth_service.login("alice@example.com", PASSWORD)
        revoked = await auth_service.change_password(
            user.id, current.session.session.id, PASSWORD, NEW_PASSWORD
        )
        assert revoked == 1
        assert (await auth_service.validate(current.session.token)).valid
        assert not (await auth_service.validate(other.session.token)).valid

    async def test_wrong_current_password(self, auth_service, verified_user):
        user = await verified_user()
        with pytest.raises(UnauthorizedError):
            await auth_service.change_password(user.id, None, "Wrong-pass-9", NEW_PASSWORD)

    async def test_unchanged_password_rejected(self, auth_service, verified_user):
        user = await verified_user()
        with pytest.raises(ValidationError) as exc:
            await auth_service.change_password(user.id, None, PASSWORD, PASSWORD)
        assert exc.value.detail["reason"] == "unchanged"

    async def test_sso_only_account_has_no_password(self, auth_service):
        resolution = auth_service.linking.resolve_or_create_user(
            "github", "gh-1", email="sso@example.com", email_verified=True
        )
        with pytest.raises(ValidationError) as exc:
            await auth_service.change_password(resolution.user.id, None, PASSWORD, NEW_PASSWORD)
        assert exc.value.detail["reason"] == "no_password"


class TestEmailVerification:
    async def test_verification_link_mailed_on_register(self, auth_service, email_service):
        await auth_service.register("heidi@example.com", PASSWORD)
        to, subject, body = email_service.outbox[-1]
        assert to == "heidi@example.com"
        assert "https://auth.example.com/verify-email?token=" in body

    async def test_verify_token_single_use(self, auth_service):
        user = await auth_service.register("heidi@example.com", PASSWORD)
        token = await auth_service.request_email_verification(user.id)
        verified = await auth_service.verify_email(token)
        assert verified.email_verified
        with pytest.raises(UnauthorizedError):
            await auth_service.verify_email(token)

    async def test_no_token_for_verified_user(self, auth_service, verified_user):
        user = await verified_user()
        assert await auth_service.request_email_verification(user.id) is None

    async def test_resend_is_silent_for_unknown(self, auth_service, email_service):
        await auth_service.resend_verification("ghost@example.com")
        await auth_service.resend_verification("bad address")
        assert email_service.outbox == []
