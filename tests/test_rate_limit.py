"""Login throttling and the suspicious-activity monitor."""

from datetime import timedelta

import pytest

from authcore.service.errors import TooManyRequestsError, UnauthorizedError
from authcore.service.rate_limit import LoginRateLimiter, SecurityMonitor, infer_location
from authcore.storage.models import LoginHistory, new_id

PASSWORD = "Correct-horse-1"


def _attempt(clock, email, *, success=False, reason="invalid_credentials", ip=None, user_id=None, ago=None):
    return LoginHistory(
        id=new_id(),
        email=email,
        success=success,
        auth_method="password",
        attempted_at=clock() - ago if ago else clock(),
        user_id=user_id,
        failure_reason=None if success else reason,
        ip_addr=ip,
        location=infer_location(ip),
    )


class TestInferLocation:
    @pytest.mark.parametrize(
        "ip,expected",
        [
            ("203.0.113.7", "203.0.0.0/16"),
            ("2001:db8:abcd:12::1", "2001:db8:abcd::/48"),
            ("127.0.0.1", "loopback"),
            ("not-an-ip", None),
            (None, None),
        ],
    )
    def test_prefixes(self, ip, expected):
        assert infer_location(ip) == expected


class TestLoginRateLimiter:
    async def test_sixth_attempt_blocked_then_allowed_after_window(
        self, auth_service, verified_user, clock, settings
    ):
        await verified_user(email="bob@example.com")
        for _ in range(settings.login_failure_limit):
            with pytest.raises(UnauthorizedError):
                await auth_service.login("bob@example.com", "Wrong-pass-9")
            clock.advance(seconds=30)

        with pytest.raises(TooManyRequestsError) as exc:
            await auth_service.login("bob@example.com", PASSWORD)
        assert exc.value.retry_after > 0

        clock.advance(minutes=settings.login_failure_window_minutes)
        result = await auth_service.login("bob@example.com", PASSWORD)
        assert result.session is not None

    def test_retry_after_counts_from_oldest_counted_failure(self, memory_store, settings, clock):
        limiter = LoginRateLimiter(memory_store, settings, clock=clock)
        for minutes_ago in (4, 3, 2, 1, 0):
            memory_store.record_login_attempt(
                _attempt(clock, "bob@example.com", ago=timedelta(minutes=minutes_ago))
            )
        with pytest.raises(TooManyRequestsError) as exc:
            limiter.check("bob@example.com")
        assert exc.value.retry_after == (settings.login_failure_window_minutes - 4) * 60
        assert exc.value.detail["retry_after_seconds"] == exc.value.retry_after

    def test_success_resets_the_count(self, memory_store, settings, clock):
        limiter = LoginRateLimiter(memory_store, settings, clock=clock)
        for minutes_ago in (6, 5, 4, 3):
            memory_store.record_login_attempt(
                _attempt(clock, "bob@example.com", ago=timedelta(minutes=minutes_ago))
            )
        memory_store.record_login_attempt(
            _attempt(clock, "bob@example.com", success=True, ago=timedelta(minutes=2))
        )
        memory_store.record_login_attempt(
            _attempt(clock, "bob@example.com", ago=timedelta(minutes=1))
        )
        assert len(limiter.recent_failures("bob@example.com")) == 1
        limiter.check("bob@example.com")

    def test_only_guessing_failures_count(self, memory_store, settings, clock):
        limiter = LoginRateLimiter(memory_store, settings, clock=clock)
        for reason in ("mfa_failed", "rate_limited", "email_not_verified", "provider_error") * 3:
            memory_store.record_login_attempt(_attempt(clock, "bob@example.com", reason=reason))
        assert limiter.recent_failures("bob@example.com") == []

    def test_unknown_accounts_are_throttled_too(self, memory_store, settings, clock):
        limiter = LoginRateLimiter(memory_store, settings, clock=clock)
        for _ in range(settings.login_failure_limit):
            memory_store.record_login_attempt(
                _attempt(clock, "ghost@example.com", reason="unknown_account")
            )
        with pytest.raises(TooManyRequestsError):
            limiter.check("ghost@example.com")

    async def test_blocked_attempts_do_not_extend_block(
        self, auth_service, verified_user, clock, settings, memory_store
    ):
        await verified_user(email="bob@example.com")
        for _ in range(settings.login_failure_limit):
            with pytest.raises(UnauthorizedError):
                await auth_service.login("bob@example.com", "Wrong-pass-9")
        for _ in range(3):
            clock.advance(minutes=settings.login_failure_window_minutes / 3)
            with pytest.raises(TooManyRequestsError):
                await auth_service.login("bob@example.com", PASSWORD)
        reasons = [h.failure_reason for h in memory_store.list_login_history(email="bob@example.com")]
        assert reasons.count("rate_limited") == 3

        clock.advance(seconds=1)
        assert (await auth_service.login("bob@example.com", PASSWORD)).session is not None


class RecordingMailer:
    def __init__(self):
        self.sent = []

    async def send_suspicious_activity(self, to_email, *, reasons, locations):
        self.sent.append((to_email, reasons, locations))
        return True


class TestSecurityMonitor:
    @pytest.fixture
    def mailer(self):
        return RecordingMailer()

    @pytest.fixture
    def monitor(self, memory_store, cache, settings, clock, mailer):
        return SecurityMonitor(memory_store, cache, settings, email_service=mailer, clock=clock)

    def test_many_locations_flagged(self, monitor, memory_store, clock, settings):
        for n in range(settings.security_location_threshold + 1):
            memory_store.record_login_attempt(
                _attempt(clock, "ivan@example.com", success=True, ip=f"10.{n}.0.1", user_id="u-1")
            )
        alerts = monitor.evaluate()
        assert [a.principal for a in alerts] == ["ivan@example.com"]
        assert alerts[0].reasons == ["many_locations"]
        assert len(alerts[0].locations) == settings.security_location_threshold + 1

    def test_many_failures_flagged(self, monitor, memory_store, clock, settings):
        for _ in range(settings.security_failure_threshold + 1):
            memory_store.record_login_attempt(_attempt(clock, "judy@example.com", ip="10.0.0.1"))
        alerts = monitor.evaluate()
        assert alerts[0].reasons == ["many_failures"]
        assert alerts[0].user_id is None

    def test_quiet_history_and_old_entries_ignored(self, monitor, memory_store, clock, settings):
        memory_store.record_login_attempt(_attempt(clock, "ken@example.com", ip="10.0.0.1"))
        for _ in range(settings.security_failure_threshold + 1):
            memory_store.record_login_attempt(
                _attempt(
                    clock,
                    "old@example.com",
                    ago=timedelta(hours=settings.security_lookback_hours + 1),
                )
            )
        assert monitor.evaluate() == []

    async def test_scan_notifies_once_per_cooldown(self, monitor, memory_store, clock, settings, mailer):
        for n in range(settings.security_location_threshold + 1):
            memory_store.record_login_attempt(
                _attempt(clock, "ivan@example.com", success=True, ip=f"10.{n}.0.1", user_id="u-1")
            )
        first = await monitor.scan()
        second = await monitor.scan()
        assert first[0].notified
        assert not second[0].notified
        assert len(mailer.sent) == 1
        assert mailer.sent[0][0] == "ivan@example.com"

    async def test_unknown_principal_not_mailed(self, monitor, memory_store, clock, settings, mailer):
        for _ in range(settings.security_failure_threshold + 1):
            memory_store.record_login_attempt(
                _attempt(clock, "nobody@example.com", reason="unknown_account")
            )
        alerts = await monitor.scan()
        assert alerts[0].notified
        assert mailer.sent == []
