from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from ipaddress import ip_address, ip_network
from typing import Callable, Dict, List, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import TooManyRequestsError
from authcore.storage.models import COUNTED_FAILURES, LoginHistory, utcnow

logger = get_logger(__name__)


def infer_location(ip_addr: Optional[str]) -> Optional[str]:
    """Coarse network location: the /16 of an IPv4 address or the /48 of an IPv6 one."""
    if not ip_addr:
        return None
    try:
        parsed = ip_address(ip_addr.strip())
    except ValueError:
        return None
    if parsed.is_loopback:
        return "loopback"
    prefix = 16 if parsed.version == 4 else 48
    return str(ip_network(f"{parsed}/{prefix}", strict=False))


class LoginRateLimiter:
    """Per-email throttle computed straight from the login history.

    Only failures that could be password guesses count. Failures recorded
    after the latest success in the window count; blocked attempts are logged
    as ``rate_limited`` and never extend the block.
    """

    def __init__(self, store, settings: Settings, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings.login_failure_window_minutes)

    def recent_failures(self, email: str) -> List[LoginHistory]:
        now = self._clock()
        history = self.store.list_login_history(email=email, since=now - self.window)
        counted: List[LoginHistory] = []
        for entry in history:
            if entry.success:
                counted = []
            elif entry.failure_reason in COUNTED_FAILURES:
                counted.append(entry)
        return counted

    def check(self, email: str) -> None:
        limit = self.settings.login_failure_limit
        failures = self.recent_failures(email)
        if len(failures) < limit:
            return
        unblock_at = failures[len(failures) - limit].attempted_at + self.window
        retry_after = max(1, math.ceil((unblock_at - self._clock()).total_seconds()))
        logger.warning("login_rate_limited", email=email, failures=len(failures), retry_after=retry_after)
        raise TooManyRequestsError(
            "too many failed sign-in attempts; try again later", retry_after=retry_after
        )


@dataclass
class SecurityAlert:
    principal: str
    reasons: List[str]
    locations: List[str] = field(default_factory=list)
    failures: int = 0
    user_id: Optional[str] = None
    notified: bool = False


class SecurityMonitor:
    """Advisory scan of recent login history; never blocks a sign-in."""

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        email_service=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.email_service = email_service
        self._clock = clock

    def evaluate(self) -> List[SecurityAlert]:
        now = self._clock()
        since = now - timedelta(hours=self.settings.security_lookback_hours)
        grouped: Dict[str, List[LoginHistory]] = defaultdict(list)
        for entry in self.store.list_login_history(since=since):
            grouped[entry.email].append(entry)

        alerts: List[SecurityAlert] = []
        for principal, entries in grouped.items():
            locations = sorted({e.location for e in entries if e.location})
            failures = sum(1 for e in entries if not e.success)
            reasons = []
            if len(locations) > self.settings.security_location_threshold:
                reasons.append("many_locations")
            if failures > self.settings.security_failure_threshold:
                reasons.append("many_failures")
            if not reasons:
                continue
            user_id = next((e.user_id for e in reversed(entries) if e.user_id), None)
            alerts.append(
                SecurityAlert(
                    principal=principal,
                    reasons=reasons,
                    locations=locations,
                    failures=failures,
                    user_id=user_id,
                )
            )
        return alerts

    async def scan(self) -> List[SecurityAlert]:
        alerts = self.evaluate()
        cooldown = int(timedelta(hours=self.settings.security_alert_cooldown_hours).total_seconds())
        for alert in alerts:
            key = f"{alert.principal}:{','.join(alert.reasons)}"
            if not await self.cache.mark_alert_sent(key, cooldown):
                continue
            alert.notified = True
            logger.warning(
                "security_alert",
                email=alert.principal,
                user_id=alert.user_id,
                reasons=alert.reasons,
                locations=len(alert.locations),
                failures=alert.failures,
            )
            if self.email_service and alert.user_id:
                await self.email_service.send_suspicious_activity(
                    alert.principal, reasons=alert.reasons, locations=alert.locations
                )
        logger.info("security_scan_completed", alerts=len(alerts))
        return alerts
