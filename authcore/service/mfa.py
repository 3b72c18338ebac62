from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from urllib.parse import quote

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.crypto import SecretCipher
from authcore.service.errors import (
    ConflictError,
    NotFoundError,
    TooManyRequestsError,
    UnauthorizedError,
    ValidationError,
)
from authcore.storage.models import (
    AuthProvider,
    ChallengeStatus,
    MfaChallenge,
    MfaDevice,
    MfaType,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
# Accept the adjacent step on either side for clock drift
TOTP_SKEW_STEPS = 1


def totp_step(at: datetime, *, interval: int = TOTP_INTERVAL) -> int:
    return int(at.timestamp() // interval)


def generate_totp(secret: str, step: int, *, digits: int = TOTP_DIGITS) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded.upper(), True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = step.to_bytes(8, "big")
    # SHA-1 is what authenticator apps implement for otpauth:// URIs
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def verify_totp(secret: str, code: str, at: datetime, *, skew: int = TOTP_SKEW_STEPS) -> Optional[int]:
    """Return the matching time step, or None when the code is wrong."""
    if not code or not code.isdigit() or len(code) != TOTP_DIGITS:
        return None
    current = totp_step(at)
    for offset in range(-skew, skew + 1):
        generated = generate_totp(secret, current + offset)
        if generated and hmac.compare_digest(generated, code):
            return current + offset
    return None


@dataclass
class MfaSetup:
    secret: str
    otpauth_uri: str
    backup_codes: List[str]
    expires_at: datetime


@dataclass
class IssuedChallenge:
    challenge: MfaChallenge
    # Plain code for email challenges; handed to the mailer and never stored
    code: Optional[str] = None


class MfaEngine:
    """TOTP/email second factor with bounded, single-use challenges."""

    def __init__(
        self,
        store,
        cache,
        cipher: SecretCipher,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.cipher = cipher
        self.settings = settings
        self._clock = clock

    @staticmethod
    def _normalize_code(code: Optional[str]) -> str:
        return (code or "").strip().replace(" ", "")

    def _new_backup_codes(self) -> List[str]:
        codes = []
        for _ in range(self.settings.mfa_backup_code_count):
            raw = secrets.token_hex(5)
            codes.append(f"{raw[:5]}-{raw[5:]}")
        return codes

    async def enable_mfa(self, user_id: str) -> MfaSetup:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        secret = base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")
        backup_codes = self._new_backup_codes()
        ttl = timedelta(minutes=self.settings.mfa_setup_ttl_minutes)
        payload = self.cipher.encrypt(json.dumps({"secret": secret, "backup_codes": backup_codes}))
        await self.cache.set_pending_mfa_setup(user_id, payload, int(ttl.total_seconds()))
        issuer = self.settings.mfa_issuer
        uri = (
            f"otpauth://totp/{quote(issuer)}:{quote(user.email)}"
            f"?secret={secret}&issuer={quote(issuer)}&algorithm=SHA1"
            f"&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
        )
        logger.info("mfa_setup_started", user_id=user_id)
        return MfaSetup(
            secret=secret,
            otpauth_uri=uri,
            backup_codes=backup_codes,
            expires_at=self._clock() + ttl,
        )

    async def verify_setup(self, user_id: str, code: str) -> MfaDevice:
        raw = await self.cache.get_pending_mfa_setup(user_id)
        if not raw:
            raise NotFoundError("no pending MFA setup; start setup again")
        pending = json.loads(self.cipher.decrypt(raw))
        now = self._clock()
        step = verify_totp(pending["secret"], self._normalize_code(code), now)
        if step is None:
            raise ValidationError("invalid verification code", field="code", reason="invalid_code")
        device = MfaDevice(
            id=new_id(),
            user_id=user_id,
            secret=pending["secret"],
            device_type=MfaType.TOTP.value,
            backup_code_hashes=[self.cipher.digest(c) for c in pending["backup_codes"]],
            is_primary=True,
            name="authenticator",
            created_at=now,
            last_used_at=now,
            last_totp_step=step,
        )
        self.store.enable_mfa_device(device)
        await self.cache.delete_pending_mfa_setup(user_id)
        logger.info("mfa_enabled", user_id=user_id, device_id=device.id)
        return device

    def issue_challenge(
        self,
        user_id: str,
        *,
        challenge_type: Optional[str] = None,
        remember_me: bool = False,
        auth_method: str = AuthProvider.PASSWORD.value,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedChallenge:
        devices = self.store.list_mfa_devices(user_id)
        kind = challenge_type or (MfaType.TOTP.value if devices else MfaType.EMAIL.value)
        if kind not in {t.value for t in MfaType}:
            raise ValidationError("unsupported MFA method", field="mfa_method", reason="unsupported")
        if kind == MfaType.TOTP.value and not devices:
            raise ValidationError("no authenticator enrolled", field="mfa_method", reason="no_device")
        now = self._clock()
        code = None
        code_hash = None
        if kind == MfaType.EMAIL.value:
            code = f"{secrets.randbelow(10 ** TOTP_DIGITS):0{TOTP_DIGITS}d}"
            code_hash = self.cipher.digest(code)
        challenge = MfaChallenge(
            id=new_id(),
            user_id=user_id,
            challenge_type=kind,
            code_hash=code_hash,
            max_attempts=self.settings.mfa_max_attempts,
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.mfa_challenge_ttl_minutes),
            remember_me=remember_me,
            auth_method=auth_method,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.store.create_mfa_challenge(challenge)
        logger.info("mfa_challenge_issued", user_id=user_id, challenge_id=challenge.id, challenge_type=kind)
        return IssuedChallenge(challenge=challenge, code=code)

    def _reject_status(self, status: ChallengeStatus) -> None:
        if status == ChallengeStatus.EXHAUSTED:
            raise TooManyRequestsError(
                "too many failed verification attempts; sign in again",
                detail={"attempts_remaining": 0},
            )
        if status == ChallengeStatus.EXPIRED:
            raise UnauthorizedError("verification challenge expired; sign in again")
        if status == ChallengeStatus.VERIFIED:
            raise UnauthorizedError("verification challenge already used")

    def _matches_device_factor(self, user_id: str, code: str, now: datetime) -> bool:
        devices = self.store.list_mfa_devices(user_id)
        for device in devices:
            step = verify_totp(device.secret, code, now)
            if step is not None and self.store.advance_totp_step(device.id, step, at=now):
                return True
        code_hash = self.cipher.digest(code)
        for device in devices:
            if self.store.consume_backup_code(device.id, code_hash, at=now):
                logger.info(
                    "mfa_backup_code_used",
                    user_id=user_id,
                    device_id=device.id,
                    remaining=max(0, len(device.backup_code_hashes) - 1),
                )
                return True
        return False

    def _matches(self, challenge: MfaChallenge, code: str, now: datetime) -> bool:
        if (
            challenge.challenge_type == MfaType.EMAIL.value
            and challenge.code_hash
            and code.isdigit()
            and self.cipher.digest_matches(code, challenge.code_hash)
        ):
            return True
        return self._matches_device_factor(challenge.user_id, code, now)

    def verify_challenge(self, challenge_id: str, code: Optional[str]) -> MfaChallenge:
        challenge = self.store.get_mfa_challenge(challenge_id)
        if challenge is None:
            raise NotFoundError("verification challenge not found")
        now = self._clock()
        status = challenge.effective_status(now)
        if status != ChallengeStatus.PENDING:
            self._reject_status(status)
        normalized = self._normalize_code(code)
        if not normalized:
            raise ValidationError("verification code is required", field="code", reason="required")

        # Count the attempt before looking at the code
        attempted = self.store.record_challenge_attempt(challenge_id, now=now)
        if attempted is None:
            latest = self.store.get_mfa_challenge(challenge_id)
            latest_status = latest.effective_status(now) if latest else ChallengeStatus.EXPIRED
            if latest_status == ChallengeStatus.PENDING:
                latest_status = ChallengeStatus.EXHAUSTED
            self._reject_status(latest_status)

        if self._matches(attempted, normalized, now):
            completed = self.store.complete_challenge(challenge_id, now=now)
            if completed is None:
                raise UnauthorizedError("verification challenge already used")
            logger.info("mfa_challenge_verified", user_id=completed.user_id, challenge_id=challenge_id)
            return completed

        remaining = attempted.attempts_remaining
        if remaining <= 0:
            self.store.exhaust_challenge(challenge_id)
            logger.warning(
                "mfa_challenge_exhausted", user_id=attempted.user_id, challenge_id=challenge_id
            )
            raise TooManyRequestsError(
                "too many failed verification attempts; sign in again",
                detail={"attempts_remaining": 0},
            )
        logger.info(
            "mfa_challenge_failed",
            user_id=attempted.user_id,
            challenge_id=challenge_id,
            attempts_remaining=remaining,
        )
        raise ValidationError(
            "invalid verification code",
            field="code",
            reason="invalid_code",
            detail={"attempts_remaining": remaining},
        )

    def disable_mfa(self, user_id: str, code: Optional[str]) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not user.mfa_enabled:
            raise ConflictError("MFA is not enabled")
        normalized = self._normalize_code(code)
        if not normalized or not self._matches_device_factor(user_id, normalized, self._clock()):
            raise UnauthorizedError("invalid verification code")
        removed = self.store.disable_mfa(user_id)
        logger.info("mfa_disabled", user_id=user_id, devices_removed=removed)

    def status(self, user_id: str) -> dict:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        devices = self.store.list_mfa_devices(user_id)
        return {
            "enabled": user.mfa_enabled,
            "devices": [
                {
                    "id": d.id,
                    "type": d.device_type,
                    "name": d.name,
                    "is_primary": d.is_primary,
                    "created_at": d.created_at.isoformat(),
                    "last_used_at": d.last_used_at.isoformat() if d.last_used_at else None,
                }
                for d in devices
            ],
            "backup_codes_remaining": sum(len(d.backup_code_hashes) for d in devices),
        }
