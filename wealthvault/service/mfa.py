from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

from wealthvault.config import Settings
from wealthvault.logging import get_logger
from wealthvault.service.errors import (
    ConflictError,
    InvalidMFACodeError,
    MFANotEnrolledError,
    RecoveryCodeConsumedError,
)
from wealthvault.service.store_calls import call_store
from wealthvault.storage.common import SessionStore
from wealthvault.storage.models import MFACredential, RecoveryCode, utcnow

logger = get_logger(__name__)

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
_TOTP_PATTERN = re.compile(r"^[0-9]{6}$")
_RECOVERY_PATTERN = re.compile(r"^[0-9A-F]{4}-?[0-9A-F]{4}$")


def generate_totp_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL_SECONDS,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code for ``timestamp``; empty string for an undecodable secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except Exception:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    # SHA-1 is what authenticator apps default to
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def normalize_totp_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    cleaned = re.sub(r"\s", "", code)
    return cleaned if _TOTP_PATTERN.match(cleaned) else None


def generate_recovery_codes(count: int) -> List[str]:
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def hash_recovery_code(code: str) -> str:
    normalized = re.sub(r"\s", "", code).upper()
    if "-" not in normalized and len(normalized) == 8:
        normalized = f"{normalized[:4]}-{normalized[4:]}"
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MFAMatch:
    matched_by: str
    recovery_index: Optional[int] = None


class MFAVerifier:
    """TOTP enrollment and login verification with single-use recovery codes."""

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or time.time

    async def _store_call(self, operation: str, func, *args, **kwargs):
        return await call_store(
            func,
            *args,
            timeout=self.settings.store_timeout_seconds,
            operation=operation,
            **kwargs,
        )

    def _verify_totp(self, secret: str, code: Optional[str]) -> bool:
        cleaned = normalize_totp_code(code)
        if not cleaned or not secret:
            return False
        now = self._clock()
        window = self.settings.totp_skew_steps
        matched = False
        for offset in range(-window, window + 1):
            generated = generate_totp(secret, now + offset * TOTP_INTERVAL_SECONDS)
            # evaluate every step so timing does not reveal which one matched
            if generated and hmac.compare_digest(generated, cleaned):
                matched = True
        return matched

    def _match_recovery_code(
        self, codes: List[RecoveryCode], code: Optional[str]
    ) -> Optional[int]:
        if not code:
            return None
        candidate = re.sub(r"\s", "", code).upper()
        if not _RECOVERY_PATTERN.match(candidate):
            return None
        digest = hash_recovery_code(candidate)
        found: Optional[int] = None
        for index, item in enumerate(codes):
            if hmac.compare_digest(item.hash, digest) and not item.used and found is None:
                found = index
        return found

    def _enrollment_uri(self, secret: str, account: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{account}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL_SECONDS,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    async def _require_credential(self, user_id: str) -> MFACredential:
        cred = await self._store_call(
            "get_mfa_credential", self.store.get_mfa_credential, user_id
        )
        if cred is None or not cred.secret:
            raise MFANotEnrolledError("mfa not enrolled", detail={"user_id": user_id})
        return cred

    async def is_enabled(self, user_id: str) -> bool:
        cred = await self._store_call(
            "get_mfa_credential", self.store.get_mfa_credential, user_id
        )
        return bool(cred and cred.enabled and cred.secret)

    async def enroll(self, user_id: str, account_name: Optional[str] = None) -> Dict[str, object]:
        """Start enrollment: fresh secret and recovery codes, not yet enabled.

        The plaintext recovery codes are returned once and never stored.
        """
        existing = await self._store_call(
            "get_mfa_credential", self.store.get_mfa_credential, user_id
        )
        if existing is not None and existing.enabled:
            raise ConflictError("mfa already enabled", detail={"user_id": user_id})
        secret = generate_totp_secret()
        codes = generate_recovery_codes(self.settings.mfa_recovery_code_count)
        credential = MFACredential(
            user_id=user_id,
            secret=secret,
            enabled=False,
            recovery_codes=[RecoveryCode(hash=hash_recovery_code(c)) for c in codes],
        )
        await self._store_call("save_mfa_credential", self.store.save_mfa_credential, credential)
        logger.info("mfa_enrollment_started", user_id=user_id)
        return {
            "secret": secret,
            "enrollment_uri": self._enrollment_uri(secret, account_name or user_id),
            "recovery_codes": codes,
        }

    async def confirm(self, user_id: str, code: str) -> bool:
        """Enable MFA once the user proves possession of the pending secret.

        Returns False when MFA was already enabled.

        Raises:
            MFANotEnrolledError: no pending enrollment.
            InvalidMFACodeError: the code does not match.
        """
        cred = await self._require_credential(user_id)
        if not self._verify_totp(cred.secret, code):
            logger.info("mfa_confirm_failed", user_id=user_id)
            raise InvalidMFACodeError("invalid mfa code")
        if cred.enabled:
            return False
        await self._store_call("set_mfa_enabled", self.store.set_mfa_enabled, user_id, True)
        logger.info("mfa_enabled", user_id=user_id)
        return True

    async def verify_login(self, user_id: str, code: Optional[str]) -> Optional[MFAMatch]:
        """Match ``code`` as TOTP first, then against unused recovery codes.

        Returns None when neither matches; the caller maps that to
        ``InvalidMFATokenError``. A recovery match is not consumed here.
        """
        cred = await self._require_credential(user_id)
        if not cred.enabled:
            raise MFANotEnrolledError("mfa not enabled", detail={"user_id": user_id})
        if self._verify_totp(cred.secret, code):
            return MFAMatch(matched_by="totp")
        index = self._match_recovery_code(cred.recovery_codes, code)
        if index is not None:
            return MFAMatch(matched_by="recovery", recovery_index=index)
        logger.info("mfa_login_code_rejected", user_id=user_id)
        return None

    async def consume_recovery_code(self, user_id: str, index: int) -> None:
        """One-way transition of a recovery code to used.

        Raises:
            RecoveryCodeConsumedError: already used, including by a concurrent
                caller that won the conditional update.
        """
        consumed = await self._store_call(
            "consume_recovery_code",
            self.store.consume_recovery_code,
            user_id,
            index,
            at=utcnow(),
        )
        if not consumed:
            logger.warning("mfa_recovery_code_reuse", user_id=user_id, recovery_code_index=index)
            raise RecoveryCodeConsumedError(
                "recovery code already used", detail={"index": index}
            )
        logger.info("mfa_recovery_code_consumed", user_id=user_id, recovery_code_index=index)

    async def disable(self, user_id: str) -> bool:
        removed = await self._store_call(
            "delete_mfa_credential", self.store.delete_mfa_credential, user_id
        )
        if removed:
            logger.info("mfa_disabled", user_id=user_id)
        return removed

    async def recovery_code_status(self, user_id: str) -> Dict[str, object]:
        cred = await self._store_call(
            "get_mfa_credential", self.store.get_mfa_credential, user_id
        )
        codes = cred.recovery_codes if cred else []
        unused = sum(1 for c in codes if not c.used)
        return {
            "total": len(codes),
            "unused": unused,
            "used": len(codes) - unused,
            "has_unused": unused > 0,
        }

    async def regenerate_recovery_codes(self, user_id: str) -> List[str]:
        """Replace every recovery code; previously issued codes stop matching."""
        cred = await self._require_credential(user_id)
        if not cred.enabled:
            raise MFANotEnrolledError("mfa not enabled", detail={"user_id": user_id})
        codes = generate_recovery_codes(self.settings.mfa_recovery_code_count)
        cred.recovery_codes = [RecoveryCode(hash=hash_recovery_code(c)) for c in codes]
        cred.updated_at = utcnow()
        await self._store_call("save_mfa_credential", self.store.save_mfa_credential, cred)
        logger.info("mfa_recovery_codes_regenerated", user_id=user_id, count=len(codes))
        return codes
