from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple

from wealthvault.config import Settings
from wealthvault.logging import fingerprint, get_logger
from wealthvault.service.errors import ExpiredTokenError, MalformedTokenError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
# 64 random bytes, hex encoded; far above the 128-bit floor
REFRESH_TOKEN_BYTES = 64


def hash_token(token: str) -> str:
    """Digest used wherever a token is stored or looked up."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_refresh_token() -> str:
    return secrets.token_hex(REFRESH_TOKEN_BYTES)


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    session_id: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    token_id: str


class TokenCodec:
    """HS256 access-token signer/verifier.

    Pure CPU work: no store or cache access. Blacklist state is checked by the
    caller. The signing secret is validated once, at construction.
    """

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], float]] = None
    ) -> None:
        self.settings = settings
        self._secret = settings.require_signing_secret().encode("utf-8")
        self._clock = clock or time.time
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.access_ttl.total_seconds())

    @property
    def refresh_ttl_seconds(self) -> int:
        return int(self.refresh_ttl.total_seconds())

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign_access_token(self, subject: str, session_id: str) -> Tuple[str, datetime]:
        issued = int(self._clock())
        expires = issued + self.access_ttl_seconds
        header = {"alg": "HS256", "typ": "JWT"}
        payload: dict[str, Any] = {
            "sub": subject,
            "sid": session_id,
            "type": ACCESS_TOKEN_TYPE,
            "iat": issued,
            "exp": expires,
            "jti": str(uuid.uuid4()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return token, datetime.fromtimestamp(expires, tz=timezone.utc)

    def generate_refresh_token(self) -> Tuple[str, datetime]:
        expires_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc) + self.refresh_ttl
        return generate_refresh_token(), expires_at

    def verify_access_token(self, token: str) -> AccessClaims:
        """Check signature, structure and expiry.

        Raises:
            MalformedTokenError: bad structure, signature, algorithm or claims.
            ExpiredTokenError: well-formed and authentic, but past ``exp``.
        """
        if not token or not isinstance(token, str):
            raise MalformedTokenError("empty token")
        # base64url and compact JWS are ASCII only
        if not token.isascii():
            raise MalformedTokenError("token contains non-ascii characters")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token must have three segments")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError("undecodable header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedTokenError("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            logger.info("jwt_signature_mismatch", token_fp=fingerprint(token))
            raise MalformedTokenError("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("undecodable payload")
        if not isinstance(payload, dict):
            raise MalformedTokenError("payload is not an object")
        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise MalformedTokenError("not an access token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedTokenError("issuer mismatch")
        if payload.get("aud") != self.settings.jwt_audience:
            raise MalformedTokenError("audience mismatch")
        subject = payload.get("sub")
        session_id = payload.get("sid")
        if not subject or not session_id:
            raise MalformedTokenError("missing subject or session")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError):
            raise MalformedTokenError("invalid expiry claim")
        if exp_ts <= self._clock():
            raise ExpiredTokenError("access token expired")
        return AccessClaims(
            subject=str(subject),
            session_id=str(session_id),
            token_type=ACCESS_TOKEN_TYPE,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            token_id=str(payload.get("jti") or ""),
        )

    def peek_expiry(self, token: str) -> Optional[datetime]:
        """Expiry of an authentic token regardless of whether it has lapsed.

        Used when blacklisting a stored access-token snapshot; returns None for
        anything that does not verify.
        """
        try:
            return self.verify_access_token(token).expires_at
        except (ExpiredTokenError, MalformedTokenError):
            return None
