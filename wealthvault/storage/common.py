"""Store contract and row helpers shared between the memory and postgres stores.

Both backends persist the same four record kinds (device sessions, blacklist
entries, MFA credentials, security events) and convert them to and from plain
dictionaries the same way, so the serialization lives here.
"""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from wealthvault.logging import get_logger
from wealthvault.storage.models import (
    BlacklistEntry,
    DeviceSession,
    DeviceType,
    EventStatus,
    GeoLocation,
    MFACredential,
    RecoveryCode,
    RevocationReason,
    SecurityEvent,
    SecurityEventType,
    TokenType,
    ensure_aware,
    utcnow,
)

logger = get_logger(__name__)


class SessionStore(Protocol):
    """Row-level persistence consumed by the auth core.

    Implementations guarantee single-row atomicity only; no operation here spans
    a transaction across rows.
    """

    def ping(self) -> None: ...

    # device sessions
    def create_session(self, session: DeviceSession) -> DeviceSession: ...

    def get_session(self, session_id: str) -> Optional[DeviceSession]: ...

    def find_session_by_refresh_hash(
        self, refresh_token_hash: str
    ) -> Optional[DeviceSession]: ...

    def update_session_activity(
        self,
        session_id: str,
        *,
        access_token: str,
        ip_address: Optional[str],
        at: datetime,
    ) -> bool: ...

    def deactivate_session(
        self, session_id: str, *, reason: str, at: datetime
    ) -> bool: ...

    def list_sessions_for_user(
        self, user_id: str, *, active_only: bool = True
    ) -> List[DeviceSession]: ...

    def deactivate_expired_sessions(self, now: datetime) -> int: ...

    def purge_inactive_sessions(self, older_than: datetime) -> int: ...

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry: ...

    def get_blacklist_entry(self, token_hash: str) -> Optional[BlacklistEntry]: ...

    def purge_expired_blacklist(self, now: datetime) -> int: ...

    # mfa
    def get_mfa_credential(self, user_id: str) -> Optional[MFACredential]: ...

    def save_mfa_credential(self, credential: MFACredential) -> MFACredential: ...

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> bool: ...

    def consume_recovery_code(self, user_id: str, index: int, *, at: datetime) -> bool: ...

    def delete_mfa_credential(self, user_id: str) -> bool: ...

    # security events
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def list_security_events(
        self,
        user_id: str,
        *,
        event_type: Optional[SecurityEventType] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[SecurityEvent]: ...

    def list_unnotified_events(self, limit: int = 100) -> List[SecurityEvent]: ...

    def mark_event_notified(self, event_id: str) -> bool: ...

    def record_notification_failure(self, event_id: str) -> int: ...


# ============================================================================
# MFA SECRET ENCRYPTION
# ============================================================================


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper used to keep TOTP seeds encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        self._fernet = Fernet(derive_cipher_key(key_material))

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            raise


# ============================================================================
# ROW (DE)SERIALIZATION
# ============================================================================


def _dt(raw: Any) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return ensure_aware(raw)
    return ensure_aware(datetime.fromisoformat(str(raw)))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_session(session: DeviceSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "device_id": session.device_id,
        "device_name": session.device_name,
        "device_type": DeviceType.coerce(session.device_type).value,
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
        "refresh_token_hash": session.refresh_token_hash,
        "access_token_snapshot": session.access_token_snapshot,
        "issued_at": _iso(session.issued_at),
        "last_activity_at": _iso(session.last_activity_at),
        "expires_at": _iso(session.expires_at),
        "is_active": session.is_active,
        "revoked_at": _iso(session.revoked_at),
        "revoke_reason": session.revoke_reason,
    }


def deserialize_session(row: Dict[str, Any]) -> DeviceSession:
    raw_ip = row.get("ip_address")
    return DeviceSession(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        device_id=str(row["device_id"]),
        device_name=row.get("device_name") or "Unknown Device",
        device_type=DeviceType.coerce(row.get("device_type")),
        ip_address=str(raw_ip) if raw_ip is not None else None,
        user_agent=row.get("user_agent"),
        refresh_token_hash=row["refresh_token_hash"],
        access_token_snapshot=row.get("access_token_snapshot"),
        issued_at=_dt(row["issued_at"]),
        last_activity_at=_dt(row.get("last_activity_at") or row["issued_at"]),
        expires_at=_dt(row["expires_at"]),
        is_active=bool(row.get("is_active", True)),
        revoked_at=_dt(row.get("revoked_at")),
        revoke_reason=row.get("revoke_reason"),
    )


def serialize_blacklist_entry(entry: BlacklistEntry) -> Dict[str, Any]:
    return {
        "token_hash": entry.token_hash,
        "token_type": TokenType(entry.token_type).value,
        "user_id": entry.user_id,
        "reason": RevocationReason(entry.reason).value,
        "expires_at": _iso(entry.expires_at),
        "created_at": _iso(entry.created_at),
    }


def deserialize_blacklist_entry(row: Dict[str, Any]) -> BlacklistEntry:
    user_id = row.get("user_id")
    return BlacklistEntry(
        token_hash=row["token_hash"],
        token_type=TokenType(row["token_type"]),
        user_id=str(user_id) if user_id is not None else None,
        reason=RevocationReason(row.get("reason") or "logout"),
        expires_at=_dt(row["expires_at"]),
        created_at=_dt(row.get("created_at")) or utcnow(),
    )


def serialize_recovery_codes(codes: List[RecoveryCode]) -> List[Dict[str, Any]]:
    return [
        {
            "hash": code.hash,
            "used": code.used,
            "created_at": _iso(code.created_at),
            "used_at": _iso(code.used_at),
        }
        for code in codes
    ]


def deserialize_recovery_codes(raw: Optional[List[Dict[str, Any]]]) -> List[RecoveryCode]:
    codes: List[RecoveryCode] = []
    for item in raw or []:
        codes.append(
            RecoveryCode(
                hash=item["hash"],
                used=bool(item.get("used", False)),
                created_at=_dt(item.get("created_at")) or utcnow(),
                used_at=_dt(item.get("used_at")),
            )
        )
    return codes


def serialize_security_event(event: SecurityEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "user_id": event.user_id,
        "event_type": SecurityEventType(event.event_type).value,
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "location": event.location.to_dict() if event.location else None,
        "device_info": event.device_info,
        "status": EventStatus(event.status).value,
        "details": event.details or {},
        "notified": event.notified,
        "notify_attempts": event.notify_attempts,
        "created_at": _iso(event.created_at),
    }


def deserialize_security_event(row: Dict[str, Any]) -> SecurityEvent:
    raw_ip = row.get("ip_address")
    return SecurityEvent(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        event_type=SecurityEventType(row["event_type"]),
        created_at=_dt(row["created_at"]),
        ip_address=str(raw_ip) if raw_ip is not None else None,
        user_agent=row.get("user_agent"),
        location=GeoLocation.from_dict(row.get("location")),
        device_info=row.get("device_info"),
        status=EventStatus(row.get("status") or "info"),
        details=row.get("details") or {},
        notified=bool(row.get("notified", False)),
        notify_attempts=int(row.get("notify_attempts") or 0),
    )


__all__ = [
    "SessionStore",
    "SecretCipher",
    "derive_cipher_key",
    "serialize_session",
    "deserialize_session",
    "serialize_blacklist_entry",
    "deserialize_blacklist_entry",
    "serialize_recovery_codes",
    "deserialize_recovery_codes",
    "serialize_security_event",
    "deserialize_security_event",
]
