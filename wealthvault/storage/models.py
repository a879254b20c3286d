from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps coming back from storage as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DeviceType(str, Enum):
    WEB = "web"
    MOBILE = "mobile"
    TABLET = "tablet"

    @classmethod
    def coerce(cls, raw: Optional[str]) -> "DeviceType":
        try:
            return cls((raw or "web").lower())
        except ValueError:
            return cls.WEB


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class RevocationReason(str, Enum):
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    SECURITY = "security"
    MANUAL_REVOKE = "manual_revoke"


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_RECOVERY_USED = "mfa_recovery_used"
    PASSWORD_CHANGED = "password_changed"
    SESSION_REVOKED = "session_revoked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class EventStatus(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]

    @classmethod
    def highest(cls, *levels: "RiskLevel") -> "RiskLevel":
        return max(levels, key=lambda lvl: lvl.rank, default=cls.LOW)


@dataclass
class DeviceInfo:
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    device_type: DeviceType = DeviceType.WEB
    user_agent: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeviceInfo":
        data = data or {}
        return cls(
            device_id=data.get("device_id") or data.get("deviceId"),
            device_name=data.get("device_name") or data.get("deviceName"),
            device_type=DeviceType.coerce(data.get("device_type") or data.get("deviceType")),
            user_agent=data.get("user_agent") or data.get("userAgent"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "device_type": self.device_type.value,
            "user_agent": self.user_agent,
        }


@dataclass
class GeoLocation:
    country: Optional[str] = None
    city: Optional[str] = None
    country_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["GeoLocation"]:
        if not data:
            return None
        return cls(
            country=data.get("country"),
            city=data.get("city"),
            country_code=data.get("country_code") or data.get("countryCode"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country": self.country,
            "city": self.city,
            "country_code": self.country_code,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass
class DeviceSession:
    """One authenticated device/browser bound to a single refresh token."""

    id: str
    user_id: str
    device_id: str
    refresh_token_hash: str
    issued_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    device_name: str = "Unknown Device"
    device_type: DeviceType = DeviceType.WEB
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    access_token_snapshot: Optional[str] = None
    is_active: bool = True
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        device: DeviceInfo,
        *,
        ttl: timedelta,
        ip_address: Optional[str] = None,
    ) -> "DeviceSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device.device_id or str(uuid.uuid4()),
            device_name=device.device_name or "Unknown Device",
            device_type=device.device_type,
            ip_address=ip_address,
            user_agent=device.user_agent,
            refresh_token_hash=refresh_token_hash,
            issued_at=now,
            last_activity_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return ensure_aware(self.expires_at) <= (now or utcnow())

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)


@dataclass
class SessionSummary:
    """Device metadata safe to return to the session owner; carries no token material."""

    id: str
    device_name: str
    device_type: str
    ip_address: Optional[str]
    issued_at: datetime
    last_activity_at: datetime
    expires_at: datetime

    @classmethod
    def from_session(cls, session: DeviceSession) -> "SessionSummary":
        return cls(
            id=session.id,
            device_name=session.device_name,
            device_type=DeviceType.coerce(session.device_type).value,
            ip_address=session.ip_address,
            issued_at=session.issued_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
        )


@dataclass
class BlacklistEntry:
    token_hash: str
    token_type: TokenType
    user_id: Optional[str]
    reason: RevocationReason
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def ttl_seconds(self, now: Optional[datetime] = None) -> int:
        remaining = ensure_aware(self.expires_at) - (now or utcnow())
        return max(0, int(remaining.total_seconds()))


@dataclass
class RecoveryCode:
    hash: str
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class MFACredential:
    user_id: str
    secret: Optional[str] = None
    enabled: bool = False
    recovery_codes: List[RecoveryCode] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.enabled and not self.secret:
            raise ValueError("mfa cannot be enabled without a secret")


@dataclass
class SecurityEvent:
    """Append-only audit record; only the notification fields change after insert."""

    id: str
    user_id: str
    event_type: SecurityEventType
    created_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[GeoLocation] = None
    device_info: Optional[Dict[str, Any]] = None
    status: EventStatus = EventStatus.INFO
    details: Dict[str, Any] = field(default_factory=dict)
    notified: bool = False
    notify_attempts: int = 0

    @classmethod
    def new(
        cls,
        user_id: str,
        event_type: SecurityEventType,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[GeoLocation] = None,
        device_info: Optional[Dict[str, Any]] = None,
        status: EventStatus = EventStatus.INFO,
        details: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> "SecurityEvent":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            event_type=SecurityEventType(event_type),
            created_at=created_at or utcnow(),
            ip_address=ip_address,
            user_agent=user_agent,
            location=location,
            device_info=device_info,
            status=EventStatus(status),
            details=dict(details or {}),
        )


@dataclass
class SuspicionReport:
    is_suspicious: bool = False
    reasons: List[str] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW

    def flag(self, reason: str, level: RiskLevel) -> None:
        self.is_suspicious = True
        self.reasons.append(reason)
        self.risk_level = RiskLevel.highest(self.risk_level, level)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_suspicious": self.is_suspicious,
            "reasons": list(self.reasons),
            "risk_level": self.risk_level.value,
        }
