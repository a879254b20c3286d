from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from wealthvault.config import Settings
from wealthvault.logging import get_logger
from wealthvault.service.blacklist import BlacklistCache
from wealthvault.service.credentials import CredentialVerifier
from wealthvault.service.errors import (
    InvalidCredentialsError,
    InvalidMFATokenError,
    MFARequiredError,
    RecoveryCodeConsumedError,
    RevokedTokenError,
)
from wealthvault.service.mfa import MFAVerifier
from wealthvault.service.security import GeoLocator, SecurityMonitor
from wealthvault.service.sessions import SessionManager
from wealthvault.service.tokens import AccessClaims, TokenCodec
from wealthvault.storage.models import (
    DeviceInfo,
    EventStatus,
    GeoLocation,
    RevocationReason,
    RiskLevel,
    SecurityEventType,
    SessionSummary,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    session_id: str
    claims: AccessClaims


class AuthService:
    """Login, refresh, logout and request authentication over the auth core.

    Every login attempt leaves a security event. Outward errors never say
    which factor failed; the internal reason goes into the event details.
    """

    def __init__(
        self,
        credentials: CredentialVerifier,
        sessions: SessionManager,
        mfa: MFAVerifier,
        monitor: SecurityMonitor,
        blacklist: BlacklistCache,
        codec: TokenCodec,
        settings: Settings,
        *,
        geolocator: Optional[GeoLocator] = None,
    ) -> None:
        self.credentials = credentials
        self.sessions = sessions
        self.mfa = mfa
        self.monitor = monitor
        self.blacklist = blacklist
        self.codec = codec
        self.settings = settings
        self.geolocator = geolocator
        self.logger = logger

    async def _record_failure(
        self,
        user_id: Optional[str],
        reason: str,
        *,
        ip_address: Optional[str],
        device: DeviceInfo,
        location: Optional[GeoLocation],
    ) -> None:
        if user_id is None:
            # nothing to attach the event to; audit via the log only
            self.logger.info("login_failed_unknown_identifier", ip=ip_address, reason=reason)
            return
        await self.monitor.record_event(
            user_id,
            SecurityEventType.LOGIN_FAILED,
            ip_address=ip_address,
            user_agent=device.user_agent,
            location=location,
            device_info=device.to_dict(),
            status=EventStatus.WARNING,
            details={"reason": reason},
        )

    async def login(
        self,
        identifier: str,
        secret: str,
        mfa_code: Optional[str] = None,
        *,
        device_info: Optional[Union[DeviceInfo, Dict[str, Any]]] = None,
        ip_address: Optional[str] = None,
        location: Optional[GeoLocation] = None,
    ) -> Dict[str, Any]:
        """Authenticate and open a new device session.

        Raises:
            InvalidCredentialsError: unknown identifier or wrong secret.
            MFARequiredError: MFA is enabled and no code was supplied; no
                session is created.
            InvalidMFATokenError: the supplied code matched nothing, or the
                matching recovery code was consumed concurrently.
        """
        device = device_info if isinstance(device_info, DeviceInfo) else DeviceInfo.from_dict(device_info)
        user_id = self.credentials.lookup_user_id(identifier)
        if location is None and self.geolocator is not None:
            location = await self.geolocator.locate(ip_address)

        verified = self.credentials.verify(identifier, secret)
        if user_id is None or not verified:
            await self._record_failure(
                user_id,
                "invalid_credentials",
                ip_address=ip_address,
                device=device,
                location=location,
            )
            raise InvalidCredentialsError("invalid credentials")

        matched_by: Optional[str] = None
        if await self.mfa.is_enabled(user_id):
            if not mfa_code:
                self.logger.info("login_mfa_required", user_id=user_id)
                raise MFARequiredError("mfa code required")
            match = await self.mfa.verify_login(user_id, mfa_code)
            if match is None:
                await self._record_failure(
                    user_id,
                    "invalid_mfa_token",
                    ip_address=ip_address,
                    device=device,
                    location=location,
                )
                raise InvalidMFATokenError("mfa code rejected")
            if match.matched_by == "recovery":
                try:
                    await self.mfa.consume_recovery_code(user_id, match.recovery_index)
                except RecoveryCodeConsumedError:
                    await self._record_failure(
                        user_id,
                        "recovery_code_reused",
                        ip_address=ip_address,
                        device=device,
                        location=location,
                    )
                    raise InvalidMFATokenError("recovery code already consumed")
                status = await self.mfa.recovery_code_status(user_id)
                await self.monitor.record_event(
                    user_id,
                    SecurityEventType.MFA_RECOVERY_USED,
                    ip_address=ip_address,
                    user_agent=device.user_agent,
                    status=EventStatus.WARNING,
                    details={"remaining": status["unused"]},
                )
            matched_by = match.matched_by

        # evaluated against history that does not yet include this login
        new_device = await self.monitor.is_new_or_suspicious_device(user_id, ip_address)
        report = await self.monitor.detect_suspicious_activity(user_id, ip_address, location)

        tokens = await self.sessions.create_session(user_id, device, ip_address)
        await self.monitor.record_event(
            user_id,
            SecurityEventType.LOGIN_SUCCESS,
            ip_address=ip_address,
            user_agent=device.user_agent,
            location=location,
            device_info=device.to_dict(),
            status=EventStatus.WARNING if (new_device or report.is_suspicious) else EventStatus.INFO,
            details={
                "session_id": tokens["session_id"],
                "new_device": new_device,
                "mfa": matched_by,
            },
        )
        if report.is_suspicious:
            await self.monitor.record_event(
                user_id,
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                ip_address=ip_address,
                user_agent=device.user_agent,
                location=location,
                device_info=device.to_dict(),
                status=EventStatus.CRITICAL
                if report.risk_level == RiskLevel.HIGH
                else EventStatus.WARNING,
                details={**report.to_dict(), "description": "; ".join(report.reasons)},
            )
        self.logger.info(
            "login_succeeded",
            user_id=user_id,
            session_id=tokens["session_id"],
            new_device=new_device,
            risk_level=report.risk_level.value,
        )
        return {
            **tokens,
            "user_id": user_id,
            "mfa_verified_by": matched_by,
            "new_device": new_device,
            "security": report.to_dict(),
        }

    async def refresh(self, refresh_token: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        return await self.sessions.refresh(refresh_token, ip_address)

    async def logout(
        self, session_id: str, user_id: str, *, ip_address: Optional[str] = None
    ) -> bool:
        revoked = await self.sessions.revoke(session_id, user_id, RevocationReason.LOGOUT)
        if revoked:
            await self.monitor.record_event(
                user_id,
                SecurityEventType.LOGOUT,
                ip_address=ip_address,
                details={"session_id": session_id},
            )
        return revoked

    async def logout_all(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        count = await self.sessions.revoke_all(
            user_id, RevocationReason.LOGOUT, except_session_id=except_session_id
        )
        await self.monitor.record_event(
            user_id,
            SecurityEventType.SESSION_REVOKED,
            ip_address=ip_address,
            details={"count": count, "kept_session_id": except_session_id},
        )
        return count

    async def change_password(
        self,
        user_id: str,
        *,
        keep_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        """Invalidate sessions after the user directory stored a new secret."""
        count = await self.sessions.revoke_all(
            user_id, RevocationReason.PASSWORD_CHANGE, except_session_id=keep_session_id
        )
        await self.monitor.record_event(
            user_id,
            SecurityEventType.PASSWORD_CHANGED,
            ip_address=ip_address,
            status=EventStatus.WARNING,
            details={"sessions_revoked": count},
        )
        return count

    async def authenticate(self, access_token: str) -> AuthContext:
        """Resolve a bearer token to its user and live session.

        Raises:
            ExpiredTokenError, MalformedTokenError: verification failed.
            RevokedTokenError: blacklisted, or its session is no longer active.
            ServiceUnavailableError: revocation state could not be read.
        """
        claims = self.codec.verify_access_token(access_token)
        if await self.blacklist.is_blacklisted(access_token):
            raise RevokedTokenError("access token revoked")
        session = await self.sessions.get_session(claims.session_id)
        if session is None or session.user_id != claims.subject or not session.is_usable(utcnow()):
            self.logger.info(
                "access_token_session_inactive",
                session_id=claims.session_id,
                user_id=claims.subject,
            )
            raise RevokedTokenError("session no longer active")
        return AuthContext(user_id=claims.subject, session_id=claims.session_id, claims=claims)

    async def list_sessions(self, user_id: str) -> List[SessionSummary]:
        return await self.sessions.list_active_sessions(user_id)

    async def enroll_mfa(self, user_id: str, account_name: Optional[str] = None) -> Dict[str, Any]:
        return await self.mfa.enroll(user_id, account_name)

    async def confirm_mfa(
        self, user_id: str, code: str, *, ip_address: Optional[str] = None
    ) -> bool:
        enabled = await self.mfa.confirm(user_id, code)
        if enabled:
            await self.monitor.record_event(
                user_id, SecurityEventType.MFA_ENABLED, ip_address=ip_address
            )
        return enabled

    async def disable_mfa(self, user_id: str, *, ip_address: Optional[str] = None) -> bool:
        removed = await self.mfa.disable(user_id)
        if removed:
            await self.monitor.record_event(
                user_id,
                SecurityEventType.MFA_DISABLED,
                ip_address=ip_address,
                status=EventStatus.WARNING,
            )
        return removed
