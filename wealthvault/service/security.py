from __future__ import annotations

import inspect
import ipaddress
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Union

import httpx

from wealthvault.config import Settings
from wealthvault.logging import get_logger
from wealthvault.service.store_calls import call_store
from wealthvault.storage.common import SessionStore
from wealthvault.storage.models import (
    EventStatus,
    GeoLocation,
    RiskLevel,
    SecurityEvent,
    SecurityEventType,
    SuspicionReport,
    ensure_aware,
    utcnow,
)

logger = get_logger(__name__)

BRUTE_FORCE_REASON = "Multiple failed login attempts detected"
GEO_ANOMALY_REASON = "Login from unusual location"
IMPOSSIBLE_TRAVEL_REASON = "Impossible travel detected"

# Event types handed to the notifier; everything else is marked notified silently
NOTIFIABLE_EVENT_TYPES = frozenset(
    {
        SecurityEventType.MFA_ENABLED,
        SecurityEventType.MFA_DISABLED,
        SecurityEventType.PASSWORD_CHANGED,
        SecurityEventType.SUSPICIOUS_ACTIVITY,
    }
)


class Notifier(Protocol):
    """Out-of-band delivery (email, push) of security events."""

    def notify(self, event: SecurityEvent) -> Union[None, Awaitable[None]]: ...


def needs_notification(event: SecurityEvent) -> bool:
    if event.event_type == SecurityEventType.LOGIN_SUCCESS:
        return event.status == EventStatus.WARNING
    return event.event_type in NOTIFIABLE_EVENT_TYPES


class GeoLocator:
    """Best-effort IP geolocation over the ip-api JSON interface."""

    LOCAL = GeoLocation(city="Local", country="Local", latitude=0.0, longitude=0.0)

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 3.0,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = timeout

    @staticmethod
    def is_local(ip: str) -> bool:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return addr.is_private or addr.is_loopback or addr.is_link_local

    async def locate(self, ip: Optional[str]) -> Optional[GeoLocation]:
        if not ip:
            return None
        if self.is_local(ip):
            return GeoLocation(**self.LOCAL.to_dict())
        if not self.settings.geoip_enabled:
            return None
        url = f"{self.settings.geoip_url.rstrip('/')}/{ip}"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geoip_lookup_failed", ip=ip, error=str(exc))
            return None
        if not isinstance(data, dict) or data.get("status") != "success":
            logger.info("geoip_lookup_unresolved", ip=ip)
            return None
        return GeoLocation(
            city=data.get("city"),
            country=data.get("country"),
            country_code=data.get("countryCode"),
            latitude=data.get("lat"),
            longitude=data.get("lon"),
        )


class SecurityMonitor:
    """Append-only security event log plus suspicious-login heuristics."""

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    async def _store_call(self, operation: str, func, *args, **kwargs):
        return await call_store(
            func,
            *args,
            timeout=self.settings.store_timeout_seconds,
            operation=operation,
            **kwargs,
        )

    async def record_event(
        self,
        user_id: str,
        event_type: Union[SecurityEventType, str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[GeoLocation] = None,
        device_info: Optional[Dict[str, Any]] = None,
        status: Union[EventStatus, str] = EventStatus.INFO,
        details: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> SecurityEvent:
        """Append an event. Fails only when the store is unavailable."""
        event = SecurityEvent.new(
            user_id,
            SecurityEventType(event_type),
            ip_address=ip_address,
            user_agent=user_agent,
            location=location,
            device_info=device_info,
            status=EventStatus(status),
            details=details,
            created_at=created_at,
        )
        stored = await self._store_call(
            "append_security_event", self.store.append_security_event, event
        )
        logger.info(
            "security_event_recorded",
            user_id=user_id,
            event_type=event.event_type.value,
            status=event.status.value,
        )
        return stored

    async def list_events(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        return await self._store_call(
            "list_security_events", self.store.list_security_events, user_id, limit=limit
        )

    async def is_new_or_suspicious_device(
        self, user_id: str, ip_address: Optional[str]
    ) -> bool:
        """True unless ``ip_address`` appears in the last few successful logins."""
        recent = await self._store_call(
            "list_security_events",
            self.store.list_security_events,
            user_id,
            event_type=SecurityEventType.LOGIN_SUCCESS,
            limit=self.settings.known_device_history,
        )
        if not recent:
            return True
        return not any(event.ip_address == ip_address for event in recent)

    async def detect_suspicious_activity(
        self,
        user_id: str,
        ip_address: Optional[str],
        location: Optional[GeoLocation],
        *,
        now: Optional[datetime] = None,
    ) -> SuspicionReport:
        """Evaluate every rule and report all that fire; risk is the maximum."""
        now = now or utcnow()
        report = SuspicionReport()

        window_start = now - timedelta(minutes=self.settings.brute_force_window_minutes)
        failures = await self._store_call(
            "list_security_events",
            self.store.list_security_events,
            user_id,
            event_type=SecurityEventType.LOGIN_FAILED,
            since=window_start,
            limit=self.settings.brute_force_threshold,
        )
        if len(failures) >= self.settings.brute_force_threshold:
            report.flag(BRUTE_FORCE_REASON, RiskLevel.HIGH)

        successes = await self._store_call(
            "list_security_events",
            self.store.list_security_events,
            user_id,
            event_type=SecurityEventType.LOGIN_SUCCESS,
            limit=self.settings.known_device_history,
        )
        located = [e for e in successes if e.location and e.location.country]

        if location and location.country and located:
            if located[0].location.country != location.country:
                report.flag(GEO_ANOMALY_REASON, RiskLevel.MEDIUM)

        if len(located) >= 2:
            latest, previous = located[0], located[1]
            gap = ensure_aware(latest.created_at) - ensure_aware(previous.created_at)
            travel_window = timedelta(minutes=self.settings.impossible_travel_window_minutes)
            if gap < travel_window and latest.location.country != previous.location.country:
                report.flag(IMPOSSIBLE_TRAVEL_REASON, RiskLevel.HIGH)

        if report.is_suspicious:
            logger.warning(
                "suspicious_login_detected",
                user_id=user_id,
                ip=ip_address,
                reasons=report.reasons,
                risk_level=report.risk_level.value,
            )
        return report

    async def dispatch_notifications(
        self, notifier: Notifier, limit: Optional[int] = None
    ) -> int:
        """Hand pending events to ``notifier`` and flip ``notified``.

        Returns the number of events handed off. A notifier failure leaves
        that event pending, queued behind events not yet attempted; after
        ``notification_max_attempts`` failures it is dropped from the queue.
        """
        pending = await self._store_call(
            "list_unnotified_events",
            self.store.list_unnotified_events,
            limit or self.settings.notification_batch_size,
        )
        delivered = 0
        for event in pending:
            if needs_notification(event):
                try:
                    result = notifier.notify(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as exc:
                    attempts = await self._store_call(
                        "record_notification_failure",
                        self.store.record_notification_failure,
                        event.id,
                    )
                    logger.warning(
                        "security_notification_failed",
                        event_id=event.id,
                        event_type=event.event_type.value,
                        attempts=attempts,
                        error=str(exc),
                    )
                    if attempts >= self.settings.notification_max_attempts:
                        logger.error(
                            "security_notification_abandoned",
                            event_id=event.id,
                            event_type=event.event_type.value,
                            attempts=attempts,
                        )
                        await self._store_call(
                            "mark_event_notified", self.store.mark_event_notified, event.id
                        )
                    continue
                delivered += 1
            await self._store_call(
                "mark_event_notified", self.store.mark_event_notified, event.id
            )
        if delivered:
            logger.info("security_notifications_dispatched", count=delivered)
        return delivered
