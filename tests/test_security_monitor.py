"""Tests for the security event log, suspicious-login rules and notifications."""

from datetime import timedelta

import httpx
import pytest

from wealthvault.service.security import (
    BRUTE_FORCE_REASON,
    GEO_ANOMALY_REASON,
    IMPOSSIBLE_TRAVEL_REASON,
    GeoLocator,
    SecurityMonitor,
)
from wealthvault.storage.models import (
    EventStatus,
    GeoLocation,
    RiskLevel,
    SecurityEventType,
    utcnow,
)

US = GeoLocation(country="United States", city="New York", country_code="US")
FR = GeoLocation(country="France", city="Paris", country_code="FR")


class CollectingNotifier:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    def notify(self, event):
        if self.fail:
            raise RuntimeError("smtp down")
        self.events.append(event)


class AsyncNotifier:
    def __init__(self):
        self.events = []

    async def notify(self, event):
        self.events.append(event)


async def _fail_logins(monitor, count, *, at):
    for i in range(count):
        await monitor.record_event(
            "user-1",
            SecurityEventType.LOGIN_FAILED,
            ip_address="203.0.113.9",
            status=EventStatus.WARNING,
            details={"reason": "invalid_credentials"},
            created_at=at - timedelta(minutes=i),
        )


class TestBruteForce:
    """Failed logins inside the window trip the rule at the threshold."""

    async def test_four_failures_not_suspicious(self, monitor):
        now = utcnow()
        await _fail_logins(monitor, 4, at=now)

        report = await monitor.detect_suspicious_activity("user-1", "203.0.113.9", None, now=now)
        assert report.is_suspicious is False
        assert report.risk_level == RiskLevel.LOW

    async def test_fifth_failure_is_high_risk(self, monitor):
        now = utcnow()
        await _fail_logins(monitor, 5, at=now)

        report = await monitor.detect_suspicious_activity("user-1", "203.0.113.9", None, now=now)
        assert report.is_suspicious is True
        assert report.risk_level == RiskLevel.HIGH
        assert BRUTE_FORCE_REASON in report.reasons

    async def test_failures_outside_window_ignored(self, monitor):
        now = utcnow()
        await _fail_logins(monitor, 4, at=now)
        await _fail_logins(monitor, 3, at=now - timedelta(hours=2))

        report = await monitor.detect_suspicious_activity("user-1", None, None, now=now)
        assert BRUTE_FORCE_REASON not in report.reasons

    async def test_other_users_failures_do_not_count(self, monitor):
        now = utcnow()
        await _fail_logins(monitor, 5, at=now)

        report = await monitor.detect_suspicious_activity("user-2", None, None, now=now)
        assert report.is_suspicious is False


class TestLocationRules:
    async def test_impossible_travel(self, monitor):
        now = utcnow()
        await monitor.record_event(
            "user-1",
            SecurityEventType.LOGIN_SUCCESS,
            ip_address="198.51.100.1",
            location=US,
            created_at=now - timedelta(minutes=20),
        )
        await monitor.record_event(
            "user-1",
            SecurityEventType.LOGIN_SUCCESS,
            ip_address="203.0.113.1",
            location=FR,
            created_at=now,
        )

        report = await monitor.detect_suspicious_activity("user-1", "203.0.113.1", FR, now=now)
        assert report.is_suspicious is True
        assert report.risk_level == RiskLevel.HIGH
        assert IMPOSSIBLE_TRAVEL_REASON in report.reasons

    async def test_distant_logins_hours_apart_are_fine(self, monitor):
        now = utcnow()
        await monitor.record_event(
            "user-1",
            SecurityEventType.LOGIN_SUCCESS,
            location=US,
            created_at=now - timedelta(hours=3),
        )
        await monitor.record_event(
            "user-1", SecurityEventType.LOGIN_SUCCESS, location=FR, created_at=now
        )

        report = await monitor.detect_suspicious_activity("user-1", None, FR, now=now)
        assert IMPOSSIBLE_TRAVEL_REASON not in report.reasons
        assert report.is_suspicious is False

    async def test_new_country_is_medium_risk(self, monitor):
        await monitor.record_event("user-1", SecurityEventType.LOGIN_SUCCESS, location=US)

        report = await monitor.detect_suspicious_activity("user-1", "203.0.113.1", FR)
        assert report.is_suspicious is True
        assert report.risk_level == RiskLevel.MEDIUM
        assert report.reasons == [GEO_ANOMALY_REASON]

    async def test_all_rules_reported_with_highest_risk(self, monitor):
        now = utcnow()
        await _fail_logins(monitor, 5, at=now)
        await monitor.record_event(
            "user-1", SecurityEventType.LOGIN_SUCCESS, location=US, created_at=now
        )

        report = await monitor.detect_suspicious_activity("user-1", None, FR, now=now)
        assert set(report.reasons) == {BRUTE_FORCE_REASON, GEO_ANOMALY_REASON}
        assert report.risk_level == RiskLevel.HIGH

    async def test_first_login_is_not_suspicious(self, monitor):
        report = await monitor.detect_suspicious_activity("user-1", "203.0.113.1", FR)
        assert report.to_dict() == {"is_suspicious": False, "reasons": [], "risk_level": "low"}


class TestDeviceRecognition:
    async def test_new_then_known_ip(self, monitor):
        assert await monitor.is_new_or_suspicious_device("user-1", "203.0.113.1") is True

        await monitor.record_event(
            "user-1", SecurityEventType.LOGIN_SUCCESS, ip_address="203.0.113.1"
        )
        assert await monitor.is_new_or_suspicious_device("user-1", "203.0.113.1") is False
        assert await monitor.is_new_or_suspicious_device("user-1", "198.51.100.2") is True


class TestEventLog:
    async def test_list_events_newest_first(self, monitor):
        now = utcnow()
        for minutes, event_type in enumerate(
            [SecurityEventType.LOGIN_SUCCESS, SecurityEventType.LOGOUT, SecurityEventType.MFA_ENABLED]
        ):
            await monitor.record_event("user-1", event_type, created_at=now - timedelta(minutes=minutes))

        events = await monitor.list_events("user-1", limit=2)
        assert [e.event_type for e in events] == [
            SecurityEventType.LOGIN_SUCCESS,
            SecurityEventType.LOGOUT,
        ]

    async def test_unknown_event_type_rejected(self, monitor):
        with pytest.raises(ValueError):
            await monitor.record_event("user-1", "account_deleted")


class TestNotifications:
    async def test_only_notifiable_events_are_handed_off(self, monitor, memory_store):
        await monitor.record_event("user-1", SecurityEventType.LOGIN_FAILED)
        await monitor.record_event("user-1", SecurityEventType.LOGIN_SUCCESS)
        await monitor.record_event(
            "user-1", SecurityEventType.LOGIN_SUCCESS, status=EventStatus.WARNING
        )
        await monitor.record_event(
            "user-1", SecurityEventType.SUSPICIOUS_ACTIVITY, status=EventStatus.CRITICAL
        )
        notifier = CollectingNotifier()

        assert await monitor.dispatch_notifications(notifier) == 2
        assert {e.event_type for e in notifier.events} == {
            SecurityEventType.LOGIN_SUCCESS,
            SecurityEventType.SUSPICIOUS_ACTIVITY,
        }
        assert memory_store.list_unnotified_events() == []
        assert await monitor.dispatch_notifications(notifier) == 0

    async def test_failed_delivery_stays_pending(self, monitor, memory_store):
        event = await monitor.record_event("user-1", SecurityEventType.PASSWORD_CHANGED)

        assert await monitor.dispatch_notifications(CollectingNotifier(fail=True)) == 0
        assert [e.id for e in memory_store.list_unnotified_events()] == [event.id]

        notifier = AsyncNotifier()
        assert await monitor.dispatch_notifications(notifier) == 1
        assert notifier.events[0].id == event.id

    async def test_failed_events_queue_behind_fresh_ones(self, monitor, memory_store):
        stuck = await monitor.record_event("user-1", SecurityEventType.PASSWORD_CHANGED)
        await monitor.dispatch_notifications(CollectingNotifier(fail=True))
        fresh = await monitor.record_event("user-1", SecurityEventType.MFA_ENABLED)

        notifier = CollectingNotifier()
        assert await monitor.dispatch_notifications(notifier, limit=1) == 1
        assert [e.id for e in notifier.events] == [fresh.id]
        assert [e.id for e in memory_store.list_unnotified_events()] == [stuck.id]
        assert memory_store.list_unnotified_events()[0].notify_attempts == 1

    async def test_delivery_abandoned_after_max_attempts(self, memory_store, settings):
        monitor = SecurityMonitor(
            memory_store, settings.model_copy(update={"notification_max_attempts": 2})
        )
        await monitor.record_event("user-1", SecurityEventType.PASSWORD_CHANGED)
        failing = CollectingNotifier(fail=True)

        await monitor.dispatch_notifications(failing)
        assert len(memory_store.list_unnotified_events()) == 1
        await monitor.dispatch_notifications(failing)

        assert memory_store.list_unnotified_events() == []
        assert await monitor.dispatch_notifications(CollectingNotifier()) == 0


class TestGeoLocator:
    async def test_private_address_is_local_without_network(self, settings):
        def refuse(request):
            raise AssertionError("no request expected")

        locator = GeoLocator(settings, transport=httpx.MockTransport(refuse))
        location = await locator.locate("192.168.1.20")
        assert location.city == "Local"
        assert (await locator.locate("127.0.0.1")).country == "Local"

    async def test_disabled_lookup_returns_none(self, settings):
        locator = GeoLocator(settings)
        assert await locator.locate("8.8.8.8") is None
        assert await locator.locate(None) is None

    async def test_lookup_parses_response(self, settings):
        def handler(request):
            assert request.url.path.endswith("/8.8.8.8")
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "country": "United States",
                    "countryCode": "US",
                    "city": "Mountain View",
                    "lat": 37.4,
                    "lon": -122.1,
                },
            )

        enabled = settings.model_copy(update={"geoip_enabled": True})
        locator = GeoLocator(enabled, transport=httpx.MockTransport(handler))

        location = await locator.locate("8.8.8.8")
        assert location.country_code == "US"
        assert location.latitude == 37.4

    async def test_lookup_failure_returns_none(self, settings):
        def handler(request):
            return httpx.Response(503)

        enabled = settings.model_copy(update={"geoip_enabled": True})
        locator = GeoLocator(enabled, transport=httpx.MockTransport(handler))
        assert await locator.locate("8.8.8.8") is None
