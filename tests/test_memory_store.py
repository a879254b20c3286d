"""MemoryStore row semantics and JSON snapshot persistence."""

from datetime import timedelta

import pytest
from cryptography.fernet import InvalidToken

from wealthvault.service.tokens import hash_token
from wealthvault.storage.errors import ConstraintViolation
from wealthvault.storage.memory import MemoryStore
from wealthvault.storage.models import (
    BlacklistEntry,
    DeviceInfo,
    DeviceSession,
    GeoLocation,
    MFACredential,
    RecoveryCode,
    RevocationReason,
    SecurityEvent,
    SecurityEventType,
    TokenType,
    utcnow,
)


def _session(user_id="user-1", refresh="refresh-1"):
    return DeviceSession.new(
        user_id,
        hash_token(refresh),
        DeviceInfo(device_name="Laptop"),
        ttl=timedelta(days=30),
        ip_address="203.0.113.5",
    )


class TestSessions:
    def test_refresh_hash_lookup(self, memory_store):
        session = memory_store.create_session(_session())
        found = memory_store.find_session_by_refresh_hash(hash_token("refresh-1"))
        assert found.id == session.id
        assert memory_store.find_session_by_refresh_hash(hash_token("other")) is None

    def test_duplicate_refresh_hash_rejected(self, memory_store):
        memory_store.create_session(_session())
        with pytest.raises(ConstraintViolation):
            memory_store.create_session(_session(user_id="user-2"))

    def test_returned_rows_are_copies(self, memory_store):
        session = memory_store.create_session(_session())
        copy = memory_store.get_session(session.id)
        copy.is_active = False
        assert memory_store.get_session(session.id).is_active is True

    def test_activity_update_refused_after_deactivation(self, memory_store):
        session = memory_store.create_session(_session())
        assert memory_store.deactivate_session(session.id, reason="logout", at=utcnow())
        assert not memory_store.update_session_activity(
            session.id, access_token="tok", ip_address=None, at=utcnow()
        )
        assert not memory_store.deactivate_session(session.id, reason="logout", at=utcnow())

    def test_activity_update_records_access_snapshot(self, memory_store):
        session = memory_store.create_session(_session())
        assert memory_store.update_session_activity(
            session.id, access_token="access-2", ip_address="10.0.0.9", at=utcnow()
        )
        assert memory_store.get_session(session.id).access_token_snapshot == "access-2"

    def test_listing_filters_inactive(self, memory_store):
        live = memory_store.create_session(_session(refresh="a"))
        dead = memory_store.create_session(_session(refresh="b"))
        memory_store.deactivate_session(dead.id, reason="logout", at=utcnow())

        assert [s.id for s in memory_store.list_sessions_for_user("user-1")] == [live.id]
        assert len(memory_store.list_sessions_for_user("user-1", active_only=False)) == 2


class TestMfaAtRest:
    def test_secret_encrypted_and_round_trips(self, memory_store):
        memory_store.save_mfa_credential(MFACredential(user_id="user-1", secret="JBSWY3DPEHPK3PXP"))

        assert memory_store.mfa["user-1"].secret != "JBSWY3DPEHPK3PXP"
        assert memory_store.get_mfa_credential("user-1").secret == "JBSWY3DPEHPK3PXP"

    def test_enable_requires_secret(self, memory_store):
        memory_store.save_mfa_credential(MFACredential(user_id="user-1"))
        with pytest.raises(ConstraintViolation):
            memory_store.set_mfa_enabled("user-1", True)

    def test_credential_model_refuses_enabled_without_secret(self):
        with pytest.raises(ValueError):
            MFACredential(user_id="user-1", enabled=True)


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="persisted-key")
        session = store.create_session(_session())
        store.add_blacklist_entry(
            BlacklistEntry(
                token_hash=hash_token("revoked"),
                token_type=TokenType.REFRESH,
                user_id="user-1",
                reason=RevocationReason.SECURITY,
                expires_at=utcnow() + timedelta(days=1),
            )
        )
        store.save_mfa_credential(
            MFACredential(
                user_id="user-1",
                secret="JBSWY3DPEHPK3PXP",
                enabled=True,
                recovery_codes=[RecoveryCode(hash="abc")],
            )
        )
        store.append_security_event(
            SecurityEvent.new(
                "user-1",
                SecurityEventType.LOGIN_SUCCESS,
                location=GeoLocation(country="France"),
            )
        )

        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="persisted-key")

        assert reloaded.find_session_by_refresh_hash(hash_token("refresh-1")).id == session.id
        entry = reloaded.get_blacklist_entry(hash_token("revoked"))
        assert entry.reason == RevocationReason.SECURITY
        cred = reloaded.get_mfa_credential("user-1")
        assert cred.secret == "JBSWY3DPEHPK3PXP"
        assert cred.enabled is True
        (event,) = reloaded.list_security_events("user-1")
        assert event.location.country == "France"

    def test_mfa_timestamps_survive_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="persisted-key")
        regenerated_at = utcnow() - timedelta(hours=2)
        store.save_mfa_credential(
            MFACredential(
                user_id="user-1",
                secret="JBSWY3DPEHPK3PXP",
                recovery_codes=[RecoveryCode(hash="abc")],
                updated_at=regenerated_at,
            )
        )

        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="persisted-key")
        assert reloaded.get_mfa_credential("user-1").updated_at == regenerated_at

        used_at = utcnow()
        assert reloaded.consume_recovery_code("user-1", 0, at=used_at)
        again = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="persisted-key")
        assert again.get_mfa_credential("user-1").updated_at == used_at

    def test_notification_attempts_survive_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        event = store.append_security_event(
            SecurityEvent.new("user-1", SecurityEventType.PASSWORD_CHANGED)
        )
        assert store.record_notification_failure(event.id) == 1
        assert store.record_notification_failure(event.id) == 2

        reloaded = MemoryStore(fs_root=str(tmp_path))
        (pending,) = reloaded.list_unnotified_events()
        assert pending.notify_attempts == 2
        assert reloaded.mark_event_notified(event.id)
        assert reloaded.record_notification_failure(event.id) == 0

    def test_wrong_key_cannot_read_secret(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="key-one")
        store.save_mfa_credential(MFACredential(user_id="user-1", secret="JBSWY3DPEHPK3PXP"))

        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="key-two")
        with pytest.raises(InvalidToken):
            reloaded.get_mfa_credential("user-1")
