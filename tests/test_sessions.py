"""Tests for the device-session lifecycle: create, refresh, revoke, expire."""

import asyncio
from datetime import timedelta

import pytest

from wealthvault.service.errors import (
    ErrorKind,
    InvalidRefreshTokenError,
    RevokedTokenError,
    SessionNotFoundError,
)
from wealthvault.service.tokens import hash_token
from wealthvault.storage.models import DeviceInfo, RevocationReason, utcnow


def _expire(memory_store, session_id):
    with memory_store._data_lock:
        memory_store.sessions[session_id].expires_at = utcnow() - timedelta(seconds=1)


class TestCreateSession:
    async def test_returns_token_pair(self, sessions, codec, memory_store):
        tokens = await sessions.create_session(
            "user-1",
            {"device_name": "Pixel", "device_type": "mobile", "user_agent": "ua"},
            "203.0.113.5",
        )

        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 15 * 60
        assert tokens["refresh_expires_in"] == 7 * 24 * 3600
        claims = codec.verify_access_token(tokens["access_token"])
        assert claims.subject == "user-1"
        assert claims.session_id == tokens["session_id"]

        stored = memory_store.get_session(tokens["session_id"])
        assert stored.refresh_token_hash == hash_token(tokens["refresh_token"])
        assert stored.device_name == "Pixel"
        assert stored.device_type.value == "mobile"
        assert stored.ip_address == "203.0.113.5"
        assert (stored.expires_at - stored.issued_at) == timedelta(days=30)

    async def test_every_login_is_a_new_session(self, sessions):
        device = DeviceInfo(device_id="laptop-1", device_name="Laptop")
        first = await sessions.create_session("user-1", device)
        second = await sessions.create_session("user-1", device)

        assert first["session_id"] != second["session_id"]
        assert first["refresh_token"] != second["refresh_token"]
        assert len(await sessions.list_active_sessions("user-1")) == 2


class TestRefresh:
    async def test_access_token_changes_session_stays(self, sessions, codec):
        tokens = await sessions.create_session("user-1")
        seen = {tokens["access_token"]}

        for _ in range(3):
            refreshed = await sessions.refresh(tokens["refresh_token"])
            assert refreshed["session_id"] == tokens["session_id"]
            assert refreshed["access_token"] not in seen
            claims = codec.verify_access_token(refreshed["access_token"])
            assert claims.session_id == tokens["session_id"]
            seen.add(refreshed["access_token"])

        # refresh tokens are not rotated: the original stays the only valid one
        assert "refresh_token" not in refreshed

    async def test_refresh_updates_activity(self, sessions, memory_store):
        tokens = await sessions.create_session("user-1", ip_address="203.0.113.5")
        before = memory_store.get_session(tokens["session_id"])

        refreshed = await sessions.refresh(tokens["refresh_token"], "198.51.100.7")

        after = memory_store.get_session(tokens["session_id"])
        assert after.ip_address == "198.51.100.7"
        assert after.last_activity_at >= before.last_activity_at
        assert after.access_token_snapshot == refreshed["access_token"]

    @pytest.mark.parametrize("token", ["", "unknown-refresh-token"])
    async def test_unknown_refresh_token(self, sessions, token):
        with pytest.raises(InvalidRefreshTokenError) as excinfo:
            await sessions.refresh(token)
        assert excinfo.value.kind == ErrorKind.INVALID_REFRESH_TOKEN

    async def test_expired_session_rejected(self, sessions, memory_store):
        tokens = await sessions.create_session("user-1")
        _expire(memory_store, tokens["session_id"])

        with pytest.raises(InvalidRefreshTokenError):
            await sessions.refresh(tokens["refresh_token"])


class TestRevoke:
    async def test_revocation_is_final(self, sessions, blacklist, fake_cache):
        tokens = await sessions.create_session("user-1")
        assert await sessions.revoke(tokens["session_id"], "user-1") is True

        assert await blacklist.is_blacklisted(tokens["access_token"]) is True
        with pytest.raises(RevokedTokenError):
            await sessions.refresh(tokens["refresh_token"])

        await fake_cache.clear_blacklist()
        fake_cache.available = False
        with pytest.raises(RevokedTokenError):
            await sessions.refresh(tokens["refresh_token"])

    async def test_revoke_records_reason(self, sessions, memory_store):
        tokens = await sessions.create_session("user-1")
        await sessions.revoke(tokens["session_id"], "user-1", RevocationReason.MANUAL_REVOKE)

        stored = memory_store.get_session(tokens["session_id"])
        assert stored.is_active is False
        assert stored.revoke_reason == "manual_revoke"
        assert stored.revoked_at is not None
        entry = memory_store.get_blacklist_entry(stored.refresh_token_hash)
        assert entry.reason == RevocationReason.MANUAL_REVOKE
        assert entry.expires_at == stored.expires_at

    async def test_second_revoke_is_noop(self, sessions):
        tokens = await sessions.create_session("user-1")
        assert await sessions.revoke(tokens["session_id"], "user-1") is True
        assert await sessions.revoke(tokens["session_id"], "user-1") is False

    async def test_foreign_session_not_found(self, sessions):
        tokens = await sessions.create_session("user-1")

        with pytest.raises(SessionNotFoundError):
            await sessions.revoke(tokens["session_id"], "user-2")
        with pytest.raises(SessionNotFoundError):
            await sessions.revoke("no-such-session", "user-1")
        assert len(await sessions.list_active_sessions("user-1")) == 1

    async def test_revoke_all_keeps_current(self, sessions):
        keep = await sessions.create_session("user-1")
        others = [await sessions.create_session("user-1") for _ in range(3)]
        await sessions.create_session("user-2")

        count = await sessions.revoke_all(
            "user-1", RevocationReason.PASSWORD_CHANGE, except_session_id=keep["session_id"]
        )

        assert count == 3
        active = await sessions.list_active_sessions("user-1")
        assert [s.id for s in active] == [keep["session_id"]]
        assert len(await sessions.list_active_sessions("user-2")) == 1
        for tokens in others:
            with pytest.raises(RevokedTokenError):
                await sessions.refresh(tokens["refresh_token"])

    async def test_concurrent_refresh_and_revoke(self, sessions, auth_service):
        tokens = await sessions.create_session("user-1")

        results = await asyncio.gather(
            sessions.refresh(tokens["refresh_token"]),
            sessions.revoke(tokens["session_id"], "user-1"),
            return_exceptions=True,
        )

        issued = [tokens["access_token"]]
        if isinstance(results[0], dict):
            issued.append(results[0]["access_token"])
        else:
            assert isinstance(results[0], (RevokedTokenError, InvalidRefreshTokenError))
        assert results[1] is True
        # whichever access token won the race, the session behind it is gone
        for access_token in issued:
            with pytest.raises(RevokedTokenError):
                await auth_service.authenticate(access_token)
        with pytest.raises(RevokedTokenError):
            await sessions.refresh(tokens["refresh_token"])


class TestListing:
    async def test_summaries_carry_no_token_material(self, sessions):
        await sessions.create_session("user-1", {"device_name": "Phone"}, "203.0.113.5")

        (summary,) = await sessions.list_active_sessions("user-1")
        assert summary.device_name == "Phone"
        assert summary.ip_address == "203.0.113.5"
        assert not hasattr(summary, "refresh_token_hash")
        assert not hasattr(summary, "access_token_snapshot")

    async def test_expired_sessions_not_listed(self, sessions, memory_store):
        tokens = await sessions.create_session("user-1")
        _expire(memory_store, tokens["session_id"])
        assert await sessions.list_active_sessions("user-1") == []


class TestMaintenance:
    async def test_sweep_expires_sessions_and_purges_blacklist(self, sessions, memory_store):
        tokens = await sessions.create_session("user-1")
        _expire(memory_store, tokens["session_id"])

        result = await sessions.sweep_expired()

        assert result["sessions_expired"] == 1
        assert memory_store.get_session(tokens["session_id"]).is_active is False

    async def test_purge_inactive_respects_retention(self, sessions, memory_store):
        old = await sessions.create_session("user-1")
        recent = await sessions.create_session("user-1")
        await sessions.revoke(old["session_id"], "user-1")
        await sessions.revoke(recent["session_id"], "user-1")
        with memory_store._data_lock:
            memory_store.sessions[old["session_id"]].revoked_at = utcnow() - timedelta(days=120)

        assert await sessions.purge_inactive() == 1
        assert memory_store.get_session(old["session_id"]) is None
        assert memory_store.get_session(recent["session_id"]) is not None
