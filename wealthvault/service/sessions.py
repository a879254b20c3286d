from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from wealthvault.config import Settings
from wealthvault.logging import fingerprint, get_logger
from wealthvault.service.blacklist import BlacklistCache
from wealthvault.service.errors import (
    InvalidRefreshTokenError,
    RevokedTokenError,
    SessionNotFoundError,
)
from wealthvault.service.store_calls import call_store
from wealthvault.service.tokens import TokenCodec, hash_token
from wealthvault.storage.common import SessionStore
from wealthvault.storage.models import (
    BlacklistEntry,
    DeviceInfo,
    DeviceSession,
    RevocationReason,
    SessionSummary,
    TokenType,
    utcnow,
)

logger = get_logger(__name__)


class SessionManager:
    """Owns the device-session state machine: Active -> Revoked | Expired.

    Refresh tokens are opaque and stable for the life of a session; each
    refresh only mints a new access token. Revocation blacklists both the last
    issued access token and the refresh token before the session row is
    deactivated, so any refresh that starts after ``revoke`` returns sees it.
    """

    def __init__(
        self,
        store: SessionStore,
        blacklist: BlacklistCache,
        codec: TokenCodec,
        settings: Settings,
    ) -> None:
        self.store = store
        self.blacklist = blacklist
        self.codec = codec
        self.settings = settings
        self.session_ttl = timedelta(days=settings.session_ttl_days)

    async def _store_call(self, operation: str, func, *args, **kwargs):
        return await call_store(
            func,
            *args,
            timeout=self.settings.store_timeout_seconds,
            operation=operation,
            **kwargs,
        )

    async def create_session(
        self,
        user_id: str,
        device_info: Optional[Union[DeviceInfo, Dict[str, Any]]] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Open a brand-new device session and issue its token pair.

        Every call creates a new row, even for a device seen before.
        """
        device = device_info if isinstance(device_info, DeviceInfo) else DeviceInfo.from_dict(device_info)
        refresh_token, _ = self.codec.generate_refresh_token()
        session = DeviceSession.new(
            user_id,
            hash_token(refresh_token),
            device,
            ttl=self.session_ttl,
            ip_address=ip_address,
        )
        access_token, _ = self.codec.sign_access_token(user_id, session.id)
        session.access_token_snapshot = access_token
        await self._store_call("create_session", self.store.create_session, session)
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            device_type=session.device_type.value,
            ip=ip_address,
        )
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "session_id": session.id,
            "token_type": "Bearer",
            "expires_in": self.codec.access_ttl_seconds,
            "refresh_expires_in": self.codec.refresh_ttl_seconds,
        }

    async def refresh(
        self, refresh_token: str, ip_address: Optional[str] = None
    ) -> Dict[str, Any]:
        """Mint a new access token for the session owning ``refresh_token``.

        Raises:
            RevokedTokenError: the refresh token is blacklisted, or the session
                was revoked while this call was in flight.
            InvalidRefreshTokenError: no active, unexpired session matches.
            ServiceUnavailableError: the store could not answer.
        """
        if not refresh_token:
            raise InvalidRefreshTokenError("empty refresh token")
        # blacklist first so a revoked session reports revocation, not absence
        if await self.blacklist.is_blacklisted(refresh_token):
            logger.info("refresh_rejected_revoked", token_fp=fingerprint(refresh_token))
            raise RevokedTokenError("refresh token revoked")

        session = await self._store_call(
            "find_session_by_refresh_hash",
            self.store.find_session_by_refresh_hash,
            hash_token(refresh_token),
        )
        now = utcnow()
        if session is None or not session.is_usable(now):
            logger.info(
                "refresh_rejected_invalid",
                token_fp=fingerprint(refresh_token),
                session_id=session.id if session else None,
            )
            raise InvalidRefreshTokenError("no active session for refresh token")

        access_token, _ = self.codec.sign_access_token(session.user_id, session.id)
        updated = await self._store_call(
            "update_session_activity",
            self.store.update_session_activity,
            session.id,
            access_token=access_token,
            ip_address=ip_address,
            at=now,
        )
        if not updated:
            # deactivated between lookup and update
            logger.info("refresh_lost_race_with_revoke", session_id=session.id)
            raise RevokedTokenError("session revoked during refresh")
        logger.info("session_refreshed", user_id=session.user_id, session_id=session.id)
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": self.codec.access_ttl_seconds,
            "session_id": session.id,
        }

    async def _revoke_session(
        self, session: DeviceSession, reason: RevocationReason
    ) -> bool:
        if session.access_token_snapshot:
            expiry = self.codec.peek_expiry(session.access_token_snapshot)
            if expiry is not None:
                await self.blacklist.add(
                    session.access_token_snapshot,
                    TokenType.ACCESS,
                    session.user_id,
                    reason,
                    expires_at=expiry,
                )
        # only the digest is stored, so the refresh entry is written by hash
        await self._blacklist_refresh_hash(session, reason)
        changed = await self._store_call(
            "deactivate_session",
            self.store.deactivate_session,
            session.id,
            reason=reason.value,
            at=utcnow(),
        )
        if changed:
            logger.info(
                "session_revoked",
                user_id=session.user_id,
                session_id=session.id,
                reason=reason.value,
            )
        return changed

    async def _blacklist_refresh_hash(
        self, session: DeviceSession, reason: RevocationReason
    ) -> None:
        entry = BlacklistEntry(
            token_hash=session.refresh_token_hash,
            token_type=TokenType.REFRESH,
            user_id=session.user_id,
            reason=reason,
            expires_at=session.expires_at,
        )
        await self.blacklist.add_entry(entry)

    async def revoke(
        self,
        session_id: str,
        user_id: str,
        reason: Union[RevocationReason, str] = RevocationReason.LOGOUT,
    ) -> bool:
        """Revoke one of ``user_id``'s sessions.

        Returns False when the session was already inactive.

        Raises:
            SessionNotFoundError: unknown session or owned by someone else.
        """
        reason = RevocationReason(reason)
        session = await self._store_call("get_session", self.store.get_session, session_id)
        if session is None or session.user_id != user_id:
            logger.info("session_revoke_not_found", session_id=session_id, user_id=user_id)
            raise SessionNotFoundError("session not found", detail={"session_id": session_id})
        if not session.is_active:
            return False
        return await self._revoke_session(session, reason)

    async def revoke_all(
        self,
        user_id: str,
        reason: Union[RevocationReason, str] = RevocationReason.SECURITY,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        """Revoke every active session of ``user_id``; returns how many changed.

        Not atomic across the set: a session created while this runs is kept.
        """
        reason = RevocationReason(reason)
        sessions = await self._store_call(
            "list_sessions_for_user", self.store.list_sessions_for_user, user_id
        )
        revoked = 0
        for session in sessions:
            if session.id == except_session_id:
                continue
            if await self._revoke_session(session, reason):
                revoked += 1
        logger.info(
            "sessions_revoked_all",
            user_id=user_id,
            count=revoked,
            reason=reason.value,
            kept=except_session_id,
        )
        return revoked

    async def get_session(self, session_id: str) -> Optional[DeviceSession]:
        return await self._store_call("get_session", self.store.get_session, session_id)

    async def list_active_sessions(self, user_id: str) -> List[SessionSummary]:
        sessions = await self._store_call(
            "list_sessions_for_user", self.store.list_sessions_for_user, user_id
        )
        now = utcnow()
        return [SessionSummary.from_session(s) for s in sessions if s.is_usable(now)]

    async def sweep_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Drop lapsed blacklist rows and deactivate sessions past expiry."""
        now = now or utcnow()
        purged = await self.blacklist.purge_expired(now)
        expired = await self._store_call(
            "deactivate_expired_sessions", self.store.deactivate_expired_sessions, now
        )
        if purged or expired:
            logger.info("session_sweep_completed", blacklist_purged=purged, sessions_expired=expired)
        return {"blacklist_purged": purged, "sessions_expired": expired}

    async def purge_inactive(self, older_than: Optional[datetime] = None) -> int:
        """Physically delete inactive sessions past the audit retention window."""
        cutoff = older_than or utcnow() - timedelta(days=self.settings.session_retention_days)
        removed = await self._store_call(
            "purge_inactive_sessions", self.store.purge_inactive_sessions, cutoff
        )
        if removed:
            logger.info("inactive_sessions_purged", count=removed, cutoff=cutoff.isoformat())
        return removed
