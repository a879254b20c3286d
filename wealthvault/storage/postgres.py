from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from wealthvault.logging import get_logger
from wealthvault.storage.common import (
    SecretCipher,
    deserialize_blacklist_entry,
    deserialize_recovery_codes,
    deserialize_security_event,
    deserialize_session,
    serialize_recovery_codes,
)
from wealthvault.storage.errors import ConstraintViolation, StoreUnavailable
from wealthvault.storage.models import (
    BlacklistEntry,
    DeviceSession,
    DeviceType,
    MFACredential,
    SecurityEvent,
    SecurityEventType,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS device_sessions (
        id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        device_name TEXT NOT NULL DEFAULT 'Unknown Device',
        device_type TEXT NOT NULL DEFAULT 'web',
        ip_address INET,
        user_agent TEXT,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        access_token_snapshot TEXT,
        issued_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        revoked_at TIMESTAMPTZ,
        revoke_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS device_sessions_user_idx ON device_sessions (user_id, is_active)",
    """
    CREATE TABLE IF NOT EXISTS token_blacklist (
        token_hash TEXT PRIMARY KEY,
        token_type TEXT NOT NULL,
        user_id TEXT,
        reason TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_blacklist_expiry_idx ON token_blacklist (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS mfa_credentials (
        user_id TEXT PRIMARY KEY,
        secret TEXT,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        recovery_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        CHECK (NOT enabled OR secret IS NOT NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_events (
        id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        ip_address INET,
        user_agent TEXT,
        location JSONB,
        device_info JSONB,
        status TEXT NOT NULL DEFAULT 'info',
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        notified BOOLEAN NOT NULL DEFAULT FALSE,
        notify_attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "ALTER TABLE security_events ADD COLUMN IF NOT EXISTS notify_attempts INTEGER NOT NULL DEFAULT 0",
    "CREATE INDEX IF NOT EXISTS security_events_user_idx ON security_events (user_id, event_type, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS security_events_dispatch_idx ON security_events (notify_attempts, created_at) WHERE NOT notified",
)


class PostgresStore:
    """Postgres-backed session store.

    Each method runs in its own pooled connection and commits on exit. Driver
    connectivity failures surface as :class:`StoreUnavailable`.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        statement_timeout_seconds: float = 3.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        timeout_ms = int(statement_timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=statement_timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={timeout_ms}",
            },
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str = "query") -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable(str(exc), operation=operation) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for ddl in _SCHEMA:
                conn.execute(ddl)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect("ping") as conn:
            conn.execute("SELECT 1").fetchone()

    # device sessions
    def create_session(self, session: DeviceSession) -> DeviceSession:
        try:
            with self._connect("create_session") as conn:
                conn.execute(
                    """
                    INSERT INTO device_sessions (
                        id, user_id, device_id, device_name, device_type, ip_address, user_agent,
                        refresh_token_hash, access_token_snapshot, issued_at, last_activity_at,
                        expires_at, is_active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.device_id,
                        session.device_name,
                        DeviceType.coerce(session.device_type).value,
                        session.ip_address,
                        session.user_agent,
                        session.refresh_token_hash,
                        session.access_token_snapshot,
                        session.issued_at,
                        session.last_activity_at,
                        session.expires_at,
                        session.is_active,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Optional[DeviceSession]:
        with self._connect("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM device_sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return deserialize_session(row) if row else None

    def find_session_by_refresh_hash(
        self, refresh_token_hash: str
    ) -> Optional[DeviceSession]:
        with self._connect("find_session_by_refresh_hash") as conn:
            row = conn.execute(
                "SELECT * FROM device_sessions WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return deserialize_session(row) if row else None

    def update_session_activity(
        self,
        session_id: str,
        *,
        access_token: str,
        ip_address: Optional[str],
        at: datetime,
    ) -> bool:
        with self._connect("update_session_activity") as conn:
            result = conn.execute(
                """
                UPDATE device_sessions
                SET access_token_snapshot = %s,
                    last_activity_at = %s,
                    ip_address = COALESCE(%s::inet, ip_address)
                WHERE id = %s AND is_active
                """,
                (access_token, at, ip_address, session_id),
            )
            return result.rowcount > 0

    def deactivate_session(self, session_id: str, *, reason: str, at: datetime) -> bool:
        with self._connect("deactivate_session") as conn:
            result = conn.execute(
                """
                UPDATE device_sessions
                SET is_active = FALSE, revoked_at = %s, revoke_reason = %s
                WHERE id = %s AND is_active
                """,
                (at, reason, session_id),
            )
            return result.rowcount > 0

    def list_sessions_for_user(
        self, user_id: str, *, active_only: bool = True
    ) -> List[DeviceSession]:
        query = "SELECT * FROM device_sessions WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        query += " ORDER BY last_activity_at DESC"
        with self._connect("list_sessions_for_user") as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [deserialize_session(row) for row in rows]

    def deactivate_expired_sessions(self, now: datetime) -> int:
        with self._connect("deactivate_expired_sessions") as conn:
            result = conn.execute(
                """
                UPDATE device_sessions
                SET is_active = FALSE, revoke_reason = COALESCE(revoke_reason, 'expired')
                WHERE is_active AND expires_at <= %s
                """,
                (now,),
            )
            return result.rowcount

    def purge_inactive_sessions(self, older_than: datetime) -> int:
        with self._connect("purge_inactive_sessions") as conn:
            result = conn.execute(
                """
                DELETE FROM device_sessions
                WHERE NOT is_active AND COALESCE(revoked_at, expires_at) <= %s
                """,
                (older_than,),
            )
            return result.rowcount

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        with self._connect("add_blacklist_entry") as conn:
            result = conn.execute(
                """
                INSERT INTO token_blacklist (token_hash, token_type, user_id, reason, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (token_hash) DO NOTHING
                """,
                (
                    entry.token_hash,
                    entry.token_type.value,
                    entry.user_id,
                    entry.reason.value,
                    entry.expires_at,
                    entry.created_at,
                ),
            )
            if result.rowcount == 0:
                # first revocation wins
                row = conn.execute(
                    "SELECT * FROM token_blacklist WHERE token_hash = %s", (entry.token_hash,)
                ).fetchone()
                if row:
                    return deserialize_blacklist_entry(row)
        return entry

    def get_blacklist_entry(self, token_hash: str) -> Optional[BlacklistEntry]:
        with self._connect("get_blacklist_entry") as conn:
            row = conn.execute(
                "SELECT * FROM token_blacklist WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return deserialize_blacklist_entry(row) if row else None

    def purge_expired_blacklist(self, now: datetime) -> int:
        with self._connect("purge_expired_blacklist") as conn:
            result = conn.execute(
                "DELETE FROM token_blacklist WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # mfa
    def get_mfa_credential(self, user_id: str) -> Optional[MFACredential]:
        with self._connect("get_mfa_credential") as conn:
            row = conn.execute(
                "SELECT * FROM mfa_credentials WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return MFACredential(
            user_id=row["user_id"],
            secret=self._cipher.decrypt(row.get("secret")),
            enabled=bool(row.get("enabled", False)),
            recovery_codes=deserialize_recovery_codes(row.get("recovery_codes")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    def save_mfa_credential(self, credential: MFACredential) -> MFACredential:
        with self._connect("save_mfa_credential") as conn:
            conn.execute(
                """
                INSERT INTO mfa_credentials (user_id, secret, enabled, recovery_codes, created_at, updated_at)
                VALUES (%s, %s, %s, %s::jsonb, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET secret = EXCLUDED.secret,
                    enabled = EXCLUDED.enabled,
                    recovery_codes = EXCLUDED.recovery_codes,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    credential.user_id,
                    self._cipher.encrypt(credential.secret),
                    credential.enabled,
                    json.dumps(serialize_recovery_codes(credential.recovery_codes)),
                    credential.created_at,
                    credential.updated_at or utcnow(),
                ),
            )
        return credential

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> bool:
        try:
            with self._connect("set_mfa_enabled") as conn:
                result = conn.execute(
                    "UPDATE mfa_credentials SET enabled = %s, updated_at = now() WHERE user_id = %s",
                    (enabled, user_id),
                )
                return result.rowcount > 0
        except errors.CheckViolation:
            raise ConstraintViolation("mfa secret missing", {"user_id": user_id})

    def consume_recovery_code(self, user_id: str, index: int, *, at: datetime) -> bool:
        # jsonb treats negative indexes as offsets from the end
        if index < 0:
            return False
        # single conditional UPDATE; a concurrent consumer sees rowcount 0
        path = [str(index), "used"]
        used_at_path = [str(index), "used_at"]
        with self._connect("consume_recovery_code") as conn:
            result = conn.execute(
                """
                UPDATE mfa_credentials
                SET recovery_codes = jsonb_set(
                        jsonb_set(recovery_codes, %s::text[], 'true'::jsonb),
                        %s::text[],
                        to_jsonb(%s::text)
                    ),
                    updated_at = %s
                WHERE user_id = %s
                  AND jsonb_array_length(recovery_codes) > %s
                  AND COALESCE((recovery_codes -> %s ->> 'used')::boolean, FALSE) = FALSE
                """,
                (path, used_at_path, at.isoformat(), at, user_id, index, index),
            )
            return result.rowcount > 0

    def delete_mfa_credential(self, user_id: str) -> bool:
        with self._connect("delete_mfa_credential") as conn:
            result = conn.execute(
                "DELETE FROM mfa_credentials WHERE user_id = %s", (user_id,)
            )
            return result.rowcount > 0

    # security events
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        try:
            with self._connect("append_security_event") as conn:
                conn.execute(
                    """
                    INSERT INTO security_events (
                        id, user_id, event_type, ip_address, user_agent, location,
                        device_info, status, details, notified, notify_attempts, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s::jsonb, %s, %s, %s)
                    """,
                    (
                        event.id,
                        event.user_id,
                        event.event_type.value,
                        event.ip_address,
                        event.user_agent,
                        json.dumps(event.location.to_dict()) if event.location else None,
                        json.dumps(event.device_info) if event.device_info else None,
                        event.status.value,
                        json.dumps(event.details or {}),
                        event.notified,
                        event.notify_attempts,
                        event.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("security event already exists", {"event_id": event.id})
        return event

    def list_security_events(
        self,
        user_id: str,
        *,
        event_type: Optional[SecurityEventType] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[SecurityEvent]:
        clauses = ["user_id = %s"]
        params: list = [user_id]
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(SecurityEventType(event_type).value)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        params.append(limit)
        query = (
            "SELECT * FROM security_events WHERE "
            + " AND ".join(clauses)
            + " ORDER BY created_at DESC LIMIT %s"
        )
        with self._connect("list_security_events") as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [deserialize_security_event(row) for row in rows]

    def list_unnotified_events(self, limit: int = 100) -> List[SecurityEvent]:
        with self._connect("list_unnotified_events") as conn:
            rows = conn.execute(
                "SELECT * FROM security_events WHERE NOT notified"
                " ORDER BY notify_attempts ASC, created_at ASC LIMIT %s",
                (limit,),
            ).fetchall()
        return [deserialize_security_event(row) for row in rows]

    def mark_event_notified(self, event_id: str) -> bool:
        with self._connect("mark_event_notified") as conn:
            result = conn.execute(
                "UPDATE security_events SET notified = TRUE WHERE id = %s AND NOT notified",
                (event_id,),
            )
            return result.rowcount > 0

    def record_notification_failure(self, event_id: str) -> int:
        with self._connect("record_notification_failure") as conn:
            row = conn.execute(
                """
                UPDATE security_events SET notify_attempts = notify_attempts + 1
                WHERE id = %s AND NOT notified
                RETURNING notify_attempts
                """,
                (event_id,),
            ).fetchone()
        return int(row["notify_attempts"]) if row else 0
