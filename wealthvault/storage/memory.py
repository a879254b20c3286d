from __future__ import annotations

import copy
import json
import secrets
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from wealthvault.logging import get_logger
from wealthvault.storage.common import (
    SecretCipher,
    deserialize_blacklist_entry,
    deserialize_recovery_codes,
    deserialize_security_event,
    deserialize_session,
    serialize_blacklist_entry,
    serialize_recovery_codes,
    serialize_security_event,
    serialize_session,
)
from wealthvault.storage.errors import ConstraintViolation
from wealthvault.storage.models import (
    BlacklistEntry,
    DeviceSession,
    MFACredential,
    SecurityEvent,
    SecurityEventType,
    ensure_aware,
    utcnow,
)


class MemoryStore:
    """In-process session store for tests and single-node development.

    Every public method takes the data lock, so each call behaves like a single
    atomic row operation. Returned records are copies; mutating them does not
    change stored state. When ``fs_root`` is given, a JSON snapshot is written
    after each mutation and reloaded on start.
    """

    def __init__(
        self, fs_root: Optional[str] = None, *, mfa_encryption_key: Optional[str] = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, DeviceSession] = {}
        self._refresh_index: Dict[str, str] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        self.mfa: Dict[str, MFACredential] = {}
        self.events: Dict[str, SecurityEvent] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if mfa_encryption_key is None and self.fs_root is not None:
            self.logger.warning(
                "memory_store_ephemeral_mfa_key",
                message="MFA secrets persisted with a per-process key will not survive restarts",
            )
        self._cipher = SecretCipher(mfa_encryption_key or secrets.token_urlsafe(32))
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def ping(self) -> None:
        return None

    # device sessions
    def create_session(self, session: DeviceSession) -> DeviceSession:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            if session.refresh_token_hash in self._refresh_index:
                raise ConstraintViolation("refresh token hash collision")
            self.sessions[session.id] = copy.deepcopy(session)
            self._refresh_index[session.refresh_token_hash] = session.id
            self._persist_state()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[DeviceSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.deepcopy(sess) if sess else None

    def find_session_by_refresh_hash(
        self, refresh_token_hash: str
    ) -> Optional[DeviceSession]:
        with self._data_lock:
            session_id = self._refresh_index.get(refresh_token_hash)
            if not session_id:
                return None
            return self.get_session(session_id)

    def update_session_activity(
        self,
        session_id: str,
        *,
        access_token: str,
        ip_address: Optional[str],
        at: datetime,
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.access_token_snapshot = access_token
            sess.last_activity_at = at
            if ip_address:
                sess.ip_address = ip_address
            self._persist_state()
            return True

    def deactivate_session(self, session_id: str, *, reason: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            sess.revoked_at = at
            sess.revoke_reason = reason
            self._persist_state()
            return True

    def list_sessions_for_user(
        self, user_id: str, *, active_only: bool = True
    ) -> List[DeviceSession]:
        with self._data_lock:
            found = [
                copy.deepcopy(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and (sess.is_active or not active_only)
            ]
        return sorted(found, key=lambda s: s.last_activity_at, reverse=True)

    def deactivate_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.is_active and ensure_aware(sess.expires_at) <= now:
                    sess.is_active = False
                    sess.revoke_reason = sess.revoke_reason or "expired"
                    count += 1
            if count:
                self._persist_state()
            return count

    def purge_inactive_sessions(self, older_than: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if not sess.is_active
                and ensure_aware(sess.revoked_at or sess.expires_at) <= older_than
            ]
            for sid in stale:
                sess = self.sessions.pop(sid)
                self._refresh_index.pop(sess.refresh_token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        with self._data_lock:
            existing = self.blacklist.get(entry.token_hash)
            if existing:
                return copy.deepcopy(existing)
            self.blacklist[entry.token_hash] = copy.deepcopy(entry)
            self._persist_state()
            return copy.deepcopy(entry)

    def get_blacklist_entry(self, token_hash: str) -> Optional[BlacklistEntry]:
        with self._data_lock:
            entry = self.blacklist.get(token_hash)
            return copy.deepcopy(entry) if entry else None

    def purge_expired_blacklist(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                key
                for key, entry in self.blacklist.items()
                if ensure_aware(entry.expires_at) <= now
            ]
            for key in expired:
                self.blacklist.pop(key, None)
            if expired:
                self._persist_state()
            return len(expired)

    # mfa
    def get_mfa_credential(self, user_id: str) -> Optional[MFACredential]:
        with self._data_lock:
            cred = self.mfa.get(user_id)
            if not cred:
                return None
            plain = copy.deepcopy(cred)
            plain.secret = self._cipher.decrypt(cred.secret)
            return plain

    def save_mfa_credential(self, credential: MFACredential) -> MFACredential:
        with self._data_lock:
            stored = copy.deepcopy(credential)
            stored.secret = self._cipher.encrypt(credential.secret)
            self.mfa[credential.user_id] = stored
            self._persist_state()
            return copy.deepcopy(credential)

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> bool:
        with self._data_lock:
            cred = self.mfa.get(user_id)
            if not cred:
                return False
            if enabled and not cred.secret:
                raise ConstraintViolation("mfa secret missing", {"user_id": user_id})
            cred.enabled = enabled
            cred.updated_at = utcnow()
            self._persist_state()
            return True

    def consume_recovery_code(self, user_id: str, index: int, *, at: datetime) -> bool:
        with self._data_lock:
            cred = self.mfa.get(user_id)
            if not cred or index < 0 or index >= len(cred.recovery_codes):
                return False
            code = cred.recovery_codes[index]
            if code.used:
                return False
            code.used = True
            code.used_at = at
            cred.updated_at = at
            self._persist_state()
            return True

    def delete_mfa_credential(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.mfa.pop(user_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # security events
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            if event.id in self.events:
                raise ConstraintViolation("security event already exists", {"event_id": event.id})
            self.events[event.id] = copy.deepcopy(event)
            self._persist_state()
            return copy.deepcopy(event)

    def list_security_events(
        self,
        user_id: str,
        *,
        event_type: Optional[SecurityEventType] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            matches = [
                copy.deepcopy(ev)
                for ev in self.events.values()
                if ev.user_id == user_id
                and (event_type is None or ev.event_type == event_type)
                and (since is None or ensure_aware(ev.created_at) >= since)
            ]
        matches.sort(key=lambda ev: ensure_aware(ev.created_at), reverse=True)
        return matches[:limit]

    def list_unnotified_events(self, limit: int = 100) -> List[SecurityEvent]:
        with self._data_lock:
            pending = [copy.deepcopy(ev) for ev in self.events.values() if not ev.notified]
        # events that already failed delivery queue behind fresh ones
        pending.sort(key=lambda ev: (ev.notify_attempts, ensure_aware(ev.created_at)))
        return pending[:limit]

    def mark_event_notified(self, event_id: str) -> bool:
        with self._data_lock:
            event = self.events.get(event_id)
            if not event or event.notified:
                return False
            event.notified = True
            self._persist_state()
            return True

    def record_notification_failure(self, event_id: str) -> int:
        with self._data_lock:
            event = self.events.get(event_id)
            if not event or event.notified:
                return 0
            event.notify_attempts += 1
            self._persist_state()
            return event.notify_attempts

    # snapshot persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "session_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "sessions": [serialize_session(s) for s in self.sessions.values()],
            "blacklist": [serialize_blacklist_entry(e) for e in self.blacklist.values()],
            "mfa": [
                {
                    "user_id": cred.user_id,
                    "secret": cred.secret,
                    "enabled": cred.enabled,
                    "recovery_codes": serialize_recovery_codes(cred.recovery_codes),
                    "created_at": cred.created_at.isoformat(),
                    "updated_at": cred.updated_at.isoformat() if cred.updated_at else None,
                }
                for cred in self.mfa.values()
            ],
            "events": [serialize_security_event(ev) for ev in self.events.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist session store state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.sessions = {
            row["id"]: deserialize_session(row) for row in data.get("sessions", [])
        }
        self._refresh_index = {
            sess.refresh_token_hash: sess.id for sess in self.sessions.values()
        }
        self.blacklist = {
            row["token_hash"]: deserialize_blacklist_entry(row)
            for row in data.get("blacklist", [])
        }
        self.mfa = {
            row["user_id"]: MFACredential(
                user_id=row["user_id"],
                secret=row.get("secret"),
                enabled=bool(row.get("enabled", False)),
                recovery_codes=deserialize_recovery_codes(row.get("recovery_codes")),
                created_at=datetime.fromisoformat(row["created_at"]),
                updated_at=(
                    datetime.fromisoformat(row["updated_at"]) if row.get("updated_at") else None
                ),
            )
            for row in data.get("mfa", [])
        }
        self.events = {
            row["id"]: deserialize_security_event(row) for row in data.get("events", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            sessions=len(self.sessions),
            blacklist=len(self.blacklist),
            events=len(self.events),
        )
        return True
