from __future__ import annotations

import threading
import uuid
from typing import Dict, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from wealthvault.logging import get_logger

logger = get_logger(__name__)


class CredentialVerifier(Protocol):
    """Primary-factor check owned by the user directory.

    ``verify`` must cost the same for unknown identifiers as for known ones.
    """

    def lookup_user_id(self, identifier: str) -> Optional[str]: ...

    def verify(self, identifier: str, secret: str) -> bool: ...


class PasswordCredentialVerifier:
    """In-process argon2id credential registry.

    Suitable for tests and single-node tooling; production deployments plug
    in the user directory behind :class:`CredentialVerifier`.
    """

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._records: Dict[str, Tuple[str, str]] = {}
        self._lock = threading.Lock()
        # verified against on unknown identifiers to keep timing uniform
        self._dummy_hash = self._pwd_hasher.hash(uuid.uuid4().hex)

    @staticmethod
    def _normalize(identifier: str) -> str:
        return identifier.strip().lower()

    def register(self, identifier: str, secret: str, *, user_id: Optional[str] = None) -> str:
        user_id = user_id or str(uuid.uuid4())
        digest = self._pwd_hasher.hash(secret)
        with self._lock:
            self._records[self._normalize(identifier)] = (user_id, digest)
        return user_id

    def set_secret(self, identifier: str, secret: str) -> bool:
        key = self._normalize(identifier)
        digest = self._pwd_hasher.hash(secret)
        with self._lock:
            record = self._records.get(key)
            if not record:
                return False
            self._records[key] = (record[0], digest)
        return True

    def lookup_user_id(self, identifier: str) -> Optional[str]:
        with self._lock:
            record = self._records.get(self._normalize(identifier))
        return record[0] if record else None

    def verify(self, identifier: str, secret: str) -> bool:
        with self._lock:
            record = self._records.get(self._normalize(identifier))
        stored_hash = record[1] if record else self._dummy_hash
        try:
            matched = self._pwd_hasher.verify(stored_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            matched = False
        if not record:
            logger.info("credential_unknown_identifier")
            return False
        if not matched:
            logger.info("credential_mismatch", user_id=record[0])
        return matched
