# rp_auth/storage.py
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

from . import counter
from .encoding import b64url_encode


def new_ceremony_id() -> str:
    return secrets.token_urlsafe(24)


class CeremonyKind(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass
class Ceremony:
    """
    One in-flight registration or login attempt.

    Lives in a SessionStore until it is consumed by a completion call or its
    TTL passes. It is never written back after being taken out.
    """

    ceremony_id: str
    kind: CeremonyKind
    challenge: bytes
    identity: str
    issued_at: int
    expires_at: int

    # registration: handle the new credential is bound to
    # authentication: handle of the existing credentials
    user_handle: bytes = b""

    # authentication only: credential ids offered in allowCredentials
    allowed_credential_ids: List[bytes] = field(default_factory=list)

    @property
    def is_expired(self) -> bool:
        return int(time.time()) >= self.expires_at


@dataclass
class CredentialRecord:
    credential_id: bytes
    public_key: bytes  # COSE_Key, as reported in the attested credential data
    sign_count: int
    identity: str
    user_handle: bytes
    aaguid: bytes = b"\x00" * 16
    attestation_format: str = "none"
    created_at: int = field(default_factory=lambda: int(time.time()))
    last_used_at: Optional[int] = None

    def public_view(self):
        return {
            "credential_id": b64url_encode(self.credential_id),
            "identity": self.identity,
            "sign_count": self.sign_count,
            "aaguid": self.aaguid.hex(),
            "attestation_format": self.attestation_format,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
        }


# -----------------------------------------------------------------------------
# Collaborator interfaces
# -----------------------------------------------------------------------------
class SessionStore(Protocol):
    def put(self, ceremony_id: str, ceremony: Ceremony, ttl: int) -> None:
        ...

    def get_and_delete(self, ceremony_id: str) -> Optional[Ceremony]:
        """Atomically remove and return the ceremony; None if absent."""
        ...


class CredentialStore(Protocol):
    def find_by_identity(self, identity: str) -> List[CredentialRecord]:
        ...

    def find_by_credential_id(self, credential_id: bytes) -> Optional[CredentialRecord]:
        ...

    def save(self, record: CredentialRecord) -> None:
        ...

    def update(self, credential_id: bytes, new_counter: int) -> bool:
        """
        Store ``new_counter`` only if it still passes the counter check
        against the current value. Returns False when it does not.
        """
        ...


# -----------------------------------------------------------------------------
# In-memory implementations (single process)
# -----------------------------------------------------------------------------
class InMemorySessionStore:
    """
    Process-local ceremony store.

    Entries are (ceremony, store_expiry). A lock makes get_and_delete atomic,
    so two concurrent completions for the same id cannot both receive it.
    Not shared across workers or nodes; use a shared store with an atomic
    GETDEL for multi-process deployments.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.ceremonies: Dict[str, Tuple[Ceremony, float]] = {}

    def _prune_unlocked(self, now: float) -> int:
        dead = [k for k, (_, exp) in self.ceremonies.items() if now >= exp]
        for k in dead:
            self.ceremonies.pop(k, None)
        return len(dead)

    def put(self, ceremony_id: str, ceremony: Ceremony, ttl: int) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        now = time.time()
        with self._lock:
            self._prune_unlocked(now)
            self.ceremonies[ceremony_id] = (ceremony, now + ttl)

    def get_and_delete(self, ceremony_id: str) -> Optional[Ceremony]:
        with self._lock:
            entry = self.ceremonies.pop(ceremony_id, None)
        if entry is None:
            return None
        ceremony, exp = entry
        if time.time() >= exp:
            return None
        return ceremony

    def __len__(self) -> int:
        with self._lock:
            return len(self.ceremonies)


class InMemoryCredentialStore:
    def __init__(self):
        self._lock = threading.Lock()
        self.records: Dict[bytes, CredentialRecord] = {}

    def find_by_identity(self, identity: str) -> List[CredentialRecord]:
        with self._lock:
            return [r for r in self.records.values() if r.identity == identity]

    def find_by_credential_id(self, credential_id: bytes) -> Optional[CredentialRecord]:
        with self._lock:
            return self.records.get(bytes(credential_id))

    def save(self, record: CredentialRecord) -> None:
        with self._lock:
            if record.credential_id in self.records:
                raise ValueError("credential id already registered")
            self.records[record.credential_id] = record

    def update(self, credential_id: bytes, new_counter: int) -> bool:
        with self._lock:
            rec = self.records.get(bytes(credential_id))
            if rec is None:
                raise KeyError("unknown credential id")
            # re-checked under the lock; a concurrent login may have moved it
            if counter.check(rec.sign_count, new_counter) is counter.CounterVerdict.REJECT:
                return False
            rec.sign_count = new_counter
            rec.last_used_at = int(time.time())
            return True
