"""
rp_auth/audit.py

Tamper-evident ceremony audit log.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <audit_dir>/ceremony_audit.state
- Uses file locking (flock) to keep the chain consistent under concurrency.

Raw challenges and keys are never written; only their hashes are.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .encoding import b64url_encode

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "ceremony_audit.jsonl"
STATE_NAME = "ceremony_audit.state"
LOCK_NAME = "ceremony_audit.lock"


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """Deterministic JSON bytes: sorted keys, no whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def build_common(
    *,
    ceremony_id: str,
    kind: Optional[str] = None,
    identity: Optional[str] = None,
    credential_id: Optional[bytes] = None,
    challenge: Optional[bytes] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "ceremony_id": ceremony_id,
    }

    if kind:
        out["kind"] = kind
    if identity:
        out["identity"] = identity
    if credential_id:
        out["credential_id"] = b64url_encode(credential_id)

    if challenge is not None:
        out["challenge_sha3_256"] = _sha3_256_hex(challenge)

    return out


class AuditLog:
    def __init__(self, audit_dir, enabled: bool = True):
        self.audit_dir = Path(audit_dir)
        self.enabled = enabled
        self.log_path = self.audit_dir / LOG_NAME
        self.state_path = self.audit_dir / STATE_NAME
        self.lock_path = self.audit_dir / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing/empty.
        """
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip().lower()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s

    def append_event(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event with hash chaining. Returns the new chain head, or
        None when auditing is disabled.
        """
        if not self.enabled:
            return None

        self.audit_dir.mkdir(parents=True, exist_ok=True)

        # Lock a dedicated file so it works even if log/state don't exist yet.
        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                canon = _canonical_json_bytes(e)
                next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + canon)

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(_canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash


def verify_log_chain(path: Path, state_path: Optional[Path] = None) -> bool:
    """
    Verify the hash chain of an audit log file, and optionally that the state
    file holds the last hash. A missing log is an empty, valid chain.
    """
    path = Path(path)
    prev = GENESIS_HASH
    if path.exists():
        try:
            with open(path, "rb") as f:
                for raw_line in f:
                    raw_line = raw_line.strip()
                    if not raw_line:
                        continue
                    obj = json.loads(raw_line.decode("utf-8"))

                    if obj.get("prev_hash") != prev:
                        return False

                    obj2 = dict(obj)
                    line_hash = obj2.pop("hash", None)
                    obj2.pop("prev_hash", None)

                    expect = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(obj2))
                    if expect != line_hash:
                        return False

                    prev = line_hash
        except (ValueError, UnicodeDecodeError, AttributeError):
            return False

    if state_path is not None:
        state_path = Path(state_path)
        state = state_path.read_text(encoding="utf-8").strip() if state_path.exists() else GENESIS_HASH
        if state.lower() != prev:
            return False

    return True
