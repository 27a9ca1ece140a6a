from __future__ import annotations

import os
import sqlite3
import threading
import time
from typing import List, Optional

from .storage import CredentialRecord

_COLUMNS = (
    "credential_id, public_key, sign_count, identity, user_handle, "
    "aaguid, attestation_format, created_at, last_used_at"
)


class SQLiteCredentialStore:
    """
    Durable CredentialStore backed by one sqlite table.

    Several credentials may belong to one identity; credential_id is the
    primary key, so a credential can never be registered twice.
    """

    def __init__(self, path: str = "db/credentials.db"):
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        self.db = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.Lock()
        self._init()

    def _init(self) -> None:
        self.db.execute("""CREATE TABLE IF NOT EXISTS credentials(
            credential_id BLOB PRIMARY KEY,
            public_key BLOB NOT NULL,
            sign_count INTEGER NOT NULL DEFAULT 0,
            identity TEXT NOT NULL,
            user_handle BLOB NOT NULL,
            aaguid BLOB,
            attestation_format TEXT,
            created_at INTEGER NOT NULL,
            last_used_at INTEGER
        )""")
        self.db.execute("CREATE INDEX IF NOT EXISTS credentials_identity ON credentials(identity)")
        self.db.commit()

    @staticmethod
    def _row_to_record(row) -> CredentialRecord:
        cid, pk, count, identity, handle, aaguid, fmt, created, used = row
        return CredentialRecord(
            credential_id=bytes(cid),
            public_key=bytes(pk),
            sign_count=int(count),
            identity=identity,
            user_handle=bytes(handle),
            aaguid=bytes(aaguid) if aaguid is not None else b"\x00" * 16,
            attestation_format=fmt or "none",
            created_at=int(created),
            last_used_at=used,
        )

    def find_by_identity(self, identity: str) -> List[CredentialRecord]:
        with self._lock:
            cur = self.db.execute(
                f"SELECT {_COLUMNS} FROM credentials WHERE identity=? ORDER BY created_at",
                (identity,),
            )
            rows = cur.fetchall()
        return [self._row_to_record(r) for r in rows]

    def find_by_credential_id(self, credential_id: bytes) -> Optional[CredentialRecord]:
        with self._lock:
            cur = self.db.execute(
                f"SELECT {_COLUMNS} FROM credentials WHERE credential_id=?",
                (bytes(credential_id),),
            )
            row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def save(self, record: CredentialRecord) -> None:
        with self._lock:
            try:
                self.db.execute(
                    f"INSERT INTO credentials({_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?)",
                    (
                        record.credential_id,
                        record.public_key,
                        record.sign_count,
                        record.identity,
                        record.user_handle,
                        record.aaguid,
                        record.attestation_format,
                        record.created_at,
                        record.last_used_at,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError("credential id already registered") from e
            self.db.commit()

    def update(self, credential_id: bytes, new_counter: int) -> bool:
        cid = bytes(credential_id)
        with self._lock:
            # same rule as counter.check, applied inside the write
            cur = self.db.execute(
                "UPDATE credentials SET sign_count=?, last_used_at=? "
                "WHERE credential_id=? AND (sign_count < ? OR (sign_count = 0 AND ? = 0))",
                (new_counter, int(time.time()), cid, new_counter, new_counter),
            )
            self.db.commit()
            if cur.rowcount:
                return True
            exists = self.db.execute(
                "SELECT 1 FROM credentials WHERE credential_id=?", (cid,)
            ).fetchone()
        if exists is None:
            raise KeyError("unknown credential id")
        return False

    def close(self):
        self.db.close()
