"""SQLite back-ends for the challenge store and credential repository."""
from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from .errors import Conflict, NotFound, StoreUnavailable
from .models import Credential, User
from .storage import USER_ID_LENGTH, ChallengeStore, Clock, CredentialRepository, utcnow

__all__ = ["Database", "SqliteChallengeStore", "SqliteCredentialRepository"]

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id BLOB PRIMARY KEY,
    username TEXT UNIQUE NOT NULL,
    display_name TEXT NOT NULL,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS credentials (
    id BLOB PRIMARY KEY,
    user_id BLOB NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    public_key BLOB NOT NULL,
    public_key_algorithm INTEGER,
    sign_count INTEGER NOT NULL DEFAULT 0,
    backup_eligible INTEGER NOT NULL DEFAULT 0,
    backup_state INTEGER NOT NULL DEFAULT 0,
    attestation_type TEXT NOT NULL DEFAULT '',
    aaguid BLOB NOT NULL,
    transports TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_credentials_user_id ON credentials(user_id);

CREATE TABLE IF NOT EXISTS challenges (
    challenge BLOB NOT NULL,
    type TEXT NOT NULL,
    user_id BLOB,
    context BLOB NOT NULL,
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL,
    PRIMARY KEY (challenge, type)
);

CREATE INDEX IF NOT EXISTS idx_challenges_expires_at ON challenges(expires_at);
"""


def _to_timestamp(value: datetime) -> float:
    return value.timestamp()


def _from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, timezone.utc)


class Database:
    """A shared SQLite connection with serialized, bounded-time transactions.

    ``timeout`` bounds how long a statement waits for a lock held by another
    connection before the call fails with ``StoreUnavailable``.
    """

    def __init__(self, path: str = ":memory:", timeout: float = 5.0) -> None:
        self.path = path
        if path != ":memory:":
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, timeout=timeout, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(_SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                logger.error("SQLite store unavailable: %s", exc)
                raise StoreUnavailable("credential store is unavailable") from exc
            try:
                yield self._conn
            except sqlite3.OperationalError as exc:
                self._rollback()
                logger.error("SQLite statement failed: %s", exc)
                raise StoreUnavailable("credential store is unavailable") from exc
            except BaseException:
                self._rollback()
                raise
            try:
                self._conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                # A failed COMMIT leaves the transaction open on the connection.
                self._rollback()
                logger.error("SQLite commit failed: %s", exc)
                raise StoreUnavailable("credential store is unavailable") from exc

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class SqliteChallengeStore(ChallengeStore):
    def __init__(self, database: Database, clock: Optional[Clock] = None) -> None:
        self._db = database
        self._clock = clock or utcnow

    def put(self, challenge, ceremony, owner_id, context, expires_at):
        with self._db.transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO challenges (challenge, type, user_id, context, created_at, expires_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        bytes(challenge),
                        ceremony,
                        owner_id,
                        bytes(context),
                        _to_timestamp(self._clock()),
                        _to_timestamp(expires_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise Conflict("challenge already stored") from exc

    def get(self, challenge, ceremony):
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT context FROM challenges WHERE challenge = ? AND type = ? AND expires_at > ?",
                (bytes(challenge), ceremony, _to_timestamp(self._clock())),
            ).fetchone()
        if row is None:
            raise NotFound("challenge not found or expired")
        return bytes(row["context"])

    def delete(self, challenge, ceremony):
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM challenges WHERE challenge = ? AND type = ?",
                (bytes(challenge), ceremony),
            )
        if cursor.rowcount == 0:
            raise NotFound("challenge not found")

    def consume(self, challenge, ceremony):
        key = (bytes(challenge), ceremony)
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT context, expires_at FROM challenges WHERE challenge = ? AND type = ?", key
            ).fetchone()
            if row is not None:
                conn.execute("DELETE FROM challenges WHERE challenge = ? AND type = ?", key)
        if row is None or _to_timestamp(self._clock()) >= row["expires_at"]:
            raise NotFound("challenge not found or expired")
        return bytes(row["context"])

    def purge_expired(self, now=None):
        now = now or self._clock()
        with self._db.transaction() as conn:
            cursor = conn.execute("DELETE FROM challenges WHERE expires_at <= ?", (_to_timestamp(now),))
        return cursor.rowcount

    def pending_owner_ids(self):
        with self._db.transaction() as conn:
            rows = conn.execute("SELECT DISTINCT user_id FROM challenges WHERE user_id IS NOT NULL").fetchall()
        return {bytes(row["user_id"]) for row in rows}


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=bytes(row["id"]),
        name=row["username"],
        display_name=row["display_name"],
        created_at=_from_timestamp(row["created_at"]),
    )


def _row_to_credential(row: sqlite3.Row) -> Credential:
    transports = frozenset(filter(None, row["transports"].split(",")))
    return Credential(
        id=bytes(row["id"]),
        owner_id=bytes(row["user_id"]),
        public_key=bytes(row["public_key"]),
        sign_count=row["sign_count"],
        backup_eligible=bool(row["backup_eligible"]),
        backup_state=bool(row["backup_state"]),
        attestation_type=row["attestation_type"],
        aaguid=bytes(row["aaguid"]),
        created_at=_from_timestamp(row["created_at"]),
        transports=transports,
        public_key_algorithm=row["public_key_algorithm"],
    )


class SqliteCredentialRepository(CredentialRepository):
    def __init__(self, database: Database, clock: Optional[Clock] = None) -> None:
        self._db = database
        self._clock = clock or utcnow

    def create_user(self, name, display_name):
        user = User(
            id=os.urandom(USER_ID_LENGTH),
            name=name,
            display_name=display_name,
            created_at=self._clock(),
        )
        with self._db.transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO users (id, username, display_name, created_at) VALUES (?, ?, ?, ?)",
                    (user.id, user.name, user.display_name, _to_timestamp(user.created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise Conflict(f"user {name!r} already exists") from exc
        return user

    def find_user_by_name(self, name):
        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE username = ?", (name,)).fetchone()
        if row is None:
            raise NotFound(f"user {name!r} not found")
        return _row_to_user(row)

    def find_user_by_id(self, user_id):
        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (bytes(user_id),)).fetchone()
        if row is None:
            raise NotFound("user not found")
        return _row_to_user(row)

    def list_credentials(self, owner_id):
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM credentials WHERE user_id = ? ORDER BY created_at",
                (bytes(owner_id),),
            ).fetchall()
        return [_row_to_credential(row) for row in rows]

    def create_credential(self, credential, exclusive=False):
        with self._db.transaction() as conn:
            owner = conn.execute("SELECT 1 FROM users WHERE id = ?", (credential.owner_id,)).fetchone()
            if owner is None:
                raise NotFound("credential owner not found")
            if exclusive and conn.execute(
                "SELECT 1 FROM credentials WHERE user_id = ? LIMIT 1", (credential.owner_id,)
            ).fetchone():
                raise Conflict("user already has a registered credential")
            try:
                conn.execute(
                    "INSERT INTO credentials (id, user_id, public_key, public_key_algorithm, sign_count, "
                    "backup_eligible, backup_state, attestation_type, aaguid, transports, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        credential.id,
                        credential.owner_id,
                        credential.public_key,
                        credential.public_key_algorithm,
                        credential.sign_count,
                        int(credential.backup_eligible),
                        int(credential.backup_state),
                        credential.attestation_type,
                        credential.aaguid,
                        ",".join(sorted(credential.transports)),
                        _to_timestamp(credential.created_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise Conflict("credential id already registered") from exc

    def update_sign_count(self, credential_id, new_count):
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE credentials SET sign_count = ? WHERE id = ? AND sign_count < ?",
                (new_count, bytes(credential_id), new_count),
            )
            if cursor.rowcount == 0:
                exists = conn.execute("SELECT 1 FROM credentials WHERE id = ?", (bytes(credential_id),)).fetchone()
                if exists is None:
                    raise NotFound("credential not found")
                raise Conflict("stored sign counter is already at or beyond the new value")

    def delete_orphaned_users(self, created_before, keep=()):
        keep_ids = [bytes(user_id) for user_id in keep]
        with self._db.transaction() as conn:
            candidates = conn.execute(
                "SELECT id FROM users WHERE created_at < ? "
                "AND NOT EXISTS (SELECT 1 FROM credentials WHERE credentials.user_id = users.id)",
                (_to_timestamp(created_before),),
            ).fetchall()
            doomed = [(bytes(row["id"]),) for row in candidates if bytes(row["id"]) not in keep_ids]
            conn.executemany("DELETE FROM users WHERE id = ?", doomed)
        return len(doomed)
