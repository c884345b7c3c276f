"""
SQLite-backed record store.

One ``SqliteStore`` owns one connection for the life of the process and hands
out a ``SqliteRepository`` per keyspace, each keyspace being its own table.
Reads share the connection; mutations take it exclusively.
"""

import re
import sqlite3
from typing import Optional

import structlog

from .repository import (
    DeletionError,
    InsertionError,
    M,
    ReadError,
    ReadWriteLock,
    RecordExistsError,
    RecordMissingError,
    Repository,
    StoreConnectionError,
    UpdateError,
)

logger = structlog.get_logger()

_KEYSPACE_RE = re.compile(r"^[a-z][a-z0-9_]*$")


class SqliteStore:
    def __init__(self, path: str = "rewards.db"):
        self.path = path
        self.lock = ReadWriteLock()
        try:
            self.conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
            if path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=FULL")
        except sqlite3.Error as exc:
            raise StoreConnectionError(f"Cannot open store at {path}") from exc
        self._closed = False
        logger.info("store_opened", path=path)

    def repository(self, keyspace: str, model: type[M]) -> "SqliteRepository[M]":
        if not _KEYSPACE_RE.match(keyspace):
            raise ValueError(f"Invalid keyspace name: {keyspace!r}")
        with self.lock.exclusive():
            self.ensure_open()
            try:
                self.conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {keyspace} ("
                    "key TEXT PRIMARY KEY, value BLOB NOT NULL)"
                )
            except sqlite3.Error as exc:
                raise StoreConnectionError(f"Cannot prepare keyspace {keyspace}") from exc
        return SqliteRepository(self, keyspace, model)

    def close(self) -> None:
        with self.lock.exclusive():
            if not self._closed:
                self.conn.close()
                self._closed = True
                logger.info("store_closed", path=self.path)

    def ensure_open(self) -> None:
        if self._closed:
            raise StoreConnectionError(f"Store at {self.path} is closed")


class SqliteRepository(Repository[M]):
    def __init__(self, store: SqliteStore, keyspace: str, model: type[M]):
        self.store = store
        self.table = keyspace
        self.model = model

    def _fetch(self, key: str) -> Optional[bytes]:
        row = self.store.conn.execute(
            f"SELECT value FROM {self.table} WHERE key = ?", (key,)
        ).fetchone()
        return bytes(row[0]) if row else None

    def create(self, key: str, value: M) -> None:
        try:
            raw = self.encode(value)
        except ValueError as exc:
            raise InsertionError(f"Cannot encode record {key}") from exc
        with self.store.lock.exclusive():
            self.store.ensure_open()
            try:
                self.store.conn.execute(
                    f"INSERT INTO {self.table} (key, value) VALUES (?, ?)", (key, raw)
                )
            except sqlite3.IntegrityError as exc:
                raise RecordExistsError(f"Record {key} already exists") from exc
            except sqlite3.Error as exc:
                raise InsertionError(f"Cannot insert record {key}") from exc

    def read(self, key: str) -> Optional[M]:
        with self.store.lock.shared():
            self.store.ensure_open()
            try:
                raw = self._fetch(key)
            except sqlite3.Error as exc:
                raise ReadError(f"Cannot read record {key}") from exc
        if raw is None:
            return None
        return self.decode(raw)

    def update(self, key: str, value: M, expected: Optional[M] = None) -> None:
        try:
            raw = self.encode(value)
        except ValueError as exc:
            raise UpdateError(f"Cannot encode record {key}") from exc
        with self.store.lock.exclusive():
            self.store.ensure_open()
            try:
                current = self._fetch(key)
                if current is None:
                    raise RecordMissingError(f"Record {key} does not exist")
                if expected is not None:
                    self.check_expected(key, current, expected)
                self.store.conn.execute(
                    f"UPDATE {self.table} SET value = ? WHERE key = ?", (raw, key)
                )
            except sqlite3.Error as exc:
                raise UpdateError(f"Cannot update record {key}") from exc

    def delete(self, key: str) -> M:
        with self.store.lock.exclusive():
            self.store.ensure_open()
            try:
                current = self._fetch(key)
                if current is None:
                    raise DeletionError(f"Record {key} does not exist")
                self.store.conn.execute(f"DELETE FROM {self.table} WHERE key = ?", (key,))
            except sqlite3.Error as exc:
                raise DeletionError(f"Cannot delete record {key}") from exc
        try:
            return self.decode(current)
        except ReadError as exc:
            raise DeletionError(f"Corrupt record {key} deleted") from exc

    def keys(self) -> list[str]:
        with self.store.lock.shared():
            self.store.ensure_open()
            try:
                rows = self.store.conn.execute(
                    f"SELECT key FROM {self.table} ORDER BY key"
                ).fetchall()
            except sqlite3.Error as exc:
                raise ReadError(f"Cannot list {self.table}") from exc
        return [row[0] for row in rows]
