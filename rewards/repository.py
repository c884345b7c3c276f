"""
Generic keyed record storage.

A repository maps string keys to pydantic records. Records are held as bytes
(their JSON encoding) and rebuilt on every read, so callers never share a
mutable instance.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Generic, Iterator, Optional, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

M = TypeVar("M", bound=BaseModel)


class StoreError(Exception):
    pass


class StoreConnectionError(StoreError):
    pass


class InsertionError(StoreError):
    pass


class RecordExistsError(InsertionError):
    pass


class ReadError(StoreError):
    pass


class UpdateError(StoreError):
    pass


class RecordMissingError(UpdateError):
    pass


class ConditionFailedError(UpdateError):
    pass


class DeletionError(StoreError):
    pass


class ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class Repository(ABC, Generic[M]):
    """CRUD over one keyspace of records of type ``model``.

    ``create`` and ``update`` are conditional and atomic: ``create`` refuses
    to overwrite, ``update`` refuses to resurrect a missing key and, given
    ``expected``, only writes when the stored record still equals it.
    """

    model: type[M]

    def encode(self, value: M) -> bytes:
        return value.model_dump_json(round_trip=True).encode("utf-8")

    def decode(self, raw: bytes) -> M:
        try:
            return self.model.model_validate_json(raw)
        except (PydanticValidationError, UnicodeDecodeError) as exc:
            raise ReadError(f"Corrupt {self.model.__name__} record") from exc

    def check_expected(self, key: str, current: bytes, expected: M) -> None:
        try:
            stored = self.decode(current)
        except ReadError as exc:
            raise UpdateError(f"Corrupt record {key}") from exc
        if stored != expected:
            raise ConditionFailedError(f"Record {key} changed concurrently")

    @abstractmethod
    def create(self, key: str, value: M) -> None: ...

    @abstractmethod
    def read(self, key: str) -> Optional[M]: ...

    @abstractmethod
    def update(self, key: str, value: M, expected: Optional[M] = None) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> M: ...

    @abstractmethod
    def keys(self) -> list[str]: ...


class InMemoryRepository(Repository[M]):
    def __init__(self, model: type[M]):
        self.model = model
        self._records: dict[str, bytes] = {}
        self._lock = ReadWriteLock()

    def create(self, key: str, value: M) -> None:
        try:
            raw = self.encode(value)
        except ValueError as exc:
            raise InsertionError(f"Cannot encode record {key}") from exc
        with self._lock.exclusive():
            if key in self._records:
                raise RecordExistsError(f"Record {key} already exists")
            self._records[key] = raw

    def read(self, key: str) -> Optional[M]:
        with self._lock.shared():
            raw = self._records.get(key)
        if raw is None:
            return None
        return self.decode(raw)

    def update(self, key: str, value: M, expected: Optional[M] = None) -> None:
        try:
            raw = self.encode(value)
        except ValueError as exc:
            raise UpdateError(f"Cannot encode record {key}") from exc
        with self._lock.exclusive():
            current = self._records.get(key)
            if current is None:
                raise RecordMissingError(f"Record {key} does not exist")
            if expected is not None:
                self.check_expected(key, current, expected)
            self._records[key] = raw

    def delete(self, key: str) -> M:
        with self._lock.exclusive():
            raw = self._records.pop(key, None)
        if raw is None:
            raise DeletionError(f"Record {key} does not exist")
        try:
            return self.decode(raw)
        except ReadError as exc:
            raise DeletionError(f"Corrupt record {key} deleted") from exc

    def keys(self) -> list[str]:
        with self._lock.shared():
            return list(self._records)
