from __future__ import annotations

import abc
import logging
import typing as tp
from pathlib import Path

import sqlite3

from assetcache._core._packing import UNPACK_ERRORS, pack, unpack
from assetcache._exceptions import BACKEND_ERRORS, StorageUnavailable
from assetcache._synchronization import Lock
from assetcache._utils import ensure_cache_dict, now_ms

logger = logging.getLogger("assetcache.ledger")

__all__ = (
    "SyncBaseLedger",
    "SyncInMemoryLedger",
    "SyncSqliteLedger",
)

LEDGER_KEY = "assetcache-recency"


class SyncBaseLedger(abc.ABC):
    """
    Key -> last-touch timestamp (integer milliseconds since the epoch).

    Every mutation is a read-modify-write of the whole mapping done under one lock,
    so an operation is never observed half-applied. A touch never moves a
    timestamp backwards.
    """

    def __init__(self) -> None:
        self._lock = Lock()

    @abc.abstractmethod
    def _load(self) -> tp.Dict[str, int]:
        raise NotImplementedError()

    @abc.abstractmethod
    def _save(self, records: tp.Dict[str, int]) -> None:
        raise NotImplementedError()

    def touch(self, key: str, now: tp.Optional[int] = None) -> None:
        stamp = now if now is not None else now_ms()
        try:
            with self._lock:
                records = self._load()
                records[key] = max(records.get(key, 0), stamp)
                self._save(records)
        except StorageUnavailable as exc:
            logger.warning(f"Could not record access to {key}: {exc}")

    def snapshot(self) -> tp.Dict[str, int]:
        """
        A copy of every recorded timestamp.

        :raises StorageUnavailable: when the backend cannot be read
        """
        with self._lock:
            return dict(self._load())

    def remove(self, key: str) -> None:
        self.remove_many([key])

    def remove_many(self, keys: tp.Iterable[str]) -> None:
        try:
            with self._lock:
                records = self._load()
                for key in keys:
                    records.pop(key, None)
                self._save(records)
        except StorageUnavailable as exc:
            logger.warning(f"Could not update the recency ledger: {exc}")

    def clear(self) -> None:
        try:
            with self._lock:
                self._save({})
        except StorageUnavailable as exc:
            logger.warning(f"Could not clear the recency ledger: {exc}")

    def close(self) -> None:
        pass


class SyncInMemoryLedger(SyncBaseLedger):
    def __init__(self) -> None:
        super().__init__()
        self._records: tp.Dict[str, int] = {}

    def _load(self) -> tp.Dict[str, int]:
        return self._records

    def _save(self, records: tp.Dict[str, int]) -> None:
        self._records = records


class SyncSqliteLedger(SyncBaseLedger):
    """
    Keeps the whole mapping as a single msgpack blob under ``LEDGER_KEY``.

    Lives in its own database file by default, away from the entry bodies. The
    mapping is cached in memory after the first successful read; a blob that
    cannot be decoded is replaced by an empty mapping.

    :param connection: A connection for sqlite, defaults to None
    :type connection: tp.Optional[sqlite3.Connection], optional
    :param database_path: Database file, defaults to "assetcache_ledger.db"
    :type database_path: tp.Union[str, Path], optional
    """

    def __init__(
        self,
        *,
        connection: tp.Optional[sqlite3.Connection] = None,
        database_path: tp.Union[str, Path] = "assetcache_ledger.db",
        ledger_key: str = LEDGER_KEY,
    ) -> None:
        super().__init__()
        self.connection = connection
        self.database_path: Path = database_path if isinstance(database_path, Path) else Path(database_path)
        self.ledger_key = ledger_key
        self._records: tp.Optional[tp.Dict[str, int]] = None
        self._initialized = False

    def _ensure_connection(self) -> sqlite3.Connection:
        if self.connection is None:
            parent = self.database_path.parent if self.database_path.parent != Path(".") else None
            full_path = ensure_cache_dict(parent) / self.database_path.name
            self.connection = sqlite3.connect(str(full_path), check_same_thread=False)
        if not self._initialized:
            cursor = self.connection.cursor()
            cursor.execute(
                "CREATE TABLE IF NOT EXISTS ledger (name TEXT PRIMARY KEY, data BLOB NOT NULL)"
            )
            self.connection.commit()
            self._initialized = True
        return self.connection

    def _load(self) -> tp.Dict[str, int]:
        if self._records is not None:
            return self._records

        try:
            connection = self._ensure_connection()
            cursor = connection.cursor()
            cursor.execute("SELECT data FROM ledger WHERE name = ?", (self.ledger_key,))
            row = cursor.fetchone()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

        records: tp.Dict[str, int] = {}
        if row is not None:
            try:
                records = unpack(row[0], kind="recency")
            except UNPACK_ERRORS:
                logger.warning("Recency ledger is corrupted, starting from an empty one")
        self._records = records
        return records

    def _save(self, records: tp.Dict[str, int]) -> None:
        # Keep the in-memory copy even if persisting fails.
        self._records = records
        data = pack(records, kind="recency")
        try:
            connection = self._ensure_connection()
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR REPLACE INTO ledger (name, data) VALUES (?, ?)",
                (self.ledger_key, data),
            )
            connection.commit()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()
            self.connection = None
            self._initialized = False
