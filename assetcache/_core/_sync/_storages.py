from __future__ import annotations

import abc
import logging
import time
import typing as tp
from pathlib import Path

import sqlite3

from assetcache._core._packing import UNPACK_ERRORS, pack, unpack
from assetcache._core.models import CacheEntry
from assetcache._exceptions import BACKEND_ERRORS, StorageUnavailable
from assetcache._synchronization import Lock
from assetcache._utils import ensure_cache_dict

logger = logging.getLogger("assetcache.storages")

__all__ = (
    "SyncBaseStorage",
    "SyncInMemoryStorage",
    "SyncSqliteStorage",
)

DEFAULT_STORE_NAME = "assetcache-v1"


class SyncBaseStorage(abc.ABC):
    """
    Key -> CacheEntry store.

    Subclasses implement the underscored methods and raise ``StorageUnavailable``
    when their backend fails. Writes degrade to logged no-ops; reads propagate the
    error so that callers can fall back to the origin.
    """

    @abc.abstractmethod
    def _get_entry(self, key: str) -> tp.Optional[CacheEntry]:
        raise NotImplementedError()

    @abc.abstractmethod
    def _put_entry(self, key: str, entry: CacheEntry) -> None:
        raise NotImplementedError()

    @abc.abstractmethod
    def _delete_entry(self, key: str) -> None:
        raise NotImplementedError()

    @abc.abstractmethod
    def _keys(self) -> tp.List[str]:
        raise NotImplementedError()

    @abc.abstractmethod
    def _clear(self) -> None:
        raise NotImplementedError()

    def get_entry(self, key: str) -> tp.Optional[CacheEntry]:
        """
        Look up the entry stored under exactly ``key``.

        :raises StorageUnavailable: when the backend cannot be read
        """
        return self._get_entry(key)

    def put_entry(self, key: str, entry: CacheEntry) -> bool:
        """
        Insert or wholesale-replace the entry stored under ``key``.

        Returns False when the backend was unavailable and nothing was written.
        """
        try:
            self._put_entry(key, entry)
        except StorageUnavailable as exc:
            logger.warning(f"Could not store {key}: {exc}")
            return False
        return True

    def delete_entry(self, key: str) -> bool:
        """
        Remove the entry stored under ``key``, if any.

        Returns False when the backend was unavailable and nothing was removed.
        """
        try:
            self._delete_entry(key)
        except StorageUnavailable as exc:
            logger.warning(f"Could not delete {key}: {exc}")
            return False
        return True

    def keys(self) -> tp.List[str]:
        """
        A snapshot of every stored key.

        :raises StorageUnavailable: when the backend cannot be read
        """
        return self._keys()

    def clear(self) -> None:
        try:
            self._clear()
        except StorageUnavailable as exc:
            logger.warning(f"Could not clear the cache store: {exc}")

    def close(self) -> None:
        pass


class SyncInMemoryStorage(SyncBaseStorage):
    """
    Process-local storage, mostly useful for tests and short-lived processes.
    """

    def __init__(self) -> None:
        self._entries: tp.Dict[str, CacheEntry] = {}

    def _get_entry(self, key: str) -> tp.Optional[CacheEntry]:
        return self._entries.get(key)

    def _put_entry(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    def _delete_entry(self, key: str) -> None:
        self._entries.pop(key, None)

    def _keys(self) -> tp.List[str]:
        return list(self._entries)

    def _clear(self) -> None:
        self._entries.clear()


class SyncSqliteStorage(SyncBaseStorage):
    """
    SQLite storage, one row per entry inside a named store.

    :param connection: A connection for sqlite, defaults to None
    :type connection: tp.Optional[sqlite3.Connection], optional
    :param database_path: Database file, created under ``.cache/assetcache`` when relative, defaults to
        "assetcache_entries.db"
    :type database_path: tp.Union[str, Path], optional
    :param store_name: Name of the store inside the database; stores never see each other's entries,
        defaults to "assetcache-v1"
    :type store_name: str, optional
    """

    def __init__(
        self,
        *,
        connection: tp.Optional[sqlite3.Connection] = None,
        database_path: tp.Union[str, Path] = "assetcache_entries.db",
        store_name: str = DEFAULT_STORE_NAME,
    ) -> None:
        self.connection = connection
        self.database_path: Path = database_path if isinstance(database_path, Path) else Path(database_path)
        self.store_name = store_name
        self._lock = Lock()
        self._initialized = False

    def _ensure_connection(self) -> sqlite3.Connection:
        """Ensure connection is established and database is initialized."""
        if self.connection is None:
            parent = self.database_path.parent if self.database_path.parent != Path(".") else None
            full_path = ensure_cache_dict(parent) / self.database_path.name
            self.connection = sqlite3.connect(str(full_path), check_same_thread=False)
        if not self._initialized:
            cursor = self.connection.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    store TEXT NOT NULL,
                    key TEXT NOT NULL,
                    data BLOB NOT NULL,
                    stored_at REAL NOT NULL,
                    PRIMARY KEY (store, key)
                )
            """)
            self.connection.commit()
            self._initialized = True
        return self.connection

    def _get_entry(self, key: str) -> tp.Optional[CacheEntry]:
        try:
            with self._lock:
                connection = self._ensure_connection()
                cursor = connection.cursor()
                cursor.execute(
                    "SELECT data FROM entries WHERE store = ? AND key = ?",
                    (self.store_name, key),
                )
                row = cursor.fetchone()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

        if row is None:
            return None

        try:
            return unpack(row[0], kind="entry")
        except UNPACK_ERRORS:
            logger.warning(f"Ignoring the undecodable entry stored under {key}")
            return None

    def _put_entry(self, key: str, entry: CacheEntry) -> None:
        data = pack(entry, kind="entry")
        try:
            with self._lock:
                connection = self._ensure_connection()
                cursor = connection.cursor()
                cursor.execute(
                    "INSERT OR REPLACE INTO entries (store, key, data, stored_at) VALUES (?, ?, ?, ?)",
                    (self.store_name, key, data, time.time()),
                )
                connection.commit()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

    def _delete_entry(self, key: str) -> None:
        try:
            with self._lock:
                connection = self._ensure_connection()
                cursor = connection.cursor()
                cursor.execute(
                    "DELETE FROM entries WHERE store = ? AND key = ?",
                    (self.store_name, key),
                )
                connection.commit()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

    def _keys(self) -> tp.List[str]:
        try:
            with self._lock:
                connection = self._ensure_connection()
                cursor = connection.cursor()
                cursor.execute("SELECT key FROM entries WHERE store = ?", (self.store_name,))
                rows = cursor.fetchall()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc
        return [row[0] for row in rows]

    def _clear(self) -> None:
        try:
            with self._lock:
                connection = self._ensure_connection()
                cursor = connection.cursor()
                cursor.execute("DELETE FROM entries WHERE store = ?", (self.store_name,))
                connection.commit()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()
            self.connection = None
            self._initialized = False
