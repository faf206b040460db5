from __future__ import annotations

import abc
import logging
import time
import typing as tp
from pathlib import Path

import anysqlite

from assetcache._core._packing import UNPACK_ERRORS, pack, unpack
from assetcache._core.models import CacheEntry
from assetcache._exceptions import BACKEND_ERRORS, StorageUnavailable
from assetcache._synchronization import AsyncLock
from assetcache._utils import ensure_cache_dict

logger = logging.getLogger("assetcache.storages")

__all__ = (
    "AsyncBaseStorage",
    "AsyncInMemoryStorage",
    "AsyncSqliteStorage",
)

DEFAULT_STORE_NAME = "assetcache-v1"


class AsyncBaseStorage(abc.ABC):
    """
    Key -> CacheEntry store.

    Subclasses implement the underscored methods and raise ``StorageUnavailable``
    when their backend fails. Writes degrade to logged no-ops; reads propagate the
    error so that callers can fall back to the origin.
    """

    @abc.abstractmethod
    async def _get_entry(self, key: str) -> tp.Optional[CacheEntry]:
        raise NotImplementedError()

    @abc.abstractmethod
    async def _put_entry(self, key: str, entry: CacheEntry) -> None:
        raise NotImplementedError()

    @abc.abstractmethod
    async def _delete_entry(self, key: str) -> None:
        raise NotImplementedError()

    @abc.abstractmethod
    async def _keys(self) -> tp.List[str]:
        raise NotImplementedError()

    @abc.abstractmethod
    async def _clear(self) -> None:
        raise NotImplementedError()

    async def get_entry(self, key: str) -> tp.Optional[CacheEntry]:
        """
        Look up the entry stored under exactly ``key``.

        :raises StorageUnavailable: when the backend cannot be read
        """
        return await self._get_entry(key)

    async def put_entry(self, key: str, entry: CacheEntry) -> bool:
        """
        Insert or wholesale-replace the entry stored under ``key``.

        Returns False when the backend was unavailable and nothing was written.
        """
        try:
            await self._put_entry(key, entry)
        except StorageUnavailable as exc:
            logger.warning(f"Could not store {key}: {exc}")
            return False
        return True

    async def delete_entry(self, key: str) -> bool:
        """
        Remove the entry stored under ``key``, if any.

        Returns False when the backend was unavailable and nothing was removed.
        """
        try:
            await self._delete_entry(key)
        except StorageUnavailable as exc:
            logger.warning(f"Could not delete {key}: {exc}")
            return False
        return True

    async def keys(self) -> tp.List[str]:
        """
        A snapshot of every stored key.

        :raises StorageUnavailable: when the backend cannot be read
        """
        return await self._keys()

    async def clear(self) -> None:
        try:
            await self._clear()
        except StorageUnavailable as exc:
            logger.warning(f"Could not clear the cache store: {exc}")

    async def close(self) -> None:
        pass


class AsyncInMemoryStorage(AsyncBaseStorage):
    """
    Process-local storage, mostly useful for tests and short-lived processes.
    """

    def __init__(self) -> None:
        self._entries: tp.Dict[str, CacheEntry] = {}

    async def _get_entry(self, key: str) -> tp.Optional[CacheEntry]:
        return self._entries.get(key)

    async def _put_entry(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    async def _delete_entry(self, key: str) -> None:
        self._entries.pop(key, None)

    async def _keys(self) -> tp.List[str]:
        return list(self._entries)

    async def _clear(self) -> None:
        self._entries.clear()


class AsyncSqliteStorage(AsyncBaseStorage):
    """
    SQLite storage, one row per entry inside a named store.

    :param connection: A connection for sqlite, defaults to None
    :type connection: tp.Optional[anysqlite.Connection], optional
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
        connection: tp.Optional[anysqlite.Connection] = None,
        database_path: tp.Union[str, Path] = "assetcache_entries.db",
        store_name: str = DEFAULT_STORE_NAME,
    ) -> None:
        self.connection = connection
        self.database_path: Path = database_path if isinstance(database_path, Path) else Path(database_path)
        self.store_name = store_name
        self._lock = AsyncLock()
        self._initialized = False

    async def _ensure_connection(self) -> anysqlite.Connection:
        """Ensure connection is established and database is initialized."""
        if self.connection is None:
            parent = self.database_path.parent if self.database_path.parent != Path(".") else None
            full_path = ensure_cache_dict(parent) / self.database_path.name
            self.connection = await anysqlite.connect(str(full_path), check_same_thread=False)
        if not self._initialized:
            cursor = await self.connection.cursor()
            await cursor.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    store TEXT NOT NULL,
                    key TEXT NOT NULL,
                    data BLOB NOT NULL,
                    stored_at REAL NOT NULL,
                    PRIMARY KEY (store, key)
                )
            """)
            await self.connection.commit()
            self._initialized = True
        return self.connection

    async def _get_entry(self, key: str) -> tp.Optional[CacheEntry]:
        try:
            async with self._lock:
                connection = await self._ensure_connection()
                cursor = await connection.cursor()
                await cursor.execute(
                    "SELECT data FROM entries WHERE store = ? AND key = ?",
                    (self.store_name, key),
                )
                row = await cursor.fetchone()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

        if row is None:
            return None

        try:
            return unpack(row[0], kind="entry")
        except UNPACK_ERRORS:
            logger.warning(f"Ignoring the undecodable entry stored under {key}")
            return None

    async def _put_entry(self, key: str, entry: CacheEntry) -> None:
        data = pack(entry, kind="entry")
        try:
            async with self._lock:
                connection = await self._ensure_connection()
                cursor = await connection.cursor()
                await cursor.execute(
                    "INSERT OR REPLACE INTO entries (store, key, data, stored_at) VALUES (?, ?, ?, ?)",
                    (self.store_name, key, data, time.time()),
                )
                await connection.commit()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def _delete_entry(self, key: str) -> None:
        try:
            async with self._lock:
                connection = await self._ensure_connection()
                cursor = await connection.cursor()
                await cursor.execute(
                    "DELETE FROM entries WHERE store = ? AND key = ?",
                    (self.store_name, key),
                )
                await connection.commit()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def _keys(self) -> tp.List[str]:
        try:
            async with self._lock:
                connection = await self._ensure_connection()
                cursor = await connection.cursor()
                await cursor.execute("SELECT key FROM entries WHERE store = ?", (self.store_name,))
                rows = await cursor.fetchall()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc
        return [row[0] for row in rows]

    async def _clear(self) -> None:
        try:
            async with self._lock:
                connection = await self._ensure_connection()
                cursor = await connection.cursor()
                await cursor.execute("DELETE FROM entries WHERE store = ?", (self.store_name,))
                await connection.commit()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def close(self) -> None:
        if self.connection is not None:
            await self.connection.close()
            self.connection = None
            self._initialized = False
