from __future__ import annotations

import abc
import logging
import typing as tp
from pathlib import Path

import anysqlite

from assetcache._core._packing import UNPACK_ERRORS, pack, unpack
from assetcache._exceptions import BACKEND_ERRORS, StorageUnavailable
from assetcache._synchronization import AsyncLock
from assetcache._utils import ensure_cache_dict, now_ms

logger = logging.getLogger("assetcache.ledger")

__all__ = (
    "AsyncBaseLedger",
    "AsyncInMemoryLedger",
    "AsyncSqliteLedger",
)

LEDGER_KEY = "assetcache-recency"


class AsyncBaseLedger(abc.ABC):
    """
    Key -> last-touch timestamp (integer milliseconds since the epoch).

    Every mutation is a read-modify-write of the whole mapping done under one lock,
    so an operation is never observed half-applied. A touch never moves a
    timestamp backwards.
    """

    def __init__(self) -> None:
        self._lock = AsyncLock()

    @abc.abstractmethod
    async def _load(self) -> tp.Dict[str, int]:
        raise NotImplementedError()

    @abc.abstractmethod
    async def _save(self, records: tp.Dict[str, int]) -> None:
        raise NotImplementedError()

    async def touch(self, key: str, now: tp.Optional[int] = None) -> None:
        stamp = now if now is not None else now_ms()
        try:
            async with self._lock:
                records = await self._load()
                records[key] = max(records.get(key, 0), stamp)
                await self._save(records)
        except StorageUnavailable as exc:
            logger.warning(f"Could not record access to {key}: {exc}")

    async def snapshot(self) -> tp.Dict[str, int]:
        """
        A copy of every recorded timestamp.

        :raises StorageUnavailable: when the backend cannot be read
        """
        async with self._lock:
            return dict(await self._load())

    async def remove(self, key: str) -> None:
        await self.remove_many([key])

    async def remove_many(self, keys: tp.Iterable[str]) -> None:
        try:
            async with self._lock:
                records = await self._load()
                for key in keys:
                    records.pop(key, None)
                await self._save(records)
        except StorageUnavailable as exc:
            logger.warning(f"Could not update the recency ledger: {exc}")

    async def clear(self) -> None:
        try:
            async with self._lock:
                await self._save({})
        except StorageUnavailable as exc:
            logger.warning(f"Could not clear the recency ledger: {exc}")

    async def close(self) -> None:
        pass


class AsyncInMemoryLedger(AsyncBaseLedger):
    def __init__(self) -> None:
        super().__init__()
        self._records: tp.Dict[str, int] = {}

    async def _load(self) -> tp.Dict[str, int]:
        return self._records

    async def _save(self, records: tp.Dict[str, int]) -> None:
        self._records = records


class AsyncSqliteLedger(AsyncBaseLedger):
    """
    Keeps the whole mapping as a single msgpack blob under ``LEDGER_KEY``.

    Lives in its own database file by default, away from the entry bodies. The
    mapping is cached in memory after the first successful read; a blob that
    cannot be decoded is replaced by an empty mapping.

    :param connection: A connection for sqlite, defaults to None
    :type connection: tp.Optional[anysqlite.Connection], optional
    :param database_path: Database file, defaults to "assetcache_ledger.db"
    :type database_path: tp.Union[str, Path], optional
    """

    def __init__(
        self,
        *,
        connection: tp.Optional[anysqlite.Connection] = None,
        database_path: tp.Union[str, Path] = "assetcache_ledger.db",
        ledger_key: str = LEDGER_KEY,
    ) -> None:
        super().__init__()
        self.connection = connection
        self.database_path: Path = database_path if isinstance(database_path, Path) else Path(database_path)
        self.ledger_key = ledger_key
        self._records: tp.Optional[tp.Dict[str, int]] = None
        self._initialized = False

    async def _ensure_connection(self) -> anysqlite.Connection:
        if self.connection is None:
            parent = self.database_path.parent if self.database_path.parent != Path(".") else None
            full_path = ensure_cache_dict(parent) / self.database_path.name
            self.connection = await anysqlite.connect(str(full_path), check_same_thread=False)
        if not self._initialized:
            cursor = await self.connection.cursor()
            await cursor.execute(
                "CREATE TABLE IF NOT EXISTS ledger (name TEXT PRIMARY KEY, data BLOB NOT NULL)"
            )
            await self.connection.commit()
            self._initialized = True
        return self.connection

    async def _load(self) -> tp.Dict[str, int]:
        if self._records is not None:
            return self._records

        try:
            connection = await self._ensure_connection()
            cursor = await connection.cursor()
            await cursor.execute("SELECT data FROM ledger WHERE name = ?", (self.ledger_key,))
            row = await cursor.fetchone()
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

    async def _save(self, records: tp.Dict[str, int]) -> None:
        # Keep the in-memory copy even if persisting fails.
        self._records = records
        data = pack(records, kind="recency")
        try:
            connection = await self._ensure_connection()
            cursor = await connection.cursor()
            await cursor.execute(
                "INSERT OR REPLACE INTO ledger (name, data) VALUES (?, ?)",
                (self.ledger_key, data),
            )
            await connection.commit()
        except BACKEND_ERRORS as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def close(self) -> None:
        if self.connection is not None:
            await self.connection.close()
            self.connection = None
            self._initialized = False
