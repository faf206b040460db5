from __future__ import annotations

import logging
import types
import typing as tp
from typing import Awaitable, Callable

from typing_extensions import assert_never

from assetcache._core._async._eviction import AsyncEvictionScheduler
from assetcache._core._async._ledgers import AsyncBaseLedger, AsyncSqliteLedger
from assetcache._core._async._storages import AsyncBaseStorage, AsyncSqliteStorage
from assetcache._core._keys import canonical_key
from assetcache._core._rules import (
    AnyState,
    CacheLookup,
    CacheMiss,
    CouldNotBeStored,
    FromCache,
    IdleClient,
    PassThrough,
    StoreAndUse,
    is_cacheable_request,
)
from assetcache._core.models import CacheEntry, CacheStatus, Request, Response, ResponseMetadata
from assetcache._exceptions import MalformedRequest, StorageUnavailable
from assetcache._policies import CachePolicy
from assetcache._synchronization import AsyncBackgroundTasks, AsyncLock

if tp.TYPE_CHECKING:  # pragma: no cover
    from typing_extensions import Self

logger = logging.getLogger("assetcache.gateway")


class AsyncCacheGateway:
    """
    Read-through cache in front of an origin fetcher.

    Cached static assets are answered immediately and refreshed in the background
    (stale-while-revalidate); misses are fetched, validated and stored. Anything
    that is not a cacheable static asset goes straight to the origin.

    Background work runs on a task group that only exists inside
    ``async with gateway:``; leaving the block waits for it.

    Args:
        request_sender: Callable that fetches a request from the origin.
        storage: Cache store for entry bodies. Defaults to AsyncSqliteStorage.
        ledger: Recency ledger. Defaults to AsyncSqliteLedger.
        policy: Classification, validation and eviction settings. Defaults to CachePolicy().
        is_externally_controlled: Returns True while something else (e.g. another caching
            layer) owns the requests; the gateway then passes everything through.
    """

    def __init__(
        self,
        request_sender: Callable[[Request], Awaitable[Response]],
        storage: AsyncBaseStorage | None = None,
        ledger: AsyncBaseLedger | None = None,
        policy: CachePolicy | None = None,
        is_externally_controlled: Callable[[], bool] | None = None,
    ) -> None:
        self.send_request = request_sender
        self.storage = storage if storage is not None else AsyncSqliteStorage()
        self.ledger = ledger if ledger is not None else AsyncSqliteLedger()
        self.policy = policy if policy is not None else CachePolicy()
        self.is_externally_controlled = is_externally_controlled or (lambda: False)
        self.scheduler = AsyncEvictionScheduler(
            self.storage,
            self.ledger,
            max_items=self.policy.max_items,
            prune_chunk=self.policy.prune_chunk,
        )
        self._background = AsyncBackgroundTasks()
        self._in_flight = 0
        self._counter_lock = AsyncLock()

    async def __aenter__(self) -> "Self":
        await self._background.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: tp.Optional[tp.Type[BaseException]] = None,
        exc_value: tp.Optional[BaseException] = None,
        traceback: tp.Optional[types.TracebackType] = None,
    ) -> None:
        await self._background.__aexit__(exc_type, exc_value, traceback)

    async def aclose(self) -> None:
        await self.storage.close()
        await self.ledger.close()

    async def handle(self, request: Request) -> Response:
        async with self._counter_lock:
            self._in_flight += 1
        try:
            return await self._handle(request)
        finally:
            await self._leave()

    async def purge(self) -> None:
        """Drop every stored entry and every recency record."""
        logger.info("Purging the asset cache")
        await self.storage.clear()
        await self.ledger.clear()

    async def maintain(self) -> tp.List[str]:
        """Run an eviction pass now and return the evicted keys."""
        return await self.scheduler.maintain()

    async def inspect(self, url: str) -> CacheStatus:
        bypassed = self.is_externally_controlled()
        try:
            key: tp.Optional[str] = canonical_key(url)
        except MalformedRequest:
            key = None

        cached = False
        last_access: tp.Optional[int] = None
        if key is not None:
            try:
                cached = await self.storage.get_entry(key) is not None
                last_access = (await self.ledger.snapshot()).get(key)
            except StorageUnavailable as exc:
                logger.warning(f"Could not inspect {key}: {exc}")

        return CacheStatus(
            url=url,
            key=key,
            cacheable=is_cacheable_request(Request(method="GET", url=url), self.policy.cache_options.classifier),
            cached=cached,
            last_access=last_access,
            bypassed=bypassed,
        )

    async def _handle(self, request: Request) -> Response:
        state: AnyState = IdleClient(options=self.policy.cache_options)

        while state:
            logger.debug(f"Handling state: {state.__class__.__name__}")
            if isinstance(state, IdleClient):
                state = state.next(request, externally_controlled=self.is_externally_controlled())
            elif isinstance(state, PassThrough):
                return await self.send_request(state.request)
            elif isinstance(state, CacheLookup):
                try:
                    entry = await self.storage.get_entry(state.key)
                except StorageUnavailable as exc:
                    logger.warning(f"Cache lookup failed, fetching from origin: {exc}")
                    return await self.send_request(request)
                state = state.next(entry)
            elif isinstance(state, FromCache):
                await self.ledger.touch(state.key)
                self._background.spawn(self._revalidate, state.request, state.key)
                return state.response
            elif isinstance(state, CacheMiss):
                response = await self.send_request(state.request)
                state = state.next(response)
            elif isinstance(state, StoreAndUse):
                return await self._store(state)
            elif isinstance(state, CouldNotBeStored):
                return state.response
            else:
                assert_never(state)

        raise RuntimeError("Unreachable")

    async def _store(self, state: StoreAndUse) -> Response:
        body = await state.response.aread()
        entry = CacheEntry.from_response(state.key, state.response, body)

        stored = await self.storage.put_entry(state.key, entry)
        if stored:
            await self.ledger.touch(state.key)
            await self._written(state.key)

        state.response.metadata.update(  # type: ignore
            ResponseMetadata(
                assetcache_from_cache=False,
                assetcache_stored=stored,
                assetcache_stored_at=entry.stored_at,
            )
        )
        return state.response

    async def _written(self, key: str) -> None:
        if self.policy.maintenance_trigger.should_maintain():
            logger.debug("Maintenance triggered by a cache write")
            self._background.spawn(self._maintain_in_background, frozenset([key]))

    async def _leave(self) -> None:
        async with self._counter_lock:
            self._in_flight -= 1
            if self._in_flight:
                return

        # No task group outside of `async with`, the idle pass is skipped quietly.
        if not self._background.running:
            return
        if self.policy.maintain_when_idle and not self.is_externally_controlled():
            logger.debug("Maintenance triggered by idleness")
            self._background.spawn(self._maintain_in_background, frozenset())

    async def _revalidate(self, request: Request, key: str) -> None:
        try:
            response = await self.send_request(request)
            state = CacheMiss(request=request, key=key, options=self.policy.cache_options).next(response)
            if isinstance(state, StoreAndUse):
                await self._store(state)
                logger.debug(f"Revalidated {key}")
            else:
                # Drain the body so the connection can be released.
                await response.aread()
        except Exception:
            logger.debug(f"Background revalidation of {key} failed, keeping the stored entry", exc_info=True)

    async def _maintain_in_background(self, protected: tp.FrozenSet[str]) -> None:
        try:
            await self.scheduler.maintain(protected)
        except Exception:
            logger.warning("Background maintenance failed", exc_info=True)
