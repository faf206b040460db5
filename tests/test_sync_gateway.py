import logging
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier
from typing import Dict, List, Optional

import pytest
from inline_snapshot import snapshot

from assetcache import (
    AlwaysTrigger,
    CacheEntry,
    CachePolicy,
    Headers,
    NeverTrigger,
    Request,
    Response,
    StorageUnavailable,
    SyncCacheGateway,
    SyncInMemoryLedger,
    SyncInMemoryStorage,
)
from assetcache._utils import make_sync_iterator

APP_JS = "https://example.com/static/app.js"


class Origin:
    """Serves canned responses and records every request it receives."""

    def __init__(self, bodies: Optional[List[bytes]] = None, headers: Optional[Dict[str, str]] = None) -> None:
        self.bodies = list(bodies or [b"console.log(1)"])
        self.headers = headers if headers is not None else {"Content-Type": "text/javascript"}
        self.status_code = 200
        self.calls: List[str] = []
        self.fail = False

    def __call__(self, request: Request) -> Response:
        self.calls.append(request.url)
        if self.fail:
            raise ConnectionError("origin is down")
        body = self.bodies[0] if len(self.bodies) == 1 else self.bodies.pop(0)
        return Response(
            status_code=self.status_code,
            headers=Headers(self.headers),
            stream=make_sync_iterator([body]),
        )


class CountingStorage(SyncInMemoryStorage):
    def __init__(self) -> None:
        super().__init__()
        self.gets = 0
        self.puts = 0

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        self.gets += 1
        return super().get_entry(key)

    def put_entry(self, key: str, entry: CacheEntry) -> bool:
        self.puts += 1
        return super().put_entry(key, entry)


class UnavailableStorage(SyncInMemoryStorage):
    def _get_entry(self, key: str) -> Optional[CacheEntry]:
        raise StorageUnavailable("database is locked")

    def _put_entry(self, key: str, entry: CacheEntry) -> None:
        raise StorageUnavailable("database is locked")


def quiet_policy(**kwargs) -> CachePolicy:
    kwargs.setdefault("maintenance_trigger", NeverTrigger())
    kwargs.setdefault("maintain_when_idle", False)
    return CachePolicy(**kwargs)


def get(url: str = APP_JS, **metadata) -> Request:
    return Request(method="GET", url=url, metadata=metadata)



def test_miss_then_hit() -> None:
    origin = Origin()
    storage, ledger = SyncInMemoryStorage(), SyncInMemoryLedger()

    with SyncCacheGateway(origin, storage=storage, ledger=ledger, policy=quiet_policy()) as gateway:
        first = gateway.handle(get())
        assert first.read() == b"console.log(1)"
        assert first.metadata["assetcache_from_cache"] is False
        assert first.metadata["assetcache_stored"] is True

        second = gateway.handle(get())
        assert second.read() == b"console.log(1)"
        assert second.metadata["assetcache_from_cache"] is True
        assert second.headers["content-type"] == "text/javascript"

    # the hit was revalidated in the background
    assert origin.calls == [APP_JS, APP_JS]
    assert storage.keys() == [APP_JS]
    assert list(ledger.snapshot()) == [APP_JS]



def test_hits_are_independent_copies() -> None:
    storage = SyncInMemoryStorage()

    with SyncCacheGateway(Origin(), storage=storage, ledger=SyncInMemoryLedger()) as gateway:
        gateway.handle(get()).read()

        first = gateway.handle(get())
        first.headers["x-tampered"] = "1"
        second = gateway.handle(get())

    assert "x-tampered" not in second.headers
    entry = storage.get_entry(APP_JS)
    assert entry is not None
    assert ("x-tampered", "1") not in entry.headers



@pytest.mark.parametrize(
    "url",
    [
        "https://example.com/api/users",
        "https://example.com/index.html",
        "https://example.com/",
    ],
)
def test_not_cacheable_requests_never_touch_the_store(url: str) -> None:
    storage = CountingStorage()
    origin = Origin()

    with SyncCacheGateway(origin, storage=storage, ledger=SyncInMemoryLedger()) as gateway:
        response = gateway.handle(get(url))
        assert response.read() == b"console.log(1)"

    assert (storage.gets, storage.puts) == (0, 0)
    assert origin.calls == [url]



def test_non_get_requests_pass_through() -> None:
    storage = CountingStorage()
    origin = Origin()

    with SyncCacheGateway(origin, storage=storage, ledger=SyncInMemoryLedger()) as gateway:
        gateway.handle(Request(method="POST", url=APP_JS))

    assert (storage.gets, storage.puts) == (0, 0)



def test_external_controller_bypasses_the_cache_mid_session() -> None:
    controlled = False
    storage = CountingStorage()
    origin = Origin()
    gateway = SyncCacheGateway(
        origin,
        storage=storage,
        ledger=SyncInMemoryLedger(),
        policy=quiet_policy(),
        is_externally_controlled=lambda: controlled,
    )

    with gateway:
        gateway.handle(get()).read()
        assert (storage.gets, storage.puts) == (1, 1)

        controlled = True
        response = gateway.handle(get())
        assert "assetcache_from_cache" not in response.metadata
        assert (storage.gets, storage.puts) == (1, 1)

        controlled = False
        response = gateway.handle(get())
        assert response.metadata["assetcache_from_cache"] is True

    assert gateway.inspect(APP_JS).bypassed is False



def test_bypass_metadata() -> None:
    storage = CountingStorage()

    with SyncCacheGateway(Origin(), storage=storage, ledger=SyncInMemoryLedger()) as gateway:
        gateway.handle(get(assetcache_bypass=True))

    assert (storage.gets, storage.puts) == (0, 0)



@pytest.mark.parametrize(
    "status_code, headers",
    [
        (200, {"Content-Type": "text/javascript", "Cache-Control": "no-store"}),
        (200, {"Content-Type": "text/javascript", "Cache-Control": "private, max-age=60"}),
        (200, {"Content-Type": "text/html"}),
        (206, {"Content-Type": "text/javascript", "Content-Range": "bytes 0-9/100"}),
        (404, {"Content-Type": "text/javascript"}),
    ],
)
def test_responses_that_are_not_stored(status_code: int, headers: Dict[str, str]) -> None:
    origin = Origin(headers=headers)
    origin.status_code = status_code
    storage, ledger = SyncInMemoryStorage(), SyncInMemoryLedger()

    with SyncCacheGateway(origin, storage=storage, ledger=ledger) as gateway:
        response = gateway.handle(get())
        assert response.status_code == status_code
        assert response.metadata == {"assetcache_from_cache": False, "assetcache_stored": False}
        assert response.read() == b"console.log(1)"

    assert storage.keys() == []
    assert ledger.snapshot() == {}



def test_revalidation_replaces_the_entry() -> None:
    origin = Origin(bodies=[b"v1", b"v2"])
    storage = SyncInMemoryStorage()

    with SyncCacheGateway(origin, storage=storage, ledger=SyncInMemoryLedger()) as gateway:
        assert gateway.handle(get()).read() == b"v1"
        stale = gateway.handle(get())

    # the stale copy is served, the fresh one replaces it for next time
    assert stale.read() == b"v1"
    entry = storage.get_entry(APP_JS)
    assert entry is not None and entry.body == b"v2"



def test_failed_revalidation_keeps_the_entry(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="assetcache.gateway")
    origin = Origin()
    storage = SyncInMemoryStorage()

    with SyncCacheGateway(origin, storage=storage, ledger=SyncInMemoryLedger()) as gateway:
        gateway.handle(get()).read()
        origin.fail = True
        response = gateway.handle(get())
        assert response.read() == b"console.log(1)"

    assert f"Background revalidation of {APP_JS} failed, keeping the stored entry" in caplog.messages
    entry = storage.get_entry(APP_JS)
    assert entry is not None and entry.body == b"console.log(1)"



def test_rejected_revalidation_keeps_the_entry() -> None:
    origin = Origin(bodies=[b"v1", b"v2"])
    storage = SyncInMemoryStorage()

    with SyncCacheGateway(origin, storage=storage, ledger=SyncInMemoryLedger()) as gateway:
        gateway.handle(get()).read()
        origin.headers = {"Content-Type": "text/javascript", "Cache-Control": "no-store"}
        gateway.handle(get())

    entry = storage.get_entry(APP_JS)
    assert entry is not None and entry.body == b"v1"



def test_hit_outside_of_the_context_is_revalidated_on_close() -> None:
    origin = Origin(bodies=[b"v1", b"v2"])
    storage = SyncInMemoryStorage()
    gateway = SyncCacheGateway(origin, storage=storage, ledger=SyncInMemoryLedger(), policy=quiet_policy())
    gateway.handle(get()).read()

    response = gateway.handle(get())
    gateway.close()

    assert response.metadata["assetcache_from_cache"] is True
    assert response.read() == b"v1"
    assert origin.calls == [APP_JS, APP_JS]
    entry = storage.get_entry(APP_JS)
    assert entry is not None and entry.body == b"v2"



def test_hit_records_the_access_before_returning() -> None:
    storage, ledger = SyncInMemoryStorage(), SyncInMemoryLedger()
    storage.put_entry(APP_JS, CacheEntry(key=APP_JS, status_code=200, headers=(), body=b"v1", stored_at=0.0))
    ledger.touch(APP_JS, now=1)
    gateway = SyncCacheGateway(Origin(), storage=storage, ledger=ledger, policy=quiet_policy())

    response = gateway.handle(get())

    assert response.metadata["assetcache_from_cache"] is True
    assert ledger.snapshot()[APP_JS] > 1
    gateway.close()


def test_unavailable_storage_falls_back_to_the_origin(caplog) -> None:
    origin = Origin()

    with SyncCacheGateway(origin, storage=UnavailableStorage(), ledger=SyncInMemoryLedger()) as gateway:
        with caplog.at_level(logging.WARNING, logger="assetcache"):
            response = gateway.handle(get())
            assert response.read() == b"console.log(1)"

    assert origin.calls == [APP_JS]
    assert caplog.messages == snapshot(["Cache lookup failed, fetching from origin: database is locked"])



def test_failed_store_still_answers() -> None:
    class ReadOnlyStorage(SyncInMemoryStorage):
        def _put_entry(self, key: str, entry: CacheEntry) -> None:
            raise StorageUnavailable("quota exceeded")

    ledger = SyncInMemoryLedger()

    with SyncCacheGateway(Origin(), storage=ReadOnlyStorage(), ledger=ledger) as gateway:
        response = gateway.handle(get())

    assert response.read() == b"console.log(1)"
    assert response.metadata["assetcache_stored"] is False
    assert ledger.snapshot() == {}



def test_concurrent_misses_for_the_same_key() -> None:
    origin = Origin()
    storage = SyncInMemoryStorage()
    bodies: List[bytes] = []

    with SyncCacheGateway(origin, storage=storage, ledger=SyncInMemoryLedger()) as gateway:

        def fetch() -> None:
            bodies.append(gateway.handle(get()).read())

        with ThreadPoolExecutor(max_workers=5) as pool:
            for _ in range(5):
                pool.submit(fetch)

    assert bodies == [b"console.log(1)"] * 5
    assert storage.keys() == [APP_JS]


def prefill(storage: SyncInMemoryStorage, ledger: SyncInMemoryLedger, count: int) -> None:
    for index in range(count):
        key = f"https://example.com/assets/{index:04d}.js"
        storage.put_entry(key, CacheEntry(key=key, status_code=200, headers=(), body=b"", stored_at=0.0))
        ledger.touch(key, now=1000 + index)



def test_store_is_bounded_after_maintenance() -> None:
    storage, ledger = SyncInMemoryStorage(), SyncInMemoryLedger()
    prefill(storage, ledger, 1000)

    with SyncCacheGateway(Origin(), storage=storage, ledger=ledger, policy=quiet_policy()) as gateway:
        gateway.handle(get()).read()
        assert len(storage.keys()) == 1001

        evicted = gateway.maintain()

    assert evicted == [f"https://example.com/assets/{index:04d}.js" for index in range(50)]
    assert len(storage.keys()) == 951
    assert storage.get_entry(APP_JS) is not None
    assert set(ledger.snapshot()) == set(storage.keys())



def test_write_triggers_maintenance() -> None:
    storage, ledger = SyncInMemoryStorage(), SyncInMemoryLedger()
    prefill(storage, ledger, 1000)
    policy = quiet_policy(maintenance_trigger=AlwaysTrigger())

    with SyncCacheGateway(Origin(), storage=storage, ledger=ledger, policy=policy) as gateway:
        gateway.handle(get()).read()

    assert len(storage.keys()) == 951
    assert storage.get_entry(APP_JS) is not None



def test_idle_maintenance() -> None:
    storage, ledger = SyncInMemoryStorage(), SyncInMemoryLedger()
    prefill(storage, ledger, 1000)
    policy = CachePolicy(maintenance_trigger=NeverTrigger(), maintain_when_idle=True)

    with SyncCacheGateway(Origin(), storage=storage, ledger=ledger, policy=policy) as gateway:
        gateway.handle(get()).read()

    assert len(storage.keys()) == 951



def test_idle_maintenance_runs_without_writes() -> None:
    storage, ledger = SyncInMemoryStorage(), SyncInMemoryLedger()
    prefill(storage, ledger, 1001)
    policy = CachePolicy(maintenance_trigger=NeverTrigger(), maintain_when_idle=True)

    with SyncCacheGateway(Origin(), storage=storage, ledger=ledger, policy=policy) as gateway:
        gateway.handle(get("https://example.com/api/users"))

    assert len(storage.keys()) == 951


def test_burst_of_misses_is_bounded_once_idle() -> None:
    urls = [f"https://example.com/static/{index}.js" for index in range(4)]
    origin = Origin()
    barrier = Barrier(len(urls))

    def gated(request: Request) -> Response:
        barrier.wait(timeout=5)
        return origin(request)

    storage = SyncInMemoryStorage()
    policy = CachePolicy(max_items=2, prune_chunk=1, maintenance_trigger=NeverTrigger(), maintain_when_idle=True)

    with SyncCacheGateway(gated, storage=storage, ledger=SyncInMemoryLedger(), policy=policy) as gateway:
        with ThreadPoolExecutor(max_workers=len(urls)) as pool:
            list(pool.map(lambda url: gateway.handle(get(url)).read(), urls))

    assert sorted(origin.calls) == urls
    assert len(storage.keys()) <= 2




def test_purge() -> None:
    storage, ledger = SyncInMemoryStorage(), SyncInMemoryLedger()

    with SyncCacheGateway(Origin(), storage=storage, ledger=ledger, policy=quiet_policy()) as gateway:
        gateway.handle(get()).read()
        gateway.purge()

    assert storage.keys() == []
    assert ledger.snapshot() == {}



def test_inspect() -> None:
    gateway = SyncCacheGateway(
        Origin(), storage=SyncInMemoryStorage(), ledger=SyncInMemoryLedger(), policy=quiet_policy()
    )

    with gateway:
        before = gateway.inspect(APP_JS)
        gateway.handle(get()).read()
        after = gateway.inspect("HTTPS://EXAMPLE.COM/static/app.js")

    assert (before.key, before.cacheable, before.cached, before.last_access) == (APP_JS, True, False, None)
    assert after.key == APP_JS
    assert after.cached
    assert after.last_access is not None

    api = gateway.inspect("https://example.com/api/users")
    assert (api.cacheable, api.cached) == (False, False)

    malformed = gateway.inspect("not a url")
    assert (malformed.key, malformed.cacheable, malformed.cached) == (None, False, False)



def test_default_backends_persist(use_temp_dir) -> None:
    origin = Origin()

    with SyncCacheGateway(origin, policy=quiet_policy()) as gateway:
        gateway.handle(get()).read()
    gateway.close()

    with SyncCacheGateway(origin, policy=quiet_policy()) as gateway:
        response = gateway.handle(get())
        assert response.metadata["assetcache_from_cache"] is True
        assert response.read() == b"console.log(1)"
    gateway.close()
