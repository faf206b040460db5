import gzip
import sqlite3
from datetime import datetime
from typing import List
from zoneinfo import ZoneInfo

import httpx
import pytest
from httpx import MockTransport
from inline_snapshot import snapshot
from time_machine import travel

from assetcache import CachePolicy, NeverTrigger, SyncInMemoryLedger, SyncInMemoryStorage, SyncSqliteStorage
from assetcache.httpx import SyncCacheClient, SyncCacheTransport

APP_JS = "https://example.com/static/app.js"


def quiet_policy() -> CachePolicy:
    return CachePolicy(maintenance_trigger=NeverTrigger(), maintain_when_idle=False)


class Origin:
    def __init__(self, content: bytes = b"console.log(1)", **headers: str) -> None:
        self.content = content
        self.headers = {"Content-Type": "text/javascript", **headers}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(200, headers=self.headers, content=self.content)



@travel(datetime(2024, 1, 1, 0, 0, 0, tzinfo=ZoneInfo("UTC")), tick=False)
def test_simple_caching(caplog: pytest.LogCaptureFixture) -> None:
    origin = Origin()
    transport = SyncCacheTransport(
        next_transport=MockTransport(origin),
        storage=SyncSqliteStorage(connection=sqlite3.connect(":memory:", check_same_thread=False)),
        ledger=SyncInMemoryLedger(),
        policy=quiet_policy(),
    )

    with httpx.Client(transport=transport) as client:
        with caplog.at_level("DEBUG", logger="assetcache"):
            first = client.get(APP_JS)

        assert caplog.messages == snapshot(
            [
                "Handling state: IdleClient",
                "Handling state: CacheLookup",
                "No cached response for https://example.com/static/app.js",
                "Handling state: CacheMiss",
                "Storing response in cache",
                "Handling state: StoreAndUse",
            ]
        )
        assert first.extensions == snapshot(
            {"assetcache_from_cache": False, "assetcache_stored": True, "assetcache_stored_at": 1704067200.0}
        )

        second = client.get(APP_JS)

    assert second.text == "console.log(1)"
    assert second.headers["content-type"] == "text/javascript"
    assert second.extensions == snapshot(
        {"assetcache_from_cache": True, "assetcache_stored": False, "assetcache_stored_at": 1704067200.0}
    )
    # one fetch for the miss, one background revalidation for the hit
    assert len(origin.requests) == 2



def test_encoded_bodies_are_stored_raw() -> None:
    origin = Origin(
        content=gzip.compress(b"body { color: red }"),
        **{"Content-Type": "text/css", "Content-Encoding": "gzip"},
    )
    storage = SyncInMemoryStorage()
    transport = SyncCacheTransport(
        next_transport=MockTransport(origin), storage=storage, ledger=SyncInMemoryLedger(), policy=quiet_policy()
    )

    with httpx.Client(transport=transport) as client:
        first = client.get("https://example.com/main.css")
        second = client.get("https://example.com/main.css")

    assert first.text == second.text == "body { color: red }"
    assert second.extensions["assetcache_from_cache"] is True
    entry = storage.get_entry("https://example.com/main.css")
    assert entry is not None
    assert gzip.decompress(entry.body) == b"body { color: red }"
    assert ("content-encoding", "gzip") in entry.headers



def test_bypass_header_and_extension() -> None:
    origin = Origin()
    storage = SyncInMemoryStorage()
    transport = SyncCacheTransport(
        next_transport=MockTransport(origin), storage=storage, ledger=SyncInMemoryLedger(), policy=quiet_policy()
    )

    with httpx.Client(transport=transport) as client:
        by_header = client.get(APP_JS, headers={"X-Assetcache-Bypass": "1"})
        by_extension = client.get(APP_JS, extensions={"assetcache_bypass": True})

    assert by_header.text == by_extension.text == "console.log(1)"
    assert "assetcache_from_cache" not in by_header.extensions
    assert storage.keys() == []
    assert len(origin.requests) == 2



def test_non_assets_pass_through() -> None:
    origin = Origin(content=b'{"users": []}', **{"Content-Type": "application/json"})
    storage = SyncInMemoryStorage()
    transport = SyncCacheTransport(
        next_transport=MockTransport(origin), storage=storage, ledger=SyncInMemoryLedger(), policy=quiet_policy()
    )

    with httpx.Client(transport=transport) as client:
        for _ in range(3):
            response = client.get("https://example.com/api/users")
            assert response.json() == {"users": []}

    assert len(origin.requests) == 3
    assert storage.keys() == []



def test_externally_controlled_transport() -> None:
    origin = Origin()
    storage = SyncInMemoryStorage()
    transport = SyncCacheTransport(
        next_transport=MockTransport(origin),
        storage=storage,
        ledger=SyncInMemoryLedger(),
        is_externally_controlled=lambda: True,
    )

    with httpx.Client(transport=transport) as client:
        client.get(APP_JS)
        client.get(APP_JS)

    assert len(origin.requests) == 2
    assert storage.keys() == []



def test_request_extensions_reach_the_origin() -> None:
    origin = Origin()
    transport = SyncCacheTransport(
        next_transport=MockTransport(origin),
        storage=SyncInMemoryStorage(),
        ledger=SyncInMemoryLedger(),
        policy=quiet_policy(),
    )

    with httpx.Client(transport=transport, timeout=3.0) as client:
        client.get(APP_JS, headers={"Accept": "text/javascript"})

    (request,) = origin.requests
    assert request.headers["accept"] == "text/javascript"
    assert request.extensions["timeout"] == {"connect": 3.0, "read": 3.0, "write": 3.0, "pool": 3.0}



def test_cache_client_wraps_its_transport() -> None:
    storage = SyncInMemoryStorage()
    ledger = SyncInMemoryLedger()

    with SyncCacheClient(storage=storage, ledger=ledger, policy=quiet_policy()) as client:
        transport = client._transport

        assert isinstance(transport, SyncCacheTransport)
        assert transport.storage is storage
        assert transport.ledger is ledger
        assert transport.gateway.policy.maintain_when_idle is False
