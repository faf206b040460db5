from ._async_httpx import AsyncCacheClient as AsyncCacheClient, AsyncCacheTransport as AsyncCacheTransport
from ._sync_httpx import SyncCacheClient as SyncCacheClient, SyncCacheTransport as SyncCacheTransport

__all__ = ("AsyncCacheClient", "AsyncCacheTransport", "SyncCacheClient", "SyncCacheTransport")
