from assetcache._core._async._eviction import AsyncEvictionScheduler
from assetcache._core._async._ledgers import AsyncBaseLedger, AsyncInMemoryLedger, AsyncSqliteLedger
from assetcache._core._async._storages import AsyncBaseStorage, AsyncInMemoryStorage, AsyncSqliteStorage
from assetcache._core._sync._eviction import SyncEvictionScheduler
from assetcache._core._sync._ledgers import SyncBaseLedger, SyncInMemoryLedger, SyncSqliteLedger
from assetcache._core._sync._storages import SyncBaseStorage, SyncInMemoryStorage, SyncSqliteStorage
from assetcache._core._headers import Headers as Headers
from assetcache._core._keys import canonical_key as canonical_key
from assetcache._core._rules import (
    AnyState as AnyState,
    CacheLookup as CacheLookup,
    CacheMiss as CacheMiss,
    CacheOptions as CacheOptions,
    ClassifierOptions as ClassifierOptions,
    CouldNotBeStored as CouldNotBeStored,
    FromCache as FromCache,
    IdleClient as IdleClient,
    PassThrough as PassThrough,
    State as State,
    StoreAndUse as StoreAndUse,
    ValidatorOptions as ValidatorOptions,
    is_cacheable_request as is_cacheable_request,
    is_cacheable_response as is_cacheable_response,
)
from assetcache._core.models import (
    CacheEntry as CacheEntry,
    CacheStatus as CacheStatus,
    Request as Request,
    RequestMetadata as RequestMetadata,
    Response as Response,
    ResponseMetadata as ResponseMetadata,
)
from assetcache._exceptions import CacheError, MalformedRequest, StorageUnavailable
from assetcache._policies import AlwaysTrigger, CachePolicy, MaintenanceTrigger, NeverTrigger, RandomTrigger
from assetcache._async_gateway import AsyncCacheGateway as AsyncCacheGateway
from assetcache._sync_gateway import SyncCacheGateway as SyncCacheGateway

__all__ = (
    ## States
    "AnyState",
    "IdleClient",
    "PassThrough",
    "CacheLookup",
    "CacheMiss",
    "FromCache",
    "StoreAndUse",
    "CouldNotBeStored",
    "State",
    ## Rules
    "CacheOptions",
    "ClassifierOptions",
    "ValidatorOptions",
    "is_cacheable_request",
    "is_cacheable_response",
    "canonical_key",
    ## Models
    "Request",
    "Response",
    "CacheEntry",
    "CacheStatus",
    "RequestMetadata",
    "ResponseMetadata",
    ## Headers
    "Headers",
    ## Storages
    "AsyncBaseStorage",
    "AsyncInMemoryStorage",
    "AsyncSqliteStorage",
    "SyncBaseStorage",
    "SyncInMemoryStorage",
    "SyncSqliteStorage",
    ## Ledgers
    "AsyncBaseLedger",
    "AsyncInMemoryLedger",
    "AsyncSqliteLedger",
    "SyncBaseLedger",
    "SyncInMemoryLedger",
    "SyncSqliteLedger",
    ## Eviction
    "AsyncEvictionScheduler",
    "SyncEvictionScheduler",
    # Gateways
    "AsyncCacheGateway",
    "SyncCacheGateway",
    # Policies
    "CachePolicy",
    "MaintenanceTrigger",
    "RandomTrigger",
    "AlwaysTrigger",
    "NeverTrigger",
    # Errors
    "CacheError",
    "StorageUnavailable",
    "MalformedRequest",
)
