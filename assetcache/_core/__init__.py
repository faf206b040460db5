from assetcache._core._headers import CacheControl as CacheControl, Headers as Headers
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
