from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Optional,
    Pattern,
    Union,
)

from assetcache._core._headers import parse_cache_control
from assetcache._core._keys import canonical_key, parse_url
from assetcache._core.models import ResponseMetadata
from assetcache._exceptions import MalformedRequest

if TYPE_CHECKING:
    from assetcache import CacheEntry, Request, Response

logger = logging.getLogger("assetcache.core.rules")

DEFAULT_EXTENSIONS = (
    "js",
    "css",
    "woff",
    "woff2",
    "ttf",
    "otf",
    "eot",
    "png",
    "jpg",
    "jpeg",
    "gif",
    "svg",
    "ico",
    "webp",
    "avif",
    "bmp",
)

DEFAULT_EXCLUDED_PATTERNS = (
    r"/api/",
    r"/graphql",
    r"/feed",
    r"/rss",
    r"/json",
    r"/ws/",
    r"\.json(\?|$)",
    r"\.html?(\?|$)",
    r"\.xml(\?|$)",
    r"\bservice-worker\b",
    r"\bmanifest\b.*\.js",
    r"\.m3u8(\?|$)",  # HLS
    r"\.mpd(\?|$)",  # DASH
)

DEFAULT_FORBIDDEN_DIRECTIVES = ("no-store", "no-cache", "private", "must-revalidate")

DEFAULT_CONTENT_TYPES = (
    "text/css",
    "text/javascript",
    "application/javascript",
    "application/x-javascript",
    "image/",
    "font/",
    "application/font",
    "application/x-font",
    "application/wasm",
)


@dataclass
class ClassifierOptions:
    """
    Decides which requests are eligible for caching.

    Attributes:
    ----------
    supported_methods : list[str]
        Safe, idempotent read methods the cache intercepts.

        Default: ["GET"]

    extensions : list[str]
        Allow-list of static asset extensions (without the dot, case-insensitive).
        A request is only cacheable when its URL path ends in one of them.

        Examples:
        --------
        >>> # Only cache stylesheets and scripts
        >>> options = ClassifierOptions(extensions=["css", "js"])

    excluded_patterns : list[str]
        Regular expressions searched in the path and query of the URL. A match
        forbids caching and takes priority over ``extensions``.

        Examples:
        --------
        >>> # Never cache anything under /private/, on top of the defaults
        >>> options = ClassifierOptions(
        ...     excluded_patterns=[*DEFAULT_EXCLUDED_PATTERNS, r"/private/"]
        ... )
    """

    supported_methods: list[str] = field(default_factory=lambda: ["GET"])
    extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    excluded_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_PATTERNS))

    _compiled_patterns: list[Pattern[str]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.supported_methods = [method.upper() for method in self.supported_methods]
        self.extensions = [extension.lower().lstrip(".") for extension in self.extensions]
        self._compiled_patterns = [re.compile(pattern, re.IGNORECASE) for pattern in self.excluded_patterns]

    def excluded_by(self, path_and_query: str) -> Optional[str]:
        for pattern in self._compiled_patterns:
            if pattern.search(path_and_query):
                return pattern.pattern
        return None


@dataclass
class ValidatorOptions:
    """
    Decides which fetched responses may be stored.

    Attributes:
    ----------
    forbidden_directives : list[str]
        Cache-Control directives that forbid storing the response.

        Default: ["no-store", "no-cache", "private", "must-revalidate"]

    accepted_content_types : list[str]
        Content-Type prefixes accepted for storage (case-insensitive). Responses
        without a Content-Type header are accepted.
    """

    forbidden_directives: list[str] = field(default_factory=lambda: list(DEFAULT_FORBIDDEN_DIRECTIVES))
    accepted_content_types: list[str] = field(default_factory=lambda: list(DEFAULT_CONTENT_TYPES))


@dataclass
class CacheOptions:
    classifier: ClassifierOptions = field(default_factory=ClassifierOptions)
    validator: ValidatorOptions = field(default_factory=ValidatorOptions)


def is_cacheable_request(request: Request, options: ClassifierOptions) -> bool:
    """
    Decide from the request method and URL alone whether the resource may be cached.

    Pure function: no I/O, never raises. Malformed URLs are simply not cacheable.
    """
    if request.method.upper() not in options.supported_methods:
        logger.debug(f"Request method {request.method} is not a cacheable read")
        return False

    try:
        url = parse_url(request.url)
    except MalformedRequest as exc:
        logger.debug(f"Request is not cacheable: {exc}")
        return False

    path_and_query = url.raw_path.decode("ascii")
    excluded_by = options.excluded_by(path_and_query)
    if excluded_by is not None:
        logger.debug(f"Request URL matches the excluded pattern {excluded_by!r}")
        return False

    path = url.path.lower()
    if not any(path.endswith("." + extension) for extension in options.extensions):
        logger.debug("Request URL does not point to a static asset")
        return False

    return True


def is_cacheable_response(response: Response, options: ValidatorOptions) -> bool:
    """
    Decide from status code, Content-Type and Cache-Control whether a response may be stored.
    """
    if response.status_code == 206:
        # A byte range stored under the whole-resource key would corrupt later full reads
        logger.debug("Cannot store a partial content response")
        return False

    if not 200 <= response.status_code < 300:
        logger.debug(f"Cannot store a response with status code {response.status_code}")
        return False

    cache_control = parse_cache_control(response.headers.get("cache-control"))
    for directive in options.forbidden_directives:
        if cache_control.has(directive):
            logger.debug(f"Cannot store the response because of the {directive!r} directive")
            return False

    content_type = response.headers.get("content-type", "").strip().lower()
    accepted = tuple(prefix.lower() for prefix in options.accepted_content_types)
    if content_type and not content_type.startswith(accepted):
        logger.debug(f"Cannot store a response with content type {content_type!r}")
        return False

    return True


@dataclass
class State(ABC):
    options: CacheOptions

    @abstractmethod
    def next(self, *args: Any, **kwargs: Any) -> Union["State", None]:
        raise NotImplementedError("Subclasses must implement this method")


class IdleClient(State):
    """
    Entry point of the request state machine.

    State Transitions:
    -----------------
    - PassThrough: the cache is bypassed or the request is not cacheable
    - CacheLookup: the request targets a cacheable static asset
    """

    def next(
        self, request: Request, externally_controlled: bool = False
    ) -> Union["PassThrough", "CacheLookup"]:
        if externally_controlled:
            logger.debug("Passing the request through because an external controller is active")
            return PassThrough(request=request, options=self.options)

        if request.metadata.get("assetcache_bypass"):
            logger.debug("Passing the request through because the request asked to bypass the cache")
            return PassThrough(request=request, options=self.options)

        if not is_cacheable_request(request, self.options.classifier):
            return PassThrough(request=request, options=self.options)

        return CacheLookup(request=request, key=canonical_key(request.url), options=self.options)


@dataclass
class PassThrough(State):
    request: Request

    def next(self) -> None:
        return None


@dataclass
class CacheLookup(State):
    request: Request
    key: str

    def next(self, entry: Optional[CacheEntry]) -> Union["FromCache", "CacheMiss"]:
        if entry is None:
            logger.debug(f"No cached response for {self.key}")
            return CacheMiss(request=self.request, key=self.key, options=self.options)
        logger.debug(f"Found cached response for {self.key}")
        return FromCache(request=self.request, entry=entry, options=self.options)


class FromCache(State):
    """
    A stored entry answers the request.

    ``response`` is built from the entry, so callers may consume or mutate it freely.
    """

    def __init__(self, request: Request, entry: CacheEntry, options: CacheOptions) -> None:
        super().__init__(options)
        self.request = request
        self.entry = entry
        self.key = entry.key
        self.response = entry.to_response()

    def next(self) -> None:
        return None


@dataclass
class CacheMiss(State):
    request: Request
    key: str

    def next(self, response: Response) -> Union["StoreAndUse", "CouldNotBeStored"]:
        if is_cacheable_response(response, self.options.validator):
            logger.debug("Storing response in cache")
            return StoreAndUse(key=self.key, response=response, options=self.options)
        return CouldNotBeStored(response=response, options=self.options)


class StoreAndUse(State):
    def __init__(self, key: str, response: Response, options: CacheOptions) -> None:
        super().__init__(options)
        self.key = key
        self.response = response

    def next(self) -> None:
        return None


class CouldNotBeStored(State):
    """
    The state that indicates that the response could not be stored in the cache.
    """

    def __init__(self, response: Response, options: CacheOptions) -> None:
        super().__init__(options)
        self.response = response
        response_meta = ResponseMetadata(
            assetcache_from_cache=False,
            assetcache_stored=False,
        )
        self.response.metadata.update(response_meta)  # type: ignore

    def next(self) -> None:
        return None


AnyState = Union[
    IdleClient,
    PassThrough,
    CacheLookup,
    FromCache,
    CacheMiss,
    StoreAndUse,
    CouldNotBeStored,
]
