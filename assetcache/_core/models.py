from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Iterable,
    Iterator,
    Mapping,
    Optional,
    Tuple,
    TypedDict,
    cast,
)

from assetcache._core._headers import Headers
from assetcache._utils import make_async_iterator, make_sync_iterator, snake_to_header


class AnyIterable:
    """A one-shot body usable both as a sync and as an async iterator."""

    def __init__(self, content: bytes | None = None) -> None:
        self.consumed = False
        self.content = content

    def __next__(self) -> bytes:
        if self.content is not None and not self.consumed:
            self.consumed = True
            return self.content
        raise StopIteration()

    def __iter__(self) -> Iterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        if self.content is not None and not self.consumed:
            self.consumed = True
            return self.content
        raise StopAsyncIteration()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    def __eq__(self, value: Any) -> bool:
        return isinstance(value, AnyIterable)


class RequestMetadata(TypedDict, total=False):
    # All the names here should be prefixed with "assetcache_" to avoid collisions with user data
    assetcache_bypass: bool | None
    """When True, the request goes straight to the origin and never touches the cache."""


_TRUTHY = ("1", "true", "yes", "on")
_FALSY = ("0", "false", "no", "off")


def extract_metadata_from_headers(
    headers: Mapping[str, str],
) -> RequestMetadata:
    metadata: RequestMetadata = {}
    header_name = snake_to_header("assetcache_bypass")
    if header_name in headers:
        value = headers[header_name].strip().lower()
        if value in _TRUTHY:
            metadata["assetcache_bypass"] = True
        elif value in _FALSY:
            metadata["assetcache_bypass"] = False
    return metadata


class ResponseMetadata(TypedDict, total=False):
    # All the names here should be prefixed with "assetcache_" to avoid collisions with user data
    assetcache_from_cache: bool
    """Indicates whether the response was served from cache."""

    assetcache_stored: bool
    """Indicates whether the response was stored in cache."""

    assetcache_stored_at: float
    """Timestamp when the served response was stored."""


@dataclass
class Request:
    method: str
    url: str
    headers: Headers = field(default_factory=lambda: Headers({}))
    stream: Iterator[bytes] | AsyncIterator[bytes] = field(default_factory=lambda: AnyIterable())
    metadata: RequestMetadata | Mapping[str, Any] = field(default_factory=dict)

    def _iter_stream(self) -> Iterator[bytes]:
        if isinstance(self.stream, (Iterator, Iterable)):
            yield from self.stream
            return
        raise TypeError("Request stream is not an Iterator")

    async def _aiter_stream(self) -> AsyncIterator[bytes]:
        if isinstance(self.stream, (AsyncIterator, AsyncIterable)):
            async for chunk in self.stream:
                yield chunk
            return
        raise TypeError("Request stream is not an AsyncIterator")


@dataclass
class Response:
    status_code: int
    headers: Headers = field(default_factory=lambda: Headers({}))
    stream: Iterator[bytes] | AsyncIterator[bytes] = field(default_factory=lambda: AnyIterable())
    metadata: ResponseMetadata | Mapping[str, Any] = field(default_factory=dict)

    def _iter_stream(self) -> Iterator[bytes]:
        if hasattr(self, "collected_body"):
            yield getattr(self, "collected_body")
            return
        if isinstance(self.stream, Iterator):
            yield from self.stream
            return
        raise TypeError("Response stream is not an Iterator")

    async def _aiter_stream(self) -> AsyncIterator[bytes]:
        if hasattr(self, "collected_body"):
            yield getattr(self, "collected_body")
            return
        if isinstance(self.stream, AsyncIterator):
            async for chunk in self.stream:
                yield chunk
        else:
            raise TypeError("Response stream is not an AsyncIterator")

    def read(self) -> bytes:
        """
        Synchronously reads the entire response body without consuming the stream.
        """
        if hasattr(self, "collected_body"):
            return cast(bytes, getattr(self, "collected_body"))

        if not isinstance(self.stream, Iterator):
            raise TypeError("Response stream is not an Iterator")

        collected = b"".join([chunk for chunk in self.stream])
        setattr(self, "collected_body", collected)
        self.stream = make_sync_iterator([collected])
        return collected

    async def aread(self) -> bytes:
        """
        Asynchronously reads the entire response body without consuming the stream.
        """
        if hasattr(self, "collected_body"):
            return cast(bytes, getattr(self, "collected_body"))

        if not isinstance(self.stream, AsyncIterator):
            raise TypeError("Response stream is not an AsyncIterator")

        collected = b"".join([chunk async for chunk in self.stream])
        setattr(self, "collected_body", collected)
        self.stream = make_async_iterator([collected])
        return collected


@dataclass(frozen=True)
class CacheEntry:
    """
    An immutable snapshot of a fetched resource.

    Headers are kept as a tuple of ``(name, value)`` pairs so that nothing reachable
    from the entry can be mutated; every response built from it gets its own copies.
    """

    key: str
    status_code: int
    headers: Tuple[Tuple[str, str], ...]
    body: bytes
    stored_at: float = field(default_factory=time.time)

    @classmethod
    def from_response(cls, key: str, response: Response, body: bytes) -> "CacheEntry":
        return cls(
            key=key,
            status_code=response.status_code,
            headers=tuple(response.headers.multi_items()),
            body=body,
        )

    def to_response(self) -> Response:
        return Response(
            status_code=self.status_code,
            headers=Headers.from_pairs(self.headers),
            stream=AnyIterable(self.body),
            metadata=ResponseMetadata(
                assetcache_from_cache=True,
                assetcache_stored=False,
                assetcache_stored_at=self.stored_at,
            ),
        )


@dataclass(frozen=True)
class CacheStatus:
    """Read-only view of what the cache knows about one URL."""

    url: str
    key: Optional[str]
    cacheable: bool
    cached: bool
    last_access: Optional[int]
    bypassed: bool
