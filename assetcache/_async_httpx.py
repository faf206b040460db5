from __future__ import annotations

import ssl
import types
import typing as t
from typing import (
    AsyncIterable,
    AsyncIterator,
    Iterator,
    Union,
    cast,
    overload,
)

import httpx
from httpx import RequestNotRead

from assetcache._async_gateway import AsyncCacheGateway
from assetcache._core._async._ledgers import AsyncBaseLedger
from assetcache._core._async._storages import AsyncBaseStorage
from assetcache._core._headers import Headers
from assetcache._core.models import Request, RequestMetadata, Response, extract_metadata_from_headers
from assetcache._policies import CachePolicy
from assetcache._utils import filter_mapping, make_async_iterator

if t.TYPE_CHECKING:  # pragma: no cover
    from typing_extensions import Self

# 128 KB
CHUNK_SIZE = 131072


@overload
def _internal_to_httpx(
    value: Request,
) -> httpx.Request: ...
@overload
def _internal_to_httpx(
    value: Response,
) -> httpx.Response: ...
def _internal_to_httpx(
    value: Union[Request, Response],
) -> Union[httpx.Request, httpx.Response]:
    """
    Convert internal Request/Response to httpx.Request/httpx.Response.
    """
    if isinstance(value, Request):
        return httpx.Request(
            method=value.method,
            url=value.url,
            headers=value.headers.multi_items(),
            stream=_IteratorStream(value._aiter_stream()),
            extensions=dict(value.metadata),
        )
    elif isinstance(value, Response):
        return httpx.Response(
            status_code=value.status_code,
            headers=value.headers.multi_items(),
            stream=_IteratorStream(value._aiter_stream()),
            extensions=dict(value.metadata),
        )


@overload
def _httpx_to_internal(
    value: httpx.Request,
) -> Request: ...
@overload
def _httpx_to_internal(
    value: httpx.Response,
) -> Response: ...
def _httpx_to_internal(
    value: Union[httpx.Request, httpx.Response],
) -> Union[Request, Response]:
    """
    Convert httpx.Request/httpx.Response to internal Request/Response.
    """
    headers = Headers.from_pairs(
        (key, header_value)
        for key, header_value in value.headers.multi_items()
        if key.lower() != "transfer-encoding"
    )
    if isinstance(value, httpx.Request):
        metadata: t.Dict[str, t.Any] = dict(value.extensions)
        metadata.update(extract_metadata_from_headers(value.headers))
        if "assetcache_bypass" in value.extensions:
            metadata.update(RequestMetadata(assetcache_bypass=value.extensions["assetcache_bypass"]))

        try:
            stream = make_async_iterator([value.content])
        except RequestNotRead:
            stream = cast(AsyncIterator[bytes], value.stream)

        return Request(
            method=value.method,
            url=str(value.url),
            headers=headers,
            stream=stream,
            metadata=metadata,
        )
    elif isinstance(value, httpx.Response):
        stream = (
            make_async_iterator([value.content]) if value.is_stream_consumed else value.aiter_raw(chunk_size=CHUNK_SIZE)
        )

        if value.is_stream_consumed and "content-encoding" in value.headers:
            # The raw bytes are gone; keep the decoded body and describe it as such.
            headers = Headers(
                {
                    **filter_mapping(headers, ["content-encoding", "content-length"]),
                    "content-length": str(len(value.content)),
                }
            )

        return Response(
            status_code=value.status_code,
            headers=headers,
            stream=stream,
            metadata={},
        )


class _IteratorStream(httpx.SyncByteStream, httpx.AsyncByteStream):
    def __init__(self, iterator: Iterator[bytes] | AsyncIterator[bytes]) -> None:
        self.iterator = iterator

    async def __aiter__(self) -> AsyncIterator[bytes]:
        assert isinstance(self.iterator, (AsyncIterator, AsyncIterable))
        async for chunk in self.iterator:
            yield chunk


class AsyncCacheTransport(httpx.AsyncBaseTransport):
    """
    An httpx transport that serves static assets through an AsyncCacheGateway.

    Use it (or the client owning it) as an async context manager so that cached
    assets can be revalidated in the background.
    """

    def __init__(
        self,
        next_transport: httpx.AsyncBaseTransport,
        storage: AsyncBaseStorage | None = None,
        ledger: AsyncBaseLedger | None = None,
        policy: CachePolicy | None = None,
        is_externally_controlled: t.Callable[[], bool] | None = None,
    ) -> None:
        self.next_transport = next_transport
        self._gateway: AsyncCacheGateway = AsyncCacheGateway(
            request_sender=self.request_sender,
            storage=storage,
            ledger=ledger,
            policy=policy,
            is_externally_controlled=is_externally_controlled,
        )
        self.storage = self._gateway.storage
        self.ledger = self._gateway.ledger

    @property
    def gateway(self) -> AsyncCacheGateway:
        return self._gateway

    async def __aenter__(self) -> "Self":
        await self.next_transport.__aenter__()
        await self._gateway.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: t.Optional[t.Type[BaseException]] = None,
        exc_value: t.Optional[BaseException] = None,
        traceback: t.Optional[types.TracebackType] = None,
    ) -> None:
        try:
            await self._gateway.__aexit__(exc_type, exc_value, traceback)
        finally:
            await self.aclose()

    async def handle_async_request(
        self,
        request: httpx.Request,
    ) -> httpx.Response:
        internal_request = _httpx_to_internal(request)
        internal_response = await self._gateway.handle(internal_request)
        response = _internal_to_httpx(internal_response)
        return response

    async def aclose(self) -> None:
        await self.next_transport.aclose()
        await self._gateway.aclose()

    async def request_sender(self, request: Request) -> Response:
        httpx_request = _internal_to_httpx(request)
        httpx_response = await self.next_transport.handle_async_request(httpx_request)
        return _httpx_to_internal(httpx_response)


class AsyncCacheClient(httpx.AsyncClient):
    def __init__(self, *args: t.Any, **kwargs: t.Any) -> None:
        self.storage: AsyncBaseStorage | None = kwargs.pop("storage", None)
        self.ledger: AsyncBaseLedger | None = kwargs.pop("ledger", None)
        self.policy: CachePolicy | None = kwargs.pop("policy", None)
        self.is_externally_controlled: t.Callable[[], bool] | None = kwargs.pop("is_externally_controlled", None)
        super().__init__(*args, **kwargs)

    def _wrap(self, next_transport: httpx.AsyncBaseTransport) -> AsyncCacheTransport:
        return AsyncCacheTransport(
            next_transport=next_transport,
            storage=self.storage,
            ledger=self.ledger,
            policy=self.policy,
            is_externally_controlled=self.is_externally_controlled,
        )

    def _init_transport(
        self,
        verify: ssl.SSLContext | str | bool = True,
        cert: t.Union[str, t.Tuple[str, str], t.Tuple[str, str, str], None] = None,
        trust_env: bool = True,
        http1: bool = True,
        http2: bool = False,
        limits: httpx.Limits = httpx.Limits(max_connections=100, max_keepalive_connections=20),
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: t.Any,
    ) -> httpx.AsyncBaseTransport:
        if transport is not None:
            return transport

        return self._wrap(
            httpx.AsyncHTTPTransport(
                verify=verify,
                cert=cert,
                trust_env=trust_env,
                http1=http1,
                http2=http2,
                limits=limits,
            )
        )

    def _init_proxy_transport(
        self,
        proxy: httpx.Proxy,
        verify: ssl.SSLContext | str | bool = True,
        cert: t.Union[str, t.Tuple[str, str], t.Tuple[str, str, str], None] = None,
        trust_env: bool = True,
        http1: bool = True,
        http2: bool = False,
        limits: httpx.Limits = httpx.Limits(max_connections=100, max_keepalive_connections=20),
        **kwargs: t.Any,
    ) -> httpx.AsyncBaseTransport:
        return self._wrap(
            httpx.AsyncHTTPTransport(
                verify=verify,
                cert=cert,
                trust_env=trust_env,
                http1=http1,
                http2=http2,
                limits=limits,
                proxy=proxy,
            )
        )
