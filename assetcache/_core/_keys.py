from __future__ import annotations

from typing import Union

import httpx

from assetcache._exceptions import MalformedRequest

SUPPORTED_SCHEMES = ("http", "https")


def parse_url(url: Union[str, httpx.URL]) -> httpx.URL:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise MalformedRequest(f"Cannot parse URL {url!r}") from exc

    if parsed.scheme not in SUPPORTED_SCHEMES or not parsed.host:
        raise MalformedRequest(f"Not an absolute http(s) URL: {url!r}")
    return parsed


def canonical_key(url: Union[str, httpx.URL]) -> str:
    """
    Build the cache key for a URL.

    Scheme and host are lower-cased and default ports dropped (httpx does both
    while parsing); userinfo and fragment are not part of the key.

    Examples:
        >>> canonical_key("HTTPS://Example.COM:443/static/app.js?v=2#top")
        'https://example.com/static/app.js?v=2'
        >>> canonical_key("http://example.com")
        'http://example.com/'
    """
    parsed = parse_url(url)
    netloc = parsed.netloc.decode("ascii")
    raw_path = parsed.raw_path.decode("ascii") or "/"
    return f"{parsed.scheme}://{netloc}{raw_path}"
