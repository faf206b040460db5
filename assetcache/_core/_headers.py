"""
Header containers and a Cache-Control parser.

The parser follows the RFC 9111 grammar loosely: directives are separated by
commas, names are case-insensitive tokens and values are either tokens or
quoted strings (commas inside quotes do not split directives).
"""

from __future__ import annotations

from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Tuple,
    Union,
)

# RFC 7230 Section 3.2.6: tchar
_TOKEN_SPECIALS = frozenset("!#$%&'*+-.^_`|~")


def is_token(c: str) -> bool:
    """
    Check if character is valid in an HTTP token.

    Examples:
        >>> is_token('a')
        True
        >>> is_token('-')
        True
        >>> is_token('=')
        False
    """
    return len(c) == 1 and (c.isascii() and c.isalnum() or c in _TOKEN_SPECIALS)


class Headers(MutableMapping[str, str]):
    def __init__(self, headers: Optional[Mapping[str, Union[str, List[str]]]] = None) -> None:
        self._headers: Dict[str, List[str]] = {
            k.lower(): ([v] if isinstance(v, str) else v[:]) for k, v in (headers or {}).items()
        }

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, str]]) -> "Headers":
        headers = cls()
        for key, value in pairs:
            headers[key] = value
        return headers

    def multi_items(self) -> List[Tuple[str, str]]:
        return [(key, value) for key, values in self._headers.items() for value in values]

    def get_list(self, key: str) -> Optional[List[str]]:
        return self._headers.get(key.lower(), None)

    def __getitem__(self, key: str) -> str:
        return ", ".join(self._headers[key.lower()])

    def __setitem__(self, key: str, value: str) -> None:
        self._headers.setdefault(key.lower(), []).append(value)

    def __delitem__(self, key: str) -> None:
        del self._headers[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._headers)

    def __len__(self) -> int:
        return len(self._headers)

    def __repr__(self) -> str:
        return repr(self._headers)

    def __eq__(self, other_headers: Any) -> bool:
        return isinstance(other_headers, Headers) and self._headers == other_headers._headers


class CacheControl:
    """
    Parsed Cache-Control directives.

    Directive names are stored lower-cased. A directive given without a value
    maps to ``None``; the first occurrence of a repeated directive wins.
    """

    def __init__(self, directives: Optional[Dict[str, Optional[str]]] = None) -> None:
        self.directives: Dict[str, Optional[str]] = directives if directives is not None else {}

    def has(self, name: str) -> bool:
        return name.lower() in self.directives

    def get(self, name: str) -> Optional[str]:
        return self.directives.get(name.lower())

    def __repr__(self) -> str:
        return f"CacheControl({self.directives!r})"


def split_directives(value: str) -> List[str]:
    """
    Split a header value on commas that are not inside a quoted string.

    Examples:
        >>> split_directives('no-cache="Set-Cookie, Authorization", max-age=0')
        ['no-cache="Set-Cookie, Authorization"', ' max-age=0']
    """
    parts: List[str] = []
    current: List[str] = []
    in_quotes = False
    escaped = False

    for char in value:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\" and in_quotes:
            current.append(char)
            escaped = True
        elif char == '"':
            current.append(char)
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts


def unquote(value: str) -> Optional[str]:
    """
    Unquote an HTTP quoted-string, returning None when the closing quote is missing.

    Examples:
        >>> unquote('"hello"')
        'hello'
        >>> unquote('"broken') is None
        True
    """
    if not value.startswith('"'):
        return value

    buf: List[str] = []
    i = 1
    while i < len(value):
        char = value[i]
        if char == '"':
            return "".join(buf)
        if char == "\\" and i + 1 < len(value):
            buf.append(value[i + 1])
            i += 2
            continue
        buf.append(char)
        i += 1
    return None


def parse_cache_control(value: Optional[str]) -> CacheControl:
    """
    Parse a Cache-Control header value.

    Examples:
        >>> cc = parse_cache_control("public, max-age=3600, must-revalidate")
        >>> cc.get("max-age")
        '3600'
        >>> cc.has("must-revalidate")
        True
        >>> parse_cache_control('private="Set-Cookie"').get("private")
        'Set-Cookie'
    """
    directives: Dict[str, Optional[str]] = {}
    if not value:
        return CacheControl(directives)

    for part in split_directives(value):
        name, sep, raw_value = part.partition("=")
        name = name.strip().lower()

        if not name or not all(is_token(c) for c in name):
            continue

        directive_value: Optional[str] = None
        if sep:
            directive_value = unquote(raw_value.strip())
            if directive_value is None:
                # Quote mismatch, skip the directive
                continue

        directives.setdefault(name, directive_value)

    return CacheControl(directives)
