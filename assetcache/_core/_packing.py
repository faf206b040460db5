from __future__ import annotations

from typing import Dict, Union, cast, overload

import msgpack
from typing_extensions import Literal

from assetcache._core.models import CacheEntry

# Anything unpack() may raise on corrupted or foreign data.
UNPACK_ERRORS = (ValueError, TypeError, KeyError, msgpack.UnpackException)


@overload
def pack(
    value: CacheEntry,
    /,
    kind: Literal["entry"],
) -> bytes: ...


@overload
def pack(
    value: Dict[str, int],
    /,
    kind: Literal["recency"],
) -> bytes: ...


def pack(
    value: Union[CacheEntry, Dict[str, int]],
    /,
    kind: Literal["entry", "recency"],
) -> bytes:
    if kind == "entry":
        assert isinstance(value, CacheEntry)
        return cast(
            bytes,
            msgpack.packb(
                {
                    "key": value.key,
                    "status_code": value.status_code,
                    "headers": [list(pair) for pair in value.headers],
                    "body": value.body,
                    "stored_at": value.stored_at,
                },
                use_bin_type=True,
            ),
        )
    elif kind == "recency":
        assert isinstance(value, dict)
        return cast(bytes, msgpack.packb({str(key): int(stamp) for key, stamp in value.items()}, use_bin_type=True))
    assert False, f"Unexpected kind: {kind}"


@overload
def unpack(
    value: bytes,
    /,
    kind: Literal["entry"],
) -> CacheEntry: ...


@overload
def unpack(
    value: bytes,
    /,
    kind: Literal["recency"],
) -> Dict[str, int]: ...


def unpack(
    value: bytes,
    /,
    kind: Literal["entry", "recency"],
) -> Union[CacheEntry, Dict[str, int]]:
    data = msgpack.unpackb(value, raw=False)
    if kind == "entry":
        return CacheEntry(
            key=data["key"],
            status_code=int(data["status_code"]),
            headers=tuple((str(name), str(header_value)) for name, header_value in data["headers"]),
            body=bytes(data["body"]),
            stored_at=float(data["stored_at"]),
        )
    elif kind == "recency":
        if not isinstance(data, dict):
            raise ValueError("Recency ledger is not a mapping")
        return {str(key): int(stamp) for key, stamp in data.items()}
    assert False, f"Unexpected kind: {kind}"
