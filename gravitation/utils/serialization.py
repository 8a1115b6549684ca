"""Utility helpers for encoding payloads that cross a host boundary."""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> bytes:
    """Encode *obj* as compact JSON bytes."""

    return orjson.dumps(obj)


def loads(data: bytes | str) -> Any:
    """Decode JSON *data* produced by :func:`dumps` or any peer."""

    return orjson.loads(data)


def wire_copy(obj: Any) -> Any:
    """Return *obj* as the receiving side of a connection would see it."""

    return loads(dumps(obj))


__all__ = ["dumps", "loads", "wire_copy"]
