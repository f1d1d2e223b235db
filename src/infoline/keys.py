"""Cache key construction and resource-family matching."""

from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

_SAFE = "-_.~,"


def _encode(value: Any) -> str:
    """Serialize a query value so equal values always encode identically."""
    if isinstance(value, Mapping):
        inner = ",".join(
            f"{_encode(k)}:{_encode(v)}"
            for k, v in sorted(value.items(), key=lambda item: str(item[0]))
        )
        return "{" + inner + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(v) for v in value) + "]"
    if isinstance(value, (set, frozenset)):
        return "[" + ",".join(sorted(_encode(v) for v in value)) + "]"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return quote(str(value), safe=_SAFE)


def make_cache_key(resource: str, query: Mapping[str, Any] | None = None) -> str:
    """Build the cache key for a read of ``resource`` with ``query``.

    Parameter order never matters:

        make_cache_key("schools", {"region_id": "r1", "limit": 10})
        == make_cache_key("schools", {"limit": 10, "region_id": "r1"})
        == "schools?limit=10&region_id=r1"

    Parameters whose value is ``None`` are left out.
    """
    if not resource or "?" in resource:
        raise ValueError(f"Invalid resource name: {resource!r}")
    if not query:
        return resource
    parts = [
        f"{quote(str(name), safe=_SAFE)}={_encode(value)}"
        for name, value in sorted(query.items(), key=lambda item: str(item[0]))
        if value is not None
    ]
    if not parts:
        return resource
    return f"{resource}?{'&'.join(parts)}"


def resource_of(key: str) -> str:
    """Resource family a cache key belongs to."""
    return key.split("?", 1)[0]


def belongs_to(key: str, resource: str) -> bool:
    """Check whether ``key`` is a read of ``resource`` (exact family match)."""
    return resource_of(key) == resource
