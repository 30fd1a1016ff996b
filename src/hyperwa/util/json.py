from __future__ import annotations

import base64
import dataclasses
import json
from typing import Any

# Shape used by Baileys' BufferJSON, kept so snapshots stay readable by JS tooling.
BUFFER_TYPE = "Buffer"


def _encode_buffer(data: bytes) -> dict[str, str]:
    return {"type": BUFFER_TYPE, "data": base64.b64encode(data).decode("ascii")}


def _is_buffer(obj: dict[str, Any]) -> bool:
    return obj.get("type") == BUFFER_TYPE and isinstance(obj.get("data"), str)


def _default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return _encode_buffer(bytes(obj))
    # `dataclasses.is_dataclass()` is true for both instances and dataclass *types*.
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _object_hook(obj: dict[str, Any]) -> Any:
    if _is_buffer(obj):
        return base64.b64decode(obj["data"].encode("ascii"))
    return obj


def dumps(obj: Any, *, indent: int | None = None) -> str:
    """JSON serialize with Buffer encoding for bytes values."""

    return json.dumps(obj, default=_default, indent=indent, ensure_ascii=False)


def loads(data: str | bytes) -> Any:
    """JSON deserialize, reviving Buffer objects back into bytes."""

    return json.loads(data, object_hook=_object_hook)


def clone(obj: Any) -> Any:
    """Deep copy through the codec; the result shares nothing with `obj`."""

    return loads(dumps(obj))


def to_document(obj: Any) -> Any:
    """
    Convert `obj` into plain JSON types suitable for a document store.

    Bytes stay in Buffer form (no revival), so the stored document is identical
    to what `dumps` would write to disk.
    """

    return json.loads(dumps(obj))


def from_document(obj: Any) -> Any:
    """Inverse of `to_document`: revive Buffer objects found anywhere in `obj`."""

    if isinstance(obj, dict):
        if _is_buffer(obj):
            return base64.b64decode(obj["data"].encode("ascii"))
        return {k: from_document(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [from_document(v) for v in obj]
    return obj
