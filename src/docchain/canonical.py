from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _jcs_value(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Flatten models, enums, timestamps and sets into values rfc8785 accepts.

    Enums, str-enums included, are unwrapped before the scalar check. Set
    members are emitted in sorted order.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, Enum):
        return _jcs_value(value.value)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _jcs_value(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k.value if isinstance(k, Enum) else k): _jcs_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_jcs_value(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=repr)
        return items
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"{type(value).__name__} has no canonical JSON form")


def to_canonical_json(value: Any) -> str:
    """Return the RFC 8785 canonical JSON text of ``value``.

    Raises:
        TypeError: If ``value`` holds something with no JSON form.
    """
    return rfc8785.dumps(_jcs_value(value)).decode("utf-8")


def content_hash(text: str) -> str:
    """Return the hex sha256 digest of a UTF-8 document body."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def fingerprint(value: Any) -> str:
    """Return the sha256 of the canonical JSON form of ``value``.

    Equal structures hash equally regardless of key order, which makes the
    digest usable for snapshot integrity and metadata digests.
    """
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
