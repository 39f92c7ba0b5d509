"""Order-independent canonical form and digest of task arguments.

The same digest keys the response cache and the loop detector, so two
argument sets that differ only in key order (or in keys explicitly set to
``None``) always address the same entry.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any

DIGEST_VERSION = 1


def canonicalize_arguments(arguments: Mapping[str, Any]) -> str:
    """Serialize an argument set deterministically.

    Keys are sorted at every nesting level, ``None`` values are dropped, and
    values JSON cannot express are rendered through ``_json_default``.
    """

    return json.dumps(
        _strip_none(arguments),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def task_digest(capability: str, arguments: Mapping[str, Any]) -> str:
    """Return the fixed-length sha256 hex digest of capability + arguments."""

    material = f"v{DIGEST_VERSION}|{_capability_name(capability)}|{canonicalize_arguments(arguments)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def _capability_name(capability: str) -> str:
    if isinstance(capability, Enum):
        return str(capability.value)
    return str(capability)


def _strip_none(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _strip_none(item) for key, item in value.items() if item is not None}
    if isinstance(value, (list, tuple)):
        return [_strip_none(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_strip_none(item) for item in value), key=repr)
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)
