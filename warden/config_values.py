"""
Self-describing configuration values.

Every remotely editable setting can be stored either raw (``50``) or wrapped as
``{"value": 50, "name": "pageSize", "description": "...", "type": "number"}``.
The helpers here are the only place that knows about the wrapper shape: build
fields, unwrap them, coerce them to scalars, deep-merge partial updates and
hash documents canonically.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

FIELD_TYPES = ("string", "number", "boolean", "object", "array", "null")


def field_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    return "unknown"


@dataclass(frozen=True)
class ConfigField:
    value: Any
    name: str
    description: str = ""
    type: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": copy.deepcopy(self.value),
            "name": self.name,
            "description": self.description,
            "type": self.type or field_type(self.value),
        }


def make_field(value: Any, name: str, description: str = "") -> Dict[str, Any]:
    return ConfigField(value=value, name=name, description=description).to_dict()


def is_field(obj: Any) -> bool:
    """True when obj is a wrapper: any object carrying a ``value`` key. Extra metadata keys are allowed."""
    return isinstance(obj, Mapping) and "value" in obj


def unwrap(obj: Any) -> Any:
    """Resolve wrapped fields to their effective values, recursing into objects and arrays."""
    if is_field(obj):
        return unwrap(obj["value"])
    if isinstance(obj, Mapping):
        return {key: unwrap(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [unwrap(item) for item in obj]
    return obj


def to_int(value: Any, default: int) -> int:
    value = unwrap(value)
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return default


def to_bool(value: Any, default: bool) -> bool:
    value = unwrap(value)
    if isinstance(value, bool):
        return value
    return default


def to_str(value: Any, default: str) -> str:
    value = unwrap(value)
    if isinstance(value, str):
        return value
    return default


def deep_merge(base: Mapping[str, Any], incoming: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a new dict: nested mappings merge key by key, everything else is replaced."""
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in incoming.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(data: Any) -> str:
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def lookup(data: Mapping[str, Any], path: str) -> Optional[Any]:
    """Resolve a dotted path (``checkIn.interval``) through unwrapped objects."""
    current: Any = unwrap(data)
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current
