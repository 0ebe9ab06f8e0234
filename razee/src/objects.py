from __future__ import annotations

import copy
import json
from collections.abc import Mapping, Sequence
from hashlib import sha256
from typing import Any

DATA_HASH_ANNOTATION = "deploy.razee.io/data-hash"
LAST_APPLIED_ANNOTATION = "kapitan.razee.io/last-applied-configuration"
PARENT_LINK_ANNOTATION = "deploy.razee.io.parent"
RECONCILE_LABEL = "deploy.razee.io/Reconcile"
MODE_LABEL = "deploy.razee.io/mode"
LAST_SOURCE_UPDATE_LABEL = "deploy.razee.io/last-source-update"
IMPERSONATE_USER_KEY = "Impersonate-User"

_MISSING = object()


def get_path(obj: Any, path: str | Sequence[str], default: Any = None) -> Any:
    """Walk *obj* along *path* (dotted string or key sequence) and return the value.

    Returns *default* as soon as a segment is missing or a non-mapping is hit.
    Dotted strings split on ``.``; pass a sequence for keys that contain dots
    (annotation and label names).
    """
    keys = path.split(".") if isinstance(path, str) else path
    current = obj
    for key in keys:
        if not isinstance(current, Mapping):
            return default
        current = current.get(key, _MISSING)
        if current is _MISSING:
            return default
    return current


def has_path(obj: Any, path: str | Sequence[str]) -> bool:
    return get_path(obj, path, _MISSING) is not _MISSING


def set_path(obj: dict[str, Any], path: str | Sequence[str], value: Any) -> None:
    """Set *value* at *path*, creating intermediate dicts as needed."""
    keys = path.split(".") if isinstance(path, str) else list(path)
    current = obj
    for key in keys[:-1]:
        child = current.get(key)
        if not isinstance(child, dict):
            child = {}
            current[key] = child
        current = child
    current[keys[-1]] = value


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(value: Any) -> str:
    """Return a SHA-256 hex digest of *value* serialized as canonical JSON."""
    return sha256(canonical_json(value).encode("utf-8")).hexdigest()


def default_data_to_hash(resource: Mapping[str, Any]) -> dict[str, Any]:
    """Return the change-relevant part of a resource: its labels and spec."""
    return {
        "labels": get_path(resource, "metadata.labels"),
        "spec": resource.get("spec"),
    }


def compute_data_hash(resource: Mapping[str, Any]) -> str:
    return content_hash(default_data_to_hash(resource))


def reconcile_fields(
    config: dict[str, Any],
    last_applied: Mapping[str, Any],
    parent_path: tuple[str, ...] = (),
) -> None:
    """Null fields that were previously applied but are absent from *config*.

    Merge-patching with the result removes those fields from the live object.
    Nested mappings are walked recursively; lists are compared as opaque
    values and therefore replaced wholesale by the patch.
    """
    for key, previous in last_applied.items():
        path = (*parent_path, key)
        if not has_path(config, path):
            set_path(config, path, None)
        elif isinstance(previous, Mapping) and isinstance(get_path(config, path), dict):
            reconcile_fields(config, previous, path)


def deep_merge(target: Any, source: Any) -> Any:
    """Deep-merge *source* into a copy of *target*.

    Mappings merge key by key, lists are concatenated, anything else is
    replaced by *source*.
    """
    if isinstance(target, Mapping) and isinstance(source, Mapping):
        merged = copy.deepcopy(dict(target))
        for key, value in source.items():
            if key in merged:
                merged[key] = deep_merge(merged[key], value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged
    if isinstance(target, list) and isinstance(source, list):
        return copy.deepcopy(target) + copy.deepcopy(source)
    return copy.deepcopy(source)
