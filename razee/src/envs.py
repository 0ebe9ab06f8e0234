from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import Callable, Mapping
from typing import Any

from razee.src.cache import CacheKey, ResourceCache
from razee.src.kube import KubeClass, KubeResourceMeta, simple_link
from razee.src.objects import deep_merge, get_path

LOGGER = logging.getLogger(__name__)

ERR_NODATA = "make sure your data exists in the correct location and is in the expected format."
KIND_MAP = {
    "secretKeyRef": "Secret",
    "secretMapRef": "Secret",
    "configMapRef": "ConfigMap",
    "configMapKeyRef": "ConfigMap",
}
MAP_REFS = ("configMapRef", "secretMapRef", "genericMapRef")
KEY_REFS = ("configMapKeyRef", "secretKeyRef", "genericKeyRef")
DECODED_REFS = frozenset({"secretMapRef", "secretKeyRef"})

_MISSING = object()

StatusLogger = Callable[[str, dict[str, Any]], Any]


class EnvResolutionError(RuntimeError):
    """Raised when a non-optional reference cannot be resolved."""


def decode_base64(value: str) -> str:
    try:
        return base64.b64decode(value).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise EnvResolutionError(f"value is not valid base64: {exc}") from exc


def type_cast(value: Any, type_: str | None) -> Any:
    """Cast a string value to the declared entry type.

    Non-string values pass through untouched; ``None`` stays ``None``.
    """
    if not type_ or value is None or not isinstance(value, str):
        return value
    if type_ == "number":
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError as exc:
                raise EnvResolutionError(f"cannot cast {value!r} to number") from exc
    if type_ == "boolean":
        return value.lower() == "true"
    if type_ == "json":
        try:
            return json.loads(value)
        except ValueError as exc:
            raise EnvResolutionError(f"cannot parse {value!r} as json: {exc}") from exc
    if type_ == "jsonString":
        # Escape once more so a later template render keeps it a string.
        return json.dumps(value)[1:-1]
    if type_ == "base64":
        return base64.b64encode(value.encode("utf-8")).decode("ascii")
    LOGGER.warning("Unknown env type %r; leaving value uncast", type_)
    return value


def label_selector(match_labels: Mapping[str, Any] | None) -> str | None:
    if not match_labels:
        return None
    return ",".join(f"{key}={value}" for key, value in match_labels.items())


def _merge_value(current: Any, value: Any, strategy: str | None) -> Any:
    mergeable = (dict, list)
    if strategy == "merge" and isinstance(current, mergeable) and isinstance(value, mergeable):
        return deep_merge(current, value)
    return value


class EnvResolver:
    """Resolve a resource's ``env``/``envFrom`` declarations into a flat mapping.

    ``envFrom`` entries import every key of a referenced ConfigMap, Secret or
    arbitrary resource (``genericMapRef``).  ``env`` entries are either a
    literal ``value`` or a ``valueFrom`` lookup of one key, optionally across
    every resource matching ``matchLabels``.  Secret values are base64-decoded.

    Single-resource reads go through the shared :class:`ResourceCache`; label
    selector queries always hit the API.  Optional references that fail
    degrade to their ``default`` (or are omitted) and record a ``warn``
    status-log entry; anything else raises :class:`EnvResolutionError`.
    """

    def __init__(
        self,
        obj: Mapping[str, Any],
        kube_class: KubeClass,
        cache: ResourceCache | None = None,
        status_log: StatusLogger | None = None,
        impersonate_user: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.obj = obj
        self.namespace = get_path(obj, "metadata.namespace")
        self.kube_class = kube_class
        self.cache = cache
        self.impersonate_user = impersonate_user
        self.logger = logger or LOGGER
        self._status_log = status_log

    def _record_warning(self, message: str) -> None:
        if self._status_log is None:
            self.logger.debug("No status logger configured; not recording: %s", message)
            return
        self._status_log("warn", {"controller": "FetchEnvs", "message": message})

    def _section(self, path: str) -> Mapping[str, Any]:
        path = re.sub(r"(\.env(From)?)?\.*$", "", path.strip(".")).strip(".")
        section = get_path(self.obj, path, {}) if path else self.obj
        return section if isinstance(section, Mapping) else {}

    def _client(self, api_version: str, kind: str | None, verb: str) -> KubeResourceMeta | None:
        if not kind:
            return None
        krm = self.kube_class.get_kube_resource_meta(api_version, kind, verb)
        if krm is not None and self.impersonate_user:
            krm = krm.impersonate(self.impersonate_user)
        return krm

    def _fetch_resource(
        self,
        api_version: str,
        kind: str | None,
        namespace: str | None,
        name: str | None,
    ) -> tuple[dict[str, Any] | None, str]:
        """Return ``(resource, error)``; *resource* is ``None`` when unavailable."""
        krm = self._client(api_version, kind, "get")
        if krm is None:
            return None, f"unable to find kubernetes resource matching {api_version}/{kind}"
        if not name:
            return None, "reference has no name"

        def fetch() -> dict[str, Any] | None:
            response = krm.get(name, namespace)
            if response.ok and isinstance(response.body, dict):
                return response.body
            if response.status_code == 404:
                return None
            raise EnvResolutionError(
                f"GET {krm.uri(name=name, namespace=namespace)} returned {response.status_code}"
            )

        try:
            if self.cache is None:
                resource = fetch()
            else:
                key = CacheKey.build(api_version, kind, namespace, name, identity=self.impersonate_user)
                resource = self.cache.get_or_fetch(key, fetch)
        except EnvResolutionError as exc:
            return None, str(exc)
        if resource is None:
            return None, ERR_NODATA
        return resource, ERR_NODATA

    def _resolve_map_ref(self, entry: Mapping[str, Any]) -> dict[str, Any]:
        ref_name = next((name for name in MAP_REFS if entry.get(name)), None)
        if ref_name is None:
            raise EnvResolutionError(
                f"oneOf configMapRef, secretMapRef, genericMapRef must be defined. Got: {json.dumps(entry, default=str)}"
            )
        ref = entry[ref_name]
        optional = bool(entry.get("optional"))
        api_version = ref.get("apiVersion", "v1")
        kind = ref.get("kind", KIND_MAP.get(ref_name))
        namespace = ref.get("namespace", self.namespace)
        name = ref.get("name")

        resource, error = self._fetch_resource(api_version, kind, namespace, name)
        data = (resource or {}).get("data")
        if not data:
            message = f"envFrom.{ref_name}.{api_version}.{kind}.{name}.data not found: {error}"
            if not optional:
                raise EnvResolutionError(message)
            self.logger.warning(message)
            self._record_warning(message)
            return {}

        if ref_name in DECODED_REFS:
            return {key: decode_base64(value) if isinstance(value, str) else value for key, value in data.items()}
        return dict(data)

    def _aggregate(
        self,
        items: list[Mapping[str, Any]],
        key: str,
        type_: str | None,
        strategy: str | None,
        decode: bool,
    ) -> Any:
        output: Any = _MISSING
        for item in items:
            raw = get_path(item, ["data", key])
            if decode and isinstance(raw, str):
                raw = decode_base64(raw)
            value = type_cast(raw, type_)
            if value is None:
                continue
            output = value if output is _MISSING else _merge_value(output, value, strategy)
        return output

    def _resolve_key_ref(self, entry: Mapping[str, Any], ref_name: str) -> Any:
        ref = entry["valueFrom"][ref_name]
        optional = bool(entry.get("optional"))
        default = entry.get("default", _MISSING)
        strategy = entry.get("overrideStrategy")
        key = ref.get("key")
        type_ = ref.get("type")
        match_labels = ref.get("matchLabels")
        api_version = ref.get("apiVersion", "v1")
        kind = ref.get("kind", KIND_MAP.get(ref_name))
        namespace = ref.get("namespace", self.namespace)
        decode = ref_name in DECODED_REFS

        error = ERR_NODATA
        value: Any = _MISSING
        if match_labels:
            krm = self._client(api_version, kind, "list")
            if krm is None:
                error = f"unable to find kubernetes resource matching {api_version}/{kind}"
            else:
                response = krm.list(namespace=namespace, label_selector=label_selector(match_labels))
                if response.ok and isinstance(response.body, dict):
                    try:
                        value = self._aggregate(response.body.get("items") or [], key, type_, strategy, decode)
                    except EnvResolutionError as exc:
                        error = str(exc)
                else:
                    error = f"list {api_version}/{kind} returned {response.status_code}"
        else:
            resource, error = self._fetch_resource(api_version, kind, namespace, ref.get("name"))
            raw = get_path(resource, ["data", key]) if resource is not None else None
            if raw is not None:
                try:
                    value = type_cast(decode_base64(raw) if decode and isinstance(raw, str) else raw, type_)
                except EnvResolutionError as exc:
                    error = str(exc)

        if value is _MISSING or value is None:
            described = json.dumps(dict(ref), sort_keys=True, default=str)
            if default is _MISSING:
                message = f"failed to get env {described}, optional={str(optional).lower()}: {error}"
                if not optional:
                    raise EnvResolutionError(message)
                self.logger.warning(message)
                self._record_warning(message)
                return _MISSING
            message = f"failed to get env '{described}', Using default value: {default}"
            self.logger.warning(message)
            self._record_warning(message)
            value = type_cast(default, type_)
        return value

    def _resolve_env(self, entry: Mapping[str, Any]) -> Any:
        value_from = entry.get("valueFrom")
        if not value_from:
            if "value" in entry:
                return entry["value"]
            raise EnvResolutionError(
                f"oneOf genericKeyRef, configMapKeyRef, secretKeyRef must be defined. Got: {json.dumps(entry, default=str)}"
            )
        ref_name = next((name for name in KEY_REFS if value_from.get(name)), None)
        if ref_name is None:
            raise EnvResolutionError(
                f"oneOf genericKeyRef, configMapKeyRef, secretKeyRef must be defined. Got: {json.dumps(entry, default=str)}"
            )
        return self._resolve_key_ref(entry, ref_name)

    def get(self, path: str = "spec") -> dict[str, Any]:
        """Resolve ``<path>.envFrom`` then ``<path>.env`` into one mapping.

        Later entries override earlier ones; entries with
        ``overrideStrategy: merge`` deep-merge object values instead.
        """
        section = self._section(path)
        result: dict[str, Any] = {}
        for entry in section.get("envFrom") or []:
            result.update(self._resolve_map_ref(entry))

        for entry in section.get("env") or []:
            value = self._resolve_env(entry)
            name = entry.get("name")
            if value is _MISSING or name is None:
                continue
            current = result.get(name)
            result[name] = _merge_value(current, value, entry.get("overrideStrategy"))
        return result

    def get_source_simple_links(self, path: str = "spec") -> dict[tuple[str, str], list[str]]:
        """Return the simple-links of every resource referenced under *path*.

        Grouped by ``(apiVersion, kind)`` so the dependency tracker can hold one
        watch per kind.  Label-selector lookups name no single resource and are
        skipped.
        """
        section = self._section(path)
        refs: list[Mapping[str, Any]] = []
        for entry in section.get("envFrom") or []:
            ref_name = next((name for name in MAP_REFS if entry.get(name)), None)
            if ref_name is not None:
                refs.append({"kind": KIND_MAP.get(ref_name), **entry[ref_name]})
        for entry in section.get("env") or []:
            value_from = entry.get("valueFrom") or {}
            ref_name = next((name for name in KEY_REFS if value_from.get(name)), None)
            if ref_name is not None and not value_from[ref_name].get("matchLabels"):
                refs.append({"kind": KIND_MAP.get(ref_name), **value_from[ref_name]})

        links: dict[tuple[str, str], list[str]] = {}
        for ref in refs:
            kind = ref.get("kind")
            name = ref.get("name")
            if not kind or not name:
                continue
            api_version = ref.get("apiVersion", "v1")
            link = simple_link(api_version, kind, ref.get("namespace", self.namespace), name)
            group = links.setdefault((api_version, kind), [])
            if link not in group:
                group.append(link)
        return links
