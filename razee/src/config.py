from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DEFAULT_LOCK_CLUSTER_PATH = "./config/lock-cluster"


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration loaded at startup.

    Attributes:
        watch_namespace:    Namespace of watched parent resources (``""`` means all).
        parent_api_version: apiVersion of the parent kind tracked by ``python -m razee.src``.
        parent_kind:        Kind of the parent resources.
        reconcile_default:  Reconcile flag applied to children without their own label.
        child_concurrency:  Upper bound on concurrent child applications within one cycle.
        event_workers:      Upper bound on concurrently processed watch events.
        cache_max_entries:  Resource cache size bound.
        cache_ttl_seconds:  Resource cache entry lifetime.
        lock_cluster_path:  File whose content ``true`` pauses all reconciliation.
        health_port:        Port of the health/metrics server.
        log_level:          Root log level name.
    """

    watch_namespace: str = ""
    parent_api_version: str = "deploy.razee.io/v1alpha2"
    parent_kind: str = "MustacheTemplate"
    reconcile_default: str = "true"
    child_concurrency: int = 5
    event_workers: int = 8
    cache_max_entries: int = 1000
    cache_ttl_seconds: int = 300
    lock_cluster_path: str = DEFAULT_LOCK_CLUSTER_PATH
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Build :class:`ControllerSettings` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``:    namespace of watched parents (all namespaces).
        ``PARENT_API_VERSION``: parent apiVersion (``deploy.razee.io/v1alpha2``).
        ``PARENT_KIND``:        parent kind (``MustacheTemplate``).
        ``RECONCILE_DEFAULT``:  default child reconcile flag (``true``).
        ``CHILD_CONCURRENCY``:  concurrent child applications (``5``).
        ``EVENT_WORKERS``:      concurrent event processing (``8``).
        ``CACHE_MAX_ENTRIES``:  resource cache bound (``1000``).
        ``CACHE_TTL_SECONDS``:  resource cache TTL (``300``).
        ``LOCK_CLUSTER_PATH``:  cluster lock file (``./config/lock-cluster``).
        ``HEALTH_PORT``:        health/metrics port (``8080``).
        ``LOG_LEVEL``:          log level (``INFO``).
    """
    values = env if env is not None else os.environ

    parent_api_version = values.get("PARENT_API_VERSION", "deploy.razee.io/v1alpha2").strip()
    parent_kind = values.get("PARENT_KIND", "MustacheTemplate").strip()
    if not parent_api_version or not parent_kind:
        raise ValueError("PARENT_API_VERSION and PARENT_KIND must be non-empty strings")

    reconcile_default = values.get("RECONCILE_DEFAULT", "true").strip().lower()
    if reconcile_default not in {"true", "false"}:
        raise ValueError(f"RECONCILE_DEFAULT must be 'true' or 'false', got: {reconcile_default!r}")

    return ControllerSettings(
        watch_namespace=values.get("WATCH_NAMESPACE", "").strip(),
        parent_api_version=parent_api_version,
        parent_kind=parent_kind,
        reconcile_default=reconcile_default,
        child_concurrency=env_int("CHILD_CONCURRENCY", 5, minimum=1, env=values),
        event_workers=env_int("EVENT_WORKERS", 8, minimum=1, env=values),
        cache_max_entries=env_int("CACHE_MAX_ENTRIES", 1000, minimum=1, env=values),
        cache_ttl_seconds=env_int("CACHE_TTL_SECONDS", 300, minimum=0, env=values),
        lock_cluster_path=values.get("LOCK_CLUSTER_PATH", DEFAULT_LOCK_CLUSTER_PATH),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
    )


def cluster_locked(path: str) -> bool:
    """Return True when the cluster lock file exists and reads ``true``."""
    lock_file = Path(path)
    if not lock_file.is_file():
        return False
    try:
        return lock_file.read_text(encoding="utf-8").strip().lower() == "true"
    except OSError:
        LOGGER.warning("Unable to read cluster lock file %s", path, exc_info=True)
        return False
