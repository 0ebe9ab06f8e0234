from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from razee.src.cache import ResourceCache
from razee.src.config import ControllerSettings, load_settings
from razee.src.dependencies import DependencyRegistry, DependencyTracker
from razee.src.events import EventDispatcher
from razee.src.health import start_health_server
from razee.src.kube import KubeClass, build_dynamic_client, load_kube_configuration
from razee.src.metrics import METRICS
from razee.src.watch import WatchManager, WatchOptions

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def run(settings: ControllerSettings, shutdown_event: threading.Event) -> None:
    """Track parent references until *shutdown_event* is set.

    Raises ``RuntimeError`` when the parent kind cannot be discovered.
    """
    kube_class = KubeClass(build_dynamic_client())
    parent_krm = kube_class.get_kube_resource_meta(settings.parent_api_version, settings.parent_kind, "watch")
    if parent_krm is None:
        raise RuntimeError(f"Unable to discover {settings.parent_api_version}/{settings.parent_kind}")

    cache = ResourceCache(max_entries=settings.cache_max_entries, ttl_seconds=settings.cache_ttl_seconds)
    watch_manager = WatchManager()
    tracker = DependencyTracker(
        registry=DependencyRegistry(),
        watch_manager=watch_manager,
        kube_class=kube_class,
        parent_krm=parent_krm,
        cache=cache,
        settings=settings,
    )
    dispatcher = EventDispatcher(tracker.execute, max_workers=settings.event_workers)
    parent_watch = watch_manager.ensure_watch(
        WatchOptions(krm=parent_krm, namespace=settings.watch_namespace or None),
        dispatcher.dispatch,
    )
    health_server = start_health_server(ready=parent_watch.ready, port=settings.health_port, watches=watch_manager)

    try:
        while not shutdown_event.wait(timeout=5):
            if not parent_watch.running:
                logging.getLogger(__name__).error("Parent watch stopped; terminating process")
                break
    finally:
        watch_manager.stop_all(timeout=5)
        dispatcher.shutdown(wait=True)
        health_server.shutdown()


def main() -> None:
    """Entrypoint: configure logging and track parent references until signalled."""
    settings = load_settings()
    configure_logging(settings.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    run(settings, shutdown_event)
    logging.getLogger(__name__).info("Controller stopped")


if __name__ == "__main__":
    main()
