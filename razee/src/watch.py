from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from razee.src.kube import KubeResourceMeta
from razee.src.metrics import METRICS
from razee.src.objects import get_path

LOGGER = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30
ACCESS_DENIED = frozenset({401, 403})

EventCallback = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True)
class WatchOptions:
    """What to watch: one kind, optionally narrowed to a namespace and label selector."""

    krm: KubeResourceMeta
    namespace: str | None = None
    label_selector: str | None = None
    timeout_seconds: int = 300

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.krm.api_version, self.krm.kind, self.namespace or "", self.label_selector or "")

    @property
    def self_link(self) -> str:
        uri = self.krm.uri(namespace=self.namespace, watch=True)
        if self.label_selector:
            uri = f"{uri}&labelSelector={self.label_selector}"
        return uri


class WatchHandle:
    """One long-running list-then-watch loop delivering raw events to a callback.

    The loop runs in a daemon thread.  Existing resources are delivered as
    ``ADDED`` events after every (re-)list, then the stream continues from the
    list's resourceVersion.  Transient failures reconnect with jittered
    exponential backoff capped at 30 s; an expired resourceVersion (410)
    triggers a re-list; 401/403 stop the loop for good.
    """

    def __init__(
        self,
        options: WatchOptions,
        on_event: EventCallback,
        logger: logging.Logger | None = None,
    ) -> None:
        self.options = options
        self.on_event = on_event
        self.logger = logger or LOGGER
        self.ready = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._watcher_lock = threading.Lock()
        self._active_watcher: watch.Watch | None = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        return self.options.key

    @property
    def self_link(self) -> str:
        return self.options.self_link

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run_forever,
            name=f"razee-watch-{self.options.krm.kind}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        with self._watcher_lock:
            if self._active_watcher is not None:
                self._active_watcher.stop()
        if timeout is not None and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _deliver(self, raw: Mapping[str, Any]) -> None:
        try:
            self.on_event(raw)
        except Exception:
            self.logger.exception("Watch callback failed for %s", self.self_link)

    def _list(self) -> str | None:
        """List current resources, deliver them as ADDED and return the list resourceVersion."""
        krm = self.options.krm
        response = krm.list(namespace=self.options.namespace, label_selector=self.options.label_selector)
        if not response.ok:
            raise ApiException(status=response.status_code, reason=str(response.body))
        body = response.body if isinstance(response.body, dict) else {}
        for item in body.get("items") or []:
            item.setdefault("apiVersion", krm.api_version)
            item.setdefault("kind", krm.kind)
            self._deliver({"type": "ADDED", "object": item})
        return get_path(body, "metadata.resourceVersion")

    def _initial_list(self) -> tuple[bool, str | None]:
        backoff_seconds = 1
        while not self._stop.is_set():
            try:
                resource_version = self._list()
                self.ready.set()
                self.logger.info("Starting watch %s from resourceVersion %s", self.self_link, resource_version)
                return True, resource_version
            except ApiException as exc:
                if exc.status in ACCESS_DENIED:
                    self.logger.error(
                        "Kubernetes API access denied during initial list of %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.self_link,
                        exc.status,
                    )
                    return False, None
                self.logger.exception("Initial list of %s failed", self.self_link)
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", self.self_link)
                METRICS.watch_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            self._stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
        return False, None

    def run_forever(self) -> None:
        listed, resource_version = self._initial_list()
        if not listed:
            self.ready.clear()
            return

        backoff_seconds = 1
        stream_count = 0
        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                stream_count += 1
                stream = self.options.krm.watch_stream(
                    watcher,
                    namespace=self.options.namespace,
                    label_selector=self.options.label_selector,
                    resource_version=resource_version,
                    timeout_seconds=self.options.timeout_seconds,
                )
                for event in stream:
                    if self._stop.is_set():
                        break
                    raw_object = event.get("raw_object")
                    if not isinstance(raw_object, dict):
                        continue
                    resource_version = get_path(raw_object, "metadata.resourceVersion") or resource_version
                    self._deliver(event)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: etcd compacted past our resourceVersion, re-list and resume.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired for %s, re-listing", self.self_link)
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if relist_exc.status in ACCESS_DENIED:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list of %s (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                self.self_link,
                                relist_exc.status,
                            )
                            break
                        self.logger.exception("Failed to re-list %s after 410", self.self_link)
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in ACCESS_DENIED:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.self_link,
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    break

                self.logger.exception("Kubernetes API watch error for %s", self.self_link)
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.self_link)
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()


class WatchManager:
    """Registry of running watches, at most one per :attr:`WatchOptions.key`.

    Thread-safety contract: all methods may be called from any thread,
    including from inside a watch callback.
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        handle_factory: Callable[..., WatchHandle] = WatchHandle,
    ) -> None:
        self.logger = logger or LOGGER
        self._handle_factory = handle_factory
        self._watches: dict[tuple[str, str, str, str], WatchHandle] = {}
        self._lock = threading.Lock()

    def ensure_watch(self, options: WatchOptions, on_event: EventCallback) -> WatchHandle:
        """Start a watch for *options* unless an equivalent one is running; return it."""
        with self._lock:
            handle = self._watches.get(options.key)
            if handle is not None:
                return handle
            handle = self._handle_factory(options, on_event, logger=self.logger)
            self._watches[options.key] = handle
            METRICS.active_watches.set(len(self._watches))
        self.logger.info("Starting watch %s", handle.self_link)
        handle.start()
        return handle

    def remove_watch(self, handle: WatchHandle) -> bool:
        with self._lock:
            if self._watches.get(handle.key) is not handle:
                return False
            del self._watches[handle.key]
            METRICS.active_watches.set(len(self._watches))
        self.logger.info("Removing watch %s", handle.self_link)
        handle.stop()
        return True

    def get_all_watches(self) -> dict[str, WatchHandle]:
        with self._lock:
            return {handle.self_link: handle for handle in self._watches.values()}

    def stop_all(self, timeout: float | None = None) -> None:
        with self._lock:
            handles = list(self._watches.values())
            self._watches.clear()
            METRICS.active_watches.set(0)
        for handle in handles:
            handle.stop(timeout=timeout)
