from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from razee.src.cache import ResourceCache
from razee.src.config import ControllerSettings, cluster_locked
from razee.src.envs import EnvResolver
from razee.src.events import EventType, ResourceEvent
from razee.src.kube import KubeClass, KubeResourceMeta, parse_self_link, simple_link
from razee.src.metrics import METRICS
from razee.src.objects import DATA_HASH_ANNOTATION, LAST_SOURCE_UPDATE_LABEL, content_hash, default_data_to_hash, get_path
from razee.src.watch import WatchHandle, WatchManager, WatchOptions

LOGGER = logging.getLogger(__name__)

WatchKey = tuple[str, str]


class Role(str, Enum):
    PARENT = "parent"
    SOURCE = "source"


@dataclass
class DependencyEntry:
    """Parents interested in one referenced resource."""

    watch_key: WatchKey
    parents: set[str] = field(default_factory=set)
    last_update_timestamp: str = ""
    resource_version: str | int = -1


@dataclass
class WatchEntry:
    handle: WatchHandle
    sources: list[str] = field(default_factory=list)


def _epoch_ms(clock: Callable[[], float]) -> str:
    return str(int(clock() * 1000))


def is_newer(resource_version: Any, recorded: Any) -> bool:
    """Compare resourceVersions numerically, falling back to inequality for opaque values."""
    if resource_version is None:
        return False
    try:
        return int(resource_version) > int(recorded)
    except (TypeError, ValueError):
        return str(resource_version) != str(recorded)


class DependencyRegistry:
    """Process-wide table of referenced resources and the watches covering them.

    ``entries`` maps a source simple-link to the parents referencing it;
    ``watches`` holds one watch per ``(apiVersion, kind)`` with the sources
    it covers.  A watch is torn down once its last source loses its last
    parent.

    Thread-safety contract: every method takes the registry lock, so parent
    and source events may be processed from any number of threads.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self.entries: dict[str, DependencyEntry] = {}
        self.watches: dict[WatchKey, WatchEntry] = {}
        self._parent_sources: dict[str, set[str]] = {}
        self._lock = threading.RLock()

    def _update_gauges(self) -> None:
        METRICS.tracked_sources.set(len(self.entries))

    def knows_parent(self, parent: str) -> bool:
        with self._lock:
            return parent in self._parent_sources

    def register_parent(
        self,
        parent: str,
        sources: Mapping[WatchKey, list[str]],
        start_watch: Callable[[str, str], WatchHandle | None],
    ) -> list[WatchHandle]:
        """Record *parent* as interested in *sources*; return watches that became unused.

        Sources the parent referenced before but no longer does are released.
        """
        with self._lock:
            previous = self._parent_sources.get(parent, set())
            current: set[str] = set()
            now = _epoch_ms(self.clock)
            for watch_key, links in sources.items():
                watch_entry = self.watches.get(watch_key)
                if watch_entry is None:
                    handle = start_watch(*watch_key)
                    if handle is None:
                        continue
                    watch_entry = WatchEntry(handle=handle)
                    self.watches[watch_key] = watch_entry
                for link in links:
                    if link not in watch_entry.sources:
                        watch_entry.sources.append(link)
                    entry = self.entries.get(link)
                    if entry is None:
                        entry = DependencyEntry(watch_key=watch_key, last_update_timestamp=now)
                        self.entries[link] = entry
                    entry.parents.add(parent)
                    current.add(link)

            if current:
                self._parent_sources[parent] = current
            else:
                self._parent_sources.pop(parent, None)
            released = self._release(parent, previous - current)
            self._update_gauges()
            return released

    def remove_parent(self, parent: str) -> list[WatchHandle]:
        """Forget *parent*; return watches that became unused."""
        with self._lock:
            links = self._parent_sources.pop(parent, None)
            if links is None:
                links = {link for link, entry in self.entries.items() if parent in entry.parents}
            released = self._release(parent, links)
            self._update_gauges()
            return released

    def _release(self, parent: str, links: set[str]) -> list[WatchHandle]:
        released: list[WatchHandle] = []
        for link in links:
            entry = self.entries.get(link)
            if entry is None:
                continue
            entry.parents.discard(parent)
            if entry.parents:
                continue
            del self.entries[link]
            watch_entry = self.watches.get(entry.watch_key)
            if watch_entry is None:
                continue
            if link in watch_entry.sources:
                watch_entry.sources.remove(link)
            if not watch_entry.sources:
                del self.watches[entry.watch_key]
                released.append(watch_entry.handle)
        return released

    def parents_of(self, link: str) -> list[str]:
        with self._lock:
            entry = self.entries.get(link)
            return sorted(entry.parents) if entry is not None else []

    def parents_if_newer(self, link: str, resource_version: Any) -> list[str] | None:
        """Return the parents of *link* when *resource_version* is newer than recorded."""
        with self._lock:
            entry = self.entries.get(link)
            if entry is None or not entry.parents:
                return None
            if not is_newer(resource_version, entry.resource_version):
                return None
            return sorted(entry.parents)

    def record_update(self, link: str, resource_version: Any) -> None:
        with self._lock:
            entry = self.entries.get(link)
            if entry is None:
                return
            if is_newer(resource_version, entry.resource_version):
                entry.resource_version = resource_version
            entry.last_update_timestamp = _epoch_ms(self.clock)


class DependencyTracker:
    """Keep parents informed about changes to the resources they reference.

    Parent events (``role=Role.PARENT``) register or release the parent's
    references and the watches covering them.  Source events
    (``role=Role.SOURCE``, delivered by those watches) invalidate cached reads
    of the source and stamp every interested parent with the
    ``deploy.razee.io/last-source-update`` label, which retriggers the
    parent's own reconcile cycle.
    """

    def __init__(
        self,
        registry: DependencyRegistry,
        watch_manager: WatchManager,
        kube_class: KubeClass,
        parent_krm: KubeResourceMeta,
        cache: ResourceCache | None = None,
        settings: ControllerSettings | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
        data_to_hash: Callable[[Mapping[str, Any]], Any] = default_data_to_hash,
    ) -> None:
        self.registry = registry
        self.watch_manager = watch_manager
        self.kube_class = kube_class
        self.parent_krm = parent_krm
        self.cache = cache
        self.settings = settings or ControllerSettings()
        self.logger = logger or LOGGER
        self.clock = clock
        self.data_to_hash = data_to_hash

    def execute(
        self,
        event: ResourceEvent | Mapping[str, Any],
        role: Role = Role.PARENT,
        source_krm: KubeResourceMeta | None = None,
    ) -> None:
        description = "<unparsed event>"
        try:
            if not isinstance(event, ResourceEvent):
                event = ResourceEvent.from_watch(event)
            description = event.describe()
            if cluster_locked(self.settings.lock_cluster_path):
                self.logger.info("Cluster locked.. skipping %s", description)
                return
            if event.type == EventType.POLLED:
                self.logger.info("POLLED event ignored by dependency tracker: %s", description)
                return
            if role == Role.PARENT:
                self._parent_event(event)
            else:
                self._source_event(event, source_krm)
        except Exception:
            self.logger.exception("Dependency tracking failed for %s %s", role.value, description)

    def _parent_event(self, event: ResourceEvent) -> None:
        parent = self.parent_krm.uri(name=event.name, namespace=event.namespace)
        if event.type == EventType.DELETED:
            self._stop_watches(self.registry.remove_parent(parent))
            return

        stored_hash = get_path(event.object, ["metadata", "annotations", DATA_HASH_ANNOTATION])
        if (
            event.type == EventType.MODIFIED
            and stored_hash
            and stored_hash == content_hash(self.data_to_hash(event.object))
            and self.registry.knows_parent(parent)
        ):
            self.logger.info("No relevant change detected.. skipping %s", event.describe())
            return

        resolver = EnvResolver(
            event.object,
            self.kube_class,
            cache=self.cache,
            impersonate_user=get_path(event.object, "spec.clusterAuth.impersonateUser"),
            logger=self.logger,
        )
        sources = resolver.get_source_simple_links("spec")
        released = self.registry.register_parent(parent, sources, self._start_watch)
        self._stop_watches(released)
        self.logger.debug("%s references %s", parent, sources)

    def _start_watch(self, api_version: str, kind: str) -> WatchHandle | None:
        krm = self.kube_class.get_kube_resource_meta(api_version, kind, "watch")
        if krm is None:
            self.logger.warning("Unable to watch %s/%s; references to it are not tracked", api_version, kind)
            return None
        callback = functools.partial(self.execute, role=Role.SOURCE, source_krm=krm)
        return self.watch_manager.ensure_watch(WatchOptions(krm=krm), callback)

    def _stop_watches(self, handles: list[WatchHandle]) -> None:
        for handle in handles:
            self.watch_manager.remove_watch(handle)

    def _source_event(self, event: ResourceEvent, source_krm: KubeResourceMeta | None) -> None:
        api_version = event.object.get("apiVersion") or (source_krm.api_version if source_krm else None)
        kind = event.object.get("kind") or (source_krm.kind if source_krm else None)
        if not api_version or not kind or not event.name:
            self.logger.warning("Source event without apiVersion, kind or name: %s", event.describe())
            return
        link = simple_link(api_version, kind, event.namespace, event.name)

        if event.type == EventType.DELETED:
            parents = self.registry.parents_of(link)
            self._invalidate(api_version, kind, event.namespace, event.name)
        else:
            parents = self.registry.parents_if_newer(link, event.resource_version)
            if parents is None:
                return
            self._invalidate(api_version, kind, event.namespace, event.name)

        for parent in parents:
            self._notify_parent(parent)
        self.registry.record_update(link, event.resource_version)

    def _invalidate(self, api_version: str, kind: str, namespace: str | None, name: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(api_version, kind, namespace, name)

    def _notify_parent(self, parent: str) -> None:
        namespace, name = parse_self_link(parent)
        patch = {"metadata": {"labels": {LAST_SOURCE_UPDATE_LABEL: _epoch_ms(self.clock)}}}
        response = self.parent_krm.merge_patch(name, namespace, patch)
        if response.ok:
            METRICS.source_notifications_total.labels(outcome="success").inc()
            self.logger.debug("mergePatch %s %s", response.status_code, parent)
        else:
            METRICS.source_notifications_total.labels(outcome="failure").inc()
            self.logger.warning("Failed to notify parent %s: %s %s", parent, response.status_code, response.body)
