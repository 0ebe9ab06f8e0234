from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any

from razee.src.cache import ResourceCache
from razee.src.children import CHILD_FINALIZER, ChildApplyError, ChildReconciler
from razee.src.config import ControllerSettings, cluster_locked
from razee.src.envs import EnvResolver
from razee.src.events import EventType, ResourceEvent, UnrecognizedEventError
from razee.src.kube import KubeClass, KubeResourceMeta
from razee.src.metrics import METRICS
from razee.src.objects import DATA_HASH_ANNOTATION, content_hash, default_data_to_hash, get_path, has_path

LOGGER = logging.getLogger(__name__)

CONFLICT_STATUSES = frozenset({409, 422})

# Resources whose finalizer cleanup is currently running in this process.
_CLEANUP_RUNNING: set[str] = set()
_CLEANUP_LOCK = threading.Lock()


class SelfPatchError(RuntimeError):
    """Raised when a patch of the managed resource fails for a reason other than a conflict."""

    def __init__(self, status_code: int, body: Any) -> None:
        super().__init__(f"self patch failed with status {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class ReconcileHandler:
    """Business logic plugged into a :class:`Reconciler`.

    Override the hooks that matter for the managed kind.  ``finalizer`` is the
    token this handler owns on managed resources (``None`` disables the
    finalizer protocol) and ``manages_children`` makes finalizer cleanup
    delete or detach every child recorded in status first.
    """

    finalizer: str | None = None
    manages_children: bool = False

    @property
    def name(self) -> str:
        return type(self).__name__

    def added(self, cycle: ReconcileCycle) -> None:
        cycle.logger.info("added() %s: no action taken", cycle.self_link)

    def modified(self, cycle: ReconcileCycle) -> None:
        self.added(cycle)

    def deleted(self, cycle: ReconcileCycle) -> None:
        cycle.logger.info("deleted() %s: no action taken", cycle.self_link)

    def finalizer_cleanup(self, cycle: ReconcileCycle) -> None:
        # Must tolerate being called again after a successful cleanup whose
        # finalizer removal did not land.
        cycle.logger.info("finalizer cleanup %s: no action taken", cycle.self_link)

    def data_to_hash(self, obj: Mapping[str, Any]) -> Any:
        return default_data_to_hash(obj)


class ReconcileCycle:
    """State for one event's pass through the lifecycle.

    ``object`` always holds the most recent version of the managed resource
    seen by this cycle: every successful self-patch replaces it with the API
    server's response.  ``proceed`` turns ``False`` as soon as a self-patch
    observes that the resource changed underneath the cycle, or that deletion
    started, after which no further self-patches are sent.

    Self-patches are serialized by a per-cycle lock so children may be applied
    from several threads.
    """

    def __init__(self, reconciler: Reconciler, event: ResourceEvent) -> None:
        self.reconciler = reconciler
        self.event = event
        self.krm: KubeResourceMeta = reconciler.krm
        self.kube_class: KubeClass = reconciler.kube_class
        self.settings: ControllerSettings = reconciler.settings
        self.cache: ResourceCache | None = reconciler.cache
        self.logger: logging.Logger = reconciler.logger

        self.object: dict[str, Any] = copy.deepcopy(event.object)
        self.initial_object: dict[str, Any] = event.object
        self.proceed = True
        self._deleting_at_start = has_path(event.object, "metadata.deletionTimestamp")
        self._expected_rv: str | None = get_path(event.object, "metadata.resourceVersion")
        self._lock = threading.RLock()
        self._asserted_logs: set[tuple[str, str]] = set()
        self.children = ChildReconciler(self)

    @property
    def name(self) -> str | None:
        return get_path(self.object, "metadata.name")

    @property
    def namespace(self) -> str | None:
        return get_path(self.object, "metadata.namespace")

    @property
    def self_link(self) -> str:
        return self.krm.uri(name=self.name, namespace=self.namespace)

    @property
    def impersonate_user(self) -> str | None:
        return get_path(self.object, "spec.clusterAuth.impersonateUser") or None

    def env_resolver(self) -> EnvResolver:
        return EnvResolver(
            self.object,
            self.kube_class,
            cache=self.cache,
            status_log=self.update_status_log,
            impersonate_user=self.impersonate_user,
            logger=self.logger,
        )

    def _halt(self, reason: str) -> None:
        if self.proceed:
            self.logger.info("%s: %s.. stopping execution", self.self_link, reason)
            METRICS.aborted_total.labels(kind=self.krm.kind).inc()
        self.proceed = False

    def patch_self(self, patch: dict[str, Any] | list[dict[str, Any]], status: bool = False) -> bool:
        """Patch the managed resource with the cycle's resourceVersion as precondition.

        A dict is sent as a JSON merge patch, a list as a JSON patch.  Returns
        ``self.proceed`` after the call.
        """
        if not isinstance(patch, (dict, list)):
            raise TypeError("Patch requires a dict or a list")

        with self._lock:
            if not self.proceed:
                self.logger.debug("%s: cycle halted, dropping self patch", self.self_link)
                return False

            expected = self._expected_rv
            if isinstance(patch, list):
                operations = list(patch)
                if expected:
                    operations.insert(0, {"op": "test", "path": "/metadata/resourceVersion", "value": expected})
                response = self.krm.json_patch(self.name, self.namespace, operations, status=status)
            else:
                body = copy.deepcopy(patch)
                if expected:
                    metadata = body.setdefault("metadata", {})
                    if isinstance(metadata, dict):
                        metadata["resourceVersion"] = expected
                response = self.krm.merge_patch(self.name, self.namespace, body, status=status)

            if response.status_code in CONFLICT_STATUSES:
                self._halt(f"resourceVersion {expected} is no longer current")
                return False
            if response.status_code == 404:
                self._halt("resource no longer exists")
                return False
            if not response.ok:
                raise SelfPatchError(response.status_code, response.body)

            if isinstance(response.body, dict):
                self.object = response.body
                self._expected_rv = get_path(response.body, "metadata.resourceVersion")
            if not self._deleting_at_start and has_path(self.object, "metadata.deletionTimestamp"):
                self._halt("deletionTimestamp appeared during self update")
            return self.proceed

    def update_status_log(self, level: str, entry: dict[str, Any]) -> bool:
        """Record *entry* under ``status.razee-logs[level]`` and keep it this cycle."""
        log_hash = content_hash(entry)
        with self._lock:
            self._asserted_logs.add((level, log_hash))
        return self.patch_self({"status": {"razee-logs": {level: {log_hash: entry}}}}, status=True)

    def reconcile_status_logs(self) -> bool:
        """Null every stored log entry that was not re-asserted during this cycle."""
        with self._lock:
            stored = get_path(self.object, ["status", "razee-logs"]) or {}
            if not isinstance(stored, Mapping):
                return self.patch_self({"status": {"razee-logs": None}}, status=True)

            patch: dict[str, Any] = {}
            for level, entries in stored.items():
                hashes = list(entries) if isinstance(entries, Mapping) else []
                kept = [log_hash for log_hash in hashes if (level, log_hash) in self._asserted_logs]
                if not kept:
                    patch[level] = None
                elif len(kept) < len(hashes):
                    patch[level] = {log_hash: None for log_hash in hashes if log_hash not in kept}

            if not patch:
                return self.proceed
            if len(patch) == len(stored) and all(value is None for value in patch.values()):
                return self.patch_self({"status": {"razee-logs": None}}, status=True)
            return self.patch_self({"status": {"razee-logs": patch}}, status=True)

    def describe(self) -> str:
        return f"{self.event.type.value} {self.self_link} rv={self.event.resource_version}"


class Reconciler:
    """Drive managed resources of one kind through the reconcile lifecycle.

    ``execute`` runs one cycle per event: finalizer protocol, change
    suppression through the data-hash annotation, the handler's business
    logic, and garbage collection of status logs.  Errors never escape a
    cycle; they are logged and surfaced as an ``error`` status-log entry.

    A Reconciler holds no per-resource state and may run cycles for
    different events concurrently.
    """

    def __init__(
        self,
        krm: KubeResourceMeta,
        kube_class: KubeClass,
        handler: ReconcileHandler,
        settings: ControllerSettings | None = None,
        cache: ResourceCache | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.krm = krm
        self.kube_class = kube_class
        self.handler = handler
        self.settings = settings or ControllerSettings()
        self.cache = cache
        self.logger = logger or LOGGER

    def execute(self, event: ResourceEvent) -> ReconcileCycle:
        cycle = ReconcileCycle(self, event)
        METRICS.cycles_total.labels(kind=self.krm.kind, event=event.type.value).inc()
        self.logger.info("%s event received %s", event.type.value, cycle.describe())

        try:
            if cluster_locked(self.settings.lock_cluster_path):
                cycle.update_status_log("info", {"cluster-locked": True})
            elif event.type in (EventType.ADDED, EventType.POLLED):
                self._added(cycle, self.handler.added)
            elif event.type == EventType.MODIFIED:
                self._added(cycle, self.handler.modified)
            elif event.type == EventType.DELETED:
                self.handler.deleted(cycle)
                return cycle
            else:
                raise UnrecognizedEventError(f"Unrecognized event type {event.type!r}")
        except Exception as exc:
            self._handle_error(cycle, exc)

        try:
            cycle.reconcile_status_logs()
        except Exception:
            self.logger.exception("Failed to reconcile status logs of %s", cycle.self_link)
        return cycle

    def _added(self, cycle: ReconcileCycle, business_logic: Callable[[ReconcileCycle], None]) -> None:
        deleting = self.finalizer(cycle)
        if not cycle.proceed or deleting:
            return

        data_hash = content_hash(self.handler.data_to_hash(cycle.object))
        stored_hash = get_path(cycle.object, ["metadata", "annotations", DATA_HASH_ANNOTATION])
        if stored_hash != data_hash:
            self.logger.debug("%s: data hash changed %s => %s", cycle.self_link, stored_hash, data_hash)
            if not cycle.patch_self({"metadata": {"annotations": {DATA_HASH_ANNOTATION: data_hash}}}):
                return
        elif cycle.event.type == EventType.POLLED:
            # Polls are the resync path: they retry cycles that failed after the hash was stored.
            self.logger.debug("%s: unchanged but polled, running business logic", cycle.self_link)
        else:
            self.logger.info("No relevant change detected.. skipping %s", cycle.describe())
            METRICS.suppressed_total.labels(kind=self.krm.kind).inc()
            return
        business_logic(cycle)

    def finalizer(self, cycle: ReconcileCycle) -> bool:
        """Apply the finalizer protocol; return whether deletion was requested."""
        deleting = has_path(cycle.object, "metadata.deletionTimestamp")
        token = self.handler.finalizer
        if not token:
            return deleting

        finalizers = list(get_path(cycle.object, "metadata.finalizers") or [])
        if deleting:
            if token in finalizers:
                self._finalizer_cleanup(cycle, token)
        elif token not in finalizers:
            cycle.patch_self([{"op": "add", "path": "/metadata/finalizers", "value": [*finalizers, token]}])
        return deleting

    def _finalizer_cleanup(self, cycle: ReconcileCycle, token: str) -> None:
        key = cycle.self_link
        with _CLEANUP_LOCK:
            if key in _CLEANUP_RUNNING:
                self.logger.debug("Finalizer cleanup already running for %s", key)
                return
            _CLEANUP_RUNNING.add(key)

        try:
            if not cycle.patch_self({"status": {"finalizer": "running"}}, status=True):
                return
            self.logger.debug("FinalizerCleanup %s", key)
            try:
                if self.handler.manages_children:
                    cycle.children.cleanup_children()
                self.handler.finalizer_cleanup(cycle)
            except Exception as exc:
                # Token stays in place; the next event for this resource retries.
                self.logger.exception("Finalizer cleanup failed for %s", key)
                METRICS.finalizer_cleanups_total.labels(kind=self.krm.kind, outcome="failure").inc()
                cycle.update_status_log("error", {"controller": "Finalizer", "message": str(exc)})
                cycle.patch_self({"status": {"finalizer": None}}, status=True)
                return

            if not cycle.patch_self({"status": {"finalizer": None}}, status=True):
                return
            remaining = [f for f in get_path(cycle.object, "metadata.finalizers") or [] if f != token]
            cycle.patch_self([{"op": "add", "path": "/metadata/finalizers", "value": remaining}])
            METRICS.finalizer_cleanups_total.labels(kind=self.krm.kind, outcome="success").inc()
            self.logger.debug("FinalizerCleanup completed %s", key)
        finally:
            with _CLEANUP_LOCK:
                _CLEANUP_RUNNING.discard(key)

    def _handle_error(self, cycle: ReconcileCycle, exc: Exception) -> None:
        self.logger.exception("Error while reconciling %s", cycle.describe())
        METRICS.cycle_errors_total.labels(kind=self.krm.kind).inc()
        try:
            cycle.update_status_log("error", {"controller": self.handler.name, "message": str(exc)})
        except Exception:
            self.logger.exception("Failed to record error in status of %s", cycle.self_link)


class CompositeHandler(ReconcileHandler):
    """Handler for controllers that render a list of child resources.

    Subclasses implement :meth:`desired_children`; each cycle applies every
    child, failing the cycle when any child is rejected, and then reconciles
    children that are no longer declared.
    """

    finalizer: str | None = CHILD_FINALIZER
    manages_children = True

    def desired_children(self, cycle: ReconcileCycle) -> list[Mapping[str, Any]]:
        raise NotImplementedError

    def added(self, cycle: ReconcileCycle) -> None:
        specs = self.desired_children(cycle)
        if not specs:
            cycle.update_status_log("warn", {"controller": self.name, "message": "No templates found to apply"})
        responses = cycle.children.apply_children(specs)
        if not cycle.proceed:
            return
        for spec, response in zip(specs, responses):
            if not response.ok:
                cycle.logger.error("Failed to apply child: %s", response.to_dict())
                raise ChildApplyError(spec, response)
        if cycle.proceed:
            cycle.children.reconcile_children()
