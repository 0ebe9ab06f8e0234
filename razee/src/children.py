from __future__ import annotations

import copy
import json
import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from razee.src.kube import KubeResourceMeta, KubeResponse
from razee.src.metrics import METRICS
from razee.src.objects import (
    IMPERSONATE_USER_KEY,
    LAST_APPLIED_ANNOTATION,
    MODE_LABEL,
    PARENT_LINK_ANNOTATION,
    RECONCILE_LABEL,
    get_path,
    reconcile_fields,
    set_path,
)

if TYPE_CHECKING:
    from razee.src.lifecycle import ReconcileCycle

CHILD_FINALIZER = "children.compositecontroller.deploy.razee.io"
MULTIPLE_PARENTS = "Multiple Parents"

APPLY = "Apply"
STRATEGIC_MERGE_PATCH = "StrategicMergePatch"
ADDITIVE_MERGE_PATCH = "AdditiveMergePatch"
ENSURE_EXISTS = "EnsureExists"
MODES = {mode.lower(): mode for mode in (APPLY, STRATEGIC_MERGE_PATCH, ADDITIVE_MERGE_PATCH, ENSURE_EXISTS)}


class ChildCleanupError(RuntimeError):
    """Raised when one or more recorded children could not be deleted or detached."""

    def __init__(self, failures: list[dict[str, Any]]) -> None:
        links = ", ".join(str(failure.get("selfLink")) for failure in failures)
        super().__init__(f"failed to clean up {len(failures)} child resource(s): {links}")
        self.failures = failures


class ChildApplyError(RuntimeError):
    """Raised by :class:`CompositeHandler` when a desired child could not be applied."""

    def __init__(self, spec: Mapping[str, Any], response: KubeResponse) -> None:
        body = response.body if isinstance(response.body, Mapping) else {}
        kind = get_path(body, "details.kind") or spec.get("kind")
        group = get_path(body, "details.group") or spec.get("apiVersion")
        name = get_path(body, "details.name") or get_path(spec, "metadata.name")
        super().__init__(
            f'{kind}.{group} "{name}" status {response.status_code} {body.get("reason", "")}.. see logs for details'
        )
        self.response = response


def status_failure(code: int, reason: str, message: str, details: dict[str, Any]) -> KubeResponse:
    """Build a synthetic ``Status`` failure response, as the API server would."""
    return KubeResponse(
        status_code=code,
        body={
            "kind": "Status",
            "apiVersion": "v1",
            "metadata": {},
            "status": "Failure",
            "message": message,
            "reason": reason,
            "details": details,
            "code": code,
        },
    )


def halted_response(details: dict[str, Any]) -> KubeResponse:
    return status_failure(
        409,
        "Conflict",
        "Parent changed during this cycle; child not applied",
        details,
    )


class ChildReconciler:
    """Apply a parent's declared children and reconcile the ones it stopped declaring.

    Children applied during the cycle are kept in ``applied`` and persisted in
    the parent's ``status.children`` keyed by the child's self-link.  Children
    present in status at cycle start but not applied this cycle are deleted
    (reconcile ``true``) or detached from the parent (reconcile ``false``).
    """

    def __init__(self, cycle: ReconcileCycle) -> None:
        self.cycle = cycle
        self.logger = cycle.logger
        self.applied: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    @property
    def reconcile_default(self) -> str:
        return self.cycle.settings.reconcile_default

    def apply_child(self, spec: Mapping[str, Any]) -> KubeResponse:
        """Apply one declared child; non-2xx outcomes are returned, not raised."""
        child = copy.deepcopy(dict(spec))
        api_version = child.get("apiVersion")
        kind = child.get("kind")
        name = get_path(child, "metadata.name")
        namespace = get_path(child, "metadata.namespace")
        child_uri = f"{api_version}/{kind}/{f'namespace/{namespace}/' if namespace else ''}{name}"
        details = {"apiVersion": f"{api_version}", "kind": f"{kind}", "uri": child_uri}
        if not self.cycle.proceed:
            self.logger.info("applyChild %s skipped, cycle halted", child_uri)
            return halted_response(details)
        self.logger.info("applyChild %s", child_uri)

        if not api_version or not kind:
            return status_failure(
                400,
                "BadRequest",
                f"Invalid kubernetes resource, 'kind: {kind}' and 'apiVersion: {api_version}' must not be empty",
                details,
            )

        items = child.get("items")
        if api_version.lower() == "v1" and kind.lower() == "list" and isinstance(items, list):
            first: KubeResponse | None = None
            for item in items:
                if not self.cycle.proceed:
                    return halted_response(details)
                response = self.apply_child(item)
                if not response.ok:
                    return response
                first = first or response
            return first or KubeResponse(status_code=200, body={"kind": "List", "apiVersion": "v1", "items": []})

        if not name:
            return status_failure(
                400,
                "BadRequest",
                f"Invalid kubernetes resource, 'metadata.name: {name}' must not be empty",
                details,
            )

        krm = self.cycle.kube_class.get_kube_resource_meta(api_version, kind, "update")
        if krm is None:
            return status_failure(
                404,
                "NotFound",
                f"Unable to find kubernetes resource matching: {api_version}/{kind}",
                details,
            )

        impersonate_user = self.cycle.impersonate_user
        if impersonate_user:
            krm = krm.impersonate(impersonate_user)

        labels = get_path(child, "metadata.labels") or {}
        reconcile = str(labels.get(RECONCILE_LABEL, self.reconcile_default)).lower()
        mode = MODES.get(str(labels.get(MODE_LABEL, APPLY)).lower(), APPLY)
        if not namespace and krm.namespaced:
            namespace = self.cycle.namespace
            set_path(child, ["metadata", "namespace"], namespace)
        set_path(child, ["metadata", "annotations", PARENT_LINK_ANNOTATION], self.cycle.self_link)
        child_uri = krm.uri(name=name, namespace=namespace)

        if mode == ENSURE_EXISTS:
            response = self.ensure_exists(krm, child)
        else:
            response = self.apply(krm, child, mode)

        if not response.ok:
            METRICS.child_applies_total.labels(mode=mode, outcome="failure").inc()
            self.logger.warning("applyChild error: %s -- %s", child_uri, response.status_code)
            return response
        if response.body == MULTIPLE_PARENTS:
            METRICS.child_applies_total.labels(mode=mode, outcome="skipped").inc()
            self.logger.warning("Child already managed by another parent. Skipping %s", child_uri)
            return response

        METRICS.child_applies_total.labels(mode=mode, outcome="success").inc()
        record: dict[str, Any] = {"uid": get_path(response.body, "metadata.uid"), RECONCILE_LABEL: reconcile}
        if impersonate_user:
            record[IMPERSONATE_USER_KEY] = impersonate_user
        if not self.add_child(child_uri, record):
            self.logger.warning("applyChild %s: parent changed before the child was recorded in status", child_uri)
        self.logger.info("applyChild %s %s complete: %s", mode, response.status_code, child_uri)
        return response

    def apply_children(self, specs: list[Mapping[str, Any]]) -> list[KubeResponse]:
        """Apply *specs* concurrently; responses come back in input order."""
        if not specs:
            return []
        workers = min(self.cycle.settings.child_concurrency, len(specs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="razee-child") as pool:
            return list(pool.map(self.apply_child, specs))

    def add_child(self, self_link: str, record: dict[str, Any]) -> bool:
        with self._lock:
            self.applied[self_link] = record
        return self.cycle.patch_self({"status": {"children": {self_link: record}}}, status=True)

    def _forget_child(self, self_link: str) -> None:
        self.cycle.patch_self({"status": {"children": {self_link: None}}}, status=True)

    def apply(self, krm: KubeResourceMeta, obj: dict[str, Any], mode: str = APPLY) -> KubeResponse:
        """Client-side three-way merge apply of *obj*.

        Fields recorded in the last-applied annotation but missing from *obj*
        are nulled so the merge patch removes them from the live resource
        (``AdditiveMergePatch`` keeps them).  Lists are replaced wholesale.
        """
        name = get_path(obj, "metadata.name")
        namespace = get_path(obj, "metadata.namespace")
        uri = krm.uri(name=name, namespace=namespace)
        self.logger.debug("Apply %s", uri)

        current = krm.get(name, namespace)
        self.logger.debug("Get %s %s", current.status_code, uri)
        if current.status_code == 404:
            set_path(obj, ["metadata", "annotations", LAST_APPLIED_ANNOTATION], json.dumps(obj))
            response = krm.post(obj)
            self.logger.debug("Post %s %s", response.status_code, uri)
            return response
        if not current.ok:
            return current

        live = current.body if isinstance(current.body, dict) else {}
        owner = get_path(live, ["metadata", "annotations", PARENT_LINK_ANNOTATION])
        desired_owner = get_path(obj, ["metadata", "annotations", PARENT_LINK_ANNOTATION])
        if owner and desired_owner and owner != desired_owner:
            self.logger.warning("%s is owned by %s, not %s", uri, owner, desired_owner)
            return KubeResponse(status_code=200, body=MULTIPLE_PARENTS)

        original = copy.deepcopy(obj)
        last_applied_raw = get_path(live, ["metadata", "annotations", LAST_APPLIED_ANNOTATION])
        if not last_applied_raw:
            self.logger.warning("%s: No %s found", uri, LAST_APPLIED_ANNOTATION)
        elif mode != ADDITIVE_MERGE_PATCH:
            try:
                last_applied = json.loads(last_applied_raw)
            except ValueError:
                self.logger.warning("%s: unparseable %s, skipping field removal", uri, LAST_APPLIED_ANNOTATION)
            else:
                if isinstance(last_applied, Mapping):
                    reconcile_fields(obj, last_applied)
        set_path(obj, ["metadata", "annotations", LAST_APPLIED_ANNOTATION], json.dumps(original))

        if mode == STRATEGIC_MERGE_PATCH:
            response = krm.strategic_merge_patch(name, namespace, obj)
            self.logger.debug("strategicMergePatch %s %s", response.status_code, uri)
            if response.status_code != 415:
                return response
        response = krm.merge_patch(name, namespace, obj)
        self.logger.debug("mergePatch %s %s", response.status_code, uri)
        return response

    def ensure_exists(self, krm: KubeResourceMeta, obj: dict[str, Any]) -> KubeResponse:
        """Create *obj* when absent; never modify an existing resource."""
        name = get_path(obj, "metadata.name")
        namespace = get_path(obj, "metadata.namespace")
        current = krm.get(name, namespace)
        if current.ok or current.status_code != 404:
            return current

        response = krm.post(obj)
        if response.status_code == 409:
            return KubeResponse(status_code=200, body=response.body)
        return response

    def _delete_child(self, self_link: str, record: Mapping[str, Any]) -> None:
        krm = self.cycle.krm.impersonate(record.get(IMPERSONATE_USER_KEY))
        response = krm.request("DELETE", self_link)
        if response.status_code not in (200, 202, 404):
            raise RuntimeError(f"child {self_link} could not be deleted (RC: {response.status_code}): {response.body}")
        self.logger.info("child deleted %s (RC: %s)", self_link, response.status_code)

    def _detach_child(self, self_link: str, record: Mapping[str, Any]) -> None:
        parent_krm = self.cycle.krm.impersonate(record.get(IMPERSONATE_USER_KEY))
        current = parent_krm.request("GET", self_link)
        if current.status_code == 404:
            self.logger.info("child %s no longer exists", self_link)
            return
        if not current.ok or not isinstance(current.body, dict):
            raise RuntimeError(f"child {self_link} could not be read (RC: {current.status_code}): {current.body}")

        live = current.body
        krm = self.cycle.kube_class.get_kube_resource_meta(live.get("apiVersion"), live.get("kind"), "update")
        if krm is None:
            self.logger.warning("unable to get 'update' api for child %s", self_link)
            return
        if record.get(IMPERSONATE_USER_KEY):
            krm = krm.impersonate(record[IMPERSONATE_USER_KEY])
        response = krm.merge_patch(
            get_path(live, "metadata.name"),
            get_path(live, "metadata.namespace"),
            {"metadata": {"annotations": {PARENT_LINK_ANNOTATION: None}}},
        )
        if not response.ok:
            raise RuntimeError(f"child {self_link} could not be detached (RC: {response.status_code}): {response.body}")
        self.logger.info("child detached %s (RC: %s)", self_link, response.status_code)

    def _remove_child(self, self_link: str, record: Mapping[str, Any]) -> str:
        reconcile = str(record.get(RECONCILE_LABEL, self.reconcile_default)).lower()
        if reconcile == "true":
            self.logger.info("%s no longer applied.. Reconcile true.. removing from cluster", self_link)
            self._delete_child(self_link, record)
            return "delete"
        self.logger.info("%s no longer applied.. Reconcile %s.. leaving on cluster", self_link, reconcile)
        self._detach_child(self_link, record)
        return "detach"

    def reconcile_children(self) -> None:
        """Delete or detach children recorded at cycle start but not applied this cycle."""
        old_children = get_path(self.cycle.initial_object, ["status", "children"]) or {}
        with self._lock:
            new_children = dict(self.applied)
        if len(new_children) < len(old_children):
            self.logger.info(
                "Less children found this cycle then previously (%d < %d) for %s",
                len(new_children),
                len(old_children),
                self.cycle.self_link,
            )

        detach_failures: list[dict[str, Any]] = []
        for self_link, record in old_children.items():
            if self_link in new_children or not self.cycle.proceed:
                continue
            record = dict(record or {})
            reconcile = str(record.get(RECONCILE_LABEL, self.reconcile_default)).lower()
            action = "delete" if reconcile == "true" else "detach"
            try:
                self._remove_child(self_link, record)
            except Exception as exc:
                METRICS.children_removed_total.labels(action=action, outcome="failure").inc()
                if action == "detach":
                    # Left in status so the next cycle retries the detach.
                    self.logger.error("Failed to detach child %s: %s", self_link, exc)
                    detach_failures.append(
                        {"selfLink": self_link, "action": "detach", "state": "fail", "error": str(exc)}
                    )
                    continue
                # Kept as a child so the next cycle retries the delete.
                failed = {**record, "action": "delete", "state": "fail", "error": str(exc)}
                self.logger.error("Failed to delete child %s: %s", self_link, exc)
                self.add_child(self_link, failed)
                continue
            METRICS.children_removed_total.labels(action=action, outcome="success").inc()
            self._forget_child(self_link)
        if detach_failures:
            raise ChildCleanupError(detach_failures)

    def cleanup_children(self) -> None:
        """Delete or detach every child recorded in status; raise if any fails."""
        children = get_path(self.cycle.object, ["status", "children"]) or {}
        failures: list[dict[str, Any]] = []
        for self_link, record in dict(children).items():
            record = dict(record or {})
            try:
                action = self._remove_child(self_link, record)
            except Exception as exc:
                self.logger.warning("finalizer: failed to remove child %s: %s", self_link, exc)
                METRICS.children_removed_total.labels(action="cleanup", outcome="failure").inc()
                failures.append({"selfLink": self_link, "action": "delete", "state": "fail", "error": str(exc)})
                continue
            METRICS.children_removed_total.labels(action=action, outcome="success").inc()
            self._forget_child(self_link)
        if failures:
            raise ChildCleanupError(failures)

