from __future__ import annotations

import copy
import itertools
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from razee.src.config import ControllerSettings
from razee.src.kube import JSON_PATCH, MERGE_PATCH, STRATEGIC_MERGE_PATCH, KubeResponse


@dataclass(frozen=True)
class FakeKind:
    api_version: str
    kind: str
    plural: str
    namespaced: bool = True

    @property
    def prefix(self) -> str:
        if "/" in self.api_version:
            return f"/apis/{self.api_version}"
        return f"/api/{self.api_version}"


DEFAULT_KINDS = (
    FakeKind("v1", "ConfigMap", "configmaps"),
    FakeKind("v1", "Secret", "secrets"),
    FakeKind("v1", "Namespace", "namespaces", namespaced=False),
    FakeKind("apps/v1", "Deployment", "deployments"),
    FakeKind("deploy.razee.io/v1alpha2", "MustacheTemplate", "mustachetemplates"),
)


def json_merge(target: Any, patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = json_merge(result.get(key), value)
    return result


def _pointer(path: str) -> list[str]:
    return [part.replace("~1", "/").replace("~0", "~") for part in path.lstrip("/").split("/")]


class JsonPatchTestFailed(Exception):
    pass


def apply_json_patch(obj: dict[str, Any], operations: list[dict[str, Any]]) -> dict[str, Any]:
    result = copy.deepcopy(obj)
    for operation in operations:
        *parents, last = _pointer(operation["path"])
        container: Any = result
        for part in parents:
            container = container[int(part)] if isinstance(container, list) else container.setdefault(part, {})
        op = operation["op"]
        if op == "test":
            current = container[int(last)] if isinstance(container, list) else container.get(last)
            if current != operation.get("value"):
                raise JsonPatchTestFailed(operation["path"])
        elif op in ("add", "replace"):
            if isinstance(container, list):
                if last == "-":
                    container.append(copy.deepcopy(operation["value"]))
                else:
                    container.insert(int(last), copy.deepcopy(operation["value"]))
            else:
                container[last] = copy.deepcopy(operation["value"])
        elif op == "remove":
            if isinstance(container, list):
                del container[int(last)]
            else:
                del container[last]
        else:
            raise ValueError(f"unsupported op {op}")
    return result


def _matches(labels: dict[str, str], selector: str | None) -> bool:
    if not selector:
        return True
    for requirement in selector.split(","):
        key, _, value = requirement.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeCluster:
    """In-memory API server: CRUD, merge/JSON patch, resourceVersion preconditions
    and finalizer-gated deletion.  Every request is recorded in ``calls``."""

    def __init__(self, kinds: tuple[FakeKind, ...] = DEFAULT_KINDS) -> None:
        self.kinds = {(kind.api_version, kind.kind): kind for kind in kinds}
        self.objects: dict[tuple[str, str, str, str], dict[str, Any]] = {}
        self.calls: list[dict[str, Any]] = []
        self.failures: dict[tuple[str, str], int] = {}
        self.strategic_unsupported: set[str] = set()
        self._rv = itertools.count(100)
        self._uid = itertools.count(1)
        self._lock = threading.RLock()

    # -- helpers used by tests ------------------------------------------------

    def add(self, obj: dict[str, Any]) -> dict[str, Any]:
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("uid", f"uid-{next(self._uid)}")
        metadata["resourceVersion"] = str(next(self._rv))
        self.objects[self._key_of(obj)] = obj
        return copy.deepcopy(obj)

    def get(self, api_version: str, kind: str, namespace: str | None, name: str) -> dict[str, Any] | None:
        obj = self.objects.get((api_version, kind, namespace or "", name))
        return copy.deepcopy(obj) if obj is not None else None

    def fail(self, method: str, uri: str, status: int) -> None:
        self.failures[(method, uri)] = status

    def calls_for(self, method: str, uri: str | None = None) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method and (uri is None or c["uri"] == uri)]

    def uri_for(self, api_version: str, kind: str, namespace: str | None = None, name: str | None = None) -> str:
        fake_kind = self.kinds[(api_version, kind)]
        path = fake_kind.prefix
        if fake_kind.namespaced and namespace:
            path = f"{path}/namespaces/{namespace}"
        path = f"{path}/{fake_kind.plural}"
        if name:
            path = f"{path}/{name}"
        return path

    # -- request handling -----------------------------------------------------

    def _key_of(self, obj: dict[str, Any]) -> tuple[str, str, str, str]:
        metadata = obj.get("metadata") or {}
        fake_kind = self.kinds[(obj["apiVersion"], obj["kind"])]
        namespace = metadata.get("namespace", "") if fake_kind.namespaced else ""
        return (obj["apiVersion"], obj["kind"], namespace or "", metadata["name"])

    def _parse(self, uri: str) -> tuple[FakeKind, str, str | None, bool]:
        path = uri.split("?", 1)[0].rstrip("/")
        subresource = path.endswith("/status")
        if subresource:
            path = path[: -len("/status")]
        for fake_kind in self.kinds.values():
            if not path.startswith(fake_kind.prefix + "/"):
                continue
            parts = path[len(fake_kind.prefix) + 1 :].split("/")
            namespace = ""
            if fake_kind.namespaced and len(parts) >= 3 and parts[0] == "namespaces":
                namespace, parts = parts[1], parts[2:]
            if parts and parts[0] == fake_kind.plural and len(parts) <= 2:
                return fake_kind, namespace, parts[1] if len(parts) == 2 else None, subresource
        raise KeyError(uri)

    def request(
        self,
        method: str,
        uri: str,
        body: Any = None,
        content_type: str | None = None,
        label_selector: str | None = None,
        impersonate_user: str | None = None,
    ) -> KubeResponse:
        with self._lock:
            self.calls.append(
                {
                    "method": method,
                    "uri": uri,
                    "body": copy.deepcopy(body),
                    "content_type": content_type,
                    "impersonate_user": impersonate_user,
                }
            )
            if (method, uri) in self.failures:
                return KubeResponse(status_code=self.failures[(method, uri)], body={"reason": "Injected"})
            fake_kind, namespace, name, subresource = self._parse(uri)
            key = (fake_kind.api_version, fake_kind.kind, namespace, name or "")
            current = self.objects.get(key)

            if method == "GET" and name is None:
                items = [
                    copy.deepcopy(obj)
                    for (api_version, kind, obj_ns, _), obj in sorted(self.objects.items())
                    if (api_version, kind) == (fake_kind.api_version, fake_kind.kind)
                    and (not namespace or obj_ns == namespace)
                    and _matches((obj.get("metadata") or {}).get("labels") or {}, label_selector)
                ]
                return KubeResponse(200, {"metadata": {"resourceVersion": str(next(self._rv))}, "items": items})
            if method == "GET":
                return KubeResponse(200, copy.deepcopy(current)) if current else KubeResponse(404, {"reason": "NotFound"})
            if method == "POST":
                obj = copy.deepcopy(body)
                obj.setdefault("metadata", {})
                if fake_kind.namespaced:
                    obj["metadata"].setdefault("namespace", namespace)
                if self._key_of(obj) in self.objects:
                    return KubeResponse(409, {"reason": "AlreadyExists"})
                return KubeResponse(201, self.add(obj))
            if current is None:
                return KubeResponse(404, {"reason": "NotFound"})
            if method == "DELETE":
                if current["metadata"].get("finalizers"):
                    current["metadata"].setdefault("deletionTimestamp", "2026-01-01T00:00:00Z")
                    current["metadata"]["resourceVersion"] = str(next(self._rv))
                    return KubeResponse(200, copy.deepcopy(current))
                del self.objects[key]
                return KubeResponse(200, copy.deepcopy(current))
            if method == "PATCH":
                return self._patch(key, current, body, content_type, subresource)
            raise ValueError(f"unsupported method {method}")

    def _patch(
        self,
        key: tuple[str, str, str, str],
        current: dict[str, Any],
        body: Any,
        content_type: str | None,
        subresource: bool,
    ) -> KubeResponse:
        if content_type == STRATEGIC_MERGE_PATCH and key[1] in self.strategic_unsupported:
            return KubeResponse(415, {"reason": "UnsupportedMediaType"})
        if content_type == JSON_PATCH:
            try:
                patched = apply_json_patch(current, body)
            except JsonPatchTestFailed:
                return KubeResponse(422, {"reason": "Invalid"})
        elif content_type in (MERGE_PATCH, STRATEGIC_MERGE_PATCH):
            body = copy.deepcopy(body)
            expected = (body.get("metadata") or {}).pop("resourceVersion", None)
            if expected is not None and expected != current["metadata"]["resourceVersion"]:
                return KubeResponse(409, {"reason": "Conflict"})
            patched = json_merge(current, body)
        else:
            raise ValueError(f"unsupported content type {content_type}")

        # The status subresource only changes status; the main resource never does.
        if subresource:
            updated = copy.deepcopy(current)
            if "status" in patched:
                updated["status"] = patched["status"]
            else:
                updated.pop("status", None)
        else:
            updated = patched
            if "status" in current:
                updated["status"] = copy.deepcopy(current["status"])
            else:
                updated.pop("status", None)
        updated["metadata"]["resourceVersion"] = current["metadata"]["resourceVersion"]

        if updated != current:
            updated["metadata"]["resourceVersion"] = str(next(self._rv))
        if updated["metadata"].get("deletionTimestamp") and not updated["metadata"].get("finalizers"):
            del self.objects[key]
        else:
            self.objects[key] = updated
        return KubeResponse(200, copy.deepcopy(updated))


class FakeKubeResourceMeta:
    def __init__(self, cluster: FakeCluster, fake_kind: FakeKind, impersonate_user: str | None = None) -> None:
        self.cluster = cluster
        self.fake_kind = fake_kind
        self.impersonate_user = impersonate_user
        self.verbs = ["create", "delete", "get", "list", "patch", "update", "watch"]

    @property
    def api_version(self) -> str:
        return self.fake_kind.api_version

    @property
    def kind(self) -> str:
        return self.fake_kind.kind

    @property
    def namespaced(self) -> bool:
        return self.fake_kind.namespaced

    def impersonate(self, user: str | None) -> FakeKubeResourceMeta:
        return FakeKubeResourceMeta(self.cluster, self.fake_kind, impersonate_user=user)

    def uri(
        self,
        name: str | None = None,
        namespace: str | None = None,
        *,
        status: bool = False,
        watch: bool = False,
    ) -> str:
        path = self.cluster.uri_for(self.api_version, self.kind, namespace, name)
        if status and name:
            path = f"{path}/status"
        if watch:
            path = f"{path}?watch=true"
        return path

    def request(
        self,
        method: str,
        uri: str,
        body: Any = None,
        *,
        content_type: str | None = None,
        label_selector: str | None = None,
    ) -> KubeResponse:
        return self.cluster.request(
            method,
            uri,
            body,
            content_type=content_type,
            label_selector=label_selector,
            impersonate_user=self.impersonate_user,
        )

    def get(self, name: str, namespace: str | None = None) -> KubeResponse:
        return self.request("GET", self.uri(name=name, namespace=namespace))

    def list(self, namespace: str | None = None, label_selector: str | None = None) -> KubeResponse:
        return self.request("GET", self.uri(namespace=namespace), label_selector=label_selector)

    def post(self, obj: dict[str, Any]) -> KubeResponse:
        return self.request("POST", self.uri(namespace=(obj.get("metadata") or {}).get("namespace")), body=obj)

    def delete(self, name: str, namespace: str | None = None) -> KubeResponse:
        return self.request("DELETE", self.uri(name=name, namespace=namespace))

    def merge_patch(self, name: str, namespace: str | None, body: dict[str, Any], *, status: bool = False) -> KubeResponse:
        uri = self.uri(name=name, namespace=namespace, status=status)
        return self.request("PATCH", uri, body=body, content_type=MERGE_PATCH)

    def strategic_merge_patch(
        self, name: str, namespace: str | None, body: dict[str, Any], *, status: bool = False
    ) -> KubeResponse:
        uri = self.uri(name=name, namespace=namespace, status=status)
        return self.request("PATCH", uri, body=body, content_type=STRATEGIC_MERGE_PATCH)

    def json_patch(
        self, name: str, namespace: str | None, operations: list[dict[str, Any]], *, status: bool = False
    ) -> KubeResponse:
        uri = self.uri(name=name, namespace=namespace, status=status)
        return self.request("PATCH", uri, body=operations, content_type=JSON_PATCH)


class FakeKubeClass:
    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster
        self.lookups: list[tuple[str, str, str | None]] = []

    def get_kube_resource_meta(self, api_version: str, kind: str, verb: str | None = None) -> FakeKubeResourceMeta | None:
        self.lookups.append((api_version, kind, verb))
        fake_kind = self.cluster.kinds.get((api_version, kind))
        if fake_kind is None:
            return None
        return FakeKubeResourceMeta(self.cluster, fake_kind)


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def kube_class(cluster: FakeCluster) -> FakeKubeClass:
    return FakeKubeClass(cluster)


@pytest.fixture
def parent_krm(kube_class: FakeKubeClass) -> FakeKubeResourceMeta:
    krm = kube_class.get_kube_resource_meta("deploy.razee.io/v1alpha2", "MustacheTemplate")
    assert krm is not None
    return krm


@pytest.fixture
def settings(tmp_path: Path) -> ControllerSettings:
    return ControllerSettings(lock_cluster_path=str(tmp_path / "lock-cluster"))
