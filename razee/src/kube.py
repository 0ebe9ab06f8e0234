from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError, ResourceNotUniqueError

LOGGER = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"
STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"
JSON_PATCH = "application/json-patch+json"


@dataclass(frozen=True)
class KubeResponse:
    """Structured result of one API call.

    Non-2xx responses are returned rather than raised so callers can branch
    on ``status_code`` (a 404 on GET is an expected outcome, not an error).
    """

    status_code: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def to_dict(self) -> dict[str, Any]:
        return {"statusCode": self.status_code, "body": self.body}


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_dynamic_client() -> DynamicClient:
    """Return a discovery-backed dynamic client using the active kube configuration."""
    return DynamicClient(client.ApiClient())


def parse_self_link(uri: str) -> tuple[str | None, str]:
    """Split a canonical resource URI into ``(namespace, name)``.

    ``/api/v1/namespaces/ns/configmaps/cm`` gives ``("ns", "cm")``;
    ``/api/v1/namespaces/ns`` (the Namespace itself) gives ``(None, "ns")``.
    """
    parts = uri.split("?", 1)[0].strip("/").split("/")
    namespace = None
    if "namespaces" in parts:
        index = parts.index("namespaces")
        if index + 2 < len(parts):
            namespace = parts[index + 1]
    return namespace, parts[-1]


def simple_link(api_version: str, kind: str, namespace: str | None, name: str) -> str:
    """Compact identity ``apiVersion:kind/namespace/name`` used as a dependency key."""
    return f"{api_version}:{kind}/{namespace or ''}/{name}"


def _decode_body(data: Any) -> Any:
    if data is None:
        return None
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        if not data:
            return None
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data


class KubeResourceMeta:
    """Single-kind resource client.

    Wraps one discovered API resource and exposes the CRUD and patch verbs the
    reconcilers need.  Every verb returns a :class:`KubeResponse`; API errors
    are translated into responses, only transport failures raise.
    """

    def __init__(
        self,
        dynamic: DynamicClient,
        resource: Any,
        impersonate_user: str | None = None,
    ) -> None:
        self._dynamic = dynamic
        self._resource = resource
        self.impersonate_user = impersonate_user

    @property
    def api_version(self) -> str:
        return self._resource.group_version

    @property
    def kind(self) -> str:
        return self._resource.kind

    @property
    def namespaced(self) -> bool:
        return bool(self._resource.namespaced)

    @property
    def verbs(self) -> list[str]:
        return list(self._resource.verbs or [])

    def impersonate(self, user: str | None) -> KubeResourceMeta:
        """Return a client for the same kind that acts as *user*."""
        return KubeResourceMeta(self._dynamic, self._resource, impersonate_user=user)

    def uri(
        self,
        name: str | None = None,
        namespace: str | None = None,
        *,
        status: bool = False,
        watch: bool = False,
    ) -> str:
        path = self._resource.path(name=name, namespace=namespace if self.namespaced else None)
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
        header_params: dict[str, str] = {}
        if self.impersonate_user:
            header_params["Impersonate-User"] = self.impersonate_user
        try:
            response = self._dynamic.request(
                method,
                uri,
                body=body,
                serialize=False,
                content_type=content_type,
                header_params=header_params,
                label_selector=label_selector,
            )
        except ApiException as exc:
            return KubeResponse(status_code=exc.status or 500, body=_decode_body(exc.body) or exc.reason)
        return KubeResponse(status_code=response.status, body=_decode_body(response.data))

    def watch_stream(
        self,
        watcher: Any,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout_seconds: int | None = None,
    ) -> Any:
        """Stream watch events for this kind through *watcher* (``kubernetes.watch.Watch``).

        Unlike the request verbs, API errors raise ``ApiException`` here so the
        watch loop can tell an expired resourceVersion (410) from other failures.
        """
        return self._dynamic.watch(
            self._resource,
            namespace=namespace if self.namespaced else None,
            label_selector=label_selector,
            resource_version=resource_version,
            timeout=timeout_seconds,
            watcher=watcher,
        )

    def get(self, name: str, namespace: str | None = None) -> KubeResponse:
        return self.request("GET", self.uri(name=name, namespace=namespace))

    def list(self, namespace: str | None = None, label_selector: str | None = None) -> KubeResponse:
        return self.request("GET", self.uri(namespace=namespace), label_selector=label_selector)

    def post(self, obj: dict[str, Any]) -> KubeResponse:
        namespace = (obj.get("metadata") or {}).get("namespace")
        return self.request("POST", self.uri(namespace=namespace), body=obj)

    def delete(self, name: str, namespace: str | None = None) -> KubeResponse:
        return self.request("DELETE", self.uri(name=name, namespace=namespace))

    def merge_patch(
        self,
        name: str,
        namespace: str | None,
        body: dict[str, Any],
        *,
        status: bool = False,
    ) -> KubeResponse:
        uri = self.uri(name=name, namespace=namespace, status=status)
        return self.request("PATCH", uri, body=body, content_type=MERGE_PATCH)

    def strategic_merge_patch(
        self,
        name: str,
        namespace: str | None,
        body: dict[str, Any],
        *,
        status: bool = False,
    ) -> KubeResponse:
        uri = self.uri(name=name, namespace=namespace, status=status)
        return self.request("PATCH", uri, body=body, content_type=STRATEGIC_MERGE_PATCH)

    def json_patch(
        self,
        name: str,
        namespace: str | None,
        operations: list[dict[str, Any]],
        *,
        status: bool = False,
    ) -> KubeResponse:
        uri = self.uri(name=name, namespace=namespace, status=status)
        return self.request("PATCH", uri, body=operations, content_type=JSON_PATCH)


class KubeClass:
    """API-kind discovery.

    Resolves ``(apiVersion, kind)`` pairs into :class:`KubeResourceMeta`
    clients.  Successful lookups are memoized; misses are not, so kinds whose
    CRDs are installed later become resolvable without a restart.
    """

    def __init__(self, dynamic: DynamicClient, logger: logging.Logger | None = None) -> None:
        self._dynamic = dynamic
        self.logger = logger or LOGGER
        self._known: dict[tuple[str, str], KubeResourceMeta] = {}
        self._lock = threading.Lock()

    def get_kube_resource_meta(
        self,
        api_version: str,
        kind: str,
        verb: str | None = None,
    ) -> KubeResourceMeta | None:
        key = (api_version, kind)
        with self._lock:
            krm = self._known.get(key)
        if krm is None:
            try:
                resource = self._dynamic.resources.get(api_version=api_version, kind=kind)
            except (ResourceNotFoundError, ResourceNotUniqueError) as exc:
                self.logger.warning("Unable to discover %s/%s: %s", api_version, kind, exc)
                return None
            krm = KubeResourceMeta(self._dynamic, resource)
            with self._lock:
                krm = self._known.setdefault(key, krm)

        if verb and krm.verbs and verb not in krm.verbs:
            self.logger.warning("%s/%s does not support verb %s", api_version, kind, verb)
            return None
        return krm
