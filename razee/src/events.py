from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any

from razee.src.objects import get_path

LOGGER = logging.getLogger(__name__)


class UnrecognizedEventError(ValueError):
    """Raised when a watch notification cannot be turned into a ResourceEvent."""


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    POLLED = "POLLED"


@dataclass(frozen=True)
class ResourceEvent:
    """One watch or poll notification for a managed resource.

    ``object`` is the raw resource snapshot as delivered by the API server.
    Events live for a single reconciliation cycle and are never persisted.
    """

    type: EventType
    object: dict[str, Any]

    @classmethod
    def from_watch(cls, raw: Mapping[str, Any]) -> ResourceEvent:
        """Build an event from a watch dict (``{"type": ..., "object": ...}``).

        The dynamic client delivers the untyped resource under ``raw_object``;
        it is preferred over ``object`` when present.
        """
        if not isinstance(raw, Mapping):
            raise UnrecognizedEventError(f"Unrecognized object received from watch event: {raw!r}")
        event_type = raw.get("type")
        try:
            parsed_type = EventType(str(event_type).upper())
        except ValueError as exc:
            raise UnrecognizedEventError(f"Unrecognized watch event type: {event_type!r}") from exc

        obj = raw.get("raw_object", raw.get("object"))
        if callable(getattr(obj, "to_dict", None)):
            obj = obj.to_dict()
        if not isinstance(obj, dict):
            raise UnrecognizedEventError(f"Watch event {parsed_type.value} carries no object")
        return cls(type=parsed_type, object=obj)

    @property
    def name(self) -> str | None:
        return get_path(self.object, "metadata.name")

    @property
    def namespace(self) -> str | None:
        return get_path(self.object, "metadata.namespace")

    @property
    def resource_version(self) -> str | None:
        return get_path(self.object, "metadata.resourceVersion")

    def describe(self) -> str:
        kind = self.object.get("kind", "<unknown>")
        namespace = self.namespace or "-"
        return f"{self.type.value} {kind} {namespace}/{self.name} rv={self.resource_version}"


class EventDispatcher:
    """Process watch events concurrently on a bounded thread pool.

    Each event is handled independently; a failing handler is logged and never
    stops the dispatcher.  No ordering is imposed between events, so overlapping
    cycles for one resource are only prevented by upstream delivery order.
    """

    def __init__(
        self,
        handler: Callable[[ResourceEvent], Any],
        max_workers: int = 8,
        logger: logging.Logger | None = None,
    ) -> None:
        self.handler = handler
        self.logger = logger or LOGGER
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="razee-event")
        self._closed = threading.Event()

    def dispatch(self, raw: Mapping[str, Any]) -> Future[Any] | None:
        """Convert *raw* into a ResourceEvent and submit it; return the future."""
        if self._closed.is_set():
            self.logger.warning("Dispatcher is shut down; dropping watch event")
            return None
        try:
            event = ResourceEvent.from_watch(raw)
        except UnrecognizedEventError:
            self.logger.exception("Dropping unrecognized watch event")
            return None
        return self._executor.submit(self._run, event)

    def _run(self, event: ResourceEvent) -> Any:
        try:
            return self.handler(event)
        except Exception:
            self.logger.exception("Unhandled error while processing %s", event.describe())
            return None

    def shutdown(self, wait: bool = True) -> None:
        self._closed.set()
        self._executor.shutdown(wait=wait)
