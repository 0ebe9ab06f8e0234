from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import pytest

from razee.src.__main__ import JSONFormatter, configure_logging, main, redact_sensitive_text, run
from razee.src.config import ControllerSettings


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/healthz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message
        assert "access_token=qwerty" not in message

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "[REDACTED]" in parsed["error"]
        assert "abc123" not in parsed["error"]


def test_redaction_leaves_ordinary_text_alone() -> None:
    text = "applyChild v1/ConfigMap/namespace/default/settings"
    assert redact_sensitive_text(text) == text


def test_configure_logging_installs_json_handler() -> None:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        configure_logging("DEBUG")

        assert isinstance(root.handlers[-1].formatter, JSONFormatter)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = handlers
        root.setLevel(level)


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@pytest.fixture
def wiring() -> Iterator[dict[str, MagicMock]]:
    targets = (
        "build_dynamic_client",
        "KubeClass",
        "WatchManager",
        "DependencyTracker",
        "EventDispatcher",
        "start_health_server",
    )
    patchers = {name: patch(f"razee.src.__main__.{name}") for name in targets}
    mocks = {name: patcher.start() for name, patcher in patchers.items()}
    yield mocks
    for patcher in patchers.values():
        patcher.stop()


def test_run_wires_parent_watch_to_dependency_tracker(wiring: dict[str, MagicMock]) -> None:
    settings = ControllerSettings(watch_namespace="razee", health_port=9090)
    parent_krm = wiring["KubeClass"].return_value.get_kube_resource_meta.return_value
    manager = wiring["WatchManager"].return_value
    parent_watch = manager.ensure_watch.return_value
    shutdown = threading.Event()
    shutdown.set()

    run(settings, shutdown)

    wiring["KubeClass"].assert_called_once_with(wiring["build_dynamic_client"].return_value)
    wiring["KubeClass"].return_value.get_kube_resource_meta.assert_called_once_with(
        "deploy.razee.io/v1alpha2", "MustacheTemplate", "watch"
    )
    tracker = wiring["DependencyTracker"].return_value
    wiring["EventDispatcher"].assert_called_once_with(tracker.execute, max_workers=settings.event_workers)
    options, callback = manager.ensure_watch.call_args.args
    assert options.krm is parent_krm
    assert options.namespace == "razee"
    assert callback == wiring["EventDispatcher"].return_value.dispatch
    wiring["start_health_server"].assert_called_once_with(ready=parent_watch.ready, port=9090, watches=manager)

    manager.stop_all.assert_called_once_with(timeout=5)
    wiring["EventDispatcher"].return_value.shutdown.assert_called_once_with(wait=True)
    wiring["start_health_server"].return_value.shutdown.assert_called_once()


def test_run_stops_when_parent_watch_dies(wiring: dict[str, MagicMock]) -> None:
    wiring["WatchManager"].return_value.ensure_watch.return_value.running = False
    shutdown = MagicMock()
    shutdown.wait.return_value = False

    run(ControllerSettings(), shutdown)

    shutdown.wait.assert_called_once_with(timeout=5)
    wiring["WatchManager"].return_value.stop_all.assert_called_once()


def test_run_requires_discoverable_parent_kind(wiring: dict[str, MagicMock]) -> None:
    wiring["KubeClass"].return_value.get_kube_resource_meta.return_value = None

    with pytest.raises(RuntimeError, match="Unable to discover"):
        run(ControllerSettings(), threading.Event())

    wiring["WatchManager"].return_value.ensure_watch.assert_not_called()


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


def test_main_loads_config_and_installs_signal_handlers() -> None:
    settings = ControllerSettings(log_level="WARNING")
    with (
        patch("razee.src.__main__.load_settings", return_value=settings),
        patch("razee.src.__main__.configure_logging") as mock_logging,
        patch("razee.src.__main__.load_kube_configuration") as mock_kubeconfig,
        patch("razee.src.__main__.signal.signal") as mock_signal,
        patch("razee.src.__main__.run") as mock_run,
    ):
        main()

    mock_logging.assert_called_once_with("WARNING")
    mock_kubeconfig.assert_called_once()
    (run_settings, shutdown_event), _ = mock_run.call_args
    assert run_settings is settings
    assert not shutdown_event.is_set()

    handlers = {call.args[0]: call.args[1] for call in mock_signal.call_args_list}
    assert set(handlers) == {signal.SIGTERM, signal.SIGINT}
    handlers[signal.SIGTERM](signal.SIGTERM, None)
    assert shutdown_event.is_set()
