from __future__ import annotations

import json
import logging
import signal
import sys
from collections.abc import Iterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from hostsync.src.__main__ import JSONFormatter, build_parser, main
from hostsync.src.errors import TransportError


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    handlers = list(logging.root.handlers)
    level = logging.root.level
    yield
    logging.root.handlers[:] = handlers
    logging.root.setLevel(level)


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

    def test_format_produces_single_line_json(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))
        parsed = json.loads(output)

        assert output.count("\n") == 0
        assert parsed["msg"] == "line one\nline two"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise TransportError("Failed to list services: boom", status=500)
        except TransportError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "TransportError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg="token=abc123 Authorization: Bearer abc.def.ghi url=/x?access_token=qwerty"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "abc.def.ghi" not in message
        assert "qwerty" not in message


class TestArgumentParser:
    def test_flags_default_to_none(self) -> None:
        args = build_parser().parse_args([])

        assert args.debug is None
        assert args.kubeconfig is None
        assert args.namespace is None
        assert args.service is None

    def test_short_flags(self) -> None:
        args = build_parser().parse_args(["-d", "-c", "/kube", "-n", "edge", "-s", "gateway"])

        assert args.debug is True
        assert args.kubeconfig == "/kube"
        assert args.namespace == "edge"
        assert args.service == "gateway"


class TestMainEntrypoint:
    """Wiring tests for main(); the Watcher and Kubernetes client are mocked."""

    def _run_main(
        self,
        argv: list[str],
        start_side_effect: Any = None,
    ) -> tuple[MagicMock, MagicMock, MagicMock]:
        with (
            patch("hostsync.src.__main__.load_kube_configuration") as mock_load,
            patch("hostsync.src.__main__.build_core_api", return_value=SimpleNamespace()),
            patch("hostsync.src.__main__.Watcher") as mock_watcher_cls,
            patch("hostsync.src.__main__.start_health_server") as mock_health,
            patch("hostsync.src.__main__.signal.signal") as mock_signal,
        ):
            mock_watcher = mock_watcher_cls.return_value

            def fake_start() -> None:
                if start_side_effect is not None:
                    raise start_side_effect
                handlers = {c.args[0]: c.args[1] for c in mock_signal.call_args_list}
                handlers[signal.SIGTERM](signal.SIGTERM, None)

            mock_watcher.start.side_effect = fake_start
            try:
                main(argv)
            finally:
                self.load_calls = mock_load.call_args_list
        return mock_watcher_cls, mock_watcher, mock_health

    def test_main_starts_and_stops_watcher(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("HEALTH_ENABLED", raising=False)
        monkeypatch.delenv("KUBECONFIG", raising=False)

        watcher_cls, watcher, health = self._run_main(["-n", "edge", "-s", "gateway"])

        watcher.start.assert_called_once_with()
        watcher.stop.assert_called_once_with()
        reconciler = watcher_cls.call_args.kwargs["reconciler"]
        assert reconciler.designated_key == ("edge", "gateway")
        assert health.call_args.kwargs["ready"] is watcher.ready
        health.return_value.shutdown.assert_called_once()
        assert self.load_calls[0].args == (None,)

    def test_main_passes_kubeconfig_flag(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        self._run_main(["-c", "/etc/kube/config"])

        assert self.load_calls[0].args == ("/etc/kube/config",)

    def test_main_debug_flag_enables_debug_logging(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "ERROR")

        self._run_main(["--debug"])

        assert logging.root.level == logging.DEBUG

    def test_main_without_health_server(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_ENABLED", "false")

        _, watcher, health = self._run_main([])

        health.assert_not_called()
        watcher.stop.assert_called_once_with()

    def test_main_exits_when_watch_cannot_be_established(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "CRITICAL")
        monkeypatch.delenv("HEALTH_ENABLED", raising=False)

        with pytest.raises(SystemExit) as excinfo:
            self._run_main([], start_side_effect=TransportError("Forbidden", status=403))

        assert excinfo.value.code == 1

    def test_main_exits_when_kube_config_cannot_be_loaded(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "CRITICAL")

        with (
            patch(
                "hostsync.src.__main__.load_kube_configuration",
                side_effect=RuntimeError("no kubeconfig"),
            ),
            patch("hostsync.src.__main__.Watcher") as mock_watcher_cls,
            pytest.raises(SystemExit) as excinfo,
        ):
            main([])

        assert excinfo.value.code == 1
        mock_watcher_cls.assert_not_called()

    def test_main_rejects_invalid_configuration(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "often")

        with pytest.raises(SystemExit) as excinfo:
            main([])

        assert excinfo.value.code == 2
