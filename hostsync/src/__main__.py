from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import threading
from collections.abc import Sequence

from hostsync.src.config import ConfigError, SyncConfig, load_config
from hostsync.src.health import start_health_server
from hostsync.src.kube import ServiceStore, build_core_api, load_kube_configuration
from hostsync.src.metrics import METRICS
from hostsync.src.reconciler import Reconciler
from hostsync.src.watcher import Watcher

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


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hostsync",
        description=(
            "Watches for host entries in ambassador annotations, automatically "
            "updating the external-dns annotation on the ambassador service."
        ),
    )
    # Flags default to None so the environment applies when they are omitted.
    parser.add_argument(
        "-d", "--debug", action="store_true", default=None, help="enable debug output"
    )
    parser.add_argument("-c", "--kubeconfig", default=None, help="kubeconfig file to use")
    parser.add_argument(
        "-n", "--namespace", default=None, help="namespace of the ambassador service"
    )
    parser.add_argument("-s", "--service", default=None, help="name of the ambassador service")
    return parser


def configure_logging(config: SyncConfig) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    if config.debug:
        logging.root.setLevel(logging.DEBUG)
    else:
        logging.root.setLevel(getattr(logging, config.log_level, logging.INFO))


def main(argv: Sequence[str] | None = None) -> None:
    """Entrypoint: resolve config, start the watcher and run until SIGTERM/SIGINT."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(
            service_namespace=args.namespace,
            service_name=args.service,
            kubeconfig=args.kubeconfig,
            debug=args.debug,
        )
    except ConfigError as exc:
        parser.error(str(exc))

    configure_logging(config)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        load_kube_configuration(config.kubeconfig)
        store = ServiceStore(build_core_api())
    except Exception:
        logger.exception("Failed to load Kubernetes configuration")
        raise SystemExit(1) from None

    reconciler = Reconciler(
        store=store,
        service_namespace=config.service_namespace,
        service_name=config.service_name,
        interval_seconds=config.sync_interval_seconds,
        stop_timeout_seconds=config.stop_timeout_seconds,
    )
    watcher = Watcher(
        store=store,
        reconciler=reconciler,
        resync_seconds=config.resync_seconds,
        watch_timeout_seconds=config.watch_timeout_seconds,
        stop_timeout_seconds=config.stop_timeout_seconds,
    )

    health_server = (
        start_health_server(ready=watcher.ready, port=config.health_port)
        if config.health_enabled
        else None
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        watcher.start()
    except Exception:
        logger.exception("Failed to start watching services")
        if health_server is not None:
            health_server.shutdown()
        raise SystemExit(1) from None

    logger.info(
        "Syncing external-dns annotation on service %s/%s",
        config.service_namespace,
        config.service_name,
    )
    shutdown_event.wait()

    try:
        watcher.stop()
    finally:
        if health_server is not None:
            health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
