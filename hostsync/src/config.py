from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class SyncConfig:
    """Immutable controller configuration resolved at startup.

    Attributes:
        service_namespace: Namespace of the designated (Ambassador) Service.
        service_name:      Name of the designated Service.
        kubeconfig:        Explicit kubeconfig path; ``None`` tries in-cluster first.
        debug:             Force DEBUG logging regardless of ``log_level``.
        log_level:         Log level name used when ``debug`` is off.
        sync_interval_seconds:  Reconciler tick interval.
        resync_seconds:         Interval between forced resync notifications.
        watch_timeout_seconds:  Server-side timeout of one watch stream.
        stop_timeout_seconds:   Upper bound on joining a background thread.
        health_enabled:    Serve ``/healthz``, ``/readyz`` and ``/metrics``.
        health_port:       Port for the health server.
    """

    service_namespace: str = "default"
    service_name: str = "ambassador"
    kubeconfig: str | None = None
    debug: bool = False
    log_level: str = "INFO"
    sync_interval_seconds: int = 4
    resync_seconds: int = 900
    watch_timeout_seconds: int = 10
    stop_timeout_seconds: int = 60
    health_enabled: bool = True
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = env.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _non_empty(name: str, value: str) -> str:
    value = value.strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(
    env: Mapping[str, str] | None = None,
    *,
    service_namespace: str | None = None,
    service_name: str | None = None,
    kubeconfig: str | None = None,
    debug: bool | None = None,
) -> SyncConfig:
    """Load controller config from the environment, with explicit overrides winning.

    The keyword overrides carry command-line flags; ``None`` means "not given"
    and falls back to the environment variable, then the default.

    Environment variables (with defaults):
        ``SERVICE_NAMESPACE`` (``default``), ``SERVICE_NAME`` (``ambassador``),
        ``KUBECONFIG`` (unset), ``DEBUG`` (``false``), ``LOG_LEVEL`` (``INFO``),
        ``SYNC_INTERVAL_SECONDS`` (``4``), ``RESYNC_SECONDS`` (``900``),
        ``WATCH_TIMEOUT_SECONDS`` (``10``), ``STOP_TIMEOUT_SECONDS`` (``60``),
        ``HEALTH_ENABLED`` (``true``), ``HEALTH_PORT`` (``8080``).
    """
    values = env if env is not None else os.environ

    namespace = service_namespace if service_namespace is not None else values.get(
        "SERVICE_NAMESPACE", "default"
    )
    name = service_name if service_name is not None else values.get(
        "SERVICE_NAME", "ambassador"
    )
    kubeconfig_path = kubeconfig if kubeconfig is not None else values.get("KUBECONFIG")

    watch_timeout_seconds = env_int(values, "WATCH_TIMEOUT_SECONDS", 10, minimum=1)
    stop_timeout_seconds = env_int(values, "STOP_TIMEOUT_SECONDS", 60, minimum=1)
    if stop_timeout_seconds <= watch_timeout_seconds:
        raise ConfigError(
            "STOP_TIMEOUT_SECONDS must be larger than WATCH_TIMEOUT_SECONDS"
        )

    return SyncConfig(
        service_namespace=_non_empty("SERVICE_NAMESPACE", namespace),
        service_name=_non_empty("SERVICE_NAME", name),
        kubeconfig=kubeconfig_path or None,
        debug=debug if debug is not None else parse_bool(values.get("DEBUG")),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        sync_interval_seconds=env_int(values, "SYNC_INTERVAL_SECONDS", 4, minimum=1),
        resync_seconds=env_int(values, "RESYNC_SECONDS", 900, minimum=1),
        watch_timeout_seconds=watch_timeout_seconds,
        stop_timeout_seconds=stop_timeout_seconds,
        health_enabled=parse_bool(values.get("HEALTH_ENABLED"), default=True),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
