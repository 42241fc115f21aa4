from __future__ import annotations

import pytest

from hostsync.src.config import ConfigError, SyncConfig, env_int, load_config, parse_bool


def test_load_config_defaults() -> None:
    config = load_config({})

    assert config == SyncConfig()
    assert config.service_namespace == "default"
    assert config.service_name == "ambassador"
    assert config.kubeconfig is None
    assert config.sync_interval_seconds == 4
    assert config.resync_seconds == 900


def test_load_config_reads_environment() -> None:
    config = load_config(
        {
            "SERVICE_NAMESPACE": "ambassador",
            "SERVICE_NAME": "ambassador-admin",
            "KUBECONFIG": "/home/dev/.kube/config",
            "DEBUG": "true",
            "LOG_LEVEL": "warning",
            "SYNC_INTERVAL_SECONDS": "2",
            "RESYNC_SECONDS": "60",
            "WATCH_TIMEOUT_SECONDS": "5",
            "STOP_TIMEOUT_SECONDS": "30",
            "HEALTH_ENABLED": "false",
            "HEALTH_PORT": "9090",
        }
    )

    assert config.service_namespace == "ambassador"
    assert config.service_name == "ambassador-admin"
    assert config.kubeconfig == "/home/dev/.kube/config"
    assert config.debug is True
    assert config.log_level == "WARNING"
    assert config.sync_interval_seconds == 2
    assert config.resync_seconds == 60
    assert config.watch_timeout_seconds == 5
    assert config.stop_timeout_seconds == 30
    assert config.health_enabled is False
    assert config.health_port == 9090


def test_flags_override_environment() -> None:
    config = load_config(
        {"SERVICE_NAMESPACE": "env-ns", "SERVICE_NAME": "env-svc", "DEBUG": "true"},
        service_namespace="flag-ns",
        service_name="flag-svc",
        kubeconfig="/flag/kubeconfig",
        debug=False,
    )

    assert config.service_namespace == "flag-ns"
    assert config.service_name == "flag-svc"
    assert config.kubeconfig == "/flag/kubeconfig"
    assert config.debug is False


def test_empty_kubeconfig_means_unset() -> None:
    assert load_config({"KUBECONFIG": ""}).kubeconfig is None


@pytest.mark.parametrize("name", ["SERVICE_NAMESPACE", "SERVICE_NAME"])
def test_blank_service_identity_rejected(name: str) -> None:
    with pytest.raises(ConfigError, match=f"{name} must be a non-empty string"):
        load_config({name: "   "})


def test_invalid_interval_rejected() -> None:
    with pytest.raises(ConfigError, match="SYNC_INTERVAL_SECONDS must be an integer"):
        load_config({"SYNC_INTERVAL_SECONDS": "soon"})


def test_zero_interval_rejected() -> None:
    with pytest.raises(ConfigError, match="SYNC_INTERVAL_SECONDS must be >= 1, got: 0"):
        load_config({"SYNC_INTERVAL_SECONDS": "0"})


def test_health_port_range_enforced() -> None:
    with pytest.raises(ConfigError, match="HEALTH_PORT must be <= 65535, got: 70000"):
        load_config({"HEALTH_PORT": "70000"})


def test_stop_timeout_must_exceed_watch_timeout() -> None:
    with pytest.raises(ConfigError, match="STOP_TIMEOUT_SECONDS must be larger"):
        load_config({"WATCH_TIMEOUT_SECONDS": "30", "STOP_TIMEOUT_SECONDS": "30"})


def test_config_error_is_value_error() -> None:
    assert issubclass(ConfigError, ValueError)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_env_int_returns_default_when_not_set() -> None:
    assert env_int({}, "TEST_ENV_INT", 42) == 42


def test_env_int_raises_on_empty_string() -> None:
    with pytest.raises(ConfigError, match="TEST_ENV_INT must be an integer"):
        env_int({"TEST_ENV_INT": ""}, "TEST_ENV_INT", 42)


def test_env_int_parses_negative_without_minimum() -> None:
    assert env_int({"TEST_ENV_INT": "-5"}, "TEST_ENV_INT", 42) == -5


@pytest.mark.parametrize("value", ["true", "True", "TRUE", "1", "yes", "on", "  true  "])
def test_parse_bool_truthy(value: str) -> None:
    assert parse_bool(value) is True


@pytest.mark.parametrize("value", ["false", "0", "no", "off", ""])
def test_parse_bool_falsy(value: str) -> None:
    assert parse_bool(value) is False


def test_parse_bool_default_when_unset() -> None:
    assert parse_bool(None) is False
    assert parse_bool(None, default=True) is True


def test_load_config_uses_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SERVICE_NAME", "from-process-env")

    assert load_config().service_name == "from-process-env"
