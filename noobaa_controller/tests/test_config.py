from __future__ import annotations

import pytest

from noobaa_controller.src.config import ControllerConfig, env_int, load_config
from noobaa_controller.src.errors import ConfigError


def test_defaults_watch_all_namespaces() -> None:
    config = load_config({})

    assert config == ControllerConfig()
    assert config.namespace is None
    assert config.success_requeue_seconds == 1800
    assert config.error_requeue_seconds == 360
    assert config.field_manager == "cntrlr"


def test_reads_overrides_from_environment() -> None:
    config = load_config(
        {
            "WATCH_NAMESPACE": " noobaa ",
            "REPORTER_NAME": "custom",
            "REPORTER_INSTANCE": "pod-3",
            "FIELD_MANAGER": "manager-x",
            "SUCCESS_REQUEUE_SECONDS": "60",
            "ERROR_REQUEUE_SECONDS": "5",
            "WATCH_TIMEOUT_SECONDS": "10",
            "HEALTH_PORT": "9090",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.namespace == "noobaa"
    assert config.reporter_name == "custom"
    assert config.reporter_instance == "pod-3"
    assert config.field_manager == "manager-x"
    assert config.success_requeue_seconds == 60
    assert config.error_requeue_seconds == 5
    assert config.watch_timeout_seconds == 10
    assert config.health_port == 9090
    assert config.log_level == "DEBUG"


def test_reporter_instance_falls_back_to_hostname() -> None:
    assert load_config({"HOSTNAME": "controller-abc"}).reporter_instance == "controller-abc"
    assert load_config({"POD_NAME": "controller-def"}).reporter_instance == "controller-def"


def test_blank_namespace_means_cluster_wide() -> None:
    assert load_config({"WATCH_NAMESPACE": "   "}).namespace is None


def test_rejects_empty_field_manager() -> None:
    with pytest.raises(ConfigError, match="FIELD_MANAGER must be a non-empty string"):
        load_config({"FIELD_MANAGER": " "})


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("abc", "ERROR_REQUEUE_SECONDS must be an integer"),
        ("0", "ERROR_REQUEUE_SECONDS must be >= 1, got: 0"),
    ],
)
def test_rejects_invalid_requeue_interval(raw: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config({"ERROR_REQUEUE_SECONDS": raw})


def test_env_int_enforces_maximum() -> None:
    with pytest.raises(ConfigError, match="HEALTH_PORT must be <= 65535, got: 70000"):
        env_int({"HEALTH_PORT": "70000"}, "HEALTH_PORT", 8080, maximum=65535)


def test_env_int_uses_default_for_blank_values() -> None:
    assert env_int({"X": ""}, "X", 7) == 7
