from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from noobaa_controller.src.errors import ConfigError

DEFAULT_REPORTER_NAME = "noobaa-source-controller"


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace to watch, or ``None`` to watch cluster-wide.
        reporter_name: ``reportingController`` on published events.
        reporter_instance: ``reportingInstance`` on published events.
        field_manager: Server-side apply field manager for status writes.
        success_requeue_seconds: Re-check interval after a successful reconcile.
        error_requeue_seconds: Retry delay after a failed reconcile.
        watch_timeout_seconds: Server-side timeout of each watch request.
        health_port: Port serving ``/healthz``, ``/readyz``, ``/metrics`` and ``/state``.
        log_level: Root logger level name.
    """

    namespace: str | None = None
    reporter_name: str = DEFAULT_REPORTER_NAME
    reporter_instance: str | None = None
    field_manager: str = "cntrlr"
    success_requeue_seconds: int = 1800
    error_requeue_seconds: int = 360
    watch_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
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


def _non_empty(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    ``WATCH_NAMESPACE`` left unset or empty watches every namespace.
    ``REPORTER_INSTANCE`` falls back to ``HOSTNAME`` then ``POD_NAME`` so each
    replica is distinguishable on published events.
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip() or None
    reporter_instance = (
        values.get("REPORTER_INSTANCE") or values.get("HOSTNAME") or values.get("POD_NAME")
    )

    return ControllerConfig(
        namespace=namespace,
        reporter_name=_non_empty(values, "REPORTER_NAME", DEFAULT_REPORTER_NAME),
        reporter_instance=reporter_instance or None,
        field_manager=_non_empty(values, "FIELD_MANAGER", "cntrlr"),
        success_requeue_seconds=env_int(values, "SUCCESS_REQUEUE_SECONDS", 1800, minimum=1),
        error_requeue_seconds=env_int(values, "ERROR_REQUEUE_SECONDS", 360, minimum=1),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=0, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
