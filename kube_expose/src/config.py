from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

SERVICE_TYPES = frozenset({"ClusterIP", "LoadBalancer"})


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace to watch, or ``None`` for every namespace.
        service_type: ``ClusterIP`` or ``LoadBalancer`` for created Services.
        ingress_enabled: Whether an Ingress follows every created Service.
        ingress_class_name: Optional ``ingressClassName`` for created Ingresses.
        workers: Number of reconcile worker threads.
        api_timeout_seconds: Request timeout applied to every API call.
        retry_base_delay_seconds: First backoff delay after a failed reconcile.
        retry_max_delay_seconds: Upper bound for the backoff delay.
        health_port: Port of the health/metrics HTTP server.
    """

    namespace: str | None = None
    service_type: str = "LoadBalancer"
    ingress_enabled: bool = True
    ingress_class_name: str | None = None
    workers: int = 2
    api_timeout_seconds: int = 10
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
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


def env_float(name: str, default: float, env: Mapping[str, str] | None = None) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Every variable is optional; defaults expose workloads through a
    ``LoadBalancer`` Service plus an Ingress in all namespaces.  Invalid values
    raise :class:`ConfigError` naming the offending variable so a bad rollout
    fails at startup instead of mid-reconcile.
    """
    values = env if env is not None else os.environ

    namespace = (values.get("WATCH_NAMESPACE") or "").strip() or None

    service_type = (values.get("SERVICE_TYPE") or "LoadBalancer").strip()
    if service_type not in SERVICE_TYPES:
        raise ConfigError(
            f"SERVICE_TYPE must be one of {', '.join(sorted(SERVICE_TYPES))}, "
            f"got: {service_type!r}"
        )

    ingress_class_name = (values.get("INGRESS_CLASS_NAME") or "").strip() or None

    retry_base = env_float("RETRY_BASE_DELAY_SECONDS", 1.0, env=values)
    retry_max = env_float("RETRY_MAX_DELAY_SECONDS", 30.0, env=values)
    if retry_max < retry_base:
        raise ConfigError(
            "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS"
        )

    return ControllerConfig(
        namespace=namespace,
        service_type=service_type,
        ingress_enabled=parse_bool(values.get("INGRESS_ENABLED"), default=True),
        ingress_class_name=ingress_class_name,
        workers=env_int("WORKERS", 2, minimum=1, maximum=64, env=values),
        api_timeout_seconds=env_int("API_TIMEOUT_SECONDS", 10, minimum=1, env=values),
        retry_base_delay_seconds=retry_base,
        retry_max_delay_seconds=retry_max,
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
