from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ctrcfg.src.errors import ConfigError

RUNTIME_VERSION = "0.3.0"
DEFAULT_TEMPLATES_DIR = str(Path(__file__).resolve().parent.parent / "templates")


@dataclass(frozen=True)
class Settings:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:      Namespace holding the bootstrap marker ConfigMap and
                        the leader election Lease.
        templates_dir:  Directory with the default config file templates.
        build_version:  Identifier stamped on every generated MachineConfig.
                        A mismatch forces regeneration after an upgrade.
        workers:        Worker threads draining the runtime-config queue.
    """

    namespace: str = "openshift-machine-config-operator"
    templates_dir: str = DEFAULT_TEMPLATES_DIR
    build_version: str = RUNTIME_VERSION
    workers: int = 5
    health_port: int = 8080
    leader_election_enabled: bool = True
    lease_name: str = "containerruntimeconfig-controller-leader"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    controller_stop_timeout_seconds: int = 45


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
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


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from environment variables.

    Environment variables (with defaults):
        ``CONTROLLER_NAMESPACE``: namespace for the marker ConfigMap and Lease.
        ``TEMPLATES_DIR``:        default config templates (bundled templates).
        ``CONTROLLER_VERSION``:   build version stamp (``RUNTIME_VERSION``).
        ``WORKERS``:              runtime-config worker threads (``5``).
        ``HEALTH_PORT``:          health/metrics port (``8080``).
        ``LEADER_ELECTION_*``:    lease settings, see :class:`Settings`.
    """
    values = env if env is not None else os.environ

    namespace = values.get("CONTROLLER_NAMESPACE", Settings.namespace)
    if not namespace.strip():
        raise ConfigError("CONTROLLER_NAMESPACE must be a non-empty string")

    templates_dir = values.get("TEMPLATES_DIR", DEFAULT_TEMPLATES_DIR)
    if not Path(templates_dir).is_dir():
        raise ConfigError(f"TEMPLATES_DIR {templates_dir!r} is not a directory")

    build_version = values.get("CONTROLLER_VERSION", RUNTIME_VERSION).strip()
    if not build_version:
        raise ConfigError("CONTROLLER_VERSION must be a non-empty string")

    lease_duration_seconds = env_int(
        values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1
    )
    renew_deadline_seconds = env_int(
        values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1
    )
    retry_period_seconds = env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    if renew_deadline_seconds >= lease_duration_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    return Settings(
        namespace=namespace,
        templates_dir=templates_dir,
        build_version=build_version,
        workers=env_int(values, "WORKERS", 5, minimum=1, maximum=64),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        leader_election_enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", Settings.lease_name),
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        # Must exceed the watch timeout so a leadership handoff does not
        # overlap informer loops.
        controller_stop_timeout_seconds=env_int(
            values, "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1
        ),
    )
