from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class SettingsError(ValueError):
    """Raised when the controller environment configuration is invalid."""


@dataclass(frozen=True)
class LeaderElectionSettings:
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int


@dataclass(frozen=True)
class Settings:
    """Immutable controller configuration loaded at startup.

    Attributes:
        watch_namespaces: Namespaces holding ClientConfigs and the namespaces
                          remote clusters are scoped to; empty means all.
        workers:          Number of reconcile worker threads.
        health_port:      Port of the health/metrics HTTP server.
        leader_election:  Lease settings, or ``None`` when election is disabled.
    """

    watch_namespaces: tuple[str, ...]
    workers: int
    health_port: int
    log_level: str
    leader_election: LeaderElectionSettings | None


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
            raise SettingsError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise SettingsError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise SettingsError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_namespaces(raw: str | None) -> tuple[str, ...]:
    """Split ``WATCH_NAMESPACE`` (``ns1,ns2``) into a tuple; blank means all namespaces."""
    if not raw:
        return ()
    seen: list[str] = []
    for part in raw.split(","):
        namespace = part.strip()
        if namespace and namespace not in seen:
            seen.append(namespace)
    return tuple(seen)


def default_identity(values: Mapping[str, str]) -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name by the
    downward API, giving each replica a stable identity for lease ownership.
    """
    return values.get("HOSTNAME", values.get("POD_NAME", "unknown"))


def _load_leader_election(values: Mapping[str, str]) -> LeaderElectionSettings | None:
    if not parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True):
        return None

    lease_duration_seconds = env_int(
        values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1
    )
    renew_deadline_seconds = env_int(
        values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1
    )
    retry_period_seconds = env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)

    if renew_deadline_seconds >= lease_duration_seconds:
        raise SettingsError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise SettingsError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    namespace = values.get("LEADER_ELECTION_NAMESPACE", "clusterlink-system").strip()
    if not namespace:
        raise SettingsError("LEADER_ELECTION_NAMESPACE must be a non-empty string")

    return LeaderElectionSettings(
        namespace=namespace,
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "clusterlink-controller-leader"),
        identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(values),
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
    )


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Load controller settings from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``:   comma-separated namespaces (all namespaces).
        ``WORKERS``:           reconcile worker threads (``2``).
        ``HEALTH_PORT``:       health/metrics server port (``8080``).
        ``LOG_LEVEL``:         logging level name (``INFO``).
        ``LEADER_ELECTION_*``: lease settings, see :class:`LeaderElectionSettings`.
    """
    values = env if env is not None else os.environ

    return Settings(
        watch_namespaces=parse_namespaces(values.get("WATCH_NAMESPACE")),
        workers=env_int(values, "WORKERS", 2, minimum=1, maximum=64),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
        leader_election=_load_leader_election(values),
    )
