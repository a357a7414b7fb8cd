from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from clusterlink.src.bootstrap import ClientConfigBootstrapper
from clusterlink.src.errors import BootstrapError
from clusterlink.src.health import start_health_server
from clusterlink.src.kube import ControlPlaneClient, build_clients, load_kube_configuration
from clusterlink.src.manager import Manager
from clusterlink.src.metrics import METRICS
from clusterlink.src.reconciler import ClientConfigReconciler, ShutdownSignal
from clusterlink.src.registry import ClientCache
from clusterlink.src.settings import LeaderElectionSettings, Settings, load_settings

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key"
            r"|client-key-data|client-certificate-data)\b\s*[:=]\s*)([^\s,;]+)"
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


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))


class Topology:
    """Wires the registry, reconciler, dispatcher and bootstrapper for one process lifetime."""

    def __init__(self, settings: Settings, control_plane: ControlPlaneClient) -> None:
        self.settings = settings
        self.shutdown = ShutdownSignal()
        self.client_cache = ClientCache(local_client=control_plane)
        self.reconciler = ClientConfigReconciler(self.client_cache, self.shutdown)
        self.manager = Manager(
            control_plane=control_plane,
            reconciler=self.reconciler,
            shutdown=self.shutdown,
            namespaces=settings.watch_namespaces,
            workers=settings.workers,
        )
        self.bootstrapper = ClientConfigBootstrapper(
            client_cache=self.client_cache,
            sink=self.manager,
            on_index_ready=self.reconciler.publish_secret_index,
        )

    def run(self) -> None:
        """Bootstrap the remote clusters, then dispatch until shutdown is requested."""
        self.bootstrapper.bootstrap(self.settings.watch_namespaces)
        self.manager.run(stop_event=self.shutdown.event)


def build_topology(settings: Settings) -> Topology:
    load_kube_configuration()
    core_api, custom_api = build_clients()
    return Topology(settings, ControlPlaneClient(core_api=core_api, custom_api=custom_api))


def _run_leading(
    topology: Topology, lease_settings: LeaderElectionSettings, leader_ready: threading.Event
) -> int:
    from kubernetes.client import CoordinationV1Api

    from clusterlink.src.leader import LeaseLeaderElector

    elector = LeaseLeaderElector(coordination_api=CoordinationV1Api(), settings=lease_settings)
    stop_event = topology.shutdown.event
    exit_code = 0
    topology_thread: threading.Thread | None = None

    def _run_topology() -> None:
        nonlocal exit_code
        try:
            topology.run()
        except BootstrapError:
            LOGGER.exception("Failed to bootstrap remote clusters")
            exit_code = 1
        except Exception:
            LOGGER.exception("Controller crashed")
            exit_code = 1
        finally:
            stop_event.set()

    def on_started_leading() -> None:
        nonlocal topology_thread
        leader_ready.set()
        topology_thread = threading.Thread(target=_run_topology, name="topology", daemon=True)
        topology_thread.start()

    def on_stopped_leading() -> None:
        leader_ready.clear()
        if not stop_event.is_set():
            LOGGER.warning("Leadership lost; shutting down so another replica can bootstrap")
        stop_event.set()

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=stop_event,
    )
    if topology_thread is not None:
        topology_thread.join(timeout=30)
        if topology_thread.is_alive():
            LOGGER.error("Controller did not stop within 30s")
            return 1
    return exit_code


def main() -> int:
    """Controller entrypoint: bootstrap remote clusters and exit when the topology drifts.

    Returns the process exit status: ``0`` for a requested shutdown (drift,
    signal or lost leadership), ``1`` when bootstrap or the dispatcher failed.
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    topology = build_topology(settings)

    leader_ready = threading.Event() if settings.leader_election is not None else None
    health_server = start_health_server(
        ready=topology.manager.ready,
        port=settings.health_port,
        leader=leader_ready,
    )

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        topology.shutdown.event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if settings.leader_election is not None and leader_ready is not None:
            exit_code = _run_leading(topology, settings.leader_election, leader_ready)
        else:
            try:
                topology.run()
                exit_code = 0
            except BootstrapError:
                LOGGER.exception("Failed to bootstrap remote clusters")
                exit_code = 1
    finally:
        health_server.shutdown()

    LOGGER.info("Controller stopped")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
