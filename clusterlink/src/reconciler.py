from __future__ import annotations

import enum
import logging
import threading
from typing import Any

from clusterlink.src.fingerprint import fingerprint
from clusterlink.src.kube import ControlPlaneClient
from clusterlink.src.metrics import METRICS
from clusterlink.src.registry import ClientCache
from clusterlink.src.resources import (
    CLIENT_CONFIG_HASH_ANNOTATION,
    SECRET_HASH_ANNOTATION,
    ObjectKey,
    client_config_annotations,
    client_config_spec,
    kubeconfig_secret_key,
)
from clusterlink.src.reverse_index import SecretIndex

LOGGER = logging.getLogger(__name__)


class ReconcileOutcome(enum.Enum):
    STABLE = "stable"
    CONFIG_MISSING = "config_missing"
    MARKERS_MISSING = "markers_missing"
    SECRET_MISSING = "secret_missing"
    HASH_MISMATCH = "hash_mismatch"

    @property
    def requires_restart(self) -> bool:
        return self is not ReconcileOutcome.STABLE


class ShutdownSignal:
    """One-shot, thread-safe process shutdown request.

    Wraps the :class:`threading.Event` watched by the entrypoint's run loop.
    Only the first request is logged and counted; later requests are no-ops.
    """

    def __init__(self, event: threading.Event | None = None) -> None:
        self.event = event or threading.Event()
        self._lock = threading.Lock()
        self._requested = False

    @property
    def requested(self) -> bool:
        return self._requested

    def request(self, reason: str) -> bool:
        """Request shutdown; returns True only for the request that triggered it."""
        with self._lock:
            if self._requested:
                return False
            self._requested = True
        LOGGER.info("Shutting down to rebuild cluster topology: %s", reason)
        METRICS.drift_shutdowns_total.inc()
        self.event.set()
        return True


def calculate_hashes(
    control_plane: ControlPlaneClient, client_config: dict[str, Any]
) -> tuple[str, str] | None:
    """Return ``(config_hash, secret_hash)`` for *client_config*.

    Returns ``None`` when the referenced Secret does not exist or the
    ClientConfig no longer names one.
    """
    secret_key = kubeconfig_secret_key(client_config)
    if not secret_key.name:
        return None
    secret = control_plane.get_secret(secret_key)
    if secret is None:
        return None
    return fingerprint(client_config_spec(client_config)), fingerprint(secret.data or {})


class ClientConfigReconciler:
    """Detects drift between live ClientConfigs and the topology built at bootstrap.

    Remote clusters cannot be detached from a running process, so the
    reconciler never repairs anything.  Every reconcile either confirms that
    the ClientConfig and its Secret still hash to the annotations written at
    bootstrap, or asks the process to shut down so the supervisor restarts it
    with a freshly bootstrapped topology.

    ``ApiException`` errors other than 404 propagate so the dispatcher can
    retry them with backoff.
    """

    def __init__(
        self,
        client_cache: ClientCache,
        shutdown: ShutdownSignal,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client_cache = client_cache
        self.shutdown = shutdown
        self.logger = logger or LOGGER
        self._secret_index = SecretIndex()
        self.ready = threading.Event()

    def publish_secret_index(self, index: SecretIndex) -> None:
        """Install the Secret index built by bootstrap and mark the reconciler ready.

        The index is swapped in as a single reference, so concurrent readers
        see either the empty index or the complete one.
        """
        self._secret_index = index
        self.ready.set()

    @property
    def secret_index(self) -> SecretIndex:
        return self._secret_index

    def map_secret(self, secret_key: ObjectKey) -> list[ObjectKey]:
        """Translate a Secret event into the ClientConfig keys to reconcile."""
        client_config_key = self._secret_index.lookup(secret_key)
        if client_config_key is None:
            return []
        return [client_config_key]

    def reconcile(self, key: ObjectKey) -> ReconcileOutcome:
        outcome = self._evaluate(key)
        METRICS.reconcile_total.labels(outcome=outcome.value).inc()
        if outcome.requires_restart:
            self.shutdown.request(f"ClientConfig {key}: {outcome.value}")
        return outcome

    def _evaluate(self, key: ObjectKey) -> ReconcileOutcome:
        control_plane: ControlPlaneClient = self.client_cache.local_client

        client_config = control_plane.get_client_config(key)
        if client_config is None:
            self.logger.info("ClientConfig %s was deleted, shutting down the controller", key)
            return ReconcileOutcome.CONFIG_MISSING

        annotations = client_config_annotations(client_config)
        if (
            CLIENT_CONFIG_HASH_ANNOTATION not in annotations
            or SECRET_HASH_ANNOTATION not in annotations
        ):
            self.logger.info(
                "ClientConfig %s is missing hash annotations, shutting down the controller", key
            )
            return ReconcileOutcome.MARKERS_MISSING

        hashes = calculate_hashes(control_plane, client_config)
        if hashes is None:
            self.logger.info(
                "Secret %s of ClientConfig %s was deleted, shutting down the controller",
                kubeconfig_secret_key(client_config),
                key,
            )
            return ReconcileOutcome.SECRET_MISSING

        config_hash, secret_hash = hashes
        if (
            annotations[CLIENT_CONFIG_HASH_ANNOTATION] != config_hash
            or annotations[SECRET_HASH_ANNOTATION] != secret_hash
        ):
            self.logger.info(
                "ClientConfig %s or its Secret has been modified, shutting down the controller",
                key,
            )
            return ReconcileOutcome.HASH_MISMATCH

        self.logger.debug("ClientConfig %s is unchanged", key)
        return ReconcileOutcome.STABLE
