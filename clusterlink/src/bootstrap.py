from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes.client import ApiClient, ApiException

from clusterlink.src.errors import BootstrapError, SecretNotFoundError
from clusterlink.src.fingerprint import fingerprint
from clusterlink.src.kube import (
    ConnectionParams,
    ControlPlaneClient,
    RemoteCluster,
    build_api_client,
    connection_params,
)
from clusterlink.src.metrics import METRICS
from clusterlink.src.registry import ClientCache
from clusterlink.src.resources import (
    CLIENT_CONFIG_HASH_ANNOTATION,
    SECRET_HASH_ANNOTATION,
    ObjectKey,
    client_config_key,
    client_config_spec,
    kubeconfig_secret_key,
)
from clusterlink.src.reverse_index import SecretIndex, SecretIndexBuilder

LOGGER = logging.getLogger(__name__)


class ClusterSink(Protocol):
    """Whatever hosts the remote clusters once they are built (the dispatcher)."""

    def add_cluster(self, cluster: RemoteCluster) -> None: ...


class ClientConfigBootstrapper:
    """Builds the whole remote cluster topology once, at process start.

    For every ClientConfig in scope the bootstrapper fingerprints the spec and
    its kubeconfig Secret, persists both fingerprints as annotations, builds
    an API client, registers it in the :class:`ClientCache` and hands the
    resulting :class:`RemoteCluster` to the dispatcher.  The annotations are
    written before the cluster is registered anywhere, so an object carrying
    them is not necessarily live; every start rebuilds from scratch anyway.

    Any failure aborts with :class:`BootstrapError`.  There is no partial
    topology: the registry is sealed and the Secret index published only
    after every ClientConfig succeeded.
    """

    def __init__(
        self,
        client_cache: ClientCache,
        sink: ClusterSink,
        client_factory: Callable[[ConnectionParams], ApiClient] = build_api_client,
        on_index_ready: Callable[[SecretIndex], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client_cache = client_cache
        self.sink = sink
        self.client_factory = client_factory
        self.on_index_ready = on_index_ready
        self.logger = logger or LOGGER
        self._started = False

    def bootstrap(self, namespaces: tuple[str, ...] = ()) -> list[RemoteCluster]:
        if self._started:
            raise BootstrapError("Bootstrap may only run once per process")
        self._started = True

        started_at = time.monotonic()
        control_plane: ControlPlaneClient = self.client_cache.local_client
        try:
            client_configs = control_plane.list_client_configs(namespaces)
        except ApiException as exc:
            raise BootstrapError(f"Failed to list ClientConfigs: {exc.reason}") from exc

        index_builder = SecretIndexBuilder()
        clusters: list[RemoteCluster] = []
        for client_config in client_configs:
            self.logger.debug(
                "Initializing ClientConfig %s (namespaces=%s)",
                client_config_key(client_config),
                ",".join(namespaces) or "*",
            )
            clusters.append(
                self._init_cluster(control_plane, client_config, namespaces, index_builder)
            )

        self.client_cache.seal()
        index = index_builder.build()
        if self.on_index_ready is not None:
            self.on_index_ready(index)

        METRICS.bootstrap_clusters.set(len(clusters))
        METRICS.bootstrap_duration_seconds.observe(time.monotonic() - started_at)
        self.logger.info(
            "Finished initializing %d ClientConfig(s): %s",
            len(clusters),
            ", ".join(self.client_cache.names()) or "none",
        )
        return clusters

    def _init_cluster(
        self,
        control_plane: ControlPlaneClient,
        client_config: dict[str, Any],
        namespaces: tuple[str, ...],
        index_builder: SecretIndexBuilder,
    ) -> RemoteCluster:
        key = client_config_key(client_config)
        secret_key = kubeconfig_secret_key(client_config)
        if not secret_key.name:
            raise SecretNotFoundError("spec.kubeConfigSecret.name is not set", key=key)

        try:
            secret = control_plane.get_secret(secret_key)
        except ApiException as exc:
            raise BootstrapError(
                f"Failed to read Secret {secret_key}: {exc.reason}", key=key
            ) from exc
        if secret is None:
            raise SecretNotFoundError(f"Secret {secret_key} does not exist", key=key)

        config_hash = fingerprint(client_config_spec(client_config))
        secret_hash = fingerprint(secret.data or {})
        self._commit_hashes(control_plane, key, client_config, config_hash, secret_hash)

        params = connection_params(client_config, secret)
        try:
            api_client = self.client_factory(params)
        except Exception as exc:
            raise BootstrapError(
                f"Failed to build client for context {params.context_name!r}: {exc}", key=key
            ) from exc

        try:
            self.client_cache.put(params.context_name, api_client)
        except BootstrapError as exc:
            raise type(exc)(str(exc), key=key) from exc

        index_builder.add(secret_key, key)

        cluster = RemoteCluster(
            name=params.context_name, api_client=api_client, namespaces=namespaces
        )
        try:
            self.sink.add_cluster(cluster)
        except Exception as exc:
            raise BootstrapError(
                f"Failed to register cluster {params.context_name!r}: {exc}", key=key
            ) from exc
        return cluster

    def _commit_hashes(
        self,
        control_plane: ControlPlaneClient,
        key: ObjectKey,
        client_config: dict[str, Any],
        config_hash: str,
        secret_hash: str,
    ) -> None:
        updated = copy.deepcopy(client_config)
        metadata = updated.setdefault("metadata", {})
        annotations = metadata.get("annotations") or {}
        annotations[CLIENT_CONFIG_HASH_ANNOTATION] = config_hash
        annotations[SECRET_HASH_ANNOTATION] = secret_hash
        metadata["annotations"] = annotations
        try:
            control_plane.replace_client_config(updated)
        except ApiException as exc:
            raise BootstrapError(
                f"Failed to persist hash annotations: {exc.status} {exc.reason}", key=key
            ) from exc
