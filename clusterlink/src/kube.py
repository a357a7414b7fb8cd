from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.client import ApiClient, ApiException, CoreV1Api, CustomObjectsApi, V1Secret
from kubernetes.config.config_exception import ConfigException

from clusterlink.src.errors import InvalidKubeconfigError
from clusterlink.src.resources import (
    CLIENT_CONFIG_GROUP,
    CLIENT_CONFIG_PLURAL,
    CLIENT_CONFIG_VERSION,
    KUBECONFIG_SECRET_KEY,
    ObjectKey,
    client_config_key,
    context_name,
    kubeconfig_context,
)

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration for the control-plane cluster.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


class ControlPlaneClient:
    """Uncached access to ClientConfigs and Secrets in the control-plane cluster.

    "Not found" is reported as ``None``; every other API failure propagates as
    :class:`ApiException` so callers can decide between retry and abort.
    """

    def __init__(self, core_api: CoreV1Api, custom_api: CustomObjectsApi) -> None:
        self.core_api = core_api
        self.custom_api = custom_api

    def get_client_config(self, key: ObjectKey) -> dict[str, Any] | None:
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=CLIENT_CONFIG_GROUP,
                version=CLIENT_CONFIG_VERSION,
                namespace=key.namespace,
                plural=CLIENT_CONFIG_PLURAL,
                name=key.name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def list_client_configs(self, namespaces: tuple[str, ...] = ()) -> list[dict[str, Any]]:
        """List ClientConfigs in *namespaces*, or in every namespace when empty."""
        if not namespaces:
            listing = self.custom_api.list_cluster_custom_object(
                group=CLIENT_CONFIG_GROUP,
                version=CLIENT_CONFIG_VERSION,
                plural=CLIENT_CONFIG_PLURAL,
            )
            return list(listing.get("items") or [])

        items: list[dict[str, Any]] = []
        for namespace in namespaces:
            listing = self.custom_api.list_namespaced_custom_object(
                group=CLIENT_CONFIG_GROUP,
                version=CLIENT_CONFIG_VERSION,
                namespace=namespace,
                plural=CLIENT_CONFIG_PLURAL,
            )
            items.extend(listing.get("items") or [])
        return items

    def replace_client_config(self, client_config: dict[str, Any]) -> dict[str, Any]:
        """Persist *client_config*; a stale ``resourceVersion`` yields a 409 ApiException."""
        key = client_config_key(client_config)
        return self.custom_api.replace_namespaced_custom_object(
            group=CLIENT_CONFIG_GROUP,
            version=CLIENT_CONFIG_VERSION,
            namespace=key.namespace,
            plural=CLIENT_CONFIG_PLURAL,
            name=key.name,
            body=client_config,
        )

    def get_secret(self, key: ObjectKey) -> V1Secret | None:
        try:
            return self.core_api.read_namespaced_secret(name=key.name, namespace=key.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise


@dataclass(frozen=True)
class ConnectionParams:
    """Everything needed to build an API client for one remote cluster."""

    context_name: str
    kubeconfig: dict[str, Any] = field(repr=False)
    kubeconfig_context: str | None = None


def connection_params(client_config: dict[str, Any], secret: V1Secret) -> ConnectionParams:
    """Derive connection parameters from the kubeconfig stored in *secret*.

    The Secret's ``kubeconfig`` entry is base64 encoded YAML, as returned by
    the API server.
    """
    key = client_config_key(client_config)
    data = secret.data or {}
    raw = data.get(KUBECONFIG_SECRET_KEY)
    if not raw:
        raise InvalidKubeconfigError(
            f"Secret {secret.metadata.namespace}/{secret.metadata.name} has no "
            f"{KUBECONFIG_SECRET_KEY!r} entry",
            key=key,
        )
    try:
        kubeconfig = yaml.safe_load(base64.b64decode(raw, validate=True))
    except (binascii.Error, yaml.YAMLError) as exc:
        raise InvalidKubeconfigError(
            f"Secret {secret.metadata.namespace}/{secret.metadata.name} holds an "
            f"unreadable kubeconfig: {exc}",
            key=key,
        ) from exc
    if not isinstance(kubeconfig, dict):
        raise InvalidKubeconfigError(
            f"Secret {secret.metadata.namespace}/{secret.metadata.name} kubeconfig "
            "is not a mapping",
            key=key,
        )
    return ConnectionParams(
        context_name=context_name(client_config),
        kubeconfig=kubeconfig,
        kubeconfig_context=kubeconfig_context(client_config),
    )


def build_api_client(params: ConnectionParams) -> ApiClient:
    """Build an isolated API client from the kubeconfig in *params*.

    The kubeconfig's ``current-context`` is used unless the ClientConfig named
    a context explicitly.

    Each remote cluster gets its own ``ApiClient`` so no global kubernetes
    configuration is touched.
    """
    return config.new_client_from_config_dict(
        config_dict=params.kubeconfig,
        context=params.kubeconfig_context,
        persist_config=False,
    )


@dataclass
class RemoteCluster:
    """A live connection to one remote cluster, scoped to the watched namespaces."""

    name: str
    api_client: ApiClient
    namespaces: tuple[str, ...] = ()

    def close(self) -> None:
        self.api_client.close()
