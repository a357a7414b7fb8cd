from __future__ import annotations

from dataclasses import dataclass
from typing import Any

CLIENT_CONFIG_GROUP = "config.clusterlink.io"
CLIENT_CONFIG_VERSION = "v1beta1"
CLIENT_CONFIG_PLURAL = "clientconfigs"

CLIENT_CONFIG_HASH_ANNOTATION = "clusterlink.io/resource-hash"
SECRET_HASH_ANNOTATION = "clusterlink.io/secret-hash"

KUBECONFIG_SECRET_KEY = "kubeconfig"


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Namespace/name identity of a namespaced Kubernetes object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_metadata(cls, metadata: Any) -> ObjectKey:
        """Build a key from either a model ``V1ObjectMeta`` or a raw metadata dict."""
        if isinstance(metadata, dict):
            return cls(namespace=metadata.get("namespace") or "", name=metadata.get("name") or "")
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
        )


def client_config_key(client_config: dict[str, Any]) -> ObjectKey:
    return ObjectKey.from_metadata(client_config.get("metadata") or {})


def client_config_spec(client_config: dict[str, Any]) -> dict[str, Any]:
    spec = client_config.get("spec")
    return spec if isinstance(spec, dict) else {}


def client_config_annotations(client_config: dict[str, Any]) -> dict[str, str]:
    metadata = client_config.get("metadata") or {}
    annotations = metadata.get("annotations")
    return annotations if isinstance(annotations, dict) else {}


def kubeconfig_secret_key(client_config: dict[str, Any]) -> ObjectKey:
    """Return the key of the Secret a ClientConfig points at.

    The Secret always lives in the ClientConfig's own namespace.
    """
    secret_ref = client_config_spec(client_config).get("kubeConfigSecret") or {}
    name = secret_ref.get("name") if isinstance(secret_ref, dict) else None
    return ObjectKey(namespace=client_config_key(client_config).namespace, name=name or "")


def kubeconfig_context(client_config: dict[str, Any]) -> str | None:
    """Return ``spec.contextName``, or ``None`` to use the kubeconfig's current context."""
    explicit = client_config_spec(client_config).get("contextName")
    return str(explicit) if explicit else None


def context_name(client_config: dict[str, Any]) -> str:
    """Return the cluster identity a ClientConfig is registered under.

    ``spec.contextName`` wins when set; otherwise the ClientConfig's own name
    is used.  The identity only keys the client registry and never selects
    the kubeconfig context.
    """
    return kubeconfig_context(client_config) or client_config_key(client_config).name
