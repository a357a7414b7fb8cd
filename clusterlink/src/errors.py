from __future__ import annotations

from clusterlink.src.resources import ObjectKey


class BootstrapError(RuntimeError):
    """Raised when the multi-cluster topology cannot be fully constructed.

    Always fatal: the process must exit without serving and rely on its
    supervisor to restart it once the offending object is fixed.
    """

    def __init__(self, message: str, key: ObjectKey | None = None) -> None:
        if key is not None:
            message = f"{message} (ClientConfig {key})"
        super().__init__(message)
        self.key = key


class SecretNotFoundError(BootstrapError):
    """A ClientConfig references a Secret that does not exist."""


class InvalidKubeconfigError(BootstrapError):
    """A referenced Secret has no usable ``kubeconfig`` entry."""


class DuplicateClusterError(BootstrapError):
    """Two ClientConfigs resolve to the same cluster identity."""


class RegistrySealedError(RuntimeError):
    """A client was registered after bootstrap finished."""
