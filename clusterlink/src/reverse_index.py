from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from types import MappingProxyType

from clusterlink.src.resources import ObjectKey

LOGGER = logging.getLogger(__name__)


class SecretIndex:
    """Immutable mapping from a kubeconfig Secret to the ClientConfig using it.

    Built once per process by :class:`SecretIndexBuilder` and then only read,
    so event-mapping callbacks on any thread always see a complete index.
    """

    def __init__(self, entries: Mapping[ObjectKey, ObjectKey] | None = None) -> None:
        self._entries: Mapping[ObjectKey, ObjectKey] = MappingProxyType(dict(entries or {}))

    def lookup(self, secret_key: ObjectKey) -> ObjectKey | None:
        return self._entries.get(secret_key)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ObjectKey]:
        return iter(self._entries)


class SecretIndexBuilder:
    """Collects Secret → ClientConfig entries while bootstrap runs.

    A Secret shared by several ClientConfigs keeps only the last mapping;
    drift in such a Secret is only attributed to that one ClientConfig.
    """

    def __init__(self) -> None:
        self._entries: dict[ObjectKey, ObjectKey] = {}

    def add(self, secret_key: ObjectKey, client_config_key: ObjectKey) -> None:
        previous = self._entries.get(secret_key)
        if previous is not None and previous != client_config_key:
            LOGGER.debug(
                "Secret %s is shared by ClientConfigs %s and %s; keeping %s",
                secret_key,
                previous,
                client_config_key,
                client_config_key,
            )
        self._entries[secret_key] = client_config_key

    def build(self) -> SecretIndex:
        return SecretIndex(self._entries)
