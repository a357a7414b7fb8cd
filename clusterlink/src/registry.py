from __future__ import annotations

import logging
import threading
from typing import Any

from clusterlink.src.errors import DuplicateClusterError, RegistrySealedError

LOGGER = logging.getLogger(__name__)


class ClientCache:
    """Process-scoped registry of remote cluster API clients keyed by context name.

    Entries are written only while bootstrap runs.  ``seal()`` ends that
    phase; afterwards the cache is read-only and may be shared freely
    between worker threads without locking.  There is intentionally no way
    to remove or replace an entry: changing the topology requires a process
    restart.
    """

    def __init__(self, local_client: Any) -> None:
        self._local_client = local_client
        self._clients: dict[str, Any] = {}
        self._write_lock = threading.Lock()
        self._sealed = False

    @property
    def local_client(self) -> Any:
        """API client for the control-plane cluster the ClientConfigs live in."""
        return self._local_client

    @property
    def sealed(self) -> bool:
        return self._sealed

    def put(self, context_name: str, client: Any) -> None:
        with self._write_lock:
            if self._sealed:
                raise RegistrySealedError(
                    f"Cannot register cluster {context_name!r} after bootstrap completed"
                )
            if context_name in self._clients:
                raise DuplicateClusterError(
                    f"Cluster context {context_name!r} is configured by more than one ClientConfig"
                )
            self._clients[context_name] = client
        LOGGER.debug("Registered remote client for context %s", context_name)

    def get(self, context_name: str) -> Any | None:
        return self._clients.get(context_name)

    def seal(self) -> None:
        with self._write_lock:
            self._sealed = True

    def names(self) -> list[str]:
        return sorted(self._clients)

    def __contains__(self, context_name: object) -> bool:
        return context_name in self._clients

    def __len__(self) -> int:
        return len(self._clients)
