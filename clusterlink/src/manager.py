from __future__ import annotations

import functools
import logging
import random
import threading
from collections import deque
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from clusterlink.src.kube import ControlPlaneClient, RemoteCluster
from clusterlink.src.metrics import METRICS
from clusterlink.src.reconciler import ClientConfigReconciler, ShutdownSignal
from clusterlink.src.resources import (
    CLIENT_CONFIG_GROUP,
    CLIENT_CONFIG_PLURAL,
    CLIENT_CONFIG_VERSION,
    ObjectKey,
)

LOGGER = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30


def _object_metadata(obj: Any) -> Any:
    if isinstance(obj, dict):
        return obj.get("metadata") or {}
    return getattr(obj, "metadata", None)


def _metadata_field(metadata: Any, dict_name: str, attr_name: str) -> Any:
    if isinstance(metadata, dict):
        return metadata.get(dict_name)
    return getattr(metadata, attr_name, None)


def object_key(obj: Any) -> ObjectKey | None:
    metadata = _object_metadata(obj)
    if not metadata:
        return None
    key = ObjectKey.from_metadata(metadata)
    if not key.name:
        return None
    return key


def object_generation(obj: Any) -> int | None:
    return _metadata_field(_object_metadata(obj), "generation", "generation")


def object_resource_version(obj: Any) -> str | None:
    return _metadata_field(_object_metadata(obj), "resourceVersion", "resource_version")


def list_items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return list(listing.get("items") or [])
    return list(getattr(listing, "items", None) or [])


def backoff_delay(attempt: int) -> float:
    """Exponential backoff (1 s, 2 s, 4 s, ...) capped at 30 s, for 1-based *attempt*."""
    return float(min(MAX_BACKOFF_SECONDS, 2 ** max(0, attempt - 1)))


class WorkQueue:
    """Deduplicating FIFO of ClientConfig keys shared by the worker threads.

    A key waiting in the queue is never queued twice.  A key added while a
    worker is processing it is queued again once that worker calls
    :meth:`done`, so the same key is never reconciled concurrently.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: deque[ObjectKey] = deque()
        self._dirty: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._timers: list[threading.Timer] = []
        self._shutting_down = False

    def add(self, key: ObjectKey) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            METRICS.queue_depth.set(len(self._queue))
            self._cond.notify()

    def add_after(self, key: ObjectKey, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            self._timers = [timer for timer in self._timers if timer.is_alive()]
            timer = threading.Timer(delay_seconds, self.add, args=(key,))
            timer.daemon = True
            self._timers.append(timer)
            timer.start()

    def get(self, timeout: float | None = None) -> ObjectKey | None:
        """Block until a key is available; ``None`` on timeout or shutdown."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                if not self._cond.wait(timeout=timeout):
                    return None
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            METRICS.queue_depth.set(len(self._queue))
            return key

    def done(self, key: ObjectKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._queue.clear()
            self._dirty.clear()
            METRICS.queue_depth.set(0)
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class ResourceWatcher:
    """List-then-watch loop for one resource kind, feeding events to callbacks.

    1. Lists the resource with jittered exponential backoff so transient API
       startup failures do not crash the dispatcher, and reports the full
       listing to ``on_relist``.
    2. Opens a streaming watch from the list's ``resourceVersion`` and
       reports every event to ``on_event``.
    3. On ``410 Gone`` (etcd compaction) re-lists, reports the fresh listing
       and resumes watching.
    4. On other errors applies exponential backoff with jitter, capped at 30 s.

    ``401`` / ``403`` responses are configuration errors (RBAC/auth): the
    loop stops and ``on_fatal`` is invoked with a description.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any],
        on_event: Callable[[str, Any], None],
        on_relist: Callable[[list[Any]], None],
        on_fatal: Callable[[str], None],
        logger: logging.Logger | None = None,
        watch_timeout_seconds: int = 30,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = list_kwargs
        self.on_event = on_event
        self.on_relist = on_relist
        self.on_fatal = on_fatal
        self.logger = logger or LOGGER
        self.watch_timeout_seconds = watch_timeout_seconds
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _access_denied(self, status: int | None, during: str) -> bool:
        if status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            self.kind,
            during,
            status,
        )
        METRICS.watch_errors_total.labels(kind=self.kind).inc()
        self.on_fatal(f"access to {self.kind} denied with status {status}")
        return True

    def _list(self) -> str | None:
        listing = self.list_fn(**self.list_kwargs)
        self.on_relist(list_items(listing))
        return object_resource_version(listing)

    def run(self, stop_event: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                resource_version = self._list()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.kind, resource_version
                )
                break
            except ApiException as exc:
                if self._access_denied(exc.status, "initial list"):
                    return
                self.logger.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, MAX_BACKOFF_SECONDS)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    **self.list_kwargs,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )

                for event in stream:
                    if self._should_stop(stop_event):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    latest_version = object_resource_version(obj)
                    if latest_version:
                        resource_version = latest_version

                    self.on_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc.status, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        resource_version = None
                    except Exception:
                        self.logger.exception("Unexpected error re-listing %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        resource_version = None
                    continue

                if self._access_denied(exc.status, "watch"):
                    return

                self.logger.exception("Kubernetes API %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class Manager:
    """Hosts the remote clusters and dispatches ClientConfig reconciliations.

    Watches ClientConfigs (only generation changes, creations and deletions
    are enqueued) and Secrets (mapped to ClientConfigs through the
    reconciler's Secret index, unmapped Secrets are dropped), and runs
    ``workers`` threads that reconcile queued keys.  Failed reconciles are
    retried with per-key exponential backoff until a shutdown is requested;
    in-flight work then finishes but is never retried.
    """

    def __init__(
        self,
        control_plane: ControlPlaneClient,
        reconciler: ClientConfigReconciler,
        shutdown: ShutdownSignal,
        namespaces: tuple[str, ...] = (),
        workers: int = 2,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.control_plane = control_plane
        self.reconciler = reconciler
        self.shutdown = shutdown
        self.namespaces = namespaces
        self.workers = workers
        self.logger = logger or LOGGER
        self.queue = WorkQueue()
        self.ready = threading.Event()

        self._clusters: dict[str, RemoteCluster] = {}
        self._clusters_lock = threading.Lock()
        self._generations: dict[ObjectKey, int | None] = {}
        self._generations_lock = threading.Lock()
        self._retry_attempts: dict[ObjectKey, int] = {}
        self._retry_lock = threading.Lock()
        self._watchers: list[ResourceWatcher] = []

    @property
    def clusters(self) -> list[RemoteCluster]:
        with self._clusters_lock:
            return list(self._clusters.values())

    def add_cluster(self, cluster: RemoteCluster) -> None:
        with self._clusters_lock:
            if cluster.name in self._clusters:
                raise ValueError(f"Cluster {cluster.name!r} is already managed")
            self._clusters[cluster.name] = cluster
        self.logger.info("Added remote cluster %s to the manager", cluster.name)

    def handle_client_config_event(self, event_type: str, client_config: Any) -> bool:
        """Enqueue a ClientConfig event if it may change the topology.

        ``MODIFIED`` events only count when ``metadata.generation`` changed, so
        status and annotation churn (including the hash annotations written by
        bootstrap) never triggers a reconcile.
        """
        key = object_key(client_config)
        if key is None:
            return False
        generation = object_generation(client_config)

        with self._generations_lock:
            if event_type == "DELETED":
                self._generations.pop(key, None)
                changed = True
            elif event_type == "ADDED":
                self._generations[key] = generation
                changed = True
            elif event_type == "MODIFIED":
                previous = self._generations.get(key)
                self._generations[key] = generation
                changed = previous is None or previous != generation
            else:
                changed = False

        if changed:
            self.queue.add(key)
        return changed

    def handle_secret_event(self, event_type: str, secret: Any) -> bool:
        key = object_key(secret)
        if key is None:
            return False
        mapped = self.reconciler.map_secret(key)
        for client_config_key in mapped:
            self.logger.debug(
                "Secret %s %s maps to ClientConfig %s", key, event_type, client_config_key
            )
            self.queue.add(client_config_key)
        return bool(mapped)

    def resync_client_configs(self, items: list[Any], namespace: str | None = None) -> None:
        """Reconcile a full ClientConfig listing against the generations seen so far.

        New keys, keys whose generation moved and keys that disappeared from
        *namespace* (or from every namespace when ``None``) are enqueued.
        """
        listed: dict[ObjectKey, int | None] = {}
        for item in items:
            key = object_key(item)
            if key is not None:
                listed[key] = object_generation(item)

        to_enqueue: list[ObjectKey] = []
        with self._generations_lock:
            for key in list(self._generations):
                if namespace is not None and key.namespace != namespace:
                    continue
                if key not in listed:
                    self._generations.pop(key)
                    to_enqueue.append(key)
            for key, generation in listed.items():
                if key not in self._generations or self._generations[key] != generation:
                    to_enqueue.append(key)
                self._generations[key] = generation

        for key in to_enqueue:
            self.queue.add(key)

    def resync_secrets(self, items: list[Any]) -> None:
        for item in items:
            self.handle_secret_event("SYNC", item)

    def _request_fatal_shutdown(self, reason: str) -> None:
        self.shutdown.request(reason)

    def _build_watchers(self) -> list[ResourceWatcher]:
        custom_api = self.control_plane.custom_api
        core_api = self.control_plane.core_api
        watchers: list[ResourceWatcher] = []
        scopes: tuple[str | None, ...] = self.namespaces or (None,)
        for namespace in scopes:
            if namespace is None:
                config_list_fn = custom_api.list_cluster_custom_object
                config_kwargs: dict[str, Any] = {}
                secret_list_fn = core_api.list_secret_for_all_namespaces
                secret_kwargs: dict[str, Any] = {}
            else:
                config_list_fn = custom_api.list_namespaced_custom_object
                config_kwargs = {"namespace": namespace}
                secret_list_fn = core_api.list_namespaced_secret
                secret_kwargs = {"namespace": namespace}
            config_kwargs.update(
                group=CLIENT_CONFIG_GROUP,
                version=CLIENT_CONFIG_VERSION,
                plural=CLIENT_CONFIG_PLURAL,
            )
            watchers.append(
                ResourceWatcher(
                    kind="ClientConfig",
                    list_fn=config_list_fn,
                    list_kwargs=config_kwargs,
                    on_event=self.handle_client_config_event,
                    on_relist=functools.partial(self.resync_client_configs, namespace=namespace),
                    on_fatal=self._request_fatal_shutdown,
                    logger=self.logger,
                )
            )
            watchers.append(
                ResourceWatcher(
                    kind="Secret",
                    list_fn=secret_list_fn,
                    list_kwargs=secret_kwargs,
                    on_event=self.handle_secret_event,
                    on_relist=self.resync_secrets,
                    on_fatal=self._request_fatal_shutdown,
                    logger=self.logger,
                )
            )
        return watchers

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued key; returns False when nothing was processed."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self.reconciler.reconcile(key)
            with self._retry_lock:
                self._retry_attempts.pop(key, None)
        except Exception:
            METRICS.reconcile_errors_total.inc()
            if self.shutdown.requested or self.queue.shutting_down:
                self.logger.exception(
                    "Reconcile of ClientConfig %s failed during shutdown; not retrying", key
                )
            else:
                with self._retry_lock:
                    attempt = self._retry_attempts.get(key, 0) + 1
                    self._retry_attempts[key] = attempt
                delay_seconds = backoff_delay(attempt)
                self.logger.exception(
                    "Reconcile of ClientConfig %s failed; retry attempt %d in %.1fs",
                    key,
                    attempt,
                    delay_seconds,
                )
                self.queue.add_after(key, delay_seconds)
        finally:
            self.queue.done(key)
        return True

    def _run_worker(self) -> None:
        while not self.queue.shutting_down:
            self.process_next(timeout=1.0)

    def _run_watcher(self, watcher: ResourceWatcher, stop: threading.Event) -> None:
        """Run *watcher*; if it exits while the manager is still running, shut down."""
        try:
            watcher.run(stop)
        except Exception:
            self.logger.exception("%s watcher crashed", watcher.kind)
        if not stop.is_set() and not self.queue.shutting_down:
            self.shutdown.request(f"{watcher.kind} watcher stopped unexpectedly")

    def request_stop(self) -> None:
        self.queue.shut_down()
        for watcher in self._watchers:
            watcher.request_stop()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Run watchers and workers until *stop_event* (default: the shutdown signal) is set.

        Must only be called after bootstrap published the Secret index.
        """
        if not self.reconciler.ready.is_set():
            raise RuntimeError("Manager cannot start before bootstrap has completed")

        stop = stop_event or self.shutdown.event
        self._watchers = self._build_watchers()
        threads: list[threading.Thread] = []
        for watcher in self._watchers:
            threads.append(
                threading.Thread(
                    target=self._run_watcher,
                    args=(watcher, stop),
                    name=f"watch-{watcher.kind.lower()}",
                    daemon=True,
                )
            )
        workers = [
            threading.Thread(target=self._run_worker, name=f"worker-{index}", daemon=True)
            for index in range(self.workers)
        ]
        for thread in threads + workers:
            thread.start()

        self.ready.set()
        self.logger.info(
            "Manager started with %d remote cluster(s) and %d worker(s)",
            len(self.clusters),
            self.workers,
        )
        stop.wait()

        self.ready.clear()
        self.request_stop()
        for thread in workers + threads:
            thread.join(timeout=5)
            if thread.is_alive():
                self.logger.warning("Thread %s did not stop within 5s", thread.name)
        for cluster in self.clusters:
            try:
                cluster.close()
            except Exception:
                self.logger.warning(
                    "Failed to close client for cluster %s", cluster.name, exc_info=True
                )
        self.logger.info("Manager stopped")
