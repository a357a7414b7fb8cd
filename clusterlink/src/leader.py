from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from clusterlink.src.metrics import METRICS
from clusterlink.src.settings import LeaderElectionSettings

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Lease-based leader election using the ``coordination.k8s.io/v1`` Lease API.

    Guarantees a single active controller per topology, so only one replica
    writes hash annotations and owns the remote clusters.  The algorithm:

    1. Read the Lease.  If it does not exist, create it and become leader.
    2. If *we* hold it, renew ``renewTime``.
    3. If another identity holds it, wait until ``renewTime +
       leaseDurationSeconds`` has passed, then take over.
    4. On ``409 Conflict`` retry on the next cycle.

    Leadership is held at most once per elector.  A replica that loses the
    lease calls ``on_stopped_leading`` and stops campaigning: its remote
    clusters cannot be handed back, so the process is expected to exit and
    bootstrap again after restart.

    All timestamps use UTC to avoid timezone ambiguity across nodes.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        settings: LeaderElectionSettings,
    ) -> None:
        if settings.renew_deadline_seconds >= settings.lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if settings.retry_period_seconds >= settings.renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = settings.namespace
        self.lease_name = settings.lease_name
        self.identity = settings.identity
        self.lease_duration_seconds = settings.lease_duration_seconds
        self.renew_deadline_seconds = settings.renew_deadline_seconds
        self.retry_period_seconds = settings.retry_period_seconds
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _lease_expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.renew_time is None:
            return True
        renew_time = spec.renew_time
        if renew_time.tzinfo is None:
            renew_time = renew_time.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renew_time).total_seconds() >= duration

    def try_acquire_or_renew(self) -> bool:
        """Attempt a single acquire-or-renew cycle.  Returns True when we hold the lease."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is not None and spec.holder_identity not in (None, self.identity):
            if not self._lease_expired(spec, now):
                return False
            LOGGER.info(
                "Lease %s held by %s expired, taking over", self.lease_name, spec.holder_identity
            )
        return self._write_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def _write_lease(self, lease: V1Lease, now: datetime) -> bool:
        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear holderIdentity on the Lease so another replica can take over at once."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _lose_leadership(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until leader, start leading, then renew until stopped or lost.

        ``on_started_leading`` must not block; it is called on this thread.
        """
        LOGGER.info(
            "Starting leader election for lease %s (identity=%s)",
            self.lease_name,
            self.identity,
        )
        campaign_started = time.monotonic()
        last_renew_success = campaign_started
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                acquired = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                acquired = False

            if acquired:
                last_renew_success = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(
                        last_renew_success - campaign_started
                    )
                    on_started_leading()
            elif self._is_leader:
                elapsed = time.monotonic() - last_renew_success
                if elapsed >= self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without successful renewal", elapsed
                    )
                    self._lose_leadership(on_stopped_leading)
                    return
                LOGGER.warning(
                    "Lease renewal failed; holding leadership for up to %ss (elapsed %.2fs)",
                    self.renew_deadline_seconds,
                    elapsed,
                )
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._lose_leadership(on_stopped_leading)
