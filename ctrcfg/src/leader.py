from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from ctrcfg.src.config import ConfigError, Settings
from ctrcfg.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Single-active-replica election on a ``coordination.k8s.io/v1`` Lease.

    Only the leader runs informers and workers, so two replicas never
    reconcile the same ContainerRuntimeConfig at once.  Every
    ``retry_period_seconds`` the elector reads the Lease and:

    - creates it when missing, becoming leader;
    - renews it when it already holds it;
    - takes it over once the other holder's ``renewTime`` is older than the
      lease duration.

    A ``409 Conflict`` on any write just means another replica won this
    round.  A leader that fails to renew for ``renew_deadline_seconds``
    steps down and calls ``on_stopped_leading``.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if min(lease_duration_seconds, renew_deadline_seconds) < 1 or retry_period_seconds < 0:
            raise ConfigError("lease timings must be positive")
        if not retry_period_seconds < renew_deadline_seconds < lease_duration_seconds:
            raise ConfigError(
                "leader election requires retry period < renew deadline < lease duration"
            )

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._is_leader = False

    @classmethod
    def from_settings(
        cls, coordination_api: CoordinationV1Api, settings: Settings, identity: str
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=settings.namespace,
            lease_name=settings.lease_name,
            identity=identity,
            lease_duration_seconds=settings.lease_duration_seconds,
            renew_deadline_seconds=settings.renew_deadline_seconds,
            retry_period_seconds=settings.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _held_by_other(self, spec: V1LeaseSpec | None, now: datetime) -> bool:
        """True while another identity holds an unexpired lease."""
        if spec is None or not spec.holder_identity or spec.holder_identity == self.identity:
            return False
        if spec.renew_time is None:
            return False
        renew_time = spec.renew_time
        if renew_time.tzinfo is None:
            renew_time = renew_time.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renew_time).total_seconds() < duration

    def _write(self, action: str, call: Callable[[], object]) -> bool:
        try:
            call()
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s %s conflicted, will retry", self.lease_name, action)
            else:
                LOGGER.warning("Failed to %s lease %s: %s", action, self.lease_name, exc.reason)
            return False
        return True

    def _try_acquire_or_renew(self) -> bool:
        """Run one acquire-or-renew round.  Returns True while we hold the lease."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status != 404:
                LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
                return False
            body = V1Lease(
                metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
                spec=V1LeaseSpec(
                    holder_identity=self.identity,
                    lease_duration_seconds=self.lease_duration_seconds,
                    acquire_time=now,
                    renew_time=now,
                ),
            )
            return self._write(
                "create",
                lambda: self.coordination_api.create_namespaced_lease(
                    namespace=self.namespace, body=body
                ),
            )

        if self._held_by_other(lease.spec, now):
            return False

        spec = lease.spec or V1LeaseSpec()
        if spec.acquire_time is None or spec.holder_identity != self.identity:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec
        return self._write(
            "update",
            lambda: self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            ),
        )

    def _release_lease(self) -> None:
        """Clear ``holderIdentity`` so a standby replica can take over immediately."""
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

    def _step_down(self, on_stopped_leading: Callable[[], None]) -> None:
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
        """Campaign for the lease until *stop_event* is set, calling back on transitions."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        campaign_started = time.monotonic()
        last_renewal = campaign_started
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                held = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election round")
                held = False

            if held:
                last_renewal = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(last_renewal - campaign_started)
                    on_started_leading()
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewal
                if since_renewal >= self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without a successful renewal", since_renewal
                    )
                    campaign_started = time.monotonic()
                    self._step_down(on_stopped_leading)
                else:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        since_renewal,
                    )
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._step_down(on_stopped_leading)


def default_identity() -> str:
    """Pod name from the downward API, so each replica holds the lease under a stable name."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
