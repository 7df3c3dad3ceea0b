from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from monitoring_operator.src.config import ConfigError, env_int, parse_bool
from monitoring_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool = True
    lease_name: str = "gmp-operator-leader"
    identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    controller_stop_timeout_seconds: int = 45

    def validate(self) -> LeaderElectionConfig:
        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
                "LEADER_ELECTION_LEASE_DURATION_SECONDS"
            )
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
            )
        return self


def load_leader_election_config(env: Mapping[str, str] | None = None) -> LeaderElectionConfig:
    values = os.environ if env is None else env
    return LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME") or "gmp-operator-leader",
        identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(values),
        lease_duration_seconds=env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values),
        renew_deadline_seconds=env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values),
        retry_period_seconds=env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values),
        controller_stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=values
        ),
    ).validate()


class LeaseLeaderElector:
    """Lease-based leader election on ``coordination.k8s.io/v1``.

    Only the leader runs the reconcile controllers; every replica keeps
    serving admission requests. A missing Lease is created; our own Lease
    is renewed; another holder's Lease is taken over once
    ``renewTime + leaseDurationSeconds`` has passed. Conflicts are retried
    on the next period. Leadership is given up after ``renew_deadline``
    seconds without a successful renewal.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        config: LeaderElectionConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.coordination_api = coordination_api
        self.namespace = namespace
        self.config = config.validate()
        self._clock = clock
        self._now = now
        self._is_leader = False
        self._last_renew = 0.0
        self._wait_started = 0.0

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def lease_name(self) -> str:
        return self.config.lease_name

    def _lease(self, spec: V1LeaseSpec) -> V1Lease:
        return V1Lease(metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace), spec=spec)

    def try_acquire_or_renew(self) -> bool:
        now = self._now()
        try:
            lease = self.coordination_api.read_namespaced_lease(name=self.lease_name, namespace=self.namespace)
        except ApiException as exc:
            if exc.status != 404:
                LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
                return False
            return self._write(
                lambda: self.coordination_api.create_namespaced_lease(
                    namespace=self.namespace,
                    body=self._lease(
                        V1LeaseSpec(
                            holder_identity=self.config.identity,
                            lease_duration_seconds=self.config.lease_duration_seconds,
                            acquire_time=now,
                            renew_time=now,
                        )
                    ),
                ),
                "create",
            )

        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity and spec.holder_identity != self.config.identity and spec.renew_time:
            renewed = spec.renew_time if spec.renew_time.tzinfo else spec.renew_time.replace(tzinfo=UTC)
            duration = spec.lease_duration_seconds or self.config.lease_duration_seconds
            if (now - renewed).total_seconds() < duration:
                return False

        if spec.holder_identity != self.config.identity or spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.config.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.config.lease_duration_seconds
        lease.spec = spec
        return self._write(
            lambda: self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            ),
            "update",
        )

    def _write(self, call: Callable[[], object], verb: str) -> bool:
        try:
            call()
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s %s conflict, will retry", self.lease_name, verb)
            else:
                LOGGER.warning("Failed to %s lease %s: %s", verb, self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear our holderIdentity so another replica can take over immediately."""
        try:
            lease = self.coordination_api.read_namespaced_lease(name=self.lease_name, namespace=self.namespace)
            if lease.spec and lease.spec.holder_identity == self.config.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _became_leader(self, on_started_leading: Callable[[], None]) -> None:
        self._is_leader = True
        self._last_renew = self._clock()
        LOGGER.info("Became leader (identity=%s)", self.config.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(self._last_renew - self._wait_started)
        on_started_leading()

    def _lost_leadership(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        self._wait_started = self._clock()
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def step(self, on_started_leading: Callable[[], None], on_stopped_leading: Callable[[], None]) -> None:
        """Run one acquire-or-renew cycle and fire the callbacks on transitions."""
        try:
            acquired = self.try_acquire_or_renew()
        except Exception:
            LOGGER.exception("Unexpected error in leader election cycle")
            acquired = False

        if acquired:
            if self._is_leader:
                self._last_renew = self._clock()
            else:
                self._became_leader(on_started_leading)
            return
        if not self._is_leader:
            return
        elapsed = self._clock() - self._last_renew
        if elapsed < self.config.renew_deadline_seconds:
            LOGGER.warning(
                "Lease renewal failed; holding leadership for up to %ss (elapsed %.2fs)",
                self.config.renew_deadline_seconds,
                elapsed,
            )
            return
        LOGGER.warning("Lost leader lease after %.2fs without successful renewal", elapsed)
        self._lost_leadership(on_stopped_leading)

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Block until *stop_event*, acquiring and renewing the lease every retry period."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.config.identity,
        )
        self._wait_started = self._clock()
        METRICS.leader_state.set(0)
        while not stop_event.is_set():
            self.step(on_started_leading, on_stopped_leading)
            stop_event.wait(timeout=self.config.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._lost_leadership(on_stopped_leading)


def default_identity(env: Mapping[str, str] | None = None) -> str:
    """Return this replica's identity; ``HOSTNAME`` is the pod name in Kubernetes."""
    values = os.environ if env is None else env
    return values.get("HOSTNAME") or values.get("POD_NAME") or "unknown"
