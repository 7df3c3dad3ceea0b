from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from monitoring_operator.src.config import ConfigError
from monitoring_operator.src.leader import (
    LeaderElectionConfig,
    LeaseLeaderElector,
    default_identity,
    load_leader_election_config,
)
from monitoring_operator.src.metrics import METRICS


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_elector(
    coordination_api: Any = None,
    identity: str = "pod-1",
    lease_duration_seconds: int = 15,
    renew_deadline_seconds: int = 10,
    retry_period_seconds: int = 0,
    clock: Any = None,
) -> LeaseLeaderElector:
    config = LeaderElectionConfig(
        lease_name="test-lease",
        identity=identity,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
    )
    kwargs = {"clock": clock} if clock is not None else {}
    return LeaseLeaderElector(coordination_api or MagicMock(), "gmp-system", config, **kwargs)


def _lease(holder: str | None, renewed_ago: float, acquired_ago: float = 30) -> V1Lease:
    now = datetime.now(UTC)
    return V1Lease(
        metadata=V1ObjectMeta(name="test-lease", namespace="gmp-system"),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=now - timedelta(seconds=renewed_ago),
            acquire_time=now - timedelta(seconds=acquired_ago),
        ),
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_load_config_defaults() -> None:
    config = load_leader_election_config({"HOSTNAME": "gmp-operator-abc"})

    assert config.enabled is True
    assert config.lease_name == "gmp-operator-leader"
    assert config.identity == "gmp-operator-abc"
    assert (config.lease_duration_seconds, config.renew_deadline_seconds, config.retry_period_seconds) == (15, 10, 2)


def test_load_config_from_env() -> None:
    config = load_leader_election_config(
        {
            "LEADER_ELECTION_ENABLED": "false",
            "LEADER_ELECTION_LEASE_NAME": "custom",
            "LEADER_ELECTION_IDENTITY": "me",
            "LEADER_ELECTION_LEASE_DURATION_SECONDS": "30",
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS": "20",
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS": "5",
        }
    )

    assert config.enabled is False
    assert config.lease_name == "custom"
    assert config.identity == "me"
    assert config.lease_duration_seconds == 30


def test_config_rejects_invalid_timing_relationships() -> None:
    with pytest.raises(ConfigError, match="RENEW_DEADLINE_SECONDS must be smaller than"):
        _make_elector(lease_duration_seconds=10, renew_deadline_seconds=10)

    with pytest.raises(ConfigError, match="RETRY_PERIOD_SECONDS must be smaller than"):
        _make_elector(lease_duration_seconds=15, renew_deadline_seconds=5, retry_period_seconds=5)


def test_default_identity_uses_hostname() -> None:
    assert default_identity({"HOSTNAME": "my-pod-abc123", "POD_NAME": "other"}) == "my-pod-abc123"


def test_default_identity_falls_back_to_pod_name() -> None:
    assert default_identity({"POD_NAME": "operator-xyz"}) == "operator-xyz"
    assert default_identity({}) == "unknown"


# ---------------------------------------------------------------------------
# Lease handling
# ---------------------------------------------------------------------------


def test_creates_lease_when_not_found() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

    assert _make_elector(api).try_acquire_or_renew() is True

    body = api.create_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "pod-1"
    assert body.metadata.namespace == "gmp-system"


def test_renew_keeps_acquire_time() -> None:
    existing = _lease("pod-1", renewed_ago=5)
    original_acquire = existing.spec.acquire_time
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    assert _make_elector(api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.acquire_time == original_acquire


def test_does_not_take_active_lease_from_another_holder() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=2)

    assert _make_elector(api).try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


def test_takes_over_expired_lease_and_resets_acquire_time() -> None:
    existing = _lease("pod-2", renewed_ago=60, acquired_ago=120)
    old_acquire = existing.spec.acquire_time
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    assert _make_elector(api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "pod-1"
    assert body.spec.acquire_time != old_acquire


@pytest.mark.parametrize("status", [409, 500])
def test_write_failures_are_not_leadership(status: int) -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    api.create_namespaced_lease.side_effect = ApiException(status=status, reason="nope")

    assert _make_elector(api).try_acquire_or_renew() is False


def test_release_clears_only_our_holder_identity() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=1)

    _make_elector(api).release()
    api.replace_namespaced_lease.assert_not_called()

    api.read_namespaced_lease.return_value = _lease("pod-1", renewed_ago=1)
    _make_elector(api).release()
    assert api.replace_namespaced_lease.call_args.kwargs["body"].spec.holder_identity is None


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def test_step_loses_leadership_after_renew_deadline() -> None:
    clock = FakeClock()
    elector = _make_elector(renew_deadline_seconds=3, clock=clock)
    events: list[str] = []

    def started() -> None:
        events.append("started")

    def stopped() -> None:
        events.append("stopped")

    with patch.object(elector, "try_acquire_or_renew", side_effect=[True, False, False]):
        elector.step(started, stopped)
        clock.now = 1.0
        elector.step(started, stopped)
        assert elector.is_leader
        clock.now = 3.5
        elector.step(started, stopped)

    assert events == ["started", "stopped"]
    assert not elector.is_leader


def test_step_survives_unexpected_errors() -> None:
    elector = _make_elector()
    with patch.object(elector, "try_acquire_or_renew", side_effect=ConnectionError("blip")):
        elector.step(lambda: None, lambda: None)

    assert not elector.is_leader


def test_run_releases_lease_and_reports_stop_on_shutdown() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ApiException(status=404, reason="Not Found"),
        _lease("pod-1", renewed_ago=0),
    ]
    elector = _make_elector(api)
    stop = threading.Event()
    stopped = threading.Event()

    elector.run(on_started_leading=stop.set, on_stopped_leading=stopped.set, stop_event=stop)

    assert stopped.is_set()
    assert not elector.is_leader
    assert api.replace_namespaced_lease.call_args.kwargs["body"].spec.holder_identity is None


def test_leader_metrics_track_acquire_latency_and_transitions() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    clock = MagicMock(side_effect=[10.0, 14.0, 15.0])
    elector = _make_elector(api, clock=clock)
    stop = threading.Event()

    acquired_before = METRICS.leader_transitions_total.labels(transition="acquired")._value.get()
    lost_before = METRICS.leader_transitions_total.labels(transition="lost")._value.get()
    latency_sum_before = METRICS.leader_acquire_latency_seconds._sum.get()

    elector.run(on_started_leading=stop.set, on_stopped_leading=lambda: None, stop_event=stop)

    assert METRICS.leader_transitions_total.labels(transition="acquired")._value.get() - acquired_before == 1
    assert METRICS.leader_transitions_total.labels(transition="lost")._value.get() - lost_before == 1
    assert METRICS.leader_acquire_latency_seconds._sum.get() - latency_sum_before == pytest.approx(4.0)
    assert METRICS.leader_state._value.get() == 0
