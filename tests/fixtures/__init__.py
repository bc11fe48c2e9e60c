"""Shared test helpers: fast rollout configs, snapshots and polling."""

import time

import pytest

from cvplus_rollout.config import MetricsSettings, RolloutConfig, TierPolicy, TrafficSettings
from cvplus_rollout.models import HealthSnapshot, HealthThresholds, RiskTier

TEST_THRESHOLDS = HealthThresholds(
    max_error_rate=0.05,
    latency_multiplier=2.0,
    min_success_rate=0.95,
    min_sample_size=20,
)


def make_config(
    poll_interval=0.01,
    monitoring_duration=0.03,
    approval_timeout=0.2,
    metrics_timeout=1.0,
    traffic_timeout=1.0,
    max_misses=3,
    services=None,
) -> RolloutConfig:
    """Config with millisecond holds so full rollouts finish quickly."""

    def tier(milestones, requires_approval=False):
        return TierPolicy(
            milestones=milestones,
            poll_interval_seconds=poll_interval,
            monitoring_duration_seconds=monitoring_duration,
            requires_approval=requires_approval,
            approval_threshold=50,
            approval_timeout_seconds=approval_timeout,
        )

    return RolloutConfig(
        thresholds=TEST_THRESHOLDS,
        metrics=MetricsSettings(
            window_seconds=60,
            call_timeout_seconds=metrics_timeout,
            max_consecutive_misses=max_misses,
        ),
        traffic=TrafficSettings(call_timeout_seconds=traffic_timeout),
        tiers={
            RiskTier.LOW: tier([10, 25, 50, 75, 100]),
            RiskTier.MEDIUM: tier([10, 25, 50, 75, 100]),
            RiskTier.CRITICAL: tier([5, 10, 25, 50, 75, 100], requires_approval=True),
        },
        services=services or {},
    )


def snapshot(service_id, error_rate=0.0, latency_ms=200.0, success_rate=1.0, volume=1000):
    return HealthSnapshot(
        service_id=service_id,
        error_rate=error_rate,
        latency_ms=latency_ms,
        success_rate=success_rate,
        request_volume=volume,
    )


def wait_for(predicate, timeout=5.0, interval=0.005):
    """Poll until ``predicate()`` is truthy; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(interval)
    pytest.fail("Condition not met within timeout")
