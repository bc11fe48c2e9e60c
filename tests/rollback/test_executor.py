"""Tests for RollbackExecutor."""

from unittest.mock import MagicMock

import pytest

from cvplus_rollout.adapters.memory import InMemoryTrafficController
from cvplus_rollout.exceptions import StorageError
from cvplus_rollout.models import RiskTier, RollbackOutcome, RollbackScope, RolloutRun
from cvplus_rollout.rollback.executor import RollbackExecutor


@pytest.fixture
def executor(traffic, store):
    executor = RollbackExecutor(traffic, store=store, timeout_seconds=1.0)
    yield executor
    executor.shutdown()


class TestServiceRollback:
    def test_sets_traffic_to_zero(self, executor, traffic, store):
        traffic.percentages["cv-analyzer"] = 25

        event = executor.execute("cv-analyzer", "ERROR_RATE")

        assert event.outcome == RollbackOutcome.SUCCESS
        assert event.scope == RollbackScope.SERVICE
        assert traffic.percentages["cv-analyzer"] == 0
        assert store.rollback_events("cv-analyzer") == [event]

    def test_is_idempotent(self, executor, traffic, store):
        first = executor.execute("cv-analyzer", "ERROR_RATE")
        second = executor.execute("cv-analyzer", "manual")

        assert first.succeeded and second.succeeded
        assert traffic.history == [("cv-analyzer", 0)]
        assert len(store.rollback_events("cv-analyzer")) == 2

    def test_clear_allows_another_revert(self, executor, traffic):
        executor.execute("cv-analyzer", "ERROR_RATE")
        executor.clear("cv-analyzer")

        executor.execute("cv-analyzer", "LATENCY")

        assert traffic.history == [("cv-analyzer", 0), ("cv-analyzer", 0)]

    def test_traffic_error_is_reported_not_raised(self, executor, traffic, store):
        traffic.fail.add(("cv-analyzer", 0))

        event = executor.execute("cv-analyzer", "ERROR_RATE")

        assert event.outcome == RollbackOutcome.FAILURE
        assert "TrafficUpdateError" in event.error
        assert not executor.is_rolled_back("cv-analyzer")
        assert store.rollback_events("cv-analyzer")[0].outcome == RollbackOutcome.FAILURE

    def test_refusal_is_failure(self, executor, traffic):
        traffic.refuse.add(("cv-analyzer", 0))

        event = executor.execute("cv-analyzer", "ERROR_RATE")

        assert not event.succeeded
        assert "refused" in event.error

    def test_failed_revert_is_retried(self, executor, traffic):
        traffic.fail.add(("cv-analyzer", 0))
        executor.execute("cv-analyzer", "ERROR_RATE")
        traffic.fail.clear()

        event = executor.execute("cv-analyzer", "ERROR_RATE")

        assert event.succeeded
        assert len(traffic.history) == 2

    def test_timeout_is_failure(self, store):
        slow = InMemoryTrafficController(delay_seconds=0.3)
        executor = RollbackExecutor(slow, store=store, timeout_seconds=0.05)

        event = executor.execute("cv-analyzer", "ERROR_RATE")
        executor.shutdown()

        assert event.outcome == RollbackOutcome.FAILURE
        assert "timed out" in event.error

    def test_storage_failure_does_not_raise(self, traffic):
        store = MagicMock()
        store.record_rollback.side_effect = StorageError("disk full")
        executor = RollbackExecutor(traffic, store=store)

        event = executor.execute("cv-analyzer", "ERROR_RATE")
        executor.shutdown()

        assert event.succeeded
        store.record_rollback.assert_called_once_with(event)

    def test_notifier_receives_event(self, traffic, store):
        notifier = MagicMock()
        executor = RollbackExecutor(traffic, store=store, notifier=notifier)

        event = executor.execute("cv-analyzer", "ERROR_RATE")
        executor.shutdown()

        notifier.rollback_executed.assert_called_once_with(event)


class TestGlobalRollback:
    def test_targets_include_live_and_stored_runs(self, traffic, store):
        store.create_run(RolloutRun(service_id="cache-manager", tier=RiskTier.MEDIUM, milestones=[50, 100]))
        executor = RollbackExecutor(
            traffic, store=store, active_services=lambda: ["cv-analyzer", "cache-manager"]
        )

        assert executor.targets() == ["cache-manager", "cv-analyzer"]
        executor.shutdown()

    def test_failure_for_one_service_does_not_stop_others(self, traffic, store):
        traffic.fail.add(("cache-manager", 0))
        executor = RollbackExecutor(
            traffic,
            store=store,
            active_services=lambda: ["cv-analyzer", "cache-manager", "action-orchestrator"],
        )

        events = executor.execute_global("incident")
        executor.shutdown()

        outcomes = {event.service_id: event.outcome for event in events}
        assert outcomes == {
            "action-orchestrator": RollbackOutcome.SUCCESS,
            "cache-manager": RollbackOutcome.FAILURE,
            "cv-analyzer": RollbackOutcome.SUCCESS,
        }
        assert all(event.scope == RollbackScope.GLOBAL for event in events)
        assert len(store.rollback_events()) == 3

    def test_explicit_targets(self, executor, traffic):
        events = executor.execute_global("incident", ["cv-analyzer"])

        assert [event.service_id for event in events] == ["cv-analyzer"]
        assert traffic.history == [("cv-analyzer", 0)]

    def test_nothing_active(self, executor):
        assert executor.execute_global("incident") == []
