"""Shared pytest fixtures for all tests."""

import contextlib

import pytest

from cvplus_rollout.adapters.memory import InMemoryMetricsSource, InMemoryTrafficController
from cvplus_rollout.exceptions import InvalidStateError
from cvplus_rollout.models import RiskTier
from cvplus_rollout.rollback.executor import RollbackExecutor
from cvplus_rollout.rollout.controller import RolloutController
from cvplus_rollout.rollout.state_machine import RolloutStateMachine
from cvplus_rollout.storage.record_store import RecordStore
from fixtures import make_config


@pytest.fixture(autouse=True)
def set_test_environment(monkeypatch):
    """
    Automatically set ENVIRONMENT for all tests and disable the log file.

    This prevents ValueError from being raised when initializing
    StructuredLogger or calling setup_logging() in tests.
    """
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("LOG_FILE", "")
    monkeypatch.delenv("ROLLOUT_CONFIG_PATH", raising=False)
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.delenv("ROLLOUT_SQLITE_PATH", raising=False)
    monkeypatch.delenv("ROLLOUT_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("ROLLOUT_WEBHOOK_TOKEN", raising=False)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "rollout.db")


@pytest.fixture
def store(db_path):
    return RecordStore(db_path)


@pytest.fixture
def metrics():
    return InMemoryMetricsSource()


@pytest.fixture
def traffic():
    return InMemoryTrafficController()


@pytest.fixture
def make_machine(store, metrics, traffic):
    """Build a state machine wired to the in-memory adapters."""
    created = []

    def factory(service_id="cv-analyzer", tier=RiskTier.LOW, milestones=None, config=None):
        cfg = config or make_config()
        service = cfg.build_service(service_id, tier)
        if milestones:
            service.milestones = milestones
        executor = RollbackExecutor(traffic, store=store)
        machine = RolloutStateMachine(service, cfg, metrics, traffic, store, executor)
        created.append((machine, executor))
        return machine

    yield factory
    for machine, executor in created:
        machine.close()
        executor.shutdown()


@pytest.fixture
def make_controller(store, metrics, traffic):
    """Build controllers that share the test's store and adapters."""
    created = []

    def factory(config=None, **overrides):
        controller = RolloutController(
            config or make_config(),
            overrides.get("metrics", metrics),
            overrides.get("traffic", traffic),
            overrides.get("store", store),
        )
        created.append(controller)
        return controller

    yield factory
    for controller in created:
        for service_id in controller.active_services():
            machine = controller.machine(service_id)
            if machine is not None:
                with contextlib.suppress(InvalidStateError):
                    machine.cancel()
        controller.shutdown(wait=True)
