"""Tests for rollout configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from cvplus_rollout.config import RolloutConfig, TierPolicy, load_config, resolve_config_path
from cvplus_rollout.exceptions import ConfigurationError
from cvplus_rollout.models import RiskTier

SAMPLE_CONFIG = Path(__file__).resolve().parents[1] / "config" / "rollout.yaml"


def _write(tmp_path, data):
    path = tmp_path / "rollout.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_defaults_without_path():
    config = load_config()

    assert config.tiers[RiskTier.LOW].milestones == [10, 25, 50, 75, 100]
    assert config.tiers[RiskTier.CRITICAL].requires_approval is True
    assert config.thresholds.max_error_rate == 0.05
    assert config.services == {}


def test_sample_config_loads():
    config = load_config(str(SAMPLE_CONFIG))

    assert config.services_in_phase(1) == ["cv-analyzer", "improvement-orchestrator"]
    assert config.services["action-orchestrator"].tier == RiskTier.CRITICAL
    assert config.policy_for_tier(RiskTier.MEDIUM).polls_per_hold == 30


def test_path_from_environment(monkeypatch, tmp_path):
    path = _write(tmp_path, {"services": {"cv-analyzer": {"tier": "low"}}})
    monkeypatch.setenv("ROLLOUT_CONFIG_PATH", path)

    assert resolve_config_path() == Path(path)
    assert "cv-analyzer" in load_config().services


def test_missing_file():
    with pytest.raises(ConfigurationError, match="not found"):
        load_config("/nonexistent/rollout.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "rollout.yaml"
    path.write_text("tiers: [unclosed")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_config(str(path))


def test_unknown_key_is_rejected(tmp_path):
    path = _write(tmp_path, {"thresholds": {"max_error_rate": 0.05, "latency_multiplier": 2.0,
                                            "min_success_rate": 0.95, "max_latency": 10}})

    with pytest.raises(ConfigurationError):
        load_config(path)


@pytest.mark.parametrize("milestones", [[], [50, 25, 100], [0, 100], [50, 150]])
def test_invalid_milestones(tmp_path, milestones):
    path = _write(tmp_path, {"services": {"cv-analyzer": {"tier": "low", "milestones": milestones}}})

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_hold_shorter_than_poll_interval_is_rejected():
    with pytest.raises(ValueError):
        TierPolicy(milestones=[100], poll_interval_seconds=60, monitoring_duration_seconds=30)


def test_polls_per_hold_rounds_float_ratios():
    policy = TierPolicy(milestones=[100], poll_interval_seconds=0.01, monitoring_duration_seconds=0.03)

    assert policy.polls_per_hold == 3


def test_gate_applies_from_threshold():
    policy = TierPolicy(
        milestones=[25, 50, 100],
        poll_interval_seconds=1,
        monitoring_duration_seconds=1,
        requires_approval=True,
        approval_threshold=50,
    )

    assert not policy.gate_applies(25)
    assert policy.gate_applies(50)


class TestBuildService:
    def test_registered_service_uses_tier_schedule(self):
        config = load_config(str(SAMPLE_CONFIG))

        service = config.build_service("circuit-breaker-core")

        assert service.tier == RiskTier.CRITICAL
        assert service.milestones == [5, 10, 25, 50, 75, 100]
        assert service.phase == 3

    def test_milestone_override(self, tmp_path):
        path = _write(tmp_path, {"services": {"cv-analyzer": {"tier": "low", "milestones": [20, 100]}}})

        service = load_config(path).build_service("cv-analyzer")

        assert service.milestones == [20, 100]

    def test_unknown_service_with_tier(self):
        service = RolloutConfig().build_service("new-function", RiskTier.MEDIUM)

        assert service.tier == RiskTier.MEDIUM
        assert service.phase is None

    def test_unknown_service_without_tier(self):
        with pytest.raises(ConfigurationError, match="Unknown service"):
            RolloutConfig().build_service("new-function")
