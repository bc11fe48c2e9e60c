"""Tests for the rollout and rollback command line entrypoints."""

import json
from unittest.mock import patch

import pytest
import yaml

from cvplus_rollout import cli
from cvplus_rollout.exceptions import InvalidStateError, StorageError
from cvplus_rollout.models import (
    RiskTier,
    RolloutRecord,
    RolloutRun,
    RolloutState,
    ServiceStatus,
    TransitionReason,
)
from cvplus_rollout.storage.record_store import RecordStore
from fixtures import snapshot

FAST_TIER = {"poll_interval_seconds": 0.01, "monitoring_duration_seconds": 0.03}


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep stdout to the single JSON document each command prints."""
    with patch("cvplus_rollout.cli.setup_logging"), patch("cvplus_rollout.cli.load_dotenv"):
        yield


@pytest.fixture
def config_path(tmp_path):
    data = {
        "tiers": {
            "low": {"milestones": [25, 50, 100], **FAST_TIER},
            "medium": {"milestones": [50, 100], **FAST_TIER},
            "critical": {
                "milestones": [50, 100],
                **FAST_TIER,
                "requires_approval": True,
                "approval_threshold": 50,
                "approval_timeout_seconds": 0.05,
            },
        },
        "services": {
            "cv-analyzer": {"tier": "low", "phase": 1},
            "cache-manager": {"tier": "medium", "phase": 2},
        },
    }
    path = tmp_path / "rollout.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


@pytest.fixture
def run_cli(config_path, db_path, capsys):
    def run(*args, entrypoint=cli.main):
        code = entrypoint(["--config", config_path, "--db-path", db_path, "--dry-run", *args])
        lines = capsys.readouterr().out.strip().splitlines()
        return code, json.loads(lines[-1])

    return run


def _orphan_run(db_path, service_id="cv-analyzer"):
    store = RecordStore(db_path)
    run = store.create_run(RolloutRun(service_id=service_id, tier=RiskTier.LOW, milestones=[50, 100]))
    store.append(
        RolloutRecord(
            run_id=run.run_id,
            service_id=service_id,
            from_state=RolloutState.PENDING,
            to_state=RolloutState.ADVANCING,
            milestone=50,
            reason=TransitionReason.STARTED,
            snapshot=snapshot(service_id),
        )
    )
    return run


# ============================================================
# rollout
# ============================================================


def test_start_completes(run_cli):
    code, payload = run_cli("start", "cv-analyzer")

    assert code == 0
    assert payload["event"] == "rollout_finished"
    assert payload["state"] == "COMPLETED"
    assert payload["milestone"] == 100


def test_start_unregistered_service_with_tier(run_cli):
    code, payload = run_cli("start", "new-function", "--tier", "medium")

    assert code == 0
    assert payload["tier"] == "medium"


def test_start_unregistered_service_without_tier(run_cli):
    code, payload = run_cli("start", "new-function")

    assert code == 1
    assert payload["event"] == "error"
    assert payload["kind"] == "INVALID_STATE"


def test_start_with_unfinished_run_is_already_in_progress(run_cli, db_path):
    _orphan_run(db_path)

    code, payload = run_cli("start", "cv-analyzer")

    assert code == 1
    assert payload["kind"] == "ALREADY_IN_PROGRESS"


def test_critical_start_without_approval_exits_1(run_cli):
    code, payload = run_cli("start", "gated-function", "--tier", "critical")

    assert code == 1
    assert payload["state"] == "ROLLED_BACK"
    assert payload["last_reason"] == "APPROVAL_TIMEOUT"


def test_status_and_history_after_start(run_cli):
    run_cli("start", "cv-analyzer")

    code, status = run_cli("status", "cv-analyzer")
    assert code == 0
    assert status["services"][0]["state"] == "COMPLETED"

    code, history = run_cli("history", "cv-analyzer")
    assert code == 0
    assert len(history["runs"]) == 1
    assert history["runs"][0]["records"][-1]["reason"] == "COMPLETED"


def test_status_all_lists_registry(run_cli):
    code, payload = run_cli("status")

    assert code == 0
    assert [s["service_id"] for s in payload["services"]] == ["cache-manager", "cv-analyzer"]


def test_approve_without_run_is_invalid(run_cli):
    code, payload = run_cli("approve", "cv-analyzer")

    assert code == 1
    assert payload["kind"] == "INVALID_STATE"


def test_cancel_is_queued_for_orphaned_run(run_cli, db_path):
    _orphan_run(db_path)

    code, payload = run_cli("cancel", "cv-analyzer")

    assert code == 0
    assert payload["event"] == "cancel_accepted"
    assert len(RecordStore(db_path).take_commands("cv-analyzer")) == 1


def test_resume_completes_orphaned_run(run_cli, db_path):
    _orphan_run(db_path)

    code, payload = run_cli("resume", "cv-analyzer")

    assert code == 0
    assert payload["final_state"] == "COMPLETED"


def test_archive(run_cli):
    run_cli("start", "cv-analyzer")

    code, payload = run_cli("archive", "cv-analyzer")

    assert code == 0
    assert payload["count"] == 1


def test_phase_blocked_by_earlier_phase(run_cli):
    code, payload = run_cli("start-phase", "2")

    assert code == 1
    assert "cv-analyzer" in payload["message"]


def test_phase_runs_after_earlier_phase(run_cli):
    run_cli("start-phase", "1")

    code, payload = run_cli("start-phase", "2")

    assert code == 0
    assert payload["results"] == {"cache-manager": "COMPLETED"}


def test_classify(tmp_path, capsys):
    source = tmp_path / "payments.ts"
    source.write_text("export const charge = () => payment.charge();\n")

    code = cli.main(["classify", str(source)])
    payload = json.loads(capsys.readouterr().out.strip())

    assert code == 0
    assert payload["tier"] == "critical"
    assert "payment" in payload["matched"]


def test_classify_missing_file(capsys):
    assert cli.main(["classify", "/nonexistent/file.ts"]) == 1


# ============================================================
# rollback
# ============================================================


def test_rollback_single_service(run_cli):
    code, payload = run_cli("cv-analyzer", "error", "spike", entrypoint=cli.rollback_main)

    assert code == 0
    assert payload["event"] == "rollback_finished"
    assert payload["reason"] == "error spike"
    assert payload["events"][0]["outcome"] == "success"
    assert payload["events"][0]["scope"] == "service"


def test_rollback_all_targets_in_flight_runs(run_cli, db_path):
    _orphan_run(db_path, "cv-analyzer")
    _orphan_run(db_path, "cache-manager")

    code, payload = run_cli("all", "incident", entrypoint=cli.rollback_main)

    assert code == 0
    assert sorted(e["service_id"] for e in payload["events"]) == ["cache-manager", "cv-analyzer"]
    assert all(e["scope"] == "global" for e in payload["events"])
    assert len(RecordStore(db_path).take_commands("cv-analyzer")) == 1


def test_rollback_all_with_nothing_active(run_cli):
    code, payload = run_cli("all", "drill", entrypoint=cli.rollback_main)

    assert code == 0
    assert payload["events"] == []


# ============================================================
# Exit codes
# ============================================================


@pytest.mark.parametrize(
    "state,reason,rollback_failed,expected",
    [
        (RolloutState.COMPLETED, TransitionReason.COMPLETED, False, 0),
        (RolloutState.ROLLED_BACK, TransitionReason.ERROR_RATE, False, 1),
        (RolloutState.ROLLED_BACK, TransitionReason.CANCELLED, False, 1),
        (RolloutState.ROLLED_BACK, TransitionReason.METRICS_UNAVAILABLE, False, 2),
        (RolloutState.ROLLED_BACK, TransitionReason.TRAFFIC_UPDATE_FAILED, False, 2),
        (RolloutState.ROLLED_BACK, TransitionReason.ERROR_RATE, True, 2),
    ],
)
def test_exit_code_for_status(state, reason, rollback_failed, expected):
    status = ServiceStatus(service_id="cv-analyzer", state=state, last_reason=reason)

    assert cli.exit_code_for_status(status, rollback_failed) == expected


def test_exit_code_for_errors():
    assert cli.exit_code_for_error(InvalidStateError("bad")) == 1
    assert cli.exit_code_for_error(StorageError("disk")) == 2
