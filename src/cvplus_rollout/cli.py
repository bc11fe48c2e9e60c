"""Command line entrypoints: ``rollout`` and ``rollback``.

Each command prints one JSON document to stdout and exits with:

- 0: rollout COMPLETED, or the command was accepted
- 1: invalid state or usage, or a rollout ROLLED_BACK for health,
  cancellation or approval reasons
- 2: an external dependency failed (traffic, metrics, storage) or a rollback
  event reported FAILURE
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from cvplus_rollout import constants
from cvplus_rollout.adapters.firestore import FirestoreMetricsSource, FirestoreTrafficController
from cvplus_rollout.adapters.memory import InMemoryMetricsSource, InMemoryTrafficController
from cvplus_rollout.config import RolloutConfig, load_config
from cvplus_rollout.exceptions import ErrorKind, RolloutError
from cvplus_rollout.logging_config import format_reason, get_logger, setup_logging
from cvplus_rollout.models import (
    DEPENDENCY_FAILURE_REASONS,
    RiskTier,
    RollbackEvent,
    RolloutRecord,
    RolloutState,
    ServiceStatus,
)
from cvplus_rollout.notifier import RolloutEventNotifier
from cvplus_rollout.risk import assess_file
from cvplus_rollout.rollout.controller import RolloutController
from cvplus_rollout.storage.record_store import RecordStore

logger = get_logger(__name__)

USAGE_ERROR_KINDS = {ErrorKind.INVALID_STATE, ErrorKind.ALREADY_IN_PROGRESS}


def exit_code_for_error(error: RolloutError) -> int:
    if error.kind in USAGE_ERROR_KINDS:
        return constants.EXIT_INVALID
    return constants.EXIT_DEPENDENCY_FAILURE


def exit_code_for_status(status: ServiceStatus, rollback_failed: bool = False) -> int:
    """Exit code for a finished (or interrupted) run."""
    if status.state == RolloutState.COMPLETED:
        return constants.EXIT_OK
    if rollback_failed or status.last_reason in DEPENDENCY_FAILURE_REASONS:
        return constants.EXIT_DEPENDENCY_FAILURE
    return constants.EXIT_INVALID


def exit_code_for_events(events: List[RollbackEvent]) -> int:
    if all(event.succeeded for event in events):
        return constants.EXIT_OK
    return constants.EXIT_DEPENDENCY_FAILURE


def _emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, default=str))


def _status_dict(status: ServiceStatus) -> Dict[str, Any]:
    return status.model_dump(mode="json")


def _record_dict(record: RolloutRecord) -> Dict[str, Any]:
    data = record.model_dump(mode="json", exclude={"run_id", "service_id"})
    if data.get("detail"):
        data["detail"] = format_reason(data["detail"])
    return data


def build_controller(
    config: RolloutConfig, db_path: Optional[str] = None, dry_run: bool = False
) -> RolloutController:
    """
    Wire a controller from configuration.

    Args:
        config: Loaded rollout configuration
        db_path: Record store override (else config, else env/default)
        dry_run: Use in-memory metrics and traffic adapters; nothing is
            written to Firestore

    Returns:
        RolloutController ready for use
    """
    store = RecordStore(db_path or config.database_path)

    if dry_run:
        metrics = InMemoryMetricsSource()
        traffic = InMemoryTrafficController()
    else:
        metrics = FirestoreMetricsSource(
            database_name=config.firestore.database,
            credentials_path=config.firestore.credentials_path,
        )
        traffic = FirestoreTrafficController(
            database_name=config.firestore.database,
            credentials_path=config.firestore.credentials_path,
            flags_collection=config.firestore.flags_collection,
            flags_document=config.firestore.flags_document,
            flag_names={
                service_id: entry.flag_name
                for service_id, entry in config.services.items()
                if entry.flag_name
            },
        )

    notifier = RolloutEventNotifier(
        webhook_url=config.notifications.webhook_url, token=config.notifications.token
    )
    return RolloutController(config, metrics, traffic, store, notifier=notifier)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Rollout config YAML (default: ROLLOUT_CONFIG_PATH)")
    parser.add_argument("--db-path", help="Optional override for the SQLite record store path")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use in-memory metrics and traffic adapters instead of Firestore",
    )
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rollout", description="Progressive rollout controller for migrated services"
    )
    _add_common_arguments(parser)
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Roll out a service and wait for the result")
    start.add_argument("service")
    start.add_argument(
        "--tier",
        choices=[tier.value for tier in RiskTier],
        help="Risk tier for services not in the registry",
    )

    status = sub.add_parser("status", help="Show rollout status")
    status.add_argument("service", nargs="?")

    approve = sub.add_parser("approve", help="Approve the current gated milestone")
    approve.add_argument("service")

    cancel = sub.add_parser("cancel", help="Cancel a rollout (ends ROLLED_BACK)")
    cancel.add_argument("service")

    resume = sub.add_parser("resume", help="Resume an interrupted rollout")
    resume.add_argument("service")

    history = sub.add_parser("history", help="Show the record log of a service's runs")
    history.add_argument("service")
    history.add_argument("--all", action="store_true", help="Include archived runs")

    archive = sub.add_parser("archive", help="Archive a service's finished runs")
    archive.add_argument("service")

    phase = sub.add_parser("start-phase", help="Roll out every service of a phase")
    phase.add_argument("phase", type=int)

    classify = sub.add_parser("classify", help="Suggest a risk tier for a source file")
    classify.add_argument("file")

    return parser


def build_rollback_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rollback", description="Set traffic to 0% for one service or for all of them"
    )
    _add_common_arguments(parser)
    parser.add_argument("target", help="Service id, or 'all' for every active service")
    parser.add_argument("reason", nargs="+", help="Why the rollback is being performed")
    return parser


def _prepare(args: argparse.Namespace) -> RolloutConfig:
    # Load .env for local runs; deployed environments export variables directly
    load_dotenv()
    setup_logging(args.log_level)
    return load_config(args.config)


def _run_start(controller: RolloutController, service_id: str, tier: Optional[str]) -> int:
    future = controller.start_async(service_id, RiskTier(tier) if tier else None)
    try:
        future.result()
    except KeyboardInterrupt:
        logger.warning("Interrupted; cancelling rollout of %s", service_id)
        controller.cancel(service_id)
        future.result()

    machine = controller.machine(service_id)
    status = controller.status(service_id)
    rollback_failed = bool(
        machine and machine.rollback_event and not machine.rollback_event.succeeded
    )
    _emit({"event": "rollout_finished", **_status_dict(status)})
    return exit_code_for_status(status, rollback_failed)


def _dispatch(controller: RolloutController, args: argparse.Namespace) -> int:
    command = args.command

    if command == "start":
        return _run_start(controller, args.service, args.tier)

    if command == "status":
        statuses = (
            [controller.status(args.service)] if args.service else controller.status_all()
        )
        _emit({"event": "rollout_status", "services": [_status_dict(s) for s in statuses]})
        return constants.EXIT_OK

    if command == "approve":
        controller.approve(args.service)
        _emit({"event": "approval_accepted", "service_id": args.service})
        return constants.EXIT_OK

    if command == "cancel":
        controller.cancel(args.service)
        _emit({"event": "cancel_accepted", "service_id": args.service})
        return constants.EXIT_OK

    if command == "resume":
        state = controller.resume(args.service)
        status = controller.status(args.service)
        machine = controller.machine(args.service)
        rollback_failed = bool(
            machine and machine.rollback_event and not machine.rollback_event.succeeded
        )
        _emit({"event": "rollout_resumed", "final_state": state.value, **_status_dict(status)})
        return exit_code_for_status(status, rollback_failed)

    if command == "history":
        runs = controller.history(args.service, include_archived=args.all)
        _emit(
            {
                "event": "rollout_history",
                "service_id": args.service,
                "runs": [
                    {
                        **run.model_dump(mode="json"),
                        "records": [_record_dict(record) for record in records],
                    }
                    for run, records in runs
                ],
            }
        )
        return constants.EXIT_OK

    if command == "archive":
        count = controller.archive(args.service)
        _emit({"event": "runs_archived", "service_id": args.service, "count": count})
        return constants.EXIT_OK

    if command == "start-phase":
        results = controller.start_phase(args.phase)
        _emit(
            {
                "event": "phase_finished",
                "phase": args.phase,
                "results": {sid: state.value for sid, state in results.items()},
            }
        )
        codes = [exit_code_for_status(controller.status(sid)) for sid in results]
        return max(codes) if codes else constants.EXIT_OK

    raise ValueError(f"Unknown command {command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "classify":
        try:
            assessment = assess_file(args.file)
        except OSError as e:
            _emit({"event": "error", "kind": "INVALID_STATE", "message": str(e)})
            return constants.EXIT_INVALID
        _emit({"event": "risk_assessment", "file": args.file, **assessment.model_dump(mode="json")})
        return constants.EXIT_OK

    controller = None
    try:
        config = _prepare(args)
        controller = build_controller(config, args.db_path, args.dry_run)
        return _dispatch(controller, args)
    except RolloutError as e:
        _emit({"event": "error", "kind": e.kind.value, "message": str(e)})
        return exit_code_for_error(e)
    finally:
        if controller is not None:
            controller.shutdown(wait=False)


def rollback_main(argv: Optional[List[str]] = None) -> int:
    parser = build_rollback_parser()
    args = parser.parse_args(argv)
    reason = " ".join(args.reason).strip()
    if not reason:
        parser.error("reason must not be empty")

    controller = None
    try:
        config = _prepare(args)
        controller = build_controller(config, args.db_path, args.dry_run)
        if args.target == "all":
            events = controller.rollback_all(reason)
        else:
            events = [controller.rollback(args.target, reason)]
    except RolloutError as e:
        _emit({"event": "error", "kind": e.kind.value, "message": str(e)})
        return exit_code_for_error(e)
    finally:
        if controller is not None:
            controller.shutdown(wait=False)

    _emit(
        {
            "event": "rollback_finished",
            "target": args.target,
            "reason": format_reason(reason),
            "events": [event.model_dump(mode="json") for event in events],
        }
    )
    return exit_code_for_events(events)


if __name__ == "__main__":  # pragma: no cover - thin CLI wrapper
    sys.exit(main())
