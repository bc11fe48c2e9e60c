"""Registry of rollout state machines, one per service.

The controller is the context object the CLI builds once per process and
passes around; there is no module-level rollout state.
"""

import concurrent.futures
import logging
import threading
from typing import Dict, List, Optional, Tuple

from cvplus_rollout import constants
from cvplus_rollout.adapters.base import MetricsSource, TrafficController
from cvplus_rollout.config import RolloutConfig
from cvplus_rollout.exceptions import (
    AlreadyInProgressError,
    ConfigurationError,
    InvalidStateError,
)
from cvplus_rollout.health.evaluator import HealthEvaluator
from cvplus_rollout.logging_config import get_structured_logger
from cvplus_rollout.models import (
    CommandType,
    RiskTier,
    RollbackEvent,
    RollbackScope,
    RolloutRecord,
    RolloutRun,
    RolloutState,
    ServiceStatus,
)
from cvplus_rollout.notifier import RolloutEventNotifier
from cvplus_rollout.rollback.executor import RollbackExecutor
from cvplus_rollout.rollout.state_machine import RolloutStateMachine, replay_records
from cvplus_rollout.storage.record_store import RecordStore

logger = logging.getLogger(__name__)


class RolloutController:
    """Start, observe and steer rollouts.

    Services roll out concurrently on a thread pool, each on its own thread.
    At most one non-terminal machine exists per service id, and a service
    whose latest stored run never finished cannot be started again until it
    is resumed or rolled back.

    Operations on a service whose run lives in another process (the CLI
    ``approve``/``cancel`` commands) are validated against the record store
    and queued as commands for that process.
    """

    def __init__(
        self,
        config: RolloutConfig,
        metrics: MetricsSource,
        traffic: TrafficController,
        store: RecordStore,
        notifier: Optional[RolloutEventNotifier] = None,
        evaluator: Optional[HealthEvaluator] = None,
        max_workers: int = constants.MAX_CONCURRENT_ROLLOUTS,
    ):
        self.config = config
        self.metrics = metrics
        self.traffic = traffic
        self.store = store
        self.notifier = notifier
        self.evaluator = evaluator or HealthEvaluator()
        self.rollback_executor = RollbackExecutor(
            traffic,
            store=store,
            active_services=self.active_services,
            notifier=notifier,
            timeout_seconds=config.traffic.call_timeout_seconds,
        )
        self.slogger = get_structured_logger(__name__)
        self._machines: Dict[str, RolloutStateMachine] = {}
        self._lock = threading.Lock()
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="rollout"
        )

    # ------------------------------------------------------------------ #
    # Registry
    # ------------------------------------------------------------------ #

    def machine(self, service_id: str) -> Optional[RolloutStateMachine]:
        return self._machines.get(service_id)

    def active_services(self) -> List[str]:
        """Services with a live, non-terminal machine in this process."""
        with self._lock:
            return sorted(
                sid for sid, machine in self._machines.items() if not machine.state.is_terminal
            )

    def _register(
        self, service_id: str, tier: Optional[RiskTier], resuming: bool = False
    ) -> RolloutStateMachine:
        """
        Build and register the service's machine.

        A fresh start also creates the run here, on the caller's thread, so
        a duplicate start from this or another process fails before anything
        is scheduled.
        """
        service = self.config.build_service(service_id, tier)

        with self._lock:
            existing = self._machines.get(service_id)
            if existing is not None and not existing.state.is_terminal:
                raise AlreadyInProgressError(service_id)
            if not resuming:
                latest = self.store.latest_run(service_id)
                if latest is not None and latest.final_state is None:
                    raise AlreadyInProgressError(
                        service_id,
                        f"Run {latest.run_id} for '{service_id}' never finished; resume it first",
                    )

            machine = RolloutStateMachine(
                service,
                self.config,
                self.metrics,
                self.traffic,
                self.store,
                self.rollback_executor,
                evaluator=self.evaluator,
                notifier=self.notifier,
            )
            if not resuming:
                try:
                    machine.open_run()
                except Exception:
                    machine.close()
                    raise
            self._machines[service_id] = machine
        return machine

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def start(self, service_id: str, tier: Optional[RiskTier] = None) -> RolloutState:
        """
        Run a rollout on the calling thread until it is terminal.

        Raises:
            AlreadyInProgressError: If the service already has an active run
            ConfigurationError: If the service is unknown and no tier is given
        """
        machine = self._register(service_id, tier)
        return machine.start()

    def start_async(
        self, service_id: str, tier: Optional[RiskTier] = None
    ) -> "concurrent.futures.Future[RolloutState]":
        """Register synchronously, then run the rollout on the controller pool."""
        machine = self._register(service_id, tier)
        return self._pool.submit(machine.start)

    def _prepare_resume(self, service_id: str) -> Tuple[RolloutStateMachine, RolloutRun, list]:
        run = self.store.latest_run(service_id)
        if run is None or run.final_state is not None:
            raise InvalidStateError(f"No interrupted run to resume for '{service_id}'")
        records = self.store.records_for_run(run.run_id)
        machine = self._register(service_id, run.tier, resuming=True)
        return machine, run, records

    def resume(self, service_id: str) -> RolloutState:
        """
        Resume the service's interrupted run on the calling thread.

        Raises:
            InvalidStateError: If the latest run already finished
            AlreadyInProgressError: If a machine for the service is live here
        """
        machine, run, records = self._prepare_resume(service_id)
        return machine.resume(run, records)

    def resume_async(self, service_id: str) -> "concurrent.futures.Future[RolloutState]":
        machine, run, records = self._prepare_resume(service_id)
        return self._pool.submit(machine.resume, run, records)

    def resume_all(self) -> Dict[str, "concurrent.futures.Future[RolloutState]"]:
        """Resume every in-flight run found in the record store."""
        futures = {}
        for run in self.store.in_flight_runs():
            try:
                futures[run.service_id] = self.resume_async(run.service_id)
            except (InvalidStateError, AlreadyInProgressError) as e:
                logger.warning("Skipping resume of %s: %s", run.service_id, e)
        return futures

    def approve(self, service_id: str) -> None:
        """
        Approve the current milestone of a service's run.

        Raises:
            InvalidStateError: If no run is active at a gated milestone
        """
        machine = self._machines.get(service_id)
        if machine is not None and machine.is_active:
            machine.approve()
            return

        status = self.status(service_id)
        if not status.state.is_active:
            raise InvalidStateError(f"No active rollout for '{service_id}'")
        if not status.approval_gate:
            raise InvalidStateError(
                f"Milestone {status.milestone}% of '{service_id}' has no approval gate"
            )
        self.store.enqueue_command(service_id, CommandType.APPROVE)

    def cancel(self, service_id: str) -> None:
        """
        Cancel a service's run; it ends ROLLED_BACK (CANCELLED).

        Raises:
            InvalidStateError: If the service has no active run
        """
        machine = self._machines.get(service_id)
        if machine is not None and not machine.state.is_terminal:
            machine.cancel()
            return

        status = self.status(service_id)
        if status.run_id is None or status.state.is_terminal:
            raise InvalidStateError(f"No active rollout for '{service_id}'")
        self.store.enqueue_command(service_id, CommandType.CANCEL)

    def _stop_run(self, service_id: str) -> None:
        """Cancel the service's run, if any, so it cannot move traffic again."""
        try:
            self.cancel(service_id)
        except InvalidStateError as e:
            logger.debug("No run to cancel for %s: %s", service_id, e)

    def rollback(self, service_id: str, reason: str) -> RollbackEvent:
        """Operator rollback of one service; an active run is cancelled too."""
        self._stop_run(service_id)
        return self.rollback_executor.execute(service_id, reason, RollbackScope.SERVICE)

    def rollback_all(self, reason: str) -> List[RollbackEvent]:
        """Cancel every active run and set every active service to 0%."""
        targets = self.rollback_executor.targets()
        for service_id in targets:
            self._stop_run(service_id)
        return self.rollback_executor.execute_global(reason, targets)

    def archive(self, service_id: str) -> int:
        machine = self._machines.get(service_id)
        if machine is not None and not machine.state.is_terminal:
            raise InvalidStateError(f"Cannot archive '{service_id}' while a rollout is active")
        return self.store.archive(service_id)

    def history(
        self, service_id: str, include_archived: bool = False
    ) -> List[Tuple[RolloutRun, List[RolloutRecord]]]:
        runs = self.store.list_runs(service_id, include_archived=include_archived)
        return [(run, self.store.records_for_run(run.run_id)) for run in runs]

    # ------------------------------------------------------------------ #
    # Status
    # ------------------------------------------------------------------ #

    def status(self, service_id: str) -> ServiceStatus:
        """Status from the live machine, else from the latest stored run."""
        machine = self._machines.get(service_id)
        if machine is not None and machine.records:
            last = machine.records[-1]
            return ServiceStatus(
                service_id=service_id,
                state=machine.state,
                tier=machine.service.tier,
                run_id=machine.run_id,
                milestone=machine.service.current_milestone,
                last_reason=last.reason,
                updated_at=last.timestamp,
                approval_gate=machine.state.is_active
                and machine.gate_applies(machine.service.current_milestone),
                awaiting_approval=machine.awaiting_approval,
                live=True,
            )

        run = self.store.latest_run(service_id)
        if run is None:
            entry = self.config.services.get(service_id)
            return ServiceStatus(service_id=service_id, tier=entry.tier if entry else None)

        records = self.store.records_for_run(run.run_id)
        state, index = replay_records(records, run.milestones)
        milestone = run.milestones[index]
        policy = self.config.policy_for_tier(run.tier)
        return ServiceStatus(
            service_id=service_id,
            state=state,
            tier=run.tier,
            run_id=run.run_id,
            milestone=milestone,
            last_reason=records[-1].reason if records else None,
            updated_at=records[-1].timestamp if records else run.started_at,
            approval_gate=state.is_active
            and policy.gate_applies(milestone)
            and milestone != run.milestones[-1],
        )

    def status_all(self) -> List[ServiceStatus]:
        service_ids = set(self.config.services) | set(self._machines)
        service_ids.update(run.service_id for run in self.store.list_runs())
        return [self.status(sid) for sid in sorted(service_ids)]

    # ------------------------------------------------------------------ #
    # Phases
    # ------------------------------------------------------------------ #

    def check_phase_ready(self, phase: int) -> List[str]:
        """
        Services of ``phase``, after checking every earlier phase completed.

        Raises:
            ConfigurationError: If no service is registered for the phase
            InvalidStateError: If an earlier-phase service has not COMPLETED
        """
        services = self.config.services_in_phase(phase)
        if not services:
            raise ConfigurationError(f"No services registered for phase {phase}")

        blockers = []
        for service_id, entry in sorted(self.config.services.items()):
            if entry.phase is None or entry.phase >= phase:
                continue
            run = self.store.latest_run(service_id)
            if run is None or run.final_state != RolloutState.COMPLETED:
                blockers.append(service_id)
        if blockers:
            raise InvalidStateError(
                f"Phase {phase} blocked; earlier phases not completed for: {', '.join(blockers)}"
            )
        return services

    def start_phase(self, phase: int) -> Dict[str, RolloutState]:
        """
        Roll out every service of a phase concurrently and wait for all.

        Returns:
            Final state per service
        """
        services = self.check_phase_ready(phase)
        for service_id in services:
            existing = self._machines.get(service_id)
            latest = self.store.latest_run(service_id)
            if (existing is not None and not existing.state.is_terminal) or (
                latest is not None and latest.final_state is None
            ):
                raise AlreadyInProgressError(service_id)

        self.slogger.controller_status("phase_started", {"phase": phase, "services": services})
        futures = {service_id: self.start_async(service_id) for service_id in services}

        results: Dict[str, RolloutState] = {}
        for service_id, future in futures.items():
            try:
                results[service_id] = future.result()
            except Exception as e:
                logger.error("Rollout of %s raised: %s", service_id, e, exc_info=True)
                machine = self._machines.get(service_id)
                results[service_id] = machine.state if machine else RolloutState.ROLLED_BACK

        self.slogger.controller_status(
            "phase_finished",
            {"phase": phase, "results": {sid: state.value for sid, state in results.items()}},
        )
        return results

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        self.rollback_executor.shutdown()
