"""Progressive rollout of one service through its traffic milestones.

Lifecycle::

    PENDING -> ADVANCING(m) -> HOLDING(m) -> ADVANCING(next) | ROLLED_BACK | COMPLETED

Every transition is appended to the record store before the in-memory state
changes hands, so a crashed run can be resumed by replaying its records.
"""

import logging
import threading
import time
from typing import List, Optional, Tuple

from cvplus_rollout.adapters.base import MetricsSource, TrafficController
from cvplus_rollout.config import RolloutConfig, TierPolicy
from cvplus_rollout.exceptions import InvalidStateError, MetricsUnavailableError
from cvplus_rollout.health.evaluator import HealthEvaluator
from cvplus_rollout.logging_config import get_structured_logger
from cvplus_rollout.models import (
    CommandType,
    HealthSnapshot,
    RollbackEvent,
    RollbackScope,
    RolloutRecord,
    RolloutRun,
    RolloutState,
    Service,
    TransitionReason,
    VerdictWarning,
)
from cvplus_rollout.notifier import RolloutEventNotifier
from cvplus_rollout.rollback.executor import RollbackExecutor
from cvplus_rollout.rollout.timed_call import CallTimeout, TimedCaller
from cvplus_rollout.storage.record_store import RecordStore

logger = logging.getLogger(__name__)


def replay_records(records: List[RolloutRecord], milestones: List[int]) -> Tuple[RolloutState, int]:
    """
    Rebuild a run's state from its record log.

    Args:
        records: Records of one run, in any order
        milestones: The run's milestone schedule

    Returns:
        (state, milestone_index) after the last record; (PENDING, 0) for an
        empty log.

    Raises:
        InvalidStateError: If the log is not a contiguous chain of transitions
    """
    state = RolloutState.PENDING
    index = 0
    expected_seq = 1
    for record in sorted(records, key=lambda r: r.seq):
        if record.seq != expected_seq:
            raise InvalidStateError(
                f"Record log for run {record.run_id} has a gap at seq {expected_seq}"
            )
        if record.from_state != state:
            raise InvalidStateError(
                f"Record #{record.seq} of run {record.run_id} starts from "
                f"{record.from_state.value}, expected {state.value}"
            )
        if state.is_terminal:
            raise InvalidStateError(f"Run {record.run_id} has records after a terminal state")

        state = record.to_state
        if record.milestone is not None and record.milestone in milestones:
            index = milestones.index(record.milestone)
        expected_seq += 1
    return state, index


class RolloutStateMachine:
    """Drives one run for one service.

    ``start()`` and ``resume()`` run the control loop on the calling thread
    until the run is terminal. ``approve()`` and ``cancel()`` may be called
    from any other thread; both wake a waiting loop through an Event.
    Operator commands written to the record store by another process are
    applied at each poll boundary.
    """

    def __init__(
        self,
        service: Service,
        config: RolloutConfig,
        metrics: MetricsSource,
        traffic: TrafficController,
        store: RecordStore,
        rollback_executor: RollbackExecutor,
        evaluator: Optional[HealthEvaluator] = None,
        notifier: Optional[RolloutEventNotifier] = None,
    ):
        self.service = service
        self.config = config
        self.policy: TierPolicy = config.policy_for_tier(service.tier)
        self.metrics = metrics
        self.traffic = traffic
        self.store = store
        self.rollback_executor = rollback_executor
        self.evaluator = evaluator or HealthEvaluator()
        self.notifier = notifier
        self.slogger = get_structured_logger(__name__)

        self.run_id: Optional[str] = None
        self.baseline: Optional[HealthSnapshot] = None
        self.records: List[RolloutRecord] = []
        self.rollback_event: Optional[RollbackEvent] = None

        self._lock = threading.RLock()
        self._wake = threading.Event()
        self._started = False
        self._cancel_requested = False
        self._approved_milestone: Optional[int] = None
        self._awaiting_approval = False
        self._consecutive_misses = 0
        self._caller = TimedCaller(f"rollout-{service.service_id}")

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def service_id(self) -> str:
        return self.service.service_id

    @property
    def state(self) -> RolloutState:
        return self.service.state

    @property
    def is_active(self) -> bool:
        return self._started and not self.service.state.is_terminal

    @property
    def awaiting_approval(self) -> bool:
        return self._awaiting_approval

    @property
    def last_reason(self) -> Optional[TransitionReason]:
        return self.records[-1].reason if self.records else None

    def gate_applies(self, milestone: int) -> bool:
        """Whether leaving ``milestone`` needs an operator approval."""
        return self.policy.gate_applies(milestone) and milestone != self.service.milestones[-1]

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def start(self) -> RolloutState:
        """
        Capture the baseline and run the rollout to a terminal state.

        The run is created here unless ``open_run()`` was called first.

        Returns:
            Final state (COMPLETED or ROLLED_BACK)

        Raises:
            InvalidStateError: If this machine was already started
            AlreadyInProgressError: If the service already has an unfinished run
        """
        with self._lock:
            if self._started or self.service.state != RolloutState.PENDING:
                raise InvalidStateError(
                    f"Cannot start {self.service_id}: state is {self.service.state.value}"
                )
            self._started = True

        try:
            if self.run_id is None:
                self.open_run()

            self.slogger.controller_status(
                "run_started",
                {
                    "serviceId": self.service_id,
                    "runId": self.run_id,
                    "tier": self.service.tier.value,
                    "milestones": self.service.milestones,
                },
            )
            return self._begin()
        finally:
            self.close()

    def open_run(self) -> RolloutRun:
        """
        Create this machine's run in the record store.

        The store admits one unfinished run per service, so this is the
        point where a second rollout of the same service is turned away,
        whichever process it comes from.

        Raises:
            AlreadyInProgressError: If the service already has an unfinished run
            InvalidStateError: If this machine already has a run
        """
        with self._lock:
            if self.run_id is not None:
                raise InvalidStateError(f"Machine for {self.service_id} already has a run")
            run = self.store.create_run(
                RolloutRun(
                    service_id=self.service_id,
                    tier=self.service.tier,
                    milestones=self.service.milestones,
                )
            )
            self.run_id = run.run_id

        stale = self.store.take_commands(self.service_id)
        if stale:
            logger.warning(
                "Discarded %d stale command(s) for %s before starting",
                len(stale),
                self.service_id,
            )
        return run

    def resume(self, run: RolloutRun, records: List[RolloutRecord]) -> RolloutState:
        """
        Continue a run that stopped before reaching a terminal state.

        The last non-terminal state is re-entered. Traffic is set again to
        the current milestone before a hold restarts, which is safe because
        ``set_percentage`` is idempotent. The baseline is the snapshot stored
        with the run's first record.

        Raises:
            InvalidStateError: If the run is already terminal, or this machine
                was already started
        """
        state, index = replay_records(records, run.milestones)
        if state.is_terminal:
            raise InvalidStateError(f"Run {run.run_id} already finished as {state.value}")

        with self._lock:
            if self._started:
                raise InvalidStateError(f"Machine for {self.service_id} already started")
            self._started = True
            self.run_id = run.run_id
            self.records = sorted(records, key=lambda r: r.seq)
            self.service.milestones = list(run.milestones)
            self.service.milestone_index = index
            self.service.state = state

        self.slogger.controller_status(
            "run_resumed",
            {
                "serviceId": self.service_id,
                "runId": self.run_id,
                "state": state.value,
                "milestone": self.service.current_milestone,
            },
        )

        try:
            if state == RolloutState.PENDING:
                return self._begin()

            self.baseline = self.records[0].snapshot
            if self.baseline is None:
                return self._roll_back(
                    TransitionReason.METRICS_UNAVAILABLE, detail="Run has no recorded baseline"
                )

            self._apply_commands()
            if self._cancel_requested:
                return self._roll_back(TransitionReason.CANCELLED, detail="Cancelled while down")

            if state == RolloutState.HOLDING and not self._set_traffic(
                self.service.current_milestone
            ):
                return self.service.state
            return self._run_loop()
        finally:
            self.close()

    def approve(self) -> None:
        """
        Approve leaving the current milestone.

        The approval latches for the current milestone, so it may arrive
        while the hold is still running.

        Raises:
            InvalidStateError: If the run is not active or the current
                milestone has no approval gate
        """
        with self._lock:
            if not self.service.state.is_active:
                raise InvalidStateError(
                    f"Cannot approve {self.service_id}: state is {self.service.state.value}"
                )
            milestone = self.service.current_milestone
            if not self.gate_applies(milestone):
                raise InvalidStateError(
                    f"Milestone {milestone}% of {self.service_id} has no approval gate"
                )
            self._approved_milestone = milestone

        self.slogger.controller_status(
            "approval_received", {"serviceId": self.service_id, "milestone": milestone}
        )
        self._wake.set()

    def cancel(self) -> None:
        """
        Request cancellation; honored at the next poll boundary at the latest.

        Raises:
            InvalidStateError: If the run already finished
        """
        with self._lock:
            if self.service.state.is_terminal:
                raise InvalidStateError(
                    f"Cannot cancel {self.service_id}: state is {self.service.state.value}"
                )
            self._cancel_requested = True

        self.slogger.controller_status("cancel_requested", {"serviceId": self.service_id})
        self._wake.set()

    def close(self) -> None:
        self._caller.shutdown()

    # ------------------------------------------------------------------ #
    # Control loop
    # ------------------------------------------------------------------ #

    def _begin(self) -> RolloutState:
        """Capture the baseline, then leave PENDING."""
        try:
            self.baseline = self._caller.call(
                self.metrics.fetch_baseline,
                self.config.metrics.call_timeout_seconds,
                self.service_id,
                self.config.metrics.window_seconds,
            )
        except CallTimeout:
            return self._roll_back(
                TransitionReason.METRICS_UNAVAILABLE, detail="Baseline fetch timed out"
            )
        except Exception as e:
            logger.error("Cannot capture baseline for %s: %s", self.service_id, e)
            return self._roll_back(
                TransitionReason.METRICS_UNAVAILABLE, detail=f"Baseline fetch failed: {e}"
            )

        self._apply_commands()
        if self._cancel_requested:
            return self._roll_back(TransitionReason.CANCELLED, detail="Cancelled before start")

        self._transition(RolloutState.ADVANCING, TransitionReason.STARTED, snapshot=self.baseline)
        return self._run_loop()

    def _run_loop(self) -> RolloutState:
        try:
            while not self.service.state.is_terminal:
                if self.service.state == RolloutState.ADVANCING:
                    self._advance()
                elif self.service.state == RolloutState.HOLDING:
                    self._hold()
                else:
                    raise InvalidStateError(f"Unexpected state {self.service.state.value}")
        except Exception as e:
            if self.service.state.is_terminal:
                raise
            logger.error("Rollout of %s failed unexpectedly: %s", self.service_id, e, exc_info=True)
            self._roll_back(TransitionReason.EXTERNAL_DEPENDENCY_ERROR, detail=str(e))
        return self.service.state

    def _set_traffic(self, percentage: int) -> bool:
        """Set traffic for the current milestone; rolls back and returns False on failure."""
        detail: Optional[str] = None
        try:
            applied = self.rollback_executor.traffic_calls.call(
                self.service_id,
                self.traffic.set_percentage,
                self.config.traffic.call_timeout_seconds,
                self.service_id,
                percentage,
            )
            if not applied:
                detail = f"Traffic controller refused {percentage}%"
        except CallTimeout:
            detail = f"Traffic call timed out after {self.config.traffic.call_timeout_seconds}s"
        except Exception as e:
            detail = f"{type(e).__name__}: {e}"

        if detail:
            self._roll_back(TransitionReason.TRAFFIC_UPDATE_FAILED, detail=detail)
            return False

        self.rollback_executor.clear(self.service_id)
        return True

    def _advance(self) -> None:
        self._apply_commands()
        if self._cancel_requested:
            self._roll_back(TransitionReason.CANCELLED)
            return

        milestone = self.service.current_milestone
        if self._set_traffic(milestone):
            self._transition(RolloutState.HOLDING, TransitionReason.TRAFFIC_SET)

    def _hold(self) -> None:
        milestone = self.service.current_milestone
        max_misses = self.config.metrics.max_consecutive_misses
        observed = 0

        for poll in range(self.policy.polls_per_hold):
            if self._wait(self.policy.poll_interval_seconds):
                self._roll_back(TransitionReason.CANCELLED)
                return

            try:
                snapshot = self._caller.call(
                    self.metrics.fetch,
                    self.config.metrics.call_timeout_seconds,
                    self.service_id,
                    self.config.metrics.window_seconds,
                )
            except (CallTimeout, MetricsUnavailableError) as e:
                self._consecutive_misses += 1
                self.slogger.health_check(
                    self.service_id,
                    "missed",
                    {
                        "milestone": milestone,
                        "poll": poll + 1,
                        "consecutiveMisses": self._consecutive_misses,
                        "error": str(e) or type(e).__name__,
                    },
                )
                if self._consecutive_misses >= max_misses:
                    self._roll_back(
                        TransitionReason.METRICS_UNAVAILABLE,
                        detail=f"{self._consecutive_misses} consecutive metrics polls missed",
                    )
                    return
                continue

            self._consecutive_misses = 0
            observed += 1
            verdict = self.evaluator.evaluate(snapshot, self.baseline, self.config.thresholds)
            details = {
                "milestone": milestone,
                "poll": poll + 1,
                "errorRate": snapshot.error_rate,
                "latencyMs": snapshot.latency_ms,
                "successRate": snapshot.success_rate,
                "requestVolume": snapshot.request_volume,
            }

            if not verdict.healthy:
                details["violations"] = [v.value for v in verdict.violations]
                self.slogger.health_check(self.service_id, "unhealthy", details)
                self._roll_back(
                    TransitionReason(verdict.violations[0].value),
                    snapshot=snapshot,
                    detail=", ".join(v.value for v in verdict.violations),
                )
                return

            status = "low_sample" if VerdictWarning.LOW_SAMPLE in verdict.warnings else "healthy"
            self.slogger.health_check(self.service_id, status, details)

        if observed == 0:
            self._roll_back(
                TransitionReason.METRICS_UNAVAILABLE,
                detail=f"No metrics observed while holding at {milestone}%",
            )
            return

        if self.service.is_last_milestone:
            self._transition(RolloutState.COMPLETED, TransitionReason.COMPLETED)
            return

        reason = TransitionReason.HOLD_PASSED
        if self.gate_applies(milestone):
            if not self._await_approval(milestone):
                return
            reason = TransitionReason.APPROVED

        self._transition(RolloutState.ADVANCING, reason, next_milestone=True)

    def _await_approval(self, milestone: int) -> bool:
        """Wait for approval of ``milestone``; rolls back and returns False otherwise."""
        timeout = self.policy.approval_timeout_seconds
        deadline = time.monotonic() + timeout

        self._awaiting_approval = True
        self.slogger.controller_status(
            "awaiting_approval",
            {"serviceId": self.service_id, "milestone": milestone, "timeoutSeconds": timeout},
        )
        if self.notifier:
            self.notifier.approval_required(self.service_id, self.run_id, milestone)

        try:
            while True:
                self._apply_commands()
                if self._approved_milestone == milestone:
                    return True
                if self._cancel_requested:
                    self._roll_back(TransitionReason.CANCELLED)
                    return False

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._roll_back(
                        TransitionReason.APPROVAL_TIMEOUT,
                        detail=f"No approval for {milestone}% within {timeout}s",
                    )
                    return False
                self._wait(
                    min(self.policy.poll_interval_seconds, remaining), until_approved=milestone
                )
        finally:
            self._awaiting_approval = False

    def _wait(self, timeout: float, until_approved: Optional[int] = None) -> bool:
        """
        Sleep until ``timeout`` elapses or cancellation is requested.

        With ``until_approved`` set, an approval of that milestone also ends
        the wait. Returns True if the run was cancelled.
        """
        deadline = time.monotonic() + timeout
        while True:
            self._apply_commands()
            if self._cancel_requested:
                return True
            if until_approved is not None and self._approved_milestone == until_approved:
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if self._wake.wait(remaining):
                self._wake.clear()

    def _apply_commands(self) -> None:
        """Apply approve/cancel commands queued by other processes."""
        for command in self.store.take_commands(self.service_id):
            self.slogger.controller_status(
                "command_received",
                {"serviceId": self.service_id, "command": command.command.value},
            )
            try:
                if command.command == CommandType.CANCEL:
                    self.cancel()
                elif command.command == CommandType.APPROVE:
                    self.approve()
            except InvalidStateError as e:
                logger.warning("Ignoring %s for %s: %s", command.command.value, self.service_id, e)

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def _transition(
        self,
        to_state: RolloutState,
        reason: TransitionReason,
        snapshot: Optional[HealthSnapshot] = None,
        detail: Optional[str] = None,
        next_milestone: bool = False,
    ) -> RolloutRecord:
        with self._lock:
            from_state = self.service.state
            if from_state.is_terminal:
                raise InvalidStateError(
                    f"{self.service_id} is {from_state.value}; no further transitions"
                )

            index = self.service.milestone_index + (1 if next_milestone else 0)
            record = self.store.append(
                RolloutRecord(
                    run_id=self.run_id,
                    service_id=self.service_id,
                    from_state=from_state,
                    to_state=to_state,
                    milestone=self.service.milestones[index],
                    reason=reason,
                    snapshot=snapshot,
                    detail=detail,
                )
            )
            self.service.milestone_index = index
            self.service.state = to_state
            self.records.append(record)
            if to_state == RolloutState.ADVANCING:
                self._approved_milestone = None

        self.slogger.rollout_transition(
            self.service_id,
            self.run_id,
            from_state.value,
            to_state.value,
            reason.value,
            {"milestone": record.milestone, "seq": record.seq, "detail": detail},
        )

        if to_state.is_terminal and self.notifier:
            self.notifier.rollout_finished(
                self.service_id, self.run_id, to_state.value, reason.value, record.milestone
            )
        return record

    def _roll_back(
        self,
        reason: TransitionReason,
        snapshot: Optional[HealthSnapshot] = None,
        detail: Optional[str] = None,
    ) -> RolloutState:
        try:
            self._transition(RolloutState.ROLLED_BACK, reason, snapshot=snapshot, detail=detail)
        finally:
            self.rollback_event = self.rollback_executor.execute(
                self.service_id, reason.value, RollbackScope.SERVICE
            )
        return self.service.state
