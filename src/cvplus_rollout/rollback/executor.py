"""Revert traffic to 0% for one service or for every active service."""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set

from cvplus_rollout import constants
from cvplus_rollout.adapters.base import TrafficController
from cvplus_rollout.exceptions import StorageError
from cvplus_rollout.logging_config import get_structured_logger
from cvplus_rollout.models import RollbackEvent, RollbackOutcome, RollbackScope
from cvplus_rollout.notifier import RolloutEventNotifier
from cvplus_rollout.rollout.timed_call import CallTimeout, OrderedCaller
from cvplus_rollout.storage.record_store import RecordStore

logger = logging.getLogger(__name__)


class RollbackExecutor:
    """Sets traffic to 0% and records the outcome as a RollbackEvent.

    SERVICE rollbacks are idempotent: once a service has been rolled back
    successfully, repeating the call reports SUCCESS without touching the
    traffic controller until ``clear()`` is called for that service (the
    state machine does so whenever it moves traffic again).

    ``execute`` never raises; failures come back as FAILURE events.

    Every traffic call for a service, forward moves included, goes through
    ``traffic_calls`` so a revert always lands after an earlier call that
    timed out. A revert stuck behind such a call past the timeout is
    reported as FAILURE.
    """

    def __init__(
        self,
        traffic: TrafficController,
        store: Optional[RecordStore] = None,
        active_services: Optional[Callable[[], Iterable[str]]] = None,
        notifier: Optional[RolloutEventNotifier] = None,
        timeout_seconds: float = constants.DEFAULT_TRAFFIC_TIMEOUT_SECONDS,
        traffic_calls: Optional[OrderedCaller] = None,
    ):
        """
        Args:
            traffic: Controller used to revert traffic
            store: Record store; events are persisted and in-flight runs are
                included in GLOBAL rollbacks
            active_services: Returns the service ids with a live run in this
                process (the controller registry)
            notifier: Optional webhook notifier
            timeout_seconds: Bound on each traffic call
            traffic_calls: Per-service ordered channel for traffic calls;
                one is created when omitted
        """
        self.traffic = traffic
        self.store = store
        self.active_services = active_services
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds
        self.slogger = get_structured_logger(__name__)
        self._rolled_back: Set[str] = set()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.traffic_calls = traffic_calls or OrderedCaller("traffic")

    def _lock_for(self, service_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(service_id, threading.Lock())

    def clear(self, service_id: str) -> None:
        """Forget a completed rollback after traffic was moved again."""
        with self._lock_for(service_id):
            self._rolled_back.discard(service_id)

    def is_rolled_back(self, service_id: str) -> bool:
        return service_id in self._rolled_back

    def execute(
        self, service_id: str, reason: str, scope: RollbackScope = RollbackScope.SERVICE
    ) -> RollbackEvent:
        """
        Revert one service to 0% traffic.

        Args:
            service_id: Service to revert
            reason: Why the rollback happened (transition reason or operator text)
            scope: SERVICE, or GLOBAL when called from ``execute_global``

        Returns:
            The persisted RollbackEvent
        """
        with self._lock_for(service_id):
            if service_id in self._rolled_back:
                logger.info("Rollback for %s already applied, skipping traffic call", service_id)
                self.slogger.rollback_activity(service_id, "skipped", reason, {"scope": scope.value})
                event = RollbackEvent(
                    service_id=service_id,
                    reason=reason,
                    scope=scope,
                    outcome=RollbackOutcome.SUCCESS,
                )
            else:
                self.slogger.rollback_activity(service_id, "started", reason, {"scope": scope.value})
                event = self._revert(service_id, reason, scope)
                if event.succeeded:
                    self._rolled_back.add(service_id)

        self._persist(event)

        if event.succeeded:
            self.slogger.rollback_activity(service_id, "succeeded", reason, {"scope": scope.value})
        else:
            self.slogger.rollback_activity(
                service_id, "failed", reason, {"scope": scope.value, "error": event.error}
            )

        if self.notifier:
            self.notifier.rollback_executed(event)
        return event

    def _revert(self, service_id: str, reason: str, scope: RollbackScope) -> RollbackEvent:
        error: Optional[str] = None
        try:
            applied = self.traffic_calls.call(
                service_id, self.traffic.set_percentage, self.timeout_seconds, service_id, 0
            )
            if not applied:
                error = "Traffic controller refused to set 0%"
        except CallTimeout:
            error = f"Traffic call timed out after {self.timeout_seconds}s"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"

        return RollbackEvent(
            service_id=service_id,
            reason=reason,
            scope=scope,
            outcome=RollbackOutcome.FAILURE if error else RollbackOutcome.SUCCESS,
            error=error,
        )

    def _persist(self, event: RollbackEvent) -> None:
        if not self.store:
            return
        try:
            self.store.record_rollback(event)
        except StorageError as e:
            logger.error("Failed to persist rollback event %s: %s", event.event_id, e, exc_info=True)

    def targets(self) -> List[str]:
        """Services with a live run here or an in-flight run in the store."""
        services: Set[str] = set(self.active_services() if self.active_services else [])
        if self.store:
            services.update(run.service_id for run in self.store.in_flight_runs())
        return sorted(services)

    def execute_global(
        self, reason: str, targets: Optional[List[str]] = None
    ) -> List[RollbackEvent]:
        """
        Roll back every active service.

        A failure for one service is recorded and the loop continues.

        Args:
            reason: Operator-supplied reason
            targets: Services to revert; defaults to ``targets()``

        Returns:
            One event per targeted service
        """
        if targets is None:
            targets = self.targets()
        self.slogger.rollback_activity("all", "started", reason, {"services": targets})

        events = [self.execute(service_id, reason, RollbackScope.GLOBAL) for service_id in targets]

        failed = [event.service_id for event in events if not event.succeeded]
        self.slogger.rollback_activity(
            "all",
            "failed" if failed else "succeeded",
            reason,
            {"services": targets, "failed": failed},
        )
        return events

    def shutdown(self) -> None:
        self.traffic_calls.shutdown()
