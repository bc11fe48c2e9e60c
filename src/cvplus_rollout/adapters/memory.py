"""In-memory adapters for dry runs and tests."""

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, Set, Tuple, Union

from cvplus_rollout.adapters.base import MetricsSource, TrafficController
from cvplus_rollout.exceptions import TrafficUpdateError
from cvplus_rollout.models import HealthSnapshot

logger = logging.getLogger(__name__)

ScriptedResult = Union[HealthSnapshot, Exception]


def healthy_snapshot(
    service_id: str,
    latency_ms: float = 200.0,
    request_volume: int = 1000,
) -> HealthSnapshot:
    return HealthSnapshot(
        service_id=service_id,
        error_rate=0.0,
        latency_ms=latency_ms,
        success_rate=1.0,
        request_volume=request_volume,
    )


class InMemoryMetricsSource(MetricsSource):
    """Scripted metrics.

    Queued results are returned (or raised, for exceptions) in order; once a
    service's queue is empty the default snapshot is returned. Without a
    default, a healthy snapshot is produced.
    """

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds
        self._queues: Dict[str, Deque[ScriptedResult]] = defaultdict(deque)
        self._defaults: Dict[str, HealthSnapshot] = {}
        self._baselines: Dict[str, ScriptedResult] = {}
        self._lock = threading.Lock()
        self.calls: List[str] = []

    def queue(self, service_id: str, *results: ScriptedResult) -> None:
        with self._lock:
            self._queues[service_id].extend(results)

    def set_default(self, service_id: str, snapshot: HealthSnapshot) -> None:
        self._defaults[service_id] = snapshot

    def set_baseline(self, service_id: str, result: ScriptedResult) -> None:
        self._baselines[service_id] = result

    def fetch(self, service_id: str, window_seconds: float) -> HealthSnapshot:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        with self._lock:
            self.calls.append(service_id)
            queued = self._queues[service_id]
            result = queued.popleft() if queued else None
        if result is None:
            result = self._defaults.get(service_id) or healthy_snapshot(service_id)
        if isinstance(result, Exception):
            raise result
        return result

    def fetch_baseline(self, service_id: str, window_seconds: float) -> HealthSnapshot:
        result = self._baselines.get(service_id)
        if result is None:
            return healthy_snapshot(service_id)
        if isinstance(result, Exception):
            raise result
        return result


class InMemoryTrafficController(TrafficController):
    """Traffic percentages held in a dict.

    ``refuse`` makes ``set_percentage`` return False for the listed
    (service, percentage) pairs; ``fail`` makes it raise.
    """

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds
        self.percentages: Dict[str, int] = {}
        self.history: List[Tuple[str, int]] = []
        self.refuse: Set[Tuple[str, int]] = set()
        self.fail: Set[Tuple[str, int]] = set()
        self._lock = threading.Lock()

    def set_percentage(self, service_id: str, percentage: int) -> bool:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        with self._lock:
            self.history.append((service_id, percentage))
            if (service_id, percentage) in self.fail:
                raise TrafficUpdateError(f"Simulated failure setting {service_id} to {percentage}%")
            if (service_id, percentage) in self.refuse:
                return False
            self.percentages[service_id] = percentage
        logger.info("[memory] %s traffic -> %d%%", service_id, percentage)
        return True

    def get_percentage(self, service_id: str) -> Optional[int]:
        return self.percentages.get(service_id)
