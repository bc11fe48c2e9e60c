"""Collaborator interfaces the state machine depends on."""

from abc import ABC, abstractmethod
from typing import Optional

from cvplus_rollout.models import HealthSnapshot


class MetricsSource(ABC):
    """Source of health snapshots for a service.

    Implementations raise ``MetricsUnavailableError`` on transport errors.
    The state machine bounds every call with its own timeout, so an
    implementation does not need to.
    """

    @abstractmethod
    def fetch(self, service_id: str, window_seconds: float) -> HealthSnapshot:
        """
        Aggregate metrics for a service over a look-back window.

        Args:
            service_id: Service to measure
            window_seconds: Look-back window ending now

        Returns:
            Snapshot of error rate, latency, success rate and volume.
        """
        pass

    def fetch_baseline(self, service_id: str, window_seconds: float) -> HealthSnapshot:
        """Reference snapshot captured once before a run. Defaults to a live fetch."""
        return self.fetch(service_id, window_seconds)


class TrafficController(ABC):
    """Routes a percentage of a service's traffic to the new deployment."""

    @abstractmethod
    def set_percentage(self, service_id: str, percentage: int) -> bool:
        """
        Route ``percentage`` (0..100) of traffic to the new deployment.

        Must be idempotent per (service, percentage): repeating a call after
        a crash has the same effect as making it once.

        Returns:
            True if the change was applied, False if it was refused.
        """
        pass

    def get_percentage(self, service_id: str) -> Optional[int]:
        """Current percentage, or None when the controller cannot tell."""
        return None
