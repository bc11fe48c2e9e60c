"""Metrics and traffic collaborators."""

from cvplus_rollout.adapters.base import MetricsSource, TrafficController
from cvplus_rollout.adapters.memory import (
    InMemoryMetricsSource,
    InMemoryTrafficController,
    healthy_snapshot,
)

__all__ = [
    "MetricsSource",
    "TrafficController",
    "InMemoryMetricsSource",
    "InMemoryTrafficController",
    "healthy_snapshot",
]
