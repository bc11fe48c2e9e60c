"""Health evaluation."""

from cvplus_rollout.health.evaluator import HealthEvaluator

__all__ = ["HealthEvaluator"]
