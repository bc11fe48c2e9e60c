"""Health verdicts for a single metrics snapshot."""

from typing import List

from cvplus_rollout.models import (
    HealthSnapshot,
    HealthThresholds,
    Verdict,
    VerdictWarning,
    ViolationKind,
)


class HealthEvaluator:
    """Compare a snapshot against the run's baseline and thresholds.

    Pure and deterministic: the same inputs always give the same verdict.
    Violations are reported in a fixed order (error rate, latency, success
    rate) so the first one can be used as the rollback reason.
    """

    def evaluate(
        self,
        snapshot: HealthSnapshot,
        baseline: HealthSnapshot,
        thresholds: HealthThresholds,
    ) -> Verdict:
        """
        Evaluate one snapshot.

        Args:
            snapshot: Current metrics
            baseline: Snapshot captured before the run started
            thresholds: Limits for this deployment

        Returns:
            Verdict. A snapshot with fewer requests than
            ``thresholds.min_sample_size`` is healthy with a LOW_SAMPLE
            warning and is not checked against the limits.
        """
        if snapshot.request_volume < thresholds.min_sample_size:
            return Verdict(healthy=True, warnings=[VerdictWarning.LOW_SAMPLE])

        violations: List[ViolationKind] = []
        if snapshot.error_rate > thresholds.max_error_rate:
            violations.append(ViolationKind.ERROR_RATE)
        if snapshot.latency_ms > baseline.latency_ms * thresholds.latency_multiplier:
            violations.append(ViolationKind.LATENCY)
        if snapshot.success_rate < thresholds.min_success_rate:
            violations.append(ViolationKind.SUCCESS_RATE)

        return Verdict(healthy=not violations, violations=violations)
