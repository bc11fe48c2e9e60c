"""Keyword-based risk classification of a function's source.

Scores are additive: critical patterns weigh 10, high-risk patterns 5,
medium-risk patterns 2, and long files add 1 (over 100 lines) or 3 (over
200 lines). The cut-offs below are policy and can be changed freely.
"""

from pathlib import Path
from typing import List, Tuple, Union

from pydantic import BaseModel, Field

from cvplus_rollout.models import RiskTier

CRITICAL_PATTERNS: Tuple[str, ...] = (
    "admin.firestore",
    "firestore().collection().doc().delete()",
    "auth().deleteUser",
    "billing",
    "payment",
    "subscription",
)

HIGH_RISK_PATTERNS: Tuple[str, ...] = (
    "firestore().batch()",
    "functions.auth.user().onDelete",
    "storage().bucket().file().delete()",
    "sendEmail",
    "webhook",
)

MEDIUM_RISK_PATTERNS: Tuple[str, ...] = (
    "firestore().collection().add(",
    "storage().bucket().upload(",
    "functions.https.onCall",
    "external API",
    "third-party",
)

CRITICAL_WEIGHT = 10
HIGH_WEIGHT = 5
MEDIUM_WEIGHT = 2

CRITICAL_SCORE = 8  # any critical pattern, or a high-risk pattern plus extras
MEDIUM_SCORE = 3


class RiskAssessment(BaseModel):
    score: int
    tier: RiskTier
    matched: List[str] = Field(default_factory=list)
    line_count: int = 0


def assess_risk(source: str) -> RiskAssessment:
    """
    Score source text and map the score to a tier.

    Args:
        source: Function source code

    Returns:
        RiskAssessment with the score, tier and the patterns that matched
    """
    score = 0
    matched: List[str] = []
    for patterns, weight in (
        (CRITICAL_PATTERNS, CRITICAL_WEIGHT),
        (HIGH_RISK_PATTERNS, HIGH_WEIGHT),
        (MEDIUM_RISK_PATTERNS, MEDIUM_WEIGHT),
    ):
        for pattern in patterns:
            if pattern in source:
                score += weight
                matched.append(pattern)

    line_count = len(source.split("\n"))
    if line_count > 200:
        score += 3
    elif line_count > 100:
        score += 1

    if score >= CRITICAL_SCORE:
        tier = RiskTier.CRITICAL
    elif score >= MEDIUM_SCORE:
        tier = RiskTier.MEDIUM
    else:
        tier = RiskTier.LOW

    return RiskAssessment(score=score, tier=tier, matched=matched, line_count=line_count)


def assess_risk_tier(source: str) -> RiskTier:
    return assess_risk(source).tier


def assess_file(path: Union[str, Path]) -> RiskAssessment:
    """Classify a source file on disk."""
    return assess_risk(Path(path).read_text(encoding="utf-8", errors="replace"))
