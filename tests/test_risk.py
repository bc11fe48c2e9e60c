"""Tests for keyword-based risk classification."""

from cvplus_rollout.models import RiskTier
from cvplus_rollout.risk import assess_file, assess_risk, assess_risk_tier


def test_plain_function_is_low_risk():
    source = "export const analyze = (cv) => cv.sections.map(score);"

    assessment = assess_risk(source)

    assert assessment.tier == RiskTier.LOW
    assert assessment.score == 0
    assert assessment.matched == []


def test_critical_keyword_is_critical():
    assert assess_risk_tier("const charge = await payment.create(order);") == RiskTier.CRITICAL


def test_single_high_risk_pattern_is_medium():
    assessment = assess_risk("await fetch(webhook, { method: 'POST' });")

    assert assessment.score == 5
    assert assessment.tier == RiskTier.MEDIUM
    assert assessment.matched == ["webhook"]


def test_high_risk_patterns_add_up_to_critical():
    assessment = assess_risk("sendEmail(user); notify(webhook);")

    assert assessment.score == 10
    assert assessment.tier == RiskTier.CRITICAL


def test_long_source_adds_to_score():
    body = "\n".join(f"line {i}" for i in range(250))

    assessment = assess_risk("functions.https.onCall(handler)\n" + body)

    assert assessment.line_count == 251
    assert assessment.score == 2 + 3
    assert assessment.tier == RiskTier.MEDIUM


def test_assess_file(tmp_path):
    path = tmp_path / "billing.ts"
    path.write_text("export const refund = () => billing.refund();\n")

    assert assess_file(path).tier == RiskTier.CRITICAL
