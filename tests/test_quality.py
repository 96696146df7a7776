from production_workflow.domain import CalculatedOutput, QualityStatus, TargetOutput
from production_workflow.quality import QualityOverride, evaluate


def test_weight_shortfall_needs_review():
    verdict = evaluate(CalculatedOutput(net_weight=80), TargetOutput(expected_weight=100))
    assert verdict.status == QualityStatus.REVIEW
    assert verdict.notes == ["Net weight 80kg below expected 100kg"]


def test_weight_within_tolerance_passes():
    verdict = evaluate(CalculatedOutput(net_weight=95), TargetOutput(expected_weight=100))
    assert verdict.status == QualityStatus.PASSED
    assert verdict.notes == []


def test_missing_thresholds_always_pass():
    verdict = evaluate(CalculatedOutput(net_weight=0, efficiency=0), TargetOutput())
    assert verdict.status == QualityStatus.PASSED


def test_efficiency_and_wastage_notes():
    verdict = evaluate(
        CalculatedOutput(net_weight=100, efficiency=85, wastage_weight=12),
        TargetOutput(expected_efficiency=90, max_wastage=10),
    )
    assert verdict.status == QualityStatus.REVIEW
    assert verdict.notes == [
        "Efficiency 85% below expected 90%",
        "Wastage 12kg exceeds maximum 10kg",
    ]


def test_manual_override_replaces_status_and_keeps_notes():
    verdict = evaluate(
        CalculatedOutput(net_weight=80),
        TargetOutput(expected_weight=100),
        QualityOverride(status=QualityStatus.FAILED, notes=("Film tears",)),
    )
    assert verdict.status == QualityStatus.FAILED
    assert verdict.notes == ["Net weight 80kg below expected 100kg", "Film tears"]


def test_custom_tolerance():
    verdict = evaluate(
        CalculatedOutput(net_weight=95),
        TargetOutput(expected_weight=100),
        weight_tolerance=1.0,
    )
    assert verdict.status == QualityStatus.REVIEW
