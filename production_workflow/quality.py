"""Quality gate applied when a machine completes its work on an order."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Sequence

from .domain import CalculatedOutput, QualityStatus, TargetOutput

WEIGHT_TOLERANCE = 0.9


@dataclass(slots=True)
class QualityOverride:
    """Manual verdict supplied by an authorized reviewer."""

    status: QualityStatus
    notes: Sequence[str] = field(default_factory=tuple)


class QualityVerdict(NamedTuple):
    status: QualityStatus
    notes: List[str]


def _fmt(value: float) -> str:
    return f"{value:g}"


def evaluate(
    calculated: CalculatedOutput,
    target: TargetOutput,
    manual_override: Optional[QualityOverride] = None,
    *,
    weight_tolerance: float = WEIGHT_TOLERANCE,
) -> QualityVerdict:
    """Compare calculated output against the machine's targets.

    Every present threshold that is violated degrades the verdict to
    ``review`` and adds a note. A manual override replaces the status; its
    notes are appended after the computed ones.
    """

    status = QualityStatus.PASSED
    notes: List[str] = []

    if target.expected_weight and calculated.net_weight < target.expected_weight * weight_tolerance:
        status = QualityStatus.REVIEW
        notes.append(
            f"Net weight {_fmt(calculated.net_weight)}kg below expected "
            f"{_fmt(target.expected_weight)}kg"
        )
    if target.expected_efficiency and calculated.efficiency < target.expected_efficiency:
        status = QualityStatus.REVIEW
        notes.append(
            f"Efficiency {_fmt(calculated.efficiency)}% below expected "
            f"{_fmt(target.expected_efficiency)}%"
        )
    if target.max_wastage and calculated.wastage_weight > target.max_wastage:
        status = QualityStatus.REVIEW
        notes.append(
            f"Wastage {_fmt(calculated.wastage_weight)}kg exceeds maximum "
            f"{_fmt(target.max_wastage)}kg"
        )

    if manual_override is not None:
        status = manual_override.status
        notes.extend(manual_override.notes)

    return QualityVerdict(status=status, notes=notes)


__all__ = ["QualityOverride", "QualityVerdict", "evaluate", "WEIGHT_TOLERANCE"]
