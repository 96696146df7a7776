"""Production workflow engine for a plastic bag manufacturing plant.

This package tracks orders as they move through ordered steps of machines
(extrusion, printing, cutting, ...), records per-machine production rows
with computed totals, applies a quality gate on completion and exposes the
operator actions start, save, stop and resume.
"""

from .domain import (
    MachineStatus,
    Order,
    OrderPriority,
    OrderStatus,
    ProductionTable,
    StepStatus,
    StopType,
    TargetOutput,
)
from .errors import WorkflowError
from .production_rows import RowMutation
from .quality import QualityOverride
from .services import MachinePlan, StepPlan, WorkflowOptions, WorkflowService

__all__ = [
    "MachineStatus",
    "Order",
    "OrderPriority",
    "OrderStatus",
    "ProductionTable",
    "StepStatus",
    "StopType",
    "TargetOutput",
    "WorkflowError",
    "RowMutation",
    "QualityOverride",
    "MachinePlan",
    "StepPlan",
    "WorkflowOptions",
    "WorkflowService",
]
