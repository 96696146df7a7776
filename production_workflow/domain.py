"""Core data structures for the production workflow engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from .errors import NotFoundError, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """Lifecycle stages for a production order."""

    WAIT_FOR_APPROVAL = "Wait for Approval"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPATCHED = "dispatched"


class OrderPriority(IntEnum):
    """Priority levels used to order the operator work queue."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, value: str) -> "OrderPriority":
        try:
            return cls[value.strip().upper()]
        except KeyError as exc:
            raise ValidationError(f"Unknown priority {value!r}") from exc


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class MachineStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    PAUSED = "paused"
    ERROR = "error"


class StopType(str, Enum):
    """Ways an operator can halt a running machine."""

    PAUSE = "pause"
    STOP = "stop"
    ERROR = "error"
    MAINTENANCE = "maintenance"

    @classmethod
    def parse(cls, value: "str | StopType") -> "StopType":
        try:
            return cls(value)
        except ValueError as exc:
            raise ValidationError(
                "Invalid stop type. Use: pause, stop, error, or maintenance"
            ) from exc


class QualityStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    REVIEW = "review"


class OutputStatus(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"


class TableStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RowAction(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class NoteType(str, Enum):
    GENERAL = "general"
    PRODUCTION = "production"
    QUALITY = "quality"
    DELIVERY = "delivery"
    CUSTOMER = "customer"


DEFAULT_COLUMNS: Tuple[str, ...] = (
    "Material Type",
    "Raw Weight",
    "Wastage",
    "Cost per KG",
    "Net Weight",
    "Efficiency %",
    "Total Cost",
)

DEFAULT_FORMULAS: Tuple[Tuple[str, str], ...] = (
    ("Net Weight", "raw_weight - wastage"),
    ("Efficiency %", "net_weight / raw_weight * 100"),
    ("Total Cost", "raw_weight * cost_per_kg"),
)


@dataclass(slots=True)
class TableConfig:
    """Column layout and per-row formulas of a machine's production table."""

    columns: Tuple[str, ...] = DEFAULT_COLUMNS
    formulas: Tuple[Tuple[str, str], ...] = DEFAULT_FORMULAS


@dataclass(slots=True)
class TargetOutput:
    """Expected output of a machine for one order; ``None`` means no threshold."""

    expected_weight: Optional[float] = None
    expected_efficiency: Optional[float] = None
    max_wastage: Optional[float] = None


@dataclass(slots=True)
class Machine:
    """A production machine registered in the directory."""

    id: str
    name: str
    machine_type: str = ""
    location: str = ""
    table_config: TableConfig = field(default_factory=TableConfig)
    target_output: Optional[TargetOutput] = None


@dataclass(slots=True)
class Operator:
    """A machine operator; an empty ``machine_ids`` grants every machine."""

    id: str
    name: str
    machine_ids: Tuple[str, ...] = tuple()


@dataclass(slots=True)
class CalculatedOutput:
    """Snapshot of a machine's aggregated production rows."""

    net_weight: float = 0.0
    wastage_weight: float = 0.0
    efficiency: float = 0.0
    total_cost: float = 0.0
    rows_processed: int = 0
    status: OutputStatus = OutputStatus.PARTIAL
    last_updated: Optional[datetime] = None


@dataclass(slots=True)
class OperatorAssignment:
    """One continuous binding of an operator to a machine."""

    operator_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    end_reason: str = ""
    output: Optional[CalculatedOutput] = None


@dataclass(slots=True)
class MachineProgress:
    """Execution record of one machine within one step of one order."""

    machine_id: str
    sequence_order: int
    status: MachineStatus = MachineStatus.PENDING
    operator_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    target_output: TargetOutput = field(default_factory=TargetOutput)
    calculated_output: CalculatedOutput = field(default_factory=CalculatedOutput)
    quality_status: QualityStatus = QualityStatus.PENDING
    quality_notes: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    note: Optional[str] = None
    error_acknowledged: bool = False
    machine_table_data_id: Optional[str] = None
    assignments: List[OperatorAssignment] = field(default_factory=list)

    def open_assignment(self) -> Optional[OperatorAssignment]:
        if self.assignments and self.assignments[-1].ended_at is None:
            return self.assignments[-1]
        return None


@dataclass(slots=True)
class Step:
    """One pipeline stage of an order."""

    step_index: int
    step_id: str
    step_name: str = ""
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    machines: List[MachineProgress] = field(default_factory=list)

    def ordered_machines(self) -> List[MachineProgress]:
        return sorted(self.machines, key=lambda machine: machine.sequence_order)

    def find_machine(self, machine_id: str) -> Optional[MachineProgress]:
        for machine in self.machines:
            if machine.machine_id == machine_id:
                return machine
        return None


@dataclass(slots=True)
class OrderNote:
    message: str
    created_by: str
    note_type: NoteType = NoteType.GENERAL
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class RealTimeSummary:
    """Derived progress summary; rebuilt after every mutation."""

    total_net_weight: float = 0.0
    total_wastage: float = 0.0
    total_cost: float = 0.0
    overall_efficiency: float = 0.0
    active_machines: int = 0
    completed_machines: int = 0
    total_rows_processed: int = 0
    completion_percentage: int = 0
    last_updated: Optional[datetime] = None


@dataclass(slots=True)
class Order:
    """A customer production job moving through the pipeline."""

    id: str
    steps: List[Step]
    priority: OrderPriority = OrderPriority.NORMAL
    status: OrderStatus = OrderStatus.WAIT_FOR_APPROVAL
    current_step_index: int = 0
    customer_reference: str = ""
    remarks: str = ""
    created_at: datetime = field(default_factory=utcnow)
    actual_start_date: Optional[datetime] = None
    actual_end_date: Optional[datetime] = None
    real_time_data: RealTimeSummary = field(default_factory=RealTimeSummary)
    notes: List[OrderNote] = field(default_factory=list)

    def get_step(self, step_index: int) -> Step:
        if step_index < 0 or step_index >= len(self.steps):
            raise NotFoundError(
                f"Step {step_index} not found in order {self.id!r}"
            )
        return self.steps[step_index]

    def locate_machine(
        self, machine_id: str, step_index: Optional[int] = None
    ) -> Tuple[Step, MachineProgress]:
        """Find a machine entry, preferring the first one not yet completed."""

        if step_index is not None:
            step = self.get_step(step_index)
            machine = step.find_machine(machine_id)
            if machine is None:
                raise NotFoundError(
                    f"Machine {machine_id!r} not found in step {step_index} "
                    f"of order {self.id!r}"
                )
            return step, machine
        matches = [
            (step, machine)
            for step in self.steps
            for machine in step.machines
            if machine.machine_id == machine_id
        ]
        if not matches:
            raise NotFoundError(f"Machine {machine_id!r} not found in order {self.id!r}")
        for step, machine in matches:
            if machine.status != MachineStatus.COMPLETED:
                return step, machine
        return matches[0]

    def iter_machines(self):
        for step in self.steps:
            for machine in step.machines:
                yield step, machine


@dataclass(slots=True)
class ProductionRow:
    """One operator-entered measurement row plus its computed fields."""

    row_id: int
    data: Dict[str, Any]
    calculated: Dict[str, Optional[float]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class TotalCalculations:
    total_net_weight: float = 0.0
    total_raw_weight: float = 0.0
    total_wastage: float = 0.0
    overall_efficiency: float = 0.0
    average_efficiency: float = 0.0
    total_cost: float = 0.0
    total_rows: int = 0


@dataclass(slots=True)
class TableNote:
    message: str
    created_by: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ProductionTable:
    """Production rows of one machine for one order."""

    id: str
    order_id: str
    machine_id: str
    step_index: int = 0
    status: TableStatus = TableStatus.ACTIVE
    current_operator: Optional[str] = None
    rows: List[ProductionRow] = field(default_factory=list)
    totals: TotalCalculations = field(default_factory=TotalCalculations)
    notes: List[TableNote] = field(default_factory=list)
    shift_started_at: Optional[datetime] = None
    shift_ended_at: Optional[datetime] = None
    last_calculated_at: Optional[datetime] = None

    def find_row(self, row_id: int) -> Optional[ProductionRow]:
        for row in self.rows:
            if row.row_id == row_id:
                return row
        return None


def table_key(order_id: str, step_index: int, machine_id: str) -> str:
    return f"{order_id}:{step_index}:{machine_id}"


__all__ = [
    "utcnow",
    "OrderStatus",
    "OrderPriority",
    "StepStatus",
    "MachineStatus",
    "StopType",
    "QualityStatus",
    "OutputStatus",
    "TableStatus",
    "RowAction",
    "NoteType",
    "DEFAULT_COLUMNS",
    "DEFAULT_FORMULAS",
    "TableConfig",
    "TargetOutput",
    "Machine",
    "Operator",
    "CalculatedOutput",
    "OperatorAssignment",
    "MachineProgress",
    "Step",
    "OrderNote",
    "RealTimeSummary",
    "Order",
    "ProductionRow",
    "TotalCalculations",
    "TableNote",
    "ProductionTable",
    "table_key",
]
