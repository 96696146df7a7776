"""Service layer that implements the production workflow engine."""

from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)
from uuid import uuid4

from .domain import (
    DEFAULT_FORMULAS,
    CalculatedOutput,
    Machine,
    MachineProgress,
    MachineStatus,
    NoteType,
    Operator,
    OperatorAssignment,
    Order,
    OrderNote,
    OrderPriority,
    OrderStatus,
    OutputStatus,
    ProductionTable,
    QualityStatus,
    Step,
    StopType,
    TableConfig,
    TableStatus,
    TargetOutput,
    table_key,
    utcnow,
)
from .errors import (
    EmptyOutputError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SequenceError,
    ValidationError,
    WorkflowError,
)
from .formulas import FormulaError, FormulaEvaluator
from .production_rows import (
    ProductionRowStore,
    RowMutation,
    RowResult,
    snapshot_output,
)
from .quality import QualityOverride, QualityVerdict, evaluate
from .repository import DuplicateRecordError, InMemoryRepository, RecordNotFoundError
from .sequencing import can_start, completion_percentage, derive_summary, refresh_order

logger = logging.getLogger(__name__)

MutationInput = Union[RowMutation, Mapping[str, Any]]

_CLOSED_ORDER_STATES = {
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.DISPATCHED,
}

_STOP_TRANSITIONS: Dict[StopType, MachineStatus] = {
    StopType.PAUSE: MachineStatus.PAUSED,
    StopType.MAINTENANCE: MachineStatus.PAUSED,
    StopType.STOP: MachineStatus.PENDING,
    StopType.ERROR: MachineStatus.ERROR,
}


class Authorizer(Protocol):
    """External capability check: may ``actor_id`` act on this machine?"""

    def can_act(self, actor_id: str, order_id: str, machine_id: str) -> bool:
        ...


class DirectoryAuthorizer:
    """Grants access to registered operators for the machines listed on them."""

    def __init__(self, operators: InMemoryRepository[Operator]) -> None:
        self._operators = operators

    def can_act(self, actor_id: str, order_id: str, machine_id: str) -> bool:
        if actor_id not in self._operators:
            return False
        operator = self._operators.get(actor_id)
        return not operator.machine_ids or machine_id in operator.machine_ids


@dataclass(slots=True)
class WorkflowOptions:
    """Tunable behaviour of the workflow engine."""

    weight_tolerance: float = 0.9
    default_target_output: TargetOutput = field(default_factory=TargetOutput)
    allow_operator_rebind_on_resume: bool = True
    branch_code: str = "MAIN"
    default_formulas: Tuple[Tuple[str, str], ...] = DEFAULT_FORMULAS


@dataclass(slots=True)
class MachinePlan:
    """Catalog entry describing one machine of a step."""

    machine_id: str
    sequence_order: Optional[int] = None
    target_output: Optional[TargetOutput] = None


@dataclass(slots=True)
class StepPlan:
    """Catalog entry describing one pipeline stage of an order."""

    step_id: str
    machines: Sequence[MachinePlan]
    step_name: str = ""


@dataclass(slots=True)
class SaveResult:
    """Outcome of ``save_progress``."""

    order: Order
    table: ProductionTable
    applied: List[RowResult]
    failed: List[RowResult]
    completed: bool = False
    quality: Optional[QualityVerdict] = None


@dataclass(slots=True)
class StopResult:
    order: Order
    table: ProductionTable
    applied: List[RowResult]
    failed: List[RowResult]
    stop_type: StopType
    machine_status: MachineStatus


@dataclass(slots=True)
class PendingWork:
    """An order whose next eligible action targets a given machine."""

    order_id: str
    step_index: int
    machine_id: str
    action: str
    priority: OrderPriority
    created_at: datetime
    order_status: OrderStatus


@dataclass(slots=True)
class PreviousMachineOutput:
    step_index: int
    step_name: str
    machine_id: str
    operator_id: Optional[str]
    completed_at: Optional[datetime]
    calculated_output: CalculatedOutput
    quality_status: QualityStatus


@dataclass(slots=True)
class OrderState:
    """Read-only projection of an order with per-machine eligibility."""

    order: Order
    completion_percentage: int
    eligibility: Dict[str, bool]


def _entry_key(step_index: int, machine_id: str) -> str:
    return f"{step_index}:{machine_id}"


def _close_assignment(
    machine: MachineProgress, now: datetime, reason: str, output: CalculatedOutput
) -> None:
    assignment = machine.open_assignment()
    if assignment is not None:
        assignment.ended_at = now
        assignment.end_reason = reason
        assignment.output = output


class WorkflowService:
    """Facade that exposes the production workflow use-cases to clients."""

    def __init__(
        self,
        order_repo: Optional[InMemoryRepository[Order]] = None,
        table_repo: Optional[InMemoryRepository[ProductionTable]] = None,
        machine_repo: Optional[InMemoryRepository[Machine]] = None,
        operator_repo: Optional[InMemoryRepository[Operator]] = None,
        *,
        authorizer: Optional[Authorizer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.orders = order_repo if order_repo is not None else InMemoryRepository()
        self.rows = ProductionRowStore(table_repo)
        self.machines = machine_repo if machine_repo is not None else InMemoryRepository()
        self.operators = operator_repo if operator_repo is not None else InMemoryRepository()
        self.authorizer: Authorizer = (
            authorizer if authorizer is not None else DirectoryAuthorizer(self.operators)
        )
        self.options = WorkflowOptions()
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------
    def register_machine(
        self,
        name: str,
        *,
        machine_type: str = "",
        location: str = "",
        columns: Optional[Sequence[str]] = None,
        formulas: Optional[Sequence[Tuple[str, str]]] = None,
        target_output: Optional[TargetOutput] = None,
        machine_id: Optional[str] = None,
    ) -> Machine:
        formula_pairs = tuple(formulas) if formulas is not None else self.options.default_formulas
        for column, expression in formula_pairs:
            try:
                FormulaEvaluator.validate(expression)
            except FormulaError as exc:
                raise ValidationError(f"Formula for {column!r} is invalid: {exc}") from exc
        config = TableConfig(formulas=formula_pairs)
        if columns is not None:
            config.columns = tuple(dict.fromkeys(columns))
        machine = Machine(
            id=machine_id or str(uuid4()),
            name=name,
            machine_type=machine_type,
            location=location,
            table_config=config,
            target_output=target_output,
        )
        self.machines.add(machine.id, machine)
        return machine

    def register_operator(
        self,
        name: str,
        machine_ids: Sequence[str] = (),
        *,
        operator_id: Optional[str] = None,
    ) -> Operator:
        for machine_id in machine_ids:
            if machine_id not in self.machines:
                raise RecordNotFoundError(f"Machine {machine_id!r} does not exist")
        operator = Operator(
            id=operator_id or str(uuid4()),
            name=name,
            machine_ids=tuple(dict.fromkeys(machine_ids)),
        )
        self.operators.add(operator.id, operator)
        return operator

    def update_workflow_options(
        self,
        *,
        weight_tolerance: float,
        allow_operator_rebind_on_resume: bool,
        branch_code: str,
        default_target_output: Optional[TargetOutput] = None,
    ) -> WorkflowOptions:
        self.options = WorkflowOptions(
            weight_tolerance=min(max(weight_tolerance, 0.0), 1.0),
            default_target_output=default_target_output or TargetOutput(),
            allow_operator_rebind_on_resume=allow_operator_rebind_on_resume,
            branch_code=branch_code.strip().upper() or "MAIN",
            default_formulas=self.options.default_formulas,
        )
        return self.options

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def _next_order_id(self, created_at: datetime, skip: int = 0) -> str:
        prefix = f"ORD-{self.options.branch_code}-{created_at.strftime('%y%m%d')}-"
        count = sum(1 for order in self.orders if order.id.startswith(prefix))
        return f"{prefix}{count + 1 + skip:03d}"

    def create_order(
        self,
        plan: Sequence[StepPlan],
        *,
        priority: OrderPriority = OrderPriority.NORMAL,
        customer_reference: str = "",
        remarks: str = "",
        created_at: Optional[datetime] = None,
        order_id: Optional[str] = None,
    ) -> Order:
        if not any(step_plan.machines for step_plan in plan):
            raise ValidationError("Production orders must contain at least one machine")
        created_at = created_at or self._now()
        steps: List[Step] = []
        for index, step_plan in enumerate(plan):
            machines: List[MachineProgress] = []
            seen_orders = set()
            seen_machines = set()
            for position, machine_plan in enumerate(step_plan.machines):
                if machine_plan.machine_id not in self.machines:
                    raise RecordNotFoundError(
                        f"Machine {machine_plan.machine_id!r} does not exist"
                    )
                if machine_plan.machine_id in seen_machines:
                    raise ValidationError(
                        f"Machine {machine_plan.machine_id!r} appears twice in step {index}"
                    )
                sequence_order = (
                    position if machine_plan.sequence_order is None else machine_plan.sequence_order
                )
                if sequence_order in seen_orders:
                    raise ValidationError(
                        f"Duplicate sequence order {sequence_order} in step {index}"
                    )
                seen_orders.add(sequence_order)
                seen_machines.add(machine_plan.machine_id)
                directory_entry = self.machines.get(machine_plan.machine_id)
                target = (
                    machine_plan.target_output
                    or directory_entry.target_output
                    or self.options.default_target_output
                )
                machines.append(
                    MachineProgress(
                        machine_id=machine_plan.machine_id,
                        sequence_order=sequence_order,
                        target_output=TargetOutput(
                            expected_weight=target.expected_weight,
                            expected_efficiency=target.expected_efficiency,
                            max_wastage=target.max_wastage,
                        ),
                    )
                )
            steps.append(
                Step(
                    step_index=index,
                    step_id=step_plan.step_id,
                    step_name=step_plan.step_name,
                    machines=machines,
                )
            )
        order = Order(
            id=order_id or self._next_order_id(created_at),
            steps=steps,
            priority=priority,
            customer_reference=customer_reference,
            remarks=remarks,
            created_at=created_at,
        )
        refresh_order(order, created_at)
        skip = 0
        while True:
            try:
                self.orders.add(order.id, order)
                break
            except DuplicateRecordError:
                if order_id:
                    raise
                skip += 1
                logger.debug("Order id %s already taken, trying the next number", order.id)
                order.id = self._next_order_id(created_at, skip)
        logger.info(
            "Created order %s with %d steps (priority %s)",
            order.id,
            len(steps),
            priority.label,
        )
        return order

    def _update_order(
        self,
        order_id: str,
        apply: Callable[[Order], Any],
        *,
        expect: Optional[Callable[[Order], bool]] = None,
    ) -> Order:
        order, _ = self.orders.conditional_update(order_id, apply, expect=expect)
        return order

    def _lifecycle_transition(
        self,
        order_id: str,
        allowed: Sequence[OrderStatus],
        target: OrderStatus,
        actor: str,
        message: str,
    ) -> Order:
        def apply(order: Order) -> None:
            if order.status not in allowed:
                raise InvalidStateError(
                    f"Order status is '{order.status.value}'. Only "
                    + ", ".join(f"'{status.value}'" for status in allowed)
                    + f" orders can become '{target.value}'."
                )
            previous = order.status
            order.status = target
            now = self._now()
            order.notes.append(
                OrderNote(message=message, created_by=actor, note_type=NoteType.PRODUCTION, created_at=now)
            )
            order.real_time_data = derive_summary(order, now)
            logger.info("Order %s: %s -> %s", order.id, previous.value, target.value)

        return self._update_order(order_id, apply)

    def approve_order(self, order_id: str, *, actor: str = "system") -> Order:
        return self._lifecycle_transition(
            order_id,
            [OrderStatus.WAIT_FOR_APPROVAL],
            OrderStatus.PENDING,
            actor,
            "APPROVED",
        )

    def cancel_order(self, order_id: str, reason: str = "", *, actor: str = "system") -> Order:
        return self._lifecycle_transition(
            order_id,
            [OrderStatus.WAIT_FOR_APPROVAL, OrderStatus.PENDING, OrderStatus.IN_PROGRESS],
            OrderStatus.CANCELLED,
            actor,
            f"CANCELLED: {reason or 'No reason provided'}",
        )

    def dispatch_order(self, order_id: str, *, actor: str = "system") -> Order:
        return self._lifecycle_transition(
            order_id,
            [OrderStatus.COMPLETED],
            OrderStatus.DISPATCHED,
            actor,
            "DISPATCHED",
        )

    def add_order_note(
        self,
        order_id: str,
        message: str,
        *,
        created_by: str = "system",
        note_type: NoteType = NoteType.GENERAL,
    ) -> Order:
        if not message.strip():
            raise ValidationError("Note message must not be empty")

        def apply(order: Order) -> None:
            order.notes.append(
                OrderNote(
                    message=message,
                    created_by=created_by,
                    note_type=note_type,
                    created_at=self._now(),
                )
            )

        return self._update_order(order_id, apply)

    # ------------------------------------------------------------------
    # Shared guards
    # ------------------------------------------------------------------
    def _load_order(self, order_id: str) -> Order:
        try:
            return self.orders.get(order_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(f"Order {order_id!r} not found") from exc

    @staticmethod
    def _ensure_workable(order: Order) -> None:
        if order.status in _CLOSED_ORDER_STATES:
            raise InvalidStateError(
                f"Order {order.id!r} is {order.status.value}; machines cannot change"
            )

    def _authorize(self, actor_id: str, order_id: str, machine_id: str) -> None:
        if not self.authorizer.can_act(actor_id, order_id, machine_id):
            logger.warning(
                "Actor %s is not entitled to act on machine %s of order %s",
                actor_id,
                machine_id,
                order_id,
            )
            raise ForbiddenError(
                f"Operator {actor_id!r} may not act on machine {machine_id!r}"
            )

    @staticmethod
    def _ensure_bound_operator(machine: MachineProgress, operator_id: str) -> None:
        if machine.operator_id != operator_id:
            raise ForbiddenError("This machine is not assigned to you")

    def _formulas_for(self, machine_id: str) -> Tuple[Tuple[str, str], ...]:
        try:
            return self.machines.get(machine_id).table_config.formulas
        except RecordNotFoundError:
            return self.options.default_formulas

    @staticmethod
    def _coerce_mutations(mutations: Sequence[MutationInput]) -> List[RowMutation]:
        coerced = []
        for mutation in mutations:
            if isinstance(mutation, RowMutation):
                coerced.append(mutation)
            elif isinstance(mutation, Mapping):
                coerced.append(RowMutation.from_dict(mutation))
            else:
                raise ValidationError("Row mutations must be RowMutation objects or mappings")
        return coerced

    @staticmethod
    def _same_binding(
        step_index: int, machine_id: str, status: MachineStatus, operator_id: Optional[str]
    ) -> Callable[[Order], bool]:
        def expect(current: Order) -> bool:
            step = current.steps[step_index]
            entry = step.find_machine(machine_id)
            return (
                entry is not None
                and entry.status == status
                and entry.operator_id == operator_id
            )

        return expect

    # ------------------------------------------------------------------
    # Engine operations
    # ------------------------------------------------------------------
    def start_machine(
        self,
        order_id: str,
        step_index: int,
        machine_id: str,
        operator_id: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> Order:
        """Move a pending machine to in-progress and bind its operator."""

        acting = actor_id or operator_id
        bound = operator_id or actor_id
        if acting is None or bound is None:
            raise ValidationError("An operator is required to start a machine")
        snapshot = self._load_order(order_id)
        self._ensure_workable(snapshot)
        snapshot.locate_machine(machine_id, step_index)
        self._authorize(acting, order_id, machine_id)
        if bound != acting:
            self._authorize(bound, order_id, machine_id)

        prior: Dict[str, Any] = {}

        def apply(order: Order) -> None:
            self._ensure_workable(order)
            step, machine = order.locate_machine(machine_id, step_index)
            if machine.status != MachineStatus.PENDING:
                raise InvalidStateError(
                    f"Machine {machine_id!r} is '{machine.status.value}', expected 'pending'"
                )
            if not can_start(order, step_index, machine):
                raise SequenceError(
                    "Cannot start this machine. Previous steps or machines are not completed yet."
                )
            prior["entry"] = deepcopy(machine)
            prior["status"] = order.status
            prior["actual_start_date"] = order.actual_start_date
            now = self._now()
            machine.status = MachineStatus.IN_PROGRESS
            machine.operator_id = bound
            machine.started_at = now
            machine.reason = None
            machine.note = None
            machine.machine_table_data_id = table_key(order_id, step_index, machine_id)
            machine.assignments.append(OperatorAssignment(operator_id=bound, started_at=now))
            if order.status in {OrderStatus.PENDING, OrderStatus.WAIT_FOR_APPROVAL}:
                order.status = OrderStatus.IN_PROGRESS
                if order.actual_start_date is None:
                    order.actual_start_date = now
            refresh_order(order, now)

        try:
            order = self._update_order(order_id, apply)
        except WorkflowError as exc:
            logger.warning(
                "Start of machine %s on order %s rejected (%s): %s",
                machine_id,
                order_id,
                exc.code,
                exc,
            )
            raise
        try:
            self.rows.open_table(order_id, step_index, machine_id, bound, self._now())
        except WorkflowError as exc:
            logger.warning(
                "Could not open table for machine %s on order %s (%s); reverting start",
                machine_id,
                order_id,
                exc.code,
            )
            self._revert_start(order_id, step_index, machine_id, bound, prior)
            raise
        logger.info(
            "Order %s step %d machine %s: pending -> in-progress (operator %s)",
            order_id,
            step_index,
            machine_id,
            bound,
        )
        return order

    def _revert_start(
        self,
        order_id: str,
        step_index: int,
        machine_id: str,
        operator_id: str,
        prior: Mapping[str, Any],
    ) -> None:
        """Put the machine entry and order back the way ``start_machine`` found them."""

        def restore(order: Order) -> None:
            step = order.steps[step_index]
            for position, entry in enumerate(step.machines):
                if entry.machine_id == machine_id:
                    step.machines[position] = deepcopy(prior["entry"])
            order.status = prior["status"]
            order.actual_start_date = prior["actual_start_date"]
            refresh_order(order, self._now())

        expect = self._same_binding(step_index, machine_id, MachineStatus.IN_PROGRESS, operator_id)
        self._update_order(order_id, restore, expect=expect)

    def save_progress(
        self,
        order_id: str,
        machine_id: str,
        row_mutations: Sequence[MutationInput] = (),
        *,
        operator_id: str,
        notes: str = "",
        complete_order: bool = False,
        quality_override: Optional[QualityOverride] = None,
        step_index: Optional[int] = None,
    ) -> SaveResult:
        """Apply row mutations and optionally complete the machine."""

        mutations = self._coerce_mutations(row_mutations)
        snapshot = self._load_order(order_id)
        self._ensure_workable(snapshot)
        step, machine = snapshot.locate_machine(machine_id, step_index)
        if machine.status != MachineStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"Cannot save. Machine status is '{machine.status.value}', expected 'in-progress'"
            )
        self._ensure_bound_operator(machine, operator_id)
        self._authorize(operator_id, order_id, machine_id)
        _, table_version = self.rows.get_table_versioned(order_id, step.step_index, machine_id)

        now = self._now()
        table, batch = self.rows.apply_mutations(
            order_id,
            step.step_index,
            machine_id,
            mutations,
            self._formulas_for(machine_id),
            operator_id,
            now,
            expected_version=table_version,
        )
        if notes:
            table = self.rows.add_note(order_id, step.step_index, machine_id, notes, operator_id, now)

        expect = self._same_binding(step.step_index, machine_id, MachineStatus.IN_PROGRESS, operator_id)
        if not complete_order:
            def record_partial(order: Order) -> None:
                _, entry = order.locate_machine(machine_id, step.step_index)
                entry.calculated_output = snapshot_output(table.totals, OutputStatus.PARTIAL, now)
                refresh_order(order, now)

            order = self._update_order(order_id, record_partial, expect=expect)
            logger.info(
                "Order %s machine %s: saved %d rows (%d failed)",
                order_id,
                machine_id,
                len(batch.applied),
                len(batch.failed),
            )
            return SaveResult(order=order, table=table, applied=batch.applied, failed=batch.failed)

        if not table.rows:
            raise EmptyOutputError("Cannot complete order without production data")
        output = snapshot_output(table.totals, OutputStatus.FINAL, now)
        verdict = evaluate(
            output,
            machine.target_output,
            quality_override,
            weight_tolerance=self.options.weight_tolerance,
        )

        def complete(order: Order) -> None:
            current_step, entry = order.locate_machine(machine_id, step.step_index)
            entry.status = MachineStatus.COMPLETED
            entry.completed_at = now
            entry.calculated_output = output
            entry.quality_status = verdict.status
            entry.quality_notes = list(verdict.notes)
            entry.machine_table_data_id = table.id
            _close_assignment(entry, now, "completed", output)
            order.notes.append(
                OrderNote(
                    message=(
                        f"MACHINE COMPLETED (Step {current_step.step_index + 1}): "
                        f"{machine_id} quality {verdict.status.value}"
                    ),
                    created_by=operator_id,
                    note_type=NoteType.PRODUCTION,
                    created_at=now,
                )
            )
            refresh_order(order, now)

        order = self._update_order(order_id, complete, expect=expect)
        table = self.rows.freeze(order_id, step.step_index, machine_id, TableStatus.COMPLETED, now)
        logger.info(
            "Order %s step %d machine %s: in-progress -> completed (quality %s)",
            order_id,
            step.step_index,
            machine_id,
            verdict.status.value,
        )
        if order.status == OrderStatus.COMPLETED:
            logger.info("Order %s completed", order_id)
        return SaveResult(
            order=order,
            table=table,
            applied=batch.applied,
            failed=batch.failed,
            completed=True,
            quality=verdict,
        )

    def stop_machine(
        self,
        order_id: str,
        machine_id: str,
        stop_type: Union[StopType, str],
        reason: str,
        *,
        operator_id: str,
        notes: str = "",
        row_mutations: Sequence[MutationInput] = (),
        planned_resume_at: Optional[str] = None,
        step_index: Optional[int] = None,
    ) -> StopResult:
        """Flush pending rows, then pause, release or fault the machine."""

        kind = StopType.parse(stop_type)
        if not reason or not reason.strip():
            raise ValidationError("A stop reason is required")
        mutations = self._coerce_mutations(row_mutations)
        snapshot = self._load_order(order_id)
        self._ensure_workable(snapshot)
        step, machine = snapshot.locate_machine(machine_id, step_index)
        if machine.status not in {MachineStatus.IN_PROGRESS, MachineStatus.PAUSED}:
            raise InvalidStateError(
                f"Cannot stop. Machine status is '{machine.status.value}'. "
                "Only 'in-progress' or 'paused' machines can be stopped."
            )
        self._ensure_bound_operator(machine, operator_id)
        self._authorize(operator_id, order_id, machine_id)
        _, table_version = self.rows.get_table_versioned(order_id, step.step_index, machine_id)

        now = self._now()
        table, batch = self.rows.apply_mutations(
            order_id,
            step.step_index,
            machine_id,
            mutations,
            self._formulas_for(machine_id),
            operator_id,
            now,
            expected_version=table_version,
        )
        new_status = _STOP_TRANSITIONS[kind]
        output = snapshot_output(table.totals, OutputStatus.PARTIAL, now)
        previous_status = machine.status

        def apply(order: Order) -> None:
            _, entry = order.locate_machine(machine_id, step.step_index)
            entry.status = new_status
            entry.reason = reason
            entry.note = notes or None
            entry.calculated_output = output
            entry.error_acknowledged = False
            _close_assignment(entry, now, kind.value, output)
            if kind == StopType.STOP:
                entry.operator_id = None
            order.notes.append(
                OrderNote(
                    message=f"{kind.value.upper()}: {machine_id} - {reason}",
                    created_by=operator_id,
                    note_type=NoteType.PRODUCTION,
                    created_at=now,
                )
            )
            refresh_order(order, now)

        expect = self._same_binding(step.step_index, machine_id, previous_status, operator_id)
        order = self._update_order(order_id, apply, expect=expect)

        audit = [(f"{kind.value.upper()}: {reason}{f' - {notes}' if notes else ''}", operator_id)]
        if planned_resume_at:
            audit.append((f"Planned resume: {planned_resume_at}", operator_id))
        table = self.rows.freeze(order_id, step.step_index, machine_id, TableStatus.PAUSED, now, audit)
        logger.info(
            "Order %s step %d machine %s: %s -> %s (%s: %s)",
            order_id,
            step.step_index,
            machine_id,
            previous_status.value,
            new_status.value,
            kind.value,
            reason,
        )
        return StopResult(
            order=order,
            table=table,
            applied=batch.applied,
            failed=batch.failed,
            stop_type=kind,
            machine_status=new_status,
        )

    def acknowledge_error(
        self,
        order_id: str,
        machine_id: str,
        supervisor_id: str,
        note: str = "",
        *,
        step_index: Optional[int] = None,
    ) -> Order:
        """Record the intervention that clears a machine error."""

        snapshot = self._load_order(order_id)
        self._ensure_workable(snapshot)
        step, machine = snapshot.locate_machine(machine_id, step_index)
        if machine.status != MachineStatus.ERROR:
            raise InvalidStateError(
                f"Machine {machine_id!r} is '{machine.status.value}', expected 'error'"
            )
        self._authorize(supervisor_id, order_id, machine_id)

        def apply(order: Order) -> None:
            now = self._now()
            _, entry = order.locate_machine(machine_id, step.step_index)
            cleared = entry.reason
            entry.reason = None
            entry.note = note or None
            entry.error_acknowledged = True
            order.notes.append(
                OrderNote(
                    message=f"ERROR CLEARED: {machine_id} - {cleared or ''} {note}".strip(),
                    created_by=supervisor_id,
                    note_type=NoteType.PRODUCTION,
                    created_at=now,
                )
            )
            refresh_order(order, now)

        expect = self._same_binding(step.step_index, machine_id, MachineStatus.ERROR, machine.operator_id)
        order = self._update_order(order_id, apply, expect=expect)
        logger.info("Order %s machine %s: error acknowledged by %s", order_id, machine_id, supervisor_id)
        return order

    def resume_machine(
        self,
        order_id: str,
        machine_id: str,
        operator_id: str,
        *,
        step_index: Optional[int] = None,
    ) -> Order:
        """Continue a paused (or acknowledged errored) machine, keeping its rows."""

        snapshot = self._load_order(order_id)
        self._ensure_workable(snapshot)
        step, machine = snapshot.locate_machine(machine_id, step_index)
        if machine.status == MachineStatus.ERROR and not machine.error_acknowledged:
            raise InvalidStateError(
                f"Machine {machine_id!r} has an unresolved error; a supervisor must clear it first"
            )
        if machine.status not in {MachineStatus.PAUSED, MachineStatus.ERROR}:
            raise InvalidStateError(
                f"Machine {machine_id!r} is '{machine.status.value}'. "
                "Only 'paused' machines can be resumed."
            )
        if machine.operator_id != operator_id and not self.options.allow_operator_rebind_on_resume:
            raise ForbiddenError("This machine is assigned to another operator")
        self._authorize(operator_id, order_id, machine_id)
        previous_status = machine.status

        def apply(order: Order) -> None:
            now = self._now()
            _, entry = order.locate_machine(machine_id, step.step_index)
            entry.status = MachineStatus.IN_PROGRESS
            entry.operator_id = operator_id
            entry.started_at = now
            entry.reason = None
            entry.error_acknowledged = False
            entry.assignments.append(OperatorAssignment(operator_id=operator_id, started_at=now))
            refresh_order(order, now)

        expect = self._same_binding(step.step_index, machine_id, previous_status, machine.operator_id)
        order = self._update_order(order_id, apply, expect=expect)
        self.rows.open_table(order_id, step.step_index, machine_id, operator_id, self._now())
        logger.info(
            "Order %s step %d machine %s: %s -> in-progress (operator %s)",
            order_id,
            step.step_index,
            machine_id,
            previous_status.value,
            operator_id,
        )
        return order

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------
    def get_order_state(self, order_id: str) -> OrderState:
        order = self._load_order(order_id)
        eligibility = {
            _entry_key(step.step_index, machine.machine_id): (
                machine.status == MachineStatus.PENDING
                and order.status not in _CLOSED_ORDER_STATES
                and can_start(order, step.step_index, machine)
            )
            for step, machine in order.iter_machines()
        }
        return OrderState(
            order=order,
            completion_percentage=completion_percentage(order),
            eligibility=eligibility,
        )

    def get_production_table(
        self, order_id: str, machine_id: str, step_index: Optional[int] = None
    ) -> ProductionTable:
        step, _ = self._load_order(order_id).locate_machine(machine_id, step_index)
        return self.rows.get_table(order_id, step.step_index, machine_id)

    def get_pending_for_machine(self, machine_id: str) -> List[PendingWork]:
        """Orders whose next eligible action targets ``machine_id``."""

        if machine_id not in self.machines:
            raise NotFoundError(f"Machine {machine_id!r} not found")
        work: List[PendingWork] = []
        for order in self.orders:
            if order.status in _CLOSED_ORDER_STATES:
                continue
            for step, machine in order.iter_machines():
                if machine.machine_id != machine_id:
                    continue
                action = None
                if machine.status == MachineStatus.PENDING and can_start(
                    order, step.step_index, machine
                ):
                    action = "start"
                elif machine.status == MachineStatus.PAUSED or (
                    machine.status == MachineStatus.ERROR and machine.error_acknowledged
                ):
                    action = "resume"
                if action is None:
                    continue
                work.append(
                    PendingWork(
                        order_id=order.id,
                        step_index=step.step_index,
                        machine_id=machine_id,
                        action=action,
                        priority=order.priority,
                        created_at=order.created_at,
                        order_status=order.status,
                    )
                )
        work.sort(key=lambda item: (-int(item.priority), item.created_at))
        return work

    def get_previous_machine_outputs(
        self, order_id: str, step_index: int
    ) -> List[PreviousMachineOutput]:
        """Completed outputs of every machine in the steps before ``step_index``."""

        order = self._load_order(order_id)
        order.get_step(step_index)
        outputs = []
        for step in order.steps[:step_index]:
            for machine in step.ordered_machines():
                if machine.status != MachineStatus.COMPLETED:
                    continue
                last_operator = machine.assignments[-1].operator_id if machine.assignments else None
                outputs.append(
                    PreviousMachineOutput(
                        step_index=step.step_index,
                        step_name=step.step_name,
                        machine_id=machine.machine_id,
                        operator_id=last_operator,
                        completed_at=machine.completed_at,
                        calculated_output=machine.calculated_output,
                        quality_status=machine.quality_status,
                    )
                )
        return outputs


__all__ = [
    "WorkflowService",
    "WorkflowOptions",
    "Authorizer",
    "DirectoryAuthorizer",
    "MachinePlan",
    "StepPlan",
    "SaveResult",
    "StopResult",
    "PendingWork",
    "PreviousMachineOutput",
    "OrderState",
]
