"""Eligibility rules and derived step/order state."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .domain import (
    MachineProgress,
    MachineStatus,
    Order,
    OrderStatus,
    RealTimeSummary,
    Step,
    StepStatus,
)


def can_start(order: Order, step_index: int, machine: MachineProgress) -> bool:
    """Return whether ``machine`` may start given the rest of the order.

    Steps run strictly one after another and machines inside a step run in
    ``sequence_order``.
    """

    for previous in order.steps[:step_index]:
        if previous.status != StepStatus.COMPLETED:
            return False
        if any(m.status != MachineStatus.COMPLETED for m in previous.machines):
            return False

    step = order.steps[step_index]
    for sibling in step.ordered_machines():
        if sibling is machine or sibling.sequence_order >= machine.sequence_order:
            break
        if sibling.status != MachineStatus.COMPLETED:
            return False
    return True


def _was_released(machine: MachineProgress) -> bool:
    return machine.status == MachineStatus.PENDING and bool(machine.assignments)


def derive_step_status(step: Step) -> StepStatus:
    statuses = [machine.status for machine in step.machines]
    if all(status == MachineStatus.COMPLETED for status in statuses):
        return StepStatus.COMPLETED
    if MachineStatus.IN_PROGRESS in statuses:
        return StepStatus.IN_PROGRESS
    if MachineStatus.PAUSED in statuses or MachineStatus.ERROR in statuses:
        return StepStatus.BLOCKED
    if any(_was_released(machine) for machine in step.machines):
        return StepStatus.BLOCKED
    if all(status == MachineStatus.PENDING for status in statuses):
        return StepStatus.PENDING
    # completed machines followed by ones not started yet
    return StepStatus.IN_PROGRESS


def refresh_step(step: Step, now: datetime) -> StepStatus:
    status = derive_step_status(step)
    if status in {StepStatus.IN_PROGRESS, StepStatus.BLOCKED} and step.started_at is None:
        step.started_at = now
    if status == StepStatus.COMPLETED and step.completed_at is None:
        step.completed_at = now
        if step.started_at is None:
            step.started_at = now
    step.status = status
    return status


def current_step_index(order: Order) -> int:
    for step in order.steps:
        if step.status != StepStatus.COMPLETED:
            return step.step_index
    return len(order.steps)


def completion_percentage(order: Order) -> int:
    if not order.steps:
        return 0
    completed = sum(1 for step in order.steps if step.status == StepStatus.COMPLETED)
    return round(completed / len(order.steps) * 100)


def derive_summary(order: Order, now: Optional[datetime] = None) -> RealTimeSummary:
    """Build the progress summary of an order from its machine outputs."""

    total_net = 0.0
    total_wastage = 0.0
    total_cost = 0.0
    efficiency_sum = 0.0
    efficiency_count = 0
    rows = 0
    active = 0
    completed = 0
    for _, machine in order.iter_machines():
        output = machine.calculated_output
        total_net += output.net_weight
        total_wastage += output.wastage_weight
        total_cost += output.total_cost
        rows += output.rows_processed
        if output.efficiency > 0:
            efficiency_sum += output.efficiency
            efficiency_count += 1
        if machine.status == MachineStatus.IN_PROGRESS:
            active += 1
        elif machine.status == MachineStatus.COMPLETED:
            completed += 1
    return RealTimeSummary(
        total_net_weight=round(total_net, 2),
        total_wastage=round(total_wastage, 2),
        total_cost=round(total_cost, 2),
        overall_efficiency=round(efficiency_sum / efficiency_count, 2)
        if efficiency_count
        else 0.0,
        active_machines=active,
        completed_machines=completed,
        total_rows_processed=rows,
        completion_percentage=completion_percentage(order),
        last_updated=now,
    )


def refresh_order(order: Order, now: datetime) -> None:
    """Recompute every derived field of ``order`` after a machine transition."""

    for step in order.steps:
        refresh_step(step, now)
    order.current_step_index = current_step_index(order)
    all_completed = all(step.status == StepStatus.COMPLETED for step in order.steps)
    if all_completed and order.status not in {OrderStatus.CANCELLED, OrderStatus.DISPATCHED}:
        order.status = OrderStatus.COMPLETED
        if order.actual_end_date is None:
            order.actual_end_date = now
    order.real_time_data = derive_summary(order, now)


__all__ = [
    "can_start",
    "derive_step_status",
    "refresh_step",
    "current_step_index",
    "completion_percentage",
    "derive_summary",
    "refresh_order",
]
