from datetime import datetime, timezone

from production_workflow.domain import (
    CalculatedOutput,
    MachineProgress,
    MachineStatus,
    OperatorAssignment,
    Order,
    OrderStatus,
    Step,
    StepStatus,
)
from production_workflow.sequencing import (
    can_start,
    completion_percentage,
    derive_step_status,
    derive_summary,
    refresh_order,
)

NOW = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


def make_order(*steps):
    return Order(
        id="ORD-T",
        steps=[
            Step(
                step_index=index,
                step_id=f"s{index}",
                machines=[
                    MachineProgress(machine_id=machine_id, sequence_order=position)
                    for position, machine_id in enumerate(machine_ids)
                ],
            )
            for index, machine_ids in enumerate(steps)
        ],
    )


def set_status(order, step_index, machine_id, status):
    order.steps[step_index].find_machine(machine_id).status = status
    refresh_order(order, NOW)


def test_first_machine_of_first_step_can_start():
    order = make_order(["A", "B"], ["C"])
    step = order.steps[0]
    assert can_start(order, 0, step.find_machine("A"))
    assert not can_start(order, 0, step.find_machine("B"))
    assert not can_start(order, 1, order.steps[1].find_machine("C"))


def test_sequence_order_not_list_position_decides():
    order = make_order(["A", "B"])
    order.steps[0].machines[0].sequence_order = 5
    assert can_start(order, 0, order.steps[0].find_machine("B"))
    assert not can_start(order, 0, order.steps[0].find_machine("A"))


def test_next_step_opens_after_previous_completes():
    order = make_order(["A", "B"], ["C"])
    set_status(order, 0, "A", MachineStatus.COMPLETED)
    assert can_start(order, 0, order.steps[0].find_machine("B"))
    assert not can_start(order, 1, order.steps[1].find_machine("C"))
    set_status(order, 0, "B", MachineStatus.COMPLETED)
    assert order.steps[0].status == StepStatus.COMPLETED
    assert can_start(order, 1, order.steps[1].find_machine("C"))


def test_step_status_precedence():
    step = Step(
        step_index=0,
        step_id="s",
        machines=[
            MachineProgress(machine_id="A", sequence_order=0),
            MachineProgress(machine_id="B", sequence_order=1),
        ],
    )
    assert derive_step_status(step) == StepStatus.PENDING
    step.machines[0].status = MachineStatus.COMPLETED
    assert derive_step_status(step) == StepStatus.IN_PROGRESS
    step.machines[1].status = MachineStatus.ERROR
    assert derive_step_status(step) == StepStatus.BLOCKED
    step.machines[1].status = MachineStatus.IN_PROGRESS
    assert derive_step_status(step) == StepStatus.IN_PROGRESS
    step.machines[1].status = MachineStatus.COMPLETED
    assert derive_step_status(step) == StepStatus.COMPLETED


def test_released_machine_blocks_step():
    step = Step(step_index=0, step_id="s", machines=[MachineProgress(machine_id="A", sequence_order=0)])
    step.machines[0].assignments.append(
        OperatorAssignment(operator_id="op1", started_at=NOW, ended_at=NOW, end_reason="stop")
    )
    assert derive_step_status(step) == StepStatus.BLOCKED


def test_step_without_machines_is_completed():
    order = make_order([], ["C"])
    refresh_order(order, NOW)
    assert order.steps[0].status == StepStatus.COMPLETED
    assert order.current_step_index == 1
    assert can_start(order, 1, order.steps[1].find_machine("C"))


def test_order_completes_with_its_last_machine():
    order = make_order(["A"])
    order.status = OrderStatus.IN_PROGRESS
    set_status(order, 0, "A", MachineStatus.COMPLETED)
    assert order.status == OrderStatus.COMPLETED
    assert order.actual_end_date == NOW
    assert order.current_step_index == 1
    assert completion_percentage(order) == 100


def test_summary_is_derived_from_machine_outputs():
    order = make_order(["A", "B"])
    order.steps[0].machines[0].calculated_output = CalculatedOutput(
        net_weight=90, wastage_weight=10, efficiency=90, total_cost=100, rows_processed=2
    )
    order.steps[0].machines[0].status = MachineStatus.COMPLETED
    order.steps[0].machines[1].calculated_output = CalculatedOutput(
        net_weight=40.5, wastage_weight=0, efficiency=0, rows_processed=1
    )
    order.steps[0].machines[1].status = MachineStatus.IN_PROGRESS
    summary = derive_summary(order, NOW)
    assert summary.total_net_weight == 130.5
    assert summary.total_wastage == 10
    assert summary.overall_efficiency == 90
    assert summary.active_machines == 1
    assert summary.completed_machines == 1
    assert summary.total_rows_processed == 3
    assert summary.last_updated == NOW


def test_eligibility_only_falls_back_on_upstream_regression():
    order = make_order(["A", "B"], ["C", "D"])
    set_status(order, 0, "A", MachineStatus.COMPLETED)
    b = order.steps[0].find_machine("B")
    assert can_start(order, 0, b)
    for status in (MachineStatus.IN_PROGRESS, MachineStatus.PAUSED, MachineStatus.ERROR):
        set_status(order, 1, "D", status)
        assert can_start(order, 0, b)
    set_status(order, 0, "A", MachineStatus.PENDING)
    assert not can_start(order, 0, b)
