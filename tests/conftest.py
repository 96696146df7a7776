from __future__ import annotations

import pytest

from production_workflow import MachinePlan, StepPlan, TargetOutput, WorkflowService

from .helpers import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(clock) -> WorkflowService:
    service = WorkflowService(clock=clock)
    service.register_machine("Extruder A", machine_type="extrusion", machine_id="A")
    service.register_machine("Extruder B", machine_type="extrusion", machine_id="B")
    service.register_machine(
        "Cutter C",
        machine_type="cutting",
        machine_id="C",
        target_output=TargetOutput(expected_weight=100.0),
    )
    service.register_operator("Operator One", operator_id="op1")
    service.register_operator("Operator Two", operator_id="op2")
    service.register_operator("Cutter Only", ["C"], operator_id="cutter")
    return service


@pytest.fixture
def order_id(service) -> str:
    """Two steps: [A, B] then [C], approved and ready for the floor."""

    order = service.create_order(
        [
            StepPlan(
                step_id="extrusion",
                step_name="Extrusion",
                machines=[MachinePlan("A", 0), MachinePlan("B", 1)],
            ),
            StepPlan(step_id="cutting", step_name="Cutting", machines=[MachinePlan("C")]),
        ],
        customer_reference="PO-1",
    )
    service.approve_order(order.id)
    return order.id
