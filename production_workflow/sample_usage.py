"""Demonstration script for the plastic bag production workflow."""

from __future__ import annotations

import logging
from typing import Dict

from . import MachinePlan, OrderPriority, StepPlan, TargetOutput, WorkflowService


def seed_demo(service: WorkflowService) -> Dict[str, str]:
    """Register a small bag line and one approved order; return the ids."""

    extruder = service.register_machine(
        name="Blown Film Extruder 1",
        machine_type="extrusion",
        location="Hall A",
        target_output=TargetOutput(expected_weight=180.0, expected_efficiency=90.0, max_wastage=20.0),
        machine_id="EXT-1",
    )
    printer = service.register_machine(
        name="Flexo Printer 4C",
        machine_type="printing",
        location="Hall A",
        machine_id="PRN-1",
    )
    cutter = service.register_machine(
        name="Bag Cutting and Sealing",
        machine_type="cutting",
        location="Hall B",
        machine_id="CUT-1",
    )
    service.register_operator("Anita Rao", [extruder.id], operator_id="op-anita")
    service.register_operator("Marco Silva", [printer.id, cutter.id], operator_id="op-marco")

    order = service.create_order(
        [
            StepPlan(step_id="extrusion", step_name="Extrusion", machines=[MachinePlan(extruder.id)]),
            StepPlan(
                step_id="converting",
                step_name="Printing and Cutting",
                machines=[MachinePlan(printer.id, 0), MachinePlan(cutter.id, 1)],
            ),
        ],
        priority=OrderPriority.HIGH,
        customer_reference="PO-7781",
        remarks="LDPE carrier bags, 2 colour print",
    )
    service.approve_order(order.id, actor="planner")
    return {"order": order.id, "extruder": extruder.id, "printer": printer.id, "cutter": cutter.id}


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    service = WorkflowService()
    ids = seed_demo(service)
    order_id = ids["order"]

    service.start_machine(order_id, 0, ids["extruder"], "op-anita")
    service.save_progress(
        order_id,
        ids["extruder"],
        [
            {"action": "add", "data": {"Material Type": "LDPE", "Raw Weight": 100, "Wastage": 4, "Cost per KG": 1.8}},
            {"action": "add", "data": {"Material Type": "LDPE", "Raw Weight": 95, "Wastage": 6, "Cost per KG": 1.8}},
        ],
        operator_id="op-anita",
    )
    result = service.save_progress(
        order_id, ids["extruder"], operator_id="op-anita", complete_order=True
    )
    print("Extrusion quality:", result.quality.status.value, result.quality.notes)

    service.start_machine(order_id, 1, ids["printer"], "op-marco")
    stop = service.stop_machine(
        order_id,
        ids["printer"],
        "pause",
        "Ink change",
        operator_id="op-marco",
        row_mutations=[{"action": "add", "data": {"Raw Weight": 80, "Wastage": 2, "Cost per KG": 0.4}}],
        planned_resume_at="after lunch",
    )
    print("Printer after pause:", stop.machine_status.value)
    service.resume_machine(order_id, ids["printer"], "op-marco")
    service.save_progress(order_id, ids["printer"], operator_id="op-marco", complete_order=True)

    for work in service.get_pending_for_machine(ids["cutter"]):
        print(f"Pending on cutter: {work.order_id} ({work.action}, {work.priority.label})")

    state = service.get_order_state(order_id)
    summary = state.order.real_time_data
    print(f"\nOrder {order_id}: {state.order.status.value}, {state.completion_percentage}% complete")
    print(f"  Net weight {summary.total_net_weight}kg, wastage {summary.total_wastage}kg")
    for step in state.order.steps:
        print(f"  Step {step.step_index} {step.step_name}: {step.status.value}")
        for machine in step.ordered_machines():
            print(f"    - {machine.machine_id}: {machine.status.value} ({machine.quality_status.value})")


__all__ = ["seed_demo", "main"]


if __name__ == "__main__":
    main()
