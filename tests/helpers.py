from __future__ import annotations

from datetime import datetime, timedelta, timezone


class FakeClock:
    """Monotonic clock advancing one minute per reading."""

    def __init__(self) -> None:
        self.current = datetime(2024, 3, 4, 6, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(minutes=1)
        return self.current


def row(raw, wastage, cost=1.5, material="LDPE"):
    return {
        "action": "add",
        "data": {
            "Material Type": material,
            "Raw Weight": raw,
            "Wastage": wastage,
            "Cost per KG": cost,
        },
    }


def complete_machine(service, order_id, step_index, machine_id, operator="op1", rows=None):
    service.start_machine(order_id, step_index, machine_id, operator)
    return service.save_progress(
        order_id,
        machine_id,
        rows if rows is not None else [row(120, 10)],
        operator_id=operator,
        complete_order=True,
        step_index=step_index,
    )
