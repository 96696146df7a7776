from datetime import datetime, timezone

import pytest

from production_workflow.domain import DEFAULT_FORMULAS, RowAction, TableStatus
from production_workflow.errors import InvalidStateError, NotFoundError, ValidationError
from production_workflow.production_rows import (
    ProductionRowStore,
    RowMutation,
    compute_totals,
)
from production_workflow.repository import ConcurrentUpdateError

NOW = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


def add(raw, wastage, cost=2.0):
    return RowMutation(
        RowAction.ADD, {"Raw Weight": raw, "Wastage": wastage, "Cost per KG": cost}
    )


@pytest.fixture
def store():
    store = ProductionRowStore()
    store.open_table("ORD-1", 0, "A", "op1", NOW)
    return store


def test_missing_table_asks_to_start_machine_first():
    with pytest.raises(NotFoundError, match="start the machine first"):
        ProductionRowStore().get_table("ORD-1", 0, "A")


def test_add_rows_and_totals(store):
    table, batch = store.apply_mutations(
        "ORD-1", 0, "A", [add(100, 10), add(50, 0)], DEFAULT_FORMULAS, "op1", NOW
    )
    assert [result.row_id for result in batch.applied] == [1, 2]
    assert batch.failed == []
    totals = table.totals
    assert totals.total_rows == 2
    assert totals.total_raw_weight == 150.0
    assert totals.total_net_weight == 140.0
    assert totals.total_wastage == 10.0
    assert totals.overall_efficiency == 93.33
    assert totals.average_efficiency == 95.0
    assert totals.total_cost == 300.0


def test_row_ids_continue_after_delete(store):
    store.apply_mutations("ORD-1", 0, "A", [add(10, 1), add(20, 2)], DEFAULT_FORMULAS, "op1", NOW)
    store.apply_mutations(
        "ORD-1", 0, "A", [RowMutation(RowAction.DELETE, row_id=1)], DEFAULT_FORMULAS, "op1", NOW
    )
    table, batch = store.apply_mutations("ORD-1", 0, "A", [add(30, 3)], DEFAULT_FORMULAS, "op1", NOW)
    assert [row.row_id for row in table.rows] == [2, 3]
    assert batch.applied[0].row_id == 3


def test_same_update_twice_does_not_double_count(store):
    store.apply_mutations("ORD-1", 0, "A", [add(100, 10)], DEFAULT_FORMULAS, "op1", NOW)
    update = RowMutation(
        RowAction.UPDATE, {"Raw Weight": 80, "Wastage": 5, "Cost per KG": 2.0}, row_id=1
    )
    first, _ = store.apply_mutations("ORD-1", 0, "A", [update], DEFAULT_FORMULAS, "op1", NOW)
    second, _ = store.apply_mutations("ORD-1", 0, "A", [update], DEFAULT_FORMULAS, "op1", NOW)
    assert first.totals == second.totals
    assert second.totals.total_net_weight == 75.0


def test_failed_rows_are_reported_and_others_applied(store):
    table, batch = store.apply_mutations(
        "ORD-1",
        0,
        "A",
        [
            add(100, 10),
            RowMutation(RowAction.UPDATE, {"Raw Weight": 1}, row_id=42),
            RowMutation(RowAction.DELETE),
            RowMutation(RowAction.ADD, {"Raw Weight": [1, 2]}),
        ],
        DEFAULT_FORMULAS,
        "op1",
        NOW,
    )
    assert len(table.rows) == 1
    assert [result.index for result in batch.failed] == [1, 2, 3]
    assert [result.error_code for result in batch.failed] == [
        "not_found",
        "validation",
        "validation",
    ]


def test_formula_errors_are_stored_on_the_row(store):
    table, batch = store.apply_mutations("ORD-1", 0, "A", [add(0, 0)], DEFAULT_FORMULAS, "op1", NOW)
    assert batch.failed == []
    assert table.rows[0].calculated["Efficiency %"] is None
    assert table.rows[0].errors


def test_stale_version_is_a_conflict(store):
    _, version = store.get_table_versioned("ORD-1", 0, "A")
    store.apply_mutations("ORD-1", 0, "A", [add(10, 1)], DEFAULT_FORMULAS, "op1", NOW)
    with pytest.raises(ConcurrentUpdateError):
        store.apply_mutations(
            "ORD-1", 0, "A", [add(10, 1)], DEFAULT_FORMULAS, "op1", NOW, expected_version=version
        )


def test_completed_table_rejects_mutations(store):
    store.freeze("ORD-1", 0, "A", TableStatus.COMPLETED, NOW, [("done", "op1")])
    with pytest.raises(InvalidStateError):
        store.apply_mutations("ORD-1", 0, "A", [add(10, 1)], DEFAULT_FORMULAS, "op1", NOW)
    with pytest.raises(InvalidStateError):
        store.open_table("ORD-1", 0, "A", "op2", NOW)


def test_paused_table_reopens_with_rows(store):
    store.apply_mutations("ORD-1", 0, "A", [add(10, 1)], DEFAULT_FORMULAS, "op1", NOW)
    store.freeze("ORD-1", 0, "A", TableStatus.PAUSED, NOW)
    table = store.open_table("ORD-1", 0, "A", "op2", NOW)
    assert table.status == TableStatus.ACTIVE
    assert table.current_operator == "op2"
    assert len(table.rows) == 1


def test_same_machine_in_another_step_gets_its_own_table(store):
    store.apply_mutations("ORD-1", 0, "A", [add(10, 1)], DEFAULT_FORMULAS, "op1", NOW)
    store.freeze("ORD-1", 0, "A", TableStatus.COMPLETED, NOW)

    later = store.open_table("ORD-1", 2, "A", "op1", NOW)

    assert later.id == "ORD-1:2:A"
    assert later.step_index == 2
    assert later.status == TableStatus.ACTIVE
    assert later.rows == []
    earlier = store.get_table("ORD-1", 0, "A")
    assert earlier.status == TableStatus.COMPLETED
    assert len(earlier.rows) == 1


def test_row_mutation_from_dict():
    mutation = RowMutation.from_dict({"action": "update", "rowId": 3, "data": {"Wastage": 1}})
    assert mutation.action == RowAction.UPDATE
    assert mutation.row_id == 3
    with pytest.raises(ValidationError):
        RowMutation.from_dict({"action": "merge"})


def test_compute_totals_of_nothing():
    totals = compute_totals([])
    assert totals.total_rows == 0
    assert totals.overall_efficiency == 0.0
