"""Production Row Store: per (order, machine) row tables and their totals."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .domain import (
    CalculatedOutput,
    OutputStatus,
    ProductionRow,
    ProductionTable,
    RowAction,
    TableNote,
    TableStatus,
    TotalCalculations,
    table_key,
)
from .errors import InvalidStateError, NotFoundError, ValidationError, WorkflowError
from .formulas import calculate_row, coerce_number
from .repository import InMemoryRepository

logger = logging.getLogger(__name__)

NET_WEIGHT = "Net Weight"
RAW_WEIGHT = "Raw Weight"
WASTAGE = "Wastage"
TOTAL_COST = "Total Cost"
EFFICIENCY = "Efficiency %"

_MUTABLE_TABLE_STATES = {TableStatus.ACTIVE, TableStatus.PAUSED}


@dataclass(slots=True)
class RowMutation:
    """A single add/update/delete request against a production table."""

    action: RowAction
    data: Optional[Mapping[str, Any]] = None
    row_id: Optional[int] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RowMutation":
        try:
            action = RowAction(payload.get("action"))
        except ValueError as exc:
            raise ValidationError(
                f"Unknown row action {payload.get('action')!r}"
            ) from exc
        row_id = payload.get("row_id", payload.get("rowId"))
        return cls(action=action, data=payload.get("data"), row_id=row_id)


@dataclass(slots=True)
class RowResult:
    """Outcome of one row mutation inside a batch."""

    index: int
    action: RowAction
    row_id: Optional[int] = None
    ok: bool = True
    error_code: Optional[str] = None
    message: str = ""
    calculated: Dict[str, Optional[float]] = field(default_factory=dict)


@dataclass(slots=True)
class RowBatchResult:
    applied: List[RowResult] = field(default_factory=list)
    failed: List[RowResult] = field(default_factory=list)


def _value(row: ProductionRow, column: str) -> float:
    calculated = row.calculated.get(column)
    if calculated is not None:
        return coerce_number(calculated)
    return coerce_number(row.data.get(column))


def compute_totals(rows: Sequence[ProductionRow]) -> TotalCalculations:
    """Fold rows into table totals; a pure function of the rows."""

    total_net = 0.0
    total_raw = 0.0
    total_wastage = 0.0
    total_cost = 0.0
    efficiency_sum = 0.0
    efficiency_count = 0
    for row in rows:
        total_net += _value(row, NET_WEIGHT)
        total_raw += coerce_number(row.data.get(RAW_WEIGHT))
        total_wastage += coerce_number(row.data.get(WASTAGE))
        total_cost += _value(row, TOTAL_COST)
        efficiency = _value(row, EFFICIENCY)
        if efficiency > 0:
            efficiency_sum += efficiency
            efficiency_count += 1
    return TotalCalculations(
        total_net_weight=round(total_net, 2),
        total_raw_weight=round(total_raw, 2),
        total_wastage=round(total_wastage, 2),
        overall_efficiency=round(total_net / total_raw * 100, 2) if total_raw > 0 else 0.0,
        average_efficiency=round(efficiency_sum / efficiency_count, 2)
        if efficiency_count
        else 0.0,
        total_cost=round(total_cost, 2),
        total_rows=len(rows),
    )


def snapshot_output(
    totals: TotalCalculations, status: OutputStatus, now: datetime
) -> CalculatedOutput:
    return CalculatedOutput(
        net_weight=totals.total_net_weight,
        wastage_weight=totals.total_wastage,
        efficiency=totals.overall_efficiency,
        total_cost=totals.total_cost,
        rows_processed=totals.total_rows,
        status=status,
        last_updated=now,
    )


def _validate_row_data(data: Any) -> Dict[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationError("Row data must be a mapping of column name to value")
    cleaned: Dict[str, Any] = {}
    for key, value in data.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("Row column names must be non-empty strings")
        if value is not None and not isinstance(value, (str, int, float)):
            raise ValidationError(f"Unsupported value for column {key!r}")
        cleaned[key] = value
    return cleaned


def apply_mutation(
    table: ProductionTable,
    mutation: RowMutation,
    formulas: Sequence[Tuple[str, str]],
    actor: str,
    now: datetime,
) -> ProductionRow:
    """Apply one mutation to ``table`` in place and return the touched row."""

    if mutation.action == RowAction.ADD:
        data = _validate_row_data(mutation.data)
        calculated, errors = calculate_row(data, formulas)
        row = ProductionRow(
            row_id=max((existing.row_id for existing in table.rows), default=0) + 1,
            data=data,
            calculated=calculated,
            errors=errors,
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        table.rows.append(row)
        return row
    if mutation.row_id is None:
        raise ValidationError(f"Row id is required for {mutation.action.value}")
    row = table.find_row(mutation.row_id)
    if row is None:
        raise NotFoundError(f"Row {mutation.row_id} not found")
    if mutation.action == RowAction.UPDATE:
        data = _validate_row_data(mutation.data)
        row.data = data
        row.calculated, row.errors = calculate_row(data, formulas)
        row.updated_at = now
        row.created_by = actor
        return row
    table.rows.remove(row)
    return row


class ProductionRowStore:
    """Owns production tables keyed by (order, step, machine)."""

    def __init__(self, repository: Optional[InMemoryRepository[ProductionTable]] = None) -> None:
        self.repository = repository if repository is not None else InMemoryRepository()

    def get_table(self, order_id: str, step_index: int, machine_id: str) -> ProductionTable:
        return self.get_table_versioned(order_id, step_index, machine_id)[0]

    def get_table_versioned(
        self, order_id: str, step_index: int, machine_id: str
    ) -> Tuple[ProductionTable, int]:
        key = self._existing_key(order_id, step_index, machine_id)
        return self.repository.get_versioned(key)

    def _existing_key(self, order_id: str, step_index: int, machine_id: str) -> str:
        key = table_key(order_id, step_index, machine_id)
        if key not in self.repository:
            raise NotFoundError(
                f"Production table for machine {machine_id!r} in step {step_index} of order "
                f"{order_id!r} not found. Please start the machine first."
            )
        return key

    def open_table(
        self,
        order_id: str,
        step_index: int,
        machine_id: str,
        operator: Optional[str],
        now: datetime,
    ) -> ProductionTable:
        """Create an empty table, or reactivate an existing one."""

        key = table_key(order_id, step_index, machine_id)
        if key not in self.repository:
            table = ProductionTable(
                id=key,
                order_id=order_id,
                machine_id=machine_id,
                step_index=step_index,
                current_operator=operator,
                shift_started_at=now,
                last_calculated_at=now,
            )
            self.repository.add(key, table)
            return table

        def reactivate(current: ProductionTable) -> None:
            if current.status not in _MUTABLE_TABLE_STATES:
                raise InvalidStateError(
                    f"Production table {key!r} is {current.status.value}"
                )
            current.status = TableStatus.ACTIVE
            current.current_operator = operator
            current.shift_started_at = now
            current.shift_ended_at = None

        table, _ = self.repository.conditional_update(key, reactivate)
        return table

    def apply_mutations(
        self,
        order_id: str,
        step_index: int,
        machine_id: str,
        mutations: Sequence[RowMutation],
        formulas: Sequence[Tuple[str, str]],
        actor: str,
        now: datetime,
        *,
        expected_version: Optional[int] = None,
    ) -> Tuple[ProductionTable, RowBatchResult]:
        """Apply mutations in order; failing rows are reported, not fatal.

        Totals are recomputed once after the whole batch.
        """

        key = self._existing_key(order_id, step_index, machine_id)

        def apply(table: ProductionTable) -> RowBatchResult:
            if table.status not in _MUTABLE_TABLE_STATES:
                raise InvalidStateError(
                    f"Production table {key!r} is {table.status.value}"
                )
            batch = RowBatchResult()
            for index, mutation in enumerate(mutations):
                try:
                    row = apply_mutation(table, mutation, formulas, actor, now)
                except WorkflowError as exc:
                    logger.warning(
                        "Row mutation %s #%d failed on %s: %s",
                        mutation.action.value,
                        index,
                        key,
                        exc,
                    )
                    batch.failed.append(
                        RowResult(
                            index=index,
                            action=mutation.action,
                            row_id=mutation.row_id,
                            ok=False,
                            error_code=exc.code,
                            message=exc.message,
                        )
                    )
                    continue
                batch.applied.append(
                    RowResult(
                        index=index,
                        action=mutation.action,
                        row_id=row.row_id,
                        calculated=dict(row.calculated),
                    )
                )
            table.totals = compute_totals(table.rows)
            table.last_calculated_at = now
            return batch

        return self.repository.conditional_update(
            key, apply, expected_version=expected_version
        )

    def add_note(
        self,
        order_id: str,
        step_index: int,
        machine_id: str,
        message: str,
        author: str,
        now: datetime,
    ) -> ProductionTable:
        def append(table: ProductionTable) -> None:
            table.notes.append(TableNote(message=message, created_by=author, created_at=now))

        table, _ = self.repository.conditional_update(
            table_key(order_id, step_index, machine_id), append
        )
        return table

    def freeze(
        self,
        order_id: str,
        step_index: int,
        machine_id: str,
        status: TableStatus,
        now: datetime,
        notes: Sequence[Tuple[str, str]] = (),
    ) -> ProductionTable:
        """Close the current shift and set the table status."""

        def close(table: ProductionTable) -> None:
            table.status = status
            table.shift_ended_at = now
            for message, author in notes:
                table.notes.append(TableNote(message=message, created_by=author, created_at=now))

        table, _ = self.repository.conditional_update(
            table_key(order_id, step_index, machine_id), close
        )
        return table


__all__ = [
    "RowMutation",
    "RowResult",
    "RowBatchResult",
    "ProductionRowStore",
    "apply_mutation",
    "compute_totals",
    "snapshot_output",
]
