import pytest

from production_workflow import MachinePlan, StepPlan
from production_workflow.domain import Machine, MachineStatus, OrderStatus, TableStatus
from production_workflow.errors import ConflictError, InvalidStateError
from production_workflow.repository import (
    ConcurrentUpdateError,
    DuplicateRecordError,
    InMemoryRepository,
    RecordNotFoundError,
)
from production_workflow.services import WorkflowService
from production_workflow.storage import WorkflowDatabase

from .helpers import FakeClock, row


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRepository()
        return
    database = WorkflowDatabase(str(tmp_path / "repo.sqlite3"))
    yield database.machines
    database.close()


def test_add_get_and_duplicates(repository):
    repository.add("M1", Machine(id="M1", name="Extruder"))
    assert "M1" in repository
    assert repository.get("M1").name == "Extruder"
    with pytest.raises(DuplicateRecordError):
        repository.add("M1", Machine(id="M1", name="Other"))
    with pytest.raises(RecordNotFoundError):
        repository.get("M2")


def test_records_are_copied(repository):
    machine = Machine(id="M1", name="Extruder")
    repository.add("M1", machine)
    machine.name = "changed outside"
    loaded = repository.get("M1")
    loaded.name = "changed copy"
    assert repository.get("M1").name == "Extruder"


def test_conditional_update_bumps_version(repository):
    repository.add("M1", Machine(id="M1", name="Extruder"))
    _, version = repository.get_versioned("M1")

    def rename(machine):
        machine.name = "Extruder 2"
        return "renamed"

    updated, result = repository.conditional_update("M1", rename, expected_version=version)
    assert result == "renamed"
    assert updated.name == "Extruder 2"
    assert repository.get_versioned("M1")[1] == version + 1
    with pytest.raises(ConcurrentUpdateError):
        repository.conditional_update("M1", rename, expected_version=version)


def test_failed_apply_stores_nothing(repository):
    repository.add("M1", Machine(id="M1", name="Extruder"))
    _, version = repository.get_versioned("M1")

    def explode(machine):
        machine.name = "half done"
        raise InvalidStateError("nope")

    with pytest.raises(InvalidStateError):
        repository.conditional_update("M1", explode)
    machine, after = repository.get_versioned("M1")
    assert machine.name == "Extruder"
    assert after == version


def test_failed_expectation_is_a_conflict(repository):
    repository.add("M1", Machine(id="M1", name="Extruder"))
    with pytest.raises(ConflictError):
        repository.conditional_update(
            "M1", lambda machine: None, expect=lambda machine: machine.name == "Other"
        )


def test_remove_and_list(repository):
    repository.add("M1", Machine(id="M1", name="One"))
    repository.add("M2", Machine(id="M2", name="Two"))
    repository.remove("M1")
    assert [machine.id for machine in repository.list()] == ["M2"]
    with pytest.raises(RecordNotFoundError):
        repository.remove("M1")


def test_remove_releases_the_record_lock():
    repository = InMemoryRepository()
    for index in range(50):
        repository.add(f"M{index}", Machine(id=f"M{index}", name="Scratch"))
        repository.remove(f"M{index}")
    assert len(repository) == 0
    assert repository._locks == {}
    repository.add("M1", Machine(id="M1", name="Again"))
    assert repository.get("M1").name == "Again"


def test_workflow_survives_reopen(tmp_path):
    path = str(tmp_path / "workflow.sqlite3")
    with WorkflowDatabase(path) as database:
        service = WorkflowService(
            database.orders, database.tables, database.machines, database.operators, clock=FakeClock()
        )
        service.register_machine("Extruder A", machine_id="A")
        service.register_operator("Operator One", operator_id="op1")
        order = service.create_order([StepPlan(step_id="x", machines=[MachinePlan("A")])])
        service.start_machine(order.id, 0, "A", "op1")
        service.stop_machine(
            order.id, "A", "pause", "end of shift", operator_id="op1", row_mutations=[row(70, 5)]
        )

    with WorkflowDatabase(path) as database:
        service = WorkflowService(
            database.orders, database.tables, database.machines, database.operators, clock=FakeClock()
        )
        stored = service.orders.get(order.id)
        assert stored.status == OrderStatus.IN_PROGRESS
        assert stored.steps[0].machines[0].status == MachineStatus.PAUSED
        table = service.get_production_table(order.id, "A")
        assert table.status == TableStatus.PAUSED
        assert table.totals.total_net_weight == 65.0
        service.resume_machine(order.id, "A", "op1")
        result = service.save_progress(order.id, "A", operator_id="op1", complete_order=True)
        assert result.order.status == OrderStatus.COMPLETED
