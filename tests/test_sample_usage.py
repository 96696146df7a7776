from production_workflow.domain import MachineStatus, OrderStatus
from production_workflow.sample_usage import main, seed_demo
from production_workflow.services import WorkflowService


def test_seed_demo_creates_approved_order():
    service = WorkflowService()
    ids = seed_demo(service)
    order = service.orders.get(ids["order"])
    assert order.status == OrderStatus.PENDING
    assert [len(step.machines) for step in order.steps] == [1, 2]
    assert order.id.startswith("ORD-MAIN-")


def test_main_walks_the_bag_line(capsys):
    main()
    output = capsys.readouterr().out
    assert "Extrusion quality: passed []" in output
    assert "Printer after pause: paused" in output
    assert "(start, high)" in output
    assert f"CUT-1: {MachineStatus.PENDING.value}" in output
