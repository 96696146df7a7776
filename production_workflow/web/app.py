"""FastAPI-based web interface for the production workflow engine."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Form, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field

from ..domain import QualityStatus
from ..errors import ValidationError, WorkflowError
from ..quality import QualityOverride
from ..sample_usage import seed_demo
from ..services import WorkflowService
from ..storage import WorkflowDatabase

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


class RowMutationBody(BaseModel):
    action: str
    data: Optional[Dict[str, Any]] = None
    row_id: Optional[int] = None


class QualityOverrideBody(BaseModel):
    status: QualityStatus
    notes: List[str] = Field(default_factory=list)


class StartBody(BaseModel):
    operator_id: Optional[str] = None


class SaveBody(BaseModel):
    rows: List[RowMutationBody] = Field(default_factory=list)
    notes: str = ""
    complete_order: bool = False
    quality_override: Optional[QualityOverrideBody] = None
    step_index: Optional[int] = None


class StopBody(BaseModel):
    stop_type: str
    reason: str = ""
    notes: str = ""
    rows: List[RowMutationBody] = Field(default_factory=list)
    planned_resume_at: Optional[str] = None
    step_index: Optional[int] = None


class ResumeBody(BaseModel):
    step_index: Optional[int] = None


class AcknowledgeBody(BaseModel):
    note: str = ""
    step_index: Optional[int] = None


def _mutations(rows: List[RowMutationBody]) -> List[Dict[str, Any]]:
    return [row.model_dump() for row in rows]


def _require_actor(actor: Optional[str]) -> str:
    if not actor:
        raise ValidationError("The X-Operator-Id header is required")
    return actor


def create_app(database_path: str = "workflow.sqlite3") -> FastAPI:
    database = WorkflowDatabase(database_path)
    service = WorkflowService(
        order_repo=database.orders,
        table_repo=database.tables,
        machine_repo=database.machines,
        operator_repo=database.operators,
    )
    ensure_demo_data(service)

    app = FastAPI(title="Bag Production Workflow")
    app.state.workflow_service = service
    app.state.database = database

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        database.close()

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc)
        return JSONResponse(status_code=exc.http_status, content={"error": exc.as_dict()})

    @app.get("/")
    async def dashboard(request: Request):
        service: WorkflowService = request.app.state.workflow_service
        orders = sorted(
            service.orders.list(),
            key=lambda order: (-int(order.priority), order.created_at),
        )
        machines = service.machines.list()
        return templates.TemplateResponse(
            request,
            "dashboard.html",
            {
                "orders": orders,
                "machines": machines,
            },
        )

    @app.get("/api/orders/{order_id}")
    async def order_state(order_id: str, request: Request):
        service: WorkflowService = request.app.state.workflow_service
        return jsonable_encoder(service.get_order_state(order_id))

    @app.get("/api/orders/{order_id}/machines/{machine_id}/table")
    async def production_table(
        order_id: str,
        machine_id: str,
        request: Request,
        step_index: Optional[int] = None,
    ):
        service: WorkflowService = request.app.state.workflow_service
        return jsonable_encoder(
            service.get_production_table(order_id, machine_id, step_index)
        )

    @app.get("/api/orders/{order_id}/steps/{step_index}/previous")
    async def previous_outputs(order_id: str, step_index: int, request: Request):
        service: WorkflowService = request.app.state.workflow_service
        return jsonable_encoder(service.get_previous_machine_outputs(order_id, step_index))

    @app.post("/api/orders/{order_id}/steps/{step_index}/machines/{machine_id}/start")
    async def start_machine(
        order_id: str,
        step_index: int,
        machine_id: str,
        request: Request,
        body: Optional[StartBody] = None,
        x_operator_id: Optional[str] = Header(None),
    ):
        service: WorkflowService = request.app.state.workflow_service
        actor = _require_actor(x_operator_id)
        operator_id = body.operator_id if body and body.operator_id else actor
        order = service.start_machine(
            order_id, step_index, machine_id, operator_id, actor_id=actor
        )
        return jsonable_encoder(order)

    @app.post("/api/orders/{order_id}/machines/{machine_id}/save")
    async def save_progress(
        order_id: str,
        machine_id: str,
        body: SaveBody,
        request: Request,
        x_operator_id: Optional[str] = Header(None),
    ):
        service: WorkflowService = request.app.state.workflow_service
        override = None
        if body.quality_override is not None:
            override = QualityOverride(
                status=body.quality_override.status,
                notes=tuple(body.quality_override.notes),
            )
        result = service.save_progress(
            order_id,
            machine_id,
            _mutations(body.rows),
            operator_id=_require_actor(x_operator_id),
            notes=body.notes,
            complete_order=body.complete_order,
            quality_override=override,
            step_index=body.step_index,
        )
        return jsonable_encoder(result)

    @app.post("/api/orders/{order_id}/machines/{machine_id}/stop")
    async def stop_machine(
        order_id: str,
        machine_id: str,
        body: StopBody,
        request: Request,
        x_operator_id: Optional[str] = Header(None),
    ):
        service: WorkflowService = request.app.state.workflow_service
        result = service.stop_machine(
            order_id,
            machine_id,
            body.stop_type,
            body.reason,
            operator_id=_require_actor(x_operator_id),
            notes=body.notes,
            row_mutations=_mutations(body.rows),
            planned_resume_at=body.planned_resume_at,
            step_index=body.step_index,
        )
        return jsonable_encoder(result)

    @app.post("/api/orders/{order_id}/machines/{machine_id}/resume")
    async def resume_machine(
        order_id: str,
        machine_id: str,
        request: Request,
        body: Optional[ResumeBody] = None,
        x_operator_id: Optional[str] = Header(None),
    ):
        service: WorkflowService = request.app.state.workflow_service
        order = service.resume_machine(
            order_id,
            machine_id,
            _require_actor(x_operator_id),
            step_index=body.step_index if body else None,
        )
        return jsonable_encoder(order)

    @app.post("/api/orders/{order_id}/machines/{machine_id}/acknowledge-error")
    async def acknowledge_error(
        order_id: str,
        machine_id: str,
        request: Request,
        body: Optional[AcknowledgeBody] = None,
        x_operator_id: Optional[str] = Header(None),
    ):
        service: WorkflowService = request.app.state.workflow_service
        order = service.acknowledge_error(
            order_id,
            machine_id,
            _require_actor(x_operator_id),
            body.note if body else "",
            step_index=body.step_index if body else None,
        )
        return jsonable_encoder(order)

    @app.get("/api/machines/{machine_id}/pending")
    async def pending_for_machine(machine_id: str, request: Request):
        service: WorkflowService = request.app.state.workflow_service
        return jsonable_encoder(service.get_pending_for_machine(machine_id))

    @app.post("/orders/{order_id}/approve")
    async def approve_order(order_id: str, request: Request, actor: str = Form("planner")):
        service: WorkflowService = request.app.state.workflow_service
        service.approve_order(order_id, actor=actor)
        return RedirectResponse("/", status_code=303)

    @app.post("/orders/{order_id}/cancel")
    async def cancel_order(
        order_id: str,
        request: Request,
        reason: str = Form(""),
        actor: str = Form("planner"),
    ):
        service: WorkflowService = request.app.state.workflow_service
        service.cancel_order(order_id, reason, actor=actor)
        return RedirectResponse("/", status_code=303)

    @app.post("/orders/{order_id}/dispatch")
    async def dispatch_order(order_id: str, request: Request, actor: str = Form("planner")):
        service: WorkflowService = request.app.state.workflow_service
        service.dispatch_order(order_id, actor=actor)
        return RedirectResponse("/", status_code=303)

    return app


def ensure_demo_data(service: WorkflowService) -> None:
    if len(service.orders) > 0 or len(service.machines) > 0:
        return
    seed_demo(service)


__all__ = ["create_app", "ensure_demo_data"]
