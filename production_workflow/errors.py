"""Typed errors raised by the production workflow engine."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for all errors surfaced to callers of the engine."""

    code = "workflow_error"
    http_status = 400

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""

    def as_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFoundError(WorkflowError):
    """An order, step, machine, operator or row does not exist."""

    code = "not_found"
    http_status = 404


class InvalidStateError(WorkflowError):
    """The operation is not permitted from the current status."""

    code = "invalid_state"
    http_status = 409


class SequenceError(WorkflowError):
    """Upstream steps or machines are not completed yet."""

    code = "sequence"
    http_status = 409


class ForbiddenError(WorkflowError):
    """The acting operator is not entitled to act on the machine."""

    code = "forbidden"
    http_status = 403


class ConflictError(WorkflowError):
    """A concurrent writer changed the record first."""

    code = "conflict"
    http_status = 409


class EmptyOutputError(WorkflowError):
    """Completion was attempted without any production rows."""

    code = "empty_output"
    http_status = 422


class ValidationError(WorkflowError):
    """Malformed input such as an unknown stop type or row action."""

    code = "validation"
    http_status = 422


__all__ = [
    "WorkflowError",
    "NotFoundError",
    "InvalidStateError",
    "SequenceError",
    "ForbiddenError",
    "ConflictError",
    "EmptyOutputError",
    "ValidationError",
]
