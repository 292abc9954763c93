from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    EXPECTED = "expected"
    VALIDATION = "validation"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CANCELED = "canceled"
    INTERNAL = "internal"


CANCELED_EXIT_CODE = 130


class AgentError(Exception):
    """Base error carrying a stable code, a user-facing message and an exit code.

    ``exit_code`` defaults to 130 for cancellation and 1 otherwise. Expected
    stops that only need a human answer (missing clarifications) pass
    ``exit_code=0`` explicitly.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str,
        kind: ErrorKind = ErrorKind.EXPECTED,
        user_message: str | None = None,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
        next_steps: list[str] | None = None,
        run_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.kind = kind
        self.user_message = user_message if user_message is not None else message
        if exit_code is None:
            exit_code = CANCELED_EXIT_CODE if kind == ErrorKind.CANCELED else 1
        self.exit_code = exit_code
        self.details = details or {}
        self.next_steps = next_steps or []
        self.run_id = run_id

    @property
    def message(self) -> str:
        return str(self)


class RunCanceledError(AgentError):
    def __init__(self, message: str = "Run canceled", *, run_id: str | None = None) -> None:
        super().__init__(
            message,
            code="run_canceled",
            kind=ErrorKind.CANCELED,
            user_message="Canceled.",
            run_id=run_id,
        )


class RunBlockedError(AgentError):
    """An orchestrator stopped after recording a ``blockedReason`` on the run."""

    def __init__(self, message: str, *, code: str, next_steps: list[str] | None = None) -> None:
        super().__init__(
            message,
            code=code,
            kind=ErrorKind.EXPECTED,
            next_steps=next_steps or ["Inspect the run state and resume once the blocker is addressed."],
        )


class CognitionValidationError(AgentError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            code="cognition.invalid_output",
            kind=ErrorKind.VALIDATION,
            details=details,
        )


class RunNotFoundError(AgentError):
    def __init__(self, run_id: str) -> None:
        super().__init__(
            f"Run not found: {run_id}",
            code="run.not_found",
            kind=ErrorKind.NOT_FOUND,
            run_id=run_id,
        )


class RunStateSchemaError(AgentError):
    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(
            message,
            code="run.state_schema",
            kind=ErrorKind.VALIDATION,
            run_id=run_id,
            next_steps=["Upgrade the agent or migrate the run document before resuming."],
        )


class RunLockedError(AgentError):
    def __init__(self, run_id: str) -> None:
        super().__init__(
            f"Run {run_id} is locked by another process",
            code="run.locked",
            kind=ErrorKind.CONFLICT,
            run_id=run_id,
            next_steps=["Wait for the other process to finish or stop it before resuming."],
        )


def normalize_error(error: BaseException, *, run_id: str | None = None) -> AgentError:
    """Map any exception onto the agent error taxonomy.

    Args:
        error: The exception that terminated a run or command.
        run_id: Run identifier attached when the error does not carry one.

    Returns:
        An ``AgentError``; existing agent errors are returned as-is.
    """
    if isinstance(error, AgentError):
        if error.run_id is None:
            error.run_id = run_id
        return error
    if isinstance(error, asyncio.CancelledError):
        return RunCanceledError(run_id=run_id)
    message = str(error) or type(error).__name__
    normalized = AgentError(
        message,
        code="unexpected_error",
        kind=ErrorKind.INTERNAL,
        user_message=message or "Unexpected error.",
        exit_code=1,
        run_id=run_id,
    )
    normalized.__cause__ = error
    return normalized
