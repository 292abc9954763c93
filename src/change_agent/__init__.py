from importlib.metadata import PackageNotFoundError, version

from .context import Collaborators, RunContext
from .controller import RunController
from .convergence import RunConvergence, derive_run_convergence, mark_run_aborted
from .errors import (
    AgentError,
    CognitionValidationError,
    ErrorKind,
    RunBlockedError,
    RunCanceledError,
    RunLockedError,
    RunNotFoundError,
    RunStateSchemaError,
    normalize_error,
)
from .events import EventBus, EventEnvelope
from .models import Phase, RunDocument, RunStatus, StepStatus
from .settings import ControllerConfig, RunOptions, RuntimeSettings
from .state_store import RunStateStore
from .steps import StepHandle, reclaim_stale_steps, run_step


def get_version() -> str:
    try:
        return version("change-agent")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AgentError",
    "Collaborators",
    "CognitionValidationError",
    "ControllerConfig",
    "ErrorKind",
    "EventBus",
    "EventEnvelope",
    "Phase",
    "RunBlockedError",
    "RunCanceledError",
    "RunContext",
    "RunController",
    "RunConvergence",
    "RunDocument",
    "RunLockedError",
    "RunNotFoundError",
    "RunOptions",
    "RunStateSchemaError",
    "RunStateStore",
    "RunStatus",
    "RuntimeSettings",
    "StepHandle",
    "StepStatus",
    "derive_run_convergence",
    "get_version",
    "mark_run_aborted",
    "normalize_error",
    "reclaim_stale_steps",
    "run_step",
]
