from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Literal

from .canonical import hash_text
from .events import EventBus, EventError, build_event
from .models import ArtifactEntry, RunDocument, RunStatus, StepStatus, utc_now
from .schemas import CiState
from .state_store import RunStateStore

logger = logging.getLogger(__name__)

ABORT_STEP = "run.abort"

ConvergenceStatus = Literal[
    "running",
    "waiting_for_ci",
    "waiting_for_review",
    "blocked",
    "converged",
    "failed",
    "aborted",
]
NextAction = Literal["resume", "fix_code", "wait", "abort"]


@dataclass(frozen=True)
class RunConvergence:
    status: ConvergenceStatus
    reason_code: str
    message: str
    next_actions: list[NextAction] = field(default_factory=list)
    blocking_artifacts: list[str] = field(default_factory=list)


def _flatten(document: RunDocument) -> list[ArtifactEntry]:
    return [entry for entries in document.artifacts_index.values() for entry in entries.values()]


def _refs(artifacts: list[ArtifactEntry], predicate: Callable[[ArtifactEntry], bool]) -> list[str]:
    return [f"{entry.step_id}/{entry.name}" for entry in artifacts if predicate(entry)]


def _has_pending_ci(document: RunDocument) -> bool:
    if document.summary.ci == CiState.PENDING:
        return True
    return any(
        step_id.startswith("ci.wait") and record.status not in (StepStatus.DONE, StepStatus.FAILED)
        for step_id, record in document.steps.items()
    )


def derive_run_convergence(document: RunDocument) -> RunConvergence:
    """Explain where a run stands and what an operator can do next."""
    artifacts = _flatten(document)
    status = document.run.status
    abort = next((entry for entry in artifacts if entry.step_id == ABORT_STEP), None)

    if abort is not None or status == RunStatus.CANCELED:
        return RunConvergence(
            status="aborted",
            reason_code="run_aborted",
            message="Run was aborted by the user.",
            blocking_artifacts=[f"{abort.step_id}/{abort.name}"] if abort is not None else [],
        )
    if status == RunStatus.FAILED:
        return RunConvergence(
            status="failed",
            reason_code="run_failed",
            message="Run finished with failure.",
            next_actions=["resume", "fix_code", "abort"],
        )
    if status == RunStatus.SUCCESS:
        return RunConvergence(status="converged", reason_code="run_complete", message="Run completed successfully.")

    running = next(
        (step_id for step_id, record in document.steps.items() if record.status == StepStatus.RUNNING),
        None,
    )
    if running is not None:
        return RunConvergence(
            status="running",
            reason_code="step_running",
            message=f"Step {running} is running.",
            next_actions=["wait", "abort"],
        )
    if _has_pending_ci(document):
        return RunConvergence(
            status="waiting_for_ci",
            reason_code="ci_pending",
            message="Waiting for CI checks to complete.",
            next_actions=["wait", "abort"],
            blocking_artifacts=_refs(artifacts, lambda entry: entry.step_id.startswith("ci.wait")),
        )
    if (document.summary.unresolved_review_count or 0) > 0:
        return RunConvergence(
            status="waiting_for_review",
            reason_code="review_unresolved",
            message="Waiting on unresolved review threads.",
            next_actions=["resume", "wait", "abort"],
            blocking_artifacts=_refs(artifacts, lambda entry: entry.step_id == "github.review.fetch"),
        )
    if document.summary.blocked_reason:
        return RunConvergence(
            status="blocked",
            reason_code="blocked_reason",
            message=document.summary.blocked_reason,
            next_actions=["resume", "fix_code", "abort"],
        )
    failed = next(
        (step_id for step_id, record in document.steps.items() if record.status == StepStatus.FAILED),
        None,
    )
    if failed is not None:
        return RunConvergence(
            status="blocked",
            reason_code="step_failed",
            message=f"Step {failed} failed and requires attention.",
            next_actions=["resume", "fix_code", "abort"],
        )
    return RunConvergence(
        status="running",
        reason_code="in_progress",
        message="Run is in progress.",
        next_actions=["wait", "abort"],
    )


def mark_run_aborted(
    store: RunStateStore,
    run_id: str,
    reason: str | None = None,
    *,
    bus: EventBus | None = None,
) -> ArtifactEntry:
    """Record an abort request and mark the run canceled.

    The persisted change and the terminal status go to ``bus``; without one they
    are appended straight to the run's event log.
    """
    if bus is None:
        bus = EventBus()
        bus.subscribe(store.append_event)
    created_at = utc_now()
    payload: dict[str, str] = {"created_at": created_at.isoformat()}
    if reason:
        payload["reason"] = reason
    entry = store.write_artifact(run_id, ABORT_STEP, f"abort-{hash_text(payload['created_at'])[:8]}", payload)

    def _abort(document: RunDocument) -> None:
        document.artifacts_index.setdefault(ABORT_STEP, {})[entry.name] = entry
        document.run.status = RunStatus.CANCELED
        document.run.finished_at = created_at

    _, content_digest = store.update_run(run_id, _abort)
    bus.emit(build_event("run.persisted", run_id, {"digest": content_digest}, level="debug"))
    bus.emit(
        build_event(
            "run.finished",
            run_id,
            {"status": RunStatus.CANCELED.value, "abort": entry.name},
            error=EventError(code="run_canceled", message=reason or "Run aborted", kind="canceled"),
        )
    )
    logger.info("run %s aborted%s", run_id, f": {reason}" if reason else "")
    return entry
