"""Step execution engine.

Every unit of external work in a run goes through :func:`run_step`. The
engine records the step as running under a fresh lease before calling the
step function, digests inputs and outputs, persists named artifacts and marks
the step done or failed. Skipping completed work is the caller's decision,
either by checking :meth:`RunDocument.step_done` or by passing
``reuse_done=True``, which returns the recorded ``output`` artifact instead of
calling the function again.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from pydantic import BaseModel

from .canonical import digest
from .context import RunContext
from .errors import normalize_error
from .models import (
    ArtifactEntry,
    Lease,
    RunDocument,
    RunStatus,
    StepError,
    StepRecord,
    StepStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

LEASE_STALE_AFTER = timedelta(milliseconds=120_000)
OUTPUT_ARTIFACT = "output"
STALE_LEASE_MESSAGE = "Step lease stale; assuming crash."

ArtifactSpec = Mapping[str, Any] | Callable[[Any], Mapping[str, Any]]


@dataclass
class StepHandle:
    """Passed to a step function so long-running work can keep its lease alive."""

    ctx: RunContext
    step_id: str
    lease_id: str

    async def heartbeat(self) -> None:
        heartbeat_step(self.ctx, self.step_id)


StepFn = Callable[[StepHandle], Awaitable[T]]


def error_record(error: BaseException) -> StepError:
    normalized = normalize_error(error)
    return StepError(
        name=type(error).__name__,
        message=str(error) or type(error).__name__,
        code=normalized.code,
        kind=normalized.kind.value,
    )


async def run_step(
    ctx: RunContext,
    step_id: str,
    title: str,
    fn: StepFn[T],
    *,
    inputs: Any = None,
    artifacts: ArtifactSpec | None = None,
    reuse_done: bool = False,
    output_model: type[BaseModel] | None = None,
) -> T:
    """Run ``fn`` as the step ``step_id`` and record its outcome.

    Args:
        ctx: Run context.
        step_id: Stable step identifier within the run.
        title: Human-readable title for events.
        fn: Coroutine function receiving a :class:`StepHandle`.
        inputs: Semantic inputs; digested for observability only.
        artifacts: Named payloads to persist, or a callable building them from
            the step result.
        reuse_done: When the step is already done, return its recorded
            ``output`` artifact instead of calling ``fn``. The result is also
            recorded as ``output`` on success.
        output_model: Model used to re-validate a reused ``output`` artifact.

    Raises:
        Whatever ``fn`` raises, after the step has been marked failed.
    """
    if reuse_done:
        document = ctx.read_state()
        if document.step_done(step_id):
            logger.info("step %s already done for run %s; reusing recorded output", step_id, ctx.run_id)
            recorded = load_artifact(ctx, step_id, OUTPUT_ARTIFACT, document=document)
            if recorded is not None and output_model is not None:
                return output_model.model_validate(recorded)  # type: ignore[return-value]
            return recorded

    started_at = utc_now()
    lease = Lease(lease_id=uuid.uuid4().hex, started_at=started_at, heartbeat_at=started_at)
    inputs_digest = digest(inputs) if inputs is not None else None

    def _start(document: RunDocument) -> None:
        previous = document.steps.get(step_id)
        document.run.status = RunStatus.RUNNING
        document.run.step = step_id
        document.run.attempt += 1
        document.steps[step_id] = StepRecord(
            status=StepStatus.RUNNING,
            title=title,
            started_at=started_at,
            inputs_digest=inputs_digest,
            artifacts=dict(previous.artifacts) if previous is not None else {},
            lease=lease,
        )

    ctx.update_state(_start)
    ctx.emit("run.step", {"step_id": step_id, "title": title, "status": "running"})
    logger.info("step %s started (%s)", step_id, title)

    try:
        result = await fn(StepHandle(ctx=ctx, step_id=step_id, lease_id=lease.lease_id))
    except (Exception, asyncio.CancelledError) as exc:
        record = error_record(exc)
        ended_at = utc_now()

        def _fail(document: RunDocument) -> None:
            step = document.steps[step_id]
            step.status = StepStatus.FAILED
            step.ended_at = ended_at
            step.error = record
            if document.run.step == step_id:
                document.run.step = None

        ctx.update_state(_fail)
        ctx.emit(
            "run.step",
            {"step_id": step_id, "title": title, "status": "failed"},
            level="error",
        )
        logger.warning("step %s failed: %s", step_id, record.message)
        raise

    named: dict[str, Any] = dict(artifacts(result) if callable(artifacts) else (artifacts or {}))
    if reuse_done and result is not None:
        named[OUTPUT_ARTIFACT] = result
    entries = {
        name: ctx.store.write_artifact(ctx.run_id, step_id, name, value)
        for name, value in named.items()
        if value is not None
    }
    outputs_digest = digest(result)
    ended_at = utc_now()

    def _finish(document: RunDocument) -> None:
        step = document.steps[step_id]
        step.status = StepStatus.DONE
        step.ended_at = ended_at
        step.outputs_digest = outputs_digest
        step.error = None
        step.artifacts.update(entries)
        if entries:
            document.artifacts_index.setdefault(step_id, {}).update(entries)
        if document.run.step == step_id:
            document.run.step = None

    ctx.update_state(_finish)
    ctx.emit("run.step", {"step_id": step_id, "title": title, "status": "succeeded"})
    logger.info("step %s succeeded", step_id)
    return result


def heartbeat_step(ctx: RunContext, step_id: str) -> None:
    """Refresh the lease of a running step without completing it."""
    now = utc_now()

    def _beat(document: RunDocument) -> None:
        step = document.steps.get(step_id)
        if step is None or step.status != StepStatus.RUNNING or step.lease is None:
            logger.debug("heartbeat ignored for step %s: not running", step_id)
            return
        step.lease.heartbeat_at = now

    ctx.update_state(_beat)


def is_lease_stale(lease: Lease | None, now: datetime | None = None) -> bool:
    if lease is None:
        return False
    current = now if now is not None else utc_now()
    return current - lease.heartbeat_at > LEASE_STALE_AFTER


def reclaim_stale_steps(ctx: RunContext, now: datetime | None = None) -> list[str]:
    """Fail every running step whose lease went stale, as left behind by a crash."""
    current = now if now is not None else utc_now()
    reclaimed: list[str] = []

    def _reclaim(document: RunDocument) -> None:
        for step_id, step in document.steps.items():
            if step.status != StepStatus.RUNNING or not is_lease_stale(step.lease, current):
                continue
            step.status = StepStatus.FAILED
            step.ended_at = current
            step.error = StepError(
                name="StaleLease",
                message=STALE_LEASE_MESSAGE,
                code="step.lease_stale",
                kind="internal",
            )
            if document.run.step == step_id:
                document.run.step = None
            reclaimed.append(step_id)

    ctx.update_state(_reclaim)
    for step_id in reclaimed:
        logger.warning("step %s lease stale for run %s; marked failed", step_id, ctx.run_id)
        ctx.emit("run.step", {"step_id": step_id, "status": "failed", "reason": "lease_stale"}, level="warn")
    return reclaimed


def record_artifacts(ctx: RunContext, step_id: str, payloads: Mapping[str, Any]) -> dict[str, ArtifactEntry]:
    """Persist artifacts that are not the output of a step function."""
    entries = {
        name: ctx.store.write_artifact(ctx.run_id, step_id, name, value)
        for name, value in payloads.items()
        if value is not None
    }
    if not entries:
        return entries

    def _index(document: RunDocument) -> None:
        document.artifacts_index.setdefault(step_id, {}).update(entries)
        step = document.steps.get(step_id)
        if step is not None:
            step.artifacts.update(entries)

    ctx.update_state(_index)
    return entries


def get_artifact(document: RunDocument, step_id: str, name: str) -> ArtifactEntry | None:
    return document.artifact(step_id, name)


def load_artifact(
    ctx: RunContext,
    step_id: str,
    name: str,
    *,
    document: RunDocument | None = None,
) -> Any:
    doc = document if document is not None else ctx.read_state()
    entry = get_artifact(doc, step_id, name)
    if entry is None:
        return None
    return ctx.store.read_artifact(entry)
