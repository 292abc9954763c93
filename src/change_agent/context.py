from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from .collaborators import (
    Cognition,
    Executor,
    NullTaskTracker,
    ReviewProvider,
    TaskTracker,
    VerificationRunner,
    VersionControl,
)
from .events import EventBus, EventError, EventLevel, EventType, build_event
from .llm import normalize_structured_output
from .models import RunDocument
from .settings import ControllerConfig, RunOptions
from .state_store import RunStateStore

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class Collaborators:
    cognition: Cognition
    vcs: VersionControl
    verifier: VerificationRunner
    executor: Executor
    review: ReviewProvider | None = None
    tasks: TaskTracker = field(default_factory=NullTaskTracker)


@dataclass
class RunContext:
    """Everything an orchestrator needs for one run, passed explicitly."""

    run_id: str
    store: RunStateStore
    bus: EventBus
    config: ControllerConfig
    options: RunOptions
    collaborators: Collaborators
    worktree_root: Path
    branch: str | None = None

    def read_state(self) -> RunDocument:
        return self.store.read_run(self.run_id)

    def update_state(self, mutator: Callable[[RunDocument], None]) -> RunDocument:
        """Single read-modify-write entry point for the run document."""
        document, content_digest = self.store.update_run(self.run_id, mutator)
        self.emit("run.persisted", {"digest": content_digest}, level="debug")
        return document

    def emit(
        self,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        *,
        level: EventLevel = "info",
        error: EventError | None = None,
    ) -> None:
        self.bus.emit(build_event(event_type, self.run_id, payload, level=level, error=error))

    async def invoke_cognition(self, task: str, context: dict[str, Any], schema: type[ModelT]) -> ModelT:
        """Call cognition and validate its output; invalid output is never coerced."""
        raw = await self.collaborators.cognition.invoke(task, context, schema)
        result = normalize_structured_output(raw_output=raw, schema=schema)
        logger.debug("cognition task %s returned %s for run %s", task, schema.__name__, self.run_id)
        return result
