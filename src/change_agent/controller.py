"""Run controller: the phase dispatcher graph and the guarded run lifecycle.

``RunController.execute`` owns everything that must happen exactly once per
process attempt: taking the run lock, racing the work against cancellation and
always persisting the terminal status. The work itself is a LangGraph
``StateGraph`` that reclaims crashed steps and re-enters the orchestrator for
the persisted phase.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from .context import Collaborators, RunContext
from .errors import AgentError, ErrorKind, RunCanceledError, normalize_error
from .events import EventBus, EventError
from .learning import run_learning_notes
from .models import Phase, RunDocument, RunStatus, utc_now
from .phases import change_phase, phase_for_resume
from .pipeline import run_implementation, run_planner
from .recovery import run_recovery
from .review_loop import run_review_loop
from .schemas import Task
from .settings import ControllerConfig, RunOptions
from .state_store import RunStateStore
from .steps import reclaim_stale_steps

logger = logging.getLogger(__name__)

RunWork = Callable[[RunContext], Awaitable[RunStatus]]

_IMPLEMENT_PHASES = (Phase.IMPLEMENT, Phase.VERIFY, Phase.PR)


class ControllerState(TypedDict, total=False):
    run_id: str
    phase: str
    reclaimed: list[str]
    pr_open: bool
    converged: bool
    learning_status: str | None


class RunController:
    """Drives one run at a time through plan, implement, review, recovery and learning."""

    def __init__(
        self,
        *,
        store: RunStateStore,
        config: ControllerConfig,
        collaborators: Collaborators,
        worktree_root: Path,
        options: RunOptions | None = None,
        bus: EventBus | None = None,
        branch: str | None = None,
        persist_events: bool = True,
    ) -> None:
        self.store = store
        self.config = config
        self.collaborators = collaborators
        self.worktree_root = worktree_root
        self.options = options if options is not None else RunOptions()
        self.bus = bus if bus is not None else EventBus()
        self.branch = branch
        if persist_events:
            self.bus.subscribe(store.append_event)
        self.graph = self._build_graph().compile()

    def context(self, run_id: str) -> RunContext:
        return RunContext(
            run_id=run_id,
            store=self.store,
            bus=self.bus,
            config=self.config,
            options=self.options,
            collaborators=self.collaborators,
            worktree_root=self.worktree_root,
            branch=self.branch,
        )

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ControllerState)
        graph.add_node("reclaim", self._reclaim_node)
        graph.add_node("plan", self._plan_node)
        graph.add_node("implement", self._implement_node)
        graph.add_node("review", self._review_node)
        graph.add_node("recovery", self._recovery_node)
        graph.add_node("learning", self._learning_node)

        graph.add_edge(START, "reclaim")
        graph.add_conditional_edges(
            "reclaim",
            self._phase_route,
            {
                "plan": "plan",
                "implement": "implement",
                "review": "review",
                "recovery": "recovery",
                "learning": "learning",
                "end": END,
            },
        )
        graph.add_edge("plan", "implement")
        graph.add_conditional_edges(
            "implement",
            self._implement_route,
            {
                "review": "review",
                "learning": "learning",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "review",
            self._complete_route,
            {
                "learning": "learning",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "recovery",
            self._complete_route,
            {
                "learning": "learning",
                "end": END,
            },
        )
        graph.add_edge("learning", END)
        return graph

    async def _reclaim_node(self, state: ControllerState) -> dict[str, Any]:
        ctx = self.context(state["run_id"])
        reclaimed = reclaim_stale_steps(ctx)
        phase = phase_for_resume(ctx.read_state())
        return {"phase": phase.value, "reclaimed": reclaimed}

    def _phase_route(self, state: ControllerState) -> str:
        phase = Phase(state["phase"])
        if phase in (Phase.IDLE, Phase.PLAN):
            return "plan"
        if phase in _IMPLEMENT_PHASES:
            return "implement"
        if phase == Phase.REVIEW:
            return "review"
        if phase == Phase.RECOVERY:
            return "recovery"
        if phase == Phase.COMPLETE:
            return "learning"
        return "end"

    async def _plan_node(self, state: ControllerState) -> dict[str, Any]:
        await run_planner(self.context(state["run_id"]))
        return {"phase": Phase.PLAN.value}

    async def _implement_node(self, state: ControllerState) -> dict[str, Any]:
        ctx = self.context(state["run_id"])
        pr_open = await run_implementation(ctx)
        return {"pr_open": pr_open, "phase": ctx.read_state().run.phase.value}

    def _implement_route(self, state: ControllerState) -> str:
        if state.get("pr_open"):
            return "review"
        return self._complete_route(state)

    async def _review_node(self, state: ControllerState) -> dict[str, Any]:
        ctx = self.context(state["run_id"])
        converged = await run_review_loop(ctx)
        return {"converged": converged, "phase": ctx.read_state().run.phase.value}

    async def _recovery_node(self, state: ControllerState) -> dict[str, Any]:
        ctx = self.context(state["run_id"])
        await run_recovery(ctx)
        return {"phase": ctx.read_state().run.phase.value}

    def _complete_route(self, state: ControllerState) -> str:
        if state.get("phase") == Phase.COMPLETE.value:
            return "learning"
        return "end"

    async def _learning_node(self, state: ControllerState) -> dict[str, Any]:
        ctx = self.context(state["run_id"])
        document = ctx.read_state()
        if document.learning is not None:
            return {"learning_status": document.learning.status}
        summary = await run_learning_notes(ctx)
        return {"learning_status": summary.status if summary is not None else None}

    async def _drive(self, ctx: RunContext) -> RunStatus:
        await self.graph.ainvoke({"run_id": ctx.run_id})
        if ctx.read_state().run.phase == Phase.COMPLETE:
            return RunStatus.SUCCESS
        # Review budget exhausted with the pull request still open; resumable.
        return RunStatus.RUNNING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_run(
        self,
        run_id: str,
        task: Task,
        *,
        clarifications: dict[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunDocument:
        self.store.create_run(run_id, task=task, clarifications=clarifications or {})
        logger.info("starting run %s for task %s", run_id, task.key or task.id)
        return await self.execute(run_id, self._drive, cancel_event=cancel_event)

    async def resume_run(
        self,
        run_id: str,
        *,
        clarifications: dict[str, str] | None = None,
        recover: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> RunDocument:
        """Resume a run from its persisted phase, or through recovery when ``recover`` is set."""
        answers = dict(clarifications or {})

        async def _work(ctx: RunContext) -> RunStatus:
            if answers:

                def _answer(document: RunDocument) -> None:
                    document.clarifications.update(answers)

                ctx.update_state(_answer)
            if recover:
                change_phase(ctx, Phase.RECOVERY, "recovery")
            return await self._drive(ctx)

        return await self.execute(run_id, _work, cancel_event=cancel_event)

    async def execute(
        self,
        run_id: str,
        work: RunWork,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> RunDocument:
        """Run ``work`` under the run lock and always persist how it ended.

        Raises:
            RunLockedError: If another process holds the run lock.
            AgentError: The normalized error that terminated the work.
        """
        ctx = self.context(run_id)
        lock = self.store.acquire_run_lock(run_id)
        started = time.monotonic()
        status = RunStatus.FAILED
        error: AgentError | None = None
        try:

            def _start(document: RunDocument) -> None:
                document.run.status = RunStatus.RUNNING
                document.run.finished_at = None
                document.summary.blocked_reason = None

            current = ctx.read_state()
            ctx.emit("run.started", {"phase": current.run.phase.value, "attempt": current.run.attempt})
            ctx.update_state(_start)
            status = await self._race(ctx, work, cancel_event)
        except (Exception, asyncio.CancelledError) as exc:
            error = normalize_error(exc, run_id=run_id)
            if error.kind == ErrorKind.CANCELED:
                status = RunStatus.CANCELED
            elif error.exit_code == 0:
                # waiting on the user, resumable as is
                status = RunStatus.RUNNING
            else:
                status = RunStatus.FAILED
        finally:
            finished_at = utc_now() if status != RunStatus.RUNNING else None

            def _finish(document: RunDocument) -> None:
                document.run.status = status
                document.run.step = None
                document.run.finished_at = finished_at

            try:
                document = ctx.update_state(_finish)
                duration_ms = int((time.monotonic() - started) * 1000)
                ctx.emit(
                    "run.finished",
                    {
                        "status": status.value,
                        "duration_ms": duration_ms,
                        "summary": document.summary.model_dump(mode="json"),
                    },
                    level="error" if status == RunStatus.FAILED else "info",
                    error=EventError(code=error.code, message=error.message, kind=error.kind.value)
                    if error is not None
                    else None,
                )
                logger.info("run %s finished with status %s in %d ms", run_id, status.value, duration_ms)
            finally:
                lock.release()

        if error is not None:
            raise error
        return document

    async def _race(self, ctx: RunContext, work: RunWork, cancel_event: asyncio.Event | None) -> RunStatus:
        work_task = asyncio.ensure_future(work(ctx))
        if cancel_event is None:
            return await work_task
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not cancel_task.done():
                cancel_task.cancel()
        if work_task in done:
            return work_task.result()

        logger.warning("cancellation requested for run %s", ctx.run_id)
        work_task.cancel()
        outcome = (await asyncio.gather(work_task, return_exceptions=True))[0]
        if isinstance(outcome, Exception):
            logger.warning("run %s raised while canceling: %s", ctx.run_id, outcome)
        raise RunCanceledError(run_id=ctx.run_id)
