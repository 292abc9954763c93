"""Plan and implement phases, up to the point where review starts."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from .canonical import digest, hash_text
from .checkpoint import CheckpointResult, create_checkpoint_commit, diff_stat, review_request_key
from .collaborators import ReviewProvider
from .context import RunContext
from .errors import AgentError, RunBlockedError
from .models import Phase, ReviewRequestRecord, RunDocument
from .phases import change_phase
from .schemas import CiResult, CiState, Plan, PrDraft, PullRequestRef, Task
from .steps import StepHandle, run_step
from .verification import run_verification

logger = logging.getLogger(__name__)

GITHUB_UNCONFIGURED = "Code hosting not configured. Skipping PR and review steps."
CI_FAILED_BEFORE_REVIEW = "CI failed before review request"

_EXECUTOR_PROMPT = (
    "Implement the task by following the plan step-by-step. Keep changes minimal and aligned "
    "to the plan. Return a brief summary of changes."
)


def _require_task(document: RunDocument) -> Task:
    if document.task is None:
        raise AgentError("Run has no task", code="task.missing")
    return document.task


async def _task_transition(
    ctx: RunContext, step_id: str, title: str, action: Callable[[], Awaitable[None]]
) -> None:
    if ctx.read_state().step_done(step_id):
        return

    async def _move(_: StepHandle) -> None:
        await action()

    await run_step(ctx, step_id, title, _move)


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


async def run_planner(ctx: RunContext) -> Plan:
    """Generate and persist the plan; stop when required questions are unanswered."""
    change_phase(ctx, Phase.PLAN)
    document = ctx.read_state()
    task = _require_task(document)

    async def _generate(_: StepHandle) -> Plan:
        return await ctx.invoke_cognition(
            "plan",
            {"task": task.model_dump(mode="json"), "clarifications": document.clarifications},
            Plan,
        )

    plan = await run_step(
        ctx,
        "agent.plan.generate",
        "Generate plan",
        _generate,
        inputs={"task": task, "clarifications": document.clarifications},
        reuse_done=True,
        output_model=Plan,
    )
    plan_digest = digest(plan)

    def _store(doc: RunDocument) -> None:
        doc.plan = plan
        doc.summary.plan_digest = plan_digest

    updated = ctx.update_state(_store)
    missing = [
        question
        for question in plan.questions
        if question.required and not updated.clarifications.get(question.id, "").strip()
    ]
    if missing:
        raise AgentError(
            "Plan requires clarifications before implementation",
            code="task.clarifications_required",
            exit_code=0,
            details={"questions": [question.model_dump() for question in missing]},
            next_steps=[f"Answer: {question.text}" for question in missing],
            run_id=ctx.run_id,
        )
    logger.info("plan for run %s ready with %d step(s)", ctx.run_id, len(plan.steps))
    return plan


# ---------------------------------------------------------------------------
# Implement
# ---------------------------------------------------------------------------


async def _execute(ctx: RunContext, task: Task, plan: Plan) -> str:
    document = ctx.read_state()
    if document.step_done("agent.execute") and document.implementation.summary is not None:
        return document.implementation.summary
    plan_digest = digest(plan)

    async def _run(handle: StepHandle) -> str:
        await handle.heartbeat()
        return await ctx.collaborators.executor.execute(
            _EXECUTOR_PROMPT,
            context={"kind": "implement", "task": task, "plan": plan, "plan_digest": plan_digest},
        )

    summary = await run_step(
        ctx,
        "agent.execute",
        "Execute plan",
        _run,
        inputs={"plan_digest": plan_digest},
        artifacts=lambda result: {"summary": result},
    )

    def _store(doc: RunDocument) -> None:
        doc.implementation.summary = summary

    ctx.update_state(_store)
    return summary


async def _checkpoint(ctx: RunContext) -> None:
    if ctx.read_state().step_done("git.checkpoint"):
        return

    async def _commit(_: StepHandle) -> CheckpointResult:
        return await create_checkpoint_commit(ctx, "checkpoint implement")

    result = await run_step(ctx, "git.checkpoint", "Checkpoint implementation", _commit)
    if result.committed and result.sha:
        sha = result.sha

        def _append(doc: RunDocument) -> None:
            doc.checkpoints.append(sha)

        ctx.update_state(_append)


async def _open_pull_request(ctx: RunContext, provider: ReviewProvider, task: Task, plan: Plan) -> PullRequestRef:
    if not ctx.branch:
        raise AgentError("Cannot open a pull request: run has no branch", code="git.no_branch")
    branch = ctx.branch
    changes = await diff_stat(ctx, ctx.config.github.base_branch)

    async def _draft(_: StepHandle) -> PrDraft:
        return await ctx.invoke_cognition(
            "pr_draft",
            {
                "task": task.model_dump(mode="json"),
                "plan": plan.model_dump(mode="json"),
                "implementation_summary": ctx.read_state().implementation.summary,
                "diff_stat": changes,
            },
            PrDraft,
        )

    draft = await run_step(ctx, "pr.draft", "Draft pull request", _draft, reuse_done=True, output_model=PrDraft)

    def _store_draft(doc: RunDocument) -> None:
        doc.pr.draft_title = draft.title
        doc.pr.draft_body_digest = hash_text(draft.body)

    ctx.update_state(_store_draft)

    async def _open(_: StepHandle) -> PullRequestRef:
        return await provider.open_or_update_pr(
            branch=branch,
            base=ctx.config.github.base_branch,
            title=draft.title,
            body=draft.body,
        )

    pr = await run_step(
        ctx,
        "github.pr.open",
        "Open pull request",
        _open,
        inputs={"branch": branch, "title": draft.title},
        reuse_done=True,
        output_model=PullRequestRef,
    )

    def _store_pr(doc: RunDocument) -> None:
        doc.pr.pr = pr
        doc.summary.pr_url = pr.url

    ctx.update_state(_store_pr)
    logger.info("pull request for run %s: %s", ctx.run_id, pr.url)
    return pr


async def _wait_for_initial_ci(ctx: RunContext, provider: ReviewProvider, pr: PullRequestRef) -> None:
    if ctx.read_state().step_done("ci.wait.initial"):
        return
    review_config = ctx.config.review

    async def _wait(handle: StepHandle) -> CiResult:
        return await provider.wait_for_ci(
            pr,
            timeout_s=review_config.ci_timeout_s,
            poll_interval_s=review_config.ci_poll_interval_s,
            on_poll=handle.heartbeat,
        )

    ci = await run_step(ctx, "ci.wait.initial", "Wait for CI", _wait, artifacts=lambda result: {"ci": result})

    def _store(doc: RunDocument) -> None:
        doc.summary.ci = ci.state

    ctx.update_state(_store)
    if ci.state == CiState.FAILING:

        def _blocked(doc: RunDocument) -> None:
            doc.summary.blocked_reason = CI_FAILED_BEFORE_REVIEW

        ctx.update_state(_blocked)
        raise RunBlockedError(CI_FAILED_BEFORE_REVIEW, code="ci.failed_before_review")


async def _request_review(ctx: RunContext, provider: ReviewProvider, pr: PullRequestRef) -> None:
    github = ctx.config.github
    if not github.reviewers and not github.request_copilot:
        return
    key = review_request_key(pr.number, github.reviewers, github.request_copilot)
    if ctx.read_state().review.request_key == key:
        return

    async def _request(_: StepHandle) -> None:
        await provider.request_reviewers(pr, github.reviewers, copilot=github.request_copilot)

    await run_step(ctx, "github.review.request.initial", "Request reviewers", _request, inputs={"key": key})

    def _store(doc: RunDocument) -> None:
        doc.review.request_key = key
        doc.review.request = ReviewRequestRecord(reviewers=list(github.reviewers), copilot=github.request_copilot)

    ctx.update_state(_store)


async def run_implementation(ctx: RunContext) -> bool:
    """Implement, verify and open the pull request.

    Returns:
        True when a pull request is open and review can start; False when code
        hosting is not configured and the run completed without review.
    """
    document = ctx.read_state()
    plan = document.plan
    if plan is None:
        raise AgentError(
            "Implementation requires a persisted plan",
            code="plan.missing",
            next_steps=["Resume the run so the plan phase can run first."],
        )
    task = _require_task(document)
    change_phase(ctx, Phase.IMPLEMENT)

    tasks = ctx.collaborators.tasks
    await _task_transition(
        ctx, "task.move_in_progress", "Move task to in progress", lambda: tasks.move_to_in_progress(task)
    )
    await _execute(ctx, task, plan)
    await _checkpoint(ctx)
    await run_verification(ctx)
    change_phase(ctx, Phase.PR)

    provider = ctx.collaborators.review
    if provider is None:

        def _unconfigured(doc: RunDocument) -> None:
            doc.summary.blocked_reason = GITHUB_UNCONFIGURED

        ctx.update_state(_unconfigured)
        change_phase(ctx, Phase.COMPLETE, "github_unconfigured")
        logger.warning("run %s: %s", ctx.run_id, GITHUB_UNCONFIGURED)
        return False

    pr = await _open_pull_request(ctx, provider, task, plan)
    await _task_transition(
        ctx,
        "task.comment_pr_open",
        "Comment pull request on task",
        lambda: tasks.comment_on_pr_open(task, pr.url),
    )
    await _task_transition(
        ctx, "task.move_in_review", "Move task to in review", lambda: tasks.move_to_in_review(task)
    )
    await _wait_for_initial_ci(ctx, provider, pr)
    await _request_review(ctx, provider, pr)
    return True
