"""Review loop: iterate on CI and review feedback until the pull request converges.

Each iteration waits for CI, repairs a failing build, classifies unresolved
review threads through the severity policy, applies and verifies a fix plan,
checkpoints, pushes and re-requests review. Every iteration leaves a
``review-iterations/iteration-N`` artifact explaining how it ended.

The iteration exits are:

* convergence: CI passing with no unresolved threads, phase ``complete``;
* budget exhaustion: the loop returns ``False`` and the pull request is still open;
* a blocking error: ``summary.blocked_reason`` is persisted and the error propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .canonical import digest
from .checkpoint import CheckpointResult, create_checkpoint_commit, push_branch, review_request_key
from .collaborators import ReviewProvider
from .context import RunContext
from .errors import AgentError, RunBlockedError
from .models import (
    AutoResolveOutcome,
    CiFixSummary,
    Phase,
    ReviewAutoResolveSummary,
    ReviewClassificationSummary,
    RunDocument,
    VerifySummary,
    utc_now,
)
from .phases import change_phase
from .review import (
    apply_severity_policy,
    build_review_plan_threads,
    build_review_priority_list,
    build_severity_index,
    build_severity_summary,
    build_thread_fingerprints,
    select_threads_for_context,
)
from .schemas import (
    CiResult,
    CiState,
    Plan,
    PlanStep,
    PullRequestRef,
    ReviewClassification,
    ReviewFixPlan,
    ReviewThreadDetail,
    ThreadFingerprint,
    UnresolvedReview,
    VerifyReport,
)
from .steps import StepHandle, record_artifacts, run_step
from .verification import record_verification_assist

logger = logging.getLogger(__name__)

ITERATIONS_STEP = "review-iterations"

CI_STILL_FAILING = "CI still failing after automated fixes."
NO_ACTIONABLE_FIXES = "No actionable review fixes identified."
CI_FLAKY = "CI failed without new changes (possible flake)."
CI_FAILED = "CI failed during review loop."

_EXECUTOR_PROMPT = (
    "Follow the plan step-by-step. Keep changes minimal and aligned to the plan. "
    "Return a brief summary of changes."
)


@dataclass
class ReviewIteration:
    """State of one review iteration, read once from the run document at its start."""

    index: int
    pr: PullRequestRef
    prior_checkpoint: str | None
    resolved_threads: list[str]
    request_key: str | None
    previously_auto_resolved: set[str] = field(default_factory=set)
    ci_state: CiState | None = None
    unresolved_before: int = 0
    actionable: int = 0
    ignored: int = 0
    checkpoint_sha: str | None = None

    @classmethod
    def begin(cls, index: int, document: RunDocument) -> "ReviewIteration":
        pr = document.pr.pr
        if pr is None:
            raise AgentError(
                "Review loop requires an open pull request",
                code="review.missing_pr",
                next_steps=["Resume the run from the implementation phase to open the pull request."],
            )
        auto_resolve = document.review.auto_resolve
        previously = {
            outcome.thread_id
            for outcome in (auto_resolve.outcomes if auto_resolve is not None else [])
            if outcome.outcome == "resolved"
        }
        return cls(
            index=index,
            pr=pr,
            prior_checkpoint=document.review.last_checkpoint,
            resolved_threads=list(document.review.resolved_threads),
            request_key=document.review.request_key,
            previously_auto_resolved=previously,
        )

    def record(self, status: str, *, reason: str | None = None, unresolved_after: int | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iteration": self.index,
            "status": status,
            "unresolved_before": self.unresolved_before,
            "actionable": self.actionable,
            "ignored": self.ignored,
            "ci_state": self.ci_state.value if self.ci_state is not None else None,
            "checkpoint_sha": self.checkpoint_sha,
            "generated_at": utc_now().isoformat(),
        }
        if reason is not None:
            payload["reason"] = reason
        if unresolved_after is not None:
            payload["unresolved_after"] = unresolved_after
            payload["resolved_threads"] = list(self.resolved_threads)
        return payload


def _require_provider(ctx: RunContext) -> ReviewProvider:
    provider = ctx.collaborators.review
    if provider is None:
        raise AgentError(
            "Code hosting is not configured; the review loop cannot run",
            code="github.unconfigured",
            next_steps=["Configure a review provider and resume the run."],
        )
    return provider


def _block(ctx: RunContext, iteration: ReviewIteration, message: str, reason: str) -> RunBlockedError:
    def _apply(document: RunDocument) -> None:
        document.summary.blocked_reason = message

    ctx.update_state(_apply)
    record_artifacts(
        ctx,
        ITERATIONS_STEP,
        {f"iteration-{iteration.index}": iteration.record("blocked", reason=reason)},
    )
    logger.warning("review iteration %d blocked (%s): %s", iteration.index, reason, message)
    return RunBlockedError(message, code=f"review.{reason}")


def _set_ci(ctx: RunContext, state: CiState) -> None:
    def _apply(document: RunDocument) -> None:
        document.summary.ci = state

    ctx.update_state(_apply)


def _set_unresolved(ctx: RunContext, count: int) -> None:
    def _apply(document: RunDocument) -> None:
        document.summary.unresolved_review_count = count

    ctx.update_state(_apply)


async def _wait_for_ci(ctx: RunContext, provider: ReviewProvider, step_id: str, pr: PullRequestRef) -> CiResult:
    review_config = ctx.config.review

    async def _wait(handle: StepHandle) -> CiResult:
        return await provider.wait_for_ci(
            pr,
            timeout_s=review_config.ci_timeout_s,
            poll_interval_s=review_config.ci_poll_interval_s,
            on_poll=handle.heartbeat,
        )

    return await run_step(ctx, step_id, "Wait for CI", _wait, artifacts=lambda result: {"ci": result})


async def _fetch_review(
    ctx: RunContext, provider: ReviewProvider, step_id: str, pr: PullRequestRef
) -> UnresolvedReview:
    async def _fetch(_: StepHandle) -> UnresolvedReview:
        return await provider.fetch_unresolved_review_comments(pr)

    title = "Refetch review comments" if step_id.endswith(".post") else "Fetch review comments"
    return await run_step(ctx, step_id, title, _fetch)


async def _execute_plan(ctx: RunContext, step_id: str, title: str, plan: Plan, kind: str) -> str:
    plan_digest = digest(plan)

    async def _apply(handle: StepHandle) -> str:
        await handle.heartbeat()
        return await ctx.collaborators.executor.execute(
            _EXECUTOR_PROMPT,
            context={"kind": kind, "plan": plan, "plan_digest": plan_digest},
        )

    return await run_step(
        ctx,
        step_id,
        title,
        _apply,
        inputs={"plan_digest": plan_digest},
        artifacts=lambda result: {"summary": result},
    )


async def _verify(ctx: RunContext, step_id: str, title: str) -> VerifyReport:
    async def _run(_: StepHandle) -> VerifyReport:
        return await ctx.collaborators.verifier.run(None, ctx.worktree_root)

    return await run_step(ctx, step_id, title, _run, artifacts=lambda result: {"report": result})


# ---------------------------------------------------------------------------
# CI repair
# ---------------------------------------------------------------------------


async def _repair_ci(ctx: RunContext, provider: ReviewProvider, iteration: ReviewIteration, ci: CiResult) -> None:
    async def _plan(_: StepHandle) -> Plan:
        return await ctx.invoke_cognition(
            "ci_fix_plan",
            {"ci": {"state": ci.state, "summary": ci.summary, "checks": ci.checks}},
            Plan,
        )

    ci_plan = await run_step(ctx, "ci.fix.plan", "Plan CI fixes", _plan, artifacts=lambda result: {"plan": result})

    def _summarize(document: RunDocument) -> None:
        document.review.ci_fix = CiFixSummary(summary=ci_plan.summary, steps=len(ci_plan.steps))

    ctx.update_state(_summarize)

    await _execute_plan(ctx, "ci.fix.apply", "Apply CI fixes", ci_plan, "ci")

    report = await _verify(ctx, "ci.fix.verify", "Verify CI fixes")
    if not report.ok:
        await record_verification_assist(ctx, report, "ci_fix")
        raise RunBlockedError("Verification failed during CI fix", code="review.ci_fix_verify_failed")

    async def _checkpoint(_: StepHandle) -> CheckpointResult:
        return await create_checkpoint_commit(ctx, f"checkpoint ci-{iteration.index}")

    await run_step(ctx, "ci.fix.checkpoint", "Checkpoint CI fixes", _checkpoint)

    async def _push(_: StepHandle) -> str:
        return (await push_branch(ctx)).stdout

    await run_step(ctx, "ci.fix.push", "Push CI fixes", _push)

    ci_after = await _wait_for_ci(ctx, provider, "ci.wait.review", iteration.pr)
    iteration.ci_state = ci_after.state
    _set_ci(ctx, ci_after.state)
    if ci_after.state == CiState.FAILING:
        raise _block(ctx, iteration, CI_STILL_FAILING, "ci_fix_failed")


# ---------------------------------------------------------------------------
# Auto-resolve
# ---------------------------------------------------------------------------


async def _auto_resolve(
    ctx: RunContext,
    provider: ReviewProvider,
    iteration: ReviewIteration,
    fingerprints: list[ThreadFingerprint],
    thread_ids: list[str],
) -> ReviewAutoResolveSummary:
    if not ctx.options.apply:
        outcomes = [
            AutoResolveOutcome(thread_id=thread_id, outcome="skipped", reason="apply_disabled")
            for thread_id in thread_ids
        ]
        return _summarize_auto_resolve(thread_ids, outcomes)

    by_id = {fingerprint.thread_id: fingerprint for fingerprint in fingerprints}
    acknowledgement = ctx.config.review.intelligence.nitpick_acknowledgement

    async def _resolve(_: StepHandle) -> ReviewAutoResolveSummary:
        outcomes: list[AutoResolveOutcome] = []
        for thread_id in thread_ids:
            if thread_id in iteration.previously_auto_resolved:
                outcomes.append(AutoResolveOutcome(thread_id=thread_id, outcome="resolved", reason="already_resolved"))
                continue
            thread = by_id.get(thread_id)
            if thread is None:
                outcomes.append(AutoResolveOutcome(thread_id=thread_id, outcome="skipped", reason="missing_thread"))
                continue
            if thread.is_outdated:
                outcomes.append(AutoResolveOutcome(thread_id=thread_id, outcome="skipped", reason="outdated_thread"))
                continue
            comment_id = thread.comments[0].database_id if thread.comments else None
            if not comment_id:
                outcomes.append(
                    AutoResolveOutcome(thread_id=thread_id, outcome="skipped", reason="missing_comment_id")
                )
                continue
            try:
                await provider.reply_to_review_comment(iteration.pr, comment_id, acknowledgement)
                await provider.resolve_review_thread(iteration.pr, thread_id)
            except Exception as exc:
                logger.warning("auto-resolve failed for thread %s: %s", thread_id, exc)
                outcomes.append(
                    AutoResolveOutcome(thread_id=thread_id, outcome="failed", reason=str(exc) or "failed_to_resolve")
                )
                continue
            outcomes.append(AutoResolveOutcome(thread_id=thread_id, outcome="resolved"))
        return _summarize_auto_resolve(thread_ids, outcomes)

    return await run_step(
        ctx,
        "review.nitpick.resolve",
        "Resolve nitpick review threads",
        _resolve,
        inputs={"count": len(thread_ids), "thread_ids": thread_ids},
        artifacts=lambda result: {"result": result},
    )


def _summarize_auto_resolve(thread_ids: list[str], outcomes: list[AutoResolveOutcome]) -> ReviewAutoResolveSummary:
    return ReviewAutoResolveSummary(
        attempted=len(thread_ids),
        resolved=sum(1 for outcome in outcomes if outcome.outcome == "resolved"),
        skipped=sum(1 for outcome in outcomes if outcome.outcome == "skipped"),
        failed=sum(1 for outcome in outcomes if outcome.outcome == "failed"),
        outcomes=outcomes,
    )


# ---------------------------------------------------------------------------
# Iteration
# ---------------------------------------------------------------------------


async def _run_iteration(ctx: RunContext, provider: ReviewProvider, iteration: ReviewIteration) -> bool:
    """Run one iteration; return True when the pull request converged."""
    ci = await _wait_for_ci(ctx, provider, "ci.wait.review", iteration.pr)
    iteration.ci_state = ci.state
    _set_ci(ctx, ci.state)

    if ci.state == CiState.FAILING:
        await _repair_ci(ctx, provider, iteration, ci)
        return False

    review = await _fetch_review(ctx, provider, "github.review.fetch", iteration.pr)
    iteration.unresolved_before = len(review.comments)
    _set_unresolved(ctx, len(review.comments))

    if not review.comments and ci.state == CiState.PASSING:
        change_phase(ctx, Phase.COMPLETE, "review_loop_clean")
        await _complete_task(ctx)
        record_artifacts(
            ctx,
            ITERATIONS_STEP,
            {f"iteration-{iteration.index}": iteration.record("completed", unresolved_after=0)},
        )
        logger.info("review loop converged for run %s at iteration %d", ctx.run_id, iteration.index)
        return True

    fingerprints = build_thread_fingerprints(review.comments)
    record_artifacts(ctx, "github.review.fetch", {"threads": fingerprints})

    async def _classify(_: StepHandle) -> ReviewClassification:
        return await ctx.invoke_cognition("review_classify", {"threads": fingerprints}, ReviewClassification)

    classification = await run_step(
        ctx,
        "review.classify",
        "Classify review threads",
        _classify,
        inputs={"thread_count": len(review.comments)},
        artifacts=lambda result: {"classification": result},
    )

    intelligence = ctx.config.review.intelligence
    index = build_severity_index(classification, fingerprints)
    severity_summary = build_severity_summary(index.severity_by_thread)
    if intelligence.enabled:
        split = apply_severity_policy(index.severity_by_thread, intelligence.severity_policy)
        actionable_ids, ignored_ids, auto_resolve_ids = split.actionable, split.ignored, split.auto_resolve
    else:
        actionable_ids = list(classification.actionable_thread_ids)
        ignored_ids = list(classification.ignored_thread_ids)
        auto_resolve_ids = []

    priority = build_review_priority_list(fingerprints, index)
    needs_context = len(classification.needs_context_thread_ids)

    def _classified(document: RunDocument) -> None:
        document.review.classification = ReviewClassificationSummary(
            actionable=len(actionable_ids),
            ignored=len(ignored_ids),
            needs_context=needs_context,
            severity=severity_summary,
        )
        document.review.priority = priority

    ctx.update_state(_classified)
    threads_needing_context = select_threads_for_context(fingerprints, classification.needs_context_thread_ids)

    if intelligence.enabled and auto_resolve_ids:
        auto_summary = await _auto_resolve(ctx, provider, iteration, fingerprints, auto_resolve_ids)
        resolved = {outcome.thread_id for outcome in auto_summary.outcomes if outcome.outcome == "resolved"}
        # Threads that could not be auto-resolved are escalated to the fix plan.
        unresolved = [outcome.thread_id for outcome in auto_summary.outcomes if outcome.outcome != "resolved"]
        kept = [thread_id for thread_id in actionable_ids if thread_id not in resolved]
        actionable_ids = list(dict.fromkeys([*kept, *unresolved]))
        ignored_ids = [thread_id for thread_id in ignored_ids if thread_id not in resolved]

        def _auto_resolved(document: RunDocument) -> None:
            document.review.classification = ReviewClassificationSummary(
                actionable=len(actionable_ids),
                ignored=len(ignored_ids),
                needs_context=needs_context,
                severity=severity_summary,
                auto_resolved=len(resolved),
            )
            document.review.auto_resolve = auto_summary

        ctx.update_state(_auto_resolved)

    detailed: list[ReviewThreadDetail] = []
    if threads_needing_context:

        async def _fetch_threads(_: StepHandle) -> list[ReviewThreadDetail]:
            results: list[ReviewThreadDetail] = []
            for thread_id in threads_needing_context:
                thread = await provider.fetch_review_thread(iteration.pr, thread_id)
                if thread is not None:
                    results.append(thread)
            return results

        detailed = await run_step(
            ctx,
            "review.thread.fetch",
            "Fetch full review threads",
            _fetch_threads,
            inputs={"thread_count": len(threads_needing_context)},
            artifacts=lambda result: {"threads": result},
        )

    plan_threads = build_review_plan_threads(fingerprints, detailed, actionable_ids, ignored_ids)

    async def _plan(_: StepHandle) -> ReviewFixPlan:
        return await ctx.invoke_cognition("review_plan", {"threads": plan_threads}, ReviewFixPlan)

    fix_plan = await run_step(
        ctx,
        "review.plan",
        "Plan review fixes",
        _plan,
        inputs={"actionable": len(actionable_ids), "ignored": len(ignored_ids)},
        artifacts=lambda result: {"plan": result},
    )
    actionable_threads = [thread for thread in fix_plan.threads if thread.actionable]
    iteration.actionable = len(actionable_threads)
    iteration.ignored = len(fix_plan.threads) - len(actionable_threads)

    def _planned(document: RunDocument) -> None:
        document.review.fix_plan_actionable = iteration.actionable
        document.review.fix_plan_ignored = iteration.ignored
        document.review.iteration = iteration.index

    ctx.update_state(_planned)

    if not actionable_threads and not fix_plan.resolve_threads:
        raise _block(ctx, iteration, NO_ACTIONABLE_FIXES, "no_actionable_fixes")

    if actionable_threads:
        review_plan = Plan(
            summary="Review fixes",
            steps=[
                PlanStep(id=thread.thread_id, title=thread.summary, description=thread.summary)
                for thread in actionable_threads
            ],
            verification=list(fix_plan.verification),
        )
        await _execute_plan(ctx, "review.apply", "Apply review fixes", review_plan, "review")

        report = await _verify(ctx, "review.verify", "Verify review fixes")

        def _verified(document: RunDocument) -> None:
            document.review.verify = VerifySummary(ok=report.ok)

        ctx.update_state(_verified)
        if not report.ok:
            await record_verification_assist(ctx, report, "review")
            raise RunBlockedError("Verification failed during review loop", code="review.verify_failed")

        async def _checkpoint(_: StepHandle) -> CheckpointResult:
            return await create_checkpoint_commit(ctx, f"checkpoint review-{iteration.index}")

        checkpoint = await run_step(
            ctx,
            "review.checkpoint",
            "Checkpoint review fixes",
            _checkpoint,
            inputs={"iteration": iteration.index},
            artifacts=lambda result: {"checkpoint": result},
        )
        if checkpoint.sha:
            sha = checkpoint.sha
            iteration.checkpoint_sha = sha

            def _checkpointed(document: RunDocument) -> None:
                if checkpoint.committed:
                    document.checkpoints.append(sha)
                document.review.last_checkpoint = sha

            ctx.update_state(_checkpointed)

        async def _push(_: StepHandle) -> str:
            return (await push_branch(ctx)).stdout

        await run_step(ctx, "review.push", "Push review fixes", _push)

        ci_after = await _wait_for_ci(ctx, provider, "ci.wait", iteration.pr)
        iteration.ci_state = ci_after.state
        _set_ci(ctx, ci_after.state)
        if ci_after.state == CiState.FAILING:
            flaky = iteration.checkpoint_sha is not None and iteration.checkpoint_sha == iteration.prior_checkpoint
            if flaky:
                raise _block(ctx, iteration, CI_FLAKY, "ci_flaky")
            raise _block(ctx, iteration, CI_FAILED, "ci_failed")

    for thread_id in fix_plan.resolve_threads:
        if thread_id in iteration.resolved_threads:
            continue

        async def _resolve(_: StepHandle, thread_id: str = thread_id) -> None:
            await provider.resolve_review_thread(iteration.pr, thread_id)

        await run_step(ctx, "review.resolve", "Resolve review thread", _resolve, inputs={"thread_id": thread_id})
        iteration.resolved_threads.append(thread_id)
        resolved_snapshot = list(iteration.resolved_threads)

        def _persist_resolved(document: RunDocument) -> None:
            document.review.resolved_threads = resolved_snapshot

        ctx.update_state(_persist_resolved)

    await _rerequest_review(ctx, provider, iteration)

    review_after = await _fetch_review(ctx, provider, "github.review.fetch.post", iteration.pr)
    _set_unresolved(ctx, len(review_after.comments))
    record_artifacts(
        ctx,
        ITERATIONS_STEP,
        {
            f"iteration-{iteration.index}": iteration.record(
                "completed", unresolved_after=len(review_after.comments)
            )
        },
    )
    return False


async def _rerequest_review(ctx: RunContext, provider: ReviewProvider, iteration: ReviewIteration) -> None:
    github = ctx.config.github
    base_key = review_request_key(iteration.pr.number, github.reviewers, github.request_copilot)
    key = digest({"key": base_key, "iteration": iteration.index})
    if key == iteration.request_key:
        logger.debug("reviewers already re-requested for iteration %d", iteration.index)
        return

    async def _request(_: StepHandle) -> None:
        await provider.request_reviewers(iteration.pr, github.reviewers, copilot=github.request_copilot)

    await run_step(ctx, "github.review.request", "Re-request reviewers", _request, inputs={"key": key})
    iteration.request_key = key

    def _store(document: RunDocument) -> None:
        document.review.request_key = key

    ctx.update_state(_store)


async def _complete_task(ctx: RunContext) -> None:
    document = ctx.read_state()
    task = document.task
    if task is None or document.step_done("task.move_done"):
        return

    async def _done(_: StepHandle) -> None:
        await ctx.collaborators.tasks.complete_task(task)

    await run_step(ctx, "task.move_done", "Move task to done", _done)


async def run_review_loop(ctx: RunContext) -> bool:
    """Drive review iterations until convergence, budget exhaustion or a block.

    Returns:
        True when the run converged (phase ``complete``); False when the
        iteration budget ran out with the pull request still open.
    """
    provider = _require_provider(ctx)
    change_phase(ctx, Phase.REVIEW)
    max_iterations = ctx.config.review.max_iterations

    for index in range(1, max_iterations + 1):
        iteration = ReviewIteration.begin(index, ctx.read_state())
        try:
            if await _run_iteration(ctx, provider, iteration):
                return True
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            keep_existing = isinstance(exc, RunBlockedError)

            def _blocked(document: RunDocument) -> None:
                if keep_existing and document.summary.blocked_reason:
                    return
                document.summary.blocked_reason = message

            ctx.update_state(_blocked)
            raise

    logger.info("review loop for run %s used all %d iterations without converging", ctx.run_id, max_iterations)
    return False
