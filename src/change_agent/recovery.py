from __future__ import annotations

import logging

from .context import RunContext
from .errors import AgentError, ErrorKind, RunBlockedError
from .models import Phase, RecoverySummary, RunDocument, VerifySummary
from .phases import change_phase
from .review_loop import run_review_loop
from .schemas import RecoveryPlan, UnresolvedReview, VerifyReport
from .steps import StepHandle, run_step
from .verification import record_verification_assist

logger = logging.getLogger(__name__)


def _recovery_context(document: RunDocument) -> dict[str, object]:
    return {
        "phase": document.run.phase.value,
        "status": document.run.status.value,
        "summary": document.summary.model_dump(mode="json"),
        "failed_steps": {
            step_id: step.error.model_dump(mode="json")
            for step_id, step in document.steps.items()
            if step.error is not None
        },
        "verify": document.implementation.verify.model_dump(mode="json")
        if document.implementation.verify is not None
        else None,
        "review_iteration": document.review.iteration,
    }


async def _rerun_verification(ctx: RunContext) -> None:
    change_phase(ctx, Phase.VERIFY, "recovery")

    async def _run(_: StepHandle) -> VerifyReport:
        return await ctx.collaborators.verifier.run(None, ctx.worktree_root)

    report = await run_step(
        ctx,
        "recovery.verify",
        "Rerun verification",
        _run,
        artifacts=lambda result: {"report": result},
    )

    def _summarize(document: RunDocument) -> None:
        document.implementation.verify = VerifySummary(ok=report.ok)

    ctx.update_state(_summarize)
    if report.ok:
        return
    await record_verification_assist(ctx, report, "recovery")
    raise RunBlockedError("Verification failed during recovery", code="recovery.verify_failed")


async def _refetch_reviews(ctx: RunContext) -> None:
    change_phase(ctx, Phase.REVIEW, "recovery")
    provider = ctx.collaborators.review
    pr = ctx.read_state().pr.pr
    if provider is None or pr is None:
        raise RunBlockedError(
            "Recovery needs an open pull request to refetch reviews",
            code="recovery.missing_pr",
        )

    async def _fetch(_: StepHandle) -> UnresolvedReview:
        return await provider.fetch_unresolved_review_comments(pr)

    review = await run_step(
        ctx,
        "recovery.review.fetch",
        "Refetch review comments",
        _fetch,
        artifacts=lambda result: {"review": result},
    )

    def _count(document: RunDocument) -> None:
        document.summary.unresolved_review_count = len(review.comments)

    ctx.update_state(_count)


async def run_recovery(ctx: RunContext) -> None:
    """Ask cognition for the next action after a failure and carry it out."""
    document = ctx.read_state()

    async def _plan(_: StepHandle) -> RecoveryPlan:
        return await ctx.invoke_cognition("recovery_plan", _recovery_context(document), RecoveryPlan)

    plan = await run_step(
        ctx,
        "agent.recovery.plan",
        "Plan recovery",
        _plan,
        artifacts=lambda result: {"plan": result},
    )

    def _record(doc: RunDocument) -> None:
        doc.recovery = RecoverySummary(next_action=plan.next_action, reason=plan.reason)

    ctx.update_state(_record)
    logger.info("recovery for run %s: %s (%s)", ctx.run_id, plan.next_action, plan.reason)

    if plan.next_action == "rerun_verification":
        await _rerun_verification(ctx)
    elif plan.next_action == "refetch_reviews":
        await _refetch_reviews(ctx)
    elif plan.next_action == "restart_review_loop":
        if not ctx.options.apply:
            raise RunBlockedError(
                "Recovery suggests restarting the review loop. Re-run with --apply.",
                code="recovery.apply_required",
                next_steps=["Re-run with --apply to let the review loop push fixes."],
            )
        await run_review_loop(ctx)
    else:
        raise AgentError(
            "Recovery requires user input before continuing",
            code="recovery.ask_user",
            kind=ErrorKind.EXPECTED,
            next_steps=[plan.reason],
        )
