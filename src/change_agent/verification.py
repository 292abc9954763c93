"""Verification phase: run checks, triage failures and attempt bounded auto-fixes."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .canonical import digest
from .checkpoint import diff_stat
from .context import RunContext
from .errors import RunBlockedError
from .models import (
    Phase,
    RunDocument,
    VerificationAssistSummary,
    VerificationAutoFixSummary,
    VerificationContext,
    VerificationDecisionSummary,
    VerifySummary,
)
from .phases import change_phase
from .schemas import (
    Plan,
    VerificationAssist,
    VerificationDecision,
    VerifyCommandResult,
    VerifyReport,
)
from .settings import VerifyCommand
from .steps import StepHandle, run_step

logger = logging.getLogger(__name__)

KNOWN_FAILURE_TAGS: tuple[str, ...] = ("lint", "test", "type", "check", "build")
TRIAGE_RATIONALE = "Rerun the failed verification commands to diagnose issues."

_BLOCKED_PREFIX: dict[str, str] = {
    "verify": "Verification failed.",
    "review": "Verification failed during review.",
    "ci_fix": "Verification failed during CI fix.",
    "recovery": "Verification failed during recovery.",
}


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class SubprocessVerificationRunner:
    """Runs the configured verification commands as subprocesses."""

    def __init__(self, commands: Sequence[VerifyCommand], *, fail_fast: bool = False) -> None:
        self.commands = tuple(commands)
        self.fail_fast = fail_fast

    async def run(self, names: Sequence[str] | None, cwd: Path) -> VerifyReport:
        wanted = set(names) if names is not None else None
        selected = [command for command in self.commands if wanted is None or command.name in wanted]
        results: list[VerifyCommandResult] = []
        for command in selected:
            result = await self._run_one(command, cwd)
            results.append(result)
            if result.exit_code != 0 and self.fail_fast:
                logger.info("verification %s failed; stopping (fail-fast)", command.name)
                break
        ok = all(result.exit_code == 0 for result in results)
        return VerifyReport(ok=ok, results=results)

    async def _run_one(self, command: VerifyCommand, cwd: Path) -> VerifyCommandResult:
        argv = shlex.split(command.cmd)
        logger.info("verification %s: %s", command.name, command.cmd)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            return VerifyCommandResult(name=command.name, exit_code=127, stderr=str(exc))
        stdout, stderr = await process.communicate()
        return VerifyCommandResult(
            name=command.name,
            exit_code=process.returncode if process.returncode is not None else 1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


# ---------------------------------------------------------------------------
# Triage and auto-fix decision
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TriageResult:
    classified: bool
    decision: VerificationDecision


@dataclass(frozen=True)
class AutoFixDecision:
    attempt: bool
    reason: str | None = None


@dataclass(frozen=True)
class AutoFixOutcome:
    resolved: bool
    report: VerifyReport | None = None


def triage_verification_failures(failures: Sequence[VerifyCommandResult]) -> TriageResult:
    """Classify failures by name; only recognized failures skip the human."""
    failed = [result for result in failures if result.exit_code != 0]
    classified = all(
        any(tag in result.name.lower() for tag in KNOWN_FAILURE_TAGS) for result in failed
    )
    decision = VerificationDecision(
        commands=[result.name for result in failed],
        rationale=TRIAGE_RATIONALE,
        ask_user=not classified,
    )
    return TriageResult(classified=classified, decision=decision)


def should_attempt_verification_auto_fix(
    *,
    enabled: bool,
    max_attempts: int,
    attempts: int,
    classified: bool,
    apply: bool,
    dry_run: bool,
) -> AutoFixDecision:
    if not enabled:
        return AutoFixDecision(attempt=False, reason="disabled")
    if dry_run:
        return AutoFixDecision(attempt=False, reason="dry_run")
    if not apply:
        return AutoFixDecision(attempt=False, reason="apply_disabled")
    if attempts >= max_attempts:
        return AutoFixDecision(attempt=False, reason="max_attempts")
    if not classified:
        return AutoFixDecision(attempt=False, reason="unclassified")
    return AutoFixDecision(attempt=True)


def format_verification_blocked_reason(context: VerificationContext, summary: str | None = None) -> str:
    prefix = _BLOCKED_PREFIX[context]
    return f"{prefix} {summary}" if summary else prefix


def _failure_payload(ctx: RunContext, failures: Sequence[VerifyCommandResult]) -> list[dict[str, object]]:
    lookup = ctx.config.verify.command_lookup()
    payload: list[dict[str, object]] = []
    for failure in failures:
        item: dict[str, object] = {
            "name": failure.name,
            "exit_code": failure.exit_code,
            "stderr": failure.stderr[-4000:],
        }
        if failure.name in lookup:
            item["command"] = lookup[failure.name]
        payload.append(item)
    return payload


# ---------------------------------------------------------------------------
# Assist
# ---------------------------------------------------------------------------


async def record_verification_assist(
    ctx: RunContext,
    report: VerifyReport,
    context: VerificationContext,
) -> VerificationAssist | None:
    """Ask cognition for a recovery hint and surface it on the run.

    The hint is advisory: when cognition fails the run continues without it.
    """
    if report.ok:
        return None
    failures = report.failures()
    if not failures:
        return None
    try:
        assist = await ctx.invoke_cognition(
            "verification_assist",
            {"failures": _failure_payload(ctx, failures)},
            VerificationAssist,
        )
    except Exception:
        logger.warning("verification assist unavailable for run %s", ctx.run_id, exc_info=True)
        return None

    commands = [failure.name for failure in failures]

    def _record(document: RunDocument) -> None:
        document.implementation.assist = VerificationAssistSummary(
            context=context,
            commands=commands,
            summary=assist.summary,
            steps=list(assist.steps),
        )
        if not document.summary.blocked_reason:
            document.summary.blocked_reason = format_verification_blocked_reason(context, assist.summary)

    ctx.update_state(_record)
    return assist


# ---------------------------------------------------------------------------
# Auto-fix loop
# ---------------------------------------------------------------------------


def _record_auto_fix(ctx: RunContext, summary: VerificationAutoFixSummary) -> None:
    def _apply(document: RunDocument) -> None:
        document.implementation.auto_fix = summary

    ctx.update_state(_apply)


async def attempt_verification_auto_fix(
    ctx: RunContext,
    failures: Sequence[VerifyCommandResult],
    classified: bool,
    context: VerificationContext,
) -> AutoFixOutcome:
    """Plan, apply and re-verify one automated fix attempt.

    The attempt counter and outcome are persisted whatever happens, so the
    next attempt and the caller's triage see the full history.
    """
    auto_fix = ctx.config.verify.auto_fix
    previous = ctx.read_state().implementation.auto_fix
    attempts = previous.attempts if previous is not None else 0
    decision = should_attempt_verification_auto_fix(
        enabled=auto_fix.enabled,
        max_attempts=auto_fix.max_attempts,
        attempts=attempts,
        classified=classified,
        apply=ctx.options.apply,
        dry_run=ctx.options.dry_run,
    )

    if not decision.attempt or not failures:
        _record_auto_fix(
            ctx,
            VerificationAutoFixSummary(
                context=context,
                attempts=attempts,
                max_attempts=auto_fix.max_attempts,
                status="skipped",
                reason="no_failures" if not failures else decision.reason,
            ),
        )
        logger.info("verification auto-fix skipped: %s", "no_failures" if not failures else decision.reason)
        return AutoFixOutcome(resolved=False)

    next_attempt = attempts + 1
    failure_payload = _failure_payload(ctx, failures)

    async def _plan(_: StepHandle) -> Plan:
        return await ctx.invoke_cognition("verification_autofix_plan", {"failures": failure_payload}, Plan)

    try:
        fix_plan = await run_step(
            ctx,
            "verify.autofix.plan",
            "Plan verification fixes",
            _plan,
            inputs={"failures": [failure.name for failure in failures]},
            artifacts=lambda result: {"plan": result},
        )
    except Exception:
        logger.warning("verification auto-fix planning failed for run %s", ctx.run_id, exc_info=True)
        _record_auto_fix(
            ctx,
            VerificationAutoFixSummary(
                context=context,
                attempts=next_attempt,
                max_attempts=auto_fix.max_attempts,
                status="failed",
                reason="plan_failed",
            ),
        )
        return AutoFixOutcome(resolved=False)

    _record_auto_fix(
        ctx,
        VerificationAutoFixSummary(
            context=context,
            attempts=next_attempt,
            max_attempts=auto_fix.max_attempts,
            status="planned",
            plan_summary=fix_plan.summary,
            plan_steps=len(fix_plan.steps),
        ),
    )

    diff_before = await diff_stat(ctx)
    plan_digest = digest(fix_plan)

    async def _apply(handle: StepHandle) -> str:
        await handle.heartbeat()
        return await ctx.collaborators.executor.execute(
            "Follow the plan step-by-step to fix the failing verification commands. "
            "Keep changes minimal and return a brief summary of changes.",
            context={"plan": fix_plan, "plan_digest": plan_digest, "failures": failure_payload},
        )

    try:
        fix_summary = await run_step(
            ctx,
            "verify.autofix.apply",
            "Apply verification fixes",
            _apply,
            inputs={"plan_digest": plan_digest},
            artifacts=lambda result: {"summary": result},
        )
    except Exception:
        logger.warning("verification auto-fix failed to apply for run %s", ctx.run_id, exc_info=True)
        _record_auto_fix(
            ctx,
            VerificationAutoFixSummary(
                context=context,
                attempts=next_attempt,
                max_attempts=auto_fix.max_attempts,
                status="failed",
                reason="apply_failed",
            ),
        )
        return AutoFixOutcome(resolved=False)

    diff_after = await diff_stat(ctx)
    logger.info(
        "verification auto-fix diff (before):\n%s\nafter:\n%s",
        diff_before or "No changes detected.",
        diff_after or "No changes detected.",
    )
    applied = VerificationAutoFixSummary(
        context=context,
        attempts=next_attempt,
        max_attempts=auto_fix.max_attempts,
        status="applied",
        plan_summary=fix_plan.summary,
        plan_steps=len(fix_plan.steps),
        fix_summary=fix_summary or None,
        diff_before=diff_before or None,
        diff_after=diff_after or None,
    )
    _record_auto_fix(ctx, applied)

    async def _verify(_: StepHandle) -> VerifyReport:
        return await ctx.collaborators.verifier.run(None, ctx.worktree_root)

    report = await run_step(
        ctx,
        "verify.autofix.verify",
        "Re-run verification",
        _verify,
        artifacts=lambda result: {"report": result},
    )

    def _finish(document: RunDocument) -> None:
        if report.ok:
            document.summary.blocked_reason = None
        document.implementation.verify = VerifySummary(ok=report.ok)
        document.implementation.auto_fix = applied.model_copy(
            update={"status": "succeeded" if report.ok else "failed", "verification_ok": report.ok}
        )

    ctx.update_state(_finish)
    return AutoFixOutcome(resolved=report.ok, report=report)


# ---------------------------------------------------------------------------
# Verify phase
# ---------------------------------------------------------------------------


async def run_verification(ctx: RunContext) -> VerifyReport:
    """Run the verify phase; raise ``RunBlockedError`` when failures remain."""
    change_phase(ctx, Phase.VERIFY)
    document = ctx.read_state()
    summary = document.implementation.verify

    if document.step_done("verify.run") and summary is not None and summary.ok:
        report = VerifyReport(ok=True)
    else:

        async def _run(_: StepHandle) -> VerifyReport:
            return await ctx.collaborators.verifier.run(None, ctx.worktree_root)

        report = await run_step(
            ctx,
            "verify.run",
            "Run verification",
            _run,
            artifacts=lambda result: {"report": result},
        )

    def _summarize(doc: RunDocument) -> None:
        doc.implementation.verify = VerifySummary(ok=report.ok)

    ctx.update_state(_summarize)
    if report.ok:
        return report

    await record_verification_assist(ctx, report, "verify")
    failures = report.failures()
    triage = triage_verification_failures(failures)
    outcome = await attempt_verification_auto_fix(ctx, failures, triage.classified, "verify")
    if outcome.report is not None:
        report = outcome.report
        if not report.ok:
            failures = report.failures()
            triage = triage_verification_failures(failures)
            await record_verification_assist(ctx, report, "verify")
    if outcome.resolved:
        return report

    failure_payload = _failure_payload(ctx, failures)

    async def _decide(_: StepHandle) -> VerificationDecision:
        if ctx.options.apply and not triage.classified:
            return await ctx.invoke_cognition(
                "verification_decision",
                {"ok": report.ok, "failures": failure_payload},
                VerificationDecision,
            )
        return triage.decision

    decision = await run_step(
        ctx,
        "verify.decide",
        "Decide verification next steps",
        _decide,
        inputs={"classified": triage.classified, "command_count": len(failures)},
        artifacts=lambda result: {"decision": result},
    )

    def _decided(doc: RunDocument) -> None:
        doc.implementation.decision = VerificationDecisionSummary(
            commands=list(decision.commands),
            ask_user=decision.ask_user,
        )
        if not doc.summary.blocked_reason:
            doc.summary.blocked_reason = format_verification_blocked_reason("verify")

    ctx.update_state(_decided)
    raise RunBlockedError(
        "Verification failed",
        code="verify.failed",
        next_steps=[f"Rerun: {name}" for name in decision.commands] or None,
    )
