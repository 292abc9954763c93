"""Post-run learning notes and the confidence gate that decides whether to apply them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError

from .canonical import digest
from .checkpoint import CheckpointResult, commit_files, diff_stat
from .context import RunContext
from .errors import AgentError
from .models import LearningRequest, LearningSummary, RunDocument, utc_now
from .schemas import CiState, LearningNotes
from .state_store import RunStateStore
from .steps import StepHandle, load_artifact, record_artifacts, run_step

logger = logging.getLogger(__name__)

SAFE_LEARNING_EXTENSIONS = frozenset({".md", ".mdx", ".markdown", ".txt"})
PROTECTED_PARTS = frozenset({".git"})
CONFIDENCE_WEIGHTS: dict[str, float] = {"consistency": 0.5, "ci": 0.25, "review": 0.25}


class LearningInput(BaseModel):
    task_key: str | None = None
    task_title: str | None = None
    task_provider: str | None = None
    diff_stat: str | None = None
    plan_summary: str | None = None
    implementation_summary: str | None = None
    verification_ok: bool | None = None
    review_unresolved: int | None = None
    review_actionable: int | None = None
    ci_fix_summary: str | None = None
    blocked_reason: str | None = None
    pr_url: str | None = None


class LearningApplyResult(BaseModel):
    applied_to: list[str]


@dataclass(frozen=True)
class TargetCheck:
    ok: bool
    reasons: list[str]
    resolved_targets: dict[str, Path]


@dataclass(frozen=True)
class HistoryEntry:
    run_id: str
    notes: LearningNotes
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ConsistencyResult:
    score: float
    sample_count: int
    matched_items: int
    total_items: int


@dataclass(frozen=True)
class ConfidenceResult:
    confidence: float
    threshold: float
    breakdown: dict[str, float] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


def build_learning_input(document: RunDocument, diff: str | None) -> LearningInput:
    task = document.task
    summary = document.summary
    classification = document.review.classification
    verify = document.implementation.verify
    return LearningInput(
        task_key=task.key if task is not None else None,
        task_title=task.title if task is not None else None,
        task_provider=task.provider if task is not None else None,
        diff_stat=diff or None,
        plan_summary=document.plan.summary if document.plan is not None else None,
        implementation_summary=document.implementation.summary,
        verification_ok=verify.ok if verify is not None else None,
        review_unresolved=(summary.unresolved_review_count or 0) if classification is not None else None,
        review_actionable=classification.actionable if classification is not None else None,
        ci_fix_summary=document.review.ci_fix.summary if document.review.ci_fix is not None else None,
        blocked_reason=summary.blocked_reason,
        pr_url=summary.pr_url,
    )


def build_deterministic_learning_notes(learning_input: LearningInput) -> LearningNotes:
    lines: list[str] = []
    if learning_input.diff_stat:
        lines.append(f"Changes: {learning_input.diff_stat}")
    if learning_input.verification_ok is False:
        lines.append("Verification failed at least once and was fixed.")
    if (learning_input.review_unresolved or 0) > 0:
        lines.append("Review comments were addressed.")
    if learning_input.ci_fix_summary:
        lines.append(f"CI fix: {learning_input.ci_fix_summary}")
    if learning_input.blocked_reason:
        lines.append(f"Blocked reason: {learning_input.blocked_reason}")

    docs: list[str] = []
    if learning_input.ci_fix_summary:
        docs.append("Document CI failure handling and rerun policy.")
    if learning_input.verification_ok is False:
        docs.append("Update verification documentation with common failure modes.")
    if (learning_input.review_unresolved or 0) > 0:
        docs.append("Capture review themes in team guidelines.")

    return LearningNotes(
        summary=" ".join(lines) if lines else "Run completed successfully.",
        docs=docs,
    )


def render_learning_markdown(
    run_id: str,
    learning_input: LearningInput,
    notes: LearningNotes,
    *,
    generated_at: datetime | None = None,
) -> str:
    stamp = (generated_at or utc_now()).isoformat()
    blocks = [f"# Learning notes ({run_id})", f"Generated at {stamp}"]
    if learning_input.task_key or learning_input.task_title:
        blocks.append(f"Task: {learning_input.task_key or ''} {learning_input.task_title or ''}".strip())
    if learning_input.diff_stat:
        blocks.extend(["## Diffstat", learning_input.diff_stat])
    blocks.extend(["## Summary", notes.summary])
    for heading, items in (
        ("## Rules updates", notes.rules),
        ("## Skills updates", notes.skills),
        ("## Doc updates", notes.docs),
    ):
        if items:
            blocks.append(heading)
            blocks.extend(f"- {item}" for item in items)
    return "\n\n".join(blocks) + "\n"


def apply_learning_notes(
    run_id: str,
    worktree_root: Path,
    notes: LearningNotes,
    targets: Mapping[str, str],
    *,
    timestamp: datetime | None = None,
) -> LearningApplyResult:
    """Append notes to their target files and return the absolute paths written."""
    stamp = (timestamp or utc_now()).isoformat()
    entries = []
    if targets.get("rules"):
        entries.append((targets["rules"], notes.rules, False))
    if targets.get("skills"):
        entries.append((targets["skills"], notes.skills, False))
    if targets.get("docs"):
        entries.append((targets["docs"], notes.docs, True))

    applied_to: list[str] = []
    for target, items, include_summary in entries:
        if not items and not include_summary:
            continue
        path = Path(target) if Path(target).is_absolute() else worktree_root / target
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"## {stamp} (run {run_id})"]
        if include_summary:
            lines.append(notes.summary)
        lines.extend(f"- {item}" for item in items)
        with path.open("a", encoding="utf-8") as handle:
            handle.write("\n" + "\n".join(lines) + "\n")
        applied_to.append(str(path.resolve()))
    return LearningApplyResult(applied_to=applied_to)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


def evaluate_learning_targets(targets: Mapping[str, str], worktree_root: Path) -> TargetCheck:
    """Check that every write target is a text file inside the worktree and not protected."""
    root = worktree_root.resolve()
    reasons: list[str] = []
    resolved: dict[str, Path] = {}
    for key, target in targets.items():
        if not target:
            continue
        candidate = Path(target)
        absolute = (candidate if candidate.is_absolute() else root / candidate).resolve()
        extension = absolute.suffix.lower()
        if extension and extension not in SAFE_LEARNING_EXTENSIONS:
            reasons.append(f"Unsupported learning target extension for {key}: {extension}")
        try:
            relative = absolute.relative_to(root)
        except ValueError:
            reasons.append(f"Learning target for {key} is outside repo: {target}")
        else:
            if PROTECTED_PARTS.intersection(relative.parts):
                reasons.append(f"Learning target for {key} is a protected path: {target}")
        resolved[key] = absolute
    return TargetCheck(ok=not reasons, reasons=reasons, resolved_targets=resolved)


def build_learning_consistency(
    notes: LearningNotes,
    history: list[HistoryEntry],
    min_samples: int,
) -> ConsistencyResult:
    items = [item for item in notes.all_items() if item]
    if not items:
        return ConsistencyResult(score=0.0, sample_count=len(history), matched_items=0, total_items=0)
    seen = {item.lower() for entry in history for item in entry.notes.all_items() if item}
    matched = sum(1 for item in items if item.lower() in seen)
    sample_factor = min(1.0, len(history) / min_samples) if min_samples > 0 else 1.0
    return ConsistencyResult(
        score=(matched / len(items)) * sample_factor,
        sample_count=len(history),
        matched_items=matched,
        total_items=len(items),
    )


def _ci_score(state: CiState | None) -> float:
    if state == CiState.PASSING:
        return 1.0
    if state == CiState.FAILING:
        return 0.0
    return 0.5


def _review_score(unresolved: int | None, ship_it: bool | None) -> float:
    if unresolved is not None and unresolved > 0:
        return 0.0
    if ship_it is False:
        return 0.0
    if unresolved == 0 or ship_it is True:
        return 1.0
    return 0.5


def score_learning_confidence(
    notes: LearningNotes,
    history: list[HistoryEntry],
    *,
    min_samples: int,
    threshold: float,
    ci: CiState | None = None,
    unresolved_reviews: int | None = None,
    ai_review_ship_it: bool | None = None,
) -> ConfidenceResult:
    consistency = build_learning_consistency(notes, history, min_samples)
    ci_score = _ci_score(ci)
    review_score = _review_score(unresolved_reviews, ai_review_ship_it)
    total = sum(CONFIDENCE_WEIGHTS.values())
    confidence = (
        consistency.score * CONFIDENCE_WEIGHTS["consistency"]
        + ci_score * CONFIDENCE_WEIGHTS["ci"]
        + review_score * CONFIDENCE_WEIGHTS["review"]
    ) / total
    return ConfidenceResult(
        confidence=confidence,
        threshold=threshold,
        breakdown={
            "consistency": consistency.score,
            "review": review_score,
            "ci": ci_score,
            "sample_count": float(consistency.sample_count),
            "matched_items": float(consistency.matched_items),
            "total_items": float(consistency.total_items),
        },
    )


def load_learning_history(
    store: RunStateStore,
    *,
    exclude_run_id: str | None = None,
    lookback_days: int | None = None,
    max_entries: int | None = None,
    now: datetime | None = None,
) -> list[HistoryEntry]:
    """Structured notes of other runs, newest first."""
    current = now or utc_now()
    max_age = timedelta(days=lookback_days) if lookback_days else None
    history: list[HistoryEntry] = []
    for run_id in store.list_run_ids():
        if run_id == exclude_run_id:
            continue
        try:
            document = store.read_run(run_id)
        except AgentError as exc:
            logger.warning("skipping run %s in learning history: %s", run_id, exc)
            continue
        updated_at = document.run.finished_at or document.run.updated_at
        if max_age is not None and current - updated_at > max_age:
            continue
        entry = document.artifact("learning.notes", "data")
        if entry is None:
            continue
        try:
            notes = LearningNotes.model_validate(store.read_artifact(entry))
        except (FileNotFoundError, ValueError, ValidationError) as exc:
            logger.warning("skipping unreadable learning notes of run %s: %s", run_id, exc)
            continue
        history.append(HistoryEntry(run_id=run_id, notes=notes, updated_at=updated_at))
    history.sort(key=lambda item: item.updated_at or datetime.min.replace(tzinfo=current.tzinfo), reverse=True)
    if max_entries is not None:
        return history[:max_entries]
    return history


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


async def _generate_notes(ctx: RunContext, learning_input: LearningInput) -> LearningNotes:
    document = ctx.read_state()
    if document.step_done("learning.notes"):
        recorded = load_artifact(ctx, "learning.notes", "data", document=document)
        if recorded is not None:
            return LearningNotes.model_validate(recorded)

    async def _notes(_: StepHandle) -> LearningNotes:
        if not ctx.config.learning.ai_enabled:
            return build_deterministic_learning_notes(learning_input)
        return await ctx.invoke_cognition("learning_notes", learning_input.model_dump(), LearningNotes)

    return await run_step(
        ctx,
        "learning.notes",
        "Generate learning notes",
        _notes,
        inputs={"digest": digest(learning_input)},
        artifacts=lambda result: {"data": result},
    )


async def _apply_and_commit(
    ctx: RunContext,
    step_id: str,
    title: str,
    notes: LearningNotes,
    targets: dict[str, str],
) -> tuple[LearningApplyResult, CheckpointResult]:
    async def _apply(_: StepHandle) -> LearningApplyResult:
        return apply_learning_notes(ctx.run_id, ctx.worktree_root, notes, targets)

    result = await run_step(ctx, step_id, title, _apply, artifacts=lambda value: {"result": value})
    commit = await commit_files(ctx, result.applied_to, f"apply learnings ({ctx.run_id})")
    return result, commit


async def run_learning_notes(ctx: RunContext, *, allow_apply: bool | None = None) -> LearningSummary | None:
    """Generate learning notes and route them through the confidence gate."""
    config = ctx.config.learning
    if not config.enabled:
        return None
    if allow_apply is None:
        allow_apply = ctx.options.apply and not ctx.options.dry_run

    document = ctx.read_state()
    learning_input = build_learning_input(document, await diff_stat(ctx, ctx.config.github.base_branch))
    notes = await _generate_notes(ctx, learning_input)

    if document.artifact("learning.notes", "notes") is None:
        record_artifacts(ctx, "learning.notes", {"notes": render_learning_markdown(ctx.run_id, learning_input, notes)})

    targets = config.targets.as_dict()
    target_check = evaluate_learning_targets(targets, ctx.worktree_root)
    auto_apply = config.auto_apply

    def _summarize(**extra: Any) -> LearningSummary:
        summary = LearningSummary(
            summary=notes.summary,
            rules=len(notes.rules),
            skills=len(notes.skills),
            docs=len(notes.docs),
            mode=config.mode,
            **extra,
        )

        def _apply(doc: RunDocument) -> None:
            doc.learning = summary

        ctx.update_state(_apply)
        return summary

    def _request(status: str, confidence: float, threshold: float, reason: str, **extra: Any) -> LearningRequest:
        request = LearningRequest(
            id=ctx.run_id,
            run_id=ctx.run_id,
            status=status,
            summary=notes.summary,
            confidence=confidence,
            threshold=threshold,
            notes=notes,
            targets=targets,
            reason=reason,
            **extra,
        )
        ctx.store.write_learning_request(request)
        return request

    if not notes.all_items():
        return _summarize(status="skipped", reason="no_items")

    confidence_result: ConfidenceResult | None = None
    if auto_apply.enabled or config.mode == "auto":
        summary = document.summary
        confidence_result = score_learning_confidence(
            notes,
            load_learning_history(
                ctx.store,
                exclude_run_id=ctx.run_id,
                lookback_days=auto_apply.lookback_days,
                max_entries=auto_apply.max_history,
            ),
            min_samples=auto_apply.min_samples,
            threshold=auto_apply.threshold,
            ci=summary.ci,
            unresolved_reviews=summary.unresolved_review_count,
            ai_review_ship_it=document.ai_review_ship_it,
        )
    threshold = confidence_result.threshold if confidence_result is not None else auto_apply.threshold
    breakdown = confidence_result.breakdown if confidence_result is not None else None

    if config.mode == "apply":
        confidence = confidence_result.confidence if confidence_result is not None else 0.0
        blocked = None
        if not allow_apply:
            blocked = "apply_disabled"
        elif not target_check.ok:
            blocked = f"unsafe_targets: {'; '.join(target_check.reasons)}"
        if blocked is not None:
            _request("pending", confidence, threshold, blocked)
            return _summarize(status="pending", confidence=confidence, threshold=threshold, reason=blocked)
        if document.step_done("learning.apply"):
            return _summarize(status="applied", auto_applied=True)
        result, commit = await _apply_and_commit(ctx, "learning.apply", "Apply learning updates", notes, targets)
        applied_at = utc_now()
        _request(
            "applied",
            confidence_result.confidence if confidence_result is not None else 1.0,
            threshold,
            "mode_apply",
            updated_at=applied_at,
            applied_at=applied_at,
            applied_to=result.applied_to,
            commit_sha=commit.sha,
        )
        return _summarize(
            status="applied",
            applied_to=result.applied_to,
            applied_at=applied_at,
            commit_sha=commit.sha,
            auto_applied=True,
        )

    if config.mode != "auto":
        return _summarize(status="recorded")

    confidence = confidence_result.confidence if confidence_result is not None else 0.0
    if not allow_apply:
        blocked_reason: str | None = "apply_disabled"
    elif not target_check.ok:
        blocked_reason = f"unsafe_targets: {'; '.join(target_check.reasons)}"
    elif confidence < threshold:
        blocked_reason = "below_threshold"
    else:
        blocked_reason = None

    if blocked_reason is not None:
        _request("pending", confidence, threshold, blocked_reason)
        logger.info(
            "learning notes for run %s queued (%s, confidence %.2f, threshold %.2f)",
            ctx.run_id,
            blocked_reason,
            confidence,
            threshold,
        )
        return _summarize(
            status="pending",
            confidence=confidence,
            threshold=threshold,
            reason=blocked_reason,
            breakdown=breakdown,
        )

    if document.step_done("learning.auto_apply"):
        return _summarize(
            status="applied",
            confidence=confidence,
            threshold=threshold,
            auto_applied=True,
            breakdown=breakdown,
        )

    result, commit = await _apply_and_commit(
        ctx, "learning.auto_apply", "Auto-apply learning updates", notes, targets
    )
    applied_at = utc_now()
    _request(
        "applied",
        confidence,
        threshold,
        "auto_apply",
        updated_at=applied_at,
        applied_at=applied_at,
        applied_to=result.applied_to,
        commit_sha=commit.sha,
    )
    logger.info("learning notes for run %s auto-applied to %s", ctx.run_id, result.applied_to)
    return _summarize(
        status="applied",
        applied_to=result.applied_to,
        applied_at=applied_at,
        commit_sha=commit.sha,
        auto_applied=True,
        confidence=confidence,
        threshold=threshold,
        breakdown=breakdown,
    )
