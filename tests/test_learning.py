import asyncio
from pathlib import Path

from change_agent.learning import (
    HistoryEntry,
    LearningInput,
    build_deterministic_learning_notes,
    evaluate_learning_targets,
    load_learning_history,
    render_learning_markdown,
    run_learning_notes,
    score_learning_confidence,
)
from change_agent.schemas import CiState, LearningNotes
from change_agent.settings import AutoApplyConfig, ControllerConfig, LearningConfig, LearningTargets, RunOptions

from fakes import FakeCognition, FakeVcs, make_collaborators, make_context

NOTES = LearningNotes(
    summary="Lint failed twice before the fix landed.",
    rules=["Run ruff before committing."],
    docs=["Document the lint configuration."],
)
TARGETS = LearningTargets(rules="docs/RULES.md", docs="docs/LEARNINGS.md")


def _learning_config(mode: str, **auto_apply) -> ControllerConfig:
    return ControllerConfig(
        learning=LearningConfig(
            enabled=True,
            mode=mode,
            ai_enabled=True,
            targets=TARGETS,
            auto_apply=AutoApplyConfig(**auto_apply),
        )
    )


def test_deterministic_notes_default_summary() -> None:
    notes = build_deterministic_learning_notes(LearningInput())
    assert notes.summary == "Run completed successfully."
    assert notes.all_items() == []


def test_deterministic_notes_capture_ci_fix_and_verification() -> None:
    notes = build_deterministic_learning_notes(
        LearningInput(verification_ok=False, ci_fix_summary="Pin node version", diff_stat="2 files changed")
    )
    assert notes.summary.startswith("Changes: 2 files changed")
    assert "Document CI failure handling and rerun policy." in notes.docs
    assert "Update verification documentation with common failure modes." in notes.docs


def test_markdown_lists_each_section() -> None:
    text = render_learning_markdown("run-1", LearningInput(task_key="T-1", task_title="Add widgets"), NOTES)
    assert text.startswith("# Learning notes (run-1)")
    assert "Task: T-1 Add widgets" in text
    assert "## Rules updates\n\n- Run ruff before committing." in text
    assert "## Skills updates" not in text


def test_target_safety(tmp_path: Path) -> None:
    assert evaluate_learning_targets({"docs": "docs/LEARNINGS.md"}, tmp_path).ok

    check = evaluate_learning_targets(
        {"rules": ".git/info/RULES.md", "skills": "src/skills.py", "docs": "../elsewhere.md"},
        tmp_path,
    )
    assert not check.ok
    assert any("protected path" in reason for reason in check.reasons)
    assert "Unsupported learning target extension for skills: .py" in check.reasons
    assert any("outside repo" in reason for reason in check.reasons)


def test_confidence_rewards_consistent_history_and_green_signals() -> None:
    history = [HistoryEntry(run_id="run-0", notes=NOTES)]
    result = score_learning_confidence(
        NOTES, history, min_samples=1, threshold=0.7, ci=CiState.PASSING, unresolved_reviews=0
    )
    assert result.confidence == 1.0
    assert result.breakdown["matched_items"] == 2.0


def test_confidence_penalizes_failing_ci_and_open_reviews() -> None:
    result = score_learning_confidence(
        NOTES, [], min_samples=3, threshold=0.7, ci=CiState.FAILING, unresolved_reviews=2
    )
    assert result.confidence == 0.0
    assert result.breakdown["consistency"] == 0.0


def test_sparse_history_scales_consistency_down() -> None:
    history = [HistoryEntry(run_id="run-0", notes=NOTES)]
    result = score_learning_confidence(NOTES, history, min_samples=4, threshold=0.7)
    assert result.breakdown["consistency"] == 0.25
    assert result.confidence == 0.25 * 0.5 + 0.5 * 0.25 + 0.5 * 0.25


def test_auto_mode_below_threshold_queues_request_without_commit(tmp_path: Path) -> None:
    vcs = FakeVcs(dirty=True)
    ctx, _ = make_context(
        tmp_path,
        config=_learning_config("auto", threshold=0.6),
        options=RunOptions(apply=True),
        collaborators=make_collaborators(cognition=FakeCognition({"learning_notes": NOTES}), vcs=vcs),
    )

    summary = asyncio.run(run_learning_notes(ctx))

    assert summary is not None
    assert summary.status == "pending"
    assert summary.reason == "below_threshold"
    assert summary.confidence is not None and summary.confidence < 0.6
    assert summary.breakdown is not None and "consistency" in summary.breakdown
    assert vcs.commits == []
    assert not (tmp_path / "repo" / "docs" / "LEARNINGS.md").exists()
    request = ctx.store.read_learning_request("run-1")
    assert request is not None and request.status == "pending"
    assert ctx.read_state().learning == summary


def test_apply_mode_writes_targets_and_commits_them(tmp_path: Path) -> None:
    vcs = FakeVcs(dirty=True)
    ctx, _ = make_context(
        tmp_path,
        config=_learning_config("apply"),
        options=RunOptions(apply=True),
        collaborators=make_collaborators(cognition=FakeCognition({"learning_notes": NOTES}), vcs=vcs),
    )

    summary = asyncio.run(run_learning_notes(ctx))

    assert summary is not None and summary.status == "applied"
    assert summary.commit_sha == "commit001"
    learnings = (tmp_path / "repo" / "docs" / "LEARNINGS.md").read_text(encoding="utf-8")
    assert "Lint failed twice before the fix landed." in learnings
    assert "- Document the lint configuration." in learnings
    assert "- Run ruff before committing." in (tmp_path / "repo" / "docs" / "RULES.md").read_text(encoding="utf-8")
    assert vcs.commits[0][:3] == ["commit", "-m", "apply learnings (run-1)"]
    request = ctx.store.read_learning_request("run-1")
    assert request is not None and request.status == "applied" and request.reason == "mode_apply"


def test_apply_mode_without_apply_flag_stays_pending(tmp_path: Path) -> None:
    ctx, _ = make_context(
        tmp_path,
        config=_learning_config("apply"),
        collaborators=make_collaborators(cognition=FakeCognition({"learning_notes": NOTES})),
    )

    summary = asyncio.run(run_learning_notes(ctx))

    assert summary is not None
    assert (summary.status, summary.reason) == ("pending", "apply_disabled")


def test_off_mode_only_records_notes(tmp_path: Path) -> None:
    ctx, _ = make_context(
        tmp_path,
        config=_learning_config("off"),
        options=RunOptions(apply=True),
        collaborators=make_collaborators(cognition=FakeCognition({"learning_notes": NOTES})),
    )

    summary = asyncio.run(run_learning_notes(ctx))

    assert summary is not None and summary.status == "recorded"
    document = ctx.read_state()
    assert document.artifact("learning.notes", "notes") is not None
    assert document.artifact("learning.notes", "data") is not None


def test_notes_without_items_are_skipped(tmp_path: Path) -> None:
    config = ControllerConfig(learning=LearningConfig(enabled=True, mode="auto"))
    ctx, _ = make_context(tmp_path, config=config, options=RunOptions(apply=True))

    summary = asyncio.run(run_learning_notes(ctx))

    assert summary is not None
    assert (summary.status, summary.reason) == ("skipped", "no_items")


def test_learning_disabled_returns_none(tmp_path: Path) -> None:
    ctx, _ = make_context(tmp_path)
    assert asyncio.run(run_learning_notes(ctx)) is None


def test_history_excludes_current_run_and_reads_notes(tmp_path: Path) -> None:
    ctx, _ = make_context(
        tmp_path,
        config=_learning_config("off"),
        collaborators=make_collaborators(cognition=FakeCognition({"learning_notes": NOTES})),
    )
    asyncio.run(run_learning_notes(ctx))
    ctx.store.create_run("run-2")

    history = load_learning_history(ctx.store, exclude_run_id="run-2")

    assert [entry.run_id for entry in history] == ["run-1"]
    assert history[0].notes == NOTES
    assert load_learning_history(ctx.store, exclude_run_id="run-1") == []
