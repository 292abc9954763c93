import asyncio
from pathlib import Path

import pytest

from change_agent.errors import AgentError, RunBlockedError
from change_agent.models import Phase, RunDocument
from change_agent.pipeline import GITHUB_UNCONFIGURED, run_implementation, run_planner
from change_agent.schemas import CiState, Plan, PlanQuestion, PlanStep, PrDraft
from change_agent.settings import ControllerConfig, GithubConfig

from fakes import (
    PR,
    FakeCognition,
    FakeExecutor,
    FakeReviewProvider,
    FakeTaskTracker,
    FakeVcs,
    make_collaborators,
    make_context,
)

PLAN = Plan(summary="Add a widget endpoint", steps=[PlanStep(id="s1", title="Add route")])
QUESTION_PLAN = Plan(
    summary="Add a widget endpoint",
    steps=[PlanStep(id="s1", title="Add route")],
    questions=[PlanQuestion(id="q1", text="Which HTTP verb?")],
)


def _with_plan(ctx) -> None:
    def _store(document: RunDocument) -> None:
        document.plan = PLAN

    ctx.update_state(_store)


def test_planner_persists_plan_and_digest(tmp_path: Path) -> None:
    cognition = FakeCognition({"plan": PLAN})
    ctx, _ = make_context(tmp_path, collaborators=make_collaborators(cognition=cognition))

    plan = asyncio.run(run_planner(ctx))

    document = ctx.read_state()
    assert plan == PLAN
    assert document.plan == PLAN
    assert document.summary.plan_digest is not None
    assert document.run.phase == Phase.PLAN


def test_planner_stops_for_unanswered_questions_then_reuses_plan(tmp_path: Path) -> None:
    cognition = FakeCognition({"plan": QUESTION_PLAN})
    ctx, _ = make_context(tmp_path, collaborators=make_collaborators(cognition=cognition))

    with pytest.raises(AgentError) as excinfo:
        asyncio.run(run_planner(ctx))
    assert excinfo.value.code == "task.clarifications_required"
    assert excinfo.value.exit_code == 0
    assert excinfo.value.next_steps == ["Answer: Which HTTP verb?"]

    def _answer(document: RunDocument) -> None:
        document.clarifications["q1"] = "POST"

    ctx.update_state(_answer)
    asyncio.run(run_planner(ctx))
    assert cognition.tasks() == ["plan"]


def test_implementation_without_code_hosting_completes(tmp_path: Path) -> None:
    tasks = FakeTaskTracker()
    vcs = FakeVcs(dirty=True)
    ctx, events = make_context(tmp_path, collaborators=make_collaborators(vcs=vcs, tasks=tasks))
    _with_plan(ctx)

    assert asyncio.run(run_implementation(ctx)) is False

    document = ctx.read_state()
    assert document.run.phase == Phase.COMPLETE
    assert document.summary.blocked_reason == GITHUB_UNCONFIGURED
    assert document.implementation.summary == "Applied the plan."
    assert document.checkpoints == ["commit001"]
    assert tasks.moves == [("in_progress", "T-1")]
    phases = [event.payload["to"] for event in events if event.type == "run.phase_changed"]
    assert phases == ["implement", "verify", "pr", "complete"]


def test_implementation_opens_pull_request_and_requests_review(tmp_path: Path) -> None:
    provider = FakeReviewProvider()
    tasks = FakeTaskTracker()
    cognition = FakeCognition({"pr_draft": PrDraft(title="Add widget endpoint", body="Adds POST /widgets.")})
    config = ControllerConfig(github=GithubConfig(reviewers=("alice",)))
    ctx, _ = make_context(
        tmp_path,
        config=config,
        collaborators=make_collaborators(cognition=cognition, review=provider, tasks=tasks),
    )
    _with_plan(ctx)

    assert asyncio.run(run_implementation(ctx)) is True

    document = ctx.read_state()
    assert document.pr.pr == PR
    assert document.pr.draft_title == "Add widget endpoint"
    assert document.summary.pr_url == PR.url
    assert document.summary.ci == CiState.PASSING
    assert provider.opened == [{"branch": "feature/widgets", "base": "main", "title": "Add widget endpoint"}]
    assert provider.review_requests == [(("alice",), False)]
    assert tasks.moves == [("in_progress", "T-1"), ("comment", PR.url), ("in_review", "T-1")]
    assert document.review.request is not None and document.review.request.reviewers == ["alice"]


def test_resumed_implementation_skips_completed_steps(tmp_path: Path) -> None:
    executor = FakeExecutor()
    provider = FakeReviewProvider()
    tasks = FakeTaskTracker()
    cognition = FakeCognition({"pr_draft": PrDraft(title="Add widget endpoint", body="Body")})
    ctx, _ = make_context(
        tmp_path,
        collaborators=make_collaborators(cognition=cognition, executor=executor, review=provider, tasks=tasks),
    )
    _with_plan(ctx)

    asyncio.run(run_implementation(ctx))
    asyncio.run(run_implementation(ctx))

    assert len(executor.calls) == 1
    assert len(provider.opened) == 1
    assert provider.polls == 1
    assert tasks.moves.count(("in_progress", "T-1")) == 1
    assert cognition.tasks() == ["pr_draft"]


def test_failing_initial_ci_blocks_before_review(tmp_path: Path) -> None:
    provider = FakeReviewProvider(ci_states=[CiState.FAILING])
    cognition = FakeCognition({"pr_draft": PrDraft(title="Add widget endpoint", body="Body")})
    ctx, _ = make_context(tmp_path, collaborators=make_collaborators(cognition=cognition, review=provider))
    _with_plan(ctx)

    with pytest.raises(RunBlockedError) as excinfo:
        asyncio.run(run_implementation(ctx))

    assert excinfo.value.code == "ci.failed_before_review"
    assert ctx.read_state().summary.blocked_reason == "CI failed before review request"
    assert provider.review_requests == []


def test_pull_request_needs_a_branch(tmp_path: Path) -> None:
    cognition = FakeCognition({"pr_draft": PrDraft(title="Add widget endpoint", body="Body")})
    ctx, _ = make_context(
        tmp_path,
        branch=None,
        collaborators=make_collaborators(cognition=cognition, review=FakeReviewProvider()),
    )
    _with_plan(ctx)

    with pytest.raises(AgentError) as excinfo:
        asyncio.run(run_implementation(ctx))
    assert excinfo.value.code == "git.no_branch"


def test_implementation_requires_plan(tmp_path: Path) -> None:
    ctx, _ = make_context(tmp_path)
    with pytest.raises(AgentError) as excinfo:
        asyncio.run(run_implementation(ctx))
    assert excinfo.value.code == "plan.missing"
