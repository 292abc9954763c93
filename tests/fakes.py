"""In-memory collaborators for driving the controller in tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

from pydantic import BaseModel

from change_agent.context import Collaborators, RunContext
from change_agent.events import EventBus, EventEnvelope
from change_agent.schemas import (
    CiResult,
    CiState,
    CommandResult,
    PullRequestRef,
    ReviewComment,
    ReviewThreadDetail,
    Task,
    UnresolvedReview,
    VerifyCommandResult,
    VerifyReport,
)
from change_agent.settings import ControllerConfig, RunOptions
from change_agent.state_store import RunStateStore

PR = PullRequestRef(owner="acme", repo="widgets", number=7, url="https://example.test/acme/widgets/pull/7")


class FakeCognition:
    """Returns canned responses per task; a list is consumed one item per call."""

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def invoke(self, task: str, context: dict[str, Any], schema: type[BaseModel]) -> Any:
        self.calls.append((task, context))
        if task not in self.responses:
            raise RuntimeError(f"no canned response for cognition task {task}")
        value = self.responses[task]
        if isinstance(value, list):
            value = value.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    def tasks(self) -> list[str]:
        return [task for task, _ in self.calls]


class FakeVcs:
    """Minimal git: ``dirty`` decides whether anything is staged; each commit moves HEAD."""

    def __init__(self, *, head: str = "base000", dirty: bool = False, diff_stat: str = " 1 file changed") -> None:
        self.head = head
        self.dirty = dirty
        self.diff_stat = diff_stat
        self.calls: list[list[str]] = []
        self.commits: list[list[str]] = []

    async def run(self, args: Sequence[str], cwd: Path) -> CommandResult:
        argv = list(args)
        self.calls.append(argv)
        if argv[:2] == ["rev-parse", "HEAD"]:
            return CommandResult(stdout=f"{self.head}\n", exit_code=0)
        if argv[:3] == ["diff", "--cached", "--quiet"]:
            return CommandResult(exit_code=1 if self.dirty else 0)
        if argv[:2] == ["diff", "--stat"]:
            return CommandResult(stdout=self.diff_stat, exit_code=0)
        if argv[0] == "commit":
            self.commits.append(argv)
            self.dirty = False
            self.head = f"commit{len(self.commits):03d}"
            return CommandResult(exit_code=0)
        return CommandResult(exit_code=0)

    def commands(self, name: str) -> list[list[str]]:
        return [call for call in self.calls if call and call[0] == name]


class FakeVerifier:
    """Replays reports in order and keeps returning the last one."""

    def __init__(self, *reports: VerifyReport) -> None:
        self.reports = list(reports) or [VerifyReport(ok=True)]
        self.calls = 0

    async def run(self, names: Sequence[str] | None, cwd: Path) -> VerifyReport:
        self.calls += 1
        if len(self.reports) > 1:
            return self.reports.pop(0)
        return self.reports[0]


class FakeExecutor:
    def __init__(self, summary: str = "Applied the plan.") -> None:
        self.summary = summary
        self.calls: list[dict[str, Any]] = []

    async def execute(self, prompt: str, *, context: dict[str, Any]) -> str:
        self.calls.append(context)
        return self.summary


class FakeReviewProvider:
    """CI states and review rounds are consumed in order; the last one repeats."""

    def __init__(
        self,
        *,
        ci_states: Sequence[CiState] = (CiState.PASSING,),
        reviews: Sequence[Sequence[ReviewComment]] = ((),),
        threads: dict[str, ReviewThreadDetail] | None = None,
        failing_resolves: Sequence[str] = (),
    ) -> None:
        self.ci_states = list(ci_states)
        self.reviews = [list(comments) for comments in reviews]
        self.threads = dict(threads or {})
        self.failing_resolves = set(failing_resolves)
        self.opened: list[dict[str, str]] = []
        self.resolved: list[str] = []
        self.replies: list[tuple[int, str]] = []
        self.review_requests: list[tuple[tuple[str, ...], bool]] = []
        self.polls = 0

    async def open_or_update_pr(self, *, branch: str, base: str, title: str, body: str) -> PullRequestRef:
        self.opened.append({"branch": branch, "base": base, "title": title})
        return PR

    async def wait_for_ci(
        self,
        pr: PullRequestRef,
        *,
        timeout_s: float,
        poll_interval_s: float,
        on_poll: Any = None,
    ) -> CiResult:
        self.polls += 1
        if on_poll is not None:
            await on_poll()
        state = self.ci_states.pop(0) if len(self.ci_states) > 1 else self.ci_states[0]
        return CiResult(state=state, summary=f"ci {state.value}")

    async def fetch_unresolved_review_comments(self, pr: PullRequestRef) -> UnresolvedReview:
        comments = self.reviews.pop(0) if len(self.reviews) > 1 else self.reviews[0]
        return UnresolvedReview(pr=pr, comments=list(comments))

    async def fetch_review_thread(self, pr: PullRequestRef, thread_id: str) -> ReviewThreadDetail | None:
        return self.threads.get(thread_id)

    async def resolve_review_thread(self, pr: PullRequestRef, thread_id: str) -> None:
        if thread_id in self.failing_resolves:
            raise RuntimeError(f"cannot resolve {thread_id}")
        self.resolved.append(thread_id)

    async def reply_to_review_comment(self, pr: PullRequestRef, comment_id: int, body: str) -> None:
        self.replies.append((comment_id, body))

    async def request_reviewers(self, pr: PullRequestRef, reviewers: Sequence[str], *, copilot: bool) -> None:
        self.review_requests.append((tuple(reviewers), copilot))


class FakeTaskTracker:
    def __init__(self) -> None:
        self.moves: list[tuple[str, str]] = []

    async def move_to_in_progress(self, task: Task) -> None:
        self.moves.append(("in_progress", task.id))

    async def move_to_in_review(self, task: Task) -> None:
        self.moves.append(("in_review", task.id))

    async def complete_task(self, task: Task) -> None:
        self.moves.append(("done", task.id))

    async def comment_on_pr_open(self, task: Task, pr_url: str) -> None:
        self.moves.append(("comment", pr_url))


def failing_report(*names: str) -> VerifyReport:
    return VerifyReport(
        ok=False,
        results=[VerifyCommandResult(name=name, exit_code=1, stderr=f"{name} failed") for name in names],
    )


def review_comment(
    thread_id: str, body: str = "Please rename this.", *, database_id: int | None = 101
) -> ReviewComment:
    return ReviewComment(
        id=f"c-{thread_id}",
        thread_id=thread_id,
        body=body,
        database_id=database_id,
        path="src/app.py",
        line=3,
    )


def make_collaborators(
    *,
    cognition: FakeCognition | None = None,
    vcs: FakeVcs | None = None,
    verifier: FakeVerifier | None = None,
    executor: FakeExecutor | None = None,
    review: FakeReviewProvider | None = None,
    tasks: FakeTaskTracker | None = None,
) -> Collaborators:
    return Collaborators(
        cognition=cognition or FakeCognition(),
        vcs=vcs or FakeVcs(),
        verifier=verifier or FakeVerifier(),
        executor=executor or FakeExecutor(),
        review=review,
        tasks=tasks or FakeTaskTracker(),
    )


def make_context(
    tmp_path: Path,
    *,
    run_id: str = "run-1",
    config: ControllerConfig | None = None,
    options: RunOptions | None = None,
    collaborators: Collaborators | None = None,
    branch: str | None = "feature/widgets",
    create: bool = True,
    **fields: Any,
) -> tuple[RunContext, list[EventEnvelope]]:
    """Build a run context over a fresh store; returns the context and the captured events."""
    store = RunStateStore(tmp_path / "state")
    worktree = tmp_path / "repo"
    worktree.mkdir(parents=True, exist_ok=True)
    if create:
        fields.setdefault("task", Task(id="T-1", key="T-1", title="Add widgets"))
        store.create_run(run_id, **fields)
    bus = EventBus()
    events: list[EventEnvelope] = []
    bus.subscribe(events.append)
    ctx = RunContext(
        run_id=run_id,
        store=store,
        bus=bus,
        config=config or ControllerConfig(),
        options=options or RunOptions(),
        collaborators=collaborators or make_collaborators(),
        worktree_root=worktree,
        branch=branch,
    )
    return ctx, events
