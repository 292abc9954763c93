"""Interfaces of the external systems the controller drives."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, Sequence

from pydantic import BaseModel

from .schemas import (
    CiResult,
    CommandResult,
    PullRequestRef,
    ReviewThreadDetail,
    Task,
    UnresolvedReview,
    VerifyReport,
)

PollCallback = Callable[[], Awaitable[None]]


class Cognition(Protocol):
    """Structured AI call. Output is validated against ``schema`` by the caller."""

    async def invoke(self, task: str, context: dict[str, Any], schema: type[BaseModel]) -> Any:  # noqa: ANN401
        ...


class VersionControl(Protocol):
    async def run(self, args: Sequence[str], cwd: Path) -> CommandResult:
        ...


class VerificationRunner(Protocol):
    async def run(self, names: Sequence[str] | None, cwd: Path) -> VerifyReport:
        ...


class Executor(Protocol):
    """Applies code changes described by a prompt and returns a short summary."""

    async def execute(self, prompt: str, *, context: dict[str, Any]) -> str:
        ...


class ReviewProvider(Protocol):
    """Code review and CI provider bound to one repository."""

    async def open_or_update_pr(self, *, branch: str, base: str, title: str, body: str) -> PullRequestRef:
        ...

    async def wait_for_ci(
        self,
        pr: PullRequestRef,
        *,
        timeout_s: float,
        poll_interval_s: float,
        on_poll: PollCallback | None = None,
    ) -> CiResult:
        ...

    async def fetch_unresolved_review_comments(self, pr: PullRequestRef) -> UnresolvedReview:
        ...

    async def fetch_review_thread(self, pr: PullRequestRef, thread_id: str) -> ReviewThreadDetail | None:
        ...

    async def resolve_review_thread(self, pr: PullRequestRef, thread_id: str) -> None:
        ...

    async def reply_to_review_comment(self, pr: PullRequestRef, comment_id: int, body: str) -> None:
        ...

    async def request_reviewers(self, pr: PullRequestRef, reviewers: Sequence[str], *, copilot: bool) -> None:
        ...


class TaskTracker(Protocol):
    async def move_to_in_progress(self, task: Task) -> None:
        ...

    async def move_to_in_review(self, task: Task) -> None:
        ...

    async def complete_task(self, task: Task) -> None:
        ...

    async def comment_on_pr_open(self, task: Task, pr_url: str) -> None:
        ...


class NullTaskTracker:
    """Tracker for tasks without a tracking provider; every call is a no-op."""

    async def move_to_in_progress(self, task: Task) -> None:
        return None

    async def move_to_in_review(self, task: Task) -> None:
        return None

    async def complete_task(self, task: Task) -> None:
        return None

    async def comment_on_pr_open(self, task: Task, pr_url: str) -> None:
        return None
