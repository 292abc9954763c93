"""Typed payloads exchanged with collaborators and returned by cognition calls."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class CiState(str, Enum):
    PENDING = "pending"
    PASSING = "passing"
    FAILING = "failing"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    BLOCKING = "blocking"
    QUESTION = "question"
    SUGGESTION = "suggestion"
    NITPICK = "nitpick"


SEVERITY_ORDER: tuple[Severity, ...] = (
    Severity.BLOCKING,
    Severity.QUESTION,
    Severity.SUGGESTION,
    Severity.NITPICK,
)


# ---------------------------------------------------------------------------
# Task tracker / planning
# ---------------------------------------------------------------------------


class Task(BaseModel):
    id: str
    key: str | None = None
    title: str = ""
    description: str = ""
    provider: str = "local"
    url: str | None = None
    acceptance_criteria: list[str] = Field(default_factory=list)


class PlanStep(BaseModel):
    id: str
    title: str
    description: str = ""


class PlanQuestion(BaseModel):
    id: str
    text: str
    required: bool = True


class Plan(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str
    steps: list[PlanStep] = Field(default_factory=list)
    verification: list[str] = Field(default_factory=list)
    questions: list[PlanQuestion] = Field(default_factory=list)


class PrDraft(BaseModel):
    title: str = Field(min_length=1)
    body: str


# ---------------------------------------------------------------------------
# Version control / verification
# ---------------------------------------------------------------------------


class CommandResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int


class VerifyCommandResult(BaseModel):
    name: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class VerifyReport(BaseModel):
    ok: bool
    results: list[VerifyCommandResult] = Field(default_factory=list)

    def failures(self) -> list[VerifyCommandResult]:
        return [result for result in self.results if result.exit_code != 0]


class VerificationDecision(BaseModel):
    commands: list[str] = Field(default_factory=list)
    rationale: str = ""
    ask_user: bool = False


class VerificationAssist(BaseModel):
    summary: str | None = None
    steps: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Code hosting / CI
# ---------------------------------------------------------------------------


class PullRequestRef(BaseModel):
    owner: str
    repo: str
    number: int
    url: str | None = None


class CiCheck(BaseModel):
    name: str
    conclusion: str | None = None
    url: str | None = None


class CiResult(BaseModel):
    state: CiState
    summary: str | None = None
    checks: list[CiCheck] = Field(default_factory=list)


class ReviewComment(BaseModel):
    id: str
    thread_id: str
    body: str
    database_id: int | None = None
    path: str | None = None
    line: int | None = None
    is_outdated: bool = False


class UnresolvedReview(BaseModel):
    pr: PullRequestRef
    comments: list[ReviewComment] = Field(default_factory=list)


class ReviewThreadComment(BaseModel):
    id: str
    body: str
    database_id: int | None = None
    path: str | None = None
    line: int | None = None
    url: str | None = None


class ReviewThreadDetail(BaseModel):
    thread_id: str
    is_outdated: bool = False
    comments: list[ReviewThreadComment] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Review intelligence
# ---------------------------------------------------------------------------


class FingerprintComment(BaseModel):
    id: str
    database_id: int | None = None
    path: str | None = None
    line: int | None = None
    body_digest: str
    excerpt: str


class ThreadFingerprint(BaseModel):
    thread_id: str
    is_outdated: bool = False
    comments: list[FingerprintComment] = Field(default_factory=list)


class ThreadClassification(BaseModel):
    thread_id: str
    severity: Severity
    summary: str = ""


class ReviewClassification(BaseModel):
    threads: list[ThreadClassification] = Field(default_factory=list)
    actionable_thread_ids: list[str] = Field(default_factory=list)
    ignored_thread_ids: list[str] = Field(default_factory=list)
    needs_context_thread_ids: list[str] = Field(default_factory=list)


class ReviewPlanThread(BaseModel):
    thread_id: str
    actionable: bool
    comments: list[dict[str, object]] = Field(default_factory=list)
    is_outdated: bool = False


class ReviewFixThread(BaseModel):
    thread_id: str
    actionable: bool
    summary: str = ""


class ReviewFixPlan(BaseModel):
    threads: list[ReviewFixThread] = Field(default_factory=list)
    resolve_threads: list[str] = Field(default_factory=list)
    verification: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Recovery / learning
# ---------------------------------------------------------------------------


RecoveryAction = Literal["rerun_verification", "refetch_reviews", "restart_review_loop", "ask_user"]


class RecoveryPlan(BaseModel):
    next_action: RecoveryAction
    reason: str


class LearningNotes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str = Field(min_length=1)
    rules: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    docs: list[str] = Field(default_factory=list)

    def all_items(self) -> list[str]:
        return [*self.rules, *self.skills, *self.docs]
