"""Versioned, typed schema of the persisted run document."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .schemas import CiState, LearningNotes, Plan, PullRequestRef, Task

RUN_STATE_VERSION = "1.0.0"


def utc_now() -> datetime:
    return datetime.now(UTC)


class Phase(str, Enum):
    IDLE = "idle"
    PLAN = "plan"
    IMPLEMENT = "implement"
    VERIFY = "verify"
    PR = "pr"
    REVIEW = "review"
    COMPLETE = "complete"
    RECOVERY = "recovery"


class RunStatus(str, Enum):
    RUNNING = "running"
    CANCELED = "canceled"
    FAILED = "failed"
    SUCCESS = "success"


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class _StateModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Step ledger
# ---------------------------------------------------------------------------


class Lease(_StateModel):
    lease_id: str
    started_at: datetime
    heartbeat_at: datetime


class StepError(_StateModel):
    name: str
    message: str
    code: str | None = None
    kind: str | None = None


class ArtifactEntry(_StateModel):
    step_id: str
    name: str
    path: str
    digest: str
    updated_at: datetime
    kind: Literal["json", "text"]


class StepRecord(_StateModel):
    status: StepStatus = StepStatus.NOT_STARTED
    title: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    inputs_digest: str | None = None
    outputs_digest: str | None = None
    artifacts: dict[str, ArtifactEntry] = Field(default_factory=dict)
    error: StepError | None = None
    lease: Lease | None = None

    @model_validator(mode="after")
    def _running_requires_lease(self) -> "StepRecord":
        if self.status == StepStatus.RUNNING and self.lease is None:
            raise ValueError("a running step must hold a lease")
        return self


class RunMeta(_StateModel):
    status: RunStatus = RunStatus.RUNNING
    phase: Phase = Phase.IDLE
    step: str | None = None
    attempt: int = 0
    updated_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None


class RunSummary(_StateModel):
    ci: CiState | None = None
    blocked_reason: str | None = None
    unresolved_review_count: int | None = None
    pr_url: str | None = None
    plan_digest: str | None = None


# ---------------------------------------------------------------------------
# Phase payloads
# ---------------------------------------------------------------------------


VerificationContext = Literal["verify", "review", "ci_fix", "recovery"]


class VerifySummary(_StateModel):
    ok: bool
    last_run_at: datetime = Field(default_factory=utc_now)


class VerificationAutoFixSummary(_StateModel):
    context: VerificationContext
    attempts: int
    max_attempts: int
    status: Literal["skipped", "planned", "applied", "succeeded", "failed"]
    reason: str | None = None
    plan_summary: str | None = None
    plan_steps: int | None = None
    fix_summary: str | None = None
    diff_before: str | None = None
    diff_after: str | None = None
    verification_ok: bool | None = None
    last_attempt_at: datetime = Field(default_factory=utc_now)


class VerificationAssistSummary(_StateModel):
    context: VerificationContext
    commands: list[str]
    summary: str | None = None
    steps: list[str] = Field(default_factory=list)


class VerificationDecisionSummary(_StateModel):
    commands: list[str]
    ask_user: bool = False


class ImplementationState(_StateModel):
    summary: str | None = None
    verify: VerifySummary | None = None
    auto_fix: VerificationAutoFixSummary | None = None
    assist: VerificationAssistSummary | None = None
    decision: VerificationDecisionSummary | None = None


class ReviewRequestRecord(_StateModel):
    reviewers: list[str] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=utc_now)
    copilot: bool = False


class PrState(_StateModel):
    draft_title: str | None = None
    draft_body_digest: str | None = None
    pr: PullRequestRef | None = None


class AutoResolveOutcome(_StateModel):
    thread_id: str
    outcome: Literal["resolved", "skipped", "failed"]
    reason: str | None = None


class ReviewAutoResolveSummary(_StateModel):
    attempted: int
    resolved: int
    skipped: int
    failed: int
    outcomes: list[AutoResolveOutcome] = Field(default_factory=list)


class ReviewClassificationSummary(_StateModel):
    actionable: int
    ignored: int
    needs_context: int
    severity: dict[str, int] = Field(default_factory=dict)
    auto_resolved: int | None = None


class ReviewPriorityEntry(_StateModel):
    thread_id: str
    severity: str
    summary: str | None = None
    path: str | None = None
    line: int | None = None
    is_outdated: bool = False


class CiFixSummary(_StateModel):
    summary: str
    steps: int


class ReviewState(_StateModel):
    iteration: int = 0
    last_checkpoint: str | None = None
    resolved_threads: list[str] = Field(default_factory=list)
    request_key: str | None = None
    request: ReviewRequestRecord | None = None
    classification: ReviewClassificationSummary | None = None
    auto_resolve: ReviewAutoResolveSummary | None = None
    priority: list[ReviewPriorityEntry] = Field(default_factory=list)
    fix_plan_actionable: int | None = None
    fix_plan_ignored: int | None = None
    ci_fix: CiFixSummary | None = None
    verify: VerifySummary | None = None


class LearningSummary(_StateModel):
    summary: str
    rules: int
    skills: int
    docs: int
    mode: str
    status: Literal["skipped", "pending", "applied", "recorded"] | None = None
    reason: str | None = None
    confidence: float | None = None
    threshold: float | None = None
    breakdown: dict[str, float] | None = None
    applied_to: list[str] = Field(default_factory=list)
    applied_at: datetime | None = None
    commit_sha: str | None = None
    auto_applied: bool = False


class RecoverySummary(_StateModel):
    next_action: str
    reason: str


class LearningRequest(_StateModel):
    id: str
    run_id: str
    status: Literal["pending", "applied", "rejected", "rolled_back"]
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None
    summary: str
    confidence: float
    threshold: float
    notes: LearningNotes
    targets: dict[str, str] = Field(default_factory=dict)
    reason: str | None = None
    applied_at: datetime | None = None
    applied_to: list[str] = Field(default_factory=list)
    commit_sha: str | None = None


# ---------------------------------------------------------------------------
# Run document
# ---------------------------------------------------------------------------


class RunDocument(_StateModel):
    """One durable document per run.

    Unknown fields and unknown versions are rejected on read; the store never
    coerces a shape it does not recognise.
    """

    version: Literal["1.0.0"] = RUN_STATE_VERSION
    run_id: str
    created_at: datetime = Field(default_factory=utc_now)
    run: RunMeta = Field(default_factory=RunMeta)
    steps: dict[str, StepRecord] = Field(default_factory=dict)
    artifacts_index: dict[str, dict[str, ArtifactEntry]] = Field(default_factory=dict)
    summary: RunSummary = Field(default_factory=RunSummary)
    checkpoints: list[str] = Field(default_factory=list)
    task: Task | None = None
    clarifications: dict[str, str] = Field(default_factory=dict)
    plan: Plan | None = None
    implementation: ImplementationState = Field(default_factory=ImplementationState)
    pr: PrState = Field(default_factory=PrState)
    review: ReviewState = Field(default_factory=ReviewState)
    learning: LearningSummary | None = None
    recovery: RecoverySummary | None = None
    ai_review_ship_it: bool | None = None

    def step_done(self, step_id: str) -> bool:
        record = self.steps.get(step_id)
        return record is not None and record.status == StepStatus.DONE

    def artifact(self, step_id: str, name: str) -> ArtifactEntry | None:
        return self.artifacts_index.get(step_id, {}).get(name)
