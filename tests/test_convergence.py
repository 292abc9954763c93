from datetime import timedelta

from change_agent.convergence import derive_run_convergence, mark_run_aborted
from change_agent.models import (
    Lease,
    RunDocument,
    RunStatus,
    StepError,
    StepRecord,
    StepStatus,
    utc_now,
)
from change_agent.schemas import CiState
from change_agent.state_store import RunStateStore


def _document(**fields) -> RunDocument:
    return RunDocument(run_id="run-1", **fields)


def test_success_converges() -> None:
    document = _document()
    document.run.status = RunStatus.SUCCESS
    result = derive_run_convergence(document)
    assert (result.status, result.reason_code) == ("converged", "run_complete")


def test_failed_run_offers_resume() -> None:
    document = _document()
    document.run.status = RunStatus.FAILED
    result = derive_run_convergence(document)
    assert result.status == "failed"
    assert "resume" in result.next_actions


def test_running_step_takes_precedence_over_ci() -> None:
    now = utc_now()
    document = _document()
    document.summary.ci = CiState.PENDING
    document.steps["agent.execute"] = StepRecord(
        status=StepStatus.RUNNING,
        lease=Lease(lease_id="l", started_at=now, heartbeat_at=now),
    )
    result = derive_run_convergence(document)
    assert result.reason_code == "step_running"
    assert "agent.execute" in result.message


def test_pending_ci_then_unresolved_reviews_then_blocked() -> None:
    document = _document()
    document.summary.ci = CiState.PENDING
    document.summary.unresolved_review_count = 2
    document.summary.blocked_reason = "Verification failed."
    assert derive_run_convergence(document).status == "waiting_for_ci"

    document.summary.ci = CiState.PASSING
    assert derive_run_convergence(document).status == "waiting_for_review"

    document.summary.unresolved_review_count = 0
    result = derive_run_convergence(document)
    assert (result.status, result.reason_code, result.message) == ("blocked", "blocked_reason", "Verification failed.")


def test_failed_step_without_blocked_reason() -> None:
    document = _document()
    document.steps["git.checkpoint"] = StepRecord(
        status=StepStatus.FAILED,
        ended_at=utc_now() - timedelta(seconds=5),
        error=StepError(name="RuntimeError", message="boom"),
    )
    result = derive_run_convergence(document)
    assert result.reason_code == "step_failed"


def test_fresh_run_is_in_progress() -> None:
    assert derive_run_convergence(_document()).reason_code == "in_progress"


def test_abort_marks_run_canceled(tmp_path) -> None:
    store = RunStateStore(tmp_path)
    store.create_run("run-1")

    entry = mark_run_aborted(store, "run-1", "no longer needed")

    document = store.read_run("run-1")
    assert document.run.status == RunStatus.CANCELED
    assert document.run.finished_at is not None
    assert store.read_artifact(entry)["reason"] == "no longer needed"
    result = derive_run_convergence(document)
    assert result.status == "aborted"
    assert result.blocking_artifacts == [f"run.abort/{entry.name}"]


def test_abort_is_recorded_in_event_log(tmp_path) -> None:
    store = RunStateStore(tmp_path)
    store.create_run("run-1")

    entry = mark_run_aborted(store, "run-1", "superseded")

    events = store.read_events("run-1")
    assert [event.type for event in events] == ["run.persisted", "run.finished"]
    finished = events[-1]
    assert finished.payload == {"status": "canceled", "abort": entry.name}
    assert finished.error is not None and finished.error.code == "run_canceled"
