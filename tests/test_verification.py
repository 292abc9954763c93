import asyncio
from pathlib import Path

import pytest

from change_agent.errors import RunBlockedError
from change_agent.models import Phase
from change_agent.schemas import Plan, PlanStep, VerifyCommandResult, VerifyReport
from change_agent.settings import AutoFixConfig, ControllerConfig, RunOptions, VerifyConfig
from change_agent.verification import (
    format_verification_blocked_reason,
    run_verification,
    should_attempt_verification_auto_fix,
    triage_verification_failures,
)

from fakes import FakeCognition, FakeVerifier, failing_report, make_collaborators, make_context


def _failed(*names: str) -> list[VerifyCommandResult]:
    return failing_report(*names).results


def test_triage_classifies_known_failure_names() -> None:
    triage = triage_verification_failures(_failed("lint", "unit-test"))
    assert triage.classified
    assert triage.decision.commands == ["lint", "unit-test"]
    assert triage.decision.ask_user is False
    assert triage.decision.rationale == "Rerun the failed verification commands to diagnose issues."


def test_triage_asks_user_for_unknown_failures() -> None:
    triage = triage_verification_failures(_failed("lint", "deploy-step"))
    assert not triage.classified
    assert triage.decision.ask_user is True


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"enabled": False}, "disabled"),
        ({"dry_run": True}, "dry_run"),
        ({"apply": False}, "apply_disabled"),
        ({"attempts": 2}, "max_attempts"),
        ({"classified": False}, "unclassified"),
    ],
)
def test_auto_fix_decision_refuses_with_reason(overrides: dict, reason: str) -> None:
    kwargs = {
        "enabled": True,
        "max_attempts": 2,
        "attempts": 0,
        "classified": True,
        "apply": True,
        "dry_run": False,
    }
    kwargs.update(overrides)
    decision = should_attempt_verification_auto_fix(**kwargs)
    assert decision.attempt is False
    assert decision.reason == reason


def test_auto_fix_never_exceeds_max_attempts() -> None:
    for attempts in range(0, 6):
        decision = should_attempt_verification_auto_fix(
            enabled=True, max_attempts=3, attempts=attempts, classified=True, apply=True, dry_run=False
        )
        assert decision.attempt is (attempts < 3)


def test_blocked_reason_prefix_per_context() -> None:
    assert format_verification_blocked_reason("verify") == "Verification failed."
    assert format_verification_blocked_reason("ci_fix", "Fix lint.") == "Verification failed during CI fix. Fix lint."


def test_passing_verification_records_summary(tmp_path: Path) -> None:
    ctx, _ = make_context(tmp_path)
    report = asyncio.run(run_verification(ctx))
    document = ctx.read_state()
    assert report.ok
    assert document.run.phase == Phase.VERIFY
    assert document.implementation.verify is not None and document.implementation.verify.ok
    assert document.step_done("verify.run")


def test_auto_fix_resolves_classified_failure(tmp_path: Path) -> None:
    cognition = FakeCognition(
        {"verification_autofix_plan": Plan(summary="Fix lint", steps=[PlanStep(id="s1", title="Run formatter")])}
    )
    verifier = FakeVerifier(failing_report("lint"), VerifyReport(ok=True))
    ctx, _ = make_context(
        tmp_path,
        options=RunOptions(apply=True),
        collaborators=make_collaborators(cognition=cognition, verifier=verifier),
    )

    report = asyncio.run(run_verification(ctx))

    document = ctx.read_state()
    assert report.ok
    auto_fix = document.implementation.auto_fix
    assert auto_fix is not None
    assert auto_fix.status == "succeeded"
    assert auto_fix.attempts == 1
    assert auto_fix.plan_summary == "Fix lint"
    assert document.summary.blocked_reason is None
    assert document.step_done("verify.autofix.apply")
    assert "verify.decide" not in document.steps


def test_unclassified_failure_blocks_with_decision(tmp_path: Path) -> None:
    ctx, _ = make_context(
        tmp_path,
        collaborators=make_collaborators(verifier=FakeVerifier(failing_report("deploy-step"))),
    )

    with pytest.raises(RunBlockedError) as excinfo:
        asyncio.run(run_verification(ctx))

    assert excinfo.value.code == "verify.failed"
    assert excinfo.value.next_steps == ["Rerun: deploy-step"]
    document = ctx.read_state()
    assert document.implementation.auto_fix is not None
    assert document.implementation.auto_fix.status == "skipped"
    assert document.implementation.auto_fix.reason == "apply_disabled"
    assert document.implementation.decision is not None
    assert document.implementation.decision.ask_user is True
    assert document.summary.blocked_reason == "Verification failed."


def test_auto_fix_stops_at_configured_bound(tmp_path: Path) -> None:
    config = ControllerConfig(verify=VerifyConfig(auto_fix=AutoFixConfig(enabled=True, max_attempts=0)))
    ctx, _ = make_context(
        tmp_path,
        config=config,
        options=RunOptions(apply=True),
        collaborators=make_collaborators(verifier=FakeVerifier(failing_report("lint"))),
    )

    with pytest.raises(RunBlockedError):
        asyncio.run(run_verification(ctx))

    auto_fix = ctx.read_state().implementation.auto_fix
    assert auto_fix is not None and auto_fix.reason == "max_attempts"
