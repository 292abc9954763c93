import os
from pathlib import Path

import pytest

from change_agent.settings import DEFAULT_SEVERITY_POLICY, RuntimeSettings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("AGENT_"):
            monkeypatch.delenv(name)


def test_defaults_without_env() -> None:
    settings = RuntimeSettings.from_env()
    config = settings.to_controller_config()
    assert settings.state_root == ".agent-state"
    assert config.review.max_iterations == 3
    assert config.learning.mode == "off"
    assert config.review.intelligence.severity_policy == DEFAULT_SEVERITY_POLICY


def test_env_values_flow_into_controller_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_VERIFY_COMMANDS_JSON", '[{"name": "lint", "cmd": "ruff check ."}]')
    monkeypatch.setenv("AGENT_REVIEWERS", "alice, bob,")
    monkeypatch.setenv("AGENT_SEVERITY_POLICY_JSON", '{"nitpick": "auto_resolve"}')
    monkeypatch.setenv("AGENT_LEARNING_MODE", " Auto ")
    monkeypatch.setenv("AGENT_LEARNING_THRESHOLD", "0.6")
    monkeypatch.setenv("AGENT_AUTOFIX_ENABLED", "no")

    config = RuntimeSettings.from_env().to_controller_config()

    assert config.verify.command_lookup() == {"lint": "ruff check ."}
    assert config.verify.auto_fix.enabled is False
    assert config.github.reviewers == ("alice", "bob")
    assert config.review.intelligence.severity_policy["nitpick"] == "auto_resolve"
    assert config.review.intelligence.severity_policy["blocking"] == "actionable"
    assert config.learning.mode == "auto"
    assert config.learning.auto_apply.threshold == 0.6


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AGENT_REVIEW_MAX_ITERATIONS", "0", "must be >= 1"),
        ("AGENT_REVIEW_MAX_ITERATIONS", "three", "must be an integer"),
        ("AGENT_LEARNING_THRESHOLD", "1.5", "must be within"),
        ("AGENT_VERIFY_FAIL_FAST", "maybe", "must be a boolean"),
        ("AGENT_LEARNING_MODE", "sometimes", "must be one of"),
        ("AGENT_VERIFY_COMMANDS_JSON", "{}", "JSON array"),
        ("AGENT_SEVERITY_POLICY_JSON", '{"nitpick": "delete"}', "Unknown severity action"),
    ],
)
def test_invalid_env_is_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_poll_interval_cannot_exceed_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CI_POLL_INTERVAL_S", "60")
    monkeypatch.setenv("AGENT_CI_TIMEOUT_S", "30")
    with pytest.raises(ValueError, match="AGENT_CI_POLL_INTERVAL_S"):
        RuntimeSettings.from_env()


def test_state_root_resolves_against_repo(tmp_path: Path) -> None:
    assert RuntimeSettings(state_root=".runs").state_root_path(tmp_path) == tmp_path / ".runs"
    assert RuntimeSettings(state_root=str(tmp_path / "abs")).state_root_path(Path("/elsewhere")) == tmp_path / "abs"
