import json
from pathlib import Path

import pytest

from change_agent.__main__ import main, parse_args
from change_agent.events import build_event
from change_agent.models import RunStatus
from change_agent.schemas import Task
from change_agent.state_store import RunStateStore


def _seed(tmp_path: Path) -> RunStateStore:
    store = RunStateStore(tmp_path / "state")
    store.create_run("run-1", task=Task(id="T-1", title="Add widgets"))
    store.append_event(build_event("run.started", "run-1", {"phase": "idle"}))
    return store


def _cli(tmp_path: Path, *args: str) -> int:
    return main(["--state-root", str(tmp_path / "state"), "--worktree", str(tmp_path), *args])


def test_status_prints_convergence(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _seed(tmp_path)

    assert _cli(tmp_path, "status", "run-1") == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["run_id"] == "run-1"
    assert payload["status"] == "running"
    assert payload["convergence"]["reason_code"] == "in_progress"


def test_status_of_unknown_run_fails(tmp_path: Path) -> None:
    assert _cli(tmp_path, "status", "missing") == 1


def test_abort_cancels_run(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = _seed(tmp_path)

    assert _cli(tmp_path, "abort", "run-1", "--reason", "superseded") == 0

    assert "run.abort" in capsys.readouterr().out
    assert store.read_run("run-1").run.status == RunStatus.CANCELED


def test_events_prints_json_lines(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _seed(tmp_path)

    assert _cli(tmp_path, "events", "run-1") == 0

    lines = capsys.readouterr().out.strip().splitlines()
    assert [json.loads(line)["type"] for line in lines] == ["run.started"]


def test_invalid_configuration_exits_2(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_LEARNING_MODE", "sometimes")
    assert _cli(tmp_path, "status", "run-1") == 2


def test_answers_are_parsed_into_pairs() -> None:
    args = parse_args(["resume", "run-1", "--answer", "q1=POST", "--answer", "q2 = widgets.py", "--recover"])
    assert args.answer == [("q1", "POST"), ("q2", "widgets.py")]
    assert args.recover is True

    with pytest.raises(SystemExit):
        parse_args(["resume", "run-1", "--answer", "no-separator"])
