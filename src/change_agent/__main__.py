"""Entry point for `python -m change_agent` and the `change-agent` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import signal
import sys
import uuid
from pathlib import Path
from typing import Sequence

from change_agent.checkpoint import GitCli
from change_agent.context import Collaborators
from change_agent.controller import RunController
from change_agent.convergence import derive_run_convergence, mark_run_aborted
from change_agent.errors import AgentError, normalize_error
from change_agent.events import logging_subscriber
from change_agent.executor import DeepAgentExecutor
from change_agent.llm import LangChainCognition
from change_agent.models import RunDocument
from change_agent.schemas import Task
from change_agent.settings import RunOptions, RuntimeSettings
from change_agent.state_store import RunStateStore
from change_agent.verification import SubprocessVerificationRunner

logger = logging.getLogger("change_agent")


def _parse_answer(value: str) -> tuple[str, str]:
    question_id, separator, answer = value.partition("=")
    if not separator or not question_id.strip():
        raise argparse.ArgumentTypeError(f"expected QUESTION_ID=ANSWER, got: {value!r}")
    return question_id.strip(), answer.strip()


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive and inspect software-change runs")
    parser.add_argument("--state-root", type=Path, default=None, help="Run state directory (default: AGENT_STATE_ROOT)")
    parser.add_argument("--worktree", type=Path, default=Path.cwd(), help="Repository worktree the run edits")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _add_run_flags(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--apply", action="store_true", help="Allow pushing fixes and applying learnings")
        sub.add_argument("--dry-run", action="store_true", help="Never mutate the worktree automatically")
        sub.add_argument("--branch", default=None, help="Branch the pull request is opened from")
        sub.add_argument(
            "--answer",
            action="append",
            type=_parse_answer,
            default=[],
            metavar="QUESTION_ID=ANSWER",
            help="Answer a plan clarification question (repeatable)",
        )

    start = subparsers.add_parser("start", help="Start a new run for a task")
    start.add_argument("--run-id", default=None, help="Run id (default: generated)")
    start.add_argument("--task-id", required=True, help="Task identifier")
    start.add_argument("--title", required=True, help="Task title")
    start.add_argument("--description", default="", help="Task description")
    _add_run_flags(start)

    resume = subparsers.add_parser("resume", help="Resume a run from its persisted phase")
    resume.add_argument("run_id")
    resume.add_argument("--recover", action="store_true", help="Enter the recovery phase before resuming")
    _add_run_flags(resume)

    status = subparsers.add_parser("status", help="Show where a run stands")
    status.add_argument("run_id")

    abort = subparsers.add_parser("abort", help="Mark a run aborted")
    abort.add_argument("run_id")
    abort.add_argument("--reason", default=None, help="Why the run is aborted")

    events = subparsers.add_parser("events", help="Print the event log of a run as JSON lines")
    events.add_argument("run_id")
    return parser.parse_args(argv)


def _status_payload(document: RunDocument) -> dict[str, object]:
    convergence = derive_run_convergence(document)
    return {
        "run_id": document.run_id,
        "status": document.run.status.value,
        "phase": document.run.phase.value,
        "step": document.run.step,
        "attempt": document.run.attempt,
        "summary": document.summary.model_dump(mode="json"),
        "convergence": dataclasses.asdict(convergence),
    }


def build_controller(
    args: argparse.Namespace,
    settings: RuntimeSettings,
    store: RunStateStore,
    worktree: Path,
) -> RunController:
    config = settings.to_controller_config()
    collaborators = Collaborators(
        cognition=LangChainCognition(model_name=config.model, repo_root=worktree),
        vcs=GitCli(),
        verifier=SubprocessVerificationRunner(config.verify.commands, fail_fast=config.verify.fail_fast),
        executor=DeepAgentExecutor(model_name=config.model, worktree_root=worktree, repo_root=worktree),
    )
    controller = RunController(
        store=store,
        config=config,
        collaborators=collaborators,
        worktree_root=worktree,
        options=RunOptions(apply=args.apply, dry_run=args.dry_run),
        branch=args.branch,
    )
    controller.bus.subscribe(logging_subscriber)
    return controller


async def _drive(controller: RunController, args: argparse.Namespace) -> RunDocument:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except NotImplementedError:
        logger.debug("signal handlers unsupported on this platform; SIGINT will not cancel cooperatively")
    answers = dict(args.answer)
    try:
        if args.command == "start":
            task = Task(id=args.task_id, key=args.task_id, title=args.title, description=args.description)
            run_id = args.run_id or f"run-{uuid.uuid4().hex[:12]}"
            return await controller.start_run(run_id, task, clarifications=answers, cancel_event=cancel_event)
        return await controller.resume_run(
            args.run_id,
            clarifications=answers,
            recover=args.recover,
            cancel_event=cancel_event,
        )
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


def _report(error: AgentError) -> None:
    log = logger.info if error.exit_code == 0 else logger.error
    log("%s [%s]", error.user_message, error.code)
    for step in error.next_steps:
        log("next: %s", step)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    worktree = args.worktree.resolve()
    state_root = args.state_root.resolve() if args.state_root is not None else settings.state_root_path(worktree)
    store = RunStateStore(state_root)

    try:
        if args.command == "status":
            print(json.dumps(_status_payload(store.read_run(args.run_id)), indent=2))
            return 0
        if args.command == "abort":
            store.read_run(args.run_id)
            entry = mark_run_aborted(store, args.run_id, args.reason)
            print(entry.path)
            return 0
        if args.command == "events":
            store.read_run(args.run_id)
            for envelope in store.read_events(args.run_id):
                sys.stdout.write(envelope.model_dump_json() + "\n")
            return 0

        controller = build_controller(args, settings, store, worktree)
        document = asyncio.run(_drive(controller, args))
    except AgentError as exc:
        _report(exc)
        return exc.exit_code
    except (OSError, ValueError) as exc:
        error = normalize_error(exc)
        _report(error)
        return error.exit_code

    print(json.dumps(_status_payload(document), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
