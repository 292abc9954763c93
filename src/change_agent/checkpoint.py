from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Sequence

from pydantic import BaseModel

from .canonical import digest
from .context import RunContext
from .schemas import CommandResult

logger = logging.getLogger(__name__)


class CheckpointResult(BaseModel):
    committed: bool
    sha: str | None = None


class GitCli:
    """Version-control collaborator running the ``git`` executable."""

    def __init__(self, executable: str = "git") -> None:
        self.executable = executable

    async def run(self, args: Sequence[str], cwd: Path) -> CommandResult:
        process = await asyncio.create_subprocess_exec(
            self.executable,
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        exit_code = process.returncode if process.returncode is not None else 1
        logger.debug("git %s exited %s", " ".join(args), exit_code)
        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )


async def _git(ctx: RunContext, *args: str) -> CommandResult:
    return await ctx.collaborators.vcs.run(list(args), ctx.worktree_root)


async def _head_sha(ctx: RunContext) -> str | None:
    result = await _git(ctx, "rev-parse", "HEAD")
    sha = result.stdout.strip()
    return sha if result.exit_code == 0 and sha else None


async def _commit_staged(ctx: RunContext, message: str) -> CheckpointResult:
    pending = await _git(ctx, "diff", "--cached", "--quiet")
    if pending.exit_code == 0:
        # Nothing staged; report HEAD so callers can still compare checkpoints.
        return CheckpointResult(committed=False, sha=await _head_sha(ctx))
    commit = await _git(ctx, "commit", "-m", message)
    if commit.exit_code != 0:
        raise RuntimeError(commit.stderr.strip() or f"Failed to commit: {message}")
    sha = await _head_sha(ctx)
    logger.info("checkpoint %r committed at %s", message, sha)
    return CheckpointResult(committed=True, sha=sha)


async def create_checkpoint_commit(ctx: RunContext, message: str) -> CheckpointResult:
    """Stage the whole worktree and commit it if anything changed."""
    staged = await _git(ctx, "add", "-A")
    if staged.exit_code != 0:
        raise RuntimeError(staged.stderr.strip() or "Failed to stage changes")
    return await _commit_staged(ctx, message)


async def commit_files(ctx: RunContext, paths: Sequence[Path | str], message: str) -> CheckpointResult:
    """Commit only ``paths``; anything else staged or modified is left alone."""
    root = ctx.worktree_root.resolve()
    relative: list[str] = []
    for raw in paths:
        candidate = Path(raw)
        resolved = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()
        try:
            relative.append(resolved.relative_to(root).as_posix())
        except ValueError:
            logger.warning("refusing to commit %s: outside worktree %s", resolved, root)
    if not relative:
        return CheckpointResult(committed=False)
    staged = await _git(ctx, "add", "--", *relative)
    if staged.exit_code != 0:
        raise RuntimeError(staged.stderr.strip() or "Failed to stage files")
    pending = await _git(ctx, "diff", "--cached", "--quiet", "--", *relative)
    if pending.exit_code == 0:
        return CheckpointResult(committed=False)
    commit = await _git(ctx, "commit", "-m", message, "--", *relative)
    if commit.exit_code != 0:
        raise RuntimeError(commit.stderr.strip() or f"Failed to commit: {message}")
    sha = await _head_sha(ctx)
    logger.info("committed %d file(s) at %s", len(relative), sha)
    return CheckpointResult(committed=True, sha=sha)


async def diff_stat(ctx: RunContext, base: str | None = None) -> str:
    args = ["diff", "--stat"]
    if base:
        args.append(f"{base}...HEAD")
    result = await _git(ctx, *args)
    if result.exit_code != 0:
        logger.warning("git diff --stat failed: %s", result.stderr.strip())
        return ""
    return result.stdout.strip()


async def push_branch(ctx: RunContext) -> CommandResult:
    if not ctx.branch:
        raise RuntimeError("Cannot push: run has no branch")
    result = await _git(ctx, "push", "origin", ctx.branch)
    if result.exit_code != 0:
        raise RuntimeError(result.stderr.strip() or f"Failed to push {ctx.branch}")
    return result


def review_request_key(pr_number: int, reviewers: Sequence[str], request_copilot: bool) -> str:
    return digest(
        {
            "pr_number": pr_number,
            "reviewers": sorted(reviewers),
            "request_copilot": request_copilot,
        }
    )
