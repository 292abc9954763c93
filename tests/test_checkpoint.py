import asyncio
from pathlib import Path

import pytest

from change_agent.checkpoint import commit_files, create_checkpoint_commit, push_branch, review_request_key

from fakes import FakeVcs, make_collaborators, make_context


def test_checkpoint_without_changes_reports_head(tmp_path: Path) -> None:
    vcs = FakeVcs(head="abc123", dirty=False)
    ctx, _ = make_context(tmp_path, collaborators=make_collaborators(vcs=vcs))

    result = asyncio.run(create_checkpoint_commit(ctx, "checkpoint implement"))

    assert result.committed is False
    assert result.sha == "abc123"
    assert vcs.commits == []


def test_checkpoint_commits_staged_changes(tmp_path: Path) -> None:
    vcs = FakeVcs(dirty=True)
    ctx, _ = make_context(tmp_path, collaborators=make_collaborators(vcs=vcs))

    result = asyncio.run(create_checkpoint_commit(ctx, "checkpoint review-1"))

    assert (result.committed, result.sha) == (True, "commit001")
    assert vcs.commands("add") == [["add", "-A"]]
    assert vcs.commits == [["commit", "-m", "checkpoint review-1"]]


def test_commit_files_refuses_paths_outside_worktree(tmp_path: Path) -> None:
    vcs = FakeVcs(dirty=True)
    ctx, _ = make_context(tmp_path, collaborators=make_collaborators(vcs=vcs))

    result = asyncio.run(commit_files(ctx, [tmp_path / "elsewhere.md"], "apply learnings"))
    assert result.committed is False
    assert vcs.calls == []

    inside = ctx.worktree_root / "docs" / "LEARNINGS.md"
    result = asyncio.run(commit_files(ctx, [inside], "apply learnings"))
    assert result.committed is True
    assert vcs.commands("add") == [["add", "--", "docs/LEARNINGS.md"]]


def test_push_requires_branch(tmp_path: Path) -> None:
    ctx, _ = make_context(tmp_path, branch=None)
    with pytest.raises(RuntimeError, match="no branch"):
        asyncio.run(push_branch(ctx))


def test_review_request_key_ignores_reviewer_order() -> None:
    assert review_request_key(7, ["bob", "alice"], False) == review_request_key(7, ["alice", "bob"], False)
    assert review_request_key(7, ["alice"], False) != review_request_key(7, ["alice"], True)
