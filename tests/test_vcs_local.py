from __future__ import annotations

import json
from pathlib import Path

import pytest

from autoimpl.tools.vcs import (
    BranchNotFoundError,
    CommitFile,
    LocalGitHost,
    RemoteFileNotFoundError,
    VcsError,
)


@pytest.fixture()
def local_host(git_remote) -> LocalGitHost:
    return LocalGitHost(git_remote.repos_root, author_name="Bot", author_email="bot@example.com")


def test_branch_lifecycle(local_host, git_remote) -> None:
    assert local_host.branch_exists("acme", "webapp", "main") is True
    assert local_host.branch_exists("acme", "webapp", "ai/LS-1-x") is False

    local_host.create_branch("acme", "webapp", "ai/LS-1-x", "main")

    assert local_host.branch_exists("acme", "webapp", "ai/LS-1-x") is True
    with pytest.raises(VcsError):
        local_host.create_branch("acme", "webapp", "ai/LS-1-x", "main")

    local_host.delete_branch("acme", "webapp", "ai/LS-1-x")
    assert local_host.branch_exists("acme", "webapp", "ai/LS-1-x") is False
    with pytest.raises(BranchNotFoundError):
        local_host.delete_branch("acme", "webapp", "ai/LS-1-x")


def test_checked_out_branch_is_not_deleted(local_host) -> None:
    with pytest.raises(VcsError, match="checked-out"):
        local_host.delete_branch("acme", "webapp", "main")


def test_reads_tree_and_files(local_host) -> None:
    assert local_host.get_tree("acme", "webapp", "main") == ["README.md", "src/app.py"]

    remote = local_host.get_file_content("acme", "webapp", "src/app.py", "main")

    assert remote.text() == "APP = 'webapp'\n"
    assert len(remote.sha) == 40
    with pytest.raises(RemoteFileNotFoundError):
        local_host.get_file_content("acme", "webapp", "missing.py", "main")
    with pytest.raises(RemoteFileNotFoundError):
        local_host.get_file_content("acme", "webapp", "src", "main")
    with pytest.raises(BranchNotFoundError):
        local_host.get_tree("acme", "webapp", "nope")


def test_commit_writes_branch_without_touching_worktree(local_host, git_remote) -> None:
    local_host.create_branch("acme", "webapp", "feature", "main")

    commit = local_host.create_commit(
        "acme",
        "webapp",
        "feature",
        "feat: add login",
        [
            CommitFile(path="src/login.py", content="LOGIN = True\n"),
            CommitFile(path="src/app.py", content="APP = 'v2'\n"),
            CommitFile(path="README.md", content=None),
        ],
    )

    assert git_remote.git("rev-parse", "refs/heads/feature") == commit.sha
    assert git_remote.git("log", "-1", "--format=%s|%an", "feature") == "feat: add login|Bot"
    assert local_host.get_tree("acme", "webapp", "feature") == ["src/app.py", "src/login.py"]
    assert local_host.get_file_content("acme", "webapp", "src/app.py", "feature").text() == "APP = 'v2'\n"
    assert (git_remote.path / "README.md").exists()
    assert git_remote.git("status", "--porcelain") == ""


def test_commit_to_missing_branch_fails(local_host) -> None:
    with pytest.raises(BranchNotFoundError):
        local_host.create_commit("acme", "webapp", "ghost", "msg", [CommitFile(path="a", content="b")])


def test_pull_request_is_recorded(local_host, git_remote) -> None:
    local_host.create_branch("acme", "webapp", "feature", "main")

    first = local_host.create_pull_request(
        "acme", "webapp", title="[AI] LS-1: Thing", body="Body", head="feature", base="main"
    )
    second = local_host.create_pull_request(
        "acme", "webapp", title="Again", body="Body", head="feature", base="main", draft=False
    )

    assert (first.number, second.number) == (1, 2)
    record = json.loads(Path(first.html_url.removeprefix("file://")).read_text(encoding="utf-8"))
    assert record["title"] == "[AI] LS-1: Thing"
    assert record["draft"] is True
    assert record["head"] == "feature"
    with pytest.raises(BranchNotFoundError):
        local_host.create_pull_request("acme", "webapp", title="x", body="y", head="ghost", base="main")


def test_unknown_repository_and_config(tmp_path) -> None:
    host = LocalGitHost.from_config({"host": {"repos_root": str(tmp_path)}})

    assert host.repos_root == tmp_path.resolve()
    with pytest.raises(VcsError, match="Unknown repository: acme/none"):
        host.branch_exists("acme", "none", "main")
