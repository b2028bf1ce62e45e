"""Version-control host interface and a local git implementation.

The implementation loop talks to the host only through :class:`VcsHost`:
branch management, tree and file reads, one multi-file commit per iteration,
and draft pull requests. :class:`LocalGitHost` serves repositories from a
directory of local clones and writes exclusively through git plumbing, so a
checked-out working tree is never touched.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from ..memory.schema import utc_now

__all__ = [
    "BranchNotFoundError",
    "CommitFile",
    "CommitInfo",
    "LocalGitHost",
    "PullRequestInfo",
    "RemoteFile",
    "RemoteFileNotFoundError",
    "VcsError",
    "VcsHost",
]

LOGGER = logging.getLogger(__name__)

BLOB_MODE = "100644"


class VcsError(RuntimeError):
    """Raised when a host operation fails."""


class RemoteFileNotFoundError(VcsError):
    """Raised when a path does not exist at the requested ref."""


class BranchNotFoundError(VcsError):
    """Raised when a branch or ref cannot be resolved."""


@dataclass(slots=True)
class RemoteFile:
    """File content as served by the host (base64 with an encoding tag)."""

    path: str
    sha: str
    content: str
    encoding: str = "base64"

    def text(self) -> str:
        if self.encoding == "base64":
            return base64.b64decode(self.content).decode("utf-8", errors="replace")
        return self.content


@dataclass(slots=True)
class CommitFile:
    """One entry of a multi-file commit; ``content=None`` deletes the path."""

    path: str
    content: Optional[str]
    mode: str = BLOB_MODE
    type: str = "blob"

    @property
    def is_delete(self) -> bool:
        return self.content is None


@dataclass(slots=True)
class CommitInfo:
    sha: str
    message: str


@dataclass(slots=True)
class PullRequestInfo:
    number: int
    html_url: str


class VcsHost(ABC):
    """Operations the implementation loop needs from a git hosting service."""

    @abstractmethod
    def branch_exists(self, owner: str, repo: str, branch: str) -> bool: ...

    @abstractmethod
    def create_branch(self, owner: str, repo: str, branch: str, from_ref: str) -> None: ...

    @abstractmethod
    def get_tree(self, owner: str, repo: str, ref: str) -> List[str]:
        """Return every file path (blobs only) reachable from ``ref``."""

    @abstractmethod
    def get_file_content(self, owner: str, repo: str, path: str, ref: str) -> RemoteFile:
        """Return ``path`` at ``ref`` or raise :class:`RemoteFileNotFoundError`."""

    @abstractmethod
    def create_commit(
        self,
        owner: str,
        repo: str,
        branch: str,
        message: str,
        files: Sequence[CommitFile],
    ) -> CommitInfo:
        """Apply ``files`` to ``branch`` as a single commit."""

    @abstractmethod
    def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = True,
    ) -> PullRequestInfo: ...

    @abstractmethod
    def delete_branch(self, owner: str, repo: str, branch: str) -> None:
        """Delete ``branch`` or raise :class:`BranchNotFoundError`."""


class LocalGitHost(VcsHost):
    """Host backed by local clones laid out as ``<repos_root>/<owner>/<repo>``."""

    def __init__(
        self,
        repos_root: Path | str,
        *,
        author_name: str = "autoimpl",
        author_email: str = "autoimpl@localhost",
    ) -> None:
        self.repos_root = Path(repos_root).resolve()
        self._identity = {
            "GIT_AUTHOR_NAME": author_name,
            "GIT_AUTHOR_EMAIL": author_email,
            "GIT_COMMITTER_NAME": author_name,
            "GIT_COMMITTER_EMAIL": author_email,
        }

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> "LocalGitHost":
        host_cfg = config.get("host") or {}
        repos_root = "repos"
        if isinstance(host_cfg, Mapping):
            repos_root = str(host_cfg.get("repos_root") or repos_root)
        return cls(repos_root)

    # ------------------------------------------------------------------ git IO
    def _repo_path(self, owner: str, repo: str) -> Path:
        path = self.repos_root / owner / repo
        if not (path / ".git").exists() and not (path / "HEAD").exists():
            raise VcsError(f"Unknown repository: {owner}/{repo}")
        return path

    def _run_git(
        self,
        root: Path,
        args: Sequence[str],
        *,
        check: bool = True,
        env: Optional[Dict[str, str]] = None,
        stdin: Optional[bytes] = None,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        process = subprocess.run(
            command,
            cwd=root,
            capture_output=True,
            text=False,
            check=False,
            input=stdin,
            env={**os.environ, **env} if env else None,
        )
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise VcsError(f"git {' '.join(args)} failed: {message}")
        return result

    def _resolve(self, root: Path, ref: str) -> str:
        result = self._run_git(root, ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        sha = result.stdout.strip()
        if result.returncode != 0 or not sha:
            raise BranchNotFoundError(f"Unknown ref: {ref}")
        return sha

    # -------------------------------------------------------------- branches
    def branch_exists(self, owner: str, repo: str, branch: str) -> bool:
        root = self._repo_path(owner, repo)
        result = self._run_git(
            root, ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return result.returncode == 0

    def create_branch(self, owner: str, repo: str, branch: str, from_ref: str) -> None:
        root = self._repo_path(owner, repo)
        sha = self._resolve(root, from_ref)
        # Empty old value: refuse to overwrite an existing branch.
        self._run_git(root, ["update-ref", f"refs/heads/{branch}", sha, ""])
        LOGGER.info("Created branch %s at %s in %s/%s", branch, sha[:8], owner, repo)

    def delete_branch(self, owner: str, repo: str, branch: str) -> None:
        root = self._repo_path(owner, repo)
        if not self.branch_exists(owner, repo, branch):
            raise BranchNotFoundError(f"Branch not found: {branch}")
        head = self._run_git(root, ["symbolic-ref", "--quiet", "HEAD"], check=False)
        if head.stdout.strip() == f"refs/heads/{branch}":
            raise VcsError(f"Refusing to delete the checked-out branch {branch}")
        self._run_git(root, ["update-ref", "-d", f"refs/heads/{branch}"])
        LOGGER.info("Deleted branch %s in %s/%s", branch, owner, repo)

    # ----------------------------------------------------------------- reads
    def get_tree(self, owner: str, repo: str, ref: str) -> List[str]:
        root = self._repo_path(owner, repo)
        sha = self._resolve(root, ref)
        result = self._run_git(root, ["ls-tree", "-r", "-z", "--name-only", sha])
        return [entry for entry in result.stdout.split("\0") if entry]

    def get_file_content(self, owner: str, repo: str, path: str, ref: str) -> RemoteFile:
        root = self._repo_path(owner, repo)
        commit = self._resolve(root, ref)
        probe = self._run_git(root, ["rev-parse", "--verify", "--quiet", f"{commit}:{path}"], check=False)
        blob_sha = probe.stdout.strip()
        if probe.returncode != 0 or not blob_sha:
            raise RemoteFileNotFoundError(f"{path} not found at {ref}")
        kind = self._run_git(root, ["cat-file", "-t", blob_sha]).stdout.strip()
        if kind != "blob":
            raise RemoteFileNotFoundError(f"{path} is not a file at {ref}")
        text = self._run_git(root, ["cat-file", "blob", blob_sha]).stdout
        return RemoteFile(
            path=path,
            sha=blob_sha,
            content=base64.b64encode(text.encode("utf-8")).decode("ascii"),
        )

    # ---------------------------------------------------------------- writes
    def create_commit(
        self,
        owner: str,
        repo: str,
        branch: str,
        message: str,
        files: Sequence[CommitFile],
    ) -> CommitInfo:
        root = self._repo_path(owner, repo)
        parent = self._resolve(root, f"refs/heads/{branch}")
        with tempfile.TemporaryDirectory(prefix="autoimpl-index-") as scratch:
            env = {**self._identity, "GIT_INDEX_FILE": str(Path(scratch) / "index")}
            self._run_git(root, ["read-tree", parent], env=env)
            for item in files:
                if item.is_delete:
                    self._run_git(root, ["update-index", "--force-remove", "--", item.path], env=env)
                    continue
                blob = self._run_git(
                    root,
                    ["hash-object", "-w", "--stdin"],
                    env=env,
                    stdin=(item.content or "").encode("utf-8"),
                ).stdout.strip()
                self._run_git(
                    root,
                    ["update-index", "--add", "--cacheinfo", f"{item.mode},{blob},{item.path}"],
                    env=env,
                )
            tree = self._run_git(root, ["write-tree"], env=env).stdout.strip()
            commit = self._run_git(
                root, ["commit-tree", tree, "-p", parent, "-m", message], env=env
            ).stdout.strip()
        # Compare-and-swap against the parent we built on.
        self._run_git(root, ["update-ref", f"refs/heads/{branch}", commit, parent])
        LOGGER.info("Committed %d file(s) to %s as %s", len(files), branch, commit[:8])
        return CommitInfo(sha=commit, message=message)

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = True,
    ) -> PullRequestInfo:
        root = self._repo_path(owner, repo)
        self._resolve(root, f"refs/heads/{head}")
        self._resolve(root, f"refs/heads/{base}")
        pulls_dir = self._git_dir(root) / "autoimpl" / "pulls"
        pulls_dir.mkdir(parents=True, exist_ok=True)
        number = len(list(pulls_dir.glob("*.json"))) + 1
        record_path = pulls_dir / f"{number}.json"
        info = PullRequestInfo(number=number, html_url=record_path.as_uri())
        record = {
            **asdict(info),
            "title": title,
            "body": body,
            "head": head,
            "base": base,
            "draft": draft,
            "created_at": utc_now().isoformat(),
        }
        record_path.write_text(json.dumps(record, indent=2), encoding="utf-8")
        LOGGER.info("Opened pull request #%d %s -> %s in %s/%s", number, head, base, owner, repo)
        return info

    def _git_dir(self, root: Path) -> Path:
        result = self._run_git(root, ["rev-parse", "--absolute-git-dir"])
        return Path(result.stdout.strip())
