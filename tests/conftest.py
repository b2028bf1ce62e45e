from __future__ import annotations

import base64
import hashlib
import json
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from autoimpl.memory.schema import Repo, Task  # noqa: E402
from autoimpl.memory.store import MemoryStore  # noqa: E402
from autoimpl.models.llm_client import LLMClient  # noqa: E402
from autoimpl.tools.vcs import (  # noqa: E402
    BranchNotFoundError,
    CommitFile,
    CommitInfo,
    PullRequestInfo,
    RemoteFile,
    RemoteFileNotFoundError,
    VcsError,
    VcsHost,
)

TASK_DESCRIPTION = """Users need to sign in with email and password.

## Acceptance Criteria
- Login form renders email and password fields
- Invalid credentials show an error message
- Successful login redirects to the dashboard
"""

CRITERIA = [
    "Login form renders email and password fields",
    "Invalid credentials show an error message",
    "Successful login redirects to the dashboard",
]


class FakeHost(VcsHost):
    """In-memory host: each branch maps paths to file text."""

    def __init__(self, files: Optional[Dict[str, str]] = None, *, base: str = "main") -> None:
        self.branches: Dict[str, Dict[str, str]] = {base: dict(files or {})}
        self.commits: List[tuple[str, str, List[CommitFile]]] = []
        self.pulls: List[Dict[str, Any]] = []
        self.fail_commit: Optional[str] = None
        self.fail_pull_request: Optional[str] = None

    def branch_exists(self, owner: str, repo: str, branch: str) -> bool:
        return branch in self.branches

    def create_branch(self, owner: str, repo: str, branch: str, from_ref: str) -> None:
        if from_ref not in self.branches:
            raise BranchNotFoundError(f"Unknown ref: {from_ref}")
        self.branches[branch] = dict(self.branches[from_ref])

    def get_tree(self, owner: str, repo: str, ref: str) -> List[str]:
        if ref not in self.branches:
            raise BranchNotFoundError(f"Unknown ref: {ref}")
        return sorted(self.branches[ref])

    def get_file_content(self, owner: str, repo: str, path: str, ref: str) -> RemoteFile:
        files = self.branches.get(ref, {})
        if path not in files:
            raise RemoteFileNotFoundError(f"{path} not found at {ref}")
        text = files[path]
        return RemoteFile(
            path=path,
            sha=hashlib.sha1(text.encode("utf-8")).hexdigest(),
            content=base64.b64encode(text.encode("utf-8")).decode("ascii"),
        )

    def create_commit(
        self,
        owner: str,
        repo: str,
        branch: str,
        message: str,
        files: Sequence[CommitFile],
    ) -> CommitInfo:
        if self.fail_commit:
            raise VcsError(self.fail_commit)
        if branch not in self.branches:
            raise BranchNotFoundError(f"Unknown branch: {branch}")
        tree = self.branches[branch]
        for item in files:
            if item.is_delete:
                tree.pop(item.path, None)
            else:
                tree[item.path] = item.content or ""
        sha = hashlib.sha1(f"{branch}:{len(self.commits)}:{message}".encode("utf-8")).hexdigest()
        self.commits.append((branch, message, list(files)))
        return CommitInfo(sha=sha, message=message)

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
        if self.fail_pull_request:
            raise VcsError(self.fail_pull_request)
        number = len(self.pulls) + 1
        self.pulls.append({"title": title, "body": body, "head": head, "base": base, "draft": draft})
        return PullRequestInfo(number=number, html_url=f"https://git.example/{owner}/{repo}/pull/{number}")

    def delete_branch(self, owner: str, repo: str, branch: str) -> None:
        if branch not in self.branches:
            raise BranchNotFoundError(f"Unknown branch: {branch}")
        del self.branches[branch]


Reply = Union[str, Callable[[str], str]]


class ScriptedLLM(LLMClient):
    """LLM stub that replays queued replies; the last reply repeats once the queue drains."""

    def __init__(self, replies: Sequence[Reply]) -> None:
        super().__init__("scripted", max_attempts=1, retry_delay=0.0)
        self.replies = list(replies)
        self.prompts: List[str] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        prompt = ""
        for message in payload.get("input") or []:
            if message.get("role") == "user":
                prompt = "".join(item.get("text", "") for item in message.get("content") or [])
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return reply(prompt) if callable(reply) else reply


def make_result(
    *,
    passed: Union[bool, Sequence[bool]] = True,
    confidence: float = 0.9,
    changes: Optional[List[Dict[str, Any]]] = None,
    needs_human_input: bool = False,
    human_input_reason: Optional[str] = None,
    commit_message: str = "feat: implement login",
) -> str:
    flags = [passed] * len(CRITERIA) if isinstance(passed, bool) else list(passed)
    if changes is None:
        changes = [
            {
                "path": "src/login.py",
                "operation": "CREATE",
                "content": "def login():\n    return True\n",
                "reason": "Add login handler",
            }
        ]
    payload: Dict[str, Any] = {
        "analysis": {"understanding": "Add login", "approach": "Small module", "risks": []},
        "fileChanges": changes,
        "commitMessage": commit_message,
        "verification": {
            "selfCheck": [
                {"criterion": criterion, "passed": flag, "reason": "checked", "evidence": []}
                for criterion, flag in zip(CRITERIA, flags)
            ],
            "allPassed": all(flags),
            "confidence": confidence,
        },
        "needsHumanInput": needs_human_input,
        "nextSteps": [],
    }
    if human_input_reason is not None:
        payload["humanInputReason"] = human_input_reason
    return json.dumps(payload)


@dataclass
class FakeClock:
    """Monotonic clock advanced only by ``sleep``; hooks fire on every sleep."""

    now: float = 0.0
    sleeps: List[float] = field(default_factory=list)
    hooks: List[Callable[[], None]] = field(default_factory=list)

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        for hook in list(self.hooks):
            hook()


@pytest.fixture()
def store(tmp_path: Path):
    with MemoryStore(tmp_path / "autoimpl.sqlite") as memory_store:
        yield memory_store


@pytest.fixture()
def task() -> Task:
    return Task(
        id="task-1",
        project_id="proj-1",
        key="LS-12",
        title="Add login page",
        description=TASK_DESCRIPTION,
    )


@pytest.fixture()
def repo() -> Repo:
    return Repo(id="repo-1", project_id="proj-1", owner="acme", name="webapp")


@pytest.fixture()
def seeded(store: MemoryStore, task: Task, repo: Repo) -> tuple[Task, Repo]:
    store.save_task(task)
    store.save_repo(repo)
    return task, repo


@pytest.fixture()
def host() -> FakeHost:
    return FakeHost(
        {
            "README.md": "# Webapp\n",
            "package.json": '{"name": "webapp"}\n',
            "src/app.py": "APP = 'webapp'\n",
            "src/login_form.py": "FIELDS = []\n",
        }
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def scripted_llm() -> Callable[..., ScriptedLLM]:
    return ScriptedLLM


@pytest.fixture()
def result_json() -> Callable[..., str]:
    return make_result


@pytest.fixture()
def criteria() -> List[str]:
    return list(CRITERIA)


@dataclass(slots=True)
class GitRemote:
    """Local clone laid out as ``<repos_root>/<owner>/<repo>``."""

    repos_root: Path
    path: Path

    def git(self, *args: str) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=self.path,
            check=True,
            capture_output=True,
            text=True,
        )
        return completed.stdout.strip()


@pytest.fixture()
def git_remote(tmp_path: Path) -> GitRemote:
    """Create a small git repository with one commit on ``main``."""

    repos_root = tmp_path / "repos"
    repo_root = repos_root / "acme" / "webapp"
    repo_root.mkdir(parents=True)
    remote = GitRemote(repos_root=repos_root, path=repo_root)

    remote.git("init")
    remote.git("symbolic-ref", "HEAD", "refs/heads/main")
    remote.git("config", "user.email", "agent@example.com")
    remote.git("config", "user.name", "Agentic Engineer")
    (repo_root / "README.md").write_text("# Webapp\n", encoding="utf-8")
    (repo_root / "src").mkdir()
    (repo_root / "src" / "app.py").write_text("APP = 'webapp'\n", encoding="utf-8")
    remote.git("add", ".")
    remote.git("commit", "-m", "Initial commit")
    return remote
