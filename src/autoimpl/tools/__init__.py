"""Version-control host integrations used by the implementation loop."""

from .vcs import (
    BranchNotFoundError,
    CommitFile,
    CommitInfo,
    LocalGitHost,
    PullRequestInfo,
    RemoteFile,
    RemoteFileNotFoundError,
    VcsError,
    VcsHost,
)

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
