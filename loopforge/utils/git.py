"""Version-control helpers for agent loops."""

from __future__ import annotations

import asyncio
import logging

from git import Repo as GitRepo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from loopforge.constants import PUSH_TIMEOUT_SECONDS
from loopforge.errors import LoopForgeError


logger = logging.getLogger(__name__)

NOT_A_REPO = "not a git repo"
DETACHED_HEAD = "HEAD"


class GitError(LoopForgeError):
    """Base exception for Git-related errors."""


class RepositoryNotFoundError(GitError):
    """Raised when a Git repository is not found at the specified path."""


class PushError(GitError):
    """Raised when a branch cannot be pushed to origin."""


def open_repo(repo_root: str) -> GitRepo:
    """
    Open the repository containing repo_root.

    Raises:
        RepositoryNotFoundError: If repo_root is not inside a repository
    """
    try:
        return GitRepo(repo_root, search_parent_directories=True)
    except InvalidGitRepositoryError as e:
        raise RepositoryNotFoundError(f"Not a git repository: {repo_root}") from e
    except NoSuchPathError as e:
        raise RepositoryNotFoundError(f"Path does not exist: {repo_root}") from e


def get_current_branch(repo_root: str) -> str:
    """
    Best-effort name of the checked-out branch.

    Returns:
        Branch name, "HEAD" when detached, or "not a git repo"
    """
    try:
        repo = open_repo(repo_root)
    except RepositoryNotFoundError as e:
        logger.debug(str(e))
        return NOT_A_REPO

    try:
        return repo.active_branch.name or DETACHED_HEAD
    except TypeError:
        return DETACHED_HEAD


def _push(repo_root: str, branch: str, timeout: float) -> str:
    repo = open_repo(repo_root)
    try:
        return repo.git.push("origin", branch, kill_after_timeout=timeout)
    except GitCommandError as first:
        logger.debug(f"Plain push of {branch} failed, retrying with upstream: {first}")
    try:
        return repo.git.push("-u", "origin", branch, kill_after_timeout=timeout)
    except GitCommandError as e:
        raise PushError(f"git push origin {branch} failed: {e.stderr.strip() or e}") from e


async def push_branch(repo_root: str, branch: str, timeout: float = PUSH_TIMEOUT_SECONDS) -> str:
    """
    Push branch to origin, setting the upstream if the plain push fails.

    Returns:
        Output of the successful push

    Raises:
        RepositoryNotFoundError: If repo_root is not inside a repository
        PushError: If both push attempts fail
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _push, repo_root, branch, timeout)
