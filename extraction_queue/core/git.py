"""
Git Utilities - Source repository cloning.
"""

import asyncio
import re
import shutil
from pathlib import Path
from typing import NamedTuple

import structlog
from git import Git, Repo
from git.exc import GitCommandError, InvalidGitRepositoryError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from extraction_queue.core.process import LineHandler, run_command

logger = structlog.get_logger(__name__)

# Lines of git output kept for the error message of a failed attempt
ERROR_TAIL_LINES = 20


class RepoInfo(NamedTuple):
    """Parsed repository information."""

    owner: str
    name: str
    url: str


class CloneError(Exception):
    """Raised when a repository cannot be cloned."""


def parse_github_url(url: str) -> RepoInfo | None:
    """
    Parse a GitHub URL and extract owner and repo name.

    Args:
        url: GitHub repository URL

    Returns:
        RepoInfo with owner, name, and normalized URL, or None for
        non-GitHub remotes
    """
    # Normalize URL
    url = url.strip().rstrip("/")

    # Remove .git suffix if present
    if url.endswith(".git"):
        url = url[:-4]

    # Match patterns
    patterns = [
        r"https?://github\.com/([^/]+)/([^/]+)",
        r"git@github\.com:([^/]+)/([^/]+)",
    ]

    for pattern in patterns:
        match = re.match(pattern, url)
        if match:
            owner, name = match.groups()
            return RepoInfo(
                owner=owner,
                name=name,
                url=f"https://github.com/{owner}/{name}",
            )

    return None


def clear_directory(path: Path) -> None:
    """Empty `path`, creating it if missing."""
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def clone_command(
    url: str,
    dest: Path,
    depth: int | None = 1,
    branch: str | None = None,
) -> list[str]:
    """argv of a `git clone` into `dest`, using GitPython's git executable."""
    argv = [Git.GIT_PYTHON_GIT_EXECUTABLE or "git", "clone", "--progress"]
    if depth:
        argv += ["--depth", str(depth)]
    if branch:
        argv += ["--branch", branch]
    return argv + [url, str(dest)]


async def clone_repository(
    url: str,
    dest: Path,
    depth: int | None = 1,
    attempts: int = 3,
    on_line: LineHandler | None = None,
    branch: str | None = None,
) -> str:
    """
    Clone a repository into `dest`, which is emptied first.

    git runs as a child process of the event loop, so cancelling the caller
    (e.g. on a step timeout) kills the clone. Transient git failures are
    retried with exponential backoff; the target directory is cleared before
    every attempt.

    Args:
        url: Repository URL
        dest: Target directory
        depth: Shallow clone depth (None for full history)
        attempts: Total clone attempts
        on_line: Receives git progress lines
        branch: Branch to check out instead of the default

    Returns:
        Commit hash of the checked out HEAD

    Raises:
        CloneError: If cloning fails on every attempt
    """
    normalized = parse_github_url(url)
    clone_url = normalized.url if normalized else url
    argv = clone_command(clone_url, dest, depth, branch)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(GitCommandError),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    await logger.awarning("clone_retrying", url=clone_url, attempt=number)
                await asyncio.to_thread(clear_directory, dest)

                output: list[str] = []

                async def collect(line: str) -> None:
                    output.append(line)
                    del output[:-ERROR_TAIL_LINES]
                    if on_line is not None:
                        await on_line(line)

                code = await run_command(argv, dest.parent, collect)
                if code != 0:
                    raise GitCommandError(argv, code, stderr="\n".join(output))
                return Repo(dest).head.commit.hexsha
    except GitCommandError as e:
        await asyncio.to_thread(clear_directory, dest)
        raise CloneError(f"Git clone failed: {e.stderr.strip() if e.stderr else e}") from e
    except InvalidGitRepositoryError as e:
        await asyncio.to_thread(clear_directory, dest)
        raise CloneError("Invalid git repository") from e
    except OSError as e:
        raise CloneError(f"Could not run git: {e}") from e
    raise CloneError("Git clone did not run")


def list_files(path: Path) -> list[str]:
    """Relative paths of all files under `path`, sorted."""
    if not path.exists():
        return []
    return sorted(
        str(item.relative_to(path))
        for item in path.rglob("*")
        if item.is_file()
    )
