"""
Git operations on the application working tree.
"""

import logging
from typing import Any, Dict, List, Optional

from pull_agent.config.settings import RepositoryConfig
from pull_agent.exceptions import CommandError
from pull_agent.executor import CommandExecutor
from pull_agent.models.deployment import CommitInfo
from pull_agent.utils.log_sanitizer import sanitize_for_log, sanitize_revision

logger = logging.getLogger(__name__)

# Field and record separators for git log output
_FS = "\x1f"
_RS = "\x1e"
_COMMIT_FORMAT = _FS.join(["%H", "%h", "%an", "%ae", "%ci", "%s"])

GIT_TIMEOUT = 30.0


class GitRepository:
    """The checked-out application repository tracking one branch."""

    def __init__(self, config: RepositoryConfig, executor: CommandExecutor):
        self.config = config
        self.executor = executor

    @property
    def branch(self) -> str:
        return self.config.branch

    @property
    def remote_ref(self) -> str:
        return f"{self.config.remote}/{self.config.branch}"

    async def _git(self, *args: str, timeout: float = GIT_TIMEOUT, **kwargs: Any) -> str:
        result = await self.executor.run(
            ["git", *args], timeout=timeout, cwd=self.config.path, **kwargs
        )
        return result.stdout.strip()

    async def current_revision(self) -> Optional[str]:
        """
        Return the SHA checked out in the working tree.

        Returns:
            Full commit SHA, or None if git cannot answer
        """
        try:
            return await self._git("rev-parse", "HEAD") or None
        except CommandError as e:
            logger.error(f"Failed to read current revision: {e}")
            return None

    async def remote_revision(self) -> Optional[str]:
        """
        Fetch the tracked branch and return its SHA.

        Returns:
            Full commit SHA of the remote branch, or None on failure
        """
        try:
            await self._git("fetch", self.config.remote, self.config.branch, timeout=60)
            return await self._git("rev-parse", self.remote_ref) or None
        except CommandError as e:
            logger.error(f"Failed to fetch remote revision: {e}")
            return None

    async def check_for_updates(self) -> Dict[str, Any]:
        """Compare the local and remote revisions of the tracked branch."""
        local = await self.current_revision()
        remote = await self.remote_revision()
        return {
            "branch": self.config.branch,
            "local": local,
            "remote": remote,
            "has_updates": bool(local and remote and local != remote),
        }

    async def pull(self, timeout: float) -> None:
        """
        Stash local changes, then pull the tracked branch.

        Raises:
            CommandError: If the pull fails or times out
        """
        try:
            await self._git("stash")
        except CommandError as e:
            logger.debug(f"git stash failed, continuing: {e}")
        await self._git(
            "pull", self.config.remote, self.config.branch, timeout=timeout, stream_output=True
        )

    async def reset_hard(self, revision: str, timeout: float = 60) -> None:
        """
        Reset the working tree to ``revision``.

        Raises:
            CommandError: If the reset fails
        """
        logger.info(f"Resetting working tree to {sanitize_revision(revision)}")
        await self._git("reset", "--hard", revision, timeout=timeout)

    async def commit_info(self, revision: str = "HEAD") -> Optional[CommitInfo]:
        """Return metadata for a single commit, or None if it cannot be read."""
        try:
            output = await self._git("log", "-1", f"--format={_COMMIT_FORMAT}", revision)
        except CommandError as e:
            logger.warning(f"Failed to read commit info for {sanitize_for_log(revision)}: {e}")
            return None
        return _parse_commit(output)

    async def commit_history(self, limit: int = 20) -> List[CommitInfo]:
        """
        Return recent commits of the remote tracked branch, newest first.

        Raises:
            CommandError: If git log fails
        """
        output = await self._git(
            "log", f"-{max(1, limit)}", f"--format={_COMMIT_FORMAT}{_RS}", self.remote_ref
        )
        commits = []
        for record in output.split(_RS):
            commit = _parse_commit(record.strip())
            if commit is not None:
                commits.append(commit)
        return commits


def _parse_commit(line: str) -> Optional[CommitInfo]:
    parts = line.split(_FS)
    if len(parts) != 6 or not parts[0]:
        return None
    sha, short_sha, author, email, date, message = parts
    return CommitInfo(
        sha=sha, short_sha=short_sha, author=author, email=email, date=date, message=message
    )
