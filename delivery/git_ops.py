"""
Local git operations.

Runs the git binary as an async subprocess. Used to push story branches,
delete remote branches and manage worktrees.
"""

import asyncio
import logging
from pathlib import Path
from typing import Tuple, Union

from .delivery_model import GitCommandError

logger = logging.getLogger("git_ops")

GIT_TIMEOUT = 300  # seconds


class GitOperations:
    """git subprocess runner rooted at the main repository."""

    def __init__(self, repo_root: Union[str, Path], binary: str = "git"):
        self.repo_root = Path(repo_root)
        self.binary = binary

    async def run(self, *args: str, cwd: Union[str, Path, None] = None) -> str:
        """
        Run git and return combined stdout/stderr.

        Raises:
            GitCommandError: non-zero exit or timeout
        """
        process = await asyncio.create_subprocess_exec(
            self.binary, *args,
            cwd=str(cwd or self.repo_root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=GIT_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(args, -1, f"timed out after {GIT_TIMEOUT}s")

        output = stdout.decode(errors="replace") if stdout else ""
        if process.returncode != 0:
            raise GitCommandError(args, process.returncode, output)
        return output

    async def push_branch(self, branch: str, remote: str = "origin", cwd: Union[str, Path, None] = None) -> None:
        """Push with upstream tracking."""
        await self.run("push", "--set-upstream", remote, branch, cwd=cwd)

    async def delete_remote_branch(self, branch: str, remote: str = "origin") -> None:
        await self.run("push", remote, "--delete", branch)

    async def add_worktree(self, path: Union[str, Path], branch: str, base_branch: str) -> None:
        await self.run("worktree", "add", "-b", branch, str(path), base_branch)

    async def remove_worktree(self, path: Union[str, Path]) -> None:
        await self.run("worktree", "remove", "--force", str(path))

    async def delete_local_branch(self, branch: str) -> None:
        await self.run("branch", "-D", branch)

    async def list_worktrees(self) -> Tuple[Tuple[str, str], ...]:
        """(path, branch) for each worktree git knows about."""
        output = await self.run("worktree", "list", "--porcelain")
        entries = []
        path = None
        for line in output.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree "):]
            elif line.startswith("branch ") and path:
                entries.append((path, line[len("branch "):].replace("refs/heads/", "", 1)))
                path = None
        return tuple(entries)
