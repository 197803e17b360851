"""
Story Worktree Manager

One git worktree per story:
  <worktree_root>/story-<key>/   on branch story/<key>

Tracked worktrees are persisted to a JSON state file (atomic replace) so a
restarted process can still push and tear down worktrees it created earlier.
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .delivery_model import (
    BranchPushError,
    GitCommandError,
    Worktree,
    WorktreeNotFoundError,
    WorktreeStatus,
)
from .git_ops import GitOperations

logger = logging.getLogger("workspace_manager")

ACTIVE_STATUSES = {WorktreeStatus.ACTIVE, WorktreeStatus.PR_CREATED}


class WorktreeManager:
    """Creates, pushes and destroys per-story worktrees."""

    def __init__(
        self,
        git: GitOperations,
        worktree_root: Path,
        state_file: Path,
        base_branch: str = "main",
        remote: str = "origin",
    ):
        self.git = git
        self.worktree_root = Path(worktree_root)
        self.state_file = Path(state_file)
        self.base_branch = base_branch
        self.remote = remote
        self._lock = asyncio.Lock()
        self._worktrees: Dict[str, Worktree] = self._load_state()

    @staticmethod
    def branch_name(work_item_key: str) -> str:
        return f"story/{work_item_key}"

    def worktree_path(self, work_item_key: str) -> Path:
        return self.worktree_root / f"story-{work_item_key}"

    def get_worktree(self, work_item_key: str) -> Optional[Worktree]:
        return self._worktrees.get(work_item_key)

    def list_active_worktrees(self) -> List[Worktree]:
        return [w for w in self._worktrees.values() if w.status in ACTIVE_STATUSES]

    async def create_worktree(self, work_item_key: str, base_branch: Optional[str] = None) -> Worktree:
        """Create a worktree on a fresh story branch."""
        async with self._lock:
            existing = self._worktrees.get(work_item_key)
            if existing and existing.status in ACTIVE_STATUSES:
                logger.info(f"[{work_item_key}] Reusing worktree at {existing.path}")
                return existing

            base = base_branch or self.base_branch
            path = self.worktree_path(work_item_key)
            branch = self.branch_name(work_item_key)
            self.worktree_root.mkdir(parents=True, exist_ok=True)
            await self.git.add_worktree(path, branch, base)

            worktree = Worktree(
                work_item_key=work_item_key,
                path=str(path),
                branch=branch,
                base_branch=base,
            )
            self._worktrees[work_item_key] = worktree
            self._save_state()
            logger.info(f"[{work_item_key}] Created worktree {path} on {branch}")
            return worktree

    async def push_branch(self, work_item_key: str) -> None:
        """
        Push the story branch with upstream tracking.

        Raises:
            WorktreeNotFoundError: story has no tracked worktree
            BranchPushError: git rejected the push
        """
        worktree = self._get_or_raise(work_item_key)
        try:
            await self.git.push_branch(worktree.branch, self.remote, cwd=worktree.path)
        except GitCommandError as e:
            raise BranchPushError(worktree.branch, e.output.strip() or str(e)) from e

        async with self._lock:
            worktree.status = WorktreeStatus.PR_CREATED
            self._save_state()

    async def destroy_worktree(self, work_item_key: str) -> None:
        """
        Remove the worktree and its local branch.

        Git failures are logged; the worktree is dropped from tracking anyway.

        Raises:
            WorktreeNotFoundError: story has no tracked worktree
        """
        worktree = self._get_or_raise(work_item_key)
        worktree.status = WorktreeStatus.MERGED

        try:
            await self.git.remove_worktree(worktree.path)
        except GitCommandError as e:
            logger.warning(f"[{work_item_key}] Worktree removal failed, may already be gone: {e}")

        try:
            await self.git.delete_local_branch(worktree.branch)
        except GitCommandError as e:
            logger.warning(f"[{work_item_key}] Could not delete local branch {worktree.branch}: {e}")

        async with self._lock:
            self._worktrees.pop(work_item_key, None)
            self._save_state()
        logger.info(f"[{work_item_key}] Worktree destroyed: {worktree.path}")

    async def sync_with_git(self) -> List[str]:
        """Drop tracked worktrees git no longer knows about. Returns dropped keys."""
        known_paths = {str(Path(p).resolve()) for p, _ in await self.git.list_worktrees()}
        dropped = []
        async with self._lock:
            for key, worktree in list(self._worktrees.items()):
                if str(Path(worktree.path).resolve()) not in known_paths:
                    dropped.append(key)
                    del self._worktrees[key]
            if dropped:
                self._save_state()
        for key in dropped:
            logger.warning(f"[{key}] Worktree missing from git, no longer tracked")
        return dropped

    def _get_or_raise(self, work_item_key: str) -> Worktree:
        worktree = self._worktrees.get(work_item_key)
        if worktree is None:
            raise WorktreeNotFoundError(work_item_key)
        return worktree

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load_state(self) -> Dict[str, Worktree]:
        if not self.state_file.exists():
            return {}
        try:
            state = json.loads(self.state_file.read_text())
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to load worktree state: {e}")
            return {}

        worktrees = {}
        for data in state.get("worktrees", []):
            try:
                worktree = Worktree.from_dict(data)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable worktree entry: {e}")
                continue
            worktrees[worktree.work_item_key] = worktree
        return worktrees

    def _save_state(self) -> None:
        state = {
            "worktrees": [w.to_dict() for w in self._worktrees.values()],
            "last_sync": datetime.utcnow().isoformat(),
        }
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.state_file.with_suffix(".tmp")
        try:
            temp_file.write_text(json.dumps(state, indent=2))
            temp_file.replace(self.state_file)
        except IOError as e:
            logger.error(f"Failed to save worktree state: {e}")
            if temp_file.exists():
                temp_file.unlink()
