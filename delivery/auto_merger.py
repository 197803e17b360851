"""
Auto-Merger

Merges a pull request after CI passes.

- mergeable == False  -> conflict, no merge attempted
- mergeable == None   -> GitHub still computing; wait once, re-check once,
                         then attempt the merge anyway
- Branch protection is read for logging only; missing permission is fine
- Squash merge by default; commit message taken from the PR's
  Implementation section
"""

import asyncio
import logging
import re
from typing import Optional

import httpx

from .clock import SystemClock, interruptible_sleep
from .delivery_model import GitHubAPIError, MergeOutcome, RequestHandle
from .github_client import GitHubClient

logger = logging.getLogger("auto_merger")

MERGEABILITY_RECHECK_DELAY = 5.0  # seconds
COMMIT_MESSAGE_LIMIT = 500  # characters
COMMIT_MESSAGE_FALLBACK = "See PR description for details."

_IMPLEMENTATION_HEADING = re.compile(r"^#+\s*Implementation", re.IGNORECASE)
_ANY_HEADING = re.compile(r"^#+\s")
_CONFLICT_WORDS = ("conflict", "merge")


def generate_commit_message(pr_body: str, limit: int = COMMIT_MESSAGE_LIMIT) -> str:
    """
    Extract the Implementation section of a PR body for the merge commit.

    Lines are collected until the next heading or until the text passes the
    limit; an absent section yields a fixed pointer to the PR.
    """
    parts = []
    in_section = False
    for line in (pr_body or "").splitlines():
        if _IMPLEMENTATION_HEADING.match(line):
            in_section = True
            continue
        if in_section and _ANY_HEADING.match(line):
            break
        if in_section and line.strip():
            parts.append(line)
            if len("\n".join(parts)) > limit:
                break

    if not parts:
        return COMMIT_MESSAGE_FALLBACK
    return "\n".join(parts).strip()[:limit]


def is_conflict_error(message: str) -> bool:
    lowered = (message or "").lower()
    return any(word in lowered for word in _CONFLICT_WORDS)


class AutoMerger:
    """Validates mergeability and merges pull requests."""

    def __init__(
        self,
        github: GitHubClient,
        clock=None,
        recheck_delay: float = MERGEABILITY_RECHECK_DELAY,
    ):
        self.github = github
        self.clock = clock or SystemClock()
        self.recheck_delay = recheck_delay

    async def merge(
        self,
        handle: RequestHandle,
        method: str = "squash",
        work_item_key: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MergeOutcome:
        """
        Merge a pull request. Never raises for GitHub-side failures.

        Raises:
            DeliveryCancelledError: cancel_event set during the mergeability wait
        """
        tag = f"[{work_item_key or handle.source_branch}]"
        logger.info(f"{tag} Attempting to merge PR #{handle.number} using {method} merge")

        try:
            pr_data = await self.github.get_pull_request(handle.number)
            mergeable = pr_data.get("mergeable")

            if mergeable is None:
                logger.info(f"{tag} Waiting for GitHub to calculate mergeability...")
                await interruptible_sleep(self.clock, self.recheck_delay, cancel_event)
                pr_data = await self.github.get_pull_request(handle.number)
                mergeable = pr_data.get("mergeable")
                if mergeable is None:
                    logger.info(f"{tag} Mergeability still unknown, attempting merge anyway")

            if mergeable is False:
                logger.warning(f"{tag} PR #{handle.number} has merge conflicts")
                return MergeOutcome(success=False, has_conflict=True, error_detail="PR has merge conflicts")

            base_branch = (pr_data.get("base") or {}).get("ref") or handle.target_branch
            await self._log_branch_protection(tag, base_branch)

            logger.info(f"{tag} Merging PR #{handle.number}...")
            response = await self.github.merge_pull_request(
                handle.number,
                merge_method=method,
                commit_title=handle.title,
                commit_message=generate_commit_message(handle.body),
            ) or {}

            if response.get("merged"):
                sha = response.get("sha")
                logger.info(f"{tag} Successfully merged PR #{handle.number}, merge commit {sha}")
                return MergeOutcome(success=True, merge_reference=sha)

            message = response.get("message") or "GitHub did not merge the pull request"
            logger.warning(f"{tag} Failed to merge PR #{handle.number}: {message}")
            return MergeOutcome(success=False, error_detail=message)

        except (GitHubAPIError, httpx.HTTPError) as e:
            message = e.full_message if isinstance(e, GitHubAPIError) else str(e)
            logger.warning(f"{tag} Error during merge: {message}")
            return MergeOutcome(success=False, has_conflict=is_conflict_error(message), error_detail=message)

    async def _log_branch_protection(self, tag: str, branch: str) -> None:
        try:
            protection = await self.github.get_branch_protection(branch)
        except (GitHubAPIError, httpx.HTTPError):
            logger.info(f"{tag} No branch protection configured for {branch} (or insufficient permissions)")
            return

        logger.info(f"{tag} Branch protection active for {branch}")
        required = (protection or {}).get("required_status_checks") or {}
        contexts = required.get("contexts") or []
        if contexts:
            logger.info(f"{tag} Required status checks: {', '.join(contexts)}")
