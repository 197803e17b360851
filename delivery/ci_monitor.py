"""
CI Monitor - GitHub Check Run Polling

Waits for the check runs of a ref to finish and reports what it saw.

IMPORTANT:
- This is a polling monitor (webhooks are not always available)
- The deadline is wall-clock time since the wait began, never an iteration count
- A slow GitHub response cannot push the return past max_wait + polling_interval
- An empty check set means "not reported yet", never "passed"
- Cancellation interrupts the sleep between polls
- Re-running failed checks is the caller's decision (see retry_failed_checks)
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Tuple

import httpx

from .clock import SystemClock, interruptible_sleep
from .delivery_model import (
    CheckConclusion,
    CheckStatus,
    DeliveryCancelledError,
    GitHubAPIError,
    VerificationCheck,
    VerificationSnapshot,
)
from .github_client import GitHubClient

logger = logging.getLogger("ci_monitor")

# Configuration (seconds)
DEFAULT_POLLING_INTERVAL = 30.0
DEFAULT_MAX_WAIT_TIME = 1800.0
STATUS_SUMMARY_INTERVAL = 300.0
PROGRESS_LOG_EVERY = 10  # iterations


class VerificationMonitor:
    """
    Polls GitHub check runs for a ref until all complete or time runs out.
    """

    def __init__(self, github: GitHubClient, clock=None):
        self.github = github
        self.clock = clock or SystemClock()

    async def fetch_checks(self, ref: str) -> List[VerificationCheck]:
        """Current check runs for a ref."""
        runs = await self.github.list_check_runs(ref)
        return [VerificationCheck.from_check_run(run) for run in runs]

    async def wait_for_checks(
        self,
        ref: str,
        polling_interval: float = DEFAULT_POLLING_INTERVAL,
        max_wait_time: float = DEFAULT_MAX_WAIT_TIME,
        cancel_event: Optional[asyncio.Event] = None,
        work_item_key: Optional[str] = None,
    ) -> VerificationSnapshot:
        """
        Poll until every check completes or max_wait_time elapses.

        Returns:
            VerificationSnapshot; timed_out=True carries the last observed
            checks, which may still be pending.

        Raises:
            DeliveryCancelledError: cancel_event was set
        """
        tag = f"[{work_item_key or ref}]"
        start = self.clock.now()
        last_summary = start
        last_checks: Tuple[VerificationCheck, ...] = ()
        iteration = 0

        logger.info(f"{tag} Starting CI monitoring for {self.github.owner}/{self.github.repo}@{ref}")
        logger.info(f"{tag} Polling interval: {polling_interval}s, max wait: {max_wait_time}s")

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise DeliveryCancelledError(f"CI monitoring cancelled for {ref}")

            iteration += 1
            remaining = max_wait_time - (self.clock.now() - start)
            try:
                checks = await asyncio.wait_for(
                    self.fetch_checks(ref),
                    timeout=max(remaining, 0) + polling_interval,
                )
                last_checks = tuple(checks)
            except asyncio.TimeoutError:
                logger.warning(f"{tag} Fetching checks timed out, keeping last observed set")
            except (GitHubAPIError, httpx.HTTPError) as e:
                logger.warning(f"{tag} Error fetching checks: {e}")

            elapsed = self.clock.now() - start

            if elapsed >= max_wait_time:
                logger.warning(f"{tag} CI timeout reached after {elapsed:.0f}s")
                return VerificationSnapshot(checks=last_checks, elapsed_seconds=elapsed, timed_out=True)

            if last_checks and all(c.is_completed for c in last_checks):
                snapshot = VerificationSnapshot(checks=last_checks, elapsed_seconds=elapsed, timed_out=False)
                logger.info(f"{tag} All checks completed after {elapsed:.0f}s")
                logger.info(f"{tag} Result: {'PASSED' if snapshot.passed else 'FAILED'}")
                if snapshot.failed_checks:
                    logger.info(f"{tag} Failed checks: {', '.join(c.name for c in snapshot.failed_checks)}")
                return snapshot

            if self.clock.now() - last_summary >= STATUS_SUMMARY_INTERVAL:
                self._log_summary(tag, last_checks, elapsed)
                last_summary = self.clock.now()

            if iteration == 1 or iteration % PROGRESS_LOG_EVERY == 0:
                completed = sum(1 for c in last_checks if c.is_completed)
                pending = [c.name for c in last_checks if not c.is_completed]
                logger.info(f"{tag} Iteration {iteration}: {completed}/{len(last_checks)} checks completed")
                if pending:
                    logger.info(f"{tag} Pending: {', '.join(pending)}")
                elif not last_checks:
                    logger.info(f"{tag} No checks reported yet")

            await interruptible_sleep(
                self.clock,
                min(polling_interval, max_wait_time - elapsed),
                cancel_event,
            )

    def _log_summary(self, tag: str, checks: Tuple[VerificationCheck, ...], elapsed: float) -> None:
        queued = sum(1 for c in checks if c.status == CheckStatus.QUEUED)
        running = sum(1 for c in checks if c.status == CheckStatus.IN_PROGRESS)
        completed = [c for c in checks if c.is_completed]
        success = sum(1 for c in completed if c.conclusion == CheckConclusion.SUCCESS)
        failing = sum(1 for c in completed if c.is_failing)
        logger.info(f"{tag} Status update ({elapsed:.0f}s elapsed):")
        logger.info(f"{tag}   queued: {queued}, in progress: {running}")
        logger.info(
            f"{tag}   completed: {len(completed)} ({success} success, {failing} failing, "
            f"{len(completed) - success - failing} other)"
        )

    async def retry_failed_checks(
        self,
        failed_checks: Iterable[VerificationCheck],
        work_item_key: Optional[str] = None,
    ) -> List[str]:
        """
        Ask GitHub to re-run each failed check. Best-effort per check.

        Returns:
            Names of checks whose re-run was accepted
        """
        failed_checks = list(failed_checks)
        tag = f"[{work_item_key}]" if work_item_key else "[ci]"
        logger.info(f"{tag} Retrying {len(failed_checks)} failed checks")

        requested = []
        for check in failed_checks:
            try:
                await self.github.rerequest_check_run(check.id)
                requested.append(check.name)
                logger.info(f"{tag} Requested re-run for check: {check.name}")
            except (GitHubAPIError, httpx.HTTPError) as e:
                logger.warning(f"{tag} Failed to re-run check {check.name}: {e}")
        return requested
