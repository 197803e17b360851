"""
PR Creation Automator

Delivers a finished story from its worktree to the base branch.

Pipeline:
1. Push the story branch (FATAL on failure)
2. Create the pull request, or reuse the open one for the branch
3. Apply labels (best-effort)
4. Request reviewers if configured (best-effort)
5. auto_merge off: mark story in-review and stop
   auto_merge on:  wait for CI, re-run failed checks up to max_ci_retries,
                   merge, then tear down
6. Teardown: delete remote branch, destroy worktree (best-effort), mark story
   done, report dependent stories that became ready
7. Fatal error: failure record written, worktree preserved, error re-raised

Escalations (CI timeout, CI failure after retries, merge conflict, merge
failure) leave the PR open and return normally.
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .auto_merger import AutoMerger
from .ci_monitor import VerificationMonitor
from .clock import SystemClock, interruptible_sleep
from .config import DeliveryConfig
from .delivery_model import (
    BranchPushError,
    DeliveryCancelledError,
    DescriptionInputs,
    EscalationEvent,
    EscalationType,
    GitCommandError,
    GitHubAPIError,
    MergeOutcome,
    RequestHandle,
    RequestState,
    VerificationSnapshot,
    WorkItemStatus,
)
from .delivery_store import EscalationLog, FailureRecordStore
from .dependency_trigger import trigger_dependent_stories
from .git_ops import GitOperations
from .github_client import PR_BODY_LIMIT, GitHubClient
from .status_ledger import StatusLedger
from .workspace_manager import WorktreeManager

logger = logging.getLogger("pr_automator")

NotificationCallback = Callable[[str], Awaitable[None]]
ReadyCallback = Callable[[str, List[str]], Awaitable[None]]

BASE_LABELS = ["ai-generated", "reviewed"]

LABEL_COLORS = {
    "ai-generated": "7057ff",
    "reviewed": "008672",
    "feature": "84b6eb",
    "bug-fix": "ee0701",
    "enhancement": "a2eeef",
    "priority-high": "d93f0b",
    "priority-medium": "fbca04",
    "priority-low": "c2e0c6",
}
EPIC_LABEL_COLOR = "0366d6"
DEFAULT_LABEL_COLOR = "ededed"


# -----------------------------------------------------------------------------
# Title and label helpers
# -----------------------------------------------------------------------------
def extract_story_title(work_item_key: str) -> str:
    """'5-7-pr-creation-automation' -> 'Pr Creation Automation'."""
    words = work_item_key.split("-")[2:]
    return " ".join(word[:1].upper() + word[1:] for word in words if word)


def build_pr_title(work_item_key: str, inputs: DescriptionInputs) -> str:
    if inputs.title:
        return inputs.title
    story_title = extract_story_title(work_item_key)
    return f"Story {work_item_key}: {story_title}" if story_title else f"Story {work_item_key}"


def infer_story_type(work_item_key: str) -> str:
    if "bug" in work_item_key or "fix" in work_item_key:
        return "bug-fix"
    if "enhancement" in work_item_key or "improve" in work_item_key:
        return "enhancement"
    return "feature"


def build_labels(work_item_key: str, inputs: DescriptionInputs) -> List[str]:
    labels = list(BASE_LABELS)
    epic = re.match(r"^(\d+)-", work_item_key)
    if epic:
        labels.append(f"epic-{epic.group(1)}")
    labels.append(inputs.story_type or infer_story_type(work_item_key))
    if inputs.priority:
        labels.append(inputs.priority)
    return labels


def get_label_color(label: str) -> str:
    if label.startswith("epic-"):
        return EPIC_LABEL_COLOR
    return LABEL_COLORS.get(label, DEFAULT_LABEL_COLOR)


def handle_from_pull(data: Dict[str, Any], auto_merge: bool) -> RequestHandle:
    """RequestHandle from a GitHub pull request payload."""
    if data.get("merged") or data.get("merged_at"):
        state = RequestState.MERGED
    elif data.get("state") == "closed":
        state = RequestState.CLOSED
    else:
        state = RequestState.OPEN
    return RequestHandle(
        number=int(data["number"]),
        url=data.get("html_url", ""),
        title=data.get("title", ""),
        body=data.get("body") or "",
        source_branch=(data.get("head") or {}).get("ref", ""),
        target_branch=(data.get("base") or {}).get("ref", ""),
        state=state,
        auto_merge_requested=auto_merge,
        merge_reference=data.get("merge_commit_sha") if state == RequestState.MERGED else None,
    )


# -----------------------------------------------------------------------------
# PR Creation Automator
# -----------------------------------------------------------------------------
class PRCreationAutomator:
    """
    Sole owner of the end-to-end delivery pipeline and its escalation policy.

    Holds no per-delivery state, so concurrent deliver() calls for different
    stories can share one instance. The ledger is re-read before every use.
    """

    def __init__(
        self,
        config: DeliveryConfig,
        github: GitHubClient,
        git: GitOperations,
        workspaces: WorktreeManager,
        ledger: Optional[StatusLedger] = None,
        monitor: Optional[VerificationMonitor] = None,
        merger: Optional[AutoMerger] = None,
        failure_store: Optional[FailureRecordStore] = None,
        escalation_log: Optional[EscalationLog] = None,
        clock=None,
        notification_callback: Optional[NotificationCallback] = None,
        ready_callback: Optional[ReadyCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.config = config
        self.github = github
        self.git = git
        self.workspaces = workspaces
        self.clock = clock or SystemClock()
        self.ledger = ledger or StatusLedger(config.ledger_path)
        self.monitor = monitor or VerificationMonitor(github, clock=self.clock)
        self.merger = merger or AutoMerger(
            github, clock=self.clock, recheck_delay=config.mergeability_recheck_delay
        )
        self.failure_store = failure_store or FailureRecordStore(config.failure_records_dir)
        self.escalation_log = escalation_log or EscalationLog(config.escalation_log)
        self.notification_callback = notification_callback
        self.ready_callback = ready_callback
        self.cancel_event = cancel_event

    @classmethod
    def from_config(cls, config: DeliveryConfig, **kwargs) -> "PRCreationAutomator":
        """Wire the real GitHub client, git runner and worktree manager."""
        transport = kwargs.pop("transport", None)
        github = GitHubClient(
            config.github_owner,
            config.github_repo,
            token=config.github_token,
            api_base=config.api_base,
            transport=transport,
        )
        git = GitOperations(config.project_root)
        workspaces = WorktreeManager(
            git,
            worktree_root=config.worktree_root,
            state_file=config.worktree_state_file,
            base_branch=config.base_branch,
            remote=config.remote,
        )
        return cls(config, github, git, workspaces, **kwargs)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def deliver(
        self,
        branch_ref: str,
        work_item_key: str,
        description_inputs: DescriptionInputs,
    ) -> RequestHandle:
        """
        Push, open the PR and (optionally) merge it.

        Returns:
            The RequestHandle. It is merged only if the whole auto-merge path
            succeeded; after an escalation it is still open.

        Raises:
            BranchPushError: the push was rejected (fatal)
            DeliveryCancelledError: cancel_event set while waiting
            Exception: any other unhandled error (fatal, recorded)
        """
        start = self.clock.now()
        logger.info(f"[{work_item_key}] Starting PR creation pipeline for branch {branch_ref}")

        try:
            await self._push_branch(branch_ref, work_item_key)

            handle = await self._create_pull_request(branch_ref, work_item_key, description_inputs)

            await self.non_blocking(
                work_item_key, "apply labels",
                self._apply_labels(handle.number, work_item_key, description_inputs),
            )

            if self.config.has_reviewers:
                await self.non_blocking(
                    work_item_key, "request reviewers",
                    self._request_reviewers(handle.number, work_item_key),
                )

            duration = self.clock.now() - start
            logger.info(f"[{work_item_key}] PR ready in {duration:.1f}s: {handle.url}")

            if self.config.auto_merge:
                return await self._monitor_and_auto_merge(handle, branch_ref, work_item_key)

            await self._handle_manual_review_mode(handle, work_item_key)
            return handle

        except (DeliveryCancelledError, asyncio.CancelledError):
            logger.warning(
                f"[{work_item_key}] Delivery cancelled; PR (if any) left open, worktree preserved"
            )
            raise
        except Exception as e:
            duration = self.clock.now() - start
            logger.error(f"[{work_item_key}] FATAL: delivery failed after {duration:.1f}s: {e}")
            self._handle_fatal_error(e, branch_ref, work_item_key)
            raise

    async def non_blocking(self, work_item_key: str, description: str, operation: Awaitable[Any]) -> bool:
        """
        Await a best-effort operation. Failures are logged, never raised.

        Returns:
            True if the operation completed without error
        """
        try:
            await operation
            return True
        except Exception as e:
            logger.warning(f"[{work_item_key}] Warning: failed to {description}: {e}")
            return False

    async def _push_branch(self, branch_ref: str, work_item_key: str) -> None:
        logger.info(f"[{work_item_key}] Pushing branch {branch_ref} to {self.config.remote}...")

        if self.workspaces.get_worktree(work_item_key) is not None:
            await self.workspaces.push_branch(work_item_key)
        else:
            try:
                await self.git.push_branch(branch_ref, self.config.remote)
            except GitCommandError as e:
                raise BranchPushError(branch_ref, e.output.strip() or str(e)) from e

        logger.info(f"[{work_item_key}] Successfully pushed branch {branch_ref}")

    async def _create_pull_request(
        self,
        branch_ref: str,
        work_item_key: str,
        inputs: DescriptionInputs,
    ) -> RequestHandle:
        logger.info(f"[{work_item_key}] Creating pull request...")

        title = build_pr_title(work_item_key, inputs)
        body = inputs.body or ""
        if len(body) > PR_BODY_LIMIT:
            logger.warning(
                f"[{work_item_key}] PR body exceeds GitHub limit ({len(body)} chars), truncating"
            )
            body = body[:PR_BODY_LIMIT]

        try:
            data = await self.github.create_pull_request(
                title=title,
                body=body,
                head=branch_ref,
                base=self.config.base_branch,
                draft=self.config.draft_pr,
            )
        except GitHubAPIError as e:
            if e.is_already_exists:
                logger.info(f"[{work_item_key}] PR already exists for branch {branch_ref}, reusing it")
                existing = await self._find_existing_pr(branch_ref, work_item_key)
                if existing is not None:
                    return existing
            logger.error(f"[{work_item_key}] Failed to create PR: {e}")
            raise

        handle = handle_from_pull(data, self.config.auto_merge)
        logger.info(f"[{work_item_key}] Pull request created: #{handle.number}")
        return handle

    async def _find_existing_pr(self, branch_ref: str, work_item_key: str) -> Optional[RequestHandle]:
        try:
            pulls = await self.github.list_pull_requests(branch_ref, state="open")
        except GitHubAPIError as e:
            logger.warning(f"[{work_item_key}] Failed to find existing PR: {e}")
            return None
        if not pulls:
            return None
        handle = handle_from_pull(pulls[0], self.config.auto_merge)
        logger.info(f"[{work_item_key}] Found existing PR #{handle.number}")
        return handle

    async def _apply_labels(self, number: int, work_item_key: str, inputs: DescriptionInputs) -> None:
        labels = build_labels(work_item_key, inputs)
        await self._ensure_labels_exist(labels, work_item_key)
        await self.github.add_labels(number, labels)
        logger.info(f"[{work_item_key}] Applied labels: {', '.join(labels)}")

    async def _ensure_labels_exist(self, labels: List[str], work_item_key: str) -> None:
        try:
            existing = {label.get("name") for label in await self.github.list_labels()}
        except GitHubAPIError as e:
            logger.warning(f"[{work_item_key}] Warning: failed to list labels: {e}")
            return

        for label in labels:
            if label in existing:
                continue
            try:
                await self.github.create_label(label, get_label_color(label))
                logger.info(f"[{work_item_key}] Created label: {label}")
            except GitHubAPIError as e:
                # another delivery may have created it first
                logger.warning(f"[{work_item_key}] Warning: could not create label {label}: {e}")

    async def _request_reviewers(self, number: int, work_item_key: str) -> None:
        await self.github.request_reviewers(number, self.config.reviewers, self.config.team_reviewers)
        requested = self.config.reviewers + self.config.team_reviewers
        logger.info(f"[{work_item_key}] Requested reviewers: {', '.join(requested)}")

    async def _handle_manual_review_mode(self, handle: RequestHandle, work_item_key: str) -> None:
        logger.info(f"[{work_item_key}] Manual review mode: skipping CI monitoring and auto-merge")
        logger.info(f"[{work_item_key}] PR URL: {handle.url}")
        await asyncio.to_thread(self.ledger.update_status, work_item_key, WorkItemStatus.IN_REVIEW)

    # -------------------------------------------------------------------------
    # CI + merge
    # -------------------------------------------------------------------------

    async def _wait_for_ci(self, branch_ref: str, work_item_key: str) -> VerificationSnapshot:
        return await self.monitor.wait_for_checks(
            branch_ref,
            polling_interval=self.config.ci_polling_interval,
            max_wait_time=self.config.max_ci_wait_time,
            cancel_event=self.cancel_event,
            work_item_key=work_item_key,
        )

    async def _monitor_and_auto_merge(
        self,
        handle: RequestHandle,
        branch_ref: str,
        work_item_key: str,
    ) -> RequestHandle:
        logger.info(f"[{work_item_key}] Starting CI monitoring and auto-merge for PR #{handle.number}")

        snapshot = await self._wait_for_ci(branch_ref, work_item_key)

        retries = 0
        while not snapshot.passed and not snapshot.timed_out and retries < self.config.max_ci_retries:
            retries += 1
            logger.info(
                f"[{work_item_key}] CI failed, retrying (attempt {retries}/{self.config.max_ci_retries})"
            )
            await self.monitor.retry_failed_checks(snapshot.failed_checks, work_item_key)
            await interruptible_sleep(self.clock, self.config.ci_retry_delay, self.cancel_event)
            snapshot = await self._wait_for_ci(branch_ref, work_item_key)

        if snapshot.timed_out:
            pending = tuple(c.name for c in snapshot.pending_checks)
            await self._escalate(
                EscalationType.CI_TIMEOUT, handle, work_item_key,
                f"CI monitoring timed out after {snapshot.elapsed_seconds:.0f}s", pending,
            )
            return handle

        if not snapshot.passed:
            failed = tuple(c.name for c in snapshot.failed_checks)
            await self._escalate(
                EscalationType.CI_FAILURE, handle, work_item_key,
                f"CI checks failed after {retries} retries", failed,
            )
            return handle

        logger.info(f"[{work_item_key}] All CI checks passed, proceeding with merge")
        outcome = await self.merger.merge(
            handle, self.config.merge_method, work_item_key, cancel_event=self.cancel_event
        )

        if not outcome.success:
            await self._escalate_merge(handle, work_item_key, outcome)
            return handle

        merged = handle.mark_merged(outcome.merge_reference)
        await self._teardown(merged, branch_ref, work_item_key)
        return merged

    async def _escalate_merge(self, handle: RequestHandle, work_item_key: str, outcome: MergeOutcome) -> None:
        escalation_type = EscalationType.MERGE_CONFLICT if outcome.has_conflict else EscalationType.MERGE_FAILURE
        await self._escalate(escalation_type, handle, work_item_key, outcome.error_detail or "merge failed")

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def _teardown(self, handle: RequestHandle, branch_ref: str, work_item_key: str) -> None:
        logger.info(f"[{work_item_key}] Merge succeeded ({handle.merge_reference}), cleaning up")

        if self.config.delete_branch_after_merge:
            await self.non_blocking(
                work_item_key, f"delete remote branch {branch_ref}",
                self._delete_remote_branch(branch_ref, work_item_key),
            )

        await self.non_blocking(
            work_item_key, "clean up worktree",
            self.workspaces.destroy_worktree(work_item_key),
        )

        # ledger I/O runs off the event loop
        await asyncio.to_thread(self.ledger.update_status, work_item_key, WorkItemStatus.DONE)

        result = await asyncio.to_thread(trigger_dependent_stories, self.ledger, work_item_key)
        if result.ready_keys:
            logger.info(f"[{work_item_key}] Dependent stories ready: {', '.join(result.ready_keys)}")
            if self.ready_callback:
                await self.non_blocking(
                    work_item_key, "notify ready stories",
                    self.ready_callback(work_item_key, list(result.ready_keys)),
                )

        logger.info(f"[{work_item_key}] PR creation and merge pipeline completed successfully")

    async def _delete_remote_branch(self, branch_ref: str, work_item_key: str) -> None:
        try:
            await self.git.delete_remote_branch(branch_ref, self.config.remote)
        except GitCommandError as e:
            logger.info(f"[{work_item_key}] git could not delete {branch_ref} ({e}), trying the API")
            await self.github.delete_branch_ref(branch_ref)
        logger.info(f"[{work_item_key}] Deleted remote branch: {branch_ref}")

    # -------------------------------------------------------------------------
    # Escalation and failure handling
    # -------------------------------------------------------------------------

    async def _escalate(
        self,
        escalation_type: EscalationType,
        handle: RequestHandle,
        work_item_key: str,
        detail: str,
        checks: tuple = (),
    ) -> EscalationEvent:
        event = EscalationEvent(
            escalation_type=escalation_type,
            work_item_key=work_item_key,
            pr_number=handle.number,
            pr_url=handle.url,
            detail=detail,
            checks=checks,
        )

        logger.warning(f"[{work_item_key}] ESCALATION {escalation_type.value}: {detail}")
        logger.warning(f"[{work_item_key}]   PR: {handle.url}")
        if checks:
            logger.warning(f"[{work_item_key}]   Checks: {', '.join(checks)}")
        logger.warning(f"[{work_item_key}]   Remedy: {event.remedy}")

        try:
            await asyncio.to_thread(self.escalation_log.record, event)
        except OSError as e:
            logger.error(f"[{work_item_key}] Failed to record escalation: {e}")

        if self.notification_callback:
            await self.non_blocking(
                work_item_key, "send escalation notification",
                self.notification_callback(
                    f"⚠️ *Delivery Escalation: {escalation_type.value}*\n\n"
                    f"*Story:* {work_item_key}\n"
                    f"*PR:* {handle.url}\n"
                    f"*Detail:* {detail}\n\n"
                    f"{event.remedy}"
                ),
            )
        return event

    def _handle_fatal_error(self, error: Exception, branch_ref: str, work_item_key: str) -> None:
        worktree = self.workspaces.get_worktree(work_item_key)
        workspace = worktree.to_dict() if worktree else {"branch": branch_ref}

        try:
            record_path = self.failure_store.record(work_item_key, error, workspace)
        except OSError as e:
            logger.error(f"[{work_item_key}] Failed to save failure record: {e}")
            record_path = None

        location = workspace.get("path", branch_ref)
        logger.error(f"[{work_item_key}] Worktree preserved at: {location}")
        logger.error(f"[{work_item_key}] Next steps:")
        if record_path:
            logger.error(f"[{work_item_key}]   1. Review error details in {record_path}")
        logger.error(f"[{work_item_key}]   2. Investigate worktree at {location}")
        logger.error(f"[{work_item_key}]   3. Create the PR manually or fix the issue and retry")
