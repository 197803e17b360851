"""
Story Delivery - Data Models

Enums, dataclasses and exceptions shared by the delivery pipeline.

Immutability rules:
- VerificationCheck and VerificationSnapshot are frozen; a snapshot describes
  one poll and is never updated afterwards.
- RequestHandle is frozen; state changes produce a new handle, and a merged
  handle cannot change again.
- MergeOutcome and EscalationEvent are frozen results.

This module defines DATA only. It performs no I/O.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple


# -----------------------------------------------------------------------------
# Work Item Status
# -----------------------------------------------------------------------------
class WorkItemStatus(str, Enum):
    """
    Lifecycle status of a story in the sprint ledger.

    Transitions only move forward:
    NOT_STARTED → IN_PROGRESS → IN_REVIEW → DONE
    """
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    IN_REVIEW = "in-review"
    DONE = "done"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["WorkItemStatus"]:
        """Parse a ledger value, accepting the planning tools' aliases."""
        if value is None:
            return None
        text = str(value).strip().lower()
        try:
            return cls(text)
        except ValueError:
            return _STATUS_ALIASES.get(text)


_STATUS_RANK = {
    WorkItemStatus.NOT_STARTED: 0,
    WorkItemStatus.IN_PROGRESS: 1,
    WorkItemStatus.IN_REVIEW: 2,
    WorkItemStatus.DONE: 3,
}

_STATUS_ALIASES = {
    "backlog": WorkItemStatus.NOT_STARTED,
    "drafted": WorkItemStatus.NOT_STARTED,
    "ready-for-dev": WorkItemStatus.NOT_STARTED,
    "review": WorkItemStatus.IN_REVIEW,
}


@dataclass
class WorkItem:
    """A story tracked in the ledger."""
    key: str
    status: Optional[WorkItemStatus]
    prerequisite_keys: List[str] = field(default_factory=list)

    @property
    def is_done(self) -> bool:
        return self.status == WorkItemStatus.DONE


# -----------------------------------------------------------------------------
# Pull Request Handle
# -----------------------------------------------------------------------------
class RequestState(str, Enum):
    """Pull request state."""
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


@dataclass(frozen=True)
class RequestHandle:
    """An open (or merged) pull request."""
    number: int
    url: str
    title: str
    body: str
    source_branch: str
    target_branch: str
    state: RequestState = RequestState.OPEN
    auto_merge_requested: bool = False
    merge_reference: Optional[str] = None

    @property
    def is_merged(self) -> bool:
        return self.state == RequestState.MERGED

    def mark_merged(self, merge_reference: str) -> "RequestHandle":
        """Return a merged copy of this handle."""
        if self.is_merged:
            raise ValueError(f"PR #{self.number} is already merged")
        return replace(self, state=RequestState.MERGED, merge_reference=merge_reference)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "url": self.url,
            "title": self.title,
            "source_branch": self.source_branch,
            "target_branch": self.target_branch,
            "state": self.state.value,
            "auto_merge_requested": self.auto_merge_requested,
            "merge_reference": self.merge_reference,
        }


# -----------------------------------------------------------------------------
# CI Checks
# -----------------------------------------------------------------------------
class CheckStatus(str, Enum):
    """Status of a check run as reported by GitHub."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CheckStatus":
        # waiting/requested/pending are all "not finished yet"
        if value == cls.COMPLETED.value:
            return cls.COMPLETED
        if value == cls.QUEUED.value:
            return cls.QUEUED
        return cls.IN_PROGRESS


class CheckConclusion(str, Enum):
    """Conclusion of a completed check run."""
    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    ACTION_REQUIRED = "action_required"
    SKIPPED = "skipped"
    STALE = "stale"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["CheckConclusion"]:
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


# Only these conclusions fail a check set. NEUTRAL, CANCELLED and SKIPPED do not.
FAILING_CONCLUSIONS = frozenset({
    CheckConclusion.FAILURE,
    CheckConclusion.TIMED_OUT,
    CheckConclusion.ACTION_REQUIRED,
})


@dataclass(frozen=True)
class VerificationCheck:
    """One check run for a ref."""
    name: str
    status: CheckStatus
    id: int
    conclusion: Optional[CheckConclusion] = None

    @property
    def is_completed(self) -> bool:
        return self.status == CheckStatus.COMPLETED

    @property
    def is_failing(self) -> bool:
        return self.is_completed and self.conclusion in FAILING_CONCLUSIONS

    @classmethod
    def from_check_run(cls, data: Dict[str, Any]) -> "VerificationCheck":
        """Build from a GitHub check-run payload."""
        status = CheckStatus.parse(data.get("status"))
        conclusion = CheckConclusion.parse(data.get("conclusion")) if status == CheckStatus.COMPLETED else None
        return cls(
            name=data.get("name", "unknown"),
            status=status,
            id=int(data["id"]),
            conclusion=conclusion,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "conclusion": self.conclusion.value if self.conclusion else None,
            "id": self.id,
        }


@dataclass(frozen=True)
class VerificationSnapshot:
    """The check set observed at one poll."""
    checks: Tuple[VerificationCheck, ...]
    elapsed_seconds: float
    timed_out: bool

    @property
    def all_completed(self) -> bool:
        return len(self.checks) > 0 and all(c.is_completed for c in self.checks)

    @property
    def failed_checks(self) -> List[VerificationCheck]:
        return [c for c in self.checks if c.is_failing]

    @property
    def pending_checks(self) -> List[VerificationCheck]:
        return [c for c in self.checks if not c.is_completed]

    @property
    def passed(self) -> bool:
        """True only for a complete, non-empty check set with no failing conclusion."""
        return not self.timed_out and self.all_completed and not self.failed_checks


# -----------------------------------------------------------------------------
# Merge Outcome
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class MergeOutcome:
    """Result of a merge attempt."""
    success: bool
    has_conflict: bool = False
    merge_reference: Optional[str] = None
    error_detail: Optional[str] = None


# -----------------------------------------------------------------------------
# Dependency Resolution
# -----------------------------------------------------------------------------
@dataclass
class DependencyResolutionResult:
    """Stories unblocked by a completed story."""
    ready_keys: List[str] = field(default_factory=list)
    blocked_keys: List[str] = field(default_factory=list)
    missing_prerequisites: Dict[str, List[str]] = field(default_factory=dict)
    cycles: List[List[str]] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Worktrees
# -----------------------------------------------------------------------------
class WorktreeStatus(str, Enum):
    """Lifecycle of a story worktree."""
    ACTIVE = "active"
    PR_CREATED = "pr-created"
    MERGED = "merged"
    ABANDONED = "abandoned"


@dataclass
class Worktree:
    """An isolated git worktree for one story."""
    work_item_key: str
    path: str
    branch: str
    base_branch: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    status: WorktreeStatus = WorktreeStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "work_item_key": self.work_item_key,
            "path": self.path,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Worktree":
        return cls(
            work_item_key=data["work_item_key"],
            path=data["path"],
            branch=data["branch"],
            base_branch=data.get("base_branch", "main"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.utcnow(),
            status=WorktreeStatus(data.get("status", WorktreeStatus.ACTIVE.value)),
        )


# -----------------------------------------------------------------------------
# PR Description Inputs
# -----------------------------------------------------------------------------
@dataclass
class DescriptionInputs:
    """
    Pre-rendered PR description plus label hints.

    The body is composed upstream from the story, implementation, test suite
    and review report.
    """
    body: str
    title: Optional[str] = None
    story_type: Optional[str] = None
    priority: str = "priority-high"


# -----------------------------------------------------------------------------
# Escalations
# -----------------------------------------------------------------------------
class EscalationType(str, Enum):
    """Conditions that stop auto-merge and need a human."""
    CI_TIMEOUT = "ci_timeout"
    CI_FAILURE = "ci_failure"
    MERGE_CONFLICT = "merge_conflict"
    MERGE_FAILURE = "merge_failure"

    @property
    def remedy(self) -> str:
        return _ESCALATION_REMEDIES[self]


_ESCALATION_REMEDIES = {
    EscalationType.CI_TIMEOUT: "Inspect CI logs for stuck checks, then re-run them or merge manually",
    EscalationType.CI_FAILURE: "Inspect CI logs, fix the failing checks and push, or retry manually",
    EscalationType.MERGE_CONFLICT: "Resolve the merge conflict against the base branch and push",
    EscalationType.MERGE_FAILURE: "Check branch protection and permissions, then retry the merge manually",
}


@dataclass(frozen=True)
class EscalationEvent:
    """A reported stop of the auto-merge path. The PR stays open."""
    escalation_type: EscalationType
    work_item_key: str
    pr_number: int
    pr_url: str
    detail: str
    checks: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def remedy(self) -> str:
        return self.escalation_type.remedy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escalation_type": self.escalation_type.value,
            "work_item_key": self.work_item_key,
            "pr_number": self.pr_number,
            "pr_url": self.pr_url,
            "detail": self.detail,
            "checks": list(self.checks),
            "remedy": self.remedy,
            "created_at": self.created_at.isoformat(),
        }


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------
class DeliveryError(Exception):
    """Base class for delivery pipeline errors."""


class GitCommandError(DeliveryError):
    """A git subprocess exited non-zero."""

    def __init__(self, args: Tuple[str, ...], returncode: int, output: str):
        self.command = args
        self.returncode = returncode
        self.output = output
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {output.strip()}")


class BranchPushError(DeliveryError):
    """Pushing the story branch was rejected."""

    def __init__(self, branch: str, reason: str):
        self.branch = branch
        super().__init__(f"Branch push failed for {branch}: {reason}")


class GitHubAPIError(DeliveryError):
    """Non-success response from the GitHub REST API."""

    def __init__(self, status_code: int, message: str, errors: Optional[List[Any]] = None):
        self.status_code = status_code
        self.message = message
        self.errors = errors or []
        super().__init__(f"GitHub API error {status_code}: {self.full_message}")

    @property
    def full_message(self) -> str:
        details = []
        for err in self.errors:
            if isinstance(err, dict):
                details.append(str(err.get("message") or err.get("code") or err))
            else:
                details.append(str(err))
        if details:
            return f"{self.message} ({'; '.join(details)})"
        return self.message

    @property
    def is_already_exists(self) -> bool:
        return self.status_code == 422 and "already exists" in self.full_message.lower()


class WorktreeNotFoundError(DeliveryError):
    """No tracked worktree for the story."""

    def __init__(self, work_item_key: str):
        self.work_item_key = work_item_key
        super().__init__(f"No worktree tracked for story {work_item_key}")


class LedgerError(DeliveryError):
    """The sprint status ledger could not be read or written."""


class DeliveryCancelledError(DeliveryError):
    """Delivery was cancelled while waiting (host shutdown)."""
