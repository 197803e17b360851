"""
Pytest configuration for story delivery tests.

This module provides:
1. A fake clock whose sleep advances time instantly
2. In-memory fakes for the GitHub client and the git runner
3. Sprint status ledger fixtures
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from delivery.config import DeliveryConfig
from delivery.delivery_model import GitCommandError, GitHubAPIError
from delivery.status_ledger import StatusLedger


# -----------------------------------------------------------------------------
# Clock
# -----------------------------------------------------------------------------
class FakeClock:
    """Deterministic clock. sleep() advances time without waiting."""

    def __init__(self, start: float = 0.0):
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        await asyncio.sleep(0)


# -----------------------------------------------------------------------------
# GitHub
# -----------------------------------------------------------------------------
def check_run(run_id: int, name: str, status: str = "completed", conclusion: Optional[str] = "success") -> Dict[str, Any]:
    """A GitHub check-run payload."""
    return {
        "id": run_id,
        "name": name,
        "status": status,
        "conclusion": conclusion if status == "completed" else None,
    }


class FakeGitHub:
    """
    In-memory stand-in for GitHubClient.

    check_script: successive results of list_check_runs; each entry is a list
    of check-run payloads or an exception to raise. The last entry repeats.
    """

    def __init__(self, owner: str = "acme", repo: str = "app"):
        self.owner = owner
        self.repo = repo
        self.pulls: Dict[int, Dict[str, Any]] = {}
        self.next_number = 50
        self.lose_next_create_response = False

        self.labels: List[Dict[str, Any]] = [{"name": "ai-generated", "color": "7057ff"}]
        self.created_labels: List[tuple] = []
        self.applied_labels: Dict[int, List[str]] = {}
        self.label_error: Optional[Exception] = None

        self.reviewer_requests: List[tuple] = []
        self.reviewer_error: Optional[Exception] = None

        self.check_script: List[Any] = [[]]
        self.check_fetches = 0
        self.on_check_fetch = None
        self.rerequested: List[int] = []
        self.rerequest_errors: Dict[int, Exception] = {}

        self.mergeable_script: List[Optional[bool]] = [True]
        self.pull_fetches = 0
        self.merge_calls: List[Dict[str, Any]] = []
        self.merge_response: Dict[str, Any] = {"merged": True, "sha": "abc123", "message": "Pull Request successfully merged"}
        self.merge_error: Optional[Exception] = None
        self.protection: Optional[Dict[str, Any]] = None

        self.deleted_refs: List[str] = []

    def open_pulls_for(self, branch: str) -> List[Dict[str, Any]]:
        return [p for p in self.pulls.values() if p["head"]["ref"] == branch and p["state"] == "open"]

    # Pull requests

    async def create_pull_request(self, title, body, head, base, draft=False):
        if self.open_pulls_for(head):
            raise GitHubAPIError(422, "Validation Failed", [
                {"resource": "PullRequest", "code": "custom",
                 "message": f"A pull request already exists for {self.owner}:{head}."},
            ])
        number = self.next_number
        self.next_number += 1
        pull = {
            "number": number,
            "html_url": f"https://github.com/{self.owner}/{self.repo}/pull/{number}",
            "title": title,
            "body": body,
            "state": "open",
            "draft": draft,
            "head": {"ref": head},
            "base": {"ref": base},
        }
        self.pulls[number] = pull
        if self.lose_next_create_response:
            self.lose_next_create_response = False
            raise ConnectionResetError("connection reset before response was read")
        return dict(pull)

    async def list_pull_requests(self, head_branch, state="open"):
        return [dict(p) for p in self.open_pulls_for(head_branch)]

    async def get_pull_request(self, number):
        self.pull_fetches += 1
        mergeable = self.mergeable_script.pop(0) if len(self.mergeable_script) > 1 else self.mergeable_script[0]
        pull = dict(self.pulls.get(number) or {"number": number, "base": {"ref": "main"}})
        pull["mergeable"] = mergeable
        return pull

    async def request_reviewers(self, number, reviewers, team_reviewers):
        if self.reviewer_error:
            raise self.reviewer_error
        self.reviewer_requests.append((number, list(reviewers), list(team_reviewers)))
        return {}

    async def merge_pull_request(self, number, merge_method, commit_title, commit_message):
        self.merge_calls.append({
            "number": number,
            "merge_method": merge_method,
            "commit_title": commit_title,
            "commit_message": commit_message,
        })
        if self.merge_error:
            raise self.merge_error
        if self.merge_response.get("merged") and number in self.pulls:
            self.pulls[number]["state"] = "closed"
        return dict(self.merge_response)

    # Labels

    async def list_labels(self):
        if self.label_error:
            raise self.label_error
        return list(self.labels)

    async def create_label(self, name, color):
        self.created_labels.append((name, color))
        self.labels.append({"name": name, "color": color})
        return {"name": name, "color": color}

    async def add_labels(self, number, labels):
        if self.label_error:
            raise self.label_error
        self.applied_labels[number] = list(labels)
        return [{"name": label} for label in labels]

    # Checks

    async def list_check_runs(self, ref):
        self.check_fetches += 1
        if self.on_check_fetch is not None:
            await self.on_check_fetch()
        result = self.check_script.pop(0) if len(self.check_script) > 1 else self.check_script[0]
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def rerequest_check_run(self, check_run_id):
        if check_run_id in self.rerequest_errors:
            raise self.rerequest_errors[check_run_id]
        self.rerequested.append(check_run_id)

    # Branches

    async def get_branch_protection(self, branch):
        if self.protection is None:
            raise GitHubAPIError(404, "Branch not protected")
        return self.protection

    async def delete_branch_ref(self, branch):
        self.deleted_refs.append(branch)


# -----------------------------------------------------------------------------
# git
# -----------------------------------------------------------------------------
class FakeGit:
    """Records git operations. Operations named in `failing` raise GitCommandError."""

    def __init__(self, repo_root: Path = Path(".")):
        self.repo_root = repo_root
        self.calls: List[tuple] = []
        self.failing: Dict[str, str] = {}
        self.known_worktrees: List[tuple] = []

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation,) + args)
        if operation in self.failing:
            raise GitCommandError((operation,) + tuple(str(a) for a in args), 1, self.failing[operation])

    def operations(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def push_branch(self, branch, remote="origin", cwd=None):
        self._record("push_branch", branch, remote)

    async def delete_remote_branch(self, branch, remote="origin"):
        self._record("delete_remote_branch", branch, remote)

    async def add_worktree(self, path, branch, base_branch):
        self._record("add_worktree", str(path), branch, base_branch)

    async def remove_worktree(self, path):
        self._record("remove_worktree", str(path))

    async def delete_local_branch(self, branch):
        self._record("delete_local_branch", branch)

    async def list_worktrees(self):
        self.calls.append(("list_worktrees",))
        return tuple(self.known_worktrees)


# -----------------------------------------------------------------------------
# Ledger
# -----------------------------------------------------------------------------
SPRINT_STATUS = """\
# Sprint status, maintained by the planning agent
development_status:
  epic-7: in-progress
  7-1: in-progress  # login form
  7-2: not-started
  7-3: backlog
  epic-7-retrospective: optional

story_dependencies:
  7-2: [7-1]
  7-3: [7-1, 7-2]
"""


def write_ledger(path: Path, content: str = SPRINT_STATUS) -> StatusLedger:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return StatusLedger(path)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def fake_git(tmp_path):
    return FakeGit(tmp_path)


@pytest.fixture
def ledger(tmp_path):
    """Ledger at the default config location under tmp_path."""
    return write_ledger(tmp_path / "docs" / "sprint-status.yaml")


@pytest.fixture
def config(tmp_path):
    return DeliveryConfig(
        project_root=tmp_path,
        github_owner="acme",
        github_repo="app",
        github_token="test-token",
    )
