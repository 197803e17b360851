"""
Auto-Merger Tests

Covers mergeability handling, merge failure classification and commit
message generation.
"""

import asyncio

import httpx
import pytest

from delivery.auto_merger import (
    COMMIT_MESSAGE_FALLBACK,
    AutoMerger,
    generate_commit_message,
    is_conflict_error,
)
from delivery.delivery_model import DeliveryCancelledError, GitHubAPIError, RequestHandle
from tests.conftest import FakeClock, FakeGitHub


PR_BODY = """## Story
As a user I want to log in.

## Implementation
- Added LoginForm component
- Wired form submission to /api/session

## Tests
- 12 unit tests
"""


def make_handle(number=50, body=PR_BODY):
    return RequestHandle(
        number=number,
        url=f"https://github.com/acme/app/pull/{number}",
        title="Story 7-1: Login Form",
        body=body,
        source_branch="story/7-1",
        target_branch="main",
    )


class TestMergeability:

    @pytest.mark.asyncio
    async def test_mergeable_pr_is_squash_merged(self):
        github = FakeGitHub()
        merger = AutoMerger(github, clock=FakeClock())

        outcome = await merger.merge(make_handle(), "squash", "7-1")

        assert outcome.success is True
        assert outcome.merge_reference == "abc123"
        assert outcome.has_conflict is False
        call = github.merge_calls[0]
        assert call["merge_method"] == "squash"
        assert call["commit_title"] == "Story 7-1: Login Form"
        assert "LoginForm" in call["commit_message"]

    @pytest.mark.asyncio
    async def test_unmergeable_pr_is_a_conflict_without_merging(self):
        github = FakeGitHub()
        github.mergeable_script = [False]
        merger = AutoMerger(github, clock=FakeClock())

        outcome = await merger.merge(make_handle())

        assert outcome.success is False
        assert outcome.has_conflict is True
        assert github.merge_calls == []

    @pytest.mark.asyncio
    async def test_unknown_mergeability_is_rechecked_once(self):
        github = FakeGitHub()
        github.mergeable_script = [None, True]
        clock = FakeClock()
        merger = AutoMerger(github, clock=clock, recheck_delay=5)

        outcome = await merger.merge(make_handle())

        assert outcome.success is True
        assert github.pull_fetches == 2
        assert clock.sleeps == [5]

    @pytest.mark.asyncio
    async def test_still_unknown_after_recheck_attempts_merge(self):
        github = FakeGitHub()
        github.mergeable_script = [None]
        clock = FakeClock()
        merger = AutoMerger(github, clock=clock)

        outcome = await merger.merge(make_handle())

        assert outcome.success is True
        assert github.pull_fetches == 2
        assert len(github.merge_calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_mergeability_wait_stops_before_merging(self):
        github = FakeGitHub()
        github.mergeable_script = [None]
        clock = FakeClock()
        merger = AutoMerger(github, clock=clock, recheck_delay=5)
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(DeliveryCancelledError):
            await merger.merge(make_handle(), cancel_event=cancel)

        assert github.pull_fetches == 1
        assert github.merge_calls == []
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_branch_protection_is_read_when_available(self):
        github = FakeGitHub()
        github.protection = {"required_status_checks": {"contexts": ["build", "lint"]}}
        merger = AutoMerger(github, clock=FakeClock())

        outcome = await merger.merge(make_handle())

        assert outcome.success is True


class TestMergeFailures:

    @pytest.mark.asyncio
    async def test_conflict_vocabulary_is_classified_as_conflict(self):
        github = FakeGitHub()
        github.merge_error = GitHubAPIError(405, "Pull Request is not mergeable")
        merger = AutoMerger(github, clock=FakeClock())

        outcome = await merger.merge(make_handle())

        assert outcome.success is False
        assert outcome.has_conflict is True
        assert "not mergeable" in outcome.error_detail

    @pytest.mark.asyncio
    async def test_other_errors_are_generic_failures(self):
        github = FakeGitHub()
        github.merge_error = GitHubAPIError(403, "Resource not accessible by integration")
        merger = AutoMerger(github, clock=FakeClock())

        outcome = await merger.merge(make_handle())

        assert outcome.success is False
        assert outcome.has_conflict is False
        assert "Resource not accessible" in outcome.error_detail

    @pytest.mark.asyncio
    async def test_network_errors_are_failures_not_exceptions(self):
        github = FakeGitHub()
        github.merge_error = httpx.ConnectError("connection refused")
        merger = AutoMerger(github, clock=FakeClock())

        outcome = await merger.merge(make_handle())

        assert outcome.success is False
        assert outcome.has_conflict is False

    @pytest.mark.asyncio
    async def test_unmerged_response_is_a_failure(self):
        github = FakeGitHub()
        github.merge_response = {"merged": False, "message": "Required status check is expected"}
        merger = AutoMerger(github, clock=FakeClock())

        outcome = await merger.merge(make_handle())

        assert outcome.success is False
        assert outcome.error_detail == "Required status check is expected"

    def test_is_conflict_error(self):
        assert is_conflict_error("Merge conflict in src/app.py")
        assert is_conflict_error("Head branch was modified. Review and try the merge again.")
        assert not is_conflict_error("Bad credentials")
        assert not is_conflict_error(None)


class TestCommitMessage:

    def test_extracts_implementation_section(self):
        message = generate_commit_message(PR_BODY)
        assert message == "- Added LoginForm component\n- Wired form submission to /api/session"

    def test_missing_section_uses_fallback(self):
        assert generate_commit_message("## Story\nNothing here") == COMMIT_MESSAGE_FALLBACK
        assert generate_commit_message("") == COMMIT_MESSAGE_FALLBACK

    def test_long_section_is_truncated(self):
        body = "## Implementation\n" + "\n".join(f"- change number {i}" for i in range(200))
        message = generate_commit_message(body)
        assert 0 < len(message) <= 500
        assert message.startswith("- change number 0")
