"""
GitHub client tests against httpx.MockTransport.
"""

import json

import httpx
import pytest

from delivery.delivery_model import GitHubAPIError
from delivery.github_client import PR_BODY_LIMIT, GitHubClient


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        status, payload = self.responses.get(key, (404, {"message": "Not Found"}))
        if payload is None:
            return httpx.Response(status)
        return httpx.Response(status, json=payload)


def make_client(responses, token="secret"):
    recorder = Recorder(responses)
    client = GitHubClient("acme", "app", token=token, transport=httpx.MockTransport(recorder))
    return client, recorder


class TestPullRequests:

    @pytest.mark.asyncio
    async def test_create_pull_request(self):
        client, recorder = make_client({
            ("POST", "/repos/acme/app/pulls"): (201, {"number": 50, "html_url": "https://github.com/acme/app/pull/50"}),
        })

        data = await client.create_pull_request("Story 7-1: Login", "body", "story/7-1", "main")

        assert data["number"] == 50
        request = recorder.requests[0]
        assert request.headers["Authorization"] == "token secret"
        assert request.headers["Accept"] == "application/vnd.github.v3+json"
        assert json.loads(request.content) == {
            "title": "Story 7-1: Login",
            "body": "body",
            "head": "story/7-1",
            "base": "main",
            "draft": False,
        }

    @pytest.mark.asyncio
    async def test_body_is_truncated_to_github_limit(self):
        client, recorder = make_client({("POST", "/repos/acme/app/pulls"): (201, {"number": 1})})

        await client.create_pull_request("t", "x" * (PR_BODY_LIMIT + 100), "b", "main")

        assert len(json.loads(recorder.requests[0].content)["body"]) == PR_BODY_LIMIT

    @pytest.mark.asyncio
    async def test_existing_pull_request_error_is_recognized(self):
        client, _ = make_client({
            ("POST", "/repos/acme/app/pulls"): (422, {
                "message": "Validation Failed",
                "errors": [{"resource": "PullRequest", "code": "custom",
                            "message": "A pull request already exists for acme:story/7-1."}],
            }),
        })

        with pytest.raises(GitHubAPIError) as exc_info:
            await client.create_pull_request("t", "b", "story/7-1", "main")

        assert exc_info.value.status_code == 422
        assert exc_info.value.is_already_exists is True

    @pytest.mark.asyncio
    async def test_other_validation_errors_are_not_already_exists(self):
        client, _ = make_client({
            ("POST", "/repos/acme/app/pulls"): (422, {
                "message": "Validation Failed",
                "errors": [{"resource": "PullRequest", "field": "base", "code": "invalid"}],
            }),
        })

        with pytest.raises(GitHubAPIError) as exc_info:
            await client.create_pull_request("t", "b", "story/7-1", "develop")

        assert exc_info.value.is_already_exists is False

    @pytest.mark.asyncio
    async def test_list_pull_requests_filters_by_owner_and_branch(self):
        client, recorder = make_client({("GET", "/repos/acme/app/pulls"): (200, [{"number": 50}])})

        pulls = await client.list_pull_requests("story/7-1")

        assert pulls == [{"number": 50}]
        params = recorder.requests[0].url.params
        assert params["head"] == "acme:story/7-1"
        assert params["state"] == "open"

    @pytest.mark.asyncio
    async def test_merge_pull_request(self):
        client, recorder = make_client({
            ("PUT", "/repos/acme/app/pulls/50/merge"): (200, {"merged": True, "sha": "abc123"}),
        })

        data = await client.merge_pull_request(50, "squash", "Story 7-1", "message")

        assert data["sha"] == "abc123"
        assert json.loads(recorder.requests[0].content)["merge_method"] == "squash"


class TestChecksAndBranches:

    @pytest.mark.asyncio
    async def test_list_check_runs_returns_latest_runs(self):
        client, recorder = make_client({
            ("GET", "/repos/acme/app/commits/abc123/check-runs"): (200, {
                "total_count": 1,
                "check_runs": [{"id": 1, "name": "build", "status": "completed", "conclusion": "success"}],
            }),
        })

        runs = await client.list_check_runs("abc123")

        assert runs[0]["name"] == "build"
        assert recorder.requests[0].url.params["filter"] == "latest"

    @pytest.mark.asyncio
    async def test_rerequest_check_run(self):
        client, recorder = make_client({("POST", "/repos/acme/app/check-runs/7/rerequest"): (201, {})})

        await client.rerequest_check_run(7)

        assert recorder.requests[0].method == "POST"

    @pytest.mark.asyncio
    async def test_delete_branch_ref_handles_no_content(self):
        client, recorder = make_client({
            ("DELETE", "/repos/acme/app/git/refs/heads/story/7-1"): (204, None),
        })

        assert await client.delete_branch_ref("story/7-1") is None
        assert recorder.requests[0].method == "DELETE"

    @pytest.mark.asyncio
    async def test_missing_branch_protection_raises(self):
        client, _ = make_client({})

        with pytest.raises(GitHubAPIError) as exc_info:
            await client.get_branch_protection("main")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_no_token_sends_no_authorization(self):
        client, recorder = make_client({("GET", "/repos/acme/app/labels"): (200, [])}, token=None)

        assert await client.list_labels() == []
        assert "Authorization" not in recorder.requests[0].headers
