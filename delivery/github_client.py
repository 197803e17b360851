"""
GitHub REST client for the delivery pipeline.

Covers only the endpoints the pipeline needs: pull requests, labels,
reviewers, check runs, branch protection, merges and branch refs.

Every non-2xx response raises GitHubAPIError. Callers decide whether a
failure is fatal, best-effort or an escalation.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import GITHUB_API_BASE
from .delivery_model import GitHubAPIError

logger = logging.getLogger("github_client")

REQUEST_TIMEOUT = 30.0  # seconds
PR_BODY_LIMIT = 65536  # GitHub rejects longer bodies


class GitHubClient:
    """Thin async wrapper over the GitHub REST API for one repository."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: Optional[str] = None,
        api_base: str = GITHUB_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.api_base = api_base.rstrip("/")
        self.headers = {"Accept": "application/vnd.github.v3+json"}
        if token:
            self.headers["Authorization"] = f"token {token}"
        self._transport = transport

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        async with httpx.AsyncClient(
            base_url=self.api_base,
            headers=self.headers,
            timeout=REQUEST_TIMEOUT,
            transport=self._transport,
        ) as client:
            response = await client.request(method, path, json=json, params=params)

        if response.status_code >= 400:
            raise self._error_from(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_from(response: httpx.Response) -> GitHubAPIError:
        try:
            payload = response.json()
        except ValueError:
            return GitHubAPIError(response.status_code, response.text or response.reason_phrase)
        if not isinstance(payload, dict):
            return GitHubAPIError(response.status_code, str(payload))
        return GitHubAPIError(
            response.status_code,
            payload.get("message", response.reason_phrase),
            payload.get("errors"),
        )

    # -------------------------------------------------------------------------
    # Pull requests
    # -------------------------------------------------------------------------

    async def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = False,
    ) -> Dict[str, Any]:
        return await self._request("POST", f"{self.repo_path}/pulls", json={
            "title": title,
            "body": body[:PR_BODY_LIMIT],
            "head": head,
            "base": base,
            "draft": draft,
        })

    async def list_pull_requests(self, head_branch: str, state: str = "open") -> List[Dict[str, Any]]:
        """Pull requests whose head is owner:head_branch."""
        return await self._request("GET", f"{self.repo_path}/pulls", params={
            "head": f"{self.owner}:{head_branch}",
            "state": state,
        }) or []

    async def get_pull_request(self, number: int) -> Dict[str, Any]:
        return await self._request("GET", f"{self.repo_path}/pulls/{number}")

    async def request_reviewers(
        self,
        number: int,
        reviewers: List[str],
        team_reviewers: List[str],
    ) -> Dict[str, Any]:
        return await self._request("POST", f"{self.repo_path}/pulls/{number}/requested_reviewers", json={
            "reviewers": reviewers,
            "team_reviewers": team_reviewers,
        })

    async def merge_pull_request(
        self,
        number: int,
        merge_method: str,
        commit_title: str,
        commit_message: str,
    ) -> Dict[str, Any]:
        return await self._request("PUT", f"{self.repo_path}/pulls/{number}/merge", json={
            "merge_method": merge_method,
            "commit_title": commit_title,
            "commit_message": commit_message,
        })

    # -------------------------------------------------------------------------
    # Labels
    # -------------------------------------------------------------------------

    async def list_labels(self) -> List[Dict[str, Any]]:
        return await self._request("GET", f"{self.repo_path}/labels", params={"per_page": 100}) or []

    async def create_label(self, name: str, color: str) -> Dict[str, Any]:
        return await self._request("POST", f"{self.repo_path}/labels", json={"name": name, "color": color})

    async def add_labels(self, number: int, labels: List[str]) -> List[Dict[str, Any]]:
        return await self._request("POST", f"{self.repo_path}/issues/{number}/labels", json={"labels": labels})

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    async def list_check_runs(self, ref: str) -> List[Dict[str, Any]]:
        """Latest check run per check name for a branch, tag or SHA."""
        data = await self._request("GET", f"{self.repo_path}/commits/{ref}/check-runs", params={
            "filter": "latest",
            "per_page": 100,
        })
        return (data or {}).get("check_runs", [])

    async def rerequest_check_run(self, check_run_id: int) -> None:
        await self._request("POST", f"{self.repo_path}/check-runs/{check_run_id}/rerequest")

    # -------------------------------------------------------------------------
    # Branches
    # -------------------------------------------------------------------------

    async def get_branch_protection(self, branch: str) -> Dict[str, Any]:
        return await self._request("GET", f"{self.repo_path}/branches/{branch}/protection")

    async def delete_branch_ref(self, branch: str) -> None:
        await self._request("DELETE", f"{self.repo_path}/git/refs/heads/{branch}")
