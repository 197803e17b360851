"""
Delivery configuration.

Defaults mirror the story automation pipeline:
- base branch "main", auto-merge disabled
- CI polled every 30s for at most 30 minutes
- failed checks re-run up to 2 times, 5 minutes apart
- squash merge, remote branch deleted after merge

Values can come from the environment (DELIVERY_*, GITHUB_TOKEN) or a YAML file.
"""

import os
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

GITHUB_API_BASE = "https://api.github.com"

MergeMethod = Literal["merge", "squash", "rebase"]


class DeliveryConfig(BaseModel):
    """Configuration for PR creation, CI monitoring and auto-merge."""
    project_root: Path = Field(default_factory=Path.cwd)
    github_owner: str
    github_repo: str
    github_token: Optional[str] = None
    api_base: str = GITHUB_API_BASE

    base_branch: str = "main"
    remote: str = "origin"
    auto_merge: bool = False
    draft_pr: bool = False
    reviewers: List[str] = Field(default_factory=list)
    team_reviewers: List[str] = Field(default_factory=list)
    delete_branch_after_merge: bool = True
    merge_method: MergeMethod = "squash"

    # Seconds
    max_ci_wait_time: float = Field(default=1800.0, gt=0)
    ci_polling_interval: float = Field(default=30.0, gt=0)
    max_ci_retries: int = Field(default=2, ge=0)
    ci_retry_delay: float = Field(default=300.0, ge=0)
    mergeability_recheck_delay: float = Field(default=5.0, ge=0)

    sprint_status_path: Optional[Path] = None
    errors_dir: Optional[Path] = None
    escalation_log_path: Optional[Path] = None
    worktrees_dir: Optional[Path] = None

    @property
    def ledger_path(self) -> Path:
        return self.sprint_status_path or self.project_root / "docs" / "sprint-status.yaml"

    @property
    def failure_records_dir(self) -> Path:
        return self.errors_dir or self.project_root / ".delivery" / "errors"

    @property
    def escalation_log(self) -> Path:
        return self.escalation_log_path or self.project_root / ".delivery" / "escalations.jsonl"

    @property
    def worktree_root(self) -> Path:
        return self.worktrees_dir or self.project_root / "wt"

    @property
    def worktree_state_file(self) -> Path:
        return self.project_root / ".delivery" / "worktrees.json"

    @property
    def has_reviewers(self) -> bool:
        return bool(self.reviewers or self.team_reviewers)

    @classmethod
    def from_yaml(cls, path: Path, **overrides) -> "DeliveryConfig":
        """Load configuration from a YAML file. Keyword overrides win."""
        data = yaml.safe_load(Path(path).read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        data = data.get("delivery", data)
        data.update({k: v for k, v in overrides.items() if v is not None})
        if not data.get("github_token"):
            data["github_token"] = os.getenv("GITHUB_TOKEN")
        return cls(**data)

    @classmethod
    def from_env(cls, **overrides) -> "DeliveryConfig":
        """Load configuration from DELIVERY_* environment variables."""
        data = {
            "project_root": os.getenv("DELIVERY_PROJECT_ROOT", os.getcwd()),
            "github_owner": os.getenv("DELIVERY_GITHUB_OWNER", ""),
            "github_repo": os.getenv("DELIVERY_GITHUB_REPO", ""),
            "github_token": os.getenv("GITHUB_TOKEN"),
            "base_branch": os.getenv("DELIVERY_BASE_BRANCH", "main"),
            "auto_merge": os.getenv("DELIVERY_AUTO_MERGE", "false").lower() in ("1", "true", "yes"),
            "max_ci_wait_time": float(os.getenv("DELIVERY_MAX_CI_WAIT", "1800")),
            "ci_polling_interval": float(os.getenv("DELIVERY_CI_POLL_INTERVAL", "30")),
            "max_ci_retries": int(os.getenv("DELIVERY_MAX_CI_RETRIES", "2")),
            "ci_retry_delay": float(os.getenv("DELIVERY_CI_RETRY_DELAY", "300")),
        }
        reviewers = os.getenv("DELIVERY_REVIEWERS")
        if reviewers:
            data["reviewers"] = [r.strip() for r in reviewers.split(",") if r.strip()]
        if os.getenv("DELIVERY_SPRINT_STATUS"):
            data["sprint_status_path"] = os.getenv("DELIVERY_SPRINT_STATUS")
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)
