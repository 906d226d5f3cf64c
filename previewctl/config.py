"""
Environment-driven settings.
"""

import os
from dataclasses import dataclass, replace
from typing import Any, Optional

DEFAULT_NAMESPACE = "infra-fluxcd"
DEFAULT_FIELD_MANAGER = "previewctl"
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_SERVER_URL = "https://github.com"


@dataclass(frozen=True)
class Settings:
    """Runtime settings, read from the environment and overridable from the CLI."""
    namespace: str = DEFAULT_NAMESPACE
    field_manager: str = DEFAULT_FIELD_MANAGER
    github_token: Optional[str] = None
    repository: str = ""
    workflow: str = ""
    api_url: str = DEFAULT_API_URL
    server_url: str = DEFAULT_SERVER_URL
    run_id: str = ""
    sha: str = ""
    head_ref: str = ""
    ref_name: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from ``PREVIEWCTL_*`` and the standard ``GITHUB_*`` variables.

        Returns:
            Settings: Populated settings
        """
        return cls(
            namespace=os.environ.get("PREVIEWCTL_NAMESPACE", DEFAULT_NAMESPACE),
            field_manager=os.environ.get("PREVIEWCTL_FIELD_MANAGER", DEFAULT_FIELD_MANAGER),
            github_token=os.environ.get("GITHUB_TOKEN") or None,
            repository=os.environ.get("GITHUB_REPOSITORY", ""),
            workflow=os.environ.get("GITHUB_WORKFLOW", ""),
            api_url=os.environ.get("GITHUB_API_URL", DEFAULT_API_URL),
            server_url=os.environ.get("GITHUB_SERVER_URL", DEFAULT_SERVER_URL),
            run_id=os.environ.get("GITHUB_RUN_ID", ""),
            sha=os.environ.get("GITHUB_SHA", ""),
            head_ref=os.environ.get("GITHUB_HEAD_REF", ""),
            ref_name=os.environ.get("GITHUB_REF_NAME", ""),
        )

    def override(self, **values: Any) -> "Settings":
        """Copy with the given non-None values replaced."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})

    @property
    def git_branch(self) -> str:
        return self.head_ref or self.ref_name

    @property
    def workflow_run_url(self) -> str:
        return f"{self.server_url}/{self.repository}/actions/runs/{self.run_id}"
