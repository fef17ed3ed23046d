"""Backup commit statuses for GitHub, GitLab and Bitbucket.

The pipeline's own report step normally posts the commit status. These
posts cover runs that never got that far (evicted or OOM-killed pods),
so every call is best effort: one attempt, failures logged and dropped.
"""

import logging
import re
from typing import Any, Optional

import httpx

from fleet.models import GitCredentialParams, GitProvider
from fleet.settings import Settings, get_settings

logger = logging.getLogger(__name__)

MISSING_REVISION = "N/A"
SUCCESS_REASONS = frozenset({"Succeeded", "TaskRunCancelled"})

# Pipeline param carrying each provider's personal access token, in lookup order
TOKEN_PARAMS = (
    ("githubpat", GitProvider.GITHUB),
    ("gitlabpat", GitProvider.GITLAB),
    ("bitbucketpat", GitProvider.BITBUCKET),
)


def extract_git_params(params: Optional[list[dict[str, Any]]]) -> Optional[GitCredentialParams]:
    """Pull git provider credentials out of a run's ``{name, value}`` params."""
    if not params:
        return None

    values = {p.get("name"): p.get("value") for p in params if isinstance(p, dict)}

    for param, provider in TOKEN_PARAMS:
        token = values.get(param)
        if token:
            return GitCredentialParams(
                provider=provider,
                token=token,
                repo_url=values.get("gitrepourl") or "",
                revision=values.get("gitrevision") or "",
                repo_name=values.get("gitreponame") or "",
                project_id=values.get("gitlabprojectid") or "",
            )
    return None


def is_success(reason: str) -> bool:
    """Cancelled runs are reported as success, not failure."""
    return reason in SUCCESS_REASONS


def describe(reason: str) -> str:
    if is_success(reason):
        return "Pipeline completed successfully"
    return f"Pipeline {reason.lower()}"


class CommitStatusBackend:
    """One source-control provider's commit status API."""

    provider: GitProvider
    success_state: str
    failure_state: str

    def __init__(self, settings: Settings):
        self.settings = settings

    def state_for(self, reason: str) -> str:
        return self.success_state if is_success(reason) else self.failure_state

    def target(self, creds: GitCredentialParams) -> Optional[str]:
        """Repository identifier for the status URL, or None if unusable."""
        raise NotImplementedError

    def request(
        self, creds: GitCredentialParams, target: str, state: str, description: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, body) for the status post."""
        raise NotImplementedError

    async def post(self, creds: GitCredentialParams, reason: str) -> bool:
        """Post one status. Returns whether the provider accepted it."""
        target = self.target(creds)
        if not creds.token or not target or not creds.revision:
            return False

        state = self.state_for(reason)
        url, headers, body = self.request(creds, target, state, describe(reason))

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(url, headers=headers, json=body, timeout=30.0)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error(
                    "Failed to post backup commit status to %s for %s. %s",
                    self.provider.value,
                    creds.revision,
                    _error_message(e),
                )
                return False

        logger.info(
            "Backup commit status posted to %s: %s for %s",
            self.provider.value,
            state,
            creds.revision,
        )
        return True


class GitHubBackend(CommitStatusBackend):
    provider = GitProvider.GITHUB
    success_state = "success"
    failure_state = "failure"
    api_base = "https://api.github.com"

    def target(self, creds: GitCredentialParams) -> Optional[str]:
        owner_repo = re.sub(r"^https?://github\.com/", "", creds.repo_url)
        owner_repo = re.sub(r"\.git$", "", owner_repo).rstrip("/")
        return owner_repo if "/" in owner_repo else None

    def request(self, creds, target, state, description):
        return (
            f"{self.api_base}/repos/{target}/statuses/{creds.revision}",
            {
                "Authorization": f"token {creds.token}",
                "Accept": "application/vnd.github.v3+json",
            },
            {
                "state": state,
                "context": self.settings.commit_status_context,
                "description": description,
                "target_url": self.settings.commit_status_target_url,
            },
        )


class GitLabBackend(CommitStatusBackend):
    provider = GitProvider.GITLAB
    success_state = "success"
    failure_state = "failed"
    api_base = "https://gitlab.com/api/v4"

    def target(self, creds: GitCredentialParams) -> Optional[str]:
        project = creds.project_id or creds.repo_name
        return project.replace("/", "%2F") if project else None

    def request(self, creds, target, state, description):
        return (
            f"{self.api_base}/projects/{target}/statuses/{creds.revision}",
            {"PRIVATE-TOKEN": creds.token},
            {
                "state": state,
                "context": self.settings.commit_status_context,
                "name": self.settings.commit_status_context,
                "description": description,
                "target_url": self.settings.commit_status_target_url,
            },
        )


class BitbucketBackend(CommitStatusBackend):
    provider = GitProvider.BITBUCKET
    success_state = "SUCCESSFUL"
    failure_state = "FAILED"
    api_base = "https://api.bitbucket.org/2.0"

    def target(self, creds: GitCredentialParams) -> Optional[str]:
        return creds.repo_name or None

    def request(self, creds, target, state, description):
        return (
            f"{self.api_base}/repositories/{target}/commit/{creds.revision}/statuses/build",
            {"Authorization": f"Bearer {creds.token}"},
            {
                "state": state,
                # Bitbucket keys may not contain "/"
                "key": self.settings.commit_status_context.replace("/", "-"),
                "name": self.settings.commit_status_context,
                "description": description,
                "url": self.settings.commit_status_target_url,
            },
        )


class CommitStatusNotifier:
    """Dispatches a finished run's outcome to its git provider."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.backends: dict[GitProvider, CommitStatusBackend] = {
            backend.provider: backend
            for backend in (
                GitHubBackend(settings),
                GitLabBackend(settings),
                BitbucketBackend(settings),
            )
        }

    async def notify(self, params: Optional[list[dict[str, Any]]], reason: str) -> bool:
        """Post a backup commit status for a run's params and terminal reason.

        Returns False without any request when the run carries no token or
        no usable revision.
        """
        creds = extract_git_params(params)
        if not creds or not creds.revision or creds.revision == MISSING_REVISION:
            return False
        return await self.backends[creds.provider].post(creds, reason)


def _error_message(error: httpx.HTTPError) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        try:
            data = error.response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("message"):
            return data["message"]
    return str(error)
