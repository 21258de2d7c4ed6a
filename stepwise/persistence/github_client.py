"""GitHub pull request client used by publish.

Publishing a session is two steps: push the session branch with git, then
open a pull request through the GitHub REST API. The push is what makes the
work durable; opening the request is bookkeeping on top and can be retried
on its own (``stepwise publish <session_id>``) without pushing again.

Requires:
    GITHUB_TOKEN (or the variable named by publish.token_env): token with
        pull_requests:write scope
    GITHUB_REPO / publish.github_repo: owner/repo

When credentials are missing, pull requests cannot be opened and publish
reports the push alone.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from stepwise.persistence.git import push_branch

logger = logging.getLogger(__name__)


@dataclass
class PullRequestResult:
    """Result of opening a pull request."""
    success: bool
    number: Optional[int] = None
    url: Optional[str] = None
    message: str = ""


class GitHubClient:
    """Opens pull requests through the GitHub REST API."""

    def __init__(
        self,
        token: Optional[str] = None,
        repo: Optional[str] = None,
        base_url: str = "https://api.github.com",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.token = token
        self.repo = repo
        self.enabled = bool(token and repo)

        if self.enabled:
            self._client = httpx.Client(
                base_url=base_url,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
                timeout=30.0,
                transport=transport,
            )
            logger.info(f"GitHub pull requests enabled for {repo}")
        else:
            self._client = None
            if not token:
                logger.warning("GitHub token not set; pull requests cannot be opened")
            if not repo:
                logger.warning("GitHub repo not set; pull requests cannot be opened")

    def open_pull_request(self, head: str, base: str, title: str, body: str) -> PullRequestResult:
        if not self.enabled:
            return PullRequestResult(
                success=False,
                message="GitHub not configured (no token or repo)",
            )

        try:
            # An open PR for the same head is reused so retries stay idempotent
            owner = self.repo.split("/", 1)[0]
            existing = self._client.get(
                f"/repos/{self.repo}/pulls",
                params={"head": f"{owner}:{head}", "state": "open"},
            )
            existing.raise_for_status()
            pulls = existing.json()
            if pulls:
                pr = pulls[0]
                logger.info(f"Pull request #{pr['number']} already open for {head}")
                return PullRequestResult(
                    success=True,
                    number=pr["number"],
                    url=pr.get("html_url"),
                    message="already open",
                )

            resp = self._client.post(
                f"/repos/{self.repo}/pulls",
                json={"title": title, "head": head, "base": base, "body": body},
            )
            resp.raise_for_status()
            data = resp.json()
            logger.info(f"Opened pull request #{data['number']}: {data.get('html_url', '')}")
            return PullRequestResult(
                success=True,
                number=data["number"],
                url=data.get("html_url"),
                message="opened",
            )

        except httpx.HTTPStatusError as e:
            error_body = e.response.text[:500]
            logger.error(
                f"GitHub API error opening pull request: {e.response.status_code} - {error_body}"
            )
            return PullRequestResult(
                success=False,
                message=f"GitHub API error: {e.response.status_code} - {error_body}",
            )
        except httpx.HTTPError as e:
            logger.error(f"GitHub HTTP error opening pull request: {e}")
            return PullRequestResult(success=False, message=f"GitHub HTTP error: {e}")

    def close(self) -> None:
        if self._client:
            self._client.close()


class GitHubPublisher:
    """Push a session branch, then open a pull request for it."""

    def __init__(
        self,
        workspace: Path,
        remote: str = "origin",
        base_branch: str = "main",
        client: Optional[GitHubClient] = None,
    ):
        self.workspace = Path(workspace)
        self.remote = remote
        self.base_branch = base_branch
        self.client = client or GitHubClient()

    def push(self, branch: str) -> None:
        push_branch(self.workspace, self.remote, branch)

    def open_request(self, branch: str, title: str, body: str) -> PullRequestResult:
        return self.client.open_pull_request(head=branch, base=self.base_branch, title=title, body=body)


def get_github_client(repo: Optional[str] = None, token_env: str = "GITHUB_TOKEN") -> GitHubClient:
    return GitHubClient(
        token=os.environ.get(token_env),
        repo=repo or os.environ.get("GITHUB_REPO"),
    )
