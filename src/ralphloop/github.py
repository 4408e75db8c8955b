"""Minimal GitHub REST client for opening and merging pull requests."""

from __future__ import annotations

import logging
import re
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"

_REMOTE_SLUG = re.compile(r"github\.com[:/](?P<slug>[^/]+/[^/]+?)(?:\.git)?/?$")


class GitHubError(Exception):
    """Raised when the GitHub API rejects a request."""

    pass


def repo_slug_from_remote(url: str) -> Optional[str]:
    """Extract ``owner/repo`` from an SSH or HTTPS GitHub remote URL."""
    match = _REMOTE_SLUG.search(url.strip())
    return match.group("slug") if match else None


class GitHubClient:
    """Creates and merges pull requests on one repository."""

    def __init__(
        self,
        repo: str,
        token: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            repo: Repository slug, ``owner/repo``.
            token: Token with pull-request write access.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests pass a MockTransport).
        """
        self.repo = repo
        self.client = httpx.Client(
            base_url=f"{API_URL}/repos/{repo}",
            headers={
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "ralph-loop",
            },
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, path: str, payload: dict) -> dict:
        try:
            response = self.client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise GitHubError(f"{method} {path} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}

        if response.is_error:
            message = body.get("message", response.text) if isinstance(body, dict) else response.text
            raise GitHubError(f"{method} {path} returned HTTP {response.status_code}: {message}")
        return body

    def create_pull_request(self, head: str, base: str, title: str, body: str) -> dict:
        """Open a pull request. Returns the API's pull request object."""
        pr = self._request("POST", "/pulls", {"title": title, "head": head, "base": base, "body": body})
        logger.info(f"Created PR #{pr.get('number')}: {pr.get('html_url', '')}")
        return pr

    def merge_pull_request(self, number: int, method: str = "squash") -> dict:
        """Merge a pull request with the given merge method."""
        result = self._request("PUT", f"/pulls/{number}/merge", {"merge_method": method})
        logger.info(f"Merged PR #{number}")
        return result

    def delete_branch(self, branch: str) -> None:
        try:
            response = self.client.delete(f"/git/refs/heads/{branch}")
        except httpx.HTTPError as e:
            logger.warning(f"Could not delete branch {branch}: {e}")
            return
        if response.is_error:
            logger.warning(f"Could not delete branch {branch}: HTTP {response.status_code}")

    def close(self) -> None:
        self.client.close()
