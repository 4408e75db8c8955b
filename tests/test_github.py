"""Tests for the GitHub REST client."""

from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from ralphloop.github import GitHubClient, GitHubError, repo_slug_from_remote


@pytest.mark.parametrize(
    "url,slug",
    [
        ("git@github.com:octo/widgets.git", "octo/widgets"),
        ("https://github.com/octo/widgets.git", "octo/widgets"),
        ("https://github.com/octo/widgets", "octo/widgets"),
        ("ssh://git@github.com/octo/widgets.git", "octo/widgets"),
        ("/srv/git/widgets.git", None),
        ("https://gitlab.com/octo/widgets.git", None),
    ],
)
def test_repo_slug_from_remote(url: str, slug) -> None:
    assert repo_slug_from_remote(url) == slug


class TestGitHubClient:
    """Tests for GitHubClient."""

    def _client(self, handler, requests: List[httpx.Request]) -> GitHubClient:
        def record(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        return GitHubClient("octo/widgets", "tok123", transport=httpx.MockTransport(record))

    def test_create_pull_request(self) -> None:
        requests: List[httpx.Request] = []
        client = self._client(
            lambda r: httpx.Response(201, json={"number": 42, "html_url": "https://x/42"}),
            requests,
        )

        pr = client.create_pull_request("ralph/iter-1", "main", "ralph: task", "body text")

        assert pr["number"] == 42
        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/repos/octo/widgets/pulls"
        assert request.headers["Authorization"] == "token tok123"
        assert json.loads(request.content) == {
            "title": "ralph: task",
            "head": "ralph/iter-1",
            "base": "main",
            "body": "body text",
        }

    def test_merge_pull_request_squashes(self) -> None:
        requests: List[httpx.Request] = []
        client = self._client(lambda r: httpx.Response(200, json={"merged": True}), requests)

        client.merge_pull_request(42)

        assert requests[0].method == "PUT"
        assert requests[0].url.path == "/repos/octo/widgets/pulls/42/merge"
        assert json.loads(requests[0].content) == {"merge_method": "squash"}

    def test_error_response_raises(self) -> None:
        client = self._client(
            lambda r: httpx.Response(422, json={"message": "Validation Failed"}), []
        )
        with pytest.raises(GitHubError, match="HTTP 422: Validation Failed"):
            client.create_pull_request("b", "main", "t", "")

    def test_transport_error_raises(self) -> None:
        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route", request=request)

        client = self._client(boom, [])
        with pytest.raises(GitHubError, match="failed"):
            client.merge_pull_request(1)

    def test_delete_branch_failure_not_raised(self) -> None:
        requests: List[httpx.Request] = []
        client = self._client(lambda r: httpx.Response(404, json={"message": "nope"}), requests)

        client.delete_branch("ralph/iter-1")

        assert requests[0].method == "DELETE"
        assert requests[0].url.path == "/repos/octo/widgets/git/refs/heads/ralph/iter-1"
        client.close()
