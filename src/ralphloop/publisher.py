"""Commit-and-publish collaborator built on GitPython.

After an iteration changes files, the controller hands off to a publisher.
:class:`GitPublisher` commits the changes on a fresh timestamped branch,
pushes it, opens and squash-merges a pull request, then returns to the base
branch. Every failure is logged and swallowed at this boundary so a
publishing problem never stops the loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, Sequence

import git
from git.exc import GitCommandError, InvalidGitRepositoryError

from .github import GitHubClient, GitHubError, repo_slug_from_remote

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    """Outcome of one publish call."""

    published: bool
    branch: Optional[str] = None
    commit_hash: Optional[str] = None
    pushed: bool = False
    pr_number: Optional[int] = None
    merged: bool = False
    error: Optional[str] = None


class PublishError(Exception):
    """Raised when the publisher cannot be set up."""

    pass


class Publisher(Protocol):
    def has_changes(self) -> bool: ...

    def publish(self, branch_hint: str, message: str, body: str) -> PublishResult: ...

    def close(self) -> None: ...


class NullPublisher:
    """Publisher used when git is opted out; never touches the repository."""

    def has_changes(self) -> bool:
        return False

    def publish(self, branch_hint: str, message: str, body: str) -> PublishResult:
        logger.debug(f"Publishing disabled; skipping '{message}'")
        return PublishResult(published=False)

    def close(self) -> None:
        pass


class GitPublisher:
    """Commits, pushes and merges changes through a pull request."""

    def __init__(
        self,
        repo_path: Path,
        base_branch: str = "main",
        no_pr: bool = False,
        author_name: Optional[str] = None,
        author_email: Optional[str] = None,
        github_repo: Optional[str] = None,
        github_token: Optional[str] = None,
        github: Optional[GitHubClient] = None,
        exclude: Sequence[str] = (),
    ):
        """Initialize the publisher.

        Args:
            repo_path: Repository root.
            base_branch: Branch PRs target and that we return to afterwards.
            no_pr: Push the branch but leave it for manual review.
            author_name: Commit author name override.
            author_email: Commit author email override.
            github_repo: ``owner/repo`` slug; parsed from origin when omitted.
            github_token: Token for the GitHub API.
            github: Prebuilt client (takes precedence over repo/token).
            exclude: Ignore patterns added to .git/info/exclude (run artifacts).

        Raises:
            PublishError: If ``repo_path`` is not a git repository.
        """
        try:
            self.repo = git.Repo(repo_path)
        except (InvalidGitRepositoryError, git.NoSuchPathError) as exc:
            raise PublishError(f"Not a git repository: {repo_path}") from exc

        self.repo_path = repo_path
        self.base_branch = base_branch
        self.no_pr = no_pr
        self.author = (
            git.Actor(author_name, author_email) if author_name and author_email else None
        )
        self.github = github
        self._owns_github = False
        if self.github is None and github_token:
            slug = github_repo or self._origin_slug()
            if slug:
                self.github = GitHubClient(slug, github_token)
                self._owns_github = True
        if exclude:
            self._exclude(exclude)

    def _exclude(self, patterns: Sequence[str]) -> None:
        """Keep run artifacts out of commits without editing .gitignore."""
        exclude_file = Path(self.repo.git_dir) / "info" / "exclude"
        existing = exclude_file.read_text(encoding="utf-8").splitlines() if exclude_file.exists() else []
        missing = [p for p in patterns if p not in existing]
        if not missing:
            return
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        with open(exclude_file, "a", encoding="utf-8") as f:
            if existing and existing[-1] != "":
                f.write("\n")
            f.write("\n".join(missing) + "\n")

    def _origin(self) -> Optional[git.Remote]:
        try:
            return self.repo.remote("origin")
        except ValueError:
            return None

    def _origin_slug(self) -> Optional[str]:
        origin = self._origin()
        if origin is None:
            return None
        return repo_slug_from_remote(next(origin.urls, ""))

    def has_changes(self) -> bool:
        """Check for staged, unstaged or untracked changes."""
        return self.repo.is_dirty(untracked_files=True)

    def publish(self, branch_hint: str, message: str, body: str) -> PublishResult:
        """Commit all changes on a new branch and push them through a PR.

        Args:
            branch_hint: Branch name prefix, e.g. ``ralph/iter``.
            message: Commit message and PR title.
            body: PR body.

        Returns:
            PublishResult describing how far publishing got.
        """
        if not self.has_changes():
            logger.info("No changes to commit")
            return PublishResult(published=False)

        branch = f"{branch_hint}-{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        result = PublishResult(published=False, branch=branch)
        try:
            self.repo.git.checkout("-b", branch)
            self.repo.git.add(all=True)
            commit = self.repo.index.commit(message, author=self.author, committer=self.author)
            result.commit_hash = commit.hexsha[:8]
            result.published = True
            logger.info(f"Committed changes: {message} ({result.commit_hash})")

            self._push_and_merge(branch, message, body, result)
        except GitCommandError as exc:
            result.error = str(exc)
            logger.warning(f"Publishing failed: {exc}")
        finally:
            local_only = result.published and self._origin() is None
            self._return_to_base(merge_branch=branch if local_only else None)
        return result

    def _push_and_merge(self, branch: str, title: str, body: str, result: PublishResult) -> None:
        origin = self._origin()
        if origin is None:
            logger.info("No remote 'origin' configured, skipping push.")
            return

        try:
            origin.push(refspec=f"{branch}:{branch}", set_upstream=True).raise_if_error()
        except GitCommandError as exc:
            logger.warning(f"git push failed: {exc}")
            return
        result.pushed = True
        logger.info(f"Pushed branch {branch} to remote.")

        if self.no_pr:
            logger.info(f"RALPH_NO_PR is set; branch '{branch}' left on remote for manual review.")
            return
        if self.github is None:
            logger.warning("No GitHub token or repository configured, skipping PR creation.")
            return

        try:
            pr = self.github.create_pull_request(branch, self.base_branch, title, body)
            result.pr_number = pr.get("number")
            self.github.merge_pull_request(result.pr_number)
            result.merged = True
            self.github.delete_branch(branch)
        except GitHubError as exc:
            logger.warning(f"Pull request workflow failed: {exc}")

    def _return_to_base(self, merge_branch: Optional[str] = None) -> None:
        """Check out the base branch and bring it up to date.

        Without a remote, ``merge_branch`` is fast-forwarded into the base so
        the next iteration starts from the committed work.
        """
        try:
            self.repo.git.checkout(self.base_branch)
        except GitCommandError as exc:
            logger.warning(f"Could not check out {self.base_branch}: {exc}")
            return
        if merge_branch:
            try:
                self.repo.git.merge("--ff-only", merge_branch)
                logger.info(f"Fast-forwarded {self.base_branch} to {merge_branch}")
            except GitCommandError as exc:
                logger.warning(f"Could not fast-forward {self.base_branch} to {merge_branch}: {exc}")
            return
        if self._origin() is not None:
            try:
                self.repo.git.pull("--ff-only", "origin", self.base_branch)
            except GitCommandError as exc:
                logger.debug(f"Fast-forward pull of {self.base_branch} skipped: {exc}")

    def close(self) -> None:
        """Close the GitHub client if this publisher created it."""
        if self._owns_github and self.github is not None:
            self.github.close()
            self.github = None
