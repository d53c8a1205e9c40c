"""
PR comment notifier.

The orchestrator only needs one capability from the outside world: post a
comment to a discussion thread. A thread is addressed by a ``ThreadKey`` (PR
number plus a hidden marker). Posting upserts: a comment carrying the marker
is edited in place, otherwise a new one is created.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

import requests

from envstack.errors import ConfigError, RemoteError, TransportError

logger = logging.getLogger(__name__)


GITHUB_API = "https://api.github.com"
COMMENTS_PER_PAGE = 100


@dataclass(frozen=True)
class ThreadKey:
    """Addresses one upsertable comment on one pull request."""
    pr_number: int
    marker: str

    @property
    def tag(self) -> str:
        return f"<!-- {self.marker} -->"


@runtime_checkable
class Notifier(Protocol):
    """
    Protocol for posting comments.

    Keeps the orchestrator free of GitHub details and lets tests swap in a
    recording fake.
    """

    def post_comment(self, thread_key: ThreadKey, body: str) -> None:
        ...


class NoOpNotifier:
    """Notifier used when a run has no PR context."""

    def post_comment(self, thread_key: ThreadKey, body: str) -> None:
        logger.debug("No notifier configured; dropping comment for PR #%s", thread_key.pr_number)


class GitHubNotifier:
    """
    Notifier backed by the GitHub issues comments API.

    Args:
        token: GitHub token with pull request write access
        repository: ``owner/repo``
        api_url: GitHub API base URL
        session: Optional requests.Session (injected in tests)
    """

    def __init__(
        self,
        token: str,
        repository: str,
        api_url: str = GITHUB_API,
        request_timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        owner, _, repo = repository.partition("/")
        if not owner or not repo or "/" in repo:
            raise ConfigError(f"Invalid repository format: {repository}. Expected format: owner/repo")
        self.owner = owner
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "envstack",
        })

    @classmethod
    def from_env(cls, session: Optional[requests.Session] = None) -> "GitHubNotifier":
        """Build from GITHUB_TOKEN and GITHUB_REPOSITORY."""
        token = os.environ.get("GITHUB_TOKEN", "")
        repository = os.environ.get("GITHUB_REPOSITORY", "")
        if not token:
            raise ConfigError("Missing required environment variable: GITHUB_TOKEN")
        if not repository:
            raise ConfigError("Missing required environment variable: GITHUB_REPOSITORY")
        return cls(token, repository, session=session)

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        kwargs.setdefault("timeout", self.request_timeout)
        try:
            resp = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        if not resp.ok:
            raise RemoteError(method, url, resp.status_code, resp.text)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(
                f"{method} {url} returned a non-JSON body", http_status=resp.status_code, body=resp.text
            ) from e

    def _comments_url(self, pr_number: int) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}/issues/{pr_number}/comments"

    def find_existing_comment(self, thread_key: ThreadKey) -> Optional[int]:
        """Return the id of the comment carrying the thread marker, if any."""
        page = 1
        while True:
            chunk = self._request(
                "GET",
                self._comments_url(thread_key.pr_number),
                params={"per_page": COMMENTS_PER_PAGE, "page": page},
            )
            if not chunk:
                return None
            if not isinstance(chunk, list):
                raise TransportError(
                    f"Unexpected comments payload for PR #{thread_key.pr_number}: expected a list"
                )
            for comment in chunk:
                if isinstance(comment, dict) and thread_key.tag in (comment.get("body") or ""):
                    return comment["id"]
            if len(chunk) < COMMENTS_PER_PAGE:
                return None
            page += 1

    def post_comment(self, thread_key: ThreadKey, body: str) -> None:
        if thread_key.tag not in body:
            body = f"{thread_key.tag}\n{body}"

        existing = self.find_existing_comment(thread_key)
        if existing:
            url = f"{self.api_url}/repos/{self.owner}/{self.repo}/issues/comments/{existing}"
            result = self._request("PATCH", url, json={"body": body})
            logger.info("Updated comment %s on PR #%s", existing, thread_key.pr_number)
        else:
            result = self._request("POST", self._comments_url(thread_key.pr_number), json={"body": body})
            logger.info("Posted comment to PR #%s", thread_key.pr_number)
        if result and result.get("html_url"):
            logger.info("Comment URL: %s", result["html_url"])
