from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote, urlencode

from services.errors import IssueStoreError
from services.http_client import request_json


logger = logging.getLogger(__name__)


_DEFAULT_API_URL = "https://api.github.com"
_DEFAULT_OWNER = "oldfish101240"
_DEFAULT_REPO = "whisper-box"

# GitHub caps per_page at 100; nothing beyond the first page is ever read.
MAX_PAGE_SIZE = 100


class GitHubIssueStore:
    """Issues of one GitHub repository used as a labeled, text-bodied record store.

    The token is optional for reads (public repo) and required for writes.
    When no token is passed explicitly it is read from GITHUB_TOKEN on every
    call, so rotating the secret does not need a restart.
    """

    def __init__(
        self,
        owner: str = _DEFAULT_OWNER,
        repo: str = _DEFAULT_REPO,
        token: Optional[str] = None,
        api_url: str = _DEFAULT_API_URL,
        timeout_seconds: float = 15.0,
    ):
        self.owner = owner
        self.repo = repo
        self._token = token
        self.api_url = (api_url or _DEFAULT_API_URL).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    @property
    def token(self) -> str:
        if self._token is not None:
            return self._token.strip()
        return (os.environ.get("GITHUB_TOKEN") or "").strip()

    def has_credentials(self) -> bool:
        return bool(self.token)

    def _issues_url(self, number: Optional[int] = None) -> str:
        base = f"{self.api_url}/repos/{quote(self.owner, safe='')}/{quote(self.repo, safe='')}/issues"
        if number is None:
            return base
        return f"{base}/{int(number)}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github.v3+json"}
        tok = self.token
        if tok:
            headers["Authorization"] = f"token {tok}"
        return headers

    def _call(self, method: str, url: str, body: Optional[Dict[str, Any]], failure: str) -> Any:
        try:
            status, payload = request_json(
                method,
                url,
                headers=self._headers(),
                body=body,
                timeout_seconds=self.timeout_seconds,
            )
        except OSError as e:
            logger.warning("GitHub %s %s failed: %s", method, url, e)
            raise IssueStoreError(failure) from e

        if status < 200 or status >= 300:
            message = ""
            if isinstance(payload, dict):
                message = str(payload.get("message") or "")
            logger.warning("GitHub %s %s returned %s: %s", method, url, status, message)
            raise IssueStoreError(message or failure, status=status)
        return payload

    def list_issues(
        self,
        labels: Sequence[str],
        *,
        state: str = "all",
        per_page: int = MAX_PAGE_SIZE,
        sort: str = "created",
        direction: str = "desc",
    ) -> List[Dict[str, Any]]:
        """Return the first page of issues carrying every label in `labels`."""

        params = {
            "labels": ",".join(labels),
            "state": state,
            "per_page": str(max(1, min(MAX_PAGE_SIZE, int(per_page)))),
            "sort": sort,
            "direction": direction,
        }
        url = f"{self._issues_url()}?{urlencode(params, safe=',')}"
        payload = self._call("GET", url, None, "Failed to fetch issues")
        if not isinstance(payload, list):
            raise IssueStoreError("Unexpected response listing issues")
        return [i for i in payload if isinstance(i, dict)]

    def get_issue(self, number: int) -> Dict[str, Any]:
        payload = self._call("GET", self._issues_url(number), None, "Failed to fetch issue")
        return payload if isinstance(payload, dict) else {}

    def create_issue(self, title: str, body: str, labels: Sequence[str]) -> Dict[str, Any]:
        payload = self._call(
            "POST",
            self._issues_url(),
            {"title": title, "body": body, "labels": list(labels)},
            "Failed to create issue",
        )
        return payload if isinstance(payload, dict) else {}

    def update_issue(self, number: int, **fields: Any) -> Dict[str, Any]:
        """PATCH any of title/body/state on an existing issue."""

        changes = {k: v for k, v in fields.items() if v is not None}
        payload = self._call("PATCH", self._issues_url(number), changes, "Failed to update issue")
        return payload if isinstance(payload, dict) else {}


_store: Optional[GitHubIssueStore] = None


def get_issue_store() -> GitHubIssueStore:
    global _store
    if _store is None:
        def _env_float(name: str, default: float) -> float:
            v = (os.environ.get(name) or "").strip()
            if not v:
                return float(default)
            try:
                return float(v)
            except Exception:
                return float(default)

        _store = GitHubIssueStore(
            owner=os.environ.get("GITHUB_REPO_OWNER", _DEFAULT_OWNER),
            repo=os.environ.get("GITHUB_REPO_NAME", _DEFAULT_REPO),
            api_url=os.environ.get("GITHUB_API_URL", _DEFAULT_API_URL),
            timeout_seconds=_env_float("GITHUB_TIMEOUT_SECONDS", 15.0),
        )
    return _store
