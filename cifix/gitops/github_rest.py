from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx


_GITHUB_SLUG_RE = re.compile(r"github\.com[/:](?P<owner>[^/]+)/(?P<repo>[^/\s]+)")


def parse_repo_slug(repo_url: str | None) -> Optional[Tuple[str, str]]:
    """
    owner/repo from https://github.com/o/r(.git) or git@github.com:o/r.git
    """
    m = _GITHUB_SLUG_RE.search(repo_url or "")
    if not m:
        return None
    repo = m.group("repo").rstrip("/")
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not repo:
        return None
    return m.group("owner"), repo


@dataclass(frozen=True)
class GitHubActionsClient:
    """
    Minimal async GitHub Actions REST wrapper.

    Designed to be mockable in tests (httpx transport override).
    """

    token: str
    repo: str  # owner/name
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: httpx.AsyncBaseTransport | None = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport)

    async def list_runs_for_branch(
        self, *, branch: str, per_page: int = 1, head_sha: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        url = f"{self.api_base.rstrip('/')}/repos/{self.repo}/actions/runs"
        params: Dict[str, Any] = {"branch": branch, "per_page": per_page}
        if head_sha:
            params["head_sha"] = head_sha
        async with self._client() as c:
            r = await c.get(url, headers=self._headers(), params=params)
            r.raise_for_status()
            data = r.json() or {}
        runs = data.get("workflow_runs") or []
        return [run for run in runs if isinstance(run, dict)]
