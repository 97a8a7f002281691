from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from cifix.gitops.github_rest import GitHubActionsClient, parse_repo_slug
from cifix.models import PipelineResult


@dataclass(frozen=True)
class PipelinePoller:
    """
    Waits for the latest GitHub Actions run on a branch to complete.

    - no token: returns immediately with configuration_error=True (never a silent pass/fail)
    - no runs yet: keep polling
    - head_sha given: runs for any other commit are ignored, so a finished run from an earlier
      push never stands in for the one just pushed
    - completed run: passed iff conclusion == "success"
    - deadline reached: timed_out=True failure
    """

    token: Optional[str]
    api_base: str = "https://api.github.com"
    interval_s: float = 10.0
    timeout_s: float = 300.0
    transport: httpx.AsyncBaseTransport | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    clock: Callable[[], float] = time.monotonic

    async def poll(self, repo_url: str, branch: str, head_sha: Optional[str] = None) -> PipelineResult:
        if not self.token:
            return PipelineResult(passed=False, reason="GITHUB_TOKEN not configured", configuration_error=True)

        slug = parse_repo_slug(repo_url)
        if slug is None:
            return PipelineResult(passed=False, reason="Invalid GitHub URL")
        owner, repo = slug

        client = GitHubActionsClient(
            token=self.token,
            repo=f"{owner}/{repo}",
            api_base=self.api_base,
            transport=self.transport,
        )
        started = self.clock()
        try:
            while self.clock() - started < self.timeout_s:
                runs = await client.list_runs_for_branch(branch=branch, per_page=1, head_sha=head_sha)
                if head_sha:
                    runs = [r for r in runs if r.get("head_sha") == head_sha]
                if runs:
                    latest = runs[0]
                    if latest.get("status") == "completed":
                        conclusion = latest.get("conclusion")
                        return PipelineResult(
                            passed=conclusion == "success",
                            conclusion=conclusion,
                            workflow_name=latest.get("name"),
                            workflow_url=latest.get("html_url"),
                        )
                await self.sleep(self.interval_s)
        except httpx.HTTPError as e:
            return PipelineResult(passed=False, reason=f"GitHub API error: {e}")

        minutes = self.timeout_s / 60.0
        return PipelineResult(passed=False, reason=f"Timeout after {minutes:g} minutes", timed_out=True)
