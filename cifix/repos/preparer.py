from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from typing import Dict, Optional

from cifix.errors import ExecutionError
from cifix.models import PreparedRepository
from cifix.verify.process import run_command


BRANCH_SUFFIX = "_AI_Fix"
_BRANCH_NAME_RE = re.compile(r"^[A-Z0-9]+(?:_[A-Z0-9]+)*_[A-Z0-9]+(?:_[A-Z0-9]+)*_AI_Fix$")


def _sanitize_label(value: str | None, fallback: str) -> str:
    cleaned = re.sub(r"[^A-Z0-9 ]", "", str(value or "").upper()).strip()
    cleaned = re.sub(r"\s+", "_", cleaned)
    return cleaned or fallback


def format_branch_name(team_name: str | None, leader_name: str | None) -> str:
    """
    TEAM_LEADER_AI_Fix, e.g. ("Code Warriors", "Jane Doe") -> CODE_WARRIORS_JANE_DOE_AI_Fix.
    """
    team = _sanitize_label(team_name, "TEAM")
    leader = _sanitize_label(leader_name, "LEADER")
    return f"{team}_{leader}{BRANCH_SUFFIX}"


def is_valid_branch_name(branch_name: str | None) -> bool:
    return bool(branch_name) and _BRANCH_NAME_RE.match(branch_name or "") is not None


def with_github_token(url: str, token: str | None) -> str:
    if not token or "github.com" not in url or not url.startswith("https://"):
        return url
    cleaned = url[len("https://") :].rstrip("/")
    return f"https://{token}:x-oauth-basic@{cleaned}"


def redact(text: str, secret: str | None) -> str:
    if not secret:
        return text
    return (text or "").replace(secret, "***")


def read_package_scripts(repo_root: str) -> Dict[str, str]:
    path = os.path.join(repo_root, "package.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return {}
    scripts = data.get("scripts") if isinstance(data, dict) else None
    if not isinstance(scripts, dict):
        return {}
    return {str(k): str(v) for k, v in scripts.items()}


@dataclass(frozen=True)
class RepositoryPreparer:
    """
    Clones the target repo into an exclusive working directory and reads build metadata.
    """

    token: Optional[str] = None
    timeout_s: float = 300.0

    def prepare(self, *, repo_url: str, team_name: str, leader_name: str, work_dir: str) -> PreparedRepository:
        repo_root = os.path.join(os.path.abspath(work_dir), "repo")
        shutil.rmtree(repo_root, ignore_errors=True)
        os.makedirs(work_dir, exist_ok=True)

        res = run_command(
            ["git", "clone", with_github_token(repo_url, self.token), repo_root],
            timeout_s=self.timeout_s,
        )
        if not res.ok:
            raise ExecutionError(
                f"git clone failed ({res.returncode}): {redact(res.output.strip(), self.token)[-1500:]}",
                details={"repository": repo_url},
            )

        return PreparedRepository(
            repo_root=repo_root,
            branch_name=format_branch_name(team_name, leader_name),
            scripts=read_package_scripts(repo_root),
        )
