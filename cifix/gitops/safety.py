from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from cifix.errors import ExecutionError, PolicyViolation, TransportError
from cifix.models import CommitResult, PushResult
from cifix.repos.preparer import redact
from cifix.verify.process import CommandResult, run_command


PROTECTED_BRANCHES = frozenset({"main", "master"})
COMMIT_PREFIX = "[AI-AGENT]"


def is_protected_branch(branch_name: str | None) -> bool:
    normalized = str(branch_name or "").strip().lower()
    return not normalized or normalized in PROTECTED_BRANCHES


def assert_safe_target_branch(branch_name: str | None) -> None:
    if is_protected_branch(branch_name):
        raise PolicyViolation(f"Policy violation: pushing to protected branch '{branch_name}' is not allowed.")


def build_commit_message(suffix: str) -> str:
    # One line only: a multi-line suffix could smuggle trailers or a second subject.
    one_line = re.sub(r"\s+", " ", str(suffix or "")).strip()
    message = f"{COMMIT_PREFIX} {one_line}".rstrip()
    if not message.startswith(f"{COMMIT_PREFIX} ") and message != COMMIT_PREFIX:
        raise PolicyViolation(f"Policy violation: commit message must start with {COMMIT_PREFIX}.")
    return message


@dataclass(frozen=True)
class GitSafetyLayer:
    """
    The only component allowed to mutate git state. Every operation re-checks the branch policy
    before running a git command.
    """

    author_name: str = "cifix-agent"
    author_email: str = "cifix-agent@users.noreply.github.com"
    remote: str = "origin"
    timeout_s: float = 300.0
    # token embedded in the clone URL; scrubbed from error messages
    secret: Optional[str] = None

    def _git(self, repo_root: str, *args: str) -> CommandResult:
        return run_command(["git", *args], cwd=repo_root, timeout_s=self.timeout_s)

    def _check(self, res: CommandResult, what: str) -> CommandResult:
        if not res.ok:
            raise ExecutionError(f"git {what} failed ({res.returncode}): {redact(res.output.strip(), self.secret)[-1500:]}")
        return res

    def prepare_branch(self, repo_root: str, branch_name: str) -> str:
        assert_safe_target_branch(branch_name)
        self._check(self._git(repo_root, "checkout", "-b", branch_name), "checkout -b")
        return branch_name

    def has_changes(self, repo_root: str) -> bool:
        res = self._check(self._git(repo_root, "status", "--porcelain"), "status")
        return bool(res.stdout.strip())

    def commit_fixes(self, repo_root: str, message_suffix: str) -> CommitResult:
        if not self.has_changes(repo_root):
            return CommitResult(committed=False)

        self._check(self._git(repo_root, "add", "-A"), "add")
        message = build_commit_message(message_suffix)
        identity: List[str] = ["-c", f"user.name={self.author_name}", "-c", f"user.email={self.author_email}"]
        self._check(self._git(repo_root, *identity, "commit", "-m", message), "commit")
        return CommitResult(committed=True, message=message)

    def push_fix_branch(self, repo_root: str, branch_name: str) -> PushResult:
        assert_safe_target_branch(branch_name)
        res = self._git(repo_root, "push", "-u", self.remote, branch_name)
        if not res.ok:
            raise TransportError(f"git push failed ({res.returncode}): {redact(res.output.strip(), self.secret)[-1500:]}")
        head = self._git(repo_root, "rev-parse", "HEAD")
        head_sha = head.stdout.strip() if head.ok else ""
        return PushResult(pushed=True, branch_name=branch_name, head_sha=head_sha or None)
