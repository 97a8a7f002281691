from __future__ import annotations

import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from cifix.errors import PatchError
from cifix.llm.chat_client import ChatClient
from cifix.models import BugType, Issue, IssueStatus, ProjectProfile
from cifix.strategies import Attempt, Strategy, first_success
from cifix.verify.process import run_command


_QUOTED_NAME_RE = re.compile(r"""['"]([^'"]+)['"]""")


def normalize_patch_response(text: str | None) -> str:
    """
    Strip markdown fences and chatter around a model-produced unified diff.

    Models often wrap diffs in ```diff fences, which breaks `git apply`.
    """
    raw_lines: List[str] = []
    for ln in (text or "").splitlines():
        s = ln.rstrip("\r")
        if s.strip().startswith("```"):
            continue
        raw_lines.append(s)

    s = "\n".join(raw_lines).strip()
    if not s:
        return ""
    # Start at the first recognizable header line.
    for marker in ("diff --git ", "--- a/", "--- "):
        idx = s.find(marker)
        if idx != -1:
            s = s[idx:]
            break
    return s + "\n"


def apply_unified_diff(repo_root: str, diff_text: str, *, timeout_s: float = 120.0) -> Attempt[str]:
    """
    Apply a unified diff with `git apply`. The patch file lives in a scratch dir outside the
    working tree and is removed whether or not the apply succeeds.
    """
    if not diff_text.strip():
        return Attempt(ok=False, strategy="git-apply", detail="empty patch")
    td = tempfile.mkdtemp(prefix="cifix_patch_")
    try:
        patch_fp = os.path.join(td, "fix.patch")
        with open(patch_fp, "w", encoding="utf-8") as f:
            f.write(diff_text)
            if not diff_text.endswith("\n"):
                f.write("\n")
        res = run_command(["git", "apply", "--whitespace=nowarn", patch_fp], cwd=repo_root, timeout_s=timeout_s)
        return Attempt(ok=res.ok, strategy="git-apply", value=res.output, detail=f"git apply exit {res.returncode}")
    finally:
        shutil.rmtree(td, ignore_errors=True)


@dataclass(frozen=True)
class PatchContext:
    repo_root: str
    issue: Issue
    profile: Optional[ProjectProfile] = None


def _read_target_file(repo_root: str, rel_path: str, *, max_chars: int) -> str:
    root = os.path.realpath(repo_root)
    target = os.path.realpath(os.path.join(root, rel_path))
    # Log lines can name paths outside the clone (site-packages, /usr/lib, ...).
    if target != root and not target.startswith(root + os.sep):
        return ""
    try:
        with open(target, "r", encoding="utf-8", errors="replace") as f:
            return f.read(max_chars)
    except OSError:
        return ""


def build_patch_prompt(issue: Issue, file_content: str) -> List[Dict[str, str]]:
    system = "\n".join(
        [
            "You are fixing CI failures.",
            "Return only a valid unified diff patch for git apply, with paths relative to the repository root.",
            "Do not include explanations.",
        ]
    )
    user = "\n".join(
        [
            f"Bug type: {issue.bug_type.value}",
            f"Bug detail: {issue.detail}",
            f"File: {issue.file}" + (f" (line {issue.line})" if issue.line is not None else ""),
            "",
            "Current file content:",
            file_content,
        ]
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


@dataclass(frozen=True)
class LlmPatchStrategy:
    client: ChatClient
    model: str
    max_tokens: int = 2048
    max_file_chars: int = 20_000
    apply_timeout_s: float = 120.0
    name: str = "llm"

    def attempt(self, context: PatchContext) -> Attempt[str]:
        issue = context.issue
        content = ""
        if issue.has_real_path:
            content = _read_target_file(context.repo_root, issue.file, max_chars=self.max_file_chars)

        reply = self.client.chat(model=self.model, messages=build_patch_prompt(issue, content), max_tokens=self.max_tokens)
        diff_text = normalize_patch_response(reply)
        if not diff_text:
            raise PatchError("model returned no diff")
        applied = apply_unified_diff(context.repo_root, diff_text, timeout_s=self.apply_timeout_s)
        return Attempt(ok=applied.ok, strategy=self.name, value=diff_text, detail=applied.detail)


def extract_module_name(detail: str) -> Optional[str]:
    m = _QUOTED_NAME_RE.search(detail or "")
    if not m:
        return None
    name = m.group(1).strip()
    if not name or name.startswith("."):
        return None
    return name


@dataclass(frozen=True)
class HeuristicPatchStrategy:
    """
    Deterministic repairs: lint auto-fix for LINTING/INDENTATION, dependency install for IMPORT.
    """

    timeout_s: float = 300.0
    name: str = "heuristic"

    def attempt(self, context: PatchContext) -> Attempt[str]:
        issue = context.issue
        profile = context.profile

        if issue.bug_type in (BugType.linting, BugType.indentation):
            if profile is None or not profile.lint_fix_cmd:
                return Attempt(ok=False, strategy=self.name, detail="no lint auto-fix command for project")
            res = run_command(profile.lint_fix_cmd, cwd=context.repo_root, timeout_s=self.timeout_s)
            return Attempt(ok=res.ok, strategy=self.name, value=res.output, detail=f"lint fix exit {res.returncode}")

        if issue.bug_type == BugType.import_error:
            module = extract_module_name(issue.detail)
            if not module:
                return Attempt(ok=False, strategy=self.name, detail="no installable module name in detail")
            if profile is None or not profile.install_cmd:
                return Attempt(ok=False, strategy=self.name, detail="no install command for project")
            res = run_command([*profile.install_cmd, module], cwd=context.repo_root, timeout_s=self.timeout_s)
            return Attempt(ok=res.ok, strategy=self.name, value=res.output, detail=f"install {module} exit {res.returncode}")

        return Attempt(ok=False, strategy=self.name, detail=f"no heuristic for {issue.bug_type.value}")


@dataclass(frozen=True)
class PatchGenerator:
    strategies: Sequence[Strategy[PatchContext]] = field(default_factory=lambda: (HeuristicPatchStrategy(),))

    @classmethod
    def from_settings(cls, settings, *, client: ChatClient | None = None) -> "PatchGenerator":  # type: ignore[no-untyped-def]
        strategies: List[Strategy[PatchContext]] = []
        if client is None and settings.llm_api_key:
            from cifix.llm.chat_client import ChatCompletionsClient

            client = ChatCompletionsClient(
                api_key=settings.llm_api_key,
                base_url=settings.llm_base_url,
                timeout_s=float(settings.llm_timeout_s),
            )
        if client is not None:
            strategies.append(
                LlmPatchStrategy(
                    client=client,
                    model=settings.llm_model,
                    max_tokens=int(settings.llm_max_tokens),
                    max_file_chars=int(settings.llm_max_file_chars),
                    apply_timeout_s=float(settings.tool_timeout_s),
                )
            )
        strategies.append(HeuristicPatchStrategy(timeout_s=float(settings.tool_timeout_s)))
        return cls(strategies=tuple(strategies))

    def generate(self, repo_root: str, issues: Sequence[Issue], profile: ProjectProfile | None = None) -> List[Issue]:
        """
        One outcome per issue, same order as the input. Never raises: each issue is isolated.
        """
        outcomes: List[Issue] = []
        for issue in issues:
            att = first_success(self.strategies, PatchContext(repo_root=repo_root, issue=issue, profile=profile))
            outcomes.append(
                issue.model_copy(
                    update={
                        "status": IssueStatus.fixed if att.ok else IssueStatus.failed,
                        "fix_strategy": att.strategy if att.ok else None,
                    }
                )
            )
        return outcomes
