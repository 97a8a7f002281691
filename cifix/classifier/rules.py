from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from cifix.models import PIPELINE_FILE, UNKNOWN_FILE, BugType, Issue, IssueStatus
from cifix.parsers.locations import parse_location


_ERROR_INDICATOR_RE = re.compile(r"error|failed|warning|exception|cannot", re.IGNORECASE)

# Ordered: first bucket whose pattern matches wins. LOGIC is the catch-all.
_BUG_TYPE_RULES: Sequence[Tuple[BugType, re.Pattern[str]]] = (
    (BugType.linting, re.compile(r"eslint|lint|flake8|ruff", re.IGNORECASE)),
    (BugType.syntax, re.compile(r"syntaxerror|unexpected token|invalid syntax|parse error", re.IGNORECASE)),
    (BugType.type_error, re.compile(r"typeerror|type error|\bTS\d{4}\b|incompatible type", re.IGNORECASE)),
    (
        BugType.import_error,
        re.compile(
            r"cannot find module|module not found|modulenotfounderror|no module named|importerror|cannot import",
            re.IGNORECASE,
        ),
    ),
    (BugType.indentation, re.compile(r"indent", re.IGNORECASE)),
)

NO_MATCH_DETAIL = "No explicit parser match found, but test command failed."


def detect_bug_type(line: str) -> BugType:
    for bug_type, pat in _BUG_TYPE_RULES:
        if pat.search(line):
            return bug_type
    return BugType.logic


@dataclass(frozen=True)
class LogClassifier:
    """
    Deterministic line-based classifier for raw test/build output.

    Pure: the same log text always produces the same issue list.
    """

    max_issues: int = 30

    def classify(self, logs: str) -> List[Issue]:
        issues: List[Issue] = []
        for raw in (logs or "").splitlines():
            if not raw.strip():
                continue
            loc = parse_location(raw)
            bug_type = detect_bug_type(raw)
            # Linter output often has no "error" word; a category term plus a location is enough.
            located = loc.file != UNKNOWN_FILE and bug_type != BugType.logic
            if not (_ERROR_INDICATOR_RE.search(raw) or located):
                continue
            issues.append(
                Issue(
                    file=loc.file,
                    line=loc.line,
                    bug_type=bug_type,
                    status=IssueStatus.open,
                    detail=raw.strip(),
                )
            )

        # The caller only classifies known failures; an empty list would leave the retry loop
        # with nothing to act on.
        if not issues:
            return [pipeline_issue(NO_MATCH_DETAIL)]
        return issues[: max(1, int(self.max_issues))]


def pipeline_issue(detail: str) -> Issue:
    return Issue(file=PIPELINE_FILE, line=None, bug_type=BugType.logic, status=IssueStatus.open, detail=detail)
