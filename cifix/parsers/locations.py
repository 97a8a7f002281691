from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from cifix.models import UNKNOWN_FILE


# Interpreter style:  File "app/main.py", line 42, in handler
_PY_LOCATION_RE = re.compile(r'File\s+"(?P<file>[^"]+)",\s+line\s+(?P<line>\d+)')
# Compiler style (tsc, msbuild):  src/index.ts(42,5): error TS2322
_PAREN_LOCATION_RE = re.compile(r"(?P<file>[\w.\\/-]+)\((?P<line>\d+),\d+\)")
# Generic:  src/app.js:10:2  (not the tail of a URL or another colon group)
_COLON_LOCATION_RE = re.compile(r"(?<![\w:/.-])(?P<file>[\w./-]+):(?P<line>\d+)(?::\d+)?")
# "12" in [12:30:45] or "localhost" in localhost:3000 is not a file.
_PATHLIKE_RE = re.compile(r"/|\.[A-Za-z]\w*$")


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: Optional[int]


def _generic_match(line: str) -> Optional[re.Match[str]]:
    for m in _COLON_LOCATION_RE.finditer(line):
        if _PATHLIKE_RE.search(m.group("file")):
            return m
    return None


def parse_location(line: str) -> SourceLocation:
    """
    Best-effort file/line extraction from one log line. First matching grammar wins.
    """
    text = line or ""
    m = _PY_LOCATION_RE.search(text) or _PAREN_LOCATION_RE.search(text) or _generic_match(text)
    if m:
        return SourceLocation(file=m.group("file"), line=int(m.group("line")))
    return SourceLocation(file=UNKNOWN_FILE, line=None)
