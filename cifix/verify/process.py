from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence


TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127


@dataclass(frozen=True)
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout or "") + "\n" + (self.stderr or "")


def _decode(v: object) -> str:
    if isinstance(v, (bytes, bytearray)):
        return v.decode("utf-8", errors="replace")
    return str(v or "")


def run_command(
    argv: Sequence[str],
    *,
    cwd: Optional[str] = None,
    timeout_s: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    subprocess.run wrapper that never raises for the usual failure modes:
    missing binary -> 127, timeout -> 124 (partial output kept).
    """
    cmd = [str(a) for a in argv]
    run_env = dict(os.environ)
    # Never block on an interactive credential prompt.
    run_env["GIT_TERMINAL_PROMPT"] = "0"
    if env:
        run_env.update(env)
    try:
        p = subprocess.run(
            cmd,
            cwd=cwd,
            env=run_env,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout_s,
        )
    except FileNotFoundError as e:
        return CommandResult(argv=cmd, returncode=NOT_FOUND_RETURNCODE, stdout="", stderr=str(e), not_found=True)
    except subprocess.TimeoutExpired as e:
        return CommandResult(
            argv=cmd,
            returncode=TIMEOUT_RETURNCODE,
            stdout=_decode(e.stdout),
            stderr=_decode(e.stderr) + f"\ncommand timed out after {timeout_s}s",
            timed_out=True,
        )
    return CommandResult(argv=cmd, returncode=p.returncode, stdout=p.stdout or "", stderr=p.stderr or "")
