from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from cifix.models import ProjectProfile, TestResult
from cifix.strategies import Attempt, Strategy, first_success
from cifix.verify.process import CommandResult, run_command


NO_FRAMEWORK_LOGS = "No local test framework detected. Deferring to GitHub Actions for validation."

# `docker run` exits 125 when the daemon/runtime itself fails (image pull, mount, no daemon).
DOCKER_RUNTIME_ERROR = 125


def _exists(root: str, name: str) -> bool:
    return os.path.exists(os.path.join(root, name))


def _accumulate(cmds: Sequence[str]) -> str:
    # Run every step (so logs cover lint + test + build) but keep the first failure's status.
    parts = ["rc=0"]
    for c in cmds:
        parts.append(f"{{ {c}; }} || rc=1")
    parts.append("exit $rc")
    return "; ".join(parts)


def detect_project(repo_root: str, scripts: Mapping[str, str] | None = None) -> ProjectProfile:
    """
    Inspect marker files (fixed priority order) and build the execution profile.
    """
    scripts = dict(scripts or {})

    if _exists(repo_root, "package.json") and any(k in scripts for k in ("test", "lint", "build")):
        steps: List[str] = []
        if "lint" in scripts:
            steps.append("npm run lint")
        if "test" in scripts:
            steps.append("npm test -- --watch=false || npm test")
        if "build" in scripts:
            steps.append("npm run build")
        return ProjectProfile(
            kind="node",
            tests_discovered=True,
            image="node:20-bullseye",
            command=f"(npm ci || npm install) && {{ {_accumulate(steps)}; }}",
            fallback_command=f"(npm ci || npm install) && {{ {_accumulate(steps)}; }}",
            lint_fix_cmd=["npm", "run", "lint", "--", "--fix"] if "lint" in scripts else None,
            install_cmd=["npm", "install"],
        )

    if _exists(repo_root, "pyproject.toml") or _exists(repo_root, "requirements.txt"):
        return ProjectProfile(
            kind="python",
            tests_discovered=True,
            image="python:3.11-bullseye",
            command="; ".join(
                [
                    "python -m pip install --upgrade pip",
                    "if [ -f requirements.txt ]; then pip install -r requirements.txt; fi",
                    "pip install pytest",
                    "pytest -q",
                ]
            ),
            fallback_command="; ".join(
                [
                    "if [ -f requirements.txt ]; then python -m pip install -r requirements.txt; fi",
                    "python -m pytest -q",
                ]
            ),
            lint_fix_cmd=["python", "-m", "ruff", "check", "--fix", "."],
            install_cmd=["python", "-m", "pip", "install"],
        )

    if _exists(repo_root, "go.mod"):
        return ProjectProfile(
            kind="go",
            tests_discovered=True,
            image="golang:1.22-bullseye",
            command="go test ./... -count=1",
            fallback_command="go test ./... -count=1",
            lint_fix_cmd=["gofmt", "-w", "."],
            install_cmd=["go", "get"],
        )

    has_maven = _exists(repo_root, "pom.xml")
    if has_maven or _exists(repo_root, "build.gradle") or _exists(repo_root, "build.gradle.kts"):
        cmd = "mvn -q test" if has_maven else "gradle test"
        return ProjectProfile(
            kind="maven" if has_maven else "gradle",
            tests_discovered=True,
            image="maven:3.9.7-eclipse-temurin-17",
            command=cmd,
            fallback_command=cmd,
        )

    return ProjectProfile(
        kind="none",
        tests_discovered=False,
        image="node:20-bullseye",
        command='echo "No supported test framework discovered"; exit 1',
        fallback_command='echo "No supported test framework discovered"; exit 1',
    )


@dataclass(frozen=True)
class RunContext:
    repo_root: str
    profile: ProjectProfile


@dataclass(frozen=True)
class ContainerStrategy:
    """
    Runs the profile command in a throwaway container with the clone mounted read-write.
    """

    docker_bin: str = "docker"
    timeout_s: float = 900.0
    enabled: bool = True
    name: str = "docker"

    def attempt(self, context: RunContext) -> Attempt[CommandResult]:
        if not self.enabled:
            return Attempt(ok=False, strategy=self.name, detail="sandbox disabled")
        argv = [
            self.docker_bin,
            "run",
            "--rm",
            "-v",
            f"{os.path.abspath(context.repo_root)}:/workspace",
            "-w",
            "/workspace",
            context.profile.image,
            "bash",
            "-lc",
            context.profile.command,
        ]
        res = run_command(argv, timeout_s=self.timeout_s)
        if res.not_found or res.returncode == DOCKER_RUNTIME_ERROR:
            return Attempt(ok=False, strategy=self.name, value=res, detail="container runtime unavailable")
        return Attempt(ok=True, strategy=self.name, value=res)


@dataclass(frozen=True)
class LocalStrategy:
    """
    Unsandboxed fallback: runs the profile's fallback command directly on the host.
    """

    timeout_s: float = 900.0
    name: str = "fallback-local"

    def attempt(self, context: RunContext) -> Attempt[CommandResult]:
        res = run_command(["bash", "-lc", context.profile.fallback_command], cwd=context.repo_root, timeout_s=self.timeout_s)
        return Attempt(ok=not res.not_found, strategy=self.name, value=res)


@dataclass(frozen=True)
class SandboxTestRunner:
    strategies: Sequence[Strategy[RunContext]] = field(
        default_factory=lambda: (ContainerStrategy(), LocalStrategy())
    )

    @classmethod
    def from_settings(cls, settings) -> "SandboxTestRunner":  # type: ignore[no-untyped-def]
        return cls(
            strategies=(
                ContainerStrategy(
                    docker_bin=settings.docker_bin,
                    timeout_s=float(settings.sandbox_timeout_s),
                    enabled=bool(settings.sandbox_enabled),
                ),
                LocalStrategy(timeout_s=float(settings.sandbox_timeout_s)),
            )
        )

    def detect(self, repo_root: str, scripts: Mapping[str, str] | None = None) -> ProjectProfile:
        return detect_project(repo_root, scripts)

    def run(self, repo_root: str, scripts: Dict[str, str] | None = None) -> TestResult:
        profile = self.detect(repo_root, scripts)
        if not profile.tests_discovered:
            # Nothing to execute; the external CI is the only authority for this repo.
            return TestResult(
                passed=False,
                logs=NO_FRAMEWORK_LOGS,
                runner="none",
                tests_discovered=False,
                profile=profile,
            )

        att = first_success(self.strategies, RunContext(repo_root=repo_root, profile=profile))
        res: Optional[CommandResult] = att.value
        if res is None:
            return TestResult(
                passed=False,
                logs=att.detail or "no runner available",
                runner="fallback-local",
                tests_discovered=True,
                profile=profile,
            )
        runner = "docker" if (att.ok and att.strategy == "docker") else "fallback-local"
        return TestResult(
            passed=bool(att.ok and res.returncode == 0 and profile.tests_discovered),
            logs=res.output,
            runner=runner,
            tests_discovered=True,
            returncode=res.returncode,
            profile=profile,
        )
