from __future__ import annotations

import asyncio
import math
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from cifix.ci.poller import PipelinePoller
from cifix.ci.scoring import build_score
from cifix.classifier.rules import LogClassifier, pipeline_issue
from cifix.code_engine.engine import PatchGenerator
from cifix.errors import ConfigurationError, InvalidRunRequest, PolicyViolation
from cifix.gitops.safety import COMMIT_PREFIX, GitSafetyLayer
from cifix.models import (
    NO_COMMIT,
    CommitResult,
    Issue,
    IssueStatus,
    Job,
    JobResult,
    JobStatus,
    PipelineResult,
    PreparedRepository,
    ProjectProfile,
    PushResult,
    RunRequest,
    Snapshot,
    SnapshotMetrics,
    SnapshotSummary,
    TestResult,
    TimelineEntry,
    TimelineSeverity,
)
from cifix.reports.render import render_fix_line
from cifix.repos.preparer import RepositoryPreparer, format_branch_name, is_valid_branch_name
from cifix.service.broadcaster import SnapshotBroadcaster, StreamEvent
from cifix.settings import Settings
from cifix.telemetry.audit import AuditLogger
from cifix.telemetry.results import persist_job_result
from cifix.verify.sandbox import SandboxTestRunner


MIN_RETRIES = 1
MAX_RETRIES = 10


class Preparer(Protocol):
    def prepare(self, *, repo_url: str, team_name: str, leader_name: str, work_dir: str) -> PreparedRepository: ...


class SuiteRunner(Protocol):
    def run(self, repo_root: str, scripts: Dict[str, str] | None = None) -> TestResult: ...


class FixGenerator(Protocol):
    def generate(self, repo_root: str, issues: Sequence[Issue], profile: ProjectProfile | None = None) -> List[Issue]: ...


class GitLayer(Protocol):
    def prepare_branch(self, repo_root: str, branch_name: str) -> str: ...

    def commit_fixes(self, repo_root: str, message_suffix: str) -> CommitResult: ...

    def push_fix_branch(self, repo_root: str, branch_name: str) -> PushResult: ...


class Pipeline(Protocol):
    async def poll(self, repo_url: str, branch: str, head_sha: Optional[str] = None) -> PipelineResult: ...


def clamp_retry_limit(value: Any, default: int = 5) -> int:
    """
    Integer retry budget in [1, 10]. Missing or non-numeric input falls back to `default`.
    """

    def _clamp(n: float) -> int:
        return max(MIN_RETRIES, min(MAX_RETRIES, int(math.floor(n))))

    if value is None or (isinstance(value, str) and not value.strip()):
        return _clamp(default)
    try:
        n = float(value)
    except (TypeError, ValueError):
        return _clamp(default)
    if not math.isfinite(n):
        return _clamp(default)
    return _clamp(n)


def format_duration(ms: float) -> str:
    total_seconds = max(0, int(ms // 1000))
    return f"{total_seconds // 60:02d}:{total_seconds % 60:02d}"


def now_label() -> str:
    return datetime.now().strftime("%H:%M:%S")


@dataclass
class _LoopState:
    passed: bool = False
    push_succeeded: bool = False
    push_failed: bool = False


class JobOrchestrator:
    """
    Owns the job registry and drives each job through the retry state machine:

        STARTING -> CONFIGURATION_ERROR | POLICY_VIOLATION | ERROR
        STARTING -> RETRYING <-> VERIFYING_PIPELINE -> PASS | FAILED_PIPELINE | FAILED_PUSH | FAILED_MAX_RETRIES

    Each job runs as one asyncio task. Blocking tool calls (git, docker, LLM) go through
    asyncio.to_thread; job state is only mutated on the event loop.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        broadcaster: SnapshotBroadcaster | None = None,
        audit: AuditLogger | None = None,
        preparer: Preparer | None = None,
        runner: SuiteRunner | None = None,
        patcher: FixGenerator | None = None,
        git: GitLayer | None = None,
        pipeline: Pipeline | None = None,
        classifier: LogClassifier | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        s = settings
        self.settings = s
        self.broadcaster = broadcaster or SnapshotBroadcaster()
        self.audit = audit or AuditLogger(s.audit_log_path, secrets=[s.github_token or "", s.llm_api_key or ""])
        self.preparer: Preparer = preparer or RepositoryPreparer(token=s.github_token, timeout_s=float(s.tool_timeout_s))
        self.runner: SuiteRunner = runner or SandboxTestRunner.from_settings(s)
        self.patcher: FixGenerator = patcher or PatchGenerator.from_settings(s)
        self.git: GitLayer = git or GitSafetyLayer(
            author_name=s.git_author_name,
            author_email=s.git_author_email,
            timeout_s=float(s.tool_timeout_s),
            secret=s.github_token,
        )
        self.pipeline: Pipeline = pipeline or PipelinePoller(
            token=s.github_token,
            api_base=s.github_api_base,
            interval_s=float(s.ci_poll_interval_s),
            timeout_s=float(s.ci_poll_timeout_s),
        )
        self.classifier = classifier or LogClassifier(max_issues=int(s.max_issues_per_classification))
        self._clock = clock

        self.jobs: Dict[str, Job] = {}
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}

    # ---------- public API ----------

    async def start(self, request: RunRequest) -> str:
        """
        Validate, register the job and spawn its run task. Returns without waiting for the run.
        """
        repo_url = (request.repository_url or "").strip()
        team = (request.team_name or "").strip()
        leader = (request.leader_name or "").strip()
        if not repo_url or not team or not leader:
            raise InvalidRunRequest("repositoryUrl, teamName, and leaderName are required.")

        job_id = str(uuid.uuid4())
        job = Job(
            job_id=job_id,
            started_at_s=self._clock(),
            repository=repo_url,
            team_name=team,
            leader_name=leader,
            max_retries=clamp_retry_limit(request.retry_limit, default=int(self.settings.retry_limit_default)),
        )
        self.jobs[job_id] = job
        self.audit.write(
            job_id,
            "job.started",
            {"repository": repo_url, "team_name": team, "leader_name": leader, "max_retries": job.max_retries},
        )

        task = asyncio.create_task(self._run(job), name=f"cifix-job-{job_id[:8]}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._tasks.pop(jid, None))
        return job_id

    def get(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    async def wait(self, job_id: str) -> Optional[Job]:
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return self.jobs.get(job_id)

    def snapshot(self, job: Job) -> Snapshot:
        end = job.finished_at_s if job.finished_at_s is not None else self._clock()
        elapsed = format_duration((end - job.started_at_s) * 1000.0)
        return Snapshot(
            job_id=job.job_id,
            is_running=job.is_running,
            error=job.error,
            metrics=SnapshotMetrics(score=f"{job.score.total}/{job.score.max}", total_time=elapsed, status=job.status),
            summary=SnapshotSummary(
                repository=job.repository,
                team_name=job.team_name,
                leader_name=job.leader_name,
                branch_name=job.branch_name,
                total_failures_detected=job.total_failures_detected,
                total_fixes_applied=job.total_fixes_applied,
                final_status=job.status,
                total_time=elapsed,
                commit_count=job.commit_count,
                iterations_used=f"{job.iterations_used}/{job.max_retries}",
            ),
            fixes=list(job.fixes),
            timeline=list(job.timeline),
            score=job.score,
        )

    def terminal_event(self, job: Job) -> Optional[StreamEvent]:
        """
        Replay of the last stream event for observers that subscribe after the job finished.
        """
        if job.is_running or not job.status.is_terminal:
            return None
        if job.status in (JobStatus.policy_violation, JobStatus.error):
            return StreamEvent(type="error", payload={"error": job.error})
        if job.result is not None:
            return StreamEvent(type="done", payload=job.result.model_dump(mode="json"))
        return StreamEvent(type="done", payload=self.snapshot(job).model_dump(mode="json"))

    # ---------- run ----------

    async def _run(self, job: Job) -> None:
        try:
            job.branch_name = format_branch_name(job.team_name, job.leader_name)
            self._publish(job)
            self._assert_branch_policy(job.branch_name)

            if not self.settings.github_token:
                raise ConfigurationError(
                    "GITHUB_TOKEN not configured. Cannot verify GitHub Actions. Set CIFIX_GITHUB_TOKEN."
                )

            work_dir = os.path.join(self.settings.runs_dir, job.job_id)
            prepared = await asyncio.to_thread(
                self.preparer.prepare,
                repo_url=job.repository,
                team_name=job.team_name,
                leader_name=job.leader_name,
                work_dir=work_dir,
            )
            job.branch_name = prepared.branch_name
            self._assert_branch_policy(prepared.branch_name)

            await asyncio.to_thread(self.git.prepare_branch, prepared.repo_root, prepared.branch_name)
            self._set_status(
                job,
                JobStatus.retrying,
                iteration=0,
                severity=TimelineSeverity.info,
                message=f"Branch {prepared.branch_name} created. Starting fix loop ({job.max_retries} retries max).",
            )

            state = await self._retry_loop(job, prepared)
            self._finish(job, state)
        except ConfigurationError as e:
            self._finish_early(job, JobStatus.configuration_error, str(e), event_type="done")
        except PolicyViolation as e:
            self._finish_early(job, JobStatus.policy_violation, str(e), event_type="error")
        except Exception as e:  # noqa: BLE001
            self._finish_early(job, JobStatus.error, str(e) or type(e).__name__, event_type="error")

    def _assert_branch_policy(self, branch_name: str) -> None:
        if not is_valid_branch_name(branch_name):
            raise PolicyViolation(
                f"Policy violation: branch '{branch_name}' does not match required TEAM_LEADER_AI_Fix format."
            )

    async def _retry_loop(self, job: Job, prepared: PreparedRepository) -> _LoopState:
        state = _LoopState()
        limit = job.max_retries
        retry = 0

        while retry < limit and not state.passed:
            retry += 1
            job.iterations_used = retry
            result = await asyncio.to_thread(self.runner.run, prepared.repo_root, prepared.scripts)
            profile = result.profile

            if not result.tests_discovered:
                # No failing-test evidence to fix from; let the external CI be the authority.
                self._set_status(
                    job,
                    JobStatus.verifying_pipeline,
                    iteration=retry,
                    severity=TimelineSeverity.info,
                    message="No local test framework detected. Relying on GitHub Actions for validation.",
                )
                pipeline = await self._push_and_verify(job, prepared, retry, state)
                if pipeline is None or pipeline.passed:
                    break
                reason = pipeline.describe()
                self._timeline(
                    job,
                    retry,
                    TimelineSeverity.failed,
                    f"GitHub Actions failed: {reason}. Cannot auto-fix without local test framework.",
                )
                issue = pipeline_issue(f"GitHub Actions failed: {reason}. No local test framework to generate fixes.")
                issue = issue.model_copy(update={"status": IssueStatus.failed, "commit_message": NO_COMMIT})
                issue.formatted_output = render_fix_line(issue)
                job.total_failures_detected += 1
                self._record_fixes(job, [issue])
                self._publish(job)
                continue

            if result.passed:
                self._set_status(
                    job,
                    JobStatus.verifying_pipeline,
                    iteration=retry,
                    severity=TimelineSeverity.passed,
                    message=f"Local tests passed on retry {retry}. Runner: {result.runner}",
                )
                pipeline = await self._push_and_verify(job, prepared, retry, state)
                if pipeline is None or pipeline.passed:
                    break
                reason = pipeline.describe()
                self._set_status(
                    job,
                    JobStatus.retrying,
                    iteration=retry,
                    severity=TimelineSeverity.failed,
                    message=f"GitHub Actions failed: {reason}. Retrying...",
                )
                # Fresh logs for the next round of fixes.
                rerun = await asyncio.to_thread(self.runner.run, prepared.repo_root, prepared.scripts)
                if rerun.tests_discovered and not rerun.passed:
                    issues = self.classifier.classify(rerun.logs)
                    profile = rerun.profile or profile
                else:
                    issues = [pipeline_issue(f"GitHub Actions failed: {reason}")]
            else:
                self._set_status(
                    job,
                    JobStatus.retrying,
                    iteration=retry,
                    severity=TimelineSeverity.failed,
                    message=f"Local tests failed on retry {retry}. Runner: {result.runner}",
                )
                issues = self.classifier.classify(result.logs)

            await self._apply_fixes(job, prepared, retry, issues, profile)

        return state

    async def _push_and_verify(
        self, job: Job, prepared: PreparedRepository, retry: int, state: _LoopState
    ) -> Optional[PipelineResult]:
        """
        Push the fix branch and wait for CI. Returns None when the push failed (loop must stop).
        """
        try:
            pushed = await asyncio.to_thread(self.git.push_fix_branch, prepared.repo_root, prepared.branch_name)
        except PolicyViolation:
            raise
        except Exception as e:  # noqa: BLE001
            # Push failures are treated as deterministic (auth, permissions): not retried.
            state.push_failed = True
            self._set_status(
                job,
                JobStatus.failed_push,
                iteration=retry,
                severity=TimelineSeverity.failed,
                message=f"Push error: {e}. Stopping execution.",
            )
            return None

        state.push_succeeded = True
        self._timeline(job, retry, TimelineSeverity.passed, f"Branch pushed: {prepared.branch_name}")

        try:
            pipeline = await self.pipeline.poll(job.repository, prepared.branch_name, head_sha=pushed.head_sha)
        except Exception as e:  # noqa: BLE001
            pipeline = PipelineResult(passed=False, reason=f"Pipeline poll error: {e}")
        self.audit.write(job.job_id, "job.pipeline", pipeline.model_dump(mode="json"))

        if pipeline.passed:
            state.passed = True
            self._set_status(
                job,
                JobStatus.passed,
                iteration=retry,
                severity=TimelineSeverity.passed,
                message=f"GitHub Actions passed: {pipeline.workflow_name or 'CI/CD'}",
            )
        return pipeline

    async def _apply_fixes(
        self,
        job: Job,
        prepared: PreparedRepository,
        retry: int,
        issues: List[Issue],
        profile: ProjectProfile | None,
    ) -> None:
        job.total_failures_detected += len(issues)
        outcomes = await asyncio.to_thread(self.patcher.generate, prepared.repo_root, issues, profile)
        fixed_count = sum(1 for o in outcomes if o.status == IssueStatus.fixed)
        job.total_fixes_applied += fixed_count

        commit = await asyncio.to_thread(self.git.commit_fixes, prepared.repo_root, f"Retry {retry} automated fixes")
        if commit.committed:
            job.commit_count += 1

        annotated: List[Issue] = []
        for o in outcomes:
            item = o.model_copy(update={"commit_message": commit.message if commit.committed else NO_COMMIT})
            item.formatted_output = render_fix_line(item)
            annotated.append(item)
        self._record_fixes(job, annotated)
        self.audit.write(
            job.job_id,
            "job.fixes",
            {
                "iteration": retry,
                "issues": len(issues),
                "fixed": fixed_count,
                "committed": commit.committed,
                "commit_message": commit.message,
            },
        )

        if commit.committed:
            message = f"Retry {retry}: {fixed_count} fixes applied and committed."
        else:
            message = f"Retry {retry}: no commit generated (no file changes)."
        self._timeline(job, retry, TimelineSeverity.failed, message)

    # ---------- termination ----------

    def _finish(self, job: Job, state: _LoopState) -> None:
        if state.passed:
            final = JobStatus.passed
        elif state.push_failed:
            final = JobStatus.failed_push
        elif state.push_succeeded:
            final = JobStatus.failed_pipeline
        else:
            final = JobStatus.failed_max_retries

        # PASS and FAILED_PUSH were already recorded where they happened.
        if job.status != final:
            self._set_status(
                job,
                final,
                iteration=job.iterations_used,
                severity=TimelineSeverity.passed if state.passed else TimelineSeverity.failed,
                message=f"Run finished: {final.value} after {job.iterations_used}/{job.max_retries} retries",
            )

        job.finished_at_s = self._clock()
        job.score = build_score(
            elapsed_ms=(job.finished_at_s - job.started_at_s) * 1000.0,
            commit_count=job.commit_count,
            pipeline_passed=state.passed,
            push_succeeded=state.push_succeeded,
        )
        job.is_running = False
        self.audit.write(job.job_id, "job.finished", {"status": job.status.value, "score": job.score.model_dump()})
        self._persist_result(job)
        self._publish(job)
        self.broadcaster.broadcast(job.job_id, "done", job.result.model_dump(mode="json") if job.result else None)

    def _finish_early(self, job: Job, status: JobStatus, message: str, *, event_type: str) -> None:
        job.status = status
        job.error = message
        job.is_running = False
        job.finished_at_s = self._clock()
        text = message if status == JobStatus.configuration_error else f"Execution failed: {message}"
        self._timeline(job, job.iterations_used, TimelineSeverity.failed, text)
        self.audit.write(job.job_id, "job.failed", {"status": status.value, "error": message})
        self._persist_result(job)
        self._publish(job)
        if event_type == "error":
            self.broadcaster.broadcast(job.job_id, "error", {"error": message})
        else:
            self.broadcaster.broadcast(job.job_id, "done", job.result.model_dump(mode="json") if job.result else None)

    def build_result(self, job: Job) -> JobResult:
        snap = self.snapshot(job)
        return JobResult(
            job_id=job.job_id,
            repository=job.repository,
            branch=job.branch_name,
            team_name=job.team_name,
            leader_name=job.leader_name,
            retries_used=job.iterations_used,
            max_retries=job.max_retries,
            status=job.status,
            commit_prefix=COMMIT_PREFIX,
            commit_count=job.commit_count,
            total_failures_detected=job.total_failures_detected,
            total_fixes_applied=job.total_fixes_applied,
            bugs=list(job.fixes),
            score_breakdown=job.score,
            metrics=snap.metrics,
        )

    def _persist_result(self, job: Job) -> None:
        job.result = self.build_result(job)
        try:
            saved = persist_job_result(store_dir=self.settings.results_dir, result=job.result)
        except OSError as e:
            self.audit.write(job.job_id, "job.result_save_failed", {"error": str(e)})
            return
        self.audit.write(job.job_id, "job.result_saved", {"path": saved.json_path, "report": saved.report_path})

    # ---------- bookkeeping ----------

    def _record_fixes(self, job: Job, items: List[Issue]) -> None:
        bound = max(1, int(self.settings.max_issue_history))
        job.fixes = (job.fixes + items)[-bound:]

    def _timeline(self, job: Job, iteration: int, severity: TimelineSeverity, message: str) -> None:
        entry = TimelineEntry(
            iteration=iteration,
            max_retries=job.max_retries,
            status=severity,
            message=message,
            time=now_label(),
        )
        job.timeline.append(entry)
        self.audit.write(job.job_id, "job.timeline", {"job_status": job.status.value, **entry.model_dump(mode="json")})
        self._publish(job)

    def _set_status(
        self, job: Job, status: JobStatus, *, iteration: int, severity: TimelineSeverity, message: str
    ) -> None:
        if job.status != status:
            self.audit.write(job.job_id, "job.status", {"from": job.status.value, "to": status.value, "iteration": iteration})
        job.status = status
        self._timeline(job, iteration, severity, message)

    def _publish(self, job: Job) -> None:
        self.broadcaster.broadcast(job.job_id, "snapshot", self.snapshot(job).model_dump(mode="json"))
