from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    starting = "STARTING"
    retrying = "RETRYING"
    verifying_pipeline = "VERIFYING_PIPELINE"
    passed = "PASS"
    failed_pipeline = "FAILED_PIPELINE"
    failed_push = "FAILED_PUSH"
    failed_max_retries = "FAILED_MAX_RETRIES"
    configuration_error = "CONFIGURATION_ERROR"
    policy_violation = "POLICY_VIOLATION"
    error = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.starting, JobStatus.retrying, JobStatus.verifying_pipeline)


class BugType(str, Enum):
    linting = "LINTING"
    syntax = "SYNTAX"
    logic = "LOGIC"
    type_error = "TYPE_ERROR"
    import_error = "IMPORT"
    indentation = "INDENTATION"


class IssueStatus(str, Enum):
    open = "OPEN"
    fixed = "FIXED"
    failed = "FAILED"


class TimelineSeverity(str, Enum):
    passed = "PASS"
    failed = "FAIL"
    info = "INFO"


# Location sentinels used when a failure cannot be pinned to a source file.
UNKNOWN_FILE = "unknown"
PIPELINE_FILE = "pipeline"
NO_COMMIT = "NO_COMMIT"


class Issue(BaseModel):
    """
    One classified failure signal. Created OPEN by the classifier and resolved to
    FIXED/FAILED by the patch generator.
    """

    file: str = UNKNOWN_FILE
    line: Optional[int] = None
    bug_type: BugType = BugType.logic
    status: IssueStatus = IssueStatus.open
    detail: str = ""

    fix_strategy: Optional[str] = None
    commit_message: Optional[str] = None
    formatted_output: Optional[str] = None

    @property
    def has_real_path(self) -> bool:
        return bool(self.file) and self.file not in (UNKNOWN_FILE, PIPELINE_FILE)


class TimelineEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    iteration: int
    max_retries: int
    status: TimelineSeverity
    message: str
    time: str


class ScoreBreakdown(BaseModel):
    base: int = 100
    speed_bonus: int = 0
    efficiency_penalty: int = 0
    delivery_penalty: int = 0
    total: int = 0
    max: int = 110


class RunRequest(BaseModel):
    """
    Body of POST /api/run-agent. Accepts the dashboard's camelCase keys as well as snake_case.
    """

    repository_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("repositoryUrl", "githubUrl", "repository_url")
    )
    team_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("teamName", "team_name"))
    leader_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("leaderName", "leader_name"))
    retry_limit: Any = Field(default=None, validation_alias=AliasChoices("retryLimit", "retry_limit"))


class ProjectProfile(BaseModel):
    kind: Literal["node", "python", "go", "maven", "gradle", "none"]
    tests_discovered: bool
    image: str
    command: str
    fallback_command: str
    # argv used by the heuristic fixers; None when the ecosystem has no equivalent
    lint_fix_cmd: Optional[List[str]] = None
    install_cmd: Optional[List[str]] = None


class TestResult(BaseModel):
    __test__ = False  # not a pytest test class

    passed: bool
    logs: str
    runner: Literal["docker", "fallback-local", "none"]
    tests_discovered: bool
    returncode: Optional[int] = None
    profile: Optional[ProjectProfile] = None


class PreparedRepository(BaseModel):
    repo_root: str
    branch_name: str
    scripts: Dict[str, str] = Field(default_factory=dict)


class CommitResult(BaseModel):
    committed: bool
    message: Optional[str] = None


class PushResult(BaseModel):
    pushed: bool
    branch_name: str
    # commit the remote branch now points at; CI runs are matched against it
    head_sha: Optional[str] = None


class PipelineResult(BaseModel):
    passed: bool
    conclusion: Optional[str] = None
    reason: Optional[str] = None
    workflow_name: Optional[str] = None
    workflow_url: Optional[str] = None
    timed_out: bool = False
    configuration_error: bool = False

    def describe(self) -> str:
        return self.reason or self.conclusion or "Pipeline failed"


class Job(BaseModel):
    """
    Mutable per-run state. Owned by the orchestrator; everything else reads Snapshots.
    """

    job_id: str
    created_at: datetime = Field(default_factory=_utc_now)
    # monotonic clock reading at creation, used for elapsed-time math
    started_at_s: float = 0.0
    finished_at_s: Optional[float] = None

    status: JobStatus = JobStatus.starting
    is_running: bool = True
    error: Optional[str] = None

    repository: str
    team_name: str
    leader_name: str
    branch_name: str = ""

    max_retries: int = 5
    iterations_used: int = 0

    fixes: List[Issue] = Field(default_factory=list)
    timeline: List[TimelineEntry] = Field(default_factory=list)
    commit_count: int = 0
    total_failures_detected: int = 0
    total_fixes_applied: int = 0
    score: ScoreBreakdown = Field(default_factory=ScoreBreakdown)

    result: Optional["JobResult"] = None


class SnapshotMetrics(BaseModel):
    score: str
    total_time: str
    status: JobStatus


class SnapshotSummary(BaseModel):
    repository: str
    team_name: str
    leader_name: str
    branch_name: str
    total_failures_detected: int
    total_fixes_applied: int
    final_status: JobStatus
    total_time: str
    commit_count: int
    iterations_used: str


class Snapshot(BaseModel):
    job_id: str
    is_running: bool
    error: Optional[str] = None
    metrics: SnapshotMetrics
    summary: SnapshotSummary
    fixes: List[Issue]
    timeline: List[TimelineEntry]
    score: ScoreBreakdown


class JobResult(BaseModel):
    """
    Result document persisted once per job at termination.
    """

    job_id: str
    repository: str
    branch: str
    team_name: str
    leader_name: str
    retries_used: int
    max_retries: int
    status: JobStatus
    commit_prefix: str
    commit_count: int
    total_failures_detected: int
    total_fixes_applied: int
    bugs: List[Issue] = Field(default_factory=list)
    score_breakdown: ScoreBreakdown
    metrics: SnapshotMetrics
    generated_at: datetime = Field(default_factory=_utc_now)


Job.model_rebuild()
