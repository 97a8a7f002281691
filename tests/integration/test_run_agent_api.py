from __future__ import annotations

import json
from pathlib import Path

from fastapi.testclient import TestClient

from cifix.models import CommitResult, IssueStatus, PipelineResult, PreparedRepository, PushResult, TestResult
from cifix.orchestrator.engine import JobOrchestrator
from cifix.service.app import create_app
from cifix.settings import Settings


class _Preparer:
    def __init__(self, root: str):
        self.root = root

    def prepare(self, *, repo_url, team_name, leader_name, work_dir):
        from cifix.repos.preparer import format_branch_name

        return PreparedRepository(repo_root=self.root, branch_name=format_branch_name(team_name, leader_name))


class _Runner:
    def __init__(self):
        self.results = [
            TestResult(passed=False, logs="ESLint: unexpected token at src/app.js:10:2", runner="docker", tests_discovered=True),
            TestResult(passed=True, logs="ok", runner="docker", tests_discovered=True),
        ]

    def run(self, repo_root, scripts=None):
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


class _Patcher:
    def generate(self, repo_root, issues, profile=None):
        return [i.model_copy(update={"status": IssueStatus.fixed, "fix_strategy": "heuristic"}) for i in issues]


class _Git:
    def prepare_branch(self, repo_root, branch_name):
        return branch_name

    def commit_fixes(self, repo_root, message_suffix):
        return CommitResult(committed=True, message=f"[AI-AGENT] {message_suffix}")

    def push_fix_branch(self, repo_root, branch_name):
        return PushResult(pushed=True, branch_name=branch_name)


class _Pipeline:
    async def poll(self, repo_url, branch, head_sha=None):
        return PipelineResult(passed=True, conclusion="success", workflow_name="CI")


def _settings(tmp_path: Path, **overrides) -> Settings:
    base = dict(
        github_token="ghp_test",
        runs_dir=str(tmp_path / "runs"),
        results_dir=str(tmp_path / "results"),
        audit_log_path=str(tmp_path / "audit.jsonl"),
    )
    base.update(overrides)
    return Settings(**base)


def _app(tmp_path: Path, **overrides):
    s = _settings(tmp_path, **overrides)
    orch = JobOrchestrator(
        s,
        preparer=_Preparer(str(tmp_path / "repo")),
        runner=_Runner(),
        patcher=_Patcher(),
        git=_Git(),
        pipeline=_Pipeline(),
    )
    return create_app(s, orchestrator=orch), orch


def _read_events(client: TestClient, job_id: str):
    events = []
    with client.stream("GET", f"/api/run-agent/stream/{job_id}") as r:
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        for line in r.iter_lines():
            if not line.startswith("data: "):
                continue
            ev = json.loads(line[len("data: ") :])
            events.append(ev)
            if ev["type"] in ("done", "error"):
                break
    return events


def test_run_agent_streams_until_done_and_persists_result(tmp_path) -> None:
    app, _ = _app(tmp_path)
    with TestClient(app) as client:
        r = client.post(
            "/api/run-agent",
            json={"repositoryUrl": "https://github.com/o/r", "teamName": "Code Warriors", "leaderName": "Jane Doe", "retryLimit": 3},
        )
        assert r.status_code == 202, r.text
        job_id = r.json()["jobId"]

        events = _read_events(client, job_id)
        assert events[0]["type"] == "snapshot"
        assert events[-1]["type"] == "done"
        done = events[-1]["payload"]
        assert done["status"] == "PASS"
        assert done["branch"] == "CODE_WARRIORS_JANE_DOE_AI_Fix"
        assert done["commit_count"] == 1
        assert done["bugs"][0]["bug_type"] == "LINTING"
        assert done["bugs"][0]["file"] == "src/app.js"

        snap = client.get(f"/api/jobs/{job_id}").json()
        assert snap["is_running"] is False
        assert snap["summary"]["iterations_used"] == "2/3"

        # late subscribers get the final snapshot plus the terminal event
        replay = _read_events(client, job_id)
        assert [e["type"] for e in replay] == ["snapshot", "done"]

    assert (tmp_path / "results" / f"{job_id}.results.json").exists()


def test_run_agent_accepts_github_url_alias(tmp_path) -> None:
    app, orch = _app(tmp_path)
    with TestClient(app) as client:
        r = client.post("/api/run-agent", json={"githubUrl": "https://github.com/o/r", "team_name": "T", "leader_name": "L"})
        assert r.status_code == 202
        job = orch.get(r.json()["jobId"])
        assert job.repository == "https://github.com/o/r"
        assert job.max_retries == 5


def test_run_agent_rejects_missing_fields(tmp_path) -> None:
    app, orch = _app(tmp_path)
    with TestClient(app) as client:
        r = client.post("/api/run-agent", json={"repositoryUrl": "https://github.com/o/r"})
        assert r.status_code == 400
        assert "required" in r.json()["error"]

        r = client.post("/api/run-agent", content=b"not json", headers={"content-type": "application/json"})
        assert r.status_code == 400
        assert "error" in r.json()
    assert orch.jobs == {}


def test_unknown_job_is_404(tmp_path) -> None:
    app, _ = _app(tmp_path)
    with TestClient(app) as client:
        r = client.get("/api/run-agent/stream/nope")
        assert r.status_code == 404
        assert r.json() == {"error": "Job not found"}
        assert client.get("/api/jobs/nope").status_code == 404
        assert client.get("/api/health").json() == {"ok": True}


def test_configuration_error_is_reported_on_the_stream(tmp_path) -> None:
    app, _ = _app(tmp_path, github_token=None)
    with TestClient(app) as client:
        r = client.post("/api/run-agent", json={"repositoryUrl": "https://github.com/o/r", "teamName": "T", "leaderName": "L"})
        job_id = r.json()["jobId"]
        events = _read_events(client, job_id)
        assert events[-1]["type"] == "done"
        assert events[-1]["payload"]["status"] == "CONFIGURATION_ERROR"
        assert events[-1]["payload"]["retries_used"] == 0
