from __future__ import annotations

import json

from cifix.models import BugType, Issue, IssueStatus, JobResult, JobStatus, ScoreBreakdown, SnapshotMetrics
from cifix.reports.render import render_fix_line
from cifix.telemetry.audit import AuditLogger, scrub
from cifix.telemetry.results import load_job_result, persist_job_result


def test_scrub_masks_secret_keys_and_values() -> None:
    out = scrub({"github_token": "abc", "nested": [{"msg": "clone https://abc@github.com failed"}], "n": 3}, ["abc"])
    assert out["github_token"] == "***"
    assert out["nested"][0]["msg"] == "clone https://***@github.com failed"
    assert out["n"] == 3


def test_audit_logger_appends_jsonl(tmp_path) -> None:
    path = tmp_path / "audit" / "a.jsonl"
    log = AuditLogger(str(path), secrets=["tok", None])
    log.write("job-1", "job.started", {"repository": "https://tok@github.com/o/r"})
    log.write("job-1", "job.finished", {"status": "PASS"})

    records = [json.loads(ln) for ln in path.read_text(encoding="utf-8").splitlines()]
    assert [r["event_type"] for r in records] == ["job.started", "job.finished"]
    assert all(r["correlation_id"] == "job-1" and r["actor"] == "cifix" for r in records)
    assert "tok" not in records[0]["payload"]["repository"]


def test_render_fix_line() -> None:
    fixed = Issue(file="src/app.js", line=10, bug_type=BugType.linting, status=IssueStatus.fixed, detail="missing semicolon")
    assert render_fix_line(fixed) == "LINTING error in src/app.js line 10 → Fix: Applied automated fix for missing semicolon"
    failed = Issue(file="pipeline", bug_type=BugType.logic, status=IssueStatus.failed, detail="CI red")
    assert render_fix_line(failed, "manual review") == "LOGIC error in pipeline line n/a → Fix: manual review"


def test_result_document_round_trips(tmp_path) -> None:
    result = JobResult(
        job_id="job-1",
        repository="https://github.com/o/r",
        branch="T_L_AI_Fix",
        team_name="T",
        leader_name="L",
        retries_used=2,
        max_retries=5,
        status=JobStatus.passed,
        commit_prefix="[AI-AGENT]",
        commit_count=1,
        total_failures_detected=3,
        total_fixes_applied=2,
        bugs=[Issue(file="a.py", line=1, bug_type=BugType.syntax, status=IssueStatus.fixed, detail="SyntaxError")],
        score_breakdown=ScoreBreakdown(speed_bonus=10, total=110),
        metrics=SnapshotMetrics(score="110/110", total_time="01:05", status=JobStatus.passed),
    )
    saved = persist_job_result(store_dir=str(tmp_path / "results"), result=result)
    assert saved.json_path.endswith("job-1.results.json")

    loaded = load_job_result(saved.json_path)
    assert loaded == result

    report = open(saved.report_path, "r", encoding="utf-8").read()
    assert "status: `PASS`" in report
    assert "**total: 110/110**" in report
