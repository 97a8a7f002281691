from __future__ import annotations

import json
import os
from dataclasses import dataclass

from cifix.models import JobResult
from cifix.reports.render import render_run_report_md


@dataclass(frozen=True)
class PersistedResult:
    job_id: str
    json_path: str
    report_path: str


def _safe_mkdir(p: str) -> None:
    os.makedirs(p, exist_ok=True)


def persist_job_result(*, store_dir: str, result: JobResult) -> PersistedResult:
    """
    Write the result document (JSON) and its markdown report. Called once per job.
    """
    _safe_mkdir(store_dir)
    json_path = os.path.join(store_dir, f"{result.job_id}.results.json")
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(result.model_dump(mode="json"), f, indent=2, sort_keys=False)

    report_path = os.path.join(store_dir, f"{result.job_id}.report.md")
    with open(report_path, "w", encoding="utf-8") as f:
        f.write(render_run_report_md(result))
    return PersistedResult(job_id=result.job_id, json_path=json_path, report_path=report_path)


def load_job_result(path: str) -> JobResult:
    with open(path, "r", encoding="utf-8") as f:
        return JobResult.model_validate(json.load(f))
