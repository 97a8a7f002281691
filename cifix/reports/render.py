from __future__ import annotations

from typing import Optional

from cifix.models import Issue, IssueStatus, JobResult


def describe_fix(issue: Issue) -> str:
    if issue.status == IssueStatus.fixed:
        return f"Applied automated fix for {issue.detail or 'issue'}"
    return f"Fix attempt failed: {issue.detail or 'unknown error'}"


def render_fix_line(issue: Issue, description: Optional[str] = None) -> str:
    """
    One-line summary, e.g. "LINTING error in src/app.js line 10 → Fix: ...".
    """
    line = issue.line if issue.line is not None else "n/a"
    return f"{issue.bug_type.value} error in {issue.file} line {line} → Fix: {description or describe_fix(issue)}"


def render_run_report_md(result: JobResult) -> str:
    """
    Human-readable markdown companion to the JSON result document.
    """
    lines: list[str] = []
    lines.append(f"# cifix run report: {result.job_id}")
    lines.append("")
    lines.append(f"- generated_at: `{result.generated_at.isoformat()}`")
    lines.append(f"- repository: `{result.repository}`")
    lines.append(f"- branch: `{result.branch}`")
    lines.append(f"- team / leader: `{result.team_name}` / `{result.leader_name}`")
    lines.append(f"- status: `{result.status.value}`")
    lines.append(f"- retries: `{result.retries_used}/{result.max_retries}`")
    lines.append(f"- commits: `{result.commit_count}` (prefix `{result.commit_prefix}`)")
    lines.append(f"- failures detected / fixes applied: `{result.total_failures_detected}` / `{result.total_fixes_applied}`")
    lines.append(f"- total time: `{result.metrics.total_time}`")
    lines.append("")

    s = result.score_breakdown
    lines.append("## Score")
    lines.append("")
    lines.append(f"- base: {s.base}")
    lines.append(f"- speed bonus: +{s.speed_bonus}")
    lines.append(f"- efficiency penalty: -{s.efficiency_penalty}")
    lines.append(f"- delivery penalty: -{s.delivery_penalty}")
    lines.append(f"- **total: {s.total}/{s.max}**")
    lines.append("")

    if result.bugs:
        lines.append("## Issues")
        lines.append("")
        for b in result.bugs:
            lines.append(f"- [{b.status.value}] {b.formatted_output or render_fix_line(b)}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
