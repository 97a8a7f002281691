from __future__ import annotations

import pytest

from cifix.ci.scoring import build_score


def test_delivered_fast_run_gets_bonus() -> None:
    s = build_score(elapsed_ms=60_000, commit_count=3, pipeline_passed=True, push_succeeded=True)
    assert (s.base, s.speed_bonus, s.efficiency_penalty, s.delivery_penalty, s.total, s.max) == (100, 10, 0, 0, 110, 110)


def test_slow_run_has_no_bonus() -> None:
    s = build_score(elapsed_ms=5 * 60 * 1000, commit_count=1, pipeline_passed=True, push_succeeded=True)
    assert s.speed_bonus == 0
    assert s.total == 100


def test_undelivered_run_is_penalised() -> None:
    s = build_score(elapsed_ms=1_000, commit_count=0, pipeline_passed=False, push_succeeded=False)
    assert s.speed_bonus == 0
    assert s.delivery_penalty == 60
    assert s.total == 40

    pushed_not_verified = build_score(elapsed_ms=1_000, commit_count=2, pipeline_passed=False, push_succeeded=True)
    assert pushed_not_verified.total == 40


def test_commits_beyond_twenty_cost_two_points_each() -> None:
    s = build_score(elapsed_ms=1_000, commit_count=25, pipeline_passed=True, push_succeeded=True)
    assert s.efficiency_penalty == 10
    assert s.total == 100


@pytest.mark.parametrize("commits", [0, 20, 45, 500])
@pytest.mark.parametrize("passed", [True, False])
@pytest.mark.parametrize("elapsed_ms", [0, 299_999, 10**9])
def test_total_is_always_within_bounds(commits: int, passed: bool, elapsed_ms: int) -> None:
    s = build_score(elapsed_ms=elapsed_ms, commit_count=commits, pipeline_passed=passed, push_succeeded=passed)
    assert 0 <= s.total <= s.max == 110
