from __future__ import annotations

from cifix.models import ScoreBreakdown


BASE_SCORE = 100
MAX_SCORE = 110
SPEED_BONUS = 10
SPEED_BONUS_WINDOW_MS = 5 * 60 * 1000
FREE_COMMITS = 20
PENALTY_PER_EXTRA_COMMIT = 2
# Steep on purpose: an unpushed or unverified fix is worth little regardless of effort.
DELIVERY_PENALTY = 60


def build_score(*, elapsed_ms: float, commit_count: int, pipeline_passed: bool, push_succeeded: bool) -> ScoreBreakdown:
    delivered = bool(pipeline_passed and push_succeeded)
    speed_bonus = SPEED_BONUS if delivered and elapsed_ms < SPEED_BONUS_WINDOW_MS else 0
    efficiency_penalty = max(0, int(commit_count) - FREE_COMMITS) * PENALTY_PER_EXTRA_COMMIT
    delivery_penalty = 0 if delivered else DELIVERY_PENALTY
    total = max(0, min(MAX_SCORE, BASE_SCORE + speed_bonus - efficiency_penalty - delivery_penalty))
    return ScoreBreakdown(
        base=BASE_SCORE,
        speed_bonus=speed_bonus,
        efficiency_penalty=efficiency_penalty,
        delivery_penalty=delivery_penalty,
        total=total,
        max=MAX_SCORE,
    )
