"""Completion, threshold and progress metrics shared by every observation type.

All functions are pure and recomputed from current state; nothing here is
persisted.
"""
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Mapping, Sequence

from .dates import month_key

# Python weekday(): Friday=4, Saturday=5
_WEEKEND_DAYS = frozenset({4, 5})


def compute_completion_rate(
    history: Sequence[Any],
    predicate: Callable[[Any], bool],
) -> float:
    """Percentage of history entries matching predicate.

    count(matching) / max(1, count(history)) * 100, so an empty history
    yields 0.

    Args:
        history: Records of one observation type
        predicate: Completion test for a single record

    Returns:
        Value in [0, 100]
    """
    matching = sum(1 for item in history if predicate(item))
    return matching / max(1, len(history)) * 100


def compute_threshold_alert(
    value: float,
    total: float,
    threshold_fraction: float,
) -> bool:
    """True when value exceeds threshold_fraction of total."""
    return value > total * threshold_fraction


def ratio_percent(part: float, whole: float) -> float:
    """part / whole * 100, or 0 when whole is not positive."""
    if whole <= 0:
        return 0.0
    return part / whole * 100


def score_progress(pre: float, post: float) -> float:
    """Relative improvement of a post-test score over a pre-test score.

    A zero pre-test counts as full progress when anything was scored after.
    Regressions are negative.
    """
    pre = float(pre)
    post = float(post)
    if pre == 0:
        return 100.0 if post > 0 else 0.0
    return (post - pre) / pre * 100


def average_task_progress(tasks: Iterable[Mapping[str, Any]]) -> float:
    """Mean progress (0-100) of improvement plan tasks."""
    values = [float(task.get("progress", 0)) for task in tasks]
    if not values:
        return 0.0
    return sum(values) / len(values)


def working_days_so_far(today: date) -> int:
    """School days (Sunday-Thursday) from the first of the month to today."""
    count = 0
    day = today.replace(day=1)
    while day <= today:
        if day.weekday() not in _WEEKEND_DAYS:
            count += 1
        day += timedelta(days=1)
    return count


def monthly_confirmation_rate(
    confirmed_day_keys: Iterable[str],
    today: date,
) -> float:
    """Confirmed days this month over school days elapsed, as a percentage."""
    current_month = month_key(today)
    today_key = today.isoformat()
    confirmed = {
        key for key in confirmed_day_keys
        if key.startswith(current_month) and key <= today_key
    }
    return min(100.0, ratio_percent(len(confirmed), working_days_so_far(today)))

