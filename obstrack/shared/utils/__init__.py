"""Shared utilities for obstrack."""
from .pii import hash_pii, configure_pii_salt
from .dates import (
    Granularity,
    day_key,
    week_start_key,
    month_key,
    bucket_key_for,
    is_valid_bucket_key,
    utc_now_iso,
    parse_timestamp,
)
from .metrics import (
    compute_completion_rate,
    compute_threshold_alert,
    ratio_percent,
    score_progress,
    average_task_progress,
    working_days_so_far,
    monthly_confirmation_rate,
)

__all__ = [
    "hash_pii",
    "configure_pii_salt",
    "Granularity",
    "day_key",
    "week_start_key",
    "month_key",
    "bucket_key_for",
    "is_valid_bucket_key",
    "utc_now_iso",
    "parse_timestamp",
    "compute_completion_rate",
    "compute_threshold_alert",
    "ratio_percent",
    "score_progress",
    "average_task_progress",
    "working_days_so_far",
    "monthly_confirmation_rate",
]
