"""Utility functions."""

from vaccine_scheduler.utils.time import (
    beginning_of_day,
    end_of_day,
    ensure_utc,
    parse_datetime,
    parse_desired_start,
    utc_now,
)

__all__ = [
    "utc_now",
    "ensure_utc",
    "beginning_of_day",
    "end_of_day",
    "parse_datetime",
    "parse_desired_start",
]
