"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import datetime, timedelta

import pendulum

DEFAULT_TZ = "Europe/Istanbul"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utc_now() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    now = pendulum.now("UTC")
    return datetime(now.year, now.month, now.day, now.hour, now.minute, now.second, now.microsecond)


def minutes_from(start: datetime, minutes: int) -> datetime:
    return start + timedelta(minutes=minutes)


def isoformat_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    return pendulum.instance(value, tz="UTC").to_iso8601_string()
