"""Alarm line parser.

Alarm channel payloads are single comma-separated lines::

    DT#2024-11-27-07:28:40.99, Alarm Level 2, Det_01
    <timestamp>, <description>, <sensor tag>[, ...]

The controller writes the date and the time-of-day joined by dashes; the time
portion is rebuilt with colons before parsing. Timestamp problems never fail
the alarm, the ingestion clock is used instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from models.base import utcnow

logger = logging.getLogger("monitoring.alarm_parser")

TIMESTAMP_PREFIX = "DT#"
MIN_FIELDS = 3

_TIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
)


class AlarmFormatError(ValueError):
    """Alarm line has fewer than the three mandatory fields."""


@dataclass(frozen=True)
class AlarmEvent:
    site_id: int
    site_name: str
    sensor_tag: str
    alarm_message: str
    raw_message: str
    timestamp: datetime
    timestamp_parsed: bool = True
    severity: str | None = None

    def with_severity(self, severity: str) -> "AlarmEvent":
        return replace(self, severity=severity)


def parse_controller_timestamp(field: str) -> datetime:
    """Parse ``DT#YYYY-MM-DD-HH:MM:SS.ff``; raises ValueError when it cannot."""
    if not field.startswith(TIMESTAMP_PREFIX):
        raise ValueError(f"missing {TIMESTAMP_PREFIX} prefix")
    parts = field[len(TIMESTAMP_PREFIX):].split("-")
    if len(parts) < 4:
        raise ValueError(f"expected at least 4 dash-separated parts, got {len(parts)}")
    year, month, day = parts[0], parts[1], parts[2]
    time_of_day = ":".join(parts[3:])
    text = f"{year}-{month}-{day} {time_of_day}"
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"unrecognised timestamp {text!r}")


def parse_alarm(
    site_id: int,
    site_name: str,
    payload: str,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> AlarmEvent:
    """Parse one alarm line. Severity is left for the classifier."""
    parts = [p.strip() for p in payload.split(",")]
    if len(parts) < MIN_FIELDS:
        raise AlarmFormatError(
            f"expected at least {MIN_FIELDS} comma-separated fields, got {len(parts)}"
        )

    timestamp_field, description, sensor_tag = parts[0], parts[1], parts[2]

    parsed = True
    try:
        timestamp = parse_controller_timestamp(timestamp_field)
    except ValueError as exc:
        logger.warning(
            "Could not parse alarm timestamp %r (%s), using ingestion time",
            timestamp_field, exc,
        )
        timestamp = clock()
        parsed = False

    return AlarmEvent(
        site_id=site_id,
        site_name=site_name,
        sensor_tag=sensor_tag,
        alarm_message=description,
        raw_message=payload,
        timestamp=timestamp,
        timestamp_parsed=parsed,
    )
