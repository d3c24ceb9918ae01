"""Status, units and severity classification plus sensor → site → county rollups.

Everything here is a pure function of its inputs; callers pass the current
sensor rows and a reference time, so recomputing twice yields the same result.
"""
from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Protocol

ONLINE_THRESHOLD = timedelta(minutes=5)


# ---------------------------------------------------------------------------
# Sensor status codes
# ---------------------------------------------------------------------------

class SensorCategory(str, enum.Enum):
    NORMAL = "normal"
    ALARM = "alarm"
    FAULT = "fault"
    DISABLED = "disabled"
    UNKNOWN = "unknown"


# code → (status text, category)
STATUS_MAP: dict[int, tuple[str, SensorCategory]] = {
    0: ("Normal",         SensorCategory.NORMAL),
    1: ("AlarmLevel1",    SensorCategory.ALARM),
    2: ("AlarmLevel2",    SensorCategory.ALARM),
    3: ("DetectorError",  SensorCategory.FAULT),
    4: ("Disabled",       SensorCategory.DISABLED),
    5: ("LineShortFault", SensorCategory.FAULT),
    6: ("LineOpenFault",  SensorCategory.FAULT),
}

ALARM_STATUS_CODES = tuple(code for code, (_, cat) in STATUS_MAP.items() if cat is SensorCategory.ALARM)

UNITS_BY_DETECTOR_TYPE: dict[int, str] = {
    1: "%LEL",
    2: "PPM",
    3: "mA",
    4: "mA",
    5: "mA",
}


def status_text(code: int) -> str:
    entry = STATUS_MAP.get(code)
    return entry[0] if entry else f"Status{code}"


def status_category(code: int) -> SensorCategory:
    entry = STATUS_MAP.get(code)
    return entry[1] if entry else SensorCategory.UNKNOWN


def units_for_type(detector_type: int) -> str:
    return UNITS_BY_DETECTOR_TYPE.get(detector_type, "")


def is_online(last_update: datetime | None, now: datetime, threshold: timedelta = ONLINE_THRESHOLD) -> bool:
    if last_update is None:
        return False
    return now - last_update <= threshold


# ---------------------------------------------------------------------------
# Site rollup
# ---------------------------------------------------------------------------

class SiteStatus(str, enum.Enum):
    ALARM = "alarm"
    FAULT = "fault"
    DISABLED = "disabled"
    OFFLINE = "offline"
    NORMAL = "normal"


# Lower = needs attention sooner.
ATTENTION_PRIORITY = {
    SiteStatus.ALARM: 1,
    SiteStatus.FAULT: 2,
    SiteStatus.OFFLINE: 3,
    SiteStatus.DISABLED: 4,
    SiteStatus.NORMAL: 5,
}


class SensorLike(Protocol):
    status: int
    last_updated: datetime


@dataclass(frozen=True)
class SiteStatusBreakdown:
    normal: int = 0
    alarm: int = 0
    fault: int = 0
    disabled: int = 0
    unknown: int = 0
    is_online: bool = False
    last_update: datetime | None = None

    @property
    def total(self) -> int:
        return self.normal + self.alarm + self.fault + self.disabled + self.unknown


def site_breakdown(
    sensors: Iterable[SensorLike],
    now: datetime,
    threshold: timedelta = ONLINE_THRESHOLD,
) -> SiteStatusBreakdown:
    """Count sensors per category; the site is online if its newest row is fresh."""
    counts: Counter[SensorCategory] = Counter()
    last_update: datetime | None = None
    for sensor in sensors:
        counts[status_category(sensor.status)] += 1
        if last_update is None or sensor.last_updated > last_update:
            last_update = sensor.last_updated
    return SiteStatusBreakdown(
        normal=counts[SensorCategory.NORMAL],
        alarm=counts[SensorCategory.ALARM],
        fault=counts[SensorCategory.FAULT],
        disabled=counts[SensorCategory.DISABLED],
        unknown=counts[SensorCategory.UNKNOWN],
        is_online=is_online(last_update, now, threshold),
        last_update=last_update,
    )


def representative_status(breakdown: SiteStatusBreakdown) -> SiteStatus:
    """Single highest-priority label for a site; first match wins."""
    if breakdown.alarm > 0:
        return SiteStatus.ALARM
    if breakdown.fault > 0:
        return SiteStatus.FAULT
    if breakdown.disabled > 0 and breakdown.normal == 0:
        return SiteStatus.DISABLED
    if not breakdown.is_online:
        return SiteStatus.OFFLINE
    return SiteStatus.NORMAL


# ---------------------------------------------------------------------------
# County rollup
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CountyStatusBreakdown:
    normal: int = 0
    alarm: int = 0
    fault: int = 0
    disabled: int = 0
    offline: int = 0


def county_breakdown(site_statuses: Iterable[SiteStatus]) -> CountyStatusBreakdown:
    counts = Counter(SiteStatus(s) for s in site_statuses)
    return CountyStatusBreakdown(
        normal=counts[SiteStatus.NORMAL],
        alarm=counts[SiteStatus.ALARM],
        fault=counts[SiteStatus.FAULT],
        disabled=counts[SiteStatus.DISABLED],
        offline=counts[SiteStatus.OFFLINE],
    )


def health_percentage(site_statuses: Iterable[SiteStatus]) -> float:
    statuses = list(site_statuses)
    if not statuses:
        return 0.0
    normal = sum(1 for s in statuses if s == SiteStatus.NORMAL)
    return round(normal / len(statuses) * 100, 1)


# ---------------------------------------------------------------------------
# Alarm severity
# ---------------------------------------------------------------------------

class AlarmSeverity(str, enum.Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


SEVERITY_RULES: list[tuple[AlarmSeverity, tuple[str, ...]]] = [
    (AlarmSeverity.CRITICAL, ("level 2", "high alarm", "critical")),
    (AlarmSeverity.HIGH,     ("level 1", "alarm", "gas detected")),
    (AlarmSeverity.MEDIUM,   ("fault", "error", "malfunction")),
]


def alarm_severity(description: str | None) -> AlarmSeverity:
    if not description or not description.strip():
        return AlarmSeverity.LOW
    text = description.lower()
    for severity, needles in SEVERITY_RULES:
        if any(n in text for n in needles):
            return severity
    return AlarmSeverity.LOW


# ---------------------------------------------------------------------------
# Sensor statistics
# ---------------------------------------------------------------------------

@dataclass
class SensorStats:
    total: int = 0
    normal: int = 0
    alarm: int = 0
    fault: int = 0
    disabled: int = 0
    unknown: int = 0
    online: int = 0
    offline: int = 0
    last_update: datetime | None = None
    by_detector_type: dict[int, int] = field(default_factory=dict)


def sensor_stats(sensors: Iterable, now: datetime, threshold: timedelta = ONLINE_THRESHOLD) -> SensorStats:
    rows = list(sensors)
    breakdown = site_breakdown(rows, now, threshold)
    online = sum(1 for s in rows if is_online(s.last_updated, now, threshold))
    return SensorStats(
        total=len(rows),
        normal=breakdown.normal,
        alarm=breakdown.alarm,
        fault=breakdown.fault,
        disabled=breakdown.disabled,
        unknown=breakdown.unknown,
        online=online,
        offline=len(rows) - online,
        last_update=breakdown.last_update,
        by_detector_type=dict(Counter(s.detector_type for s in rows)),
    )
