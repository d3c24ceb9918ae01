"""Alarm queries with severity tagging."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime

from models.alarm import Alarm
from services.classifier import AlarmSeverity, alarm_severity

logger = logging.getLogger("monitoring.alarms")


@dataclass
class ProblematicSensor:
    sensor_tag: str
    alarm_count: int
    last_alarm: datetime
    most_common_alarm: str


@dataclass
class AlarmStats:
    total_alarms: int
    last_24_hours: int
    last_7_days: int
    last_30_days: int
    alarms_per_day: float
    oldest_alarm: datetime | None = None
    newest_alarm: datetime | None = None
    alarm_type_frequency: dict[str, int] = field(default_factory=dict)
    daily_trends: dict[date, int] = field(default_factory=dict)
    most_frequent_alarm_types: list[str] = field(default_factory=list)


def severity_of(alarm: Alarm) -> str:
    """Stored severity, or derived from the description for legacy rows."""
    return alarm.severity or alarm_severity(alarm.alarm_message).value


class AlarmService:

    def __init__(self, alarms):
        self.alarms = alarms

    async def by_site(self, site_id: int, limit: int = 50) -> list[Alarm]:
        return await self.alarms.by_site(site_id, limit)

    async def active(self, site_id: int | None = None) -> list[Alarm]:
        """Alarms from the last 24 hours, newest first."""
        return await self.alarms.recent(site_id, hours=24)

    async def sensor_history(self, sensor_tag: str, days: int = 7) -> list[Alarm]:
        return await self.alarms.by_sensor_tag(sensor_tag, days)

    async def has_critical(self, site_id: int | None = None) -> bool:
        return any(
            severity_of(a) == AlarmSeverity.CRITICAL.value
            for a in await self.active(site_id)
        )

    async def trends(self, site_id: int | None = None, days: int = 7) -> dict[date, int]:
        return await self.alarms.counts_by_day(site_id, days)

    async def stats(self, site_id: int | None = None) -> AlarmStats:
        """Dashboard counters over the last year; type frequency only for a single site."""
        total = await self.alarms.count(site_id, days=365)
        frequency = await self.alarms.type_frequency(site_id, days=30) if site_id is not None else {}
        oldest, newest = await self.alarms.time_span(site_id, days=30)
        top_types = sorted(frequency.items(), key=lambda kv: (-kv[1], kv[0]))[:5]

        stats = AlarmStats(
            total_alarms=total,
            last_24_hours=await self.alarms.count(site_id, days=1),
            last_7_days=await self.alarms.count(site_id, days=7),
            last_30_days=await self.alarms.count(site_id, days=30),
            alarms_per_day=round(total / 365, 2),
            oldest_alarm=oldest,
            newest_alarm=newest,
            alarm_type_frequency=frequency,
            daily_trends=await self.trends(site_id, days=7),
            most_frequent_alarm_types=[f"{message} ({count})" for message, count in top_types],
        )
        logger.info(
            "Alarm stats for site %s: %d total, %d in 24h, %.2f per day",
            site_id, stats.total_alarms, stats.last_24_hours, stats.alarms_per_day,
        )
        return stats

    async def problematic_sensors(self, site_id: int, days: int = 30, limit: int = 10) -> list[ProblematicSensor]:
        alarms = await self.alarms.recent(site_id, hours=days * 24, limit=10000)
        by_tag: dict[str, list[Alarm]] = {}
        for alarm in alarms:
            by_tag.setdefault(alarm.sensor_tag, []).append(alarm)

        ranked = [
            ProblematicSensor(
                sensor_tag=tag,
                alarm_count=len(items),
                last_alarm=max(a.timestamp for a in items),
                most_common_alarm=Counter(a.alarm_message for a in items).most_common(1)[0][0],
            )
            for tag, items in by_tag.items()
        ]
        ranked.sort(key=lambda p: p.alarm_count, reverse=True)
        logger.debug("Site %d: %d sensors with alarms in %d days", site_id, len(ranked), days)
        return ranked[:limit]
