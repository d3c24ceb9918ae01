"""Shared fixtures: in-memory stand-ins for storage, Redis and WebSocket peers."""

from collections import Counter
from datetime import datetime, timedelta

import pytest

from models.alarm import Alarm
from models.sensor import SensorReading

NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_sensor(site_id=5, channel_id="1", status=0, *, age=timedelta(0), detector_type=1, tag=None):
    return SensorReading(
        site_id=site_id,
        site_name=f"Site{site_id}",
        channel_id=channel_id,
        tag_name=tag if tag is not None else f"DET-{channel_id}",
        detector_type=detector_type,
        process_value=0.0,
        current_value=4.0,
        status=status,
        status_text="",
        units="%LEL",
        last_updated=NOW - age,
        topic=f"/PLCNEXT/{site_id}_Site{site_id}/CH{channel_id}",
        raw_json="{}",
    )


def make_alarm(site_id=5, tag="DET-1", message="Alarm Level 1", *, age=timedelta(0), severity=None):
    return Alarm(
        site_id=site_id,
        site_name=f"Site{site_id}",
        sensor_tag=tag,
        alarm_message=message,
        severity=severity,
        raw_message=f"DT#2026-03-01-12:00:00, {message}, {tag}",
        timestamp=NOW - age,
    )


class FakeSensorRepo:
    def __init__(self, rows=()):
        self.rows: dict[tuple[int, str], SensorReading] = {}
        for row in rows:
            self.rows[(row.site_id, row.channel_id)] = row
        self.fail = False

    async def find(self, site_id, channel_id):
        return self.rows.get((site_id, channel_id))

    async def upsert(self, reading):
        if self.fail:
            raise RuntimeError("database unavailable")
        self.rows[(reading.site_id, reading.channel_id)] = reading
        return reading

    async def by_site(self, site_id):
        return [r for (sid, _), r in self.rows.items() if sid == site_id]

    async def all(self):
        return list(self.rows.values())

    async def site_ids(self):
        return sorted({sid for sid, _ in self.rows})

    async def site_names(self):
        return {r.site_id: r.site_name for r in self.rows.values()}

    async def last_update(self, site_id):
        stamps = [r.last_updated for r in await self.by_site(site_id)]
        return max(stamps) if stamps else None

    async def by_status(self, *statuses):
        rows = [r for r in self.rows.values() if r.status in statuses]
        return sorted(rows, key=lambda r: (r.site_id, r.channel_id))

    async def in_alarm(self):
        return await self.by_status(1, 2)


class FakeAlarmRepo:
    def __init__(self, alarms=(), now=NOW):
        self.alarms: list[Alarm] = []
        self.now = now
        self.fail = False
        for alarm in alarms:
            self._store(alarm)

    def _store(self, alarm):
        alarm.id = len(self.alarms) + 1
        self.alarms.append(alarm)
        return alarm

    async def insert(self, alarm):
        if self.fail:
            raise RuntimeError("database unavailable")
        return self._store(alarm)

    def _since(self, delta, site_id=None):
        cutoff = self.now - delta
        rows = [a for a in self.alarms if a.timestamp >= cutoff]
        if site_id is not None:
            rows = [a for a in rows if a.site_id == site_id]
        return sorted(rows, key=lambda a: a.timestamp, reverse=True)

    async def by_site(self, site_id, limit=50):
        rows = [a for a in self.alarms if a.site_id == site_id]
        return sorted(rows, key=lambda a: a.timestamp, reverse=True)[:limit]

    async def recent(self, site_id=None, hours=24, limit=500):
        return self._since(timedelta(hours=hours), site_id)[:limit]

    async def by_sensor_tag(self, sensor_tag, days=7):
        return [a for a in self._since(timedelta(days=days)) if a.sensor_tag == sensor_tag]

    async def count(self, site_id=None, days=1):
        return len(self._since(timedelta(days=days), site_id))

    async def counts_by_day(self, site_id=None, days=7):
        counts = Counter(a.timestamp.date() for a in self._since(timedelta(days=days), site_id))
        return dict(sorted(counts.items()))

    async def type_frequency(self, site_id, days=30):
        return dict(Counter(a.alarm_message for a in self._since(timedelta(days=days), site_id)))

    async def time_span(self, site_id=None, days=30):
        stamps = [a.timestamp for a in self._since(timedelta(days=days), site_id)]
        return (min(stamps), max(stamps)) if stamps else (None, None)


class FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, str]] = []
        self.fail = False

    async def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1


class RecordingSender:
    """WebSocket stand-in that records every text frame."""

    def __init__(self):
        self.frames: list[str] = []
        self.close_code: int | None = None

    async def send_text(self, data):
        self.frames.append(data)

    async def close(self, code=1000):
        self.close_code = code


@pytest.fixture
def sensor_repo():
    return FakeSensorRepo()


@pytest.fixture
def alarm_repo():
    return FakeAlarmRepo()


@pytest.fixture
def fake_redis():
    return FakeRedis()
