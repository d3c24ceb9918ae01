"""Storage access for sensor rows and alarms.

Each call opens its own short-lived session; nothing spans pipeline stages.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import date, datetime, timedelta

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.alarm import Alarm
from models.base import utcnow
from models.sensor import SensorReading
from services.classifier import ALARM_STATUS_CODES

logger = logging.getLogger("monitoring.storage")


class SensorRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find(self, site_id: int, channel_id: str) -> SensorReading | None:
        async with self.session_factory() as session:
            stmt = select(SensorReading).where(
                and_(SensorReading.site_id == site_id, SensorReading.channel_id == channel_id)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def upsert(self, reading: SensorReading) -> SensorReading:
        """Insert or replace every non-identity field of the (site, channel) row.

        A single UPDATE carries all fields, so concurrent writers to the same
        key never leave a half-written row; the last one wins.
        """
        values = reading.values()
        async with self.session_factory() as session:
            if await self._update(session, reading.site_id, reading.channel_id, values):
                await session.commit()
                return reading
            session.add(reading)
            try:
                await session.commit()
                return reading
            except IntegrityError:
                # Lost the insert race to another writer; replace its row instead.
                await session.rollback()
                logger.debug("Insert race on %s, retrying as update", reading.sensor_key)

        async with self.session_factory() as session:
            await self._update(session, reading.site_id, reading.channel_id, values)
            await session.commit()
        return reading

    @staticmethod
    async def _update(session: AsyncSession, site_id: int, channel_id: str, values: dict) -> bool:
        stmt = (
            update(SensorReading)
            .where(and_(SensorReading.site_id == site_id, SensorReading.channel_id == channel_id))
            .values(**values)
        )
        result = await session.execute(stmt)
        return result.rowcount > 0

    async def by_site(self, site_id: int) -> list[SensorReading]:
        async with self.session_factory() as session:
            stmt = (
                select(SensorReading)
                .where(SensorReading.site_id == site_id)
                .order_by(SensorReading.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def all(self) -> list[SensorReading]:
        async with self.session_factory() as session:
            stmt = select(SensorReading).order_by(SensorReading.site_id, SensorReading.id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def site_ids(self) -> list[int]:
        async with self.session_factory() as session:
            stmt = select(SensorReading.site_id).distinct().order_by(SensorReading.site_id)
            result = await session.execute(stmt)
            return [row[0] for row in result.all()]

    async def site_names(self) -> dict[int, str]:
        """Latest bus-reported name per site."""
        async with self.session_factory() as session:
            stmt = select(SensorReading.site_id, SensorReading.site_name).order_by(
                SensorReading.last_updated
            )
            result = await session.execute(stmt)
            return {row[0]: row[1] for row in result.all()}

    async def last_update(self, site_id: int) -> datetime | None:
        async with self.session_factory() as session:
            stmt = select(func.max(SensorReading.last_updated)).where(SensorReading.site_id == site_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def by_status(self, *statuses: int) -> list[SensorReading]:
        async with self.session_factory() as session:
            stmt = (
                select(SensorReading)
                .where(SensorReading.status.in_(statuses))
                .order_by(SensorReading.site_id, SensorReading.channel_id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def in_alarm(self) -> list[SensorReading]:
        """Rows whose status is an alarm level; faults and disabled are excluded."""
        return await self.by_status(*ALARM_STATUS_CODES)


class AlarmRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert(self, alarm: Alarm) -> Alarm:
        async with self.session_factory() as session:
            session.add(alarm)
            await session.commit()
            await session.refresh(alarm)
            return alarm

    async def by_site(self, site_id: int, limit: int = 50) -> list[Alarm]:
        async with self.session_factory() as session:
            stmt = (
                select(Alarm)
                .where(Alarm.site_id == site_id)
                .order_by(desc(Alarm.timestamp))
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def recent(self, site_id: int | None = None, hours: float = 24, limit: int = 500) -> list[Alarm]:
        cutoff = utcnow() - timedelta(hours=hours)
        async with self.session_factory() as session:
            stmt = select(Alarm).where(Alarm.timestamp >= cutoff)
            if site_id is not None:
                stmt = stmt.where(Alarm.site_id == site_id)
            stmt = stmt.order_by(desc(Alarm.timestamp)).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def by_sensor_tag(self, sensor_tag: str, days: int = 7) -> list[Alarm]:
        cutoff = utcnow() - timedelta(days=days)
        async with self.session_factory() as session:
            stmt = (
                select(Alarm)
                .where(and_(Alarm.sensor_tag == sensor_tag, Alarm.timestamp >= cutoff))
                .order_by(desc(Alarm.timestamp))
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(self, site_id: int | None = None, days: float = 1) -> int:
        cutoff = utcnow() - timedelta(days=days)
        async with self.session_factory() as session:
            stmt = select(func.count(Alarm.id)).where(Alarm.timestamp >= cutoff)
            if site_id is not None:
                stmt = stmt.where(Alarm.site_id == site_id)
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def counts_by_day(self, site_id: int | None = None, days: int = 7) -> dict[date, int]:
        """Alarm count per calendar day (UTC) over the last ``days`` days."""
        cutoff = utcnow() - timedelta(days=days)
        async with self.session_factory() as session:
            stmt = select(Alarm.timestamp).where(Alarm.timestamp >= cutoff)
            if site_id is not None:
                stmt = stmt.where(Alarm.site_id == site_id)
            result = await session.execute(stmt)
            counts = Counter(ts.date() for ts in result.scalars().all())
        return dict(sorted(counts.items()))

    async def type_frequency(self, site_id: int, days: int = 30) -> dict[str, int]:
        cutoff = utcnow() - timedelta(days=days)
        async with self.session_factory() as session:
            stmt = (
                select(Alarm.alarm_message, func.count(Alarm.id))
                .where(and_(Alarm.site_id == site_id, Alarm.timestamp >= cutoff))
                .group_by(Alarm.alarm_message)
            )
            result = await session.execute(stmt)
            return {row[0]: int(row[1]) for row in result.all()}

    async def time_span(self, site_id: int | None = None, days: int = 30) -> tuple[datetime | None, datetime | None]:
        """Oldest and newest alarm timestamps inside the window."""
        cutoff = utcnow() - timedelta(days=days)
        async with self.session_factory() as session:
            stmt = select(func.min(Alarm.timestamp), func.max(Alarm.timestamp)).where(Alarm.timestamp >= cutoff)
            if site_id is not None:
                stmt = stmt.where(Alarm.site_id == site_id)
            result = await session.execute(stmt)
            oldest, newest = result.one()
            return oldest, newest
