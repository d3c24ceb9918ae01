"""REST API for the alarm journal."""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from services.alarm_service import AlarmService, severity_of

router = APIRouter(prefix="/api/alarms", tags=["alarms"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class AlarmOut(BaseModel):
    id: int
    site_id: int
    site_name: str
    sensor_tag: str
    alarm_message: str
    raw_message: str
    severity: str
    timestamp: datetime


class ProblematicSensorOut(BaseModel):
    sensor_tag: str
    alarm_count: int
    last_alarm: datetime
    most_common_alarm: str


class DailyCountOut(BaseModel):
    day: date
    count: int


class AlarmStatsOut(BaseModel):
    site_id: Optional[int]
    total_alarms: int
    last_24_hours: int
    last_7_days: int
    last_30_days: int
    alarms_per_day: float
    oldest_alarm: Optional[datetime]
    newest_alarm: Optional[datetime]
    alarm_type_frequency: dict[str, int]
    daily_trends: list[DailyCountOut]
    most_frequent_alarm_types: list[str]


def _service(request: Request) -> AlarmService:
    return request.app.state.alarm_service


def _alarm_out(alarm) -> AlarmOut:
    return AlarmOut(
        id=alarm.id,
        site_id=alarm.site_id,
        site_name=alarm.site_name,
        sensor_tag=alarm.sensor_tag,
        alarm_message=alarm.alarm_message,
        raw_message=alarm.raw_message,
        severity=severity_of(alarm),
        timestamp=alarm.timestamp,
    )


def _daily(counts: dict) -> list[DailyCountOut]:
    return [DailyCountOut(day=day, count=n) for day, n in sorted(counts.items())]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/active", response_model=list[AlarmOut])
async def active_alarms(request: Request, site_id: Optional[int] = Query(None)):
    """Alarms from the last 24 hours."""
    return [_alarm_out(a) for a in await _service(request).active(site_id)]


@router.get("/critical")
async def has_critical(request: Request, site_id: Optional[int] = Query(None)) -> dict:
    return {"siteId": site_id, "hasCritical": await _service(request).has_critical(site_id)}


@router.get("/stats", response_model=AlarmStatsOut)
async def alarm_stats(request: Request, site_id: Optional[int] = Query(None)):
    stats = await _service(request).stats(site_id)
    return AlarmStatsOut(
        site_id=site_id,
        total_alarms=stats.total_alarms,
        last_24_hours=stats.last_24_hours,
        last_7_days=stats.last_7_days,
        last_30_days=stats.last_30_days,
        alarms_per_day=stats.alarms_per_day,
        oldest_alarm=stats.oldest_alarm,
        newest_alarm=stats.newest_alarm,
        alarm_type_frequency=stats.alarm_type_frequency,
        daily_trends=_daily(stats.daily_trends),
        most_frequent_alarm_types=stats.most_frequent_alarm_types,
    )


@router.get("/trends", response_model=list[DailyCountOut])
async def alarm_trends(
    request: Request,
    site_id: Optional[int] = Query(None),
    days: int = Query(7, ge=1, le=365),
):
    """Alarm count per day, oldest day first; days without alarms are omitted."""
    return _daily(await _service(request).trends(site_id, days))


@router.get("/site/{site_id}", response_model=list[AlarmOut])
async def alarms_by_site(site_id: int, request: Request, limit: int = Query(50, ge=1, le=500)):
    return [_alarm_out(a) for a in await _service(request).by_site(site_id, limit)]


@router.get("/site/{site_id}/problematic", response_model=list[ProblematicSensorOut])
async def problematic_sensors(
    site_id: int,
    request: Request,
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(10, ge=1, le=100),
):
    ranked = await _service(request).problematic_sensors(site_id, days, limit)
    return [ProblematicSensorOut(**vars(p)) for p in ranked]


@router.get("/sensor/{sensor_tag}", response_model=list[AlarmOut])
async def sensor_history(sensor_tag: str, request: Request, days: int = Query(7, ge=1, le=365)):
    return [_alarm_out(a) for a in await _service(request).sensor_history(sensor_tag, days)]
