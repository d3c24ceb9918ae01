from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from services.classifier import status_category

router = APIRouter(prefix="/api/sensors", tags=["sensors"])


class SensorOut(BaseModel):
    id: str
    site_id: int
    site_name: str
    channel_id: str
    tag_name: str
    detector_type: int
    process_value: float
    current_value: float
    status: int
    status_text: str
    category: str
    units: str
    last_updated: datetime


class SiteSensorsOut(BaseModel):
    site_id: int
    site_name: str
    sensor_count: int
    sensors: list[SensorOut]


class SensorStatsOut(BaseModel):
    total_sensors: int
    normal_sensors: int
    alarm_sensors: int
    fault_sensors: int
    disabled_sensors: int
    unknown_sensors: int
    online_sensors: int
    offline_sensors: int
    last_update: datetime | None
    sensor_type_breakdown: dict[int, int]


def _sensor_out(row) -> SensorOut:
    return SensorOut(
        id=row.sensor_key,
        site_id=row.site_id,
        site_name=row.site_name,
        channel_id=row.channel_id,
        tag_name=row.tag_name,
        detector_type=row.detector_type,
        process_value=row.process_value,
        current_value=row.current_value,
        status=row.status,
        status_text=row.status_text,
        category=status_category(row.status).value,
        units=row.units,
        last_updated=row.last_updated,
    )


@router.get("", response_model=list[SiteSensorsOut])
async def all_sensors(request: Request):
    """Every sensor row, grouped by site."""
    grouped: dict[int, list] = {}
    for row in await request.app.state.sensor_repo.all():
        grouped.setdefault(row.site_id, []).append(row)
    return [
        SiteSensorsOut(
            site_id=site_id,
            site_name=rows[-1].site_name,
            sensor_count=len(rows),
            sensors=[_sensor_out(r) for r in rows],
        )
        for site_id, rows in sorted(grouped.items())
    ]


@router.get("/alarms", response_model=list[SensorOut])
async def sensors_in_alarm(request: Request):
    rows = await request.app.state.sensor_repo.in_alarm()
    return [_sensor_out(r) for r in rows]


@router.get("/status/{status}", response_model=list[SensorOut])
async def sensors_by_status(status: int, request: Request):
    rows = await request.app.state.sensor_repo.by_status(status)
    return [_sensor_out(r) for r in rows]


@router.get("/site/{site_id}", response_model=list[SensorOut])
async def sensors_by_site(site_id: int, request: Request):
    rows = await request.app.state.sensor_repo.by_site(site_id)
    return [_sensor_out(r) for r in rows]


@router.get("/site/{site_id}/stats", response_model=SensorStatsOut)
async def sensor_stats(site_id: int, request: Request):
    stats = await request.app.state.site_status.sensor_stats(site_id)
    return SensorStatsOut(
        total_sensors=stats.total,
        normal_sensors=stats.normal,
        alarm_sensors=stats.alarm,
        fault_sensors=stats.fault,
        disabled_sensors=stats.disabled,
        unknown_sensors=stats.unknown,
        online_sensors=stats.online,
        offline_sensors=stats.offline,
        last_update=stats.last_update,
        sensor_type_breakdown=stats.by_detector_type,
    )


@router.get("/site/{site_id}/channel/{channel_id}", response_model=SensorOut)
async def get_sensor(site_id: int, channel_id: str, request: Request):
    row = await request.app.state.sensor_repo.find(site_id, channel_id.removeprefix("CH"))
    if row is None:
        raise HTTPException(404, "Sensor not found")
    return _sensor_out(row)
