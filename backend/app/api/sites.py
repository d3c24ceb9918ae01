"""
REST endpoints for site and county status.

GET /api/sites                     → all sites with status + breakdown
GET /api/sites/counties            → sites grouped by county
GET /api/sites/counties/{county}   → county status breakdown
GET /api/sites/summary             → system-wide summary
GET /api/sites/attention           → sites in alarm / fault / offline
GET /api/sites/{site_id}           → site detail
GET /api/sites/{site_id}/breakdown → LED breakdown for one site
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from services.site_status import SiteStatusService, SiteWithStatus

router = APIRouter(prefix="/api/sites", tags=["sites"])


# --- Schemas ---

class BreakdownOut(BaseModel):
    normal_count: int
    alarm_count: int
    fault_count: int
    disabled_count: int
    unknown_count: int
    is_online: bool
    last_update: datetime | None


class SiteOut(BaseModel):
    id: int
    name: str
    county: str
    map_x: float
    map_y: float
    overall_status: str
    status_breakdown: BreakdownOut
    total_sensors: int
    is_online: bool
    last_update: datetime | None
    recent_alarms: int


class CountyBreakdownOut(BaseModel):
    normal_count: int
    alarm_count: int
    fault_count: int
    disabled_count: int
    offline_count: int


class CountyOut(BaseModel):
    county_name: str
    display_name: str
    total_sites: int
    online_sites: int
    offline_sites: int
    status_breakdown: CountyBreakdownOut
    sites: list[SiteOut]


class SummaryOut(BaseModel):
    total_sites: int
    active_sites: int
    offline_sites: int
    sites_with_alarms: int
    sites_with_faults: int
    sites_disabled: int
    total_sensors: int
    sensors_in_alarm: int
    sensors_with_faults: int
    sensors_disabled: int
    last_system_update: datetime | None
    system_health_percentage: float


def _service(request: Request) -> SiteStatusService:
    return request.app.state.site_status


def _breakdown_out(b) -> BreakdownOut:
    return BreakdownOut(
        normal_count=b.normal,
        alarm_count=b.alarm,
        fault_count=b.fault,
        disabled_count=b.disabled,
        unknown_count=b.unknown,
        is_online=b.is_online,
        last_update=b.last_update,
    )


def _site_out(site: SiteWithStatus) -> SiteOut:
    return SiteOut(
        id=site.id,
        name=site.name,
        county=site.county,
        map_x=site.map_x,
        map_y=site.map_y,
        overall_status=site.status.value,
        status_breakdown=_breakdown_out(site.breakdown),
        total_sensors=site.total_sensors,
        is_online=site.is_online,
        last_update=site.breakdown.last_update,
        recent_alarms=site.recent_alarms,
    )


def _county_breakdown_out(b) -> CountyBreakdownOut:
    return CountyBreakdownOut(
        normal_count=b.normal,
        alarm_count=b.alarm,
        fault_count=b.fault,
        disabled_count=b.disabled,
        offline_count=b.offline,
    )


# --- Endpoints ---

@router.get("", response_model=list[SiteOut])
async def list_sites(request: Request):
    return [_site_out(s) for s in await _service(request).all_sites()]


@router.get("/counties", response_model=list[CountyOut])
async def list_counties(request: Request):
    groups = await _service(request).county_groups()
    return [
        CountyOut(
            county_name=g.name,
            display_name=g.display_name,
            total_sites=len(g.sites),
            online_sites=g.online_sites,
            offline_sites=g.offline_sites,
            status_breakdown=_county_breakdown_out(g.breakdown),
            sites=[_site_out(s) for s in g.sites],
        )
        for g in groups
    ]


@router.get("/counties/{county}", response_model=CountyBreakdownOut)
async def county_breakdown(county: str, request: Request):
    return _county_breakdown_out(await _service(request).county_breakdown(county))


@router.get("/summary", response_model=SummaryOut)
async def status_summary(request: Request):
    s = await _service(request).status_summary()
    return SummaryOut(
        total_sites=s.total_sites,
        active_sites=s.active_sites,
        offline_sites=s.offline_sites,
        sites_with_alarms=s.sites_with_alarms,
        sites_with_faults=s.sites_with_faults,
        sites_disabled=s.sites_disabled,
        total_sensors=s.total_sensors,
        sensors_in_alarm=s.sensors_in_alarm,
        sensors_with_faults=s.sensors_with_faults,
        sensors_disabled=s.sensors_disabled,
        last_system_update=s.last_update,
        system_health_percentage=s.health_percentage,
    )


@router.get("/attention", response_model=list[SiteOut])
async def sites_requiring_attention(request: Request):
    return [_site_out(s) for s in await _service(request).sites_requiring_attention()]


@router.get("/{site_id}", response_model=SiteOut)
async def get_site(site_id: int, request: Request):
    service = _service(request)
    if site_id not in await service.known_site_ids():
        raise HTTPException(404, "Site not found")
    return _site_out(await service.site_with_status(site_id, await service.sensors.site_names()))


@router.get("/{site_id}/breakdown", response_model=BreakdownOut)
async def get_site_breakdown(site_id: int, request: Request):
    return _breakdown_out(await _service(request).site_breakdown(site_id))
