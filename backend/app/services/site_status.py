"""Site and county status, recomputed from current sensor rows on every call."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from models.base import utcnow
from services import classifier
from services.classifier import SiteStatus, SiteStatusBreakdown
from services.site_registry import SiteRegistry

logger = logging.getLogger("monitoring.site_status")


@dataclass
class SiteWithStatus:
    id: int
    name: str
    county: str
    map_x: float
    map_y: float
    status: SiteStatus
    breakdown: SiteStatusBreakdown
    recent_alarms: int = 0

    @property
    def total_sensors(self) -> int:
        return self.breakdown.total

    @property
    def is_online(self) -> bool:
        return self.breakdown.is_online


@dataclass
class CountyGroup:
    name: str
    display_name: str
    sites: list[SiteWithStatus] = field(default_factory=list)
    breakdown: classifier.CountyStatusBreakdown = classifier.CountyStatusBreakdown()

    @property
    def online_sites(self) -> int:
        return sum(1 for s in self.sites if s.is_online)

    @property
    def offline_sites(self) -> int:
        return len(self.sites) - self.online_sites


@dataclass
class StatusSummary:
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
    last_update: datetime | None
    health_percentage: float


class SiteStatusService:

    def __init__(
        self,
        sensors,
        alarms,
        registry: SiteRegistry,
        *,
        online_threshold_minutes: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sensors = sensors
        self.alarms = alarms
        self.registry = registry
        self.threshold = timedelta(minutes=online_threshold_minutes)
        self.clock = clock

    async def site_breakdown(self, site_id: int) -> SiteStatusBreakdown:
        rows = await self.sensors.by_site(site_id)
        breakdown = classifier.site_breakdown(rows, self.clock(), self.threshold)
        logger.debug(
            "Site %d breakdown: normal=%d alarm=%d fault=%d disabled=%d unknown=%d",
            site_id, breakdown.normal, breakdown.alarm, breakdown.fault,
            breakdown.disabled, breakdown.unknown,
        )
        return breakdown

    async def site_status(self, site_id: int) -> SiteStatus:
        return classifier.representative_status(await self.site_breakdown(site_id))

    async def is_site_online(self, site_id: int) -> bool:
        last = await self.sensors.last_update(site_id)
        return classifier.is_online(last, self.clock(), self.threshold)

    async def known_site_ids(self) -> list[int]:
        """Configured sites plus any site seen on the bus."""
        ids = {s.id for s in self.registry.sites()}
        ids.update(await self.sensors.site_ids())
        return sorted(ids)

    async def site_with_status(self, site_id: int, bus_names: dict[int, str] | None = None) -> SiteWithStatus:
        config = self.registry.site(site_id)
        breakdown = await self.site_breakdown(site_id)
        recent = await self.alarms.count(site_id, 1)
        if config is not None:
            name, map_x, map_y = config.name, config.map_x, config.map_y
        else:
            name = (bus_names or {}).get(site_id) or f"Site {site_id}"
            map_x = map_y = 0.0
        return SiteWithStatus(
            id=site_id,
            name=name,
            county=self.registry.county_of(site_id),
            map_x=map_x,
            map_y=map_y,
            status=classifier.representative_status(breakdown),
            breakdown=breakdown,
            recent_alarms=recent,
        )

    async def all_sites(self) -> list[SiteWithStatus]:
        bus_names = await self.sensors.site_names()
        sites = [await self.site_with_status(sid, bus_names) for sid in await self.known_site_ids()]
        logger.info("Retrieved %d sites with status information", len(sites))
        return sites

    async def county_groups(self) -> list[CountyGroup]:
        labels = {c.name: c.label for c in self.registry.counties()}
        grouped: dict[str, list[SiteWithStatus]] = {}
        for site in await self.all_sites():
            grouped.setdefault(site.county, []).append(site)
        groups = [
            CountyGroup(
                name=county,
                display_name=labels.get(county, county),
                sites=sites,
                breakdown=classifier.county_breakdown(s.status for s in sites),
            )
            for county, sites in grouped.items()
        ]
        groups.sort(key=lambda g: g.name)
        return groups

    async def county_breakdown(self, county: str) -> classifier.CountyStatusBreakdown:
        statuses = []
        for site_id in await self.known_site_ids():
            if self.registry.county_of(site_id) == county:
                statuses.append(await self.site_status(site_id))
        return classifier.county_breakdown(statuses)

    async def status_summary(self) -> StatusSummary:
        sites = await self.all_sites()
        stats = classifier.sensor_stats(await self.sensors.all(), self.clock(), self.threshold)
        statuses = [s.status for s in sites]
        return StatusSummary(
            total_sites=len(sites),
            active_sites=sum(1 for s in sites if s.is_online),
            offline_sites=sum(1 for s in sites if not s.is_online),
            sites_with_alarms=statuses.count(SiteStatus.ALARM),
            sites_with_faults=statuses.count(SiteStatus.FAULT),
            sites_disabled=statuses.count(SiteStatus.DISABLED),
            total_sensors=stats.total,
            sensors_in_alarm=stats.alarm,
            sensors_with_faults=stats.fault,
            sensors_disabled=stats.disabled,
            last_update=stats.last_update,
            health_percentage=classifier.health_percentage(statuses),
        )

    async def sites_requiring_attention(self) -> list[SiteWithStatus]:
        flagged = [
            s for s in await self.all_sites()
            if s.status in (SiteStatus.ALARM, SiteStatus.FAULT, SiteStatus.OFFLINE)
        ]
        flagged.sort(key=lambda s: (classifier.ATTENTION_PRIORITY[s.status], -s.recent_alarms))
        return flagged

    async def sensor_stats(self, site_id: int) -> classifier.SensorStats:
        rows = await self.sensors.by_site(site_id)
        return classifier.sensor_stats(rows, self.clock(), self.threshold)
