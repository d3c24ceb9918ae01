"""Sensor positions on a site diagram: configured coordinates or generated grid."""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from models.base import utcnow
from models.sensor import SensorReading
from services import classifier
from services.grid_layout import CENTER, generate_grid
from services.site_registry import SiteRegistry

logger = logging.getLogger("monitoring.layout")


@dataclass
class SensorLayoutPosition:
    sensor_key: str
    site_id: int
    channel_id: str
    x: float
    y: float
    display_name: str
    detector_type: int
    status: int
    status_text: str
    is_online: bool


@dataclass
class SiteLayout:
    site_id: int
    layout_type: str            # "svg" or "grid"
    columns: int | None = None
    rows: int | None = None
    positions: list[SensorLayoutPosition] = field(default_factory=list)


class LayoutService:

    def __init__(
        self,
        sensors,
        registry: SiteRegistry,
        *,
        online_threshold_minutes: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sensors = sensors
        self.registry = registry
        self.threshold = timedelta(minutes=online_threshold_minutes)
        self.clock = clock

    def _position(self, row: SensorReading, x: float, y: float, now: datetime, name: str = "") -> SensorLayoutPosition:
        return SensorLayoutPosition(
            sensor_key=row.sensor_key,
            site_id=row.site_id,
            channel_id=row.channel_id,
            x=x,
            y=y,
            display_name=name or row.tag_name or f"CH{row.channel_id}",
            detector_type=row.detector_type,
            status=row.status,
            status_text=row.status_text or "",
            is_online=classifier.is_online(row.last_updated, now, self.threshold),
        )

    async def site_layout(self, site_id: int, columns: int | None = None) -> SiteLayout:
        rows = await self.sensors.by_site(site_id)
        now = self.clock()

        if columns is None and self.registry.has_custom_diagram(site_id):
            positions = []
            for row in rows:
                configured = self.registry.sensor_position(site_id, row.channel_id)
                if configured is not None:
                    positions.append(self._position(
                        row, configured.layout_x, configured.layout_y, now, configured.display_name,
                    ))
                else:
                    positions.append(self._position(row, CENTER, CENTER, now))
            return SiteLayout(site_id=site_id, layout_type="svg", positions=positions)

        if columns is None:
            site = self.registry.site(site_id)
            if site is not None and site.grid_config.columns > 0:
                columns = site.grid_config.columns

        grid = generate_grid(len(rows), columns)
        positions = [
            self._position(row, cell.x, cell.y, now)
            for row, cell in zip(rows, grid.positions)
        ]
        logger.info(
            "Generated %dx%d grid layout for site %d with %d sensors",
            grid.columns, grid.rows, site_id, len(positions),
        )
        return SiteLayout(
            site_id=site_id,
            layout_type="grid",
            columns=grid.columns,
            rows=grid.rows,
            positions=positions,
        )

    def svg_content(self, site_id: int) -> str | None:
        """Raw custom diagram for the site, or None when missing or not an SVG document."""
        path = self.registry.diagram_path(site_id)
        if not path.is_file():
            logger.warning("SVG layout file not found for site %d at %s", site_id, path)
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Error reading SVG layout for site %d: %s", site_id, exc)
            return None
        if not is_valid_svg(content):
            logger.warning("Invalid SVG content in layout file for site %d", site_id)
            return None
        logger.debug("SVG layout loaded for site %d, size: %d characters", site_id, len(content))
        return content


def is_valid_svg(content: str) -> bool:
    if not content.strip() or "<svg" not in content.lower():
        return False
    try:
        root = ET.fromstring(content)
    except ET.ParseError:
        return False
    # Root tag may carry the SVG namespace: "{http://www.w3.org/2000/svg}svg".
    return root.tag.rsplit("}", 1)[-1].lower() == "svg"
