"""Static site metadata: sites.json, counties.json, sensors.json.

Only presentation data lives here (county, map position, diagram file,
configured sensor coordinates). Everything live comes from the bus.
Files are re-read when their mtime changes.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger("monitoring.site_registry")

UNKNOWN_COUNTY = "Unknown"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class GridLayoutConfig(_ConfigModel):
    columns: int = 0                  # 0 = choose automatically
    style: str = "square"
    spacing: float = 10.0
    group_by_type: bool = True
    show_labels: bool = True


class SiteConfig(_ConfigModel):
    id: int = Field(gt=0)
    name: str = Field(min_length=1)
    county: str = Field(min_length=1)
    map_x: float = Field(0.0, ge=0, le=100)
    map_y: float = Field(0.0, ge=0, le=100)
    layout_file: str = ""
    layout_mode: str = Field("auto", pattern=r"(?i)^(svg|grid|auto)$")
    grid_config: GridLayoutConfig = GridLayoutConfig()

    @property
    def diagram_file(self) -> str:
        return self.layout_file or f"site_{self.id}_layout.svg"


class CountyConfig(_ConfigModel):
    name: str = Field(min_length=1)
    sites: list[int] = Field(min_length=1)
    display_name: str = ""
    description: str = ""

    @property
    def label(self) -> str:
        return self.display_name.strip() or self.name


class SensorPositionConfig(_ConfigModel):
    site_id: int = Field(gt=0)
    channel_id: str = Field(min_length=1)
    layout_x: float = Field(ge=0, le=100)
    layout_y: float = Field(ge=0, le=100)
    display_name: str = ""

    @property
    def sensor_key(self) -> str:
        return f"{self.site_id}_{self.channel_id}"


M = TypeVar("M", bound=BaseModel)


def load_entries(path: Path, model: type[M]) -> list[M]:
    """Parse a JSON array of ``model``; bad entries are logged and skipped."""
    if not path.exists():
        logger.warning("Configuration file not found: %s", path)
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Error loading configuration file %s: %s", path, exc)
        return []
    if not isinstance(raw, list):
        logger.error("Configuration file %s must hold a JSON array", path)
        return []

    entries: list[M] = []
    adapter = TypeAdapter(model)
    for i, item in enumerate(raw):
        try:
            entries.append(adapter.validate_python(item))
        except ValidationError as exc:
            logger.warning("Skipping invalid entry #%d in %s: %s", i, path.name, exc.errors()[0]["msg"])
    return entries


class SiteRegistry:

    def __init__(
        self,
        sites_path: str | Path,
        counties_path: str | Path,
        sensors_path: str | Path,
        layouts_dir: str | Path,
    ):
        self.sites_path = Path(sites_path)
        self.counties_path = Path(counties_path)
        self.sensors_path = Path(sensors_path)
        self.layouts_dir = Path(layouts_dir)
        self._mtimes: dict[Path, float | None] = {}
        self._sites: dict[int, SiteConfig] = {}
        self._counties: list[CountyConfig] = []
        self._sensors: dict[str, SensorPositionConfig] = {}

    def _stale(self, path: Path) -> bool:
        try:
            mtime: float | None = path.stat().st_mtime
        except OSError:
            mtime = None
        if path in self._mtimes and self._mtimes[path] == mtime:
            return False
        self._mtimes[path] = mtime
        return True

    def reload(self, force: bool = False) -> None:
        if force:
            self._mtimes.clear()
        if self._stale(self.sites_path):
            self._sites = {s.id: s for s in load_entries(self.sites_path, SiteConfig)}
            logger.debug("Loaded %d sites from configuration", len(self._sites))
        if self._stale(self.counties_path):
            self._counties = load_entries(self.counties_path, CountyConfig)
            logger.debug("Loaded %d counties from configuration", len(self._counties))
        if self._stale(self.sensors_path):
            self._sensors = {s.sensor_key: s for s in load_entries(self.sensors_path, SensorPositionConfig)}
            logger.debug("Loaded %d sensor positions from configuration", len(self._sensors))

    # -- queries ------------------------------------------------------------

    def sites(self) -> list[SiteConfig]:
        self.reload()
        return sorted(self._sites.values(), key=lambda s: s.id)

    def site(self, site_id: int) -> SiteConfig | None:
        self.reload()
        return self._sites.get(site_id)

    def counties(self) -> list[CountyConfig]:
        self.reload()
        return list(self._counties)

    def county_of(self, site_id: int) -> str:
        """County from sites.json, then counties.json membership, else Unknown."""
        site = self.site(site_id)
        if site is not None:
            return site.county
        for county in self._counties:
            if site_id in county.sites:
                return county.name
        return UNKNOWN_COUNTY

    def sensor_position(self, site_id: int, channel_id: str) -> SensorPositionConfig | None:
        self.reload()
        return self._sensors.get(f"{site_id}_{channel_id}")

    def diagram_path(self, site_id: int) -> Path:
        site = self.site(site_id)
        name = site.diagram_file if site else f"site_{site_id}_layout.svg"
        return self.layouts_dir / name

    def has_custom_diagram(self, site_id: int) -> bool:
        site = self.site(site_id)
        mode = site.layout_mode.lower() if site else "auto"
        if mode == "grid":
            return False
        if mode == "svg":
            return True
        return self.diagram_path(site_id).is_file()
