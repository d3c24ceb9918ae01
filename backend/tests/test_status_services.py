"""Tests for site/county status, alarm queries and sensor layout."""

import json
from datetime import date, timedelta

import pytest

from services.alarm_service import AlarmService
from services.classifier import SiteStatus
from services.layout_service import LayoutService, is_valid_svg
from services.site_registry import SiteRegistry
from services.site_status import SiteStatusService

from conftest import NOW, FakeAlarmRepo, FakeSensorRepo, make_alarm, make_sensor


@pytest.fixture
def registry(tmp_path):
    (tmp_path / "sites.json").write_text(json.dumps([
        {"id": 5, "name": "Panou Hurezani", "county": "Gorj", "mapX": 30, "mapY": 60},
        {"id": 6, "name": "Bibesti", "county": "Gorj", "layoutMode": "grid", "gridConfig": {"columns": 2}},
        {"id": 12, "name": "Depot", "county": "Dolj", "layoutMode": "svg"},
    ]))
    (tmp_path / "counties.json").write_text(json.dumps([
        {"name": "Gorj", "displayName": "Judetul Gorj", "sites": [5, 6]},
        {"name": "Dolj", "sites": [12]},
    ]))
    (tmp_path / "sensors.json").write_text(json.dumps([
        {"siteId": 12, "channelId": "1", "layoutX": 20, "layoutY": 30, "displayName": "Pump room"},
    ]))
    return SiteRegistry(
        tmp_path / "sites.json", tmp_path / "counties.json", tmp_path / "sensors.json", tmp_path,
    )


@pytest.fixture
def sensors():
    return FakeSensorRepo([
        make_sensor(5, "1", 0),
        make_sensor(5, "2", 0),
        make_sensor(5, "3", 1),
        make_sensor(5, "4", 3),
        make_sensor(5, "5", 4),
        make_sensor(6, "1", 0, detector_type=2),
        make_sensor(6, "2", 0, detector_type=2),
        make_sensor(6, "3", 0, detector_type=2),
        make_sensor(12, "1", 0, age=timedelta(hours=1)),
        make_sensor(12, "2", 0, age=timedelta(hours=1)),
        make_sensor(77, "1", 5),
    ])


@pytest.fixture
def alarms():
    return FakeAlarmRepo([
        make_alarm(5, "DET-3", "Alarm Level 2"),
        make_alarm(5, "DET-3", "Alarm Level 2", age=timedelta(hours=2)),
        make_alarm(5, "DET-4", "Detector Fault", age=timedelta(hours=3)),
        make_alarm(5, "DET-3", "Alarm Level 1", age=timedelta(days=2)),
        make_alarm(6, "DET-1", "Maintenance due", age=timedelta(hours=1)),
    ])


@pytest.fixture
def status_service(sensors, alarms, registry):
    return SiteStatusService(sensors, alarms, registry, clock=lambda: NOW)


class TestSiteStatusService:

    async def test_site_breakdown_and_status(self, status_service):
        breakdown = await status_service.site_breakdown(5)
        assert (breakdown.normal, breakdown.alarm, breakdown.fault, breakdown.disabled) == (2, 1, 1, 1)
        assert await status_service.site_status(5) is SiteStatus.ALARM
        assert await status_service.site_status(6) is SiteStatus.NORMAL
        assert await status_service.site_status(12) is SiteStatus.OFFLINE
        assert await status_service.site_status(77) is SiteStatus.FAULT

    async def test_online(self, status_service):
        assert await status_service.is_site_online(5) is True
        assert await status_service.is_site_online(12) is False
        assert await status_service.is_site_online(404) is False

    async def test_all_sites_includes_bus_only_sites(self, status_service):
        sites = {s.id: s for s in await status_service.all_sites()}
        assert sorted(sites) == [5, 6, 12, 77]
        assert sites[5].name == "Panou Hurezani"
        assert sites[5].county == "Gorj"
        assert sites[5].recent_alarms == 3
        assert sites[5].total_sensors == 5
        assert sites[77].name == "Site77"
        assert sites[77].county == "Unknown"

    async def test_county_groups(self, status_service):
        groups = {g.name: g for g in await status_service.county_groups()}
        assert sorted(groups) == ["Dolj", "Gorj", "Unknown"]
        gorj = groups["Gorj"]
        assert gorj.display_name == "Judetul Gorj"
        assert [s.id for s in gorj.sites] == [5, 6]
        assert (gorj.breakdown.alarm, gorj.breakdown.normal) == (1, 1)
        assert (groups["Dolj"].online_sites, groups["Dolj"].offline_sites) == (0, 1)

    async def test_county_breakdown(self, status_service):
        breakdown = await status_service.county_breakdown("Dolj")
        assert breakdown.offline == 1
        assert breakdown.normal == 0

    async def test_summary(self, status_service):
        summary = await status_service.status_summary()
        assert summary.total_sites == 4
        assert summary.active_sites == 3
        assert summary.offline_sites == 1
        assert summary.sites_with_alarms == 1
        assert summary.sites_with_faults == 1
        assert summary.total_sensors == 11
        assert summary.sensors_in_alarm == 1
        assert summary.sensors_with_faults == 2
        assert summary.sensors_disabled == 1
        assert summary.health_percentage == 25.0

    async def test_attention_ordering(self, status_service):
        flagged = await status_service.sites_requiring_attention()
        assert [(s.id, s.status) for s in flagged] == [
            (5, SiteStatus.ALARM),
            (77, SiteStatus.FAULT),
            (12, SiteStatus.OFFLINE),
        ]

    async def test_sensor_stats(self, status_service):
        stats = await status_service.sensor_stats(6)
        assert stats.total == 3
        assert stats.by_detector_type == {2: 3}


class TestAlarmService:

    async def test_active_window(self, alarms):
        service = AlarmService(alarms)
        active = await service.active(5)
        assert len(active) == 3
        assert active[0].alarm_message == "Alarm Level 2"

    async def test_has_critical(self, alarms):
        service = AlarmService(alarms)
        assert await service.has_critical(5) is True
        assert await service.has_critical(6) is False
        assert await service.has_critical() is True

    async def test_problematic_sensors(self, alarms):
        ranked = await AlarmService(alarms).problematic_sensors(5, days=30)
        assert [(p.sensor_tag, p.alarm_count) for p in ranked] == [("DET-3", 3), ("DET-4", 1)]
        assert ranked[0].most_common_alarm == "Alarm Level 2"
        assert ranked[0].last_alarm == NOW

    async def test_sensor_history(self, alarms):
        assert len(await AlarmService(alarms).sensor_history("DET-3", days=1)) == 2

    async def test_stats_for_site(self, alarms):
        stats = await AlarmService(alarms).stats(5)
        assert (stats.total_alarms, stats.last_24_hours, stats.last_7_days, stats.last_30_days) == (4, 3, 4, 4)
        assert stats.alarms_per_day == 0.01
        assert stats.alarm_type_frequency == {"Alarm Level 2": 2, "Detector Fault": 1, "Alarm Level 1": 1}
        assert stats.most_frequent_alarm_types == ["Alarm Level 2 (2)", "Alarm Level 1 (1)", "Detector Fault (1)"]
        assert stats.daily_trends == {date(2026, 2, 27): 1, date(2026, 3, 1): 3}
        assert (stats.oldest_alarm, stats.newest_alarm) == (NOW - timedelta(days=2), NOW)

    async def test_stats_system_wide_skips_type_frequency(self, alarms):
        stats = await AlarmService(alarms).stats()
        assert stats.total_alarms == 5
        assert stats.alarm_type_frequency == {}
        assert stats.most_frequent_alarm_types == []

    async def test_stats_without_alarms(self):
        stats = await AlarmService(FakeAlarmRepo()).stats(5)
        assert stats.total_alarms == 0
        assert stats.alarms_per_day == 0.0
        assert stats.oldest_alarm is None
        assert stats.daily_trends == {}

    async def test_trends(self, alarms):
        service = AlarmService(alarms)
        assert await service.trends(6) == {date(2026, 3, 1): 1}
        assert await service.trends(5, days=1) == {date(2026, 3, 1): 3}


class TestLayoutService:

    async def test_configured_positions(self, sensors, registry):
        layout = await LayoutService(sensors, registry, clock=lambda: NOW).site_layout(12)
        assert layout.layout_type == "svg"
        by_channel = {p.channel_id: p for p in layout.positions}
        assert (by_channel["1"].x, by_channel["1"].y) == (20.0, 30.0)
        assert by_channel["1"].display_name == "Pump room"
        assert (by_channel["2"].x, by_channel["2"].y) == (50.0, 50.0)
        assert by_channel["1"].is_online is False

    async def test_auto_grid(self, sensors, registry):
        layout = await LayoutService(sensors, registry, clock=lambda: NOW).site_layout(5)
        assert layout.layout_type == "grid"
        assert (layout.columns, layout.rows) == (3, 2)
        assert len(layout.positions) == 5
        assert all(p.is_online for p in layout.positions)

    async def test_site_grid_columns(self, sensors, registry):
        layout = await LayoutService(sensors, registry, clock=lambda: NOW).site_layout(6)
        assert (layout.columns, layout.rows) == (2, 2)

    async def test_forced_columns_override_diagram(self, sensors, registry):
        layout = await LayoutService(sensors, registry, clock=lambda: NOW).site_layout(12, columns=1)
        assert layout.layout_type == "grid"
        assert [(p.x, p.y) for p in layout.positions] == [(50.0, 15.0), (50.0, 85.0)]

    async def test_site_without_sensors(self, sensors, registry):
        layout = await LayoutService(sensors, registry, clock=lambda: NOW).site_layout(404)
        assert layout.positions == []
        assert layout.rows == 0

    async def test_svg_content(self, sensors, registry, tmp_path):
        diagram = '<?xml version="1.0"?>\n<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 100 100"><rect/></svg>'
        (tmp_path / "site_12_layout.svg").write_text(diagram)
        service = LayoutService(sensors, registry, clock=lambda: NOW)
        assert service.svg_content(12) == diagram
        assert service.svg_content(5) is None

    async def test_svg_content_rejects_non_svg(self, sensors, registry, tmp_path):
        (tmp_path / "site_12_layout.svg").write_text("<html><body>svg</body></html>")
        assert LayoutService(sensors, registry, clock=lambda: NOW).svg_content(12) is None


class TestSvgValidation:

    @pytest.mark.parametrize("content,valid", [
        ('<svg xmlns="http://www.w3.org/2000/svg"></svg>', True),
        ("<SVG></SVG>", True),
        ("", False),
        ("   ", False),
        ("<svg><g></svg>", False),
        ("<div><svg/></div>", False),
        ("not xml at all", False),
    ])
    def test_is_valid_svg(self, content, valid):
        assert is_valid_svg(content) is valid
