"""Last known value per detector channel.

One row per (site_id, channel_id), replaced wholesale on every bus update.
Rows are never deleted by the ingestion pipeline.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Float, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow


class SensorReading(Base):
    __tablename__ = "sensor_last_values"

    __table_args__ = (
        UniqueConstraint("site_id", "channel_id", name="uq_sensor_last_values_site_channel"),
        Index("ix_sensor_last_values_site", "site_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    site_id: Mapped[int]
    site_name: Mapped[str] = mapped_column(String(100), default="")
    channel_id: Mapped[str] = mapped_column(String(20))          # "41" from "CH41"
    tag_name: Mapped[str] = mapped_column(String(100), default="")
    detector_type: Mapped[int] = mapped_column(default=0)
    process_value: Mapped[float] = mapped_column(Float, default=0.0)
    current_value: Mapped[float] = mapped_column(Float, default=0.0)  # 4-20 mA loop signal
    status: Mapped[int] = mapped_column(default=0)
    status_text: Mapped[str] = mapped_column(String(40), default="")
    units: Mapped[str] = mapped_column(String(10), default="")
    last_updated: Mapped[datetime] = mapped_column(default=utcnow)
    topic: Mapped[str] = mapped_column(String(200), default="")
    raw_json: Mapped[str] = mapped_column(Text, default="")

    # Fields replaced on every update; identity (site_id, channel_id) is not.
    UPDATABLE = (
        "site_name", "tag_name", "detector_type", "process_value", "current_value",
        "status", "status_text", "units", "last_updated", "topic", "raw_json",
    )

    @property
    def sensor_key(self) -> str:
        return f"{self.site_id}_{self.channel_id}"

    def values(self) -> dict:
        return {field: getattr(self, field) for field in self.UPDATABLE}

    def __repr__(self) -> str:
        return f"<SensorReading {self.sensor_key} {self.tag_name} status={self.status}>"
