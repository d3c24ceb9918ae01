"""Alarm journal, append-only.

Each row = one alarm line received on a site's alarm channel. Rows are never
updated; duplicates after a broker reconnect are accepted.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow


class Alarm(Base):
    __tablename__ = "alarms"

    __table_args__ = (
        Index("ix_alarms_site_timestamp", "site_id", "timestamp"),
        Index("ix_alarms_sensor_tag", "sensor_tag"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    site_id: Mapped[int]
    site_name: Mapped[str] = mapped_column(String(100), default="")
    sensor_tag: Mapped[str] = mapped_column(String(100), default="")
    alarm_message: Mapped[str] = mapped_column(String(300), default="")  # "Alarm Level 2"
    severity: Mapped[str] = mapped_column(String(10), default="Low")
    raw_message: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[datetime] = mapped_column(default=utcnow)

    def __repr__(self) -> str:
        return f"<Alarm site={self.site_id} {self.sensor_tag}: {self.alarm_message}>"
