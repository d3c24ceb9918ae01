from models.base import Base, async_session, engine, utcnow
from models.sensor import SensorReading
from models.alarm import Alarm

__all__ = [
    "Base",
    "async_session",
    "engine",
    "utcnow",
    "SensorReading",
    "Alarm",
]
