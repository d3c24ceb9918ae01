"""Ingestion coordinator: MQTT subscription lifecycle + per-message pipeline.

Connection state machine::

    DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED → ...

On CONNECTED the topic filter is subscribed. Any broker error drops back to
DISCONNECTED, waits a fixed backoff and reconnects, forever.

The MQTT callback side only joins ``topic|payload`` and puts it on a queue.
A dispatcher drains the queue and runs each envelope as its own task:

    decode → normalize / parse → classify → persist → publish

so one slow write never holds up the next message. Every failure inside a
message pipeline is logged and the message dropped; nothing escapes to the
subscription.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections import Counter
from datetime import datetime
from typing import Callable

import aiomqtt

from models.alarm import Alarm
from models.base import utcnow
from models.sensor import SensorReading
from services import classifier
from services.alarm_parser import AlarmFormatError, AlarmEvent, parse_alarm
from services.reading_normalizer import PayloadError, load_payload, normalize_reading
from services.wire_decoder import ChannelKind, Envelope, EnvelopeError, decode_envelope, join_envelope

logger = logging.getLogger("monitoring.ingest")

SENSOR_UPDATE = "SensorUpdate"
NEW_ALARM = "NewAlarm"


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class IngestionCoordinator:

    def __init__(
        self,
        redis,
        sensors,
        alarms,
        *,
        broker: str,
        port: int = 1883,
        username: str = "",
        password: str = "",
        client_id: str = "",
        topic_pattern: str = "/PLCNEXT/+/+",
        events_channel: str = "monitoring:events",
        reconnect_delay: float = 5.0,
        connect_timeout: float = 10.0,
        queue_size: int = 10000,
        max_in_flight: int = 64,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis = redis
        self.sensors = sensors
        self.alarms = alarms
        self.broker = broker
        self.port = port
        self.username = username
        self.password = password
        self.client_id = client_id
        self.topic_pattern = topic_pattern
        self.events_channel = events_channel
        self.reconnect_delay = reconnect_delay
        self.connect_timeout = connect_timeout
        self.clock = clock

        self.state = ConnectionState.DISCONNECTED
        self.stats: Counter[str] = Counter()
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._slots = asyncio.Semaphore(max_in_flight)
        self._in_flight: set[asyncio.Task] = set()
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._running = True
        logger.info(
            "IngestionCoordinator starting (broker=%s:%s, topic=%s)",
            self.broker, self.port, self.topic_pattern,
        )
        dispatcher = asyncio.create_task(self.dispatch_forever())
        try:
            await self._connection_loop()
        finally:
            dispatcher.cancel()
            try:
                await dispatcher
            except asyncio.CancelledError:
                pass

    async def stop(self) -> None:
        self._running = False
        for task in list(self._in_flight):
            task.cancel()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("IngestionCoordinator stopped")

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.info("MQTT state %s → %s", self.state.value, state.value)
            self.state = state

    def _make_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            self.broker,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            identifier=self.client_id or None,
            clean_session=True,
            timeout=self.connect_timeout,
        )

    async def _connection_loop(self) -> None:
        while self._running:
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with self._make_client() as client:
                    self._set_state(ConnectionState.CONNECTED)
                    await client.subscribe(self.topic_pattern)
                    logger.info("Subscribed to %s", self.topic_pattern)
                    async for message in client.messages:
                        self.on_message(str(message.topic), message.payload)
            except asyncio.CancelledError:
                break
            except aiomqtt.MqttError as exc:
                logger.warning("Disconnected from MQTT broker: %s", exc)
            except Exception as exc:
                logger.error("MQTT connection loop error: %s", exc, exc_info=True)
            self._set_state(ConnectionState.DISCONNECTED)
            if not self._running:
                break
            logger.info("Reconnecting in %.0fs", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    # ------------------------------------------------------------------
    # Transport → queue
    # ------------------------------------------------------------------

    def on_message(self, topic: str, payload: bytes | bytearray | str | None) -> None:
        """Transport callback: enqueue ``topic|payload`` without processing it."""
        if isinstance(payload, (bytes, bytearray)):
            text = payload.decode("utf-8", errors="replace")
        elif payload is None:
            text = ""
        else:
            text = str(payload)
        self.stats["received"] += 1
        try:
            self._queue.put_nowait(join_envelope(topic, text))
        except asyncio.QueueFull:
            self.stats["overflow"] += 1
            logger.warning("Ingest queue full, dropping message on %s", topic)

    async def dispatch_forever(self) -> None:
        while True:
            envelope = await self._queue.get()
            await self._slots.acquire()
            task = asyncio.create_task(self._run_one(envelope))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _run_one(self, envelope: str) -> None:
        try:
            await self.handle_envelope(envelope)
        finally:
            self._slots.release()
            self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued envelope has been fully processed."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def handle_envelope(self, raw: str) -> str:
        """Run one envelope through the pipeline; returns the outcome label."""
        try:
            envelope = decode_envelope(raw)
        except EnvelopeError as exc:
            logger.warning("Dropping message (%s): %s", exc.kind, exc)
            return self._outcome(exc.kind)

        try:
            if envelope.kind is ChannelKind.ALARM:
                return self._outcome(await self.process_alarm(envelope))
            return self._outcome(await self.process_sensor(envelope))
        except Exception as exc:
            logger.error(
                "Error processing %s for site %d: %s",
                envelope.channel, envelope.site_id, exc, exc_info=True,
            )
            return self._outcome("error")

    def _outcome(self, label: str) -> str:
        self.stats[label] += 1
        return label

    async def process_sensor(self, envelope: Envelope) -> str:
        channel_id = envelope.channel_id
        try:
            payload = load_payload(envelope.payload)
        except PayloadError as exc:
            logger.warning("Dropping %s at site %d: %s", envelope.channel, envelope.site_id, exc)
            return "bad-payload"

        reading = normalize_reading(payload, channel_id)
        if reading is None:
            logger.warning("No tag name found for %s at site %d", envelope.channel, envelope.site_id)
            return "no-tag"

        now = self.clock()
        row = SensorReading(
            site_id=envelope.site_id,
            site_name=envelope.site_name,
            channel_id=channel_id,
            tag_name=reading.tag,
            detector_type=reading.detector_type,
            process_value=reading.process_value,
            current_value=reading.current_value,
            status=reading.status_code,
            status_text=classifier.status_text(reading.status_code),
            units=classifier.units_for_type(reading.detector_type),
            last_updated=now,
            topic=envelope.topic,
            raw_json=envelope.payload,
        )

        try:
            await self.sensors.upsert(row)
        except Exception as exc:
            logger.error("Database error while storing sensor %s: %s", row.sensor_key, exc)
            return "persist-failed"

        logger.info(
            "Updated sensor %s at site %s - Status: %s",
            reading.tag, envelope.site_name, row.status_text,
        )
        await self.publish(envelope.site_id, SENSOR_UPDATE, sensor_update_event(row))
        return "sensor"

    async def process_alarm(self, envelope: Envelope) -> str:
        try:
            event = parse_alarm(
                envelope.site_id, envelope.site_name, envelope.payload, clock=self.clock,
            )
        except AlarmFormatError as exc:
            logger.warning("Invalid alarm format at site %d: %s", envelope.site_id, exc)
            return "bad-alarm"

        event = event.with_severity(classifier.alarm_severity(event.alarm_message).value)
        row = alarm_row(event)
        try:
            row = await self.alarms.insert(row)
        except Exception as exc:
            logger.error("Database error while recording alarm for site %d: %s", envelope.site_id, exc)
            return "persist-failed"

        logger.warning(
            "Alarm recorded: %s - %s - %s [%s]",
            envelope.site_name, event.sensor_tag, event.alarm_message, event.severity,
        )
        await self.publish(envelope.site_id, NEW_ALARM, new_alarm_event(row))
        return "alarm"

    async def publish(self, site_id: int, event_type: str, data: dict) -> None:
        frame = json.dumps({"type": event_type, "siteId": site_id, "data": data}, default=str)
        try:
            await self.redis.publish(self.events_channel, frame)
        except Exception as exc:
            logger.error("Failed to publish %s for site %d: %s", event_type, site_id, exc)


# ---------------------------------------------------------------------------
# Outbound payloads
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def sensor_update_event(row: SensorReading) -> dict:
    return {
        "id": row.sensor_key,
        "siteId": row.site_id,
        "tag": row.tag_name,
        "processValue": row.process_value,
        "status": row.status,
        "units": row.units,
        "lastUpdate": _iso(row.last_updated),
    }


def alarm_row(event: AlarmEvent) -> Alarm:
    return Alarm(
        site_id=event.site_id,
        site_name=event.site_name,
        sensor_tag=event.sensor_tag,
        alarm_message=event.alarm_message,
        severity=event.severity or classifier.AlarmSeverity.LOW.value,
        raw_message=event.raw_message,
        timestamp=event.timestamp,
    )


def new_alarm_event(row: Alarm) -> dict:
    return {
        "id": row.id,
        "siteId": row.site_id,
        "siteName": row.site_name,
        "sensorTag": row.sensor_tag,
        "alarmMessage": row.alarm_message,
        "rawMessage": row.raw_message,
        "severity": row.severity,
        "timestamp": _iso(row.timestamp),
    }
