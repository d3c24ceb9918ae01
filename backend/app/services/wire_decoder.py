"""Bus envelope decoder.

An envelope is ``topic|payload`` as handed over by the MQTT client, e.g.::

    /PLCNEXT/5_PanouHurezani/CH41|{"rCH41_mA": 4.0, ...}
    /PLCNEXT/5_PanouHurezani/Alarms|DT#2024-11-27-07:28:40.99, Alarm Level 2, Det_01

Pure: no I/O beyond logging.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger("monitoring.decoder")

SEPARATOR = "|"
UNKNOWN_SITE_NAME = "Unknown"
ALARM_CHANNELS = ("alarms", "alarm")


class ChannelKind(str, Enum):
    SENSOR = "sensor"
    ALARM = "alarm"


class EnvelopeError(ValueError):
    """Envelope rejected at the validation gate; the message is dropped."""

    kind = "malformed-envelope"


class MalformedEnvelopeError(EnvelopeError):
    kind = "malformed-envelope"


class MalformedTopicError(EnvelopeError):
    kind = "malformed-topic"


class BadSiteIdError(EnvelopeError):
    kind = "bad-site-id"


class UnknownChannelError(EnvelopeError):
    kind = "unknown-channel"


@dataclass(frozen=True)
class Envelope:
    site_id: int
    site_name: str
    channel: str           # verbatim, "CH41" or "Alarms"
    kind: ChannelKind
    payload: str
    topic: str

    @property
    def channel_id(self) -> str:
        """Suffix of a sensor channel ("41" for "CH41"), else ""."""
        if self.kind is not ChannelKind.SENSOR:
            return ""
        return self.channel[2:]


def join_envelope(topic: str, payload: str) -> str:
    return f"{topic}{SEPARATOR}{payload}"


def classify_channel(channel: str) -> ChannelKind:
    if channel.lower() in ALARM_CHANNELS:
        return ChannelKind.ALARM
    if channel.startswith("CH"):
        return ChannelKind.SENSOR
    raise UnknownChannelError(f"unknown channel type: {channel!r}")


def parse_site(segment: str) -> tuple[int, str]:
    """Split ``5_PanouHurezani`` into ``(5, "PanouHurezani")``."""
    raw_id, _, name = segment.partition("_")
    try:
        site_id = int(raw_id)
    except ValueError:
        raise BadSiteIdError(f"could not parse site id from {segment!r}") from None
    if site_id <= 0:
        raise BadSiteIdError(f"site id must be positive, got {site_id}")
    return site_id, name or UNKNOWN_SITE_NAME


def decode_envelope(envelope: str) -> Envelope:
    """Decode ``topic|payload``; raises an EnvelopeError subclass on rejection."""
    if envelope.count(SEPARATOR) != 1:
        raise MalformedEnvelopeError(
            f"expected exactly one '{SEPARATOR}' separator, got {envelope.count(SEPARATOR)}"
        )
    topic, payload = envelope.split(SEPARATOR)

    segments = [s for s in topic.split("/") if s]
    if len(segments) < 3:
        raise MalformedTopicError(
            f"expected at least 3 topic segments, got {len(segments)} in {topic!r}"
        )

    site_id, site_name = parse_site(segments[1])
    channel = segments[2]
    kind = classify_channel(channel)

    logger.debug("Decoded site=%d_%s channel=%s kind=%s", site_id, site_name, channel, kind.value)
    return Envelope(
        site_id=site_id,
        site_name=site_name,
        channel=channel,
        kind=kind,
        payload=payload,
        topic=topic,
    )
