"""Reading normalizer: typed fields out of a detector channel payload.

Controllers publish one JSON object per channel with keys built from the
channel number, e.g. for CH41::

    {"rCH41_mA": 12.1, "rCH41_PV": "2.500000E+01", "iCH41_DetStatus": 0,
     "strCH41_TAG": "KGD-002", "iCH41_DetType": 1}

Values drift in type between firmware versions (numbers arrive as strings,
sometimes in exponent notation), so every field goes through an explicit
tagged value (Number / Text / Missing) and a fixed coercion table instead of
failing the whole message.
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger("monitoring.normalizer")

# Locale-independent float syntax: optional sign, digits with optional fraction, optional exponent.
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_INT_RE = re.compile(r"^[+-]?\d+$")


# ---------------------------------------------------------------------------
# Tagged field values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Missing:
    pass


FieldValue = Union[Number, Text, Missing]

MISSING = Missing()


def read_field(payload: dict, key: str) -> FieldValue:
    """Tag a raw JSON value. Booleans, nulls and containers count as missing."""
    if key not in payload:
        return MISSING
    raw = payload[key]
    if isinstance(raw, bool) or raw is None:
        return MISSING
    if isinstance(raw, (int, float)):
        return Number(float(raw))
    if isinstance(raw, str):
        return Text(raw)
    return MISSING


def parse_number(text: str) -> float | None:
    """Locale-independent parse: float syntax first, then plain integer."""
    s = text.strip()
    if not s:
        return None
    if _FLOAT_RE.match(s):
        try:
            return float(s)
        except ValueError:
            pass
    if _INT_RE.match(s):
        return float(int(s))
    return None


def as_float(field: FieldValue, default: float = 0.0) -> float:
    if isinstance(field, Number):
        value = field.value
    elif isinstance(field, Text):
        value = parse_number(field.value)
        if value is None:
            return default
    else:
        return default
    return value if math.isfinite(value) else default


def as_int(field: FieldValue, default: int = 0) -> int:
    value = as_float(field, float("nan"))
    if math.isnan(value):
        return default
    return int(value)  # truncates toward zero


def as_text(field: FieldValue, default: str = "") -> str:
    if isinstance(field, Text):
        return field.value
    return default


# ---------------------------------------------------------------------------
# Channel payload
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChannelKeys:
    current_ma: str
    process_value: str
    status: str
    tag: str
    detector_type: str

    @classmethod
    def for_channel(cls, channel_id: str) -> "ChannelKeys":
        n = channel_id
        return cls(
            current_ma=f"rCH{n}_mA",
            process_value=f"rCH{n}_PV",
            status=f"iCH{n}_DetStatus",
            tag=f"strCH{n}_TAG",
            detector_type=f"iCH{n}_DetType",
        )


@dataclass(frozen=True)
class NormalizedReading:
    tag: str
    process_value: float
    current_value: float
    status_code: int
    detector_type: int


class PayloadError(ValueError):
    """Sensor payload is not a JSON object."""


def load_payload(payload: str) -> dict:
    try:
        data: Any = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as exc:
        raise PayloadError(f"invalid JSON payload: {exc}") from exc
    if not isinstance(data, dict):
        raise PayloadError(f"expected JSON object, got {type(data).__name__}")
    return data


def normalize_reading(payload: dict, channel_id: str) -> NormalizedReading | None:
    """Extract the five channel fields; None when the channel carries no tag."""
    keys = ChannelKeys.for_channel(channel_id)

    tag = as_text(read_field(payload, keys.tag), "")
    current_value = as_float(read_field(payload, keys.current_ma), 0.0)
    process_value = as_float(read_field(payload, keys.process_value), 0.0)
    status_code = as_int(read_field(payload, keys.status), 0)
    detector_type = as_int(read_field(payload, keys.detector_type), 0)

    logger.debug(
        "CH%s extracted tag=%r mA=%s PV=%s status=%s type=%s",
        channel_id, tag, current_value, process_value, status_code, detector_type,
    )

    if not tag:
        return None

    return NormalizedReading(
        tag=tag,
        process_value=process_value,
        current_value=current_value,
        status_code=status_code,
        detector_type=detector_type,
    )
