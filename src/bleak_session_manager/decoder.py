"""Decode raw characteristic payloads into typed domain values.

:func:`decode` is total: it never raises.  Every input maps either to a
domain value or to a :class:`DecodeError` describing why it could not
be decoded.  Custom characteristics plug in through
:meth:`ValueDecoder.register`; a hook that raises degrades to
``DecodeError(UNRECOGNIZED)`` instead of propagating.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .catalog import normalize_uuid
from .const import (
    BATTERY_LEVEL_UUID,
    BODY_SENSOR_LOCATION_UUID,
    HEART_RATE_MEASUREMENT_UUID,
)

_LOGGER = logging.getLogger(__name__)


class DecodeErrorReason(str, Enum):
    EMPTY_PAYLOAD = "empty_payload"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class DecodeError:
    """A payload that could not be turned into a domain value.

    Unrecognized payloads keep their raw bytes so a presentation layer
    can still show them.
    """

    reason: DecodeErrorReason
    characteristic: str | None = None
    payload: bytes = b""
    detail: str | None = None


class BodySensorLocation(str, Enum):
    """Body Sensor Location (0x2A38) values."""

    OTHER = "Other"
    CHEST = "Chest"
    WRIST = "Wrist"
    FINGER = "Finger"
    HAND = "Hand"
    EAR_LOBE = "Ear Lobe"
    FOOT = "Foot"
    RESERVED = "Reserved for future use"

    @classmethod
    def from_byte(cls, value: int) -> BodySensorLocation:
        if 0 <= value < len(_LOCATIONS):
            return _LOCATIONS[value]
        return cls.RESERVED


_LOCATIONS = (
    BodySensorLocation.OTHER,
    BodySensorLocation.CHEST,
    BodySensorLocation.WRIST,
    BodySensorLocation.FINGER,
    BodySensorLocation.HAND,
    BodySensorLocation.EAR_LOBE,
    BodySensorLocation.FOOT,
)


@dataclass(frozen=True)
class HeartRateMeasurement:
    """Heart Rate Measurement (0x2A37).

    ``sensor_contact`` is ``None`` when the sensor does not support
    contact detection.  RR intervals are in seconds.
    """

    bpm: int
    sensor_contact: bool | None = None
    energy_expended: int | None = None
    rr_intervals: tuple[float, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class BatteryLevel:
    """Battery Level (0x2A19), percent."""

    percent: int


DomainValue = Union[BodySensorLocation, HeartRateMeasurement, BatteryLevel, Any]
DecodeResult = Union[DomainValue, DecodeError]
DecoderFunc = Callable[[bytes], Any]

# Heart Rate Measurement flag bits
_HR_FORMAT_UINT16 = 0x01
_HR_CONTACT_DETECTED = 0x02
_HR_CONTACT_SUPPORTED = 0x04
_HR_ENERGY_PRESENT = 0x08
_HR_RR_PRESENT = 0x10


class _Truncated(Exception):
    """Payload ended before a field the flags announced."""


def _decode_body_location(payload: bytes) -> BodySensorLocation:
    return BodySensorLocation.from_byte(payload[0])


def _decode_battery_level(payload: bytes) -> BatteryLevel:
    return BatteryLevel(percent=payload[0])


def _decode_heart_rate(payload: bytes) -> HeartRateMeasurement:
    flags = payload[0]
    offset = 1

    def _take(fmt: str) -> int:
        nonlocal offset
        size = struct.calcsize(fmt)
        if offset + size > len(payload):
            raise _Truncated(f"need {size} bytes at offset {offset}")
        (value,) = struct.unpack_from(fmt, payload, offset)
        offset += size
        return value

    bpm = _take("<H" if flags & _HR_FORMAT_UINT16 else "<B")

    contact = None
    if flags & _HR_CONTACT_SUPPORTED:
        contact = bool(flags & _HR_CONTACT_DETECTED)

    energy = _take("<H") if flags & _HR_ENERGY_PRESENT else None

    rr: list[float] = []
    if flags & _HR_RR_PRESENT:
        if (len(payload) - offset) % 2:
            raise _Truncated("odd number of RR interval bytes")
        while offset < len(payload):
            rr.append(_take("<H") / 1024.0)

    return HeartRateMeasurement(
        bpm=bpm,
        sensor_contact=contact,
        energy_expended=energy,
        rr_intervals=tuple(rr),
    )


class ValueDecoder:
    """Per-characteristic payload decoding with a pluggable hook table.

    The built-in table covers Heart Rate Measurement, Body Sensor
    Location and Battery Level.  Register further decoders with
    :meth:`register`::

        decoder = ValueDecoder()
        decoder.register("2a6e", lambda raw: int.from_bytes(raw, "little") / 100)
    """

    def __init__(self, decoders: dict[str, DecoderFunc] | None = None) -> None:
        self._decoders: dict[str, DecoderFunc] = {
            HEART_RATE_MEASUREMENT_UUID: _decode_heart_rate,
            BODY_SENSOR_LOCATION_UUID: _decode_body_location,
            BATTERY_LEVEL_UUID: _decode_battery_level,
        }
        for uuid, func in (decoders or {}).items():
            self.register(uuid, func)

    def register(self, characteristic_uuid: str, func: DecoderFunc) -> None:
        """Install (or replace) the decoder for a characteristic UUID."""
        self._decoders[normalize_uuid(characteristic_uuid)] = func

    def handles(self, characteristic_uuid: str) -> bool:
        try:
            return normalize_uuid(characteristic_uuid) in self._decoders
        except ValueError:
            return False

    def decode(self, characteristic_uuid: str, raw: bytes | None) -> DecodeResult:
        """Decode *raw* for *characteristic_uuid*; never raises."""
        if not raw:
            return DecodeError(
                DecodeErrorReason.EMPTY_PAYLOAD, characteristic=characteristic_uuid
            )
        payload = bytes(raw)

        try:
            key = normalize_uuid(characteristic_uuid)
        except (ValueError, AttributeError):
            key = None
        func = self._decoders.get(key) if key is not None else None
        if func is None:
            return DecodeError(
                DecodeErrorReason.UNRECOGNIZED,
                characteristic=characteristic_uuid,
                payload=payload,
                detail="no decoder for characteristic",
            )

        try:
            return func(payload)
        except Exception as exc:
            _LOGGER.debug(
                "Decoder for %s rejected %d-byte payload",
                characteristic_uuid,
                len(payload),
                exc_info=True,
            )
            return DecodeError(
                DecodeErrorReason.UNRECOGNIZED,
                characteristic=characteristic_uuid,
                payload=payload,
                detail=str(exc) or type(exc).__name__,
            )


_DEFAULT_DECODER = ValueDecoder()


def decode(characteristic_uuid: str, raw: bytes | None) -> DecodeResult:
    """Decode with the built-in decoder table."""
    return _DEFAULT_DECODER.decode(characteristic_uuid, raw)
