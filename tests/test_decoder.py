"""Tests for decoder module."""

import pytest

from bleak_session_manager.const import (
    BATTERY_LEVEL_UUID,
    BODY_SENSOR_LOCATION_UUID,
    HEART_RATE_MEASUREMENT_UUID,
)
from bleak_session_manager.decoder import (
    BatteryLevel,
    BodySensorLocation,
    DecodeError,
    DecodeErrorReason,
    HeartRateMeasurement,
    ValueDecoder,
    decode,
)

# ── Body Sensor Location ───────────────────────────────────────────


@pytest.mark.parametrize(
    "byte, expected",
    [
        (0, "Other"),
        (1, "Chest"),
        (2, "Wrist"),
        (3, "Finger"),
        (4, "Hand"),
        (5, "Ear Lobe"),
        (6, "Foot"),
        (7, "Reserved for future use"),
        (0xFF, "Reserved for future use"),
    ],
)
def test_body_sensor_location(byte, expected):
    result = decode(BODY_SENSOR_LOCATION_UUID, bytes([byte]))
    assert isinstance(result, BodySensorLocation)
    assert result.value == expected


def test_body_sensor_location_short_uuid():
    assert decode("2A38", b"\x01") is BodySensorLocation.CHEST


def test_body_sensor_location_ignores_trailing_bytes():
    assert decode(BODY_SENSOR_LOCATION_UUID, b"\x02\x00") is BodySensorLocation.WRIST


# ── Heart Rate Measurement ─────────────────────────────────────────


def test_heart_rate_uint8():
    result = decode(HEART_RATE_MEASUREMENT_UUID, b"\x00\x48")
    assert result == HeartRateMeasurement(bpm=72)


def test_heart_rate_uint16():
    result = decode(HEART_RATE_MEASUREMENT_UUID, b"\x01\x2c\x01")
    assert result.bpm == 300


def test_heart_rate_sensor_contact():
    detected = decode(HEART_RATE_MEASUREMENT_UUID, b"\x06\x50")
    lost = decode(HEART_RATE_MEASUREMENT_UUID, b"\x04\x50")
    unsupported = decode(HEART_RATE_MEASUREMENT_UUID, b"\x02\x50")
    assert detected.sensor_contact is True
    assert lost.sensor_contact is False
    assert unsupported.sensor_contact is None


def test_heart_rate_energy_and_rr():
    # flags: energy + RR, bpm 60, energy 0x0102, RR 1024 and 512
    payload = b"\x18\x3c\x02\x01\x00\x04\x00\x02"
    result = decode(HEART_RATE_MEASUREMENT_UUID, payload)
    assert result.bpm == 60
    assert result.energy_expended == 0x0102
    assert result.rr_intervals == (1.0, 0.5)


def test_heart_rate_truncated():
    result = decode(HEART_RATE_MEASUREMENT_UUID, b"\x01\x2c")
    assert isinstance(result, DecodeError)
    assert result.reason is DecodeErrorReason.UNRECOGNIZED
    assert result.payload == b"\x01\x2c"


def test_heart_rate_odd_rr_bytes():
    result = decode(HEART_RATE_MEASUREMENT_UUID, b"\x10\x3c\x00\x04\x00")
    assert isinstance(result, DecodeError)


# ── Battery Level ──────────────────────────────────────────────────


def test_battery_level():
    assert decode(BATTERY_LEVEL_UUID, b"\x5a") == BatteryLevel(percent=90)


# ── totality ───────────────────────────────────────────────────────


@pytest.mark.parametrize("raw", [b"", None])
def test_empty_payload(raw):
    result = decode(HEART_RATE_MEASUREMENT_UUID, raw)
    assert isinstance(result, DecodeError)
    assert result.reason is DecodeErrorReason.EMPTY_PAYLOAD


def test_unknown_characteristic_keeps_payload():
    result = decode("2a6e", b"\x10\x27")
    assert isinstance(result, DecodeError)
    assert result.reason is DecodeErrorReason.UNRECOGNIZED
    assert result.payload == b"\x10\x27"


def test_malformed_uuid_is_unrecognized():
    result = decode("not-a-uuid", b"\x01")
    assert isinstance(result, DecodeError)
    assert result.reason is DecodeErrorReason.UNRECOGNIZED


# ── hooks ──────────────────────────────────────────────────────────


def test_register_custom_decoder():
    decoder = ValueDecoder()
    decoder.register("2a6e", lambda raw: int.from_bytes(raw, "little") / 100)
    assert decoder.handles("2A6E")
    assert decoder.decode("2a6e", b"\x10\x27") == 100.0


def test_constructor_decoders():
    decoder = ValueDecoder({"2a6e": len})
    assert decoder.decode("2a6e", b"abc") == 3


def test_raising_hook_degrades_to_error():
    def _boom(raw):
        raise ValueError("bad frame")

    decoder = ValueDecoder()
    decoder.register("2a6e", _boom)
    result = decoder.decode("2a6e", b"\x00")
    assert isinstance(result, DecodeError)
    assert result.reason is DecodeErrorReason.UNRECOGNIZED
    assert result.detail == "bad frame"


def test_register_overrides_builtin():
    decoder = ValueDecoder()
    decoder.register(BATTERY_LEVEL_UUID, lambda raw: "custom")
    assert decoder.decode(BATTERY_LEVEL_UUID, b"\x01") == "custom"
    # module-level table is untouched
    assert decode(BATTERY_LEVEL_UUID, b"\x01") == BatteryLevel(1)


def test_handles_garbage():
    assert not ValueDecoder().handles("nope")
