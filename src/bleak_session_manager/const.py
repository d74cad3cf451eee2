"""Constants and configuration dataclasses for bleak-session-manager."""

from __future__ import annotations

import platform
from dataclasses import dataclass

IS_LINUX = platform.system() == "Linux"

# Default deadline for a GATT request (read, write, subscribe, discovery).
DEFAULT_COMMAND_TIMEOUT = 5.0

# Connection establishment is slower than a single GATT round trip:
# bleak-retry-connector alone budgets ~10 s for one attempt.
DEFAULT_CONNECT_TIMEOUT = 10.0

# How long to wait for a disconnect to complete before giving up.
DISCONNECT_TIMEOUT = 5.0

# Default number of automatic reconnect attempts before a connection
# failure is reported as permanent.
DEFAULT_MAX_RECONNECT_ATTEMPTS = 3

# ── Well-known GATT UUIDs (Bluetooth SIG assigned numbers) ─────────

HEART_RATE_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"
HEART_RATE_MEASUREMENT_UUID = "00002a37-0000-1000-8000-00805f9b34fb"
BODY_SENSOR_LOCATION_UUID = "00002a38-0000-1000-8000-00805f9b34fb"
HEART_RATE_CONTROL_POINT_UUID = "00002a39-0000-1000-8000-00805f9b34fb"
BATTERY_SERVICE_UUID = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL_UUID = "00002a19-0000-1000-8000-00805f9b34fb"


@dataclass
class SessionConfig:
    """Configuration for peripheral sessions and the session registry.

    Parameters
    ----------
    command_timeout:
        Seconds a tracked GATT command may stay in flight before it is
        failed with ``CommandTimeoutError`` and its slot is freed.
    connect_timeout:
        Seconds allowed for a ``connect`` command.  A timeout is handled
        exactly like a transport-reported connection failure.
    auto_reconnect:
        Whether a failed connection attempt or an unexpected link drop
        schedules another ``connect`` after a backoff delay.
    max_reconnect_attempts:
        Consecutive automatic reconnects allowed per peripheral.  When
        exhausted the failure is reported as permanent and the session
        stays ``DISCONNECTED`` until the peripheral is rediscovered.
        The counter resets when the session reaches ``READY``.
    reconnect_initial_delay:
        Backoff delay before the first reconnect attempt.
    reconnect_max_delay:
        Ceiling for the exponential backoff delay.
    reconnect_backoff:
        Multiplier applied to the delay for each further attempt.
    reconnect_jitter:
        Fraction of the delay randomly added or subtracted so that
        several peripherals dropped together do not reconnect in step.
    scan_on_power_on:
        Start scanning automatically when the adapter reports ``ON``.
    scan_timeout:
        Seconds a scan may run without a matching discovery before a
        ``DiscoveryTimeoutError`` is reported and the scan is stopped.
        ``None`` scans until stopped explicitly.
    max_sessions:
        Stop scanning once this many sessions are tracked.  ``None``
        means no limit.
    auto_read:
        Issue a one-shot read for every read-capable characteristic
        found during discovery.
    auto_subscribe:
        Subscribe to every notify-capable characteristic found during
        discovery.
    """

    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    auto_reconnect: bool = True
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_backoff: float = 2.0
    reconnect_jitter: float = 0.1
    scan_on_power_on: bool = True
    scan_timeout: float | None = None
    max_sessions: int | None = None
    auto_read: bool = True
    auto_subscribe: bool = True
