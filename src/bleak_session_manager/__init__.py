"""bleak-session-manager: Concurrent BLE peripheral session manager.

Discovers peripherals that advertise a target service, drives each one
through connection and GATT negotiation on top of bleak, and streams
decoded characteristic values to a presentation listener.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .adapter import Adapter, PowerState, probe_power_state
from .catalog import (
    HEART_RATE_CATALOG,
    HEART_RATE_WITH_BATTERY_CATALOG,
    Capability,
    CharacteristicRole,
    ServiceCatalog,
    normalize_uuid,
)
from .const import (
    BATTERY_LEVEL_UUID,
    BATTERY_SERVICE_UUID,
    BODY_SENSOR_LOCATION_UUID,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    HEART_RATE_CONTROL_POINT_UUID,
    HEART_RATE_MEASUREMENT_UUID,
    HEART_RATE_SERVICE_UUID,
    SessionConfig,
)
from .decoder import (
    BatteryLevel,
    BodySensorLocation,
    DecodeError,
    DecodeErrorReason,
    HeartRateMeasurement,
    ValueDecoder,
    decode,
)
from .errors import (
    CharacteristicDiscoveryFailedError,
    CommandTimeoutError,
    ConnectionFailedError,
    DiscoveryTimeoutError,
    GattOperationError,
    LinkDroppedError,
    RadioUnavailableError,
    ScanFailedError,
    ServiceDiscoveryFailedError,
    SessionError,
    UnknownPeripheralError,
)
from .events import (
    CharacteristicInfo,
    Command,
    CommandKind,
    ErrorReported,
    Notification,
    StateChanged,
    ValueDecoded,
    WriteCompleted,
)
from .recovery import ReconnectPolicy
from .registry import SessionRegistry
from .scheduler import CommandScheduler, IssueResult, IssueStatus
from .session import ConnectionState, PeripheralSession
from .transport import BleakTransport, RadioTransport

__all__ = [
    # Registry and sessions
    "SessionRegistry",
    "PeripheralSession",
    "ConnectionState",
    "SessionConfig",
    # Transport
    "RadioTransport",
    "BleakTransport",
    # Adapter
    "Adapter",
    "PowerState",
    "probe_power_state",
    # Service catalog
    "ServiceCatalog",
    "Capability",
    "CharacteristicRole",
    "HEART_RATE_CATALOG",
    "HEART_RATE_WITH_BATTERY_CATALOG",
    "normalize_uuid",
    # Command scheduling
    "CommandScheduler",
    "Command",
    "CommandKind",
    "IssueResult",
    "IssueStatus",
    # Reconnect
    "ReconnectPolicy",
    # Decoding
    "ValueDecoder",
    "decode",
    "DecodeError",
    "DecodeErrorReason",
    "HeartRateMeasurement",
    "BodySensorLocation",
    "BatteryLevel",
    # Notifications
    "Notification",
    "StateChanged",
    "ValueDecoded",
    "WriteCompleted",
    "ErrorReported",
    "CharacteristicInfo",
    # Errors
    "SessionError",
    "RadioUnavailableError",
    "DiscoveryTimeoutError",
    "ScanFailedError",
    "ConnectionFailedError",
    "ServiceDiscoveryFailedError",
    "CharacteristicDiscoveryFailedError",
    "CommandTimeoutError",
    "GattOperationError",
    "UnknownPeripheralError",
    "LinkDroppedError",
    # Constants
    "DEFAULT_COMMAND_TIMEOUT",
    "DEFAULT_CONNECT_TIMEOUT",
    "HEART_RATE_SERVICE_UUID",
    "HEART_RATE_MEASUREMENT_UUID",
    "BODY_SENSOR_LOCATION_UUID",
    "HEART_RATE_CONTROL_POINT_UUID",
    "BATTERY_SERVICE_UUID",
    "BATTERY_LEVEL_UUID",
]
