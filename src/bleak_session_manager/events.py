"""Events, commands and notifications exchanged with the session core.

Radio events are inputs: the transport posts them onto the registry's
event channel and the registry routes each one to the addressed session.
Commands are outputs sent to the transport.  Notifications are outputs
for the presentation layer.

All of them are frozen dataclasses: a message-passing design instead of
one object implementing a wide callback interface.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .adapter import PowerState
    from .decoder import DecodeResult
    from .errors import SessionError
    from .session import ConnectionState


@dataclass(frozen=True)
class CharacteristicInfo:
    """A characteristic as reported by characteristic discovery.

    *properties* are GATT property names as reported by bleak
    (``"read"``, ``"notify"``, ``"write-without-response"``, ...).
    """

    uuid: str
    properties: frozenset[str] = field(default_factory=frozenset)


# === Radio events (transport -> registry) ===


@dataclass(frozen=True)
class RadioEvent:
    """Base class for all events on the registry's event channel."""


@dataclass(frozen=True)
class PowerStateChanged(RadioEvent):
    state: PowerState


@dataclass(frozen=True)
class PeripheralDiscovered(RadioEvent):
    identity: str
    advertised_services: tuple[str, ...] = ()
    rssi: int | None = None


@dataclass(frozen=True)
class ConnectResult(RadioEvent):
    identity: str
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class ServicesDiscovered(RadioEvent):
    identity: str
    services: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class CharacteristicsDiscovered(RadioEvent):
    identity: str
    service: str
    characteristics: tuple[CharacteristicInfo, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class ValueUpdated(RadioEvent):
    """A read completed or a notification arrived."""

    identity: str
    characteristic: str
    payload: bytes = b""
    error: str | None = None


@dataclass(frozen=True)
class WriteAcknowledged(RadioEvent):
    identity: str
    characteristic: str
    error: str | None = None


@dataclass(frozen=True)
class NotificationStateUpdated(RadioEvent):
    """A subscribe request completed (CCCD written) or failed."""

    identity: str
    characteristic: str
    enabled: bool = True
    error: str | None = None


@dataclass(frozen=True)
class Disconnected(RadioEvent):
    """The link went down.  ``error`` is ``None`` for a requested disconnect."""

    identity: str
    error: str | None = None


@dataclass(frozen=True)
class ScanFailed(RadioEvent):
    """The transport could not start the scanner it was asked for."""

    error: str | None = None


# === Internal events (timers -> registry) ===


@dataclass(frozen=True)
class CommandTimedOut(RadioEvent):
    identity: str
    command: Command


@dataclass(frozen=True)
class ReconnectDue(RadioEvent):
    identity: str


@dataclass(frozen=True)
class ScanTimedOut(RadioEvent):
    generation: int = 0


# === Commands (session -> transport) ===


class CommandKind(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    DISCOVER_SERVICES = "discover_services"
    DISCOVER_CHARACTERISTICS = "discover_characteristics"
    READ = "read"
    WRITE = "write"
    SUBSCRIBE = "subscribe"


@dataclass(frozen=True)
class Command:
    """One outbound request addressed to a peripheral.

    *target* selects the in-flight slot: the characteristic UUID for
    read / write / subscribe, the service UUID for characteristic
    discovery, ``None`` (the link) for connect and service discovery.
    """

    kind: CommandKind
    identity: str
    target: str | None = None
    payload: bytes | None = None
    require_ack: bool = True
    uuid_filter: tuple[str, ...] | None = None

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.identity, self.target)

    @classmethod
    def connect(cls, identity: str) -> Command:
        return cls(CommandKind.CONNECT, identity)

    @classmethod
    def disconnect(cls, identity: str) -> Command:
        return cls(CommandKind.DISCONNECT, identity)

    @classmethod
    def discover_services(
        cls, identity: str, service_filter: tuple[str, ...] | None = None
    ) -> Command:
        return cls(CommandKind.DISCOVER_SERVICES, identity, uuid_filter=service_filter)

    @classmethod
    def discover_characteristics(
        cls,
        identity: str,
        service: str,
        characteristic_filter: tuple[str, ...] | None = None,
    ) -> Command:
        return cls(
            CommandKind.DISCOVER_CHARACTERISTICS,
            identity,
            target=service,
            uuid_filter=characteristic_filter,
        )

    @classmethod
    def read(cls, identity: str, characteristic: str) -> Command:
        return cls(CommandKind.READ, identity, target=characteristic)

    @classmethod
    def write(
        cls,
        identity: str,
        characteristic: str,
        payload: bytes,
        require_ack: bool = True,
    ) -> Command:
        return cls(
            CommandKind.WRITE,
            identity,
            target=characteristic,
            payload=bytes(payload),
            require_ack=require_ack,
        )

    @classmethod
    def subscribe(cls, identity: str, characteristic: str) -> Command:
        return cls(CommandKind.SUBSCRIBE, identity, target=characteristic)


# === Notifications (core -> presentation) ===


@dataclass(frozen=True)
class Notification:
    """Base class for everything handed to the presentation listener."""


@dataclass(frozen=True)
class StateChanged(Notification):
    identity: str
    state: ConnectionState
    previous: ConnectionState | None = None


@dataclass(frozen=True)
class ValueDecoded(Notification):
    identity: str
    characteristic: str
    result: DecodeResult


@dataclass(frozen=True)
class WriteCompleted(Notification):
    identity: str
    characteristic: str
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ErrorReported(Notification):
    identity: str | None
    error: SessionError

