"""Per-peripheral connection and GATT negotiation state machine.

A :class:`PeripheralSession` tracks one remote device from discovery to
streaming data::

    DISCOVERED -> CONNECTING -> CONNECTED -> DISCOVERING_SERVICES
        -> DISCOVERING_CHARACTERISTICS -> READY

Any non-terminal state drops to ``DISCONNECTED`` on a link loss or a
failed step.  ``DISCONNECTED`` is re-entered into ``DISCOVERED`` when
the peripheral is seen again, or into ``CONNECTING`` when an automatic
reconnect fires.

Sessions never block: every step issues a command through the
:class:`~bleak_session_manager.scheduler.CommandScheduler` and returns.
The outcome arrives later as another event.  An event that makes no
sense for the current state (e.g. characteristics before a connection)
is ignored with a debug log.

Sessions are not thread-safe and need no locks: the registry delivers
every event for a peripheral serially from one event channel.
"""

from __future__ import annotations

import logging
import weakref
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from .catalog import (
    Capability,
    CharacteristicRole,
    ServiceCatalog,
    capabilities_from_properties,
    uuid_key,
)
from .const import SessionConfig
from .decoder import ValueDecoder
from .errors import (
    CharacteristicDiscoveryFailedError,
    CommandTimeoutError,
    ConnectionFailedError,
    GattOperationError,
    LinkDroppedError,
    ServiceDiscoveryFailedError,
    SessionError,
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
from .scheduler import CommandScheduler, IssueResult, IssueStatus

_LOGGER = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle states of a peripheral session."""

    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCOVERING_SERVICES = "discovering_services"
    DISCOVERING_CHARACTERISTICS = "discovering_characteristics"
    READY = "ready"
    DISCONNECTED = "disconnected"


_S = ConnectionState

_VALID_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    _S.DISCOVERED: frozenset({_S.CONNECTING, _S.DISCONNECTED}),
    _S.CONNECTING: frozenset({_S.CONNECTED, _S.DISCONNECTED}),
    _S.CONNECTED: frozenset({_S.DISCOVERING_SERVICES, _S.DISCONNECTED}),
    _S.DISCOVERING_SERVICES: frozenset(
        {_S.DISCOVERING_CHARACTERISTICS, _S.DISCONNECTED}
    ),
    _S.DISCOVERING_CHARACTERISTICS: frozenset({_S.READY, _S.DISCONNECTED}),
    _S.READY: frozenset({_S.DISCONNECTED}),
    _S.DISCONNECTED: frozenset({_S.DISCOVERED, _S.CONNECTING}),
}

# States in which the transport may hold a link (or a pending link)
_LINK_STATES = frozenset(
    {
        _S.CONNECTING,
        _S.CONNECTED,
        _S.DISCOVERING_SERVICES,
        _S.DISCOVERING_CHARACTERISTICS,
        _S.READY,
    }
)

# States in which value traffic is expected
_GATT_STATES = frozenset({_S.DISCOVERING_CHARACTERISTICS, _S.READY})


@dataclass(eq=False)
class Service:
    """A discovered GATT service.  Holds only a weak link to its session."""

    uuid: str
    _session_ref: weakref.ReferenceType = field(repr=False)
    characteristics: dict[str, Characteristic] = field(default_factory=dict, repr=False)

    @property
    def session(self) -> PeripheralSession | None:
        return self._session_ref()


@dataclass(eq=False)
class Characteristic:
    """A discovered characteristic and its last known raw value."""

    uuid: str
    capabilities: frozenset[Capability]
    role: CharacteristicRole
    _service_ref: weakref.ReferenceType = field(repr=False)
    last_value: bytes | None = None

    @property
    def service(self) -> Service | None:
        return self._service_ref()

    @property
    def readable(self) -> bool:
        return Capability.READ in self.capabilities

    @property
    def writable(self) -> bool:
        return Capability.WRITE in self.capabilities

    @property
    def notifiable(self) -> bool:
        return Capability.NOTIFY in self.capabilities


class PeripheralSession:
    """Drive one peripheral through connection and GATT negotiation.

    Parameters
    ----------
    identity:
        Stable peripheral identifier (address or platform UUID).
    catalog:
        Service filter and characteristic classification.
    scheduler:
        Command scheduler shared by every session of a registry.
    decoder:
        Payload decoder used on value updates.
    notify:
        Presentation callback receiving every :class:`Notification`.
    config:
        Timeouts and automatic read/subscribe switches.
    on_lost:
        Called with ``(session, error)`` after the session fell to
        ``DISCONNECTED`` because of a failure or an unexpected link
        drop.  The registry uses it to schedule reconnects.
    """

    def __init__(
        self,
        identity: str,
        *,
        catalog: ServiceCatalog,
        scheduler: CommandScheduler,
        decoder: ValueDecoder,
        notify: Callable[[Notification], None],
        config: SessionConfig | None = None,
        on_lost: Callable[[PeripheralSession, SessionError], None] | None = None,
    ) -> None:
        self._identity = identity
        self._catalog = catalog
        self._scheduler = scheduler
        self._decoder = decoder
        self._notify = notify
        self._config = config or SessionConfig()
        self._on_lost = on_lost
        self._state: ConnectionState | None = None
        self.services: dict[str, Service] = {}
        self.characteristics: dict[str, Characteristic] = {}
        self.subscriptions: set[str] = set()
        self.advertised_services: tuple[str, ...] = ()
        self.rssi: int | None = None
        self.last_error: SessionError | None = None
        self._awaiting: set[str] = set()
        self._negotiated: set[str] = set()

    def __repr__(self) -> str:
        state = self._state.value if self._state is not None else None
        return f"PeripheralSession({self._identity!r}, state={state})"

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def state(self) -> ConnectionState | None:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is _S.READY

    @property
    def is_linked(self) -> bool:
        """Return whether the transport may hold a link for this session."""
        return self._state in _LINK_STATES

    # ── discovery and connection ───────────────────────────────────

    def on_discovered(
        self, advertised_services: Iterable[str] = (), rssi: int | None = None
    ) -> bool:
        """Handle an advertisement.

        Returns ``True`` if the pipeline (re)started, i.e. the session
        entered ``DISCOVERED`` and should now be connected.  Repeated
        advertisements while a session is active only refresh the RSSI.
        """
        self.rssi = rssi
        self.advertised_services = tuple(advertised_services)
        if self._state is not None and self._state is not _S.DISCONNECTED:
            return False
        self._clear_gatt()
        self._transition(_S.DISCOVERED)
        return True

    def connect(self) -> bool:
        """Issue ``connect`` from ``DISCOVERED`` or ``DISCONNECTED``."""
        if self._state not in (_S.DISCOVERED, _S.DISCONNECTED):
            self._ignore("connect request")
            return False
        result = self._issue(
            Command.connect(self._identity), timeout=self._config.connect_timeout
        )
        if result.rejected:
            return False
        self._transition(_S.CONNECTING)
        return True

    def on_connect_result(self, success: bool, error: str | None = None) -> None:
        if self._state is not _S.CONNECTING:
            self._ignore("connect result")
            if success and not self.is_linked:
                # The link came up after this session gave up on it
                self._issue(Command.disconnect(self._identity))
            return
        self._scheduler.complete(self._identity, None, CommandKind.CONNECT)
        if not success:
            self._fail(
                ConnectionFailedError(
                    f"{self._identity}: connection failed: {error}",
                    self._identity,
                    reason=error,
                ),
                teardown=False,
            )
            return
        _LOGGER.info("%s: Connected", self._identity)
        self._transition(_S.CONNECTED)
        self._issue(
            Command.discover_services(
                self._identity, self._catalog.service_filter or None
            )
        )

    # ── GATT negotiation ───────────────────────────────────────────

    def on_services_discovered(
        self, services: Iterable[str], error: str | None = None
    ) -> None:
        if self._state is not _S.CONNECTED:
            self._ignore("services discovered")
            return
        self._scheduler.complete(self._identity, None, CommandKind.DISCOVER_SERVICES)
        if error is not None:
            self._fail(
                ServiceDiscoveryFailedError(
                    f"{self._identity}: service discovery failed: {error}",
                    self._identity,
                ),
                teardown=True,
            )
            return

        wanted = list(
            dict.fromkeys(
                uuid_key(s) for s in services if self._catalog.wants_service(s)
            )
        )
        if not wanted:
            self._fail(
                ServiceDiscoveryFailedError(
                    f"{self._identity}: no matching services", self._identity
                ),
                teardown=True,
            )
            return

        ref = weakref.ref(self)
        self.services = {uuid: Service(uuid, ref) for uuid in wanted}
        self._awaiting = set(wanted)
        self._negotiated = set()
        self._transition(_S.DISCOVERING_SERVICES)
        for uuid in wanted:
            self._issue(
                Command.discover_characteristics(
                    self._identity, uuid, self._catalog.characteristic_filter
                )
            )

    def on_characteristics_discovered(
        self,
        service: str,
        characteristics: Iterable[CharacteristicInfo],
        error: str | None = None,
    ) -> None:
        if self._state not in (_S.DISCOVERING_SERVICES, _S.DISCOVERING_CHARACTERISTICS):
            self._ignore("characteristics discovered")
            return
        key = uuid_key(service)
        if key not in self._awaiting:
            _LOGGER.debug(
                "%s: Characteristics for unexpected service %s ignored",
                self._identity,
                key,
            )
            return
        self._scheduler.complete(
            self._identity, key, CommandKind.DISCOVER_CHARACTERISTICS
        )
        self._awaiting.discard(key)

        if self._state is _S.DISCOVERING_SERVICES:
            self._transition(_S.DISCOVERING_CHARACTERISTICS)

        if error is not None:
            self._report(
                CharacteristicDiscoveryFailedError(
                    f"{self._identity}: characteristic discovery failed for "
                    f"{key}: {error}",
                    self._identity,
                    service=key,
                )
            )
        else:
            self._negotiated.add(key)
            owner = self.services[key]
            for info in characteristics:
                self._add_characteristic(owner, info)

        self._advance()

    def _add_characteristic(self, owner: Service, info: CharacteristicInfo) -> None:
        uuid = uuid_key(info.uuid)
        caps = capabilities_from_properties(info.properties)
        char = Characteristic(
            uuid, caps, self._catalog.role_for(uuid), weakref.ref(owner)
        )
        owner.characteristics[uuid] = char
        self.characteristics[uuid] = char
        _LOGGER.debug(
            "%s: Found characteristic %s (%s) caps=%s",
            self._identity,
            uuid,
            char.role.value,
            sorted(c.value for c in caps),
        )

        if not caps:
            return
        if char.readable and self._config.auto_read:
            self._issue(Command.read(self._identity, uuid))
        if char.notifiable and self._config.auto_subscribe:
            self._issue(Command.subscribe(self._identity, uuid))
        if char.writable:
            payload = self._catalog.initial_write_for(uuid)
            if payload is not None:
                self._issue(Command.write(self._identity, uuid, payload))

    def _advance(self) -> None:
        if self._awaiting or self._state is not _S.DISCOVERING_CHARACTERISTICS:
            return
        if not self._negotiated:
            self._fail(
                CharacteristicDiscoveryFailedError(
                    f"{self._identity}: characteristic discovery failed for "
                    "every service",
                    self._identity,
                ),
                teardown=True,
            )
            return
        _LOGGER.info(
            "%s: Ready (%d services, %d characteristics)",
            self._identity,
            len(self._negotiated),
            len(self.characteristics),
        )
        self._transition(_S.READY)

    # ── value traffic ──────────────────────────────────────────────

    def on_value_updated(
        self, characteristic: str, payload: bytes, error: str | None = None
    ) -> None:
        if self._state not in _GATT_STATES:
            self._ignore("value update")
            return
        key = uuid_key(characteristic)
        char = self.characteristics.get(key)
        if char is None:
            _LOGGER.debug(
                "%s: Value for unknown characteristic %s dropped", self._identity, key
            )
            return

        pending = self._scheduler.pending(self._identity, key)
        if pending is not None and pending.kind in (
            CommandKind.READ,
            CommandKind.SUBSCRIBE,
        ):
            self._scheduler.complete(self._identity, key)
            if pending.kind is CommandKind.SUBSCRIBE and error is None:
                self.subscriptions.add(key)

        if error is not None:
            self._report(
                GattOperationError(
                    f"{self._identity}: read of {key} failed: {error}",
                    self._identity,
                    characteristic=key,
                )
            )
            return

        char.last_value = bytes(payload)
        self._notify(
            ValueDecoded(self._identity, key, self._decoder.decode(key, char.last_value))
        )

    def on_write_acknowledged(self, characteristic: str, error: str | None = None) -> None:
        if self._state not in _GATT_STATES:
            self._ignore("write acknowledgement")
            return
        key = uuid_key(characteristic)
        if self._scheduler.complete(self._identity, key, CommandKind.WRITE) is None:
            _LOGGER.debug(
                "%s: Stale write acknowledgement for %s discarded", self._identity, key
            )
            return
        if error is not None:
            _LOGGER.warning("%s: Write to %s failed: %s", self._identity, key, error)
        self._notify(WriteCompleted(self._identity, key, error))

    def on_notification_state(
        self, characteristic: str, enabled: bool, error: str | None = None
    ) -> None:
        if self._state not in _GATT_STATES:
            self._ignore("notification state")
            return
        key = uuid_key(characteristic)
        self._scheduler.complete(self._identity, key, CommandKind.SUBSCRIBE)
        if error is not None:
            self.subscriptions.discard(key)
            self._report(
                GattOperationError(
                    f"{self._identity}: subscribe to {key} failed: {error}",
                    self._identity,
                    characteristic=key,
                )
            )
            return
        if enabled:
            self.subscriptions.add(key)
        else:
            self.subscriptions.discard(key)

    def read(self, characteristic: str) -> IssueResult:
        """Request a one-shot read of a readable characteristic."""
        char = self._usable(characteristic)
        if isinstance(char, IssueResult):
            return char
        if not char.readable:
            return IssueResult(IssueStatus.REJECTED, "characteristic is not readable")
        return self._issue(Command.read(self._identity, char.uuid))

    def write(
        self, characteristic: str, payload: bytes, require_ack: bool = True
    ) -> IssueResult:
        """Write caller-supplied bytes to a writable characteristic.

        Only transport-level acknowledgement is reported; the payload
        itself is not validated.
        """
        char = self._usable(characteristic)
        if isinstance(char, IssueResult):
            return char
        if not char.writable:
            return IssueResult(IssueStatus.REJECTED, "characteristic is not writable")
        return self._issue(
            Command.write(self._identity, char.uuid, payload, require_ack=require_ack)
        )

    def _usable(self, characteristic: str) -> Characteristic | IssueResult:
        if self._state not in _GATT_STATES:
            return IssueResult(
                IssueStatus.REJECTED, f"session is {self._state_name()}"
            )
        char = self.characteristics.get(uuid_key(characteristic))
        if char is None:
            return IssueResult(IssueStatus.REJECTED, "unknown characteristic")
        return char

    # ── failures and teardown ──────────────────────────────────────

    def on_command_timeout(self, command: Command) -> None:
        """Handle a command whose deadline expired (slot already freed)."""
        kind = command.kind
        if kind is CommandKind.CONNECT:
            if self._state is _S.CONNECTING:
                self._fail(
                    ConnectionFailedError(
                        f"{self._identity}: connection timed out",
                        self._identity,
                        reason="timeout",
                    ),
                    teardown=True,
                )
            return
        if kind is CommandKind.DISCOVER_SERVICES:
            if self._state is _S.CONNECTED:
                self._fail(
                    ServiceDiscoveryFailedError(
                        f"{self._identity}: service discovery timed out",
                        self._identity,
                    ),
                    teardown=True,
                )
            return
        if kind is CommandKind.DISCOVER_CHARACTERISTICS:
            if command.target is not None:
                self.on_characteristics_discovered(command.target, (), error="timed out")
            return
        if self._state in _GATT_STATES:
            self._report(
                CommandTimeoutError(
                    f"{self._identity}: {kind.value} on {command.target} timed out",
                    self._identity,
                    command=command,
                )
            )

    def on_disconnected(self, error: str | None = None) -> None:
        """Handle a link-down event.  Idempotent in ``DISCONNECTED``."""
        if self._state is None or self._state is _S.DISCONNECTED:
            return
        self._scheduler.cancel_all(self._identity)
        self._clear_gatt()
        self._transition(_S.DISCONNECTED)
        if error is None:
            _LOGGER.info("%s: Disconnected", self._identity)
            return
        dropped = LinkDroppedError(
            f"{self._identity}: link dropped: {error}", self._identity
        )
        self._report(dropped)
        if self._on_lost is not None:
            self._on_lost(self, dropped)

    def drop(self, error: SessionError) -> None:
        """Force the session to ``DISCONNECTED`` without scheduling a reconnect.

        Used when the radio itself went away.
        """
        if self._state is None or self._state is _S.DISCONNECTED:
            return
        self._scheduler.cancel_all(self._identity)
        self._clear_gatt()
        self._transition(_S.DISCONNECTED)
        self._report(error)

    def close(self) -> None:
        """Cancel outstanding work and release the link, if any."""
        linked = self.is_linked
        self._scheduler.cancel_all(self._identity)
        if linked:
            self._issue(Command.disconnect(self._identity))
        self._clear_gatt()
        if self._state is not None and self._state is not _S.DISCONNECTED:
            self._transition(_S.DISCONNECTED)

    def _fail(self, error: SessionError, *, teardown: bool) -> None:
        linked = self.is_linked
        self._scheduler.cancel_all(self._identity)
        if teardown and linked:
            self._issue(Command.disconnect(self._identity))
        self._clear_gatt()
        self._transition(_S.DISCONNECTED)
        self._report(error)
        if self._on_lost is not None:
            self._on_lost(self, error)

    def _clear_gatt(self) -> None:
        self.services = {}
        self.characteristics = {}
        self.subscriptions = set()
        self._awaiting = set()
        self._negotiated = set()

    # ── helpers ────────────────────────────────────────────────────

    def _issue(self, command: Command, timeout: float | None = None) -> IssueResult:
        result = self._scheduler.issue(command, timeout=timeout)
        if result.rejected:
            _LOGGER.debug(
                "%s: %s on %s rejected: %s",
                self._identity,
                command.kind.value,
                command.target or "link",
                result.reason,
            )
        return result

    def _transition(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        if old_state is not None and new_state not in _VALID_TRANSITIONS[old_state]:
            raise RuntimeError(
                f"{self._identity}: invalid transition "
                f"{old_state.value} -> {new_state.value}"
            )
        self._state = new_state
        _LOGGER.debug(
            "%s: State %s -> %s",
            self._identity,
            old_state.value if old_state is not None else "new",
            new_state.value,
        )
        self._notify(StateChanged(self._identity, new_state, old_state))

    def _report(self, error: SessionError) -> None:
        self.last_error = error
        _LOGGER.debug("%s: %s", self._identity, error)
        self._notify(ErrorReported(self._identity, error))

    def _ignore(self, what: str) -> None:
        _LOGGER.debug(
            "%s: Ignoring %s in state %s", self._identity, what, self._state_name()
        )

    def _state_name(self) -> str:
        return self._state.value if self._state is not None else "new"
