"""Session registry: routes radio events to peripheral sessions.

The registry owns every :class:`PeripheralSession`, keyed by peripheral
identity, and is the single consumer of the event channel.  Transports
(and the registry's own timers) :meth:`~SessionRegistry.post` events;
:meth:`~SessionRegistry.run` takes them off the channel one at a time
and dispatches them, so all session state is mutated from one ordered
stream and needs no locking.

Responsibilities:

- create a session on the first matching discovery, at most one per
  identity, and drop events addressed to unknown identities;
- gate scan and connect on the adapter's power state;
- start and stop scanning (on power changes, on ``max_sessions``, on
  ``scan_timeout`` or on request);
- feed command timeouts back into the owning session as events;
- schedule bounded automatic reconnects through
  :class:`~bleak_session_manager.recovery.ReconnectPolicy`.

Usage::

    registry = SessionRegistry(listener=print)
    transport = BleakTransport.for_registry(registry)
    transport.open()
    await registry.run()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Iterator
from types import MappingProxyType

from .adapter import Adapter, PowerState
from .catalog import HEART_RATE_CATALOG, ServiceCatalog
from .const import SessionConfig
from .decoder import ValueDecoder
from .errors import (
    ConnectionFailedError,
    DiscoveryTimeoutError,
    RadioUnavailableError,
    ScanFailedError,
    SessionError,
    UnknownPeripheralError,
)
from .events import (
    CharacteristicInfo,
    CharacteristicsDiscovered,
    CommandTimedOut,
    ConnectResult,
    Disconnected,
    ErrorReported,
    Notification,
    NotificationStateUpdated,
    PeripheralDiscovered,
    PowerStateChanged,
    RadioEvent,
    ReconnectDue,
    ScanFailed,
    ScanTimedOut,
    ServicesDiscovered,
    StateChanged,
    ValueUpdated,
    WriteAcknowledged,
)
from .recovery import ReconnectPolicy
from .scheduler import CommandScheduler, IssueResult, IssueStatus, PendingCommand
from .session import ConnectionState, PeripheralSession
from .transport import RadioTransport

_LOGGER = logging.getLogger(__name__)

Listener = Callable[[Notification], None]


class SessionRegistry:
    """Track concurrently discovered peripherals and route their events.

    Parameters
    ----------
    transport:
        Command sink.  May be attached later with :meth:`attach` when
        the transport itself needs :meth:`post` at construction time.
    adapter:
        The local radio.  A fresh :class:`Adapter` if omitted.
    catalog:
        Target services and characteristic roles.  Defaults to the
        Heart Rate profile.
    decoder:
        Payload decoder.  Defaults to the built-in decoder table.
    config:
        Timeouts, reconnect and scan behaviour.
    listener:
        Presentation callback receiving :class:`Notification` objects.
    reconnect_policy:
        Overrides the policy built from *config*.
    loop:
        Event loop for timers.  Defaults to the running loop.
    """

    def __init__(
        self,
        transport: RadioTransport | None = None,
        *,
        adapter: Adapter | None = None,
        catalog: ServiceCatalog | None = None,
        decoder: ValueDecoder | None = None,
        config: SessionConfig | None = None,
        listener: Listener | None = None,
        reconnect_policy: ReconnectPolicy | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._adapter = adapter or Adapter()
        self._catalog = catalog or HEART_RATE_CATALOG
        self._decoder = decoder or ValueDecoder()
        self._config = config or SessionConfig()
        self._listener = listener
        self._policy = reconnect_policy or ReconnectPolicy.from_config(self._config)
        self._loop = loop
        self._transport: RadioTransport | None = None
        self._scheduler: CommandScheduler | None = None
        self._sessions: dict[str, PeripheralSession] = {}
        self._queue: asyncio.Queue[RadioEvent] = asyncio.Queue()
        self._reconnects: dict[str, asyncio.TimerHandle] = {}
        self._scanning = False
        self._scan_generation = 0
        self._scan_found = False
        self._scan_timer: asyncio.TimerHandle | None = None
        self._running = False
        self._handlers: dict[type, Callable[[RadioEvent], None]] = {
            PowerStateChanged: lambda e: self.on_power_state_changed(e.state),
            PeripheralDiscovered: lambda e: self.on_discovered(
                e.identity, e.advertised_services, e.rssi
            ),
            ConnectResult: lambda e: self.on_connect_event(
                e.identity, e.success, e.error
            ),
            ServicesDiscovered: lambda e: self.on_services_discovered(
                e.identity, e.services, e.error
            ),
            CharacteristicsDiscovered: lambda e: self.on_characteristics_discovered(
                e.identity, e.service, e.characteristics, e.error
            ),
            ValueUpdated: lambda e: self.on_value_update(
                e.identity, e.characteristic, e.payload, e.error
            ),
            WriteAcknowledged: lambda e: self.on_write_ack(
                e.identity, e.characteristic, e.error
            ),
            NotificationStateUpdated: lambda e: self.on_notification_state(
                e.identity, e.characteristic, e.enabled, e.error
            ),
            Disconnected: lambda e: self.on_disconnected(e.identity, e.error),
            CommandTimedOut: self._on_command_timed_out,
            ReconnectDue: self._on_reconnect_due,
            ScanTimedOut: self._on_scan_timed_out,
            ScanFailed: self._on_scan_failed,
        }
        if transport is not None:
            self.attach(transport)

    def attach(self, transport: RadioTransport) -> None:
        """Set the command sink and build the command scheduler for it."""
        if self._scheduler is not None:
            self._scheduler.close()
        self._transport = transport
        self._scheduler = CommandScheduler(
            transport,
            timeout=self._config.command_timeout,
            on_timeout=self._on_scheduler_timeout,
            loop=self._loop,
        )

    # ── read-only views ────────────────────────────────────────────

    @property
    def adapter(self) -> Adapter:
        return self._adapter

    @property
    def catalog(self) -> ServiceCatalog:
        return self._catalog

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def scheduler(self) -> CommandScheduler:
        if self._scheduler is None:
            raise RuntimeError("No transport attached")
        return self._scheduler

    @property
    def sessions(self) -> MappingProxyType[str, PeripheralSession]:
        return MappingProxyType(self._sessions)

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def get(self, identity: str) -> PeripheralSession | None:
        return self._sessions.get(identity)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, identity: object) -> bool:
        return identity in self._sessions

    def __iter__(self) -> Iterator[PeripheralSession]:
        return iter(list(self._sessions.values()))

    # ── event channel ──────────────────────────────────────────────

    def post(self, event: RadioEvent) -> None:
        """Enqueue an event.  Safe to call from transport callbacks."""
        self._queue.put_nowait(event)

    def dispatch(self, event: RadioEvent) -> None:
        """Process one event immediately."""
        handler = self._handlers.get(type(event))
        if handler is None:
            _LOGGER.warning("No handler for event %r", event)
            return
        handler(event)

    def drain(self) -> int:
        """Dispatch every queued event without waiting.  Returns the count."""
        count = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            if event is _STOP:
                continue
            self.dispatch(event)
            count += 1

    async def run(self) -> None:
        """Consume the event channel until :meth:`stop` is called."""
        self._running = True
        try:
            while self._running:
                event = await self._queue.get()
                if event is _STOP:
                    break
                self.dispatch(event)
        finally:
            self._running = False

    def stop(self) -> None:
        """Make :meth:`run` return after the events already queued."""
        self.post(_STOP)

    def close(self) -> None:
        """Stop scanning, release every session and cancel all timers."""
        self.stop_scan()
        for handle in self._reconnects.values():
            handle.cancel()
        self._reconnects.clear()
        for session in list(self._sessions.values()):
            session.close()
        self._sessions.clear()
        if self._scheduler is not None:
            self._scheduler.close()

    # ── scan lifecycle ─────────────────────────────────────────────

    def start_scan(self) -> None:
        """Start scanning for the catalog's services.

        Raises :class:`RadioUnavailableError` if the adapter is not on.
        """
        if not self._adapter.is_powered:
            raise RadioUnavailableError(
                f"Cannot scan: adapter is {self._adapter.power_state.value}"
            )
        self._start_scan()

    def _start_scan(self) -> None:
        if self._scanning:
            return
        transport = self._require_transport()
        transport.start_scan(self._catalog.service_filter)
        self._scanning = True
        self._scan_found = False
        self._scan_generation += 1
        _LOGGER.debug("Scan started (filter=%s)", self._catalog.service_filter)
        if self._config.scan_timeout is not None:
            self._scan_timer = self._get_loop().call_later(
                self._config.scan_timeout,
                self.post,
                ScanTimedOut(self._scan_generation),
            )

    def stop_scan(self) -> None:
        if self._scan_timer is not None:
            self._scan_timer.cancel()
            self._scan_timer = None
        if not self._scanning:
            return
        self._scanning = False
        if self._transport is not None and self._adapter.is_powered:
            self._transport.stop_scan()
        _LOGGER.debug("Scan stopped")

    def _on_scan_timed_out(self, event: ScanTimedOut) -> None:
        if not self._scanning or event.generation != self._scan_generation:
            return
        self._scan_timer = None
        if self._scan_found:
            return
        _LOGGER.warning(
            "No matching peripheral found within %.1f s", self._config.scan_timeout
        )
        self.stop_scan()
        self._emit(
            ErrorReported(
                None,
                DiscoveryTimeoutError(
                    f"No matching peripheral found within "
                    f"{self._config.scan_timeout} s"
                ),
            )
        )

    def _on_scan_failed(self, event: ScanFailed) -> None:
        if not self._scanning:
            return
        if self._scan_timer is not None:
            self._scan_timer.cancel()
            self._scan_timer = None
        self._scanning = False
        self._emit(
            ErrorReported(None, ScanFailedError(f"Scan failed to start: {event.error}"))
        )

    # ── inbound radio events ───────────────────────────────────────

    def on_power_state_changed(self, state: PowerState) -> None:
        was_powered = self._adapter.is_powered
        if not self._adapter.apply_power_state(state):
            return
        if self._adapter.is_powered:
            _LOGGER.info("Adapter powered on")
            if self._config.scan_on_power_on and not self._scan_full():
                self._start_scan()
            for session in list(self._sessions.values()):
                if session.state is ConnectionState.DISCOVERED:
                    self._connect(session)
            return
        if not was_powered:
            return

        _LOGGER.warning("Adapter no longer powered (%s)", state.value)
        if self._scan_timer is not None:
            self._scan_timer.cancel()
            self._scan_timer = None
        if self._scanning and self._transport is not None:
            self._transport.stop_scan()
        self._scanning = False
        for handle in self._reconnects.values():
            handle.cancel()
        self._reconnects.clear()
        for session in list(self._sessions.values()):
            session.drop(
                RadioUnavailableError(
                    f"{session.identity}: adapter is {state.value}", session.identity
                )
            )

    def on_discovered(
        self,
        identity: str,
        advertised_services: Iterable[str] = (),
        rssi: int | None = None,
    ) -> PeripheralSession | None:
        advertised = tuple(advertised_services)
        if not self._catalog.matches(advertised):
            _LOGGER.debug("%s: Advertisement does not match service filter", identity)
            return None

        session = self._sessions.get(identity)
        if session is None:
            if self._scan_full():
                _LOGGER.debug("%s: Session limit reached, ignoring", identity)
                return None
            session = PeripheralSession(
                identity,
                catalog=self._catalog,
                scheduler=self.scheduler,
                decoder=self._decoder,
                notify=self._emit,
                config=self._config,
                on_lost=self._on_session_lost,
            )
            self._sessions[identity] = session
            _LOGGER.info("%s: Discovered (rssi=%s)", identity, rssi)

        self._scan_found = True
        if session.on_discovered(advertised, rssi):
            self._cancel_reconnect(identity)
            self._connect(session)
        if self._scanning and self._scan_full():
            _LOGGER.debug("Session limit reached, stopping scan")
            self.stop_scan()
        return session

    def on_connect_event(
        self, identity: str, success: bool, error: str | None = None
    ) -> None:
        session = self._lookup(identity, "connect result")
        if session is not None:
            session.on_connect_result(success, error)

    def on_services_discovered(
        self, identity: str, services: Iterable[str], error: str | None = None
    ) -> None:
        session = self._lookup(identity, "services discovered")
        if session is not None:
            session.on_services_discovered(services, error)

    def on_characteristics_discovered(
        self,
        identity: str,
        service: str,
        characteristics: Iterable[CharacteristicInfo],
        error: str | None = None,
    ) -> None:
        session = self._lookup(identity, "characteristics discovered")
        if session is not None:
            session.on_characteristics_discovered(service, characteristics, error)

    def on_value_update(
        self,
        identity: str,
        characteristic: str,
        payload: bytes,
        error: str | None = None,
    ) -> None:
        session = self._lookup(identity, "value update")
        if session is not None:
            session.on_value_updated(characteristic, payload, error)

    def on_write_ack(
        self, identity: str, characteristic: str, error: str | None = None
    ) -> None:
        session = self._lookup(identity, "write acknowledgement")
        if session is not None:
            session.on_write_acknowledged(characteristic, error)

    def on_notification_state(
        self,
        identity: str,
        characteristic: str,
        enabled: bool,
        error: str | None = None,
    ) -> None:
        session = self._lookup(identity, "notification state")
        if session is not None:
            session.on_notification_state(characteristic, enabled, error)

    def on_disconnected(self, identity: str, error: str | None = None) -> None:
        session = self._lookup(identity, "disconnect")
        if session is not None:
            session.on_disconnected(error)

    # ── caller requests ────────────────────────────────────────────

    def read(self, identity: str, characteristic: str) -> IssueResult:
        session = self._sessions.get(identity)
        if session is None:
            return IssueResult(IssueStatus.REJECTED, "unknown peripheral")
        return session.read(characteristic)

    def write(
        self,
        identity: str,
        characteristic: str,
        payload: bytes,
        require_ack: bool = True,
    ) -> IssueResult:
        """Write arbitrary bytes; only transport-level ack/error is reported."""
        session = self._sessions.get(identity)
        if session is None:
            return IssueResult(IssueStatus.REJECTED, "unknown peripheral")
        return session.write(characteristic, payload, require_ack=require_ack)

    def forget(self, identity: str) -> bool:
        """Disconnect a peripheral and drop its session."""
        session = self._sessions.pop(identity, None)
        if session is None:
            return False
        self._cancel_reconnect(identity)
        self._policy.forget(identity)
        session.close()
        _LOGGER.info("%s: Forgotten", identity)
        return True

    # ── internals ──────────────────────────────────────────────────

    def _lookup(self, identity: str, what: str) -> PeripheralSession | None:
        session = self._sessions.get(identity)
        if session is None:
            _LOGGER.debug(
                "%s",
                UnknownPeripheralError(
                    f"{identity}: {what} for unknown peripheral", identity
                ),
            )
        return session

    def _connect(self, session: PeripheralSession) -> None:
        if not self._adapter.is_powered:
            self._emit(
                ErrorReported(
                    session.identity,
                    RadioUnavailableError(
                        f"{session.identity}: cannot connect, adapter is "
                        f"{self._adapter.power_state.value}",
                        session.identity,
                    ),
                )
            )
            return
        session.connect()

    def _scan_full(self) -> bool:
        limit = self._config.max_sessions
        return limit is not None and len(self._sessions) >= limit

    def _on_scheduler_timeout(self, pending: PendingCommand) -> None:
        self.post(CommandTimedOut(pending.command.identity, pending.command))

    def _on_command_timed_out(self, event: CommandTimedOut) -> None:
        session = self._lookup(event.identity, "command timeout")
        if session is not None:
            session.on_command_timeout(event.command)

    def _on_session_lost(self, session: PeripheralSession, error: SessionError) -> None:
        if not self._config.auto_reconnect or not self._adapter.is_powered:
            return
        identity = session.identity
        delay = self._policy.on_failure(identity)
        if delay is None:
            _LOGGER.warning(
                "%s: Giving up after %d reconnect attempts",
                identity,
                self._policy.max_attempts,
            )
            self._emit(
                ErrorReported(
                    identity,
                    ConnectionFailedError(
                        f"{identity}: giving up after "
                        f"{self._policy.max_attempts} reconnect attempts: {error}",
                        identity,
                        reason=str(error),
                        permanent=True,
                    ),
                )
            )
            return
        _LOGGER.debug(
            "%s: Reconnect %d/%d in %.2f s",
            identity,
            self._policy.failure_count(identity),
            self._policy.max_attempts,
            delay,
        )
        self._cancel_reconnect(identity)
        self._reconnects[identity] = self._get_loop().call_later(
            delay, self.post, ReconnectDue(identity)
        )

    def _on_reconnect_due(self, event: ReconnectDue) -> None:
        self._reconnects.pop(event.identity, None)
        session = self._sessions.get(event.identity)
        if session is None or session.state is not ConnectionState.DISCONNECTED:
            return
        self._connect(session)

    def _cancel_reconnect(self, identity: str) -> None:
        handle = self._reconnects.pop(identity, None)
        if handle is not None:
            handle.cancel()

    def _emit(self, notification: Notification) -> None:
        if (
            isinstance(notification, StateChanged)
            and notification.state is ConnectionState.READY
        ):
            self._policy.on_success(notification.identity)
        if self._listener is None:
            return
        try:
            self._listener(notification)
        except Exception:
            _LOGGER.exception("Listener failed on %r", notification)

    def _require_transport(self) -> RadioTransport:
        if self._transport is None:
            raise RuntimeError("No transport attached")
        return self._transport

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()


# Sentinel that makes run() return
_STOP = RadioEvent()
