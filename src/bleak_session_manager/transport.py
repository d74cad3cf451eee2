"""Radio transport: the command sink the session core talks to.

:class:`RadioTransport` is the boundary.  Every method is
fire-and-forget: it returns immediately and the outcome arrives later
as a radio event posted to the registry's event channel.

:class:`BleakTransport` implements the protocol on top of bleak:

- scanning via ``BleakScanner`` with a detection callback,
- a single connection attempt via
  ``bleak_retry_connector.establish_connection(max_attempts=1)`` (the
  session owns the retry policy, so the connector must not retry),
- GATT reads, writes and notifications via ``BleakClient``.

Each bleak coroutine runs as a tracked task; exceptions are caught and
turned into error-bearing events rather than propagated.

At most one connect attempt per peripheral is live.  ``disconnect`` or
a newer ``connect`` cancels the pending one, and a link that comes up
for an abandoned attempt is released instead of reported.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .adapter import Adapter, probe_power_state
from .catalog import normalize_uuid
from .const import DEFAULT_CONNECT_TIMEOUT, DISCONNECT_TIMEOUT
from .events import (
    CharacteristicInfo,
    CharacteristicsDiscovered,
    ConnectResult,
    Disconnected,
    NotificationStateUpdated,
    PeripheralDiscovered,
    PowerStateChanged,
    RadioEvent,
    ScanFailed,
    ServicesDiscovered,
    ValueUpdated,
    WriteAcknowledged,
)

if TYPE_CHECKING:
    from .registry import SessionRegistry

_LOGGER = logging.getLogger(__name__)

try:
    from bleak_retry_connector import establish_connection as _brc_establish_connection
except ImportError as _exc:
    raise ImportError(
        "bleak-retry-connector is required: pip install bleak-retry-connector"
    ) from _exc

# Errors bleak raises for transport-level failures
_TRANSPORT_ERRORS = (BleakError, asyncio.TimeoutError, EOFError, BrokenPipeError)


class RadioTransport(Protocol):
    """Outbound command sink.  Results arrive as radio events."""

    def start_scan(self, service_filter: tuple[str, ...]) -> None: ...

    def stop_scan(self) -> None: ...

    def connect(self, identity: str) -> None: ...

    def disconnect(self, identity: str) -> None: ...

    def discover_services(
        self, identity: str, service_filter: tuple[str, ...] | None
    ) -> None: ...

    def discover_characteristics(
        self,
        identity: str,
        service: str,
        characteristic_filter: tuple[str, ...] | None,
    ) -> None: ...

    def read_value(self, identity: str, characteristic: str) -> None: ...

    def write_value(
        self, identity: str, characteristic: str, payload: bytes, require_ack: bool
    ) -> None: ...

    def subscribe(self, identity: str, characteristic: str) -> None: ...


class BleakTransport:
    """A :class:`RadioTransport` backed by bleak.

    Parameters
    ----------
    post:
        Callable that enqueues a radio event, normally
        :meth:`SessionRegistry.post`.
    adapter:
        The local adapter.  Its name is passed to bleak as the
        ``adapter`` keyword when set.
    connect_timeout:
        Per-attempt timeout handed to bleak-retry-connector.  Keep it
        equal to ``SessionConfig.connect_timeout``; :meth:`for_registry`
        does this.
    """

    def __init__(
        self,
        post: Callable[[RadioEvent], None],
        adapter: Adapter | None = None,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        **scanner_kwargs: Any,
    ) -> None:
        self._post = post
        self._adapter = adapter or Adapter()
        self._connect_timeout = connect_timeout
        self._scanner_kwargs = scanner_kwargs
        self._scanner: BleakScanner | None = None
        self._devices: dict[str, BLEDevice] = {}
        self._clients: dict[str, BleakClient] = {}
        self._connecting: dict[str, asyncio.Task[None]] = {}
        self._closing: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def for_registry(
        cls, registry: SessionRegistry, **scanner_kwargs: Any
    ) -> BleakTransport:
        """Create a transport for *registry* and attach it.

        The transport posts into the registry's event channel and uses
        the registry's adapter and ``connect_timeout``.
        """
        transport = cls(
            registry.post,
            registry.adapter,
            connect_timeout=registry.config.connect_timeout,
            **scanner_kwargs,
        )
        registry.attach(transport)
        return transport

    # ── lifecycle ──────────────────────────────────────────────────

    def open(self) -> None:
        """Report the adapter's initial power state."""
        self._post(PowerStateChanged(probe_power_state(self._adapter.name)))

    async def close(self) -> None:
        """Stop scanning, abandon pending connects, disconnect every client."""
        if self._scanner is not None:
            scanner, self._scanner = self._scanner, None
            try:
                await scanner.stop()
            except _TRANSPORT_ERRORS:
                _LOGGER.debug("Scanner stop failed during close", exc_info=True)
        for identity in list(self._connecting):
            self._cancel_connect(identity)
        for identity in list(self._clients):
            await self._disconnect(identity)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _spawn(self, coro: Any) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _bleak_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = dict(self._scanner_kwargs)
        if self._adapter.name is not None:
            kwargs.setdefault("adapter", self._adapter.name)
        return kwargs

    # ── scanning ───────────────────────────────────────────────────

    def start_scan(self, service_filter: tuple[str, ...]) -> None:
        if self._scanner is not None:
            return
        self._scanner = BleakScanner(
            detection_callback=self._on_detection,
            service_uuids=list(service_filter) or None,
            **self._bleak_kwargs(),
        )
        self._spawn(self._start_scanner(self._scanner))

    async def _start_scanner(self, scanner: BleakScanner) -> None:
        try:
            await scanner.start()
            _LOGGER.debug("Scanner started")
        except _TRANSPORT_ERRORS as exc:
            _LOGGER.warning("Failed to start scanner: %s", exc)
            if self._scanner is scanner:
                self._scanner = None
                self._post(ScanFailed(str(exc)))

    def stop_scan(self) -> None:
        if self._scanner is None:
            return
        scanner, self._scanner = self._scanner, None
        self._spawn(self._stop_scanner(scanner))

    async def _stop_scanner(self, scanner: BleakScanner) -> None:
        try:
            await scanner.stop()
            _LOGGER.debug("Scanner stopped")
        except _TRANSPORT_ERRORS:
            _LOGGER.debug("Scanner stop failed", exc_info=True)

    def _on_detection(
        self, device: BLEDevice, advertisement_data: AdvertisementData
    ) -> None:
        self._devices[device.address] = device
        self._post(
            PeripheralDiscovered(
                identity=device.address,
                advertised_services=tuple(advertisement_data.service_uuids or ()),
                rssi=advertisement_data.rssi,
            )
        )

    # ── link ───────────────────────────────────────────────────────

    def connect(self, identity: str) -> None:
        self._cancel_connect(identity)
        self._connecting[identity] = self._spawn(self._connect(identity))

    def _cancel_connect(self, identity: str) -> None:
        task = self._connecting.pop(identity, None)
        if task is not None and not task.done():
            _LOGGER.debug("%s: Abandoning connect attempt", identity)
            task.cancel()

    def _is_current_attempt(self, identity: str) -> bool:
        return self._connecting.get(identity) is asyncio.current_task()

    async def _connect(self, identity: str) -> None:
        try:
            await self._establish(identity)
        finally:
            if self._is_current_attempt(identity):
                del self._connecting[identity]

    async def _establish(self, identity: str) -> None:
        device = self._devices.get(identity)
        if device is None:
            self._post(
                ConnectResult(identity, success=False, error="device not seen in scan")
            )
            return

        try:
            client = await _brc_establish_connection(
                BleakClient,
                device,
                device.name or identity,
                disconnected_callback=lambda c: self._on_disconnected(identity, c),
                max_attempts=1,
                timeout=self._connect_timeout,
            )
        except asyncio.CancelledError:
            if self._is_current_attempt(identity):
                raise
            return
        except _TRANSPORT_ERRORS as exc:
            if not self._is_current_attempt(identity):
                _LOGGER.debug("%s: Abandoned connect attempt failed: %s", identity, exc)
                return
            _LOGGER.debug("%s: Connect failed: %s", identity, exc, exc_info=True)
            self._post(ConnectResult(identity, success=False, error=str(exc)))
            return

        if not self._is_current_attempt(identity):
            _LOGGER.debug("%s: Releasing link from an abandoned connect attempt", identity)
            await self._release(identity, client)
            return
        self._clients[identity] = client
        self._post(ConnectResult(identity, success=True))

    def _on_disconnected(self, identity: str, client: BleakClient) -> None:
        if self._clients.get(identity) is not client:
            _LOGGER.debug("%s: Ignoring disconnect of a stale client", identity)
            return
        del self._clients[identity]
        requested = identity in self._closing
        self._closing.discard(identity)
        self._post(Disconnected(identity, error=None if requested else "link lost"))

    def disconnect(self, identity: str) -> None:
        self._cancel_connect(identity)
        if identity not in self._clients:
            return
        self._spawn(self._disconnect(identity))

    async def _disconnect(self, identity: str) -> None:
        client = self._clients.get(identity)
        if client is None:
            return
        self._closing.add(identity)
        try:
            await asyncio.wait_for(client.disconnect(), timeout=DISCONNECT_TIMEOUT)
        except _TRANSPORT_ERRORS:
            _LOGGER.debug("%s: Disconnect failed", identity, exc_info=True)
            self._closing.discard(identity)
            self._clients.pop(identity, None)
            self._post(Disconnected(identity, error=None))

    async def _release(self, identity: str, client: BleakClient) -> None:
        try:
            await asyncio.wait_for(client.disconnect(), timeout=DISCONNECT_TIMEOUT)
        except _TRANSPORT_ERRORS:
            _LOGGER.debug("%s: Releasing stale client failed", identity, exc_info=True)

    # ── GATT ───────────────────────────────────────────────────────

    def discover_services(
        self, identity: str, service_filter: tuple[str, ...] | None
    ) -> None:
        client = self._clients.get(identity)
        if client is None:
            self._post(ServicesDiscovered(identity, error="not connected"))
            return
        wanted = set(service_filter or ())
        try:
            services = tuple(
                service.uuid
                for service in client.services
                if not wanted or normalize_uuid(service.uuid) in wanted
            )
        except _TRANSPORT_ERRORS as exc:
            _LOGGER.debug("%s: Service discovery failed", identity, exc_info=True)
            self._post(ServicesDiscovered(identity, error=str(exc)))
            return
        self._post(ServicesDiscovered(identity, services=services))

    def discover_characteristics(
        self,
        identity: str,
        service: str,
        characteristic_filter: tuple[str, ...] | None,
    ) -> None:
        client = self._clients.get(identity)
        if client is None:
            self._post(
                CharacteristicsDiscovered(identity, service, error="not connected")
            )
            return
        try:
            gatt_service = client.services.get_service(service)
        except _TRANSPORT_ERRORS as exc:
            self._post(CharacteristicsDiscovered(identity, service, error=str(exc)))
            return
        if gatt_service is None:
            self._post(
                CharacteristicsDiscovered(identity, service, error="service not found")
            )
            return
        wanted = set(characteristic_filter or ())
        characteristics = tuple(
            CharacteristicInfo(char.uuid, frozenset(char.properties))
            for char in gatt_service.characteristics
            if not wanted or normalize_uuid(char.uuid) in wanted
        )
        self._post(CharacteristicsDiscovered(identity, service, characteristics))

    def read_value(self, identity: str, characteristic: str) -> None:
        self._spawn(self._read(identity, characteristic))

    async def _read(self, identity: str, characteristic: str) -> None:
        client = self._clients.get(identity)
        if client is None:
            self._post(ValueUpdated(identity, characteristic, error="not connected"))
            return
        try:
            data = await client.read_gatt_char(characteristic)
        except _TRANSPORT_ERRORS as exc:
            _LOGGER.debug("%s: Read of %s failed", identity, characteristic, exc_info=True)
            self._post(ValueUpdated(identity, characteristic, error=str(exc)))
            return
        self._post(ValueUpdated(identity, characteristic, bytes(data)))

    def write_value(
        self, identity: str, characteristic: str, payload: bytes, require_ack: bool
    ) -> None:
        self._spawn(self._write(identity, characteristic, payload, require_ack))

    async def _write(
        self, identity: str, characteristic: str, payload: bytes, require_ack: bool
    ) -> None:
        client = self._clients.get(identity)
        error: str | None = None
        if client is None:
            error = "not connected"
        else:
            try:
                await client.write_gatt_char(characteristic, payload, response=require_ack)
            except _TRANSPORT_ERRORS as exc:
                _LOGGER.debug(
                    "%s: Write to %s failed", identity, characteristic, exc_info=True
                )
                error = str(exc)
        if require_ack:
            self._post(WriteAcknowledged(identity, characteristic, error=error))
        elif error is not None:
            _LOGGER.warning(
                "%s: Unacknowledged write to %s failed: %s",
                identity,
                characteristic,
                error,
            )

    def subscribe(self, identity: str, characteristic: str) -> None:
        self._spawn(self._subscribe(identity, characteristic))

    async def _subscribe(self, identity: str, characteristic: str) -> None:
        client = self._clients.get(identity)
        if client is None:
            self._post(
                NotificationStateUpdated(
                    identity, characteristic, enabled=False, error="not connected"
                )
            )
            return

        def _on_notify(_char: BleakGATTCharacteristic, data: bytearray) -> None:
            self._post(ValueUpdated(identity, characteristic, bytes(data)))

        try:
            await client.start_notify(characteristic, _on_notify)
        except _TRANSPORT_ERRORS as exc:
            _LOGGER.debug(
                "%s: Subscribe to %s failed", identity, characteristic, exc_info=True
            )
            self._post(
                NotificationStateUpdated(
                    identity, characteristic, enabled=False, error=str(exc)
                )
            )
            return
        self._post(NotificationStateUpdated(identity, characteristic, enabled=True))
