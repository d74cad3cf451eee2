"""Local radio adapter: power state and presence probing.

The :class:`Adapter` is created once by the caller and passed to the
:class:`~bleak_session_manager.registry.SessionRegistry`.  Its power
state is only ever changed by ``PowerStateChanged`` events coming from
the transport; nothing in the core flips it directly.

Presence probing asks ``bluetooth-adapters`` for the HCI adapters and
falls back to the ``hci*`` entries under ``/sys/class/bluetooth``.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from .const import IS_LINUX

_LOGGER = logging.getLogger(__name__)


class PowerState(str, Enum):
    """Power state reported for the local radio."""

    UNKNOWN = "unknown"
    RESETTING = "resetting"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"
    OFF = "off"
    ON = "on"


class Adapter:
    """The local BLE radio.

    Parameters
    ----------
    name:
        Adapter name handed through to bleak (e.g. ``"hci0"``).  ``None``
        lets bleak pick its default adapter.
    """

    def __init__(self, name: str | None = None) -> None:
        self._name = name
        self._power_state = PowerState.UNKNOWN

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def power_state(self) -> PowerState:
        """Return the last power state reported by the transport."""
        return self._power_state

    @property
    def is_powered(self) -> bool:
        """Return whether radio commands (scan, connect) may be issued."""
        return self._power_state is PowerState.ON

    def apply_power_state(self, state: PowerState) -> bool:
        """Record a transport-reported power state.

        Returns ``True`` if the state changed.
        """
        if state is self._power_state:
            return False
        _LOGGER.debug(
            "Adapter %s power state: %s -> %s",
            self._name or "default",
            self._power_state.value,
            state.value,
        )
        self._power_state = state
        return True

    def __repr__(self) -> str:
        return f"Adapter(name={self._name!r}, power_state={self._power_state.value})"


_SYSFS_BLUETOOTH = Path("/sys/class/bluetooth")


def _present_adapters() -> frozenset[str]:
    """Return the names of the HCI adapters present on this host."""
    try:
        from bluetooth_adapters import get_adapters_from_hci

        found = frozenset(info["name"] for info in get_adapters_from_hci().values())
    except Exception:
        _LOGGER.debug("HCI enumeration via bluetooth-adapters failed", exc_info=True)
        found = frozenset()
    if found:
        return found
    try:
        return frozenset(
            entry.name
            for entry in _SYSFS_BLUETOOTH.iterdir()
            if entry.name.startswith("hci")
        )
    except OSError:
        _LOGGER.debug("Cannot list %s", _SYSFS_BLUETOOTH, exc_info=True)
        return frozenset()


def probe_power_state(name: str | None = None) -> PowerState:
    """Best-effort initial power state for an adapter.

    On Linux the adapter must be present to count as ``ON``; a host
    without any adapter, or without the named one, is ``UNSUPPORTED``.
    Other platforms give no cheap presence check, so the radio is
    assumed ``ON`` and any real problem surfaces later as a transport
    error.
    """
    if not IS_LINUX:
        return PowerState.ON

    present = _present_adapters()
    if not present:
        _LOGGER.warning("No Bluetooth adapter present")
        return PowerState.UNSUPPORTED
    if name is None or name in present:
        return PowerState.ON
    _LOGGER.warning(
        "Adapter %s not found (available: %s)", name, ", ".join(sorted(present))
    )
    return PowerState.UNSUPPORTED
