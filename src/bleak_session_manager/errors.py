"""Error taxonomy for peripheral sessions.

Errors are mostly delivered as values: a session that hits a failure
wraps it in one of these classes and hands it to the presentation
listener inside an ``ErrorReported`` notification.  Only explicit public
calls that cannot be honoured (e.g. ``start_scan()`` while the radio is
off) raise them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .events import Command


class SessionError(Exception):
    """Base class for all session errors.

    *identity* is the peripheral the error belongs to, or ``None`` for
    adapter-wide errors (radio unavailable, scan failure, discovery timeout).
    """

    def __init__(self, message: str, identity: str | None = None) -> None:
        super().__init__(message)
        self.identity = identity


class RadioUnavailableError(SessionError):
    """The adapter is not powered on; scan/connect refused locally."""


class DiscoveryTimeoutError(SessionError):
    """A scan ran for its full timeout without a matching discovery."""


class ConnectionFailedError(SessionError):
    """A connection attempt failed or timed out.

    ``permanent`` is set once automatic reconnects are exhausted.
    """

    def __init__(
        self,
        message: str,
        identity: str | None = None,
        *,
        reason: str | None = None,
        permanent: bool = False,
    ) -> None:
        super().__init__(message, identity)
        self.reason = reason
        self.permanent = permanent


class ServiceDiscoveryFailedError(SessionError):
    """Service discovery reported an error, timed out, or found nothing."""


class CharacteristicDiscoveryFailedError(SessionError):
    """Characteristic discovery failed for one service."""

    def __init__(
        self, message: str, identity: str | None = None, service: str | None = None
    ) -> None:
        super().__init__(message, identity)
        self.service = service


class CommandTimeoutError(SessionError):
    """A tracked command received no acknowledgement before its deadline."""

    def __init__(
        self, message: str, identity: str | None = None, command: Command | None = None
    ) -> None:
        super().__init__(message, identity)
        self.command = command


class GattOperationError(SessionError):
    """The transport reported an error for a read or subscribe request."""

    def __init__(
        self,
        message: str,
        identity: str | None = None,
        characteristic: str | None = None,
    ) -> None:
        super().__init__(message, identity)
        self.characteristic = characteristic


class UnknownPeripheralError(SessionError):
    """An event addressed a peripheral that has no session."""


class LinkDroppedError(SessionError):
    """The link to a peripheral dropped unexpectedly."""


class ScanFailedError(SessionError):
    """The transport failed to start a requested scan."""
