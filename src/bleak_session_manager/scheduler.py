"""Per-characteristic command serialization with timeouts.

A GATT link tolerates one outstanding request per attribute, so the
scheduler keeps at most one :class:`PendingCommand` per
``(identity, target)`` slot and a queue of depth one behind it:

- an idle slot starts the command immediately (``ACCEPTED``);
- a busy slot queues it (``QUEUED``) if the queue is free;
- a read duplicating the in-flight or queued read is coalesced into it;
- a write identical to the queued write is coalesced, a write with a
  different payload is ``REJECTED`` (the caller must resend later);
- anything else arriving at a full queue is ``REJECTED``.

Every tracked command gets a deadline.  When it expires the slot is
freed, the queued command (if any) starts, and the expired command is
handed to *on_timeout* so the owner can treat it like a
transport-reported failure.

Disconnect requests and writes without response are never tracked:
no acknowledgement will ever arrive for them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .const import DEFAULT_COMMAND_TIMEOUT
from .events import Command, CommandKind
from .transport import RadioTransport

_LOGGER = logging.getLogger(__name__)

SlotKey = tuple[str, "str | None"]


class IssueStatus(str, Enum):
    ACCEPTED = "accepted"
    QUEUED = "queued"
    REJECTED = "rejected"


@dataclass(frozen=True)
class IssueResult:
    status: IssueStatus
    reason: str | None = None

    @property
    def rejected(self) -> bool:
        return self.status is IssueStatus.REJECTED


_ACCEPTED = IssueResult(IssueStatus.ACCEPTED)
_QUEUED = IssueResult(IssueStatus.QUEUED)


@dataclass
class PendingCommand:
    """One outstanding request awaiting its acknowledgement event."""

    command: Command
    issued_at: float
    deadline: float
    _handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def key(self) -> SlotKey:
        return self.command.key

    @property
    def kind(self) -> CommandKind:
        return self.command.kind


def _is_tracked(command: Command) -> bool:
    if command.kind is CommandKind.DISCONNECT:
        return False
    if command.kind is CommandKind.WRITE and not command.require_ack:
        return False
    return True


class CommandScheduler:
    """Serialize commands per slot and apply per-command deadlines.

    Parameters
    ----------
    transport:
        Where accepted commands are sent.
    timeout:
        Default deadline in seconds for tracked commands.
    on_timeout:
        Called with the expired :class:`PendingCommand` after its slot
        has been freed.
    loop:
        Event loop used for deadline timers.  Defaults to the running
        loop at the time a command is started.
    clock:
        Monotonic clock used for issue timestamps and deadlines.
    """

    def __init__(
        self,
        transport: RadioTransport,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        on_timeout: Callable[[PendingCommand], None] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._timeout = timeout
        self._on_timeout = on_timeout
        self._loop = loop
        self._clock = clock
        self._pending: dict[SlotKey, PendingCommand] = {}
        self._queued: dict[SlotKey, tuple[Command, float | None]] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    def issue(self, command: Command, timeout: float | None = None) -> IssueResult:
        """Start, queue or reject *command*.

        *timeout* overrides the default deadline for this command.
        """
        if not _is_tracked(command):
            self._send(command)
            return _ACCEPTED

        key = command.key
        current = self._pending.get(key)
        if current is None:
            self._start(command, timeout)
            return _ACCEPTED

        if command.kind is CommandKind.READ and current.kind is CommandKind.READ:
            return IssueResult(IssueStatus.QUEUED, "coalesced with in-flight read")

        queued = self._queued.get(key)
        if queued is None:
            self._queued[key] = (command, timeout)
            _LOGGER.debug(
                "%s: %s on %s queued behind in-flight %s",
                command.identity,
                command.kind.value,
                command.target,
                current.kind.value,
            )
            return _QUEUED

        queued_command = queued[0]
        if queued_command == command:
            return IssueResult(IssueStatus.QUEUED, "coalesced with queued request")
        if queued_command.kind is CommandKind.WRITE and command.kind is CommandKind.WRITE:
            return IssueResult(
                IssueStatus.REJECTED, "a write with a different payload is already queued"
            )
        return IssueResult(IssueStatus.REJECTED, "request queue is full")

    def complete(
        self, identity: str, target: str | None, kind: CommandKind | None = None
    ) -> PendingCommand | None:
        """Clear the pending command for a slot and start the queued one.

        If *kind* is given, only a pending command of that kind is
        cleared.  Returns the cleared command, or ``None`` if there was
        no matching pending command (a stale acknowledgement).
        """
        key = (identity, target)
        pending = self._pending.get(key)
        if pending is None or (kind is not None and pending.kind is not kind):
            return None
        del self._pending[key]
        self._cancel_timer(pending)
        self._start_queued(key)
        return pending

    def pending(self, identity: str, target: str | None) -> PendingCommand | None:
        return self._pending.get((identity, target))

    def queued(self, identity: str, target: str | None) -> Command | None:
        entry = self._queued.get((identity, target))
        return entry[0] if entry is not None else None

    def pending_for(self, identity: str) -> list[PendingCommand]:
        return [p for key, p in self._pending.items() if key[0] == identity]

    def cancel_all(self, identity: str) -> int:
        """Drop every pending and queued command for a peripheral.

        Late acknowledgements for them will find no pending command and
        be discarded as stale.  Returns the number of commands dropped.
        """
        dropped = 0
        for key in [k for k in self._pending if k[0] == identity]:
            self._cancel_timer(self._pending.pop(key))
            dropped += 1
        for key in [k for k in self._queued if k[0] == identity]:
            del self._queued[key]
            dropped += 1
        if dropped:
            _LOGGER.debug("%s: Cancelled %d outstanding commands", identity, dropped)
        return dropped

    def expire_overdue(self, now: float | None = None) -> list[PendingCommand]:
        """Expire every pending command whose deadline has passed."""
        if now is None:
            now = self._clock()
        expired = [p for p in self._pending.values() if p.deadline <= now]
        for pending in expired:
            self._expire(pending)
        return expired

    def close(self) -> None:
        for pending in self._pending.values():
            self._cancel_timer(pending)
        self._pending.clear()
        self._queued.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def _start(self, command: Command, timeout: float | None) -> None:
        effective = self._timeout if timeout is None else timeout
        now = self._clock()
        pending = PendingCommand(command, issued_at=now, deadline=now + effective)
        loop = self._loop or asyncio.get_running_loop()
        pending._handle = loop.call_later(effective, self._expire, pending)
        self._pending[command.key] = pending
        try:
            self._send(command)
        except Exception:
            self._pending.pop(command.key, None)
            self._cancel_timer(pending)
            raise

    def _start_queued(self, key: SlotKey) -> None:
        entry = self._queued.pop(key, None)
        if entry is not None:
            self._start(*entry)

    def _expire(self, pending: PendingCommand) -> None:
        key = pending.key
        if self._pending.get(key) is not pending:
            return
        del self._pending[key]
        self._cancel_timer(pending)
        _LOGGER.warning(
            "%s: %s on %s timed out after %.1f s",
            pending.command.identity,
            pending.kind.value,
            pending.command.target or "link",
            pending.deadline - pending.issued_at,
        )
        self._start_queued(key)
        if self._on_timeout is not None:
            self._on_timeout(pending)

    @staticmethod
    def _cancel_timer(pending: PendingCommand) -> None:
        if pending._handle is not None:
            pending._handle.cancel()
            pending._handle = None

    def _send(self, command: Command) -> None:
        t = self._transport
        kind = command.kind
        _LOGGER.debug(
            "%s: -> %s %s", command.identity, kind.value, command.target or ""
        )
        if kind is CommandKind.CONNECT:
            t.connect(command.identity)
        elif kind is CommandKind.DISCONNECT:
            t.disconnect(command.identity)
        elif kind is CommandKind.DISCOVER_SERVICES:
            t.discover_services(command.identity, command.uuid_filter)
        elif kind is CommandKind.DISCOVER_CHARACTERISTICS:
            t.discover_characteristics(
                command.identity, command.target, command.uuid_filter
            )
        elif kind is CommandKind.READ:
            t.read_value(command.identity, command.target)
        elif kind is CommandKind.WRITE:
            t.write_value(
                command.identity,
                command.target,
                command.payload or b"",
                command.require_ack,
            )
        elif kind is CommandKind.SUBSCRIBE:
            t.subscribe(command.identity, command.target)
