"""Automatic reconnect policy for peripheral sessions.

Tracks consecutive connection failures per peripheral and decides
whether (and after how long) another ``connect`` should be issued.
Delays grow exponentially with jitter so that several peripherals
dropped by the same radio glitch do not all reconnect at once.

Example::

    policy = ReconnectPolicy(max_attempts=3)

    delay = policy.on_failure("AA:BB:CC:DD:EE:FF")
    # 1.0 s +/- jitter; None once 3 reconnects have been spent

    policy.on_success("AA:BB:CC:DD:EE:FF")  # resets the counter
"""

from __future__ import annotations

import logging
import random

from .const import DEFAULT_MAX_RECONNECT_ATTEMPTS, SessionConfig

_LOGGER = logging.getLogger(__name__)


class ReconnectPolicy:
    """Bounded reconnects with jittered exponential backoff.

    Parameters
    ----------
    max_attempts:
        Consecutive reconnects allowed per peripheral before
        :meth:`on_failure` returns ``None``.
    initial_delay:
        Delay before the first reconnect.
    max_delay:
        Ceiling for the delay.
    backoff:
        Multiplier applied per further attempt.
    jitter:
        Fraction of the delay randomly added or subtracted.
    random_source:
        Source of jitter; defaults to a private :class:`random.Random`.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff: float = 2.0,
        jitter: float = 0.1,
        random_source: random.Random | None = None,
    ) -> None:
        if max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {max_attempts}")
        if initial_delay <= 0:
            raise ValueError(f"initial_delay must be > 0, got {initial_delay}")
        if max_delay < initial_delay:
            raise ValueError(
                f"max_delay ({max_delay}) must be >= initial_delay ({initial_delay})"
            )
        if backoff < 1.0:
            raise ValueError(f"backoff must be >= 1.0, got {backoff}")
        if not 0.0 <= jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {jitter}")
        self._max_attempts = max_attempts
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._backoff = backoff
        self._jitter = jitter
        self._random = random_source or random.Random()
        self._failures: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: SessionConfig) -> ReconnectPolicy:
        return cls(
            max_attempts=config.max_reconnect_attempts,
            initial_delay=config.reconnect_initial_delay,
            max_delay=config.reconnect_max_delay,
            backoff=config.reconnect_backoff,
            jitter=config.reconnect_jitter,
        )

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def delay_for(self, attempt: int) -> float:
        """Return the jittered delay before reconnect number *attempt* (0-based)."""
        delay = min(self._initial_delay * (self._backoff**attempt), self._max_delay)
        jitter = delay * self._jitter * (self._random.random() * 2.0 - 1.0)
        return max(0.001, delay + jitter)

    def on_failure(self, identity: str) -> float | None:
        """Record a failure and return the delay before the next reconnect.

        Returns ``None`` when the reconnect budget is exhausted.
        """
        attempt = self._failures.get(identity, 0)
        if attempt >= self._max_attempts:
            _LOGGER.debug(
                "%s: Reconnect budget exhausted (%d attempts)",
                identity,
                self._max_attempts,
            )
            return None
        self._failures[identity] = attempt + 1
        return self.delay_for(attempt)

    def on_success(self, identity: str) -> None:
        """Record a success and reset the failure counter for *identity*."""
        self._failures.pop(identity, None)

    def failure_count(self, identity: str) -> int:
        return self._failures.get(identity, 0)

    def forget(self, identity: str) -> None:
        self._failures.pop(identity, None)
