"""Per-resource countdown clock.

Ticks once per interval on the running event loop via call_later and
fires its expiry callback exactly once per countdown cycle. A cycle
begins with start() and ends at zero or on stop().
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class SessionClock:
    """1 Hz countdown that never goes below zero."""

    def __init__(
        self,
        on_tick: Callable[[int], None],
        on_expire: Callable[[], None],
        *,
        interval: float = 1.0,
    ) -> None:
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._interval = interval
        self._remaining = 0
        self._expired = False
        self._cycle = 0
        self._handle: asyncio.TimerHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def running(self) -> bool:
        return self._handle is not None

    @property
    def expired(self) -> bool:
        return self._expired

    def start(self, initial_remaining_seconds: int) -> None:
        """Begin a new countdown cycle.

        Starting at zero marks the cycle as already expired without
        firing the expiry callback; that is a discovered expiry, not a
        natural one.
        """
        self.stop()
        self._remaining = max(0, int(initial_remaining_seconds))
        self._expired = self._remaining == 0
        if self._expired:
            return
        self._loop = asyncio.get_running_loop()
        self._schedule()

    def stop(self) -> None:
        """Cancel the pending tick. Safe to call repeatedly."""
        self._cycle += 1
        self._cancel_handle()

    def tick(self) -> None:
        """Advance the countdown by one step."""
        if self._expired or self._handle is None:
            return
        self._cancel_handle()
        cycle = self._cycle
        self._remaining = max(0, self._remaining - 1)
        if self._remaining == 0:
            self._expired = True
        try:
            self._on_tick(self._remaining)
        except Exception:
            logger.exception("Clock tick callback failed")
        # The tick callback may have stopped or restarted the clock.
        if cycle != self._cycle:
            return
        if not self._expired:
            self._schedule()
            return
        try:
            self._on_expire()
        except Exception:
            logger.exception("Clock expiry callback failed")

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self) -> None:
        if self._loop is None:
            raise RuntimeError("SessionClock scheduled before start()")
        cycle = self._cycle
        self._handle = self._loop.call_later(
            self._interval, self._on_timer, cycle,
        )

    def _on_timer(self, cycle: int) -> None:
        # A handle from a stopped cycle can still be queued on the loop.
        if cycle != self._cycle:
            return
        self.tick()
