"""Idle detection and auto-redirect countdown timers.

Both timers are plain cancellable callbacks on the running event loop. They are
unaware of each other: the session manager owns one of each and
cancelling one never touches the other.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, Optional

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]
TickCallback = Callable[[int], Awaitable[None]]


class IdleTimer:
    """Fires `on_idle` after `timeout` seconds without recorded activity.

    Activity arriving within `debounce` seconds of the last accepted reset is
    ignored, so a burst of pointer events collapses to a single reset.
    """

    def __init__(
        self,
        *,
        timeout: float,
        on_idle: TimerCallback,
        debounce: float = 0.3,
        on_active: Optional[TimerCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self.debounce = debounce
        self._on_idle = on_idle
        self._on_active = on_active
        self._clock = clock

        self._enabled = False
        self._is_idle = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self._debounce_until = 0.0
        self._callback_tasks: set[asyncio.Task[None]] = set()
        self.reset_count = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_idle(self) -> bool:
        return self._is_idle

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        """Enable the timer and arm a fresh inactivity window."""
        self._enabled = True
        self._is_idle = False
        self._debounce_until = 0.0
        self._arm()
        logger.debug("Idle timer started (timeout=%.1fs, debounce=%.2fs)", self.timeout, self.debounce)

    def stop(self) -> None:
        self._enabled = False
        self._disarm()

    def set_enabled(self, enabled: bool) -> None:
        if enabled == self._enabled:
            return
        if enabled:
            self.start()
        else:
            self.stop()

    def record_activity(self) -> bool:
        """Register user activity; returns True when it actually reset the timer."""
        if not self._enabled:
            return False
        now = self._clock()
        if now < self._debounce_until:
            return False
        self._debounce_until = now + self.debounce

        if self._is_idle:
            self._is_idle = False
            if self._on_active is not None:
                self._spawn(self._on_active, "idle-active-callback")

        self._arm()
        self.reset_count += 1
        return True

    def _arm(self) -> None:
        self._disarm()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def _disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if not self._enabled:
            return
        self._is_idle = True
        logger.info("⏰ Idle timeout reached after %.1fs of inactivity", self.timeout)
        self._spawn(self._on_idle, "idle-timeout-callback")

    def _spawn(self, callback: TimerCallback, name: str) -> None:
        async def runner() -> None:
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Idle timer callback failed")

        task = asyncio.get_running_loop().create_task(runner(), name=name)
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_tasks.discard)


class Countdown:
    """One-tick-per-interval countdown that calls `on_finished` at zero.

    Each tick is a `loop.call_later` handle; `cancel()` drops the pending handle.
    Only the first `cancel()` has an effect and a finished countdown cannot be
    cancelled.
    """

    def __init__(
        self,
        seconds: int,
        *,
        on_finished: TimerCallback,
        on_tick: Optional[TickCallback] = None,
        tick: float = 1.0,
        name: str = "countdown",
    ) -> None:
        self.seconds = max(int(seconds), 0)
        self.tick = tick
        self.name = name
        self._on_finished = on_finished
        self._on_tick = on_tick
        self._remaining = self.seconds
        self._handle: Optional[asyncio.TimerHandle] = None
        self._done: Optional[asyncio.Future[None]] = None
        self._callback_tasks: set[asyncio.Task[None]] = set()
        self._cancelled = False
        self._finished = False

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def active(self) -> bool:
        return self._done is not None and not self._cancelled and not self._finished

    def start(self) -> None:
        if self._done is not None or self._cancelled:
            return
        loop = asyncio.get_running_loop()
        self._done = loop.create_future()
        if self._remaining == 0:
            self._spawn(self._finish())
            return
        self._handle = loop.call_later(self.tick, self._step)

    def cancel(self) -> bool:
        """Stop the countdown; returns False when there was nothing left to cancel."""
        if self._cancelled or self._finished:
            return False
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._resolve()
        logger.info("⏹️ %s cancelled with %ds remaining", self.name, self._remaining)
        return True

    async def wait(self) -> None:
        if self._done is None:
            return
        await asyncio.shield(self._done)

    def _step(self) -> None:
        self._handle = None
        if self._cancelled:
            return
        self._remaining -= 1
        self._spawn(self._after_tick(self._remaining))

    async def _after_tick(self, remaining: int) -> None:
        if self._cancelled:
            return
        if self._on_tick is not None:
            try:
                await self._on_tick(remaining)
            except Exception:
                logger.exception("%s tick callback failed", self.name)
        if self._cancelled:
            return
        if remaining > 0:
            self._handle = asyncio.get_running_loop().call_later(self.tick, self._step)
            return
        await self._finish()

    async def _finish(self) -> None:
        self._finished = True
        logger.info("⏱️ %s elapsed (%ds)", self.name, self.seconds)
        try:
            await self._on_finished()
        except Exception:
            logger.exception("%s finish callback failed", self.name)
        finally:
            self._resolve()

    def _resolve(self) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_result(None)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=self.name)
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_tasks.discard)


__all__ = ["IdleTimer", "Countdown", "TimerCallback", "TickCallback"]
