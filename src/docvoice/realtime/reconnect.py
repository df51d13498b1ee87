"""
Reconnection Policy

Decides whether and when a lost session is re-established, using bounded
exponential backoff. Manual disconnects are never undone and backgrounded
sessions do not spend attempts.
"""

import asyncio
from typing import Awaitable, Callable, Protocol

import structlog

from docvoice.config import Settings, settings as default_settings
from docvoice.core.models import SessionState

logger = structlog.get_logger()


class ReconnectTarget(Protocol):
    """What the policy needs from a session."""

    state: SessionState

    @property
    def page_visible(self) -> bool: ...

    async def teardown(self) -> None: ...

    async def connect(self) -> None: ...

    def reconnect_exhausted(self, attempts: int) -> None: ...


class ReconnectionPolicy:
    """
    Schedules reconnects for a single session.

    The delay for attempt n is min(base * factor**n, max_delay), with a
    shorter base for forced reconnects. At most one reconnect is pending at
    a time; a forced request replaces a pending unforced one.
    """

    def __init__(
        self,
        config: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        config = config or default_settings
        self.max_attempts = config.reconnect_max_attempts
        self.base_delay_ms = config.reconnect_base_delay_ms
        self.forced_base_delay_ms = config.reconnect_forced_base_delay_ms
        self.backoff_factor = config.reconnect_backoff_factor
        self.max_delay_ms = config.reconnect_max_delay_ms
        self.settle_delay_ms = config.reconnect_settle_delay_ms
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def delay_ms(self, attempt: int, forced: bool = False) -> float:
        base = self.forced_base_delay_ms if forced else self.base_delay_ms
        return min(base * self.backoff_factor**attempt, self.max_delay_ms)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def reset(self, state: SessionState) -> None:
        state.reconnect_attempts = 0

    def request(self, target: ReconnectTarget, forced: bool = False) -> bool:
        """
        Ask for a reconnect. Returns True if one was scheduled.

        Forced requests come from an overall connection failure; they reset
        the attempt counter and bypass page-visibility deferral.
        """
        state = target.state

        if state.manually_disconnected:
            logger.debug("Manual disconnect, not reconnecting")
            return False

        if not forced and state.connecting:
            return False

        if not forced and not target.page_visible:
            logger.info("Page not visible, deferring reconnection")
            return False

        if self.pending:
            if not forced:
                logger.debug("Reconnect already pending")
                return False
            self.cancel()

        if forced:
            state.reconnect_attempts = 0
        elif state.reconnect_attempts >= self.max_attempts:
            attempts = state.reconnect_attempts
            state.reconnect_attempts = 0
            state.reconnect_pending = False
            logger.warning("Max reconnection attempts reached, giving up", attempts=attempts)
            target.reconnect_exhausted(attempts)
            return False

        attempt = state.reconnect_attempts
        delay = self.delay_ms(attempt, forced)
        state.reconnect_attempts = attempt + 1
        state.reconnect_pending = True

        logger.info(
            "Scheduling reconnect",
            delay_ms=delay,
            attempt=attempt + 1,
            max_attempts=self.max_attempts,
            forced=forced,
        )
        self._task = asyncio.get_running_loop().create_task(
            self._run(target, delay, forced)
        )
        return True

    async def _run(self, target: ReconnectTarget, delay_ms: float, forced: bool) -> None:
        state = target.state
        try:
            if forced:
                await target.teardown()

            await self._sleep(delay_ms / 1000)

            if state.manually_disconnected:
                return
            if not forced and (state.connected or state.connecting):
                return

            await target.teardown()
            state.mark_disconnected()
            state.last_error = None

            # Let teardown finish before the new attempt
            await self._sleep(self.settle_delay_ms / 1000)
            if state.manually_disconnected:
                return
        finally:
            if self._task is asyncio.current_task():
                self._task = None
            state.reconnect_pending = False

        await target.connect()


__all__ = ["ReconnectionPolicy", "ReconnectTarget"]
