"""
Anonymous Voting Client Timer Service
1 Hz countdowns for OTP, session and verification-token expiry
"""

import asyncio
import logging
import math
from datetime import datetime
from typing import Callable, Dict, Optional

from evote_client.config import Settings, get_settings
from evote_client.schemas import CountdownKind
from evote_client.utils.timestamps import Clock, utc_now

logger = logging.getLogger(__name__)


class Countdown:
    """
    One countdown towards a server-issued absolute expiry

    The terminal callback fires at most once, and never after cancel().
    """

    def __init__(
        self,
        kind: CountdownKind,
        expires_at: datetime,
        on_expire: Callable[[], None],
        clock: Clock,
        on_tick: Optional[Callable[[int], None]] = None
    ):
        if expires_at.tzinfo is None:
            raise ValueError("Countdown expiry must be a timezone-aware absolute timestamp")

        self.kind = kind
        self.expires_at = expires_at
        self.on_expire = on_expire
        self.on_tick = on_tick
        self.clock = clock
        self.fired = False
        self.cancelled = False
        self.task: Optional[asyncio.Task] = None

    @property
    def finished(self) -> bool:
        return self.fired or self.cancelled

    def remaining_seconds(self) -> int:
        """Whole seconds left, rounded up, never negative"""
        remaining = (self.expires_at - self.clock()).total_seconds()
        return max(0, math.ceil(remaining))

    @property
    def expired(self) -> bool:
        return self.remaining_seconds() == 0

    def tick(self) -> int:
        remaining = self.remaining_seconds()
        if self.finished:
            return remaining

        if self.on_tick is not None:
            self.on_tick(remaining)
        if remaining == 0:
            self._fire()
        return remaining

    def _fire(self):
        if self.fired or self.cancelled:
            return
        self.fired = True
        logger.info(f"{self.kind.value} countdown expired")
        try:
            self.on_expire()
        except Exception as e:
            logger.error(f"{self.kind.value} expiry callback failed: {e}", exc_info=True)

    def cancel(self):
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


class TimerService:
    """Owns the independent countdowns of one protocol flow"""

    def __init__(
        self,
        clock: Clock = utc_now,
        tick_interval: Optional[float] = None,
        autostart: bool = True,
        settings: Optional[Settings] = None
    ):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        settings = settings or get_settings()
        self.clock = clock
        self.tick_interval = tick_interval if tick_interval is not None else settings.TIMER_TICK_SECONDS
        self.autostart = autostart
        self._timers: Dict[CountdownKind, Countdown] = {}

    def start(
        self,
        kind: CountdownKind,
        expires_at: datetime,
        on_expire: Callable[[], None],
        on_tick: Optional[Callable[[int], None]] = None
    ) -> Countdown:
        """
        Start (or restart) the countdown of one kind

        Args:
            kind: Which countdown
            expires_at: Absolute expiry issued by the authority
            on_expire: Terminal callback, fired once
            on_tick: Optional per-second callback with remaining seconds

        Returns:
            The running Countdown
        """
        self.cancel(kind)

        countdown = Countdown(kind, expires_at, on_expire, self.clock, on_tick=on_tick)
        self._timers[kind] = countdown
        self.logger.debug(f"Started {kind.value} countdown, {countdown.remaining_seconds()}s left")

        countdown.tick()
        if self.autostart and not countdown.finished:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                countdown.task = loop.create_task(self._run(countdown))
        return countdown

    async def _run(self, countdown: Countdown):
        while not countdown.finished:
            await asyncio.sleep(self.tick_interval)
            countdown.tick()

    def get(self, kind: CountdownKind) -> Optional[Countdown]:
        return self._timers.get(kind)

    def remaining(self, kind: CountdownKind) -> Optional[int]:
        countdown = self._timers.get(kind)
        if countdown is None or countdown.cancelled:
            return None
        return countdown.remaining_seconds()

    def is_running(self, kind: CountdownKind) -> bool:
        countdown = self._timers.get(kind)
        return countdown is not None and not countdown.finished

    def tick_all(self):
        """Advance every countdown once (manual driving)"""
        for countdown in list(self._timers.values()):
            countdown.tick()

    def cancel(self, kind: CountdownKind):
        countdown = self._timers.pop(kind, None)
        if countdown is not None:
            countdown.cancel()

    def cancel_all(self):
        for kind in list(self._timers):
            self.cancel(kind)
