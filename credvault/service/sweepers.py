"""Background purges of expired credential rows.

Each engine gets its own sweeper task on its own timer. A purge is a single
storage statement, so cancelling a sweeper between or during passes never
leaves a partially applied batch behind.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from credvault.logging import get_logger

logger = get_logger(__name__)

OTP_SWEEP_INTERVAL_SECONDS = 10 * 60
REFRESH_TOKEN_SWEEP_INTERVAL_SECONDS = 60 * 60
EMAIL_VERIFICATION_SWEEP_INTERVAL_SECONDS = 6 * 60 * 60
PASSWORD_RESET_SWEEP_INTERVAL_SECONDS = 6 * 60 * 60
MIN_RETRY_DELAY_SECONDS = 30

Purge = Callable[[], Awaitable[int]]


class Sweeper:
    """Runs one purge callable on a fixed interval until stopped."""

    def __init__(
        self,
        name: str,
        purge: Purge,
        *,
        interval: float,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.purge = purge
        self.interval = interval
        self.retry_delay = (
            retry_delay
            if retry_delay is not None
            else max(MIN_RETRY_DELAY_SECONDS, interval / 6)
        )
        self._sleep = sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.passes = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("sweeper_already_running", sweeper=self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"sweeper:{self.name}")
        logger.info("sweeper_started", sweeper=self.name, interval_seconds=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("sweeper_stopped", sweeper=self.name)

    async def run_once(self) -> Optional[int]:
        """One purge pass; returns rows removed, or None when the pass failed."""
        try:
            removed = await self.purge()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            logger.error(
                "sweeper_pass_failed",
                sweeper=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
                failures=self.failures,
            )
            return None
        self.passes += 1
        if removed:
            logger.info("sweeper_pass_completed", sweeper=self.name, removed=removed)
        else:
            logger.debug("sweeper_pass_completed", sweeper=self.name, removed=0)
        return removed

    async def _run_loop(self) -> None:
        while self._running:
            removed = await self.run_once()
            delay = self.retry_delay if removed is None else self.interval
            await self._sleep(delay)


class SweeperSet:
    """The service's sweepers, started and stopped together."""

    def __init__(self, sweepers: List[Sweeper]) -> None:
        self.sweepers: Dict[str, Sweeper] = {s.name: s for s in sweepers}

    def __getitem__(self, name: str) -> Sweeper:
        return self.sweepers[name]

    async def start(self) -> None:
        for sweeper in self.sweepers.values():
            await sweeper.start()

    async def stop(self) -> None:
        for sweeper in self.sweepers.values():
            await sweeper.stop()

    async def run_all_once(self) -> Dict[str, Optional[int]]:
        return {name: await s.run_once() for name, s in self.sweepers.items()}


def build_sweepers(*, otp, tokens, email_verification, password_reset) -> SweeperSet:
    return SweeperSet(
        [
            Sweeper("otp", otp.cleanup_expired, interval=OTP_SWEEP_INTERVAL_SECONDS),
            Sweeper(
                "refresh_tokens",
                tokens.cleanup_expired,
                interval=REFRESH_TOKEN_SWEEP_INTERVAL_SECONDS,
            ),
            Sweeper(
                "email_verification",
                email_verification.cleanup_expired,
                interval=EMAIL_VERIFICATION_SWEEP_INTERVAL_SECONDS,
            ),
            Sweeper(
                "password_reset",
                password_reset.cleanup_expired,
                interval=PASSWORD_RESET_SWEEP_INTERVAL_SECONDS,
            ),
        ]
    )
