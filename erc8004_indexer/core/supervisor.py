"""
Restart policy for chain watchers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .watcher import ChainWatcher, SessionResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff between watcher sessions."""
    initial_delay: float = 3.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    max_restarts: Optional[int] = None  # None: restart forever

    def delay_for(self, attempt: int) -> float:
        """Delay before the `attempt`-th consecutive restart (1-based)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


class WatcherSupervisor:
    """Runs watcher sessions back to back, sleeping between failed ones."""

    def __init__(
        self,
        watcher: ChainWatcher,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.watcher = watcher
        self.policy = policy or RetryPolicy()
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self.restarts = 0

    async def run(self) -> None:
        """Return when the watcher stops for good; raises CancelledError on shutdown."""
        attempt = 0
        while True:
            try:
                result = await self.watcher.run_session()
            except Exception:
                self.logger.exception(f"[{self.watcher.name}] watcher session crashed")
                result = SessionResult(restart=True)

            if not result.restart:
                self.watcher.stop()
                self.logger.info(f"[{self.watcher.name}] watcher stopped")
                return

            # A session that delivered logs was healthy; start the backoff over.
            attempt = 1 if result.delivered else attempt + 1
            self.restarts += 1
            if self.policy.max_restarts is not None and self.restarts > self.policy.max_restarts:
                self.watcher.stop()
                self.logger.error(
                    f"[{self.watcher.name}] watcher gave up after {self.policy.max_restarts} restarts"
                )
                return

            delay = self.policy.delay_for(attempt)
            self.watcher.enter_backoff(delay)
            await self._sleep(delay)
