"""
Per-chain live discovery.

    CONNECTING -> SUBSCRIBED | POLLING -> (subscription lost) BACKOFF -> CONNECTING

A watcher runs one session at a time; `WatcherSupervisor` decides whether and
when to start the next one. Cancellation of the surrounding task is the only
way out of a healthy session.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from eth_utils import to_checksum_address

from .event_decoder import EventDecoder
from .models import ChainConfig, ChainName, RawLog
from .pipeline import CardPipeline
from .web3_client import ChainClientError, LogSubscription, Web3Client, is_subscription_unsupported

logger = logging.getLogger(__name__)


class WatcherState(Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    POLLING = "polling"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SessionResult:
    """How a watcher session ended."""
    restart: bool
    delivered: int = 0  # logs received during the session


@dataclass(frozen=True)
class PollResult:
    """Outcome of one polling tick."""
    head: int
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    logs: int = 0
    reorg: bool = False


class ChainWatcher:
    """Subscribe-or-poll loop for one chain's identity registry."""

    def __init__(
        self,
        chain: ChainConfig,
        client: Web3Client,
        decoder: EventDecoder,
        pipeline: CardPipeline,
        poll_interval: float = 15.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.chain = chain
        self.client = client
        self.decoder = decoder
        self.pipeline = pipeline
        self.poll_interval = poll_interval
        self.registry_address = to_checksum_address(chain.identity_registry_address)
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self.state = WatcherState.CONNECTING
        # Last block whose logs were processed by the polling path.
        self.cursor: Optional[int] = None

    @property
    def name(self) -> ChainName:
        return self.chain.name

    def enter_backoff(self, delay: float) -> None:
        self.state = WatcherState.BACKOFF
        self.logger.info(f"[{self.name}] watcher backing off for {delay:.1f}s")

    def stop(self) -> None:
        self.state = WatcherState.STOPPED

    async def run_session(self) -> SessionResult:
        """Connect, then stay subscribed or poll until something breaks."""
        self.state = WatcherState.CONNECTING
        self.logger.info(f"[{self.name}] connecting to identity registry {self.registry_address}")
        subscription = self.client.subscribe_logs(self.registry_address)
        try:
            await subscription.open()
        except Exception as e:
            if is_subscription_unsupported(e):
                self.logger.warning(
                    f"[{self.name}] provider does not support subscriptions; falling back to polling"
                )
                return await self._run_polling()
            self.logger.error(
                f"[{self.name}] failed to subscribe to registry logs, watcher stopping "
                f"(backfill and reconciliation continue): {e}"
            )
            self.stop()
            return SessionResult(restart=False)
        return await self._run_subscribed(subscription)

    async def _run_subscribed(self, subscription: LogSubscription) -> SessionResult:
        self.state = WatcherState.SUBSCRIBED
        self.logger.info(f"[{self.name}] subscribed to registry logs")
        delivered = 0
        try:
            async for log in subscription:
                delivered += 1
                await self.handle_log(log)
        except ChainClientError as e:
            self.logger.warning(f"[{self.name}] subscription error; restarting watcher: {e}")
            return SessionResult(restart=True, delivered=delivered)
        finally:
            await subscription.close()
        self.logger.warning(f"[{self.name}] subscription stream ended; restarting watcher")
        return SessionResult(restart=True, delivered=delivered)

    async def _run_polling(self) -> SessionResult:
        self.state = WatcherState.POLLING
        try:
            await self.start_polling()
        except ChainClientError as e:
            self.logger.error(f"[{self.name}] cannot get latest block for polling: {e}")
            return SessionResult(restart=True)
        while True:
            await self._sleep(self.poll_interval)
            await self.poll_once()

    async def start_polling(self) -> int:
        """Start from the current head; history is the backfiller's job."""
        self.cursor = await self.client.block_number()
        self.logger.info(
            f"[{self.name}] polling identity logs of {self.registry_address} from block {self.cursor}"
        )
        return self.cursor

    async def poll_once(self) -> Optional[PollResult]:
        """One polling tick. Returns None when the tick failed and changed nothing."""
        if self.cursor is None:
            raise RuntimeError("poll_once() called before start_polling()")

        try:
            head = await self.client.block_number()
        except ChainClientError as e:
            self.logger.warning(f"[{self.name}] poll: failed to fetch latest block: {e}")
            return None

        if head < self.cursor:
            # Forward-only recovery: blocks between the new head and the old
            # cursor on the new fork are not replayed.
            self.logger.warning(
                f"[{self.name}] head {head} is behind cursor {self.cursor}; "
                f"assuming reorg and resetting to head"
            )
            self.cursor = head
            return PollResult(head=head, reorg=True)

        if head == self.cursor:
            self.logger.debug(f"[{self.name}] poll: nothing new at block {head}")
            return PollResult(head=head)

        from_block = self.cursor + 1
        try:
            logs = await self.client.get_logs(self.registry_address, from_block, head)
        except ChainClientError as e:
            self.logger.warning(f"[{self.name}] poll: get_logs {from_block}-{head} failed: {e}")
            return None

        for log in logs:
            await self.handle_log(log)
        self.cursor = head
        return PollResult(head=head, from_block=from_block, to_block=head, logs=len(logs))

    async def handle_log(self, log: RawLog) -> bool:
        """Decode and dispatch one log. True when a record was stored."""
        self.logger.debug(f"[{self.name}] log received at block {log.block_number}")
        event = await self.decoder.decode(self.name, log)
        if event is None:
            return False
        record = await self.pipeline.ingest_event(event, self.registry_address)
        return record is not None
