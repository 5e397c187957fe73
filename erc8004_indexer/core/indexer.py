"""
Agent indexer: the process-level coordinator.

For every configured chain the indexer dials a client and starts two tasks:
a supervised `ChainWatcher` for live discovery and a one-off `Backfiller`
pass. A single ticker task re-runs the `SeedCrawler` and the `Reconciler`
on a fixed interval. `stop()` (or cancelling `run()`) cancels every task and
closes every connection.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Dict, Iterable, List, Optional

from .backfill import Backfiller
from .config import ConfigurationError, IndexerSettings, load_chains
from .event_decoder import EventDecoder
from .identity_registry import IdentityRegistry
from .metadata_fetcher import MetadataFetcher
from .models import ChainConfig, ChainName
from .pipeline import CardPipeline
from .reconciler import DEFAULT_BATCH_SIZE, Reconciler
from .seed_crawler import SeedCrawler
from .store import InMemoryRecordStore, RecordStore
from .supervisor import RetryPolicy, WatcherSupervisor
from .watcher import ChainWatcher
from .web3_client import Web3Client

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ChainConfig], Awaitable[Web3Client]]


@dataclass
class ChainRuntime:
    """Per-chain state owned by the indexer while it runs."""
    chain: ChainConfig
    client: Web3Client
    registry: IdentityRegistry
    watcher: ChainWatcher
    supervisor: WatcherSupervisor


class AgentIndexer:
    """Coordinates live watching, backfill, seed crawling and reconciliation."""

    def __init__(
        self,
        chains: Iterable[ChainConfig],
        store: Optional[RecordStore] = None,
        fetcher: Optional[MetadataFetcher] = None,
        seeds: Optional[Iterable[str]] = None,
        client_factory: Optional[ClientFactory] = None,
        tick_interval: float = 30.0,
        poll_interval: float = 15.0,
        retry_policy: Optional[RetryPolicy] = None,
        reconcile_batch: int = DEFAULT_BATCH_SIZE,
        seed_chain: ChainName = "default",
        request_timeout: float = 15.0,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            chains: Networks to index; chains without an rpc endpoint or identity
                registry address are skipped at start.
            store: Record store; an InMemoryRecordStore when omitted.
            fetcher: Metadata fetcher. The indexer closes it on stop().
            seeds: Operator-supplied locators for the seed crawler.
            client_factory: Coroutine producing a connected client for a chain.
            tick_interval: Seconds between seed-crawl/reconcile cycles.
            poll_interval: Seconds between polls for chains without subscriptions.
            retry_policy: Backoff used when a watcher has to be restarted.
            reconcile_batch: Placeholders examined per chain per cycle.
            seed_chain: Chain name seed placeholders are stored under.
            request_timeout: RPC request timeout used by the default client factory.
            logger: Logger shared by every component.

        Raises:
            ConfigurationError: The registry event catalogue is unusable.
        """
        self.chains = list(chains)
        self.logger = logger or logging.getLogger(__name__)
        self.store = store or InMemoryRecordStore()
        self.fetcher = fetcher or MetadataFetcher(logger=self.logger)
        self.tick_interval = tick_interval
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        self._client_factory = client_factory or self._dial

        try:
            self.decoder = EventDecoder(self.fetcher, logger=self.logger)
        except ValueError as e:
            raise ConfigurationError(f"identity registry event catalogue: {e}") from e
        self.pipeline = CardPipeline(self.fetcher, self.store, logger=self.logger)
        self.backfiller = Backfiller(self.pipeline, logger=self.logger)
        self.reconciler = Reconciler(
            self.store, self.pipeline, batch_size=reconcile_batch, seed_chain=seed_chain, logger=self.logger
        )
        self.seed_crawler = SeedCrawler(self.pipeline, seeds or [], seed_chain=seed_chain, logger=self.logger)

        self.runtimes: Dict[ChainName, ChainRuntime] = {}
        self._tasks: List[asyncio.Task] = []
        self._stopped: Optional[asyncio.Event] = None

    @classmethod
    def from_settings(cls, settings: IndexerSettings, store: Optional[RecordStore] = None, **kwargs: Any) -> AgentIndexer:
        """Build an indexer from process settings, loading the network config file."""
        chains = load_chains(settings.config_path)
        fetcher = MetadataFetcher(gateways=settings.gateways, timeout=settings.fetch_timeout, logger=kwargs.get("logger"))
        return cls(
            chains,
            store=store,
            fetcher=fetcher,
            seeds=settings.seeds,
            tick_interval=settings.tick_interval,
            poll_interval=settings.poll_interval,
            reconcile_batch=settings.reconcile_batch,
            seed_chain=settings.seed_chain,
            request_timeout=settings.fetch_timeout,
            **kwargs,
        )

    async def _dial(self, chain: ChainConfig) -> Web3Client:
        return await Web3Client.dial(chain.rpc_endpoint, request_timeout=self.request_timeout)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def _connect(self, chain: ChainConfig) -> Optional[ChainRuntime]:
        try:
            client = await self._client_factory(chain)
        except Exception as e:
            self.logger.error(f"[{chain.name}] dial {chain.rpc_endpoint} failed; chain not indexed: {e}")
            return None
        registry = IdentityRegistry(client, chain.identity_registry_address)
        watcher = ChainWatcher(
            chain, client, self.decoder, self.pipeline, poll_interval=self.poll_interval, logger=self.logger
        )
        supervisor = WatcherSupervisor(watcher, self.retry_policy, logger=self.logger)
        return ChainRuntime(chain=chain, client=client, registry=registry, watcher=watcher, supervisor=supervisor)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._task_done)
        self._tasks.append(task)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"task {task.get_name()} failed: {error!r}")

    async def start(self) -> None:
        """Dial every indexable chain and launch the per-chain and ticker tasks."""
        if self._tasks:
            raise RuntimeError("indexer already started")
        self._stopped = asyncio.Event()

        for chain in self.chains:
            if not chain.is_indexable:
                self.logger.warning(f"[{chain.name}] missing rpc endpoint or identity registry; skipping")
                continue
            runtime = await self._connect(chain)
            if runtime is None:
                continue
            self.runtimes[chain.name] = runtime
            self._spawn(runtime.supervisor.run(), f"watch:{chain.name}")
            self._spawn(self.backfiller.run(chain.name, runtime.registry), f"backfill:{chain.name}")
            self.logger.info(f"[{chain.name}] indexing identity registry {runtime.registry.address}")

        self._spawn(self._tick_loop(), "tick")
        self.logger.info(f"Indexer started for {len(self.runtimes)} chain(s)")

    async def tick(self) -> None:
        """One seed-crawl and reconciliation cycle."""
        await self.seed_crawler.run()
        for name, runtime in list(self.runtimes.items()):
            await self.reconciler.run(name, runtime.registry)

    async def _tick_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                self.logger.exception("seed crawl / reconcile cycle failed")
            await asyncio.sleep(self.tick_interval)

    async def run(self) -> None:
        """Start and block until stop() is called or the calling task is cancelled."""
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Cancel every task and release every connection. Safe to call twice."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        runtimes = list(self.runtimes.values())
        self.runtimes.clear()
        for runtime in runtimes:
            runtime.watcher.stop()
            try:
                await runtime.client.close()
            except Exception as e:
                self.logger.warning(f"[{runtime.chain.name}] closing client failed: {e}")
        await self.fetcher.close()

        if self._stopped is not None and not self._stopped.is_set():
            self._stopped.set()
            self.logger.info("Indexer stopped")
