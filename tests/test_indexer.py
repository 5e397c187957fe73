"""
Tests for the coordinator and end-to-end ingestion.
"""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from unittest.mock import AsyncMock, Mock

from erc8004_indexer.core.config import ConfigurationError, IndexerSettings
from erc8004_indexer.core.event_decoder import EventDecoder
from erc8004_indexer.core.indexer import AgentIndexer
from erc8004_indexer.core.metadata_fetcher import MetadataFetcher
from erc8004_indexer.core.models import ChainConfig
from erc8004_indexer.core.pipeline import CardPipeline
from erc8004_indexer.core.watcher import ChainWatcher, WatcherState
from erc8004_indexer.core.web3_client import ChainClientError

from conftest import REGISTRY_ADDRESS, FakeChainClient, FakeSubscription, direct_fields_log

CHAIN = ChainConfig(name="sepolia", rpc_endpoint="wss://rpc.example", identity_registry_address=REGISTRY_ADDRESS)


async def eventually(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _fetcher(card=None):
    fetcher = Mock()
    fetcher.fetch = AsyncMock(return_value=card or {"name": "alpha"})
    fetcher.fetch_json = AsyncMock()
    fetcher.locator_key = Mock(side_effect=lambda locator, document: locator)
    fetcher.close = AsyncMock()
    return fetcher


class TestAgentIndexer:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, store):
        client = FakeChainClient(heads=[100])
        factory = AsyncMock(return_value=client)
        fetcher = _fetcher()
        indexer = AgentIndexer(
            [CHAIN, ChainConfig(name="unconfigured", rpc_endpoint="", identity_registry_address="")],
            store=store, fetcher=fetcher, client_factory=factory, tick_interval=3600,
        )

        await indexer.start()
        factory.assert_awaited_once_with(CHAIN)
        assert list(indexer.runtimes) == ["sepolia"]
        assert indexer.running

        watcher = indexer.runtimes["sepolia"].watcher
        await eventually(lambda: watcher.state is WatcherState.POLLING and watcher.cursor == 100)

        await indexer.stop()
        assert not indexer.running
        assert indexer.runtimes == {}
        assert client.closed
        fetcher.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_twice_is_an_error(self, store):
        indexer = AgentIndexer([], store=store, fetcher=_fetcher(), tick_interval=3600)
        await indexer.start()
        try:
            with pytest.raises(RuntimeError):
                await indexer.start()
        finally:
            await indexer.stop()

    @pytest.mark.asyncio
    async def test_dial_failure_skips_chain(self, store):
        factory = AsyncMock(side_effect=ChainClientError("connection refused"))
        indexer = AgentIndexer([CHAIN], store=store, fetcher=_fetcher(), client_factory=factory, tick_interval=3600)

        await indexer.start()
        assert indexer.runtimes == {}
        assert indexer.running  # ticker keeps going
        await indexer.stop()

    @pytest.mark.asyncio
    async def test_backfill_and_watcher_run_per_chain(self, store):
        client = FakeChainClient(
            agents={1: "a.example", 2: "b.example", 3: "c.example"},
            subscription=FakeSubscription(open_error=ChainClientError("dial tcp: connection refused")),
        )
        indexer = AgentIndexer(
            [CHAIN], store=store, fetcher=_fetcher(),
            client_factory=AsyncMock(return_value=client), tick_interval=3600,
        )

        await indexer.start()
        watcher = indexer.runtimes["sepolia"].watcher
        await eventually(lambda: len(store.upserts) == 3 and watcher.state is WatcherState.STOPPED)
        await indexer.stop()

        assert sorted(u[2] for u in store.upserts) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_tick_seeds_then_reconciles(self, store):
        client = FakeChainClient(
            domains={"alpha.example": 7},
            subscription=FakeSubscription(open_error=ChainClientError("connection refused")),
        )
        indexer = AgentIndexer(
            [CHAIN], store=store, fetcher=_fetcher(), seeds=["alpha.example"],
            client_factory=AsyncMock(return_value=client), tick_interval=3600,
        )

        await indexer.start()
        await eventually(lambda: ("default", 0, "alpha.example") in store.deletes)
        await indexer.stop()

        assert (await store.get_agent("sepolia", 7)).locator == "alpha.example"
        assert await store.list_placeholder_agents("default", 10) == []

    @pytest.mark.asyncio
    async def test_run_exits_on_cancellation(self, store):
        client = FakeChainClient(heads=[100])
        fetcher = _fetcher()
        indexer = AgentIndexer(
            [CHAIN], store=store, fetcher=fetcher,
            client_factory=AsyncMock(return_value=client), tick_interval=3600,
        )

        task = asyncio.create_task(indexer.run())
        await eventually(lambda: indexer.running)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert client.closed
        assert not indexer.running
        fetcher.close.assert_awaited_once()

    def test_from_settings(self, tmp_path):
        path = tmp_path / "erc8004.yaml"
        path.write_text(
            "networks:\n"
            "  sepolia:\n"
            "    rpc: wss://rpc.example\n"
            f"    identity: \"{REGISTRY_ADDRESS}\"\n"
        )
        settings = IndexerSettings(
            config_path=str(path), seeds=["alpha.example"], gateways=["https://gw.example/ipfs"], tick_interval=5,
        )

        indexer = AgentIndexer.from_settings(settings)

        assert [chain.name for chain in indexer.chains] == ["sepolia"]
        assert indexer.fetcher.gateways == ["https://gw.example/ipfs"]
        assert indexer.seed_crawler.seeds == ["alpha.example"]
        assert indexer.tick_interval == 5

    def test_from_settings_missing_config(self, tmp_path):
        with pytest.raises(ConfigurationError):
            AgentIndexer.from_settings(IndexerSettings(config_path=str(tmp_path / "missing.yaml")))


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_direct_fields_event_fetches_well_known_card(self, store):
        async def card(request):
            return web.json_response({"name": "unit-test-agent"})

        app = web.Application()
        app.router.add_get("/.well-known/agent-card.json", card)
        server = TestServer(app)
        await server.start_server()
        try:
            locator = f"http://{server.host}:{server.port}"
            subscription = FakeSubscription(logs=[direct_fields_log(42, locator)])
            async with MetadataFetcher(timeout=5) as fetcher:
                watcher = ChainWatcher(
                    CHAIN, FakeChainClient(subscription=subscription),
                    EventDecoder(fetcher), CardPipeline(fetcher, store),
                )
                result = await watcher.run_session()
        finally:
            await server.close()

        assert result.delivered == 1
        assert store.upserts == [
            ("sepolia", REGISTRY_ADDRESS, 42, f"{server.host}:{server.port}", {"name": "unit-test-agent"}),
        ]
