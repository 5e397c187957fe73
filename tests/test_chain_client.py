"""
Tests for the registry ABI tables, typed registry reads and the web3 client helpers.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, Mock

from erc8004_indexer.core import web3_client
from erc8004_indexer.core.contracts import (
    IDENTITY_REGISTRY_ABI, ZERO_ADDRESS, build_event_catalogue, decode_agent_info, decode_bool, decode_uint256,
)
from erc8004_indexer.core.identity_registry import IdentityRegistry
from erc8004_indexer.core.models import EndpointType, RawLog, RegistrationDocument
from erc8004_indexer.core.web3_client import (
    ChainClientError, LogSubscription, Web3Client, is_subscription_unsupported,
)

from conftest import AGENT_ADDRESS, REGISTRY_ADDRESS, FakeChainClient, event_topic


class TestCallDecoders:
    def test_agent_info(self):
        info = decode_agent_info((7, "alpha.example", AGENT_ADDRESS))
        assert (info.agent_id, info.locator, info.agent_address) == (7, "alpha.example", AGENT_ADDRESS)
        assert info.is_known

    def test_agent_info_zero_address(self):
        info = decode_agent_info([0, "", ZERO_ADDRESS])
        assert info.agent_address is None
        assert not info.is_known

    def test_agent_info_rejects_other_shapes(self):
        with pytest.raises(ValueError):
            decode_agent_info({"agentId": 1})
        with pytest.raises(ValueError):
            decode_agent_info(("1", "alpha.example", AGENT_ADDRESS))

    def test_scalars(self):
        assert decode_uint256(3) == 3
        assert decode_bool(False) is False
        with pytest.raises(ValueError):
            decode_uint256(True)
        with pytest.raises(ValueError):
            decode_uint256(-1)
        with pytest.raises(ValueError):
            decode_bool(1)

    def test_event_catalogue(self):
        catalogue = build_event_catalogue(IDENTITY_REGISTRY_ABI)
        assert catalogue[event_topic("Registered")]["name"] == "Registered"
        assert {entry["name"] for entry in catalogue.values()} == {
            "Registered", "AgentRegistered", "AgentUpdated", "MetadataSet",
        }


class TestIdentityRegistry:
    @pytest.fixture
    def registry(self):
        return IdentityRegistry(
            FakeChainClient(agents={1: "alpha.example", 2: ""}, domains={"alpha.example": 1}),
            REGISTRY_ADDRESS.lower(),
        )

    @pytest.mark.asyncio
    async def test_reads(self, registry):
        assert registry.address == REGISTRY_ADDRESS
        assert await registry.get_agent_count() == 2
        assert (await registry.get_agent(1)).locator == "alpha.example"
        assert (await registry.resolve_by_domain("alpha.example")).agent_id == 1
        assert not (await registry.resolve_by_domain("beta.example")).is_known

    @pytest.mark.asyncio
    async def test_resolve_by_address(self, registry):
        info = await registry.resolve_by_address(AGENT_ADDRESS.lower())
        assert (info.agent_id, info.locator, info.agent_address) == (1, "alpha.example", AGENT_ADDRESS)
        assert not (await registry.resolve_by_address(REGISTRY_ADDRESS)).is_known

    @pytest.mark.asyncio
    async def test_agent_exists(self, registry):
        assert await registry.agent_exists(1) is True
        assert await registry.agent_exists(3) is False

    @pytest.mark.asyncio
    async def test_unexpected_result_shape(self):
        client = Mock()
        client.normalize_address = lambda address: address
        client.call_contract = AsyncMock(return_value="garbage")
        with pytest.raises(ValueError):
            await IdentityRegistry(client, REGISTRY_ADDRESS).get_agent(1)

    @pytest.mark.asyncio
    async def test_call_errors_propagate(self):
        client = Mock()
        client.normalize_address = lambda address: address
        client.call_contract = AsyncMock(side_effect=ChainClientError("agentExists call failed: timeout"))
        with pytest.raises(ChainClientError):
            await IdentityRegistry(client, REGISTRY_ADDRESS).agent_exists(1)


class TestWeb3Helpers:
    def test_subscription_unsupported_marker(self):
        assert is_subscription_unsupported(ChainClientError("Notifications not supported"))
        assert not is_subscription_unsupported(ChainClientError("connection refused"))

    def test_http_endpoints_cannot_subscribe(self):
        assert Web3Client("wss://rpc.example").supports_subscriptions
        assert not Web3Client("https://rpc.example").supports_subscriptions

    @pytest.mark.asyncio
    async def test_http_subscription_reports_unsupported(self):
        subscription = LogSubscription("https://rpc.example", REGISTRY_ADDRESS)
        with pytest.raises(ChainClientError) as exc_info:
            await subscription.open()
        assert is_subscription_unsupported(exc_info.value)

    @pytest.mark.asyncio
    async def test_cancelled_open_disconnects(self, monkeypatch):
        subscribing = asyncio.Event()

        async def hang(*args):
            subscribing.set()
            await asyncio.Event().wait()

        w3 = Mock()
        w3.eth.subscribe = AsyncMock(side_effect=hang)
        w3.eth.unsubscribe = AsyncMock()
        w3.provider.disconnect = AsyncMock()

        async def connect():
            return w3

        monkeypatch.setattr(web3_client, "WebSocketProvider", Mock())
        monkeypatch.setattr(web3_client, "AsyncWeb3", lambda provider: connect())

        subscription = LogSubscription("wss://rpc.example", REGISTRY_ADDRESS)
        task = asyncio.create_task(subscription.open())
        await asyncio.wait_for(subscribing.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        w3.provider.disconnect.assert_awaited_once()
        w3.eth.unsubscribe.assert_not_awaited()

    def test_raw_log_from_json_rpc(self):
        log = RawLog.from_web3({
            "address": REGISTRY_ADDRESS.lower(),
            "topics": ["0x" + event_topic("AgentRegistered").hex(), "0x" + "00" * 31 + "2a"],
            "data": "0x",
            "blockNumber": "0x10",
            "logIndex": "0x2",
            "transactionHash": "0x" + "ab" * 32,
        })
        assert log.address == REGISTRY_ADDRESS
        assert log.topics[0] == event_topic("AgentRegistered")
        assert int.from_bytes(log.topics[1], "big") == 42
        assert log.data == b""
        assert (log.block_number, log.log_index) == (16, 2)


class TestRegistrationDocument:
    def test_endpoint_lookup_is_case_insensitive(self):
        document = RegistrationDocument.from_dict({
            "name": "Alpha",
            "endpoints": [
                {"name": "a2a", "endpoint": ""},
                {"name": "A2A", "endpoint": "https://alpha.example", "version": "0.3"},
                {"name": "unknown", "endpoint": "x"},
                "not-an-object",
            ],
        })
        a2a = document.find_endpoint(EndpointType.A2A)
        assert a2a.value == "https://alpha.example"
        assert a2a.meta == {"version": "0.3"}
        assert document.find_endpoint(EndpointType.MCP) is None
        assert len(document.endpoints) == 2
