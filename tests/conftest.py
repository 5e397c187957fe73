"""
Shared fakes for the indexer tests.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest
from eth_abi import encode
from eth_utils import event_abi_to_log_topic, to_checksum_address

from erc8004_indexer.core.contracts import IDENTITY_REGISTRY_ABI, ZERO_ADDRESS
from erc8004_indexer.core.models import AgentInfo, RawLog
from erc8004_indexer.core.store import InMemoryRecordStore
from erc8004_indexer.core.web3_client import ChainClientError

REGISTRY_ADDRESS = "0x1111111111111111111111111111111111111111"
AGENT_ADDRESS = "0x2222222222222222222222222222222222222222"
OWNER_ADDRESS = "0x3333333333333333333333333333333333333333"


def event_topic(name: str) -> bytes:
    event_abi = next(
        item for item in IDENTITY_REGISTRY_ABI
        if item.get("type") == "event" and item["name"] == name
    )
    return bytes(event_abi_to_log_topic(event_abi))


def uint_topic(value: int) -> bytes:
    return value.to_bytes(32, "big")


def address_topic(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


def direct_fields_log(agent_id: int, locator: str, event: str = "AgentRegistered", block: int = 1) -> RawLog:
    return RawLog(
        address=REGISTRY_ADDRESS,
        topics=[event_topic(event), uint_topic(agent_id)],
        data=encode(["string", "address"], [locator, AGENT_ADDRESS]),
        block_number=block,
    )


def registration_log(agent_id: int, token_uri: str, owner: str = OWNER_ADDRESS, block: int = 1) -> RawLog:
    return RawLog(
        address=REGISTRY_ADDRESS,
        topics=[event_topic("Registered"), uint_topic(agent_id), address_topic(owner)],
        data=encode(["string"], [token_uri]),
        block_number=block,
    )


def metadata_set_log(agent_id: int, key: str, value: bytes, block: int = 1) -> RawLog:
    return RawLog(
        address=REGISTRY_ADDRESS,
        topics=[event_topic("MetadataSet"), uint_topic(agent_id)],
        data=encode(["string", "bytes"], [key, value]),
        block_number=block,
    )


class RecordingStore(InMemoryRecordStore):
    """In-memory store that remembers every upsert and delete call."""

    def __init__(self):
        super().__init__(clock=lambda: 1700000000)
        self.upserts: List[Tuple[str, str, int, str, Dict[str, Any]]] = []
        self.deletes: List[Tuple[str, int, Optional[str]]] = []

    async def upsert_agent_from_card(self, chain, registry_address, agent_id, locator, metadata):
        self.upserts.append((chain, registry_address, agent_id, locator, metadata))
        return await super().upsert_agent_from_card(chain, registry_address, agent_id, locator, metadata)

    async def delete_agent(self, chain, agent_id, locator=None):
        self.deletes.append((chain, agent_id, locator))
        return await super().delete_agent(chain, agent_id, locator)


class FakeSubscription:
    """Log stream that optionally fails to open, then yields logs and ends or errors."""

    def __init__(self, logs: Iterable[RawLog] = (), open_error: Optional[Exception] = None,
                 stream_error: Optional[Exception] = None):
        self.logs = list(logs)
        self.open_error = open_error
        self.stream_error = stream_error
        self.opened = False
        self.closed = False

    async def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for log in self.logs:
            yield log
        if self.stream_error is not None:
            raise self.stream_error

    async def close(self):
        self.closed = True


class FakeChainClient:
    """Scripted chain client: block heads, logs, subscriptions and registry reads."""

    def __init__(self, heads: Iterable[int] = (), logs: Iterable[RawLog] = (),
                 subscription: Optional[FakeSubscription] = None,
                 agents: Optional[Dict[int, str]] = None,
                 domains: Optional[Dict[str, int]] = None):
        self.heads = list(heads)
        self.logs = list(logs)
        self.subscription = subscription or FakeSubscription(
            open_error=ChainClientError("notifications not supported")
        )
        self.agents = agents or {}
        self.domains = domains or {}
        self.get_logs_calls: List[Tuple[int, int]] = []
        self.closed = False

    def normalize_address(self, address: str) -> str:
        return to_checksum_address(address)

    def subscribe_logs(self, address: str) -> FakeSubscription:
        return self.subscription

    async def block_number(self) -> int:
        if not self.heads:
            raise ChainClientError("no more heads scripted")
        head = self.heads.pop(0)
        if isinstance(head, Exception):
            raise head
        return head

    async def get_logs(self, address: str, from_block: int, to_block: int) -> List[RawLog]:
        self.get_logs_calls.append((from_block, to_block))
        return [log for log in self.logs if from_block <= log.block_number <= to_block]

    async def call_contract(self, address, abi, method, *args):
        if method == "getAgentCount":
            return len(self.agents)
        if method == "getAgent":
            (agent_id,) = args
            return (agent_id, self.agents.get(agent_id, ""), AGENT_ADDRESS)
        if method == "resolveByDomain":
            (domain,) = args
            agent_id = self.domains.get(domain, 0)
            return (agent_id, domain if agent_id else "", AGENT_ADDRESS if agent_id else ZERO_ADDRESS)
        if method == "resolveByAddress":
            (agent_address,) = args
            if agent_address == AGENT_ADDRESS:
                agent_id = next(iter(self.agents), 0)
                if agent_id:
                    return (agent_id, self.agents[agent_id], AGENT_ADDRESS)
            return (0, "", ZERO_ADDRESS)
        if method == "agentExists":
            (agent_id,) = args
            return agent_id in self.agents
        raise ChainClientError(f"{method} not scripted")

    async def close(self):
        self.closed = True


class FakeRegistry:
    """IdentityRegistry stand-in driven by plain dicts."""

    def __init__(self, agents: Optional[Dict[int, str]] = None, domains: Optional[Dict[str, int]] = None,
                 count: Optional[int] = None, address: str = REGISTRY_ADDRESS,
                 locators: Optional[Dict[str, str]] = None):
        self.address = address
        self.agents = agents or {}
        self.domains = domains or {}
        self.locators = locators or {}
        self.count = len(self.agents) if count is None else count
        self.failing_ids = set()
        self.failing_domains = set()

    async def get_agent_count(self) -> int:
        if isinstance(self.count, Exception):
            raise self.count
        return self.count

    async def get_agent(self, agent_id: int) -> AgentInfo:
        if agent_id in self.failing_ids:
            raise ChainClientError(f"getAgent({agent_id}) reverted")
        return AgentInfo(agent_id=agent_id, locator=self.agents.get(agent_id, ""), agent_address=AGENT_ADDRESS)

    async def resolve_by_domain(self, domain: str) -> AgentInfo:
        if domain in self.failing_domains:
            raise ChainClientError("execution reverted")
        agent_id = self.domains.get(domain, 0)
        if not agent_id:
            return AgentInfo(agent_id=0, locator="")
        return AgentInfo(agent_id=agent_id, locator=self.locators.get(domain, domain))


@pytest.fixture
def store():
    return RecordingStore()
