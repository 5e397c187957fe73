"""
Core data models for the ERC-8004 indexer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from eth_utils import to_checksum_address
from hexbytes import HexBytes


# Type aliases
AgentId = int  # uint256 token id assigned by the identity registry
ChainName = str  # key of the network in the configuration file (e.g. "sepolia")
Address = str  # 0x-hex, EIP-55 checksummed once normalized
URI = str  # https://..., ipfs://..., data:... or a bare domain
Timestamp = int  # unix seconds

# agentId 0 is never minted; rows stored under it are keyed by locator instead.
PLACEHOLDER_AGENT_ID: AgentId = 0


class EndpointType(Enum):
    """Types of endpoints that agents can advertise."""
    MCP = "MCP"
    A2A = "A2A"
    DID = "DID"

    @classmethod
    def parse(cls, name: Any) -> Optional[EndpointType]:
        """Match an endpoint name case-insensitively, None when unknown."""
        if not isinstance(name, str):
            return None
        wanted = name.strip().upper()
        for member in cls:
            if member.value.upper() == wanted:
                return member
        return None


class EventSchema(Enum):
    """Closed set of identity-registry log encodings the decoder understands."""
    DIRECT_FIELDS = "direct-fields"  # AgentRegistered / AgentUpdated
    TWO_STEP_REGISTRATION = "two-step-registration"  # Registered (tokenURI)
    METADATA_UPDATE = "metadata-update"  # MetadataSet
    IGNORED = "ignored"  # any other signature


@dataclass(frozen=True)
class ChainConfig:
    """One configured network; immutable after load."""
    name: ChainName
    rpc_endpoint: str
    identity_registry_address: Address
    reputation_registry_address: Optional[Address] = None
    validation_registry_address: Optional[Address] = None

    @property
    def is_indexable(self) -> bool:
        """A chain needs both an endpoint and an identity registry to be watched."""
        return bool(self.rpc_endpoint.strip() and self.identity_registry_address.strip())


@dataclass(frozen=True)
class Endpoint:
    """Represents an agent endpoint."""
    type: EndpointType
    value: str  # endpoint value (URL or DID)
    meta: Dict[str, Any] = field(default_factory=dict)  # optional metadata


@dataclass
class RegistrationDocument:
    """The registration file a two-step `Registered` event points at."""
    name: str = ""
    description: str = ""
    endpoints: List[Endpoint] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    def find_endpoint(self, endpoint_type: EndpointType) -> Optional[Endpoint]:
        """Return the first endpoint of the given type that carries a value."""
        for endpoint in self.endpoints:
            if endpoint.type is endpoint_type and endpoint.value.strip():
                return endpoint
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RegistrationDocument:
        """Create from dictionary, skipping endpoints we cannot classify."""
        endpoints = []
        raw_endpoints = data.get("endpoints")
        if isinstance(raw_endpoints, list):
            for ep_data in raw_endpoints:
                if not isinstance(ep_data, dict):
                    continue
                ep_type = EndpointType.parse(ep_data.get("name"))
                ep_value = ep_data.get("endpoint")
                if ep_type is None or not isinstance(ep_value, str):
                    continue
                ep_meta = {k: v for k, v in ep_data.items() if k not in ["name", "endpoint"]}
                endpoints.append(Endpoint(type=ep_type, value=ep_value, meta=ep_meta))

        name = data.get("name")
        description = data.get("description")
        return cls(
            name=name if isinstance(name, str) else "",
            description=description if isinstance(description, str) else "",
            endpoints=endpoints,
            raw=data,
        )


@dataclass(frozen=True)
class RawLog:
    """A log as delivered by the chain client, normalized away from web3 types."""
    address: Address
    topics: List[bytes]
    data: bytes
    block_number: int
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None

    @classmethod
    def from_web3(cls, entry: Any) -> RawLog:
        """Build from a web3 log (AttributeDict) or a raw JSON-RPC log dict."""
        block_number = entry.get("blockNumber") or 0
        if isinstance(block_number, str):
            block_number = int(block_number, 16)
        log_index = entry.get("logIndex")
        if isinstance(log_index, str):
            log_index = int(log_index, 16)
        tx_hash = entry.get("transactionHash")
        return cls(
            address=to_checksum_address(entry["address"]),
            topics=[bytes(HexBytes(topic)) for topic in entry.get("topics") or []],
            data=bytes(HexBytes(entry.get("data") or b"")),
            block_number=int(block_number),
            transaction_hash=HexBytes(tx_hash).hex() if tx_hash else None,
            log_index=log_index,
        )


@dataclass(frozen=True)
class DecodedLog:
    """A log resolved to exactly one EventSchema by its signature topic."""
    schema: EventSchema
    event_name: Optional[str]
    block_number: int
    agent_id: Optional[AgentId] = None
    locator: Optional[str] = None  # DIRECT_FIELDS
    agent_address: Optional[Address] = None  # DIRECT_FIELDS
    owner: Optional[Address] = None  # TWO_STEP_REGISTRATION
    document_uri: Optional[URI] = None  # TWO_STEP_REGISTRATION
    metadata_key: Optional[str] = None  # METADATA_UPDATE
    metadata_value: Optional[bytes] = None  # METADATA_UPDATE


@dataclass(frozen=True)
class DiscoveryEvent:
    """Transient: produced by the decoder, consumed by the pipeline, never stored."""
    chain: ChainName
    agent_id: AgentId
    locator: str
    schema: EventSchema
    owner_or_address: Optional[Address] = None
    block_number: Optional[int] = None


@dataclass(frozen=True)
class AgentInfo:
    """The `AgentInfo` struct returned by the registry's read calls."""
    agent_id: AgentId
    locator: str
    agent_address: Optional[Address] = None

    @property
    def is_known(self) -> bool:
        return self.agent_id != PLACEHOLDER_AGENT_ID


@dataclass
class AgentRecord:
    """Normalized, persisted copy of an agent; key = (chain, agent_id[, locator])."""
    chain: ChainName
    registry_address: Address
    agent_id: AgentId
    locator: str
    metadata: Dict[str, Any]
    first_seen_at: Timestamp
    last_updated_at: Timestamp

    @property
    def is_placeholder(self) -> bool:
        return self.agent_id == PLACEHOLDER_AGENT_ID

    @property
    def key(self) -> tuple:
        """Placeholders are keyed by locator so two of them on one chain never collide."""
        if self.is_placeholder:
            return (self.chain, PLACEHOLDER_AGENT_ID, self.locator)
        return (self.chain, self.agent_id, "")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "chain": self.chain,
            "registryAddress": self.registry_address,
            "agentId": self.agent_id,
            "locator": self.locator,
            "metadata": self.metadata,
            "firstSeenAt": self.first_seen_at,
            "lastUpdatedAt": self.last_updated_at,
        }
