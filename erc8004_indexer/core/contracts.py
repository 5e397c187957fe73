"""
Identity registry ABI and the decoding tables derived from it.

Every log signature the indexer understands maps to exactly one EventSchema,
and every read call maps to exactly one CallLayout with its own decoder.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List

from eth_utils import event_abi_to_log_topic, to_checksum_address

from .models import AgentInfo, EventSchema

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_AGENT_INFO_COMPONENTS = [
    {"internalType": "uint256", "name": "agentId", "type": "uint256"},
    {"internalType": "string", "name": "agentDomain", "type": "string"},
    {"internalType": "address", "name": "agentAddress", "type": "address"},
]

_AGENT_INFO_OUTPUT = [
    {
        "components": _AGENT_INFO_COMPONENTS,
        "internalType": "struct IIdentityRegistry.AgentInfo",
        "name": "agentInfo",
        "type": "tuple",
    }
]

IDENTITY_REGISTRY_ABI: List[Dict[str, Any]] = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "agentId", "type": "uint256"},
            {"indexed": False, "internalType": "string", "name": "tokenURI", "type": "string"},
            {"indexed": True, "internalType": "address", "name": "owner", "type": "address"},
        ],
        "name": "Registered",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "agentId", "type": "uint256"},
            {"indexed": False, "internalType": "string", "name": "agentDomain", "type": "string"},
            {"indexed": False, "internalType": "address", "name": "agentAddress", "type": "address"},
        ],
        "name": "AgentRegistered",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "agentId", "type": "uint256"},
            {"indexed": False, "internalType": "string", "name": "agentDomain", "type": "string"},
            {"indexed": False, "internalType": "address", "name": "agentAddress", "type": "address"},
        ],
        "name": "AgentUpdated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "agentId", "type": "uint256"},
            {"indexed": False, "internalType": "string", "name": "key", "type": "string"},
            {"indexed": False, "internalType": "bytes", "name": "value", "type": "bytes"},
        ],
        "name": "MetadataSet",
        "type": "event",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "agentId", "type": "uint256"}],
        "name": "getAgent",
        "outputs": _AGENT_INFO_OUTPUT,
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "string", "name": "agentDomain", "type": "string"}],
        "name": "resolveByDomain",
        "outputs": _AGENT_INFO_OUTPUT,
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "agentAddress", "type": "address"}],
        "name": "resolveByAddress",
        "outputs": _AGENT_INFO_OUTPUT,
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getAgentCount",
        "outputs": [{"internalType": "uint256", "name": "count", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "agentId", "type": "uint256"}],
        "name": "agentExists",
        "outputs": [{"internalType": "bool", "name": "exists", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Event name -> wire schema. Events absent from this table are ignored.
EVENT_SCHEMAS: Dict[str, EventSchema] = {
    "AgentRegistered": EventSchema.DIRECT_FIELDS,
    "AgentUpdated": EventSchema.DIRECT_FIELDS,
    "Registered": EventSchema.TWO_STEP_REGISTRATION,
    "MetadataSet": EventSchema.METADATA_UPDATE,
}


def event_abis(abi: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Non-anonymous event entries of an ABI."""
    return [
        item for item in abi
        if isinstance(item, dict) and item.get("type") == "event" and not item.get("anonymous")
    ]


def build_event_catalogue(abi: List[Dict[str, Any]]) -> Dict[bytes, Dict[str, Any]]:
    """Map topic0 (keccak of the event signature) to its ABI entry.

    Raises ValueError when the ABI lacks an event the schema table requires.
    """
    catalogue: Dict[bytes, Dict[str, Any]] = {}
    for event_abi in event_abis(abi):
        catalogue[bytes(event_abi_to_log_topic(event_abi))] = event_abi

    names = {event_abi["name"] for event_abi in catalogue.values()}
    missing = sorted(set(EVENT_SCHEMAS) - names)
    if missing:
        raise ValueError(f"Identity registry ABI is missing events: {', '.join(missing)}")
    return catalogue


class CallLayout(Enum):
    """Wire layouts of registry read-call results."""
    AGENT_INFO = "agent-info"  # (uint256 agentId, string agentDomain, address agentAddress)
    UINT256 = "uint256"
    BOOL = "bool"


def decode_agent_info(value: Any) -> AgentInfo:
    """Decode the positional `AgentInfo` tuple."""
    if not isinstance(value, (tuple, list)) or len(value) != 3:
        raise ValueError(f"AgentInfo must be a 3-tuple, got: {value!r}")
    agent_id, locator, agent_address = value
    if not isinstance(agent_id, int) or not isinstance(locator, str):
        raise ValueError(f"Unexpected AgentInfo field types: {value!r}")
    address = to_checksum_address(agent_address) if agent_address else None
    if address == ZERO_ADDRESS:
        address = None
    return AgentInfo(agent_id=agent_id, locator=locator, agent_address=address)


def decode_uint256(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"Expected uint256, got: {value!r}")
    return value


def decode_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"Expected bool, got: {value!r}")
    return value


CALL_DECODERS: Dict[CallLayout, Callable[[Any], Any]] = {
    CallLayout.AGENT_INFO: decode_agent_info,
    CallLayout.UINT256: decode_uint256,
    CallLayout.BOOL: decode_bool,
}

# Registry read method -> layout of its single output.
REGISTRY_CALLS: Dict[str, CallLayout] = {
    "getAgent": CallLayout.AGENT_INFO,
    "resolveByDomain": CallLayout.AGENT_INFO,
    "resolveByAddress": CallLayout.AGENT_INFO,
    "getAgentCount": CallLayout.UINT256,
    "agentExists": CallLayout.BOOL,
}
