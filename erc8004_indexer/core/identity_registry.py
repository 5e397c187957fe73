"""
Typed read access to an ERC-8004 identity registry.
"""

from __future__ import annotations

import logging
from typing import Any

from .contracts import CALL_DECODERS, IDENTITY_REGISTRY_ABI, REGISTRY_CALLS
from .models import Address, AgentId, AgentInfo
from .web3_client import Web3Client

logger = logging.getLogger(__name__)


class IdentityRegistry:
    """Identity registry bound to one chain client and contract address."""

    def __init__(self, web3_client: Web3Client, address: Address):
        self.web3_client = web3_client
        self.address = web3_client.normalize_address(address)

    async def _call(self, method: str, *args: Any) -> Any:
        layout = REGISTRY_CALLS[method]
        raw = await self.web3_client.call_contract(self.address, IDENTITY_REGISTRY_ABI, method, *args)
        value = CALL_DECODERS[layout](raw)
        logger.debug(f"{method}{args} -> {value!r}")
        return value

    async def get_agent_count(self) -> int:
        return await self._call("getAgentCount")

    async def get_agent(self, agent_id: AgentId) -> AgentInfo:
        return await self._call("getAgent", agent_id)

    async def resolve_by_domain(self, domain: str) -> AgentInfo:
        return await self._call("resolveByDomain", domain)

    async def resolve_by_address(self, agent_address: Address) -> AgentInfo:
        return await self._call("resolveByAddress", self.web3_client.normalize_address(agent_address))

    async def agent_exists(self, agent_id: AgentId) -> bool:
        return await self._call("agentExists", agent_id)
