"""
Record store contract and the default in-memory implementation.

The indexer only ever talks to a store through `RecordStore`; a database-backed
implementation plugs in by subclassing it.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import PLACEHOLDER_AGENT_ID, Address, AgentId, AgentRecord, ChainName

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """Durable upsert/list/delete of agent records keyed by (chain, agent id).

    Implementations must be safe for concurrent calls and idempotent for
    repeated identical upserts. Placeholder rows (agent id 0) are keyed by
    (chain, locator).
    """

    @abstractmethod
    async def upsert_agent_from_card(
        self,
        chain: ChainName,
        registry_address: Address,
        agent_id: AgentId,
        locator: str,
        metadata: Dict[str, Any],
    ) -> AgentRecord:
        """Insert or replace the record for a key; last writer wins."""

    @abstractmethod
    async def list_placeholder_agents(self, chain: ChainName, limit: int) -> List[str]:
        """Locators of up to `limit` placeholder rows on a chain, oldest first."""

    @abstractmethod
    async def delete_agent(self, chain: ChainName, agent_id: AgentId, locator: Optional[str] = None) -> int:
        """Delete a record; returns the number of rows removed.

        For the placeholder id, `locator` limits deletion to that one row;
        without it every placeholder on the chain is removed.
        """

    @abstractmethod
    async def get_agent(
        self, chain: ChainName, agent_id: AgentId, locator: Optional[str] = None
    ) -> Optional[AgentRecord]:
        """Fetch one record by key."""

    @abstractmethod
    async def list_agents(self, chain: Optional[ChainName] = None) -> List[AgentRecord]:
        """All records, optionally restricted to one chain."""


def _record_key(chain: ChainName, agent_id: AgentId, locator: str) -> Tuple[ChainName, AgentId, str]:
    if agent_id == PLACEHOLDER_AGENT_ID:
        return (chain, PLACEHOLDER_AGENT_ID, locator)
    return (chain, agent_id, "")


class InMemoryRecordStore(RecordStore):
    """Dict-backed store guarded by an asyncio lock."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._records: Dict[Tuple[ChainName, AgentId, str], AgentRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or time.time

    def _now(self) -> int:
        return int(self._clock())

    async def upsert_agent_from_card(
        self,
        chain: ChainName,
        registry_address: Address,
        agent_id: AgentId,
        locator: str,
        metadata: Dict[str, Any],
    ) -> AgentRecord:
        if agent_id < 0:
            raise ValueError(f"agent_id must be non-negative, got {agent_id}")
        if agent_id == PLACEHOLDER_AGENT_ID and not locator:
            raise ValueError("placeholder records require a locator")

        key = _record_key(chain, agent_id, locator)
        async with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                unchanged = (
                    existing.registry_address == registry_address
                    and existing.locator == locator
                    and existing.metadata == metadata
                )
                if not unchanged:
                    existing.registry_address = registry_address
                    existing.locator = locator
                    existing.metadata = copy.deepcopy(metadata)
                    existing.last_updated_at = self._now()
                record = existing
            else:
                now = self._now()
                record = AgentRecord(
                    chain=chain,
                    registry_address=registry_address,
                    agent_id=agent_id,
                    locator=locator,
                    metadata=copy.deepcopy(metadata),
                    first_seen_at=now,
                    last_updated_at=now,
                )
                self._records[key] = record
            logger.debug(f"Upserted {chain}:{agent_id} ({locator})")
            return copy.deepcopy(record)

    async def list_placeholder_agents(self, chain: ChainName, limit: int) -> List[str]:
        async with self._lock:
            placeholders = [
                record for (record_chain, agent_id, _), record in self._records.items()
                if record_chain == chain and agent_id == PLACEHOLDER_AGENT_ID
            ]
        placeholders.sort(key=lambda record: (record.first_seen_at, record.locator))
        return [record.locator for record in placeholders[:max(limit, 0)]]

    async def delete_agent(self, chain: ChainName, agent_id: AgentId, locator: Optional[str] = None) -> int:
        async with self._lock:
            if agent_id == PLACEHOLDER_AGENT_ID and locator is None:
                doomed = [key for key in self._records if key[0] == chain and key[1] == PLACEHOLDER_AGENT_ID]
            else:
                key = _record_key(chain, agent_id, locator or "")
                doomed = [key] if key in self._records else []
            for key in doomed:
                del self._records[key]
        return len(doomed)

    async def get_agent(
        self, chain: ChainName, agent_id: AgentId, locator: Optional[str] = None
    ) -> Optional[AgentRecord]:
        async with self._lock:
            record = self._records.get(_record_key(chain, agent_id, locator or ""))
            return copy.deepcopy(record) if record is not None else None

    async def list_agents(self, chain: Optional[ChainName] = None) -> List[AgentRecord]:
        async with self._lock:
            records = [
                copy.deepcopy(record) for record in self._records.values()
                if chain is None or record.chain == chain
            ]
        records.sort(key=lambda record: (record.chain, record.agent_id, record.locator))
        return records
