"""
The fetch-and-upsert path shared by live events, backfill, reconciliation and
seed crawling.
"""

from __future__ import annotations

import logging
from typing import Optional

from .metadata_fetcher import FetchError, MetadataFetcher
from .models import Address, AgentId, AgentRecord, ChainName, DiscoveryEvent
from .store import RecordStore

logger = logging.getLogger(__name__)


class CardPipeline:
    """Fetches an agent card for a locator and stores it under its locator key."""

    def __init__(
        self,
        fetcher: MetadataFetcher,
        store: RecordStore,
        logger: Optional[logging.Logger] = None,
    ):
        self.fetcher = fetcher
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    async def ingest(
        self,
        chain: ChainName,
        registry_address: Address,
        agent_id: AgentId,
        locator: str,
    ) -> Optional[AgentRecord]:
        """Fetch and upsert one card. Returns the stored record, or None on any failure."""
        locator = (locator or "").strip()
        if not locator:
            self.logger.info(f"[{chain}] agent {agent_id} has no locator; skipping")
            return None

        self.logger.info(f"[{chain}] fetching agent card for agent {agent_id} from {locator}")
        try:
            document = await self.fetcher.fetch(locator)
        except FetchError as e:
            self.logger.warning(f"[{chain}] card fetch failed for agent {agent_id}: {e}")
            return None

        try:
            key = self.fetcher.locator_key(locator, document)
        except FetchError as e:
            self.logger.warning(f"[{chain}] unusable locator for agent {agent_id}: {e}")
            return None

        try:
            record = await self.store.upsert_agent_from_card(chain, registry_address, agent_id, key, document)
        except Exception as e:
            self.logger.error(f"[{chain}] failed upserting agent {agent_id} ({key}): {e}")
            return None

        self.logger.info(f"[{chain}] card stored for agent {agent_id} ({key})")
        return record

    async def ingest_event(self, event: DiscoveryEvent, registry_address: Address) -> Optional[AgentRecord]:
        return await self.ingest(event.chain, registry_address, event.agent_id, event.locator)
