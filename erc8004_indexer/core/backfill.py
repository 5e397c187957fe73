"""
One-pass enumeration of every agent a registry currently knows about.
"""

from __future__ import annotations

import logging
from typing import Optional

from .identity_registry import IdentityRegistry
from .models import ChainName
from .pipeline import CardPipeline

logger = logging.getLogger(__name__)


class Backfiller:
    """Walks agent ids 1..getAgentCount() and ingests each non-empty locator.

    Registry ids are assumed to be allocated contiguously starting at 1.
    """

    def __init__(self, pipeline: CardPipeline, logger: Optional[logging.Logger] = None):
        self.pipeline = pipeline
        self.logger = logger or logging.getLogger(__name__)

    async def run(self, chain: ChainName, registry: IdentityRegistry) -> int:
        """Returns the number of records stored during the pass."""
        try:
            count = await registry.get_agent_count()
        except Exception as e:
            self.logger.warning(f"[{chain}] backfill: agent count unavailable: {e}")
            return 0
        if count <= 0:
            self.logger.info(f"[{chain}] backfill: registry has no agents yet")
            return 0

        self.logger.info(f"[{chain}] backfill: scanning {count} agents")
        stored = 0
        for agent_id in range(1, count + 1):
            try:
                info = await registry.get_agent(agent_id)
            except Exception as e:
                self.logger.warning(f"[{chain}] backfill: getAgent({agent_id}) failed: {e}")
                continue
            if not info.locator:
                self.logger.debug(f"[{chain}] backfill: agent {agent_id} has an empty locator")
                continue
            try:
                record = await self.pipeline.ingest(chain, registry.address, agent_id, info.locator)
            except Exception as e:
                self.logger.error(f"[{chain}] backfill: ingesting agent {agent_id} failed: {e}")
                continue
            if record is not None:
                stored += 1

        self.logger.info(f"[{chain}] backfill complete: {stored}/{count} agents stored")
        return stored
