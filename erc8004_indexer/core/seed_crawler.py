"""
Discovery from operator-supplied locators, independent of any chain.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .models import PLACEHOLDER_AGENT_ID, ChainName
from .pipeline import CardPipeline

logger = logging.getLogger(__name__)


class SeedCrawler:
    """Stores each seed's agent card as a placeholder record for the Reconciler."""

    def __init__(
        self,
        pipeline: CardPipeline,
        seeds: Iterable[str],
        seed_chain: ChainName = "default",
        logger: Optional[logging.Logger] = None,
    ):
        self.pipeline = pipeline
        self.seeds = [seed.strip() for seed in seeds if seed and seed.strip()]
        self.seed_chain = seed_chain
        self.logger = logger or logging.getLogger(__name__)

    async def run(self) -> int:
        stored = 0
        for seed in self.seeds:
            record = await self.pipeline.ingest(self.seed_chain, "", PLACEHOLDER_AGENT_ID, seed)
            if record is not None:
                stored += 1
        if self.seeds:
            self.logger.debug(f"seed crawl: {stored}/{len(self.seeds)} seeds stored")
        return stored
