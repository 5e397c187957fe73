"""
Upgrades placeholder records (agent id 0) once the registry confirms an id.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .identity_registry import IdentityRegistry
from .models import PLACEHOLDER_AGENT_ID, ChainName
from .pipeline import CardPipeline
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200


class Reconciler:
    """
    Each cycle looks at a bounded batch of placeholders and resolves their
    locators against a chain's registry. Unresolved placeholders are left for
    the next cycle.

    Placeholders are read from the chain's own namespace and from the seed
    namespace that `SeedCrawler` writes to.
    """

    def __init__(
        self,
        store: RecordStore,
        pipeline: CardPipeline,
        batch_size: int = DEFAULT_BATCH_SIZE,
        seed_chain: ChainName = "default",
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.batch_size = batch_size
        self.seed_chain = seed_chain
        self.logger = logger or logging.getLogger(__name__)

    def namespaces(self, chain: ChainName) -> List[ChainName]:
        if chain == self.seed_chain:
            return [chain]
        return [chain, self.seed_chain]

    async def run(self, chain: ChainName, registry: IdentityRegistry) -> int:
        """Returns the number of placeholders upgraded to a real id."""
        upgraded = 0
        for namespace in self.namespaces(chain):
            try:
                locators = await self.store.list_placeholder_agents(namespace, self.batch_size)
            except Exception as e:
                self.logger.error(f"[{chain}] reconcile: listing placeholders in {namespace!r} failed: {e}")
                continue
            for locator in locators:
                if await self.reconcile_one(chain, registry, namespace, locator):
                    upgraded += 1
        if upgraded:
            self.logger.info(f"[{chain}] reconcile: upgraded {upgraded} placeholder(s)")
        return upgraded

    async def reconcile_one(
        self,
        chain: ChainName,
        registry: IdentityRegistry,
        namespace: ChainName,
        locator: str,
    ) -> bool:
        try:
            info = await registry.resolve_by_domain(locator)
        except Exception as e:
            self.logger.debug(f"[{chain}] reconcile: resolveByDomain({locator}) failed: {e}")
            return False
        if not info.is_known:
            self.logger.debug(f"[{chain}] reconcile: {locator} is not registered yet")
            return False

        # Fetch from the registry's locator; the placeholder holds only a storage key.
        fetch_locator = info.locator.strip() or locator
        record = await self.pipeline.ingest(chain, registry.address, info.agent_id, fetch_locator)
        if record is None:
            return False

        try:
            await self.store.delete_agent(namespace, PLACEHOLDER_AGENT_ID, locator)
        except Exception as e:
            self.logger.error(f"[{chain}] reconcile: deleting placeholder {namespace}:{locator} failed: {e}")
            return False
        self.logger.info(f"[{chain}] reconcile: {locator} confirmed as agent {info.agent_id}")
        return True
