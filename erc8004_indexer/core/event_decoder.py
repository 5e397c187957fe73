"""
Identity-registry log decoding.

Decoding is two-phase: `classify` maps a raw log onto exactly one EventSchema
by its signature topic and unpacks its fields (pure, no I/O); `decode` then
resolves the classified log into a DiscoveryEvent, which for the two-step
registration schema means fetching the registration document.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from eth_abi import decode as abi_decode
from eth_utils import to_checksum_address

from .contracts import EVENT_SCHEMAS, IDENTITY_REGISTRY_ABI, build_event_catalogue
from .metadata_fetcher import FetchError, MetadataFetcher
from .models import (
    ChainName, DecodedLog, DiscoveryEvent, EndpointType, EventSchema, RawLog, RegistrationDocument
)

logger = logging.getLogger(__name__)


def _topic_to_uint(topic: bytes) -> int:
    if len(topic) != 32:
        raise ValueError(f"Topic must be 32 bytes, got {len(topic)}")
    return int.from_bytes(topic, "big")


def _topic_to_address(topic: bytes) -> str:
    if len(topic) != 32:
        raise ValueError(f"Topic must be 32 bytes, got {len(topic)}")
    return to_checksum_address(topic[12:])


def _non_indexed_types(event_abi: Dict[str, Any]) -> List[str]:
    return [item["type"] for item in event_abi["inputs"] if not item.get("indexed")]


def _unpack(event_abi: Dict[str, Any], log: RawLog, arity: int) -> tuple:
    types = _non_indexed_types(event_abi)
    if len(types) != arity:
        raise ValueError(f"{event_abi['name']}: expected {arity} non-indexed inputs, ABI declares {len(types)}")
    return abi_decode(types, log.data)


def _require_topics(event_abi: Dict[str, Any], log: RawLog, count: int) -> None:
    if len(log.topics) < count:
        raise ValueError(f"{event_abi['name']}: expected {count} topics, got {len(log.topics)}")


class EventDecoder:
    """Turns raw identity-registry logs into discovery events."""

    def __init__(
        self,
        fetcher: MetadataFetcher,
        abi: Optional[List[Dict[str, Any]]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            fetcher: Used for the registration documents of two-step events.
            abi: Registry ABI; must declare every event in EVENT_SCHEMAS.
            logger: Logger for decode diagnostics.

        Raises:
            ValueError: The ABI lacks an event the decoder relies on.
        """
        self.fetcher = fetcher
        self.logger = logger or logging.getLogger(__name__)
        self._catalogue = build_event_catalogue(abi if abi is not None else IDENTITY_REGISTRY_ABI)
        self._unpackers: Dict[EventSchema, Callable[[Dict[str, Any], RawLog], DecodedLog]] = {
            EventSchema.DIRECT_FIELDS: self._unpack_direct_fields,
            EventSchema.TWO_STEP_REGISTRATION: self._unpack_registration,
            EventSchema.METADATA_UPDATE: self._unpack_metadata_update,
        }
        self._resolvers: Dict[EventSchema, Callable[[ChainName, DecodedLog], Awaitable[Optional[DiscoveryEvent]]]] = {
            EventSchema.DIRECT_FIELDS: self._resolve_direct_fields,
            EventSchema.TWO_STEP_REGISTRATION: self._resolve_registration,
            EventSchema.METADATA_UPDATE: self._resolve_metadata_update,
            EventSchema.IGNORED: self._resolve_ignored,
        }
        unhandled = set(EventSchema) - set(self._resolvers)
        if unhandled:
            raise ValueError(f"No resolver for schemas: {sorted(s.value for s in unhandled)}")

    def schema_for(self, log: RawLog) -> EventSchema:
        """Schema selected solely by the first topic."""
        if not log.topics:
            return EventSchema.IGNORED
        event_abi = self._catalogue.get(log.topics[0])
        if event_abi is None:
            return EventSchema.IGNORED
        return EVENT_SCHEMAS.get(event_abi["name"], EventSchema.IGNORED)

    def classify(self, log: RawLog) -> DecodedLog:
        """Unpack a raw log according to its schema.

        Raises:
            ValueError, eth_abi.exceptions.DecodingError: malformed topics or payload.
        """
        schema = self.schema_for(log)
        if schema is EventSchema.IGNORED:
            return DecodedLog(schema=schema, event_name=None, block_number=log.block_number)
        event_abi = self._catalogue[log.topics[0]]
        return self._unpackers[schema](event_abi, log)

    def _unpack_direct_fields(self, event_abi: Dict[str, Any], log: RawLog) -> DecodedLog:
        # topics: [sig, agentId]; data: (agentDomain, agentAddress)
        _require_topics(event_abi, log, 2)
        locator, agent_address = _unpack(event_abi, log, 2)
        return DecodedLog(
            schema=EventSchema.DIRECT_FIELDS,
            event_name=event_abi["name"],
            block_number=log.block_number,
            agent_id=_topic_to_uint(log.topics[1]),
            locator=locator,
            agent_address=to_checksum_address(agent_address),
        )

    def _unpack_registration(self, event_abi: Dict[str, Any], log: RawLog) -> DecodedLog:
        # topics: [sig, agentId, owner]; data: (tokenURI,)
        _require_topics(event_abi, log, 3)
        (document_uri,) = _unpack(event_abi, log, 1)
        return DecodedLog(
            schema=EventSchema.TWO_STEP_REGISTRATION,
            event_name=event_abi["name"],
            block_number=log.block_number,
            agent_id=_topic_to_uint(log.topics[1]),
            owner=_topic_to_address(log.topics[2]),
            document_uri=document_uri,
        )

    def _unpack_metadata_update(self, event_abi: Dict[str, Any], log: RawLog) -> DecodedLog:
        # topics: [sig, agentId]; data: (key, value)
        _require_topics(event_abi, log, 2)
        key, value = _unpack(event_abi, log, 2)
        return DecodedLog(
            schema=EventSchema.METADATA_UPDATE,
            event_name=event_abi["name"],
            block_number=log.block_number,
            agent_id=_topic_to_uint(log.topics[1]),
            metadata_key=key,
            metadata_value=bytes(value),
        )

    async def decode(self, chain: ChainName, log: RawLog) -> Optional[DiscoveryEvent]:
        """Decode one log into a discovery event, or None when there is nothing to store.

        Never raises for bad input: malformed logs are logged and skipped.
        """
        try:
            decoded = self.classify(log)
        except Exception as e:
            self.logger.warning(
                f"[{chain}] skipping undecodable log at block {log.block_number} "
                f"(tx {log.transaction_hash}): {e}"
            )
            return None
        return await self._resolvers[decoded.schema](chain, decoded)

    async def _resolve_direct_fields(self, chain: ChainName, decoded: DecodedLog) -> Optional[DiscoveryEvent]:
        locator = (decoded.locator or "").strip()
        self.logger.info(f"[{chain}] {decoded.event_name} event for agent {decoded.agent_id}")
        if not locator:
            self.logger.info(f"[{chain}] agent {decoded.agent_id} has an empty locator; nothing to fetch")
            return None
        return DiscoveryEvent(
            chain=chain,
            agent_id=decoded.agent_id,
            locator=locator,
            schema=decoded.schema,
            owner_or_address=decoded.agent_address,
            block_number=decoded.block_number,
        )

    async def _resolve_registration(self, chain: ChainName, decoded: DecodedLog) -> Optional[DiscoveryEvent]:
        self.logger.info(
            f"[{chain}] {decoded.event_name} event for agent {decoded.agent_id} "
            f"(owner {decoded.owner}, document {decoded.document_uri})"
        )
        try:
            document = await self.fetcher.fetch_json(decoded.document_uri or "")
        except FetchError as e:
            self.logger.warning(f"[{chain}] registration document fetch failed for agent {decoded.agent_id}: {e}")
            return None

        registration = RegistrationDocument.from_dict(document)
        a2a = registration.find_endpoint(EndpointType.A2A)
        if a2a is None:
            mcp = registration.find_endpoint(EndpointType.MCP)
            did = registration.find_endpoint(EndpointType.DID)
            self.logger.info(
                f"[{chain}] registration of agent {decoded.agent_id} has no A2A endpoint; skipping "
                f"(mcp={mcp.value if mcp else None}, did={did.value if did else None})"
            )
            return None

        return DiscoveryEvent(
            chain=chain,
            agent_id=decoded.agent_id,
            locator=a2a.value.strip(),
            schema=decoded.schema,
            owner_or_address=decoded.owner,
            block_number=decoded.block_number,
        )

    async def _resolve_metadata_update(self, chain: ChainName, decoded: DecodedLog) -> Optional[DiscoveryEvent]:
        # Inert until registry authors define which keys may change a stored card.
        self.logger.debug(
            f"[{chain}] {decoded.event_name} for agent {decoded.agent_id}: "
            f"key={decoded.metadata_key!r} ({len(decoded.metadata_value or b'')} bytes)"
        )
        return None

    async def _resolve_ignored(self, chain: ChainName, decoded: DecodedLog) -> Optional[DiscoveryEvent]:
        return None
