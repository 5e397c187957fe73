"""
ERC-8004 agent indexer.

Discovers agents registered in ERC-8004 identity registries, fetches their
agent cards and keeps a normalized copy in a record store.
"""

from .core.config import ConfigurationError, IndexerSettings, load_chains
from .core.event_decoder import EventDecoder
from .core.indexer import AgentIndexer
from .core.metadata_fetcher import FetchError, FetchFailure, MetadataFetcher
from .core.models import AgentRecord, ChainConfig, DiscoveryEvent, EventSchema, RawLog
from .core.store import InMemoryRecordStore, RecordStore
from .core.web3_client import ChainClientError, Web3Client

__version__ = "0.1.0"

__all__ = [
    "AgentIndexer",
    "AgentRecord",
    "ChainClientError",
    "ChainConfig",
    "ConfigurationError",
    "DiscoveryEvent",
    "EventDecoder",
    "EventSchema",
    "FetchError",
    "FetchFailure",
    "InMemoryRecordStore",
    "IndexerSettings",
    "MetadataFetcher",
    "RawLog",
    "RecordStore",
    "Web3Client",
    "load_chains",
]
