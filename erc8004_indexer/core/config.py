"""
Network configuration (YAML) and process settings (environment).

Example `configs/erc8004.yaml`:

    networks:
      sepolia:
        rpc: wss://eth-sepolia.example/v2/${ALCHEMY_KEY}
        identity: "0x..."
        reputation: "0x..."
        validation: "0x..."
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from string import Template
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .ipfs_client import DEFAULT_GATEWAYS
from .models import ChainConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "configs/erc8004.yaml"


class ConfigurationError(Exception):
    """Raised when the network configuration cannot be loaded."""


def _csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def read_seeds_from_env(environ: Optional[Mapping[str, str]] = None) -> List[str]:
    environ = os.environ if environ is None else environ
    return _csv(environ.get("EXPLORER_SEEDS"))


def parse_networks(data: Any, environ: Optional[Mapping[str, str]] = None) -> List[ChainConfig]:
    """Build chain configs from an already-parsed YAML document."""
    environ = os.environ if environ is None else environ
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ConfigurationError("configuration root must be a mapping")
    networks = data.get("networks") or {}
    if not isinstance(networks, dict):
        raise ConfigurationError("'networks' must be a mapping of chain name to settings")

    chains: List[ChainConfig] = []
    for name in sorted(networks):
        settings = networks[name] or {}
        if not isinstance(settings, dict):
            raise ConfigurationError(f"network {name!r} must be a mapping")
        chains.append(ChainConfig(
            name=str(name),
            rpc_endpoint=Template(_text(settings.get("rpc"))).safe_substitute(environ),
            identity_registry_address=_text(settings.get("identity")),
            reputation_registry_address=_text(settings.get("reputation")) or None,
            validation_registry_address=_text(settings.get("validation")) or None,
        ))
    return chains


def load_chains(path: str, environ: Optional[Mapping[str, str]] = None) -> List[ChainConfig]:
    """Load chain configs from a YAML file. An empty path means no chains."""
    if not path:
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse config {path}: {e}") from e
    chains = parse_networks(data, environ)
    logger.info(f"Loaded {len(chains)} network(s) from {path}")
    return chains


@dataclass
class IndexerSettings:
    """Process-level knobs, normally read from the environment."""
    config_path: str = DEFAULT_CONFIG_PATH
    seeds: List[str] = field(default_factory=list)
    tick_interval: float = 30.0
    poll_interval: float = 15.0
    fetch_timeout: float = 15.0
    gateways: List[str] = field(default_factory=lambda: list(DEFAULT_GATEWAYS))
    reconcile_batch: int = 200
    seed_chain: str = "default"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> IndexerSettings:
        environ = os.environ if environ is None else environ
        defaults = cls()

        def number(key: str, default: float, cast=float):
            raw = environ.get(key)
            if raw is None or not raw.strip():
                return default
            try:
                value = cast(raw)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number, got {raw!r}") from e
            if value <= 0:
                raise ConfigurationError(f"{key} must be positive, got {raw!r}")
            return value

        return cls(
            config_path=environ.get("ERC8004_CONFIG", defaults.config_path),
            seeds=read_seeds_from_env(environ),
            tick_interval=number("INDEXER_TICK_SECONDS", defaults.tick_interval),
            poll_interval=number("INDEXER_POLL_SECONDS", defaults.poll_interval),
            fetch_timeout=number("INDEXER_FETCH_TIMEOUT_SECONDS", defaults.fetch_timeout),
            gateways=_csv(environ.get("IPFS_GATEWAYS")) or defaults.gateways,
            reconcile_batch=number("INDEXER_RECONCILE_BATCH", defaults.reconcile_batch, cast=int),
            seed_chain=_text(environ.get("INDEXER_SEED_CHAIN")) or defaults.seed_chain,
            log_level=_text(environ.get("INDEXER_LOG_LEVEL")).upper() or defaults.log_level,
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "config": self.config_path,
            "seeds": len(self.seeds),
            "tick": self.tick_interval,
            "poll": self.poll_interval,
            "fetchTimeout": self.fetch_timeout,
            "gateways": self.gateways,
        }
