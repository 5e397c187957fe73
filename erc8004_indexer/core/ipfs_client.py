"""
IPFS locator handling for metadata retrieval through public HTTP gateways:
- ipfs://CID[/path] URIs
- bare CIDs (CIDv0 "Qm...", CIDv1 "baf...")
- URLs on well-known gateway hosts (https://ipfs.io/ipfs/CID/...)
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

IPFS_SCHEME = "ipfs://"

DEFAULT_GATEWAYS = [
    "https://ipfs.io/ipfs",
    "https://gateway.pinata.cloud/ipfs",
    "https://dweb.link/ipfs",
]

KNOWN_GATEWAY_HOSTS = [
    "ipfs.io",
    "gateway.pinata.cloud",
    "cloudflare-ipfs.com",
    "dweb.link",
    "ipfs.fleek.co",
]


def is_ipfs_cid(value: str) -> bool:
    """Check if string is an IPFS CID (without ipfs:// prefix)."""
    if not value or not value.isalnum():
        return False
    # CIDv0: base58btc multihash, always 46 characters
    if value.startswith("Qm") and len(value) == 46:
        return True
    # CIDv1 in base32 starts with "baf"; lengths vary with the codec
    if value.startswith("baf") and len(value) >= 8:
        return True
    return False


class IPFSClient:
    """Resolves content-addressed locators to an ordered list of gateway URLs."""

    def __init__(self, gateways: Optional[Sequence[str]] = None):
        """Initialize with gateway base URLs (e.g. "https://ipfs.io/ipfs").

        Args:
            gateways: Ordered gateway bases; blank and duplicate entries are
                dropped. Falls back to DEFAULT_GATEWAYS when nothing remains.
        """
        cleaned: List[str] = []
        for gateway in gateways or []:
            gateway = (gateway or "").strip().rstrip("/")
            if gateway and gateway not in cleaned:
                cleaned.append(gateway)
        self.gateways = cleaned or list(DEFAULT_GATEWAYS)

    @property
    def default_gateway(self) -> str:
        return self.gateways[0]

    def _is_gateway_url(self, url: str) -> bool:
        host = urlparse(url).hostname or ""
        return "/ipfs/" in url and any(host == known or host.endswith("." + known) for known in KNOWN_GATEWAY_HOSTS)

    def content_path(self, locator: str) -> Optional[str]:
        """Return "CID[/path]" for a content-addressed locator, else None."""
        value = (locator or "").strip()
        if value.startswith(IPFS_SCHEME):
            path = value[len(IPFS_SCHEME):].lstrip("/")
            # ipfs://ipfs/CID is a common mistake that gateways reject
            if path.startswith("ipfs/"):
                path = path[len("ipfs/"):]
            return path or None
        if value.startswith(("http://", "https://")):
            if self._is_gateway_url(value):
                path = value.split("/ipfs/", 1)[1].split("?", 1)[0].split("#", 1)[0]
                return path.strip("/") or None
            return None
        if is_ipfs_cid(value.split("/", 1)[0]):
            return value
        return None

    def is_content_addressed(self, locator: str) -> bool:
        return self.content_path(locator) is not None

    def cid(self, locator: str) -> Optional[str]:
        """The CID component of a content-addressed locator."""
        path = self.content_path(locator)
        if path is None:
            return None
        return path.split("/", 1)[0]

    def gateway_urls(self, locator: str) -> List[str]:
        """Every gateway URL for a locator, in configured order."""
        path = self.content_path(locator)
        if path is None:
            return []
        return [f"{gateway}/{path}" for gateway in self.gateways]

    def default_gateway_url(self, locator: str) -> Optional[str]:
        path = self.content_path(locator)
        if path is None:
            return None
        return f"{self.default_gateway}/{path}"
