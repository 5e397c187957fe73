"""
Metadata fetcher: resolves an agent locator to its agent-card JSON document.

Locator forms, in order of interpretation:

1. Content-addressed (ipfs://CID, bare CID, known gateway URL): every configured
   gateway is tried in order; the first HTTP 200 JSON object wins.
2. http(s) URL: the well-known agent-card path is appended unless present.
3. Bare domain: treated as http://<domain> and then as (2).
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import aiohttp

from .ipfs_client import IPFSClient

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/agent-card.json"
DATA_URI_PREFIX = "data:application/json;base64,"

# Locator keys for content-addressed documents without a usable name.
CID_KEY_LENGTH = 12
CONTENT_ADDRESSED_KEY_SUFFIX = ".ipfs"


class FetchFailure(Enum):
    INVALID_LOCATOR = "invalid-locator"
    TRANSPORT = "transport"
    HTTP_STATUS = "http-status"
    DECODE = "decode"
    EXHAUSTED_GATEWAYS = "exhausted-gateways"


class FetchError(Exception):
    """A locator could not be turned into a JSON object document."""

    def __init__(self, reason: FetchFailure, locator: str, detail: str = ""):
        self.reason = reason
        self.locator = locator
        self.detail = detail
        message = f"{reason.value}: {locator}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


def is_http_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def well_known_url(locator: str) -> str:
    """Agent-card URL for an http(s) URL or a bare domain."""
    url = locator.strip()
    if not is_http_url(url):
        url = f"http://{url}"
    if urlparse(url).path.endswith(WELL_KNOWN_PATH):
        return url
    return url.rstrip("/") + WELL_KNOWN_PATH


def slugify(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


class MetadataFetcher:
    """Fetches agent cards and registration documents over HTTP."""

    def __init__(
        self,
        gateways: Optional[Sequence[str]] = None,
        timeout: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            gateways: IPFS gateway base URLs, tried in order.
            timeout: Per-attempt timeout in seconds.
            session: Shared aiohttp session; created lazily (and owned) when omitted.
            logger: Logger for fetch diagnostics.
        """
        self.ipfs = IPFSClient(gateways)
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self._session = session
        self._owns_session = session is None

    @property
    def gateways(self) -> List[str]:
        return list(self.ipfs.gateways)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _get_json(self, url: str) -> Dict[str, Any]:
        """Single GET returning a JSON object. Raises FetchError."""
        session = await self._get_session()
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                if response.status != 200:
                    raise FetchError(FetchFailure.HTTP_STATUS, url, f"HTTP {response.status}")
                try:
                    content = await response.json(content_type=None)
                except ValueError as e:
                    raise FetchError(FetchFailure.DECODE, url, str(e)) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(FetchFailure.TRANSPORT, url, str(e) or type(e).__name__) from e

        if not isinstance(content, dict):
            raise FetchError(FetchFailure.DECODE, url, f"expected a JSON object, got {type(content).__name__}")
        return content

    async def fetch(self, locator: str) -> Dict[str, Any]:
        """Fetch the agent card a locator points at."""
        value = (locator or "").strip()
        if not value:
            raise FetchError(FetchFailure.INVALID_LOCATOR, locator or "")

        try:
            gateway_urls = self.ipfs.gateway_urls(value)
            card_url = None if gateway_urls else well_known_url(value)
        except ValueError as e:
            raise FetchError(FetchFailure.INVALID_LOCATOR, value, str(e)) from e

        if gateway_urls:
            failures = []
            for url in gateway_urls:
                try:
                    document = await self._get_json(url)
                except FetchError as e:
                    self.logger.debug(f"Gateway attempt failed: {e}")
                    failures.append(e.reason.value)
                    continue
                self.logger.debug(f"Fetched {value} via {url}")
                return document
            raise FetchError(
                FetchFailure.EXHAUSTED_GATEWAYS, value, f"{len(gateway_urls)} gateways: {', '.join(failures)}"
            )

        return await self._get_json(card_url)

    async def fetch_json(self, uri: str) -> Dict[str, Any]:
        """Plain GET + JSON decode of an arbitrary document URI.

        No well-known path rewriting happens here. Content-addressed URIs go
        through the primary gateway only, and inline base64 data URIs are
        decoded without a request.
        """
        value = (uri or "").strip()
        if not value:
            raise FetchError(FetchFailure.INVALID_LOCATOR, uri or "")

        if value.startswith(DATA_URI_PREFIX):
            return self._decode_data_uri(value)

        if not is_http_url(value):
            try:
                gateway_url = self.ipfs.default_gateway_url(value)
            except ValueError as e:
                raise FetchError(FetchFailure.INVALID_LOCATOR, value, str(e)) from e
            if gateway_url is None:
                raise FetchError(FetchFailure.INVALID_LOCATOR, value, "unsupported URI scheme")
            value = gateway_url

        return await self._get_json(value)

    def _decode_data_uri(self, uri: str) -> Dict[str, Any]:
        payload = uri[len(DATA_URI_PREFIX):]
        try:
            content = json.loads(base64.b64decode(payload, validate=True))
        except (binascii.Error, ValueError) as e:
            raise FetchError(FetchFailure.DECODE, uri[:64], str(e)) from e
        if not isinstance(content, dict):
            raise FetchError(FetchFailure.DECODE, uri[:64], "expected a JSON object")
        return content

    def locator_key(self, locator: str, document: Dict[str, Any]) -> str:
        """Storage-stable key for a fetched locator.

        Content-addressed: the document name as a slug, else a CID prefix with
        an ".ipfs" suffix. HTTP and bare domains: the host[:port].

        Raises:
            FetchError: the locator does not parse as a URL.
        """
        value = locator.strip()
        try:
            cid = self.ipfs.cid(value)
            if cid:
                return slugify(document.get("name")) or f"{cid[:CID_KEY_LENGTH]}{CONTENT_ADDRESSED_KEY_SUFFIX}"
            url = value if is_http_url(value) else f"http://{value}"
            return urlparse(url).netloc or value
        except ValueError as e:
            raise FetchError(FetchFailure.INVALID_LOCATOR, value, str(e)) from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> MetadataFetcher:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
