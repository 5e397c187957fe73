"""
Web3 client: the indexer's only door to a chain.

Reads (block number, logs, contract calls) go through one lazily created
AsyncWeb3 instance. Log subscriptions open their own websocket connection so
that tearing a subscription down never disturbs concurrent reads.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from eth_utils import to_checksum_address
from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider

from .models import Address, RawLog

logger = logging.getLogger(__name__)

# Text returned by HTTP-only providers (Infura HTTPS among them) for eth_subscribe.
SUBSCRIPTIONS_UNSUPPORTED = "notifications not supported"


class ChainClientError(Exception):
    """Transport failure against an RPC endpoint. The message is kept verbatim."""


def is_websocket_url(url: str) -> bool:
    return url.startswith(("ws://", "wss://"))


def is_subscription_unsupported(error: BaseException) -> bool:
    """Whether an error means the provider cannot push logs at all.

    This is a string match on provider error text and is only as reliable as
    the providers' wording.
    """
    return SUBSCRIPTIONS_UNSUPPORTED in str(error).lower()


class LogSubscription:
    """A live `eth_subscribe("logs")` stream for one contract address.

    Usage::

        async with client.subscribe_logs(address) as stream:
            async for log in stream:
                ...
    """

    def __init__(self, rpc_url: str, address: Address):
        self.rpc_url = rpc_url
        self.address = to_checksum_address(address)
        self._w3: Optional[AsyncWeb3] = None
        self._subscription_id: Optional[str] = None

    async def open(self) -> None:
        """Connect and subscribe. Raises ChainClientError on any failure."""
        if not is_websocket_url(self.rpc_url):
            raise ChainClientError(f"{SUBSCRIPTIONS_UNSUPPORTED} over {self.rpc_url.split(':', 1)[0]}")
        try:
            self._w3 = await AsyncWeb3(WebSocketProvider(self.rpc_url))
            self._subscription_id = await self._w3.eth.subscribe("logs", {"address": self.address})
        except Exception as e:
            await self.close()
            raise ChainClientError(str(e)) from e
        except BaseException:
            # Cancelled mid-handshake: drop the socket before propagating.
            await self.close()
            raise
        logger.debug(f"Subscribed to logs of {self.address}: {self._subscription_id}")

    def __aiter__(self) -> AsyncIterator[RawLog]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RawLog]:
        if self._w3 is None:
            raise ChainClientError("subscription is not open")
        try:
            async for payload in self._w3.socket.process_subscriptions():
                if payload.get("subscription") != self._subscription_id:
                    continue
                result = payload.get("result")
                if result:
                    yield RawLog.from_web3(result)
        except ChainClientError:
            raise
        except Exception as e:
            raise ChainClientError(str(e)) from e

    async def close(self) -> None:
        """Unsubscribe and drop the websocket connection."""
        w3, self._w3 = self._w3, None
        if w3 is None:
            return
        try:
            if self._subscription_id is not None:
                await w3.eth.unsubscribe(self._subscription_id)
        except Exception as e:
            logger.debug(f"Unsubscribe failed for {self.address}: {e}")
        finally:
            self._subscription_id = None
            await w3.provider.disconnect()

    async def __aenter__(self) -> LogSubscription:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class Web3Client:
    """Read access to one network plus log subscriptions."""

    def __init__(self, rpc_url: str, request_timeout: float = 15.0):
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self._w3: Optional[AsyncWeb3] = None
        self._contracts: Dict[tuple, Any] = {}

    @classmethod
    async def dial(cls, rpc_url: str, request_timeout: float = 15.0) -> Web3Client:
        """Create a client and open its read connection."""
        client = cls(rpc_url, request_timeout=request_timeout)
        await client._connection()
        return client

    @property
    def supports_subscriptions(self) -> bool:
        return is_websocket_url(self.rpc_url)

    async def _connection(self) -> AsyncWeb3:
        if self._w3 is None:
            try:
                if is_websocket_url(self.rpc_url):
                    self._w3 = await AsyncWeb3(WebSocketProvider(self.rpc_url))
                else:
                    self._w3 = AsyncWeb3(
                        AsyncHTTPProvider(
                            self.rpc_url,
                            request_kwargs={"timeout": self.request_timeout},
                        )
                    )
            except Exception as e:
                raise ChainClientError(f"Failed to connect to {self.rpc_url}: {e}") from e
        return self._w3

    def normalize_address(self, address: str) -> Address:
        return to_checksum_address(address)

    def subscribe_logs(self, address: Address) -> LogSubscription:
        return LogSubscription(self.rpc_url, address)

    async def block_number(self) -> int:
        w3 = await self._connection()
        try:
            return int(await w3.eth.block_number)
        except Exception as e:
            raise ChainClientError(f"eth_blockNumber failed: {e}") from e

    async def get_logs(self, address: Address, from_block: int, to_block: int) -> List[RawLog]:
        """Logs emitted by `address` in [from_block, to_block], in chain order."""
        w3 = await self._connection()
        try:
            entries = await w3.eth.get_logs({
                "address": to_checksum_address(address),
                "fromBlock": from_block,
                "toBlock": to_block,
            })
        except Exception as e:
            raise ChainClientError(f"eth_getLogs {from_block}-{to_block} failed: {e}") from e
        logs = [RawLog.from_web3(entry) for entry in entries]
        logs.sort(key=lambda log: (log.block_number, log.log_index or 0))
        return logs

    async def call_contract(self, address: Address, abi: List[Dict[str, Any]], method: str, *args: Any) -> Any:
        """Call a view function and return web3's decoded output."""
        w3 = await self._connection()
        checksum = to_checksum_address(address)
        cache_key = (checksum, id(abi))
        contract = self._contracts.get(cache_key)
        if contract is None:
            contract = w3.eth.contract(address=checksum, abi=abi)
            self._contracts[cache_key] = contract
        try:
            return await getattr(contract.functions, method)(*args).call()
        except Exception as e:
            raise ChainClientError(f"{method} call failed: {e}") from e

    async def close(self) -> None:
        """Close the read connection."""
        w3, self._w3 = self._w3, None
        self._contracts.clear()
        if w3 is not None and hasattr(w3.provider, "disconnect"):
            await w3.provider.disconnect()
