from __future__ import annotations

import itertools
import logging
from typing import Any

import httpx

from .errors import ChainRPCError
from .types import Receipt

logger = logging.getLogger(__name__)


class ChainClient:
    """Minimal JSON-RPC client for point lookups against an Ethereum node."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = await self._client.post(self.rpc_url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ChainRPCError(f"{method}: malformed response {data!r}")
        if data.get("error"):
            raise ChainRPCError(f"{method}: {data['error']}")
        return data.get("result")

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        """Return the mined receipt for ``tx_hash`` or None if it is not available yet."""
        result = await self.call("eth_getTransactionReceipt", [tx_hash])
        if not isinstance(result, dict):
            return None
        return Receipt(
            transaction_hash=str(result.get("transactionHash") or tx_hash),
            status=_hex_to_int(result.get("status")) == 1,
            block_number=_hex_to_int(result.get("blockNumber")),
        )


def _hex_to_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 16)
    except ValueError:
        return None
