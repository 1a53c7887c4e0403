"""Read-only calls against the privacy pool contract over JSON-RPC."""
from __future__ import annotations

from typing import Optional

import httpx
from eth_abi import decode
from eth_utils import keccak

from shinobi import config
from shinobi.crypto_core.derivation import normalize_pool_address
from shinobi.errors import IndexerError, TransientIndexerError

SCOPE_SELECTOR = "0x" + keccak(text="SCOPE()")[:4].hex()


class PoolContractReader:
    def __init__(
        self,
        rpc_url: str = config.RPC_URL,
        timeout: float = config.HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def eth_call(self, to: str, data: str) -> bytes:
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [{"to": to, "data": data}, "latest"],
        }
        try:
            response = await self._client.post(self.rpc_url, json=request)
        except httpx.TransportError as e:
            raise TransientIndexerError(f"RPC unreachable: {e}") from e
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIndexerError(f"RPC returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise IndexerError(f"RPC returned HTTP {response.status_code}")
        body = response.json()
        if "error" in body:
            raise IndexerError(f"eth_call failed: {body['error']}")
        result = body.get("result") or "0x"
        return bytes.fromhex(result[2:] if result.startswith("0x") else result)

    async def fetch_scope(self, pool_address: str) -> int:
        raw = await self.eth_call(normalize_pool_address(pool_address), SCOPE_SELECTOR)
        if len(raw) < 32:
            raise IndexerError(f"SCOPE() returned {len(raw)} bytes")
        (scope,) = decode(["uint256"], raw[:32])
        return scope
