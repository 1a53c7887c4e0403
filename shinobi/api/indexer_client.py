"""
Async GraphQL client for the pool indexer.

Every call goes to the network; nothing is cached, since proofs built on a
stale snapshot are rejected on-chain.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from shinobi import config
from shinobi.api import queries
from shinobi.api.schemas import (
    Activity,
    ActivityPage,
    ActivityType,
    AspRootUpdate,
    PoolStats,
    StateTreeLeaf,
)
from shinobi.errors import IndexerError, TransientIndexerError
from shinobi.logging_config import get_logger

logger = get_logger("api.indexer")

LEAVES_PAGE_SIZE = 1000
_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}

M = TypeVar("M", bound=BaseModel)


def _parse(model: Type[M], payload: Any) -> M:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise IndexerError(f"malformed {model.__name__} from indexer: {e.error_count()} invalid field(s)") from e


class IndexerClient:
    def __init__(
        self,
        url: str = config.INDEXER_URL,
        timeout: float = config.HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "IndexerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ===== Transport =====

    async def query(self, document: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                self.url,
                json={"query": document, "variables": variables or {}},
                headers={"Cache-Control": "no-cache"},
            )
        except httpx.TransportError as e:
            raise TransientIndexerError(f"indexer unreachable: {e}") from e

        if response.status_code in _TRANSIENT_STATUS:
            raise TransientIndexerError(f"indexer returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise IndexerError(f"indexer returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError:
            raise IndexerError("indexer returned non-JSON body") from None
        if body.get("errors"):
            messages = "; ".join(str(err.get("message", err)) for err in body["errors"])
            raise IndexerError(f"GraphQL error: {messages}")
        data = body.get("data")
        if data is None:
            raise IndexerError("GraphQL response has no data")
        return data

    # ===== Activities =====

    async def fetch_activities(
        self,
        pool_address: str,
        limit: int = config.ACTIVITIES_PER_PAGE,
        after: Optional[str] = None,
        order_direction: str = "asc",
    ) -> ActivityPage:
        data = await self.query(
            queries.GET_ACTIVITIES,
            {
                "poolId": pool_address.lower(),
                "limit": limit,
                "after": after,
                "orderDirection": order_direction,
            },
        )
        return _parse(ActivityPage, data.get("activitys") or {})

    async def fetch_deposit_by_precommitment(self, precommitment_hash: int) -> Optional[Activity]:
        data = await self.query(
            queries.GET_DEPOSIT_BY_PRECOMMITMENT, {"precommitmentHash": str(precommitment_hash)}
        )
        items = (data.get("activitys") or {}).get("items") or []
        for item in items:
            activity = _parse(Activity, item)
            if activity.type is ActivityType.DEPOSIT:
                return activity
        return None

    async def fetch_withdrawal_by_nullifier_hash(self, nullifier_hash: int) -> Optional[Activity]:
        data = await self.query(
            queries.GET_WITHDRAWAL_BY_SPENT_NULLIFIER, {"spentNullifier": str(nullifier_hash)}
        )
        items = (data.get("activitys") or {}).get("items") or []
        return _parse(Activity, items[0]) if items else None

    async def is_nullifier_spent(self, nullifier_hash: int) -> bool:
        return await self.fetch_withdrawal_by_nullifier_hash(nullifier_hash) is not None

    # ===== Trees =====

    async def fetch_state_tree_leaves(self, pool_address: str, page_size: int = LEAVES_PAGE_SIZE) -> List[StateTreeLeaf]:
        leaves: List[StateTreeLeaf] = []
        after: Optional[str] = None
        while True:
            data = await self.query(
                queries.GET_STATE_TREE_LEAVES,
                {"poolId": pool_address.lower(), "limit": page_size, "after": after},
            )
            page = data.get("merkleTreeLeafs") or {}
            leaves.extend(_parse(StateTreeLeaf, item) for item in page.get("items") or [])
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage") or not info.get("endCursor"):
                break
            after = info["endCursor"]
        logger.debug(f"Fetched {len(leaves)} state tree leaves")
        return sorted(leaves, key=lambda leaf: leaf.leaf_index)

    async def fetch_latest_asp_root(self) -> AspRootUpdate:
        data = await self.query(queries.GET_LATEST_ASP_ROOT)
        items = (data.get("associationSetUpdates") or {}).get("items") or []
        if not items:
            raise IndexerError("no ASP root has been published yet")
        return _parse(AspRootUpdate, items[0])

    # ===== Pool / health =====

    async def fetch_pool_stats(self, pool_address: str) -> Optional[PoolStats]:
        data = await self.query(queries.GET_POOL_STATS, {"poolId": pool_address.lower()})
        pool = data.get("pool")
        return None if pool is None else _parse(PoolStats, pool)

    async def check_health(self) -> Dict[str, Any]:
        data = await self.query(queries.HEALTH_CHECK)
        return data.get("_meta") or {}
