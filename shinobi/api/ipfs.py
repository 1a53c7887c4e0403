"""Fetch and validate the ASP approval list published on IPFS."""
from __future__ import annotations

from typing import Optional

import httpx
from pydantic import ValidationError

from shinobi import config
from shinobi.api.schemas import AspApprovalList
from shinobi.errors import IndexerError, InvalidLabelListError, TransientIndexerError
from shinobi.logging_config import get_logger

logger = get_logger("api.ipfs")


class LabelListFetcher:
    def __init__(
        self,
        gateway_url: str = config.IPFS_GATEWAY_URL,
        timeout: float = config.HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.gateway_url = gateway_url if gateway_url.endswith("/") else gateway_url + "/"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self, cid: str) -> AspApprovalList:
        if not cid:
            raise InvalidLabelListError("empty IPFS CID")
        url = self.gateway_url + cid
        try:
            response = await self._client.get(url)
        except httpx.TransportError as e:
            raise TransientIndexerError(f"IPFS gateway unreachable: {e}") from e
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIndexerError(f"IPFS gateway returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise IndexerError(f"IPFS fetch of {cid} failed with HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            raise InvalidLabelListError(f"IPFS object {cid} is not JSON") from None
        if not isinstance(payload, dict):
            raise InvalidLabelListError(f"IPFS object {cid} is not a JSON object")
        try:
            approval = AspApprovalList.model_validate(payload)
        except ValidationError as e:
            raise InvalidLabelListError(
                f"IPFS object {cid} has no valid cumulativeApprovedLabels array ({e.error_count()} errors)"
            ) from None
        logger.info(f"Loaded {len(approval.cumulative_approved_labels)} approved labels from {cid}")
        return approval
