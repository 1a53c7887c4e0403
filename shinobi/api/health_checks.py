#!/usr/bin/env python3
"""
Health checks for the wallet's external dependencies
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from shinobi.api.indexer_client import IndexerClient
from shinobi.errors import ShinobiError
from shinobi.logging_config import get_logger

logger = get_logger("health")


async def check_indexer_health(indexer: IndexerClient) -> Dict[str, Any]:
    """
    Check indexer connectivity

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    start = time.time()
    try:
        meta = await indexer.check_health()
    except (ShinobiError, httpx.HTTPError) as e:
        logger.error(f"Indexer health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
    return {
        "status": "healthy",
        "response_time_ms": round((time.time() - start) * 1000, 2),
        "meta": meta,
    }


async def check_rpc_health(rpc_url: str) -> Dict[str, Any]:
    """
    Check Ethereum JSON-RPC connectivity

    Args:
        rpc_url: JSON-RPC endpoint URL

    Returns:
        dict with status, response_time_ms, block_number and error (if any)
    """
    start = time.time()
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(
                rpc_url,
                json={"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []}
            )
            response.raise_for_status()
            block = int(response.json()["result"], 16)
    except (httpx.HTTPError, KeyError, ValueError) as e:
        logger.error(f"RPC health check failed: {e}")
        return {"status": "unhealthy", "error": str(e), "rpc_url": rpc_url}
    return {
        "status": "healthy",
        "response_time_ms": round((time.time() - start) * 1000, 2),
        "block_number": block,
        "rpc_url": rpc_url,
    }


async def comprehensive_health_check(
    indexer: IndexerClient,
    rpc_url: Optional[str] = None
) -> Dict[str, Any]:
    """
    Check every configured dependency

    Returns:
        dict with overall status and component statuses
    """
    checks = {"indexer": await check_indexer_health(indexer)}
    checks["rpc"] = await check_rpc_health(rpc_url) if rpc_url else {"status": "not_configured"}

    healthy = all(c.get("status") in ("healthy", "not_configured") for c in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
