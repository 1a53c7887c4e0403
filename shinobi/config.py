"""
Runtime configuration for the wallet core.

Every value can be overridden through the environment; defaults target a
local development setup.
"""
from __future__ import annotations

import os
from pathlib import Path

# ===== Indexer / network =====
INDEXER_URL = os.getenv("SHINOBI_INDEXER_URL", "http://localhost:42069/graphql")
IPFS_GATEWAY_URL = os.getenv("SHINOBI_IPFS_GATEWAY_URL", "https://gateway.pinata.cloud/ipfs/")
RPC_URL = os.getenv("SHINOBI_RPC_URL", "http://127.0.0.1:8545")
HTTP_TIMEOUT = float(os.getenv("SHINOBI_HTTP_TIMEOUT", "30"))

INDEXER_MAX_RETRIES = int(os.getenv("SHINOBI_INDEXER_MAX_RETRIES", "3"))
INDEXER_RETRY_DELAY = float(os.getenv("SHINOBI_INDEXER_RETRY_DELAY", "1.0"))

# ===== Contracts =====
POOL_ADDRESS = os.getenv("SHINOBI_POOL_ADDRESS", "")
ENTRYPOINT_ADDRESS = os.getenv("SHINOBI_ENTRYPOINT_ADDRESS", "")
FEE_RECIPIENT_ADDRESS = os.getenv("SHINOBI_FEE_RECIPIENT_ADDRESS", "")
RELAY_FEE_BPS = int(os.getenv("SHINOBI_RELAY_FEE_BPS", "1000"))

# ===== Storage =====
DATA_DIR = Path(os.getenv("SHINOBI_DATA_DIR", str(Path.home() / ".shinobi")))
DATABASE_URL = os.getenv("SHINOBI_DATABASE_URL", f"sqlite+aiosqlite:///{DATA_DIR / 'wallet.db'}")
PBKDF2_ITERATIONS = int(os.getenv("SHINOBI_PBKDF2_ITERATIONS", "310000"))
SESSION_TIMEOUT_SECONDS = int(os.getenv("SHINOBI_SESSION_TIMEOUT", str(24 * 60 * 60)))

# ===== Circuit artifacts =====
CIRCUIT_WASM = os.getenv("SHINOBI_CIRCUIT_WASM", "circuits/build/withdraw/withdraw.wasm")
CIRCUIT_ZKEY = os.getenv("SHINOBI_CIRCUIT_ZKEY", "circuits/keys/withdraw.zkey")
CIRCUIT_VKEY = os.getenv("SHINOBI_CIRCUIT_VKEY", "circuits/keys/withdraw.vkey")
SNARKJS_BIN = os.getenv("SHINOBI_SNARKJS_BIN", "snarkjs")
PROVER_TIMEOUT = float(os.getenv("SHINOBI_PROVER_TIMEOUT", "300"))

# ===== Discovery / allocation =====
ACTIVITIES_PER_PAGE = int(os.getenv("SHINOBI_ACTIVITIES_PER_PAGE", "100"))
DISCOVERY_GAP_LIMIT = int(os.getenv("SHINOBI_DISCOVERY_GAP_LIMIT", "3"))
PENDING_RESERVATION_TTL = int(os.getenv("SHINOBI_PENDING_RESERVATION_TTL", "3600"))
MAX_ALLOCATION_ATTEMPTS = int(os.getenv("SHINOBI_MAX_ALLOCATION_ATTEMPTS", "5"))

LOG_LEVEL = os.getenv("SHINOBI_LOG_LEVEL", "INFO")
