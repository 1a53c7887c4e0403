"""
Deposit index allocation.

Another device holding the same mnemonic may already have used the next
index. Before committing to an index we ask the indexer whether a deposit
with that index's precommitment exists, and skip forward if it does.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from eth_abi import encode
from eth_utils import keccak

from shinobi import config
from shinobi.api.retry import call_with_retry
from shinobi.crypto_core.derivation import (
    derive_note_secrets,
    normalize_pool_address,
    parse_account_key,
    precommitment,
)
from shinobi.database.note_store import EncryptedNoteStore
from shinobi.errors import CollisionExhaustedError
from shinobi.logging_config import get_logger
from shinobi.wallet.locks import OperationGuard

logger = get_logger("wallet.allocator")

ALLOCATION = "allocation"
DEPOSIT_SIGNATURE = "deposit(uint256)"


def encode_deposit_call(precommitment_hash: int) -> bytes:
    """Calldata for Entrypoint.deposit(precommitment); the deposited ETH goes in msg.value."""
    return keccak(text=DEPOSIT_SIGNATURE)[:4] + encode(["uint256"], [precommitment_hash])


@dataclass(frozen=True)
class DepositAllocation:
    pool_address: str
    deposit_index: int
    change_index: int
    precommitment: int
    attempts: int

    @property
    def calldata(self) -> bytes:
        return encode_deposit_call(self.precommitment)

    def __repr__(self) -> str:
        return (
            f"DepositAllocation(pool={self.pool_address}, deposit_index={self.deposit_index}, "
            f"attempts={self.attempts})"
        )


class CommitmentAllocator:
    def __init__(
        self,
        store: EncryptedNoteStore,
        indexer,
        guard: Optional[OperationGuard] = None,
        max_retries: int = config.INDEXER_MAX_RETRIES,
        retry_delay: float = config.INDEXER_RETRY_DELAY,
        reservation_ttl: float = config.PENDING_RESERVATION_TTL,
    ):
        """
        Args:
            store: Encrypted store holding the note cache
            indexer: Anything exposing ``fetch_deposit_by_precommitment``
            guard: Shared operation guard (one allocation per account and pool)
            max_retries: Attempts per indexer lookup on transient failures
            retry_delay: Fixed delay between those attempts
            reservation_ttl: Seconds a reserved index counts as pending
        """
        self.store = store
        self.indexer = indexer
        self.guard = guard or OperationGuard()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.reservation_ttl = reservation_ttl

    async def _deposit_exists(self, precommitment_hash: int) -> bool:
        found = await call_with_retry(
            self.indexer.fetch_deposit_by_precommitment,
            precommitment_hash,
            max_retries=self.max_retries,
            delay=self.retry_delay,
            description="Deposit lookup",
        )
        return found is not None

    async def allocate_deposit_index(
        self,
        account_key,
        pool_address: str,
        public_key: str,
        max_attempts: int = config.MAX_ALLOCATION_ATTEMPTS,
    ) -> DepositAllocation:
        """
        Reserve the next collision-free deposit index.

        Raises:
            CollisionExhaustedError: every candidate within max_attempts is taken
            IndexerUnavailableError: the indexer kept failing transiently
        """
        key = parse_account_key(account_key)
        pool = normalize_pool_address(pool_address)

        async with self.guard.hold(ALLOCATION, key, pool):
            first = await self.store.get_next_deposit_index(public_key, pool)
            candidate = first
            for attempt in range(1, max_attempts + 1):
                nullifier, secret = derive_note_secrets(key, pool, candidate, 0)
                pre = precommitment(nullifier, secret)
                if not await self._deposit_exists(pre):
                    await self.store.reserve_deposit_index(public_key, pool, candidate, self.reservation_ttl)
                    logger.info(f"Allocated deposit index {candidate} for pool {pool} (attempt {attempt})")
                    return DepositAllocation(
                        pool_address=pool,
                        deposit_index=candidate,
                        change_index=0,
                        precommitment=pre,
                        attempts=attempt,
                    )
                logger.warning(f"Deposit index {candidate} already used on-chain for pool {pool}, trying next")
                candidate += 1

            raise CollisionExhaustedError(pool, first, max_attempts)
