"""
Note discovery: rebuild an account's note chains from the activity feed.

The feed is read in ascending pages after the persisted cursor. For every
page we

  1. extend live chains whose tail nullifier hash shows up as a withdrawal,
  2. match derived deposit precommitments against the page's deposits,
  3. merge the touched chains and the new cursor into the store.

Candidate deposit indices are scanned from the lowest index not yet found.
Up to ``gap_limit`` consecutive unused indices are tolerated, and indices
this device reserved recently (pending markers) never count as gaps, so an
abandoned or in-flight deposit does not hide later ones.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from shinobi import config
from shinobi.api.retry import call_with_retry
from shinobi.api.schemas import Activity, ActivityType
from shinobi.crypto_core.derivation import (
    derive_deposit_precommitment,
    derive_note_secrets,
    normalize_pool_address,
    nullifier_hash,
    parse_account_key,
)
from shinobi.crypto_core.notes import Note, NoteChain, NoteStatus
from shinobi.database.note_store import EncryptedNoteStore
from shinobi.errors import OperationAborted
from shinobi.logging_config import get_logger

logger = get_logger("wallet.discovery")


@dataclass
class DiscoveryProgress:
    pages_processed: int = 0
    current_page_activity_count: int = 0
    deposits_checked: int = 0
    deposits_matched: int = 0
    last_cursor: Optional[str] = None
    complete: bool = False


@dataclass
class DiscoveryResult:
    note_chains: List[NoteChain] = field(default_factory=list)
    new_chains_found: int = 0
    last_used_index: int = -1
    cursor: Optional[str] = None
    pages_processed: int = 0

    @property
    def unspent_notes(self) -> List[Note]:
        return [c.tail for c in self.note_chains if c.is_live]


ProgressCallback = Callable[[DiscoveryProgress], None]


def _check_abort(abort: Optional[asyncio.Event]) -> None:
    if abort is not None and abort.is_set():
        raise OperationAborted("note discovery aborted")


class NoteDiscoveryEngine:
    def __init__(
        self,
        store: EncryptedNoteStore,
        indexer,
        page_size: int = config.ACTIVITIES_PER_PAGE,
        gap_limit: int = config.DISCOVERY_GAP_LIMIT,
        max_retries: int = config.INDEXER_MAX_RETRIES,
        retry_delay: float = config.INDEXER_RETRY_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        if gap_limit < 1:
            raise ValueError("gap_limit must be at least 1")
        self.store = store
        self.indexer = indexer
        self.page_size = page_size
        self.gap_limit = gap_limit
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._clock = clock

    async def _call(self, fn, *args, description: str, **kwargs):
        return await call_with_retry(
            fn, *args,
            max_retries=self.max_retries,
            delay=self.retry_delay,
            description=description,
            **kwargs,
        )

    # ===== Chain extension =====

    def _apply_withdrawal(self, chain: NoteChain, withdrawal: Activity) -> NoteChain:
        tail = chain.tail
        withdrawn = withdrawal.amount or 0
        if withdrawn <= 0 or withdrawn > tail.amount:
            logger.warning(
                f"Withdrawal {withdrawal.id} reports amount {withdrawal.amount} for a note of "
                f"{tail.amount}; treating it as a full spend"
            )
            withdrawn = tail.amount
        if withdrawn == 0:
            return NoteChain(notes=chain.notes[:-1] + [tail.mark_spent()])
        return chain.spend(
            withdrawn,
            transaction_hash=withdrawal.transaction_hash,
            block_number=withdrawal.block_number,
            timestamp=withdrawal.timestamp,
        )

    def _tail_nullifier_hash(self, key: int, chain: NoteChain) -> int:
        tail = chain.tail
        nullifier, _ = derive_note_secrets(key, tail.pool_address, tail.deposit_index, tail.change_index)
        return nullifier_hash(nullifier)

    def _extend_from_page(self, key: int, chain: NoteChain, withdrawals: Dict[int, Activity]) -> NoteChain:
        while chain.is_live:
            withdrawal = withdrawals.get(self._tail_nullifier_hash(key, chain))
            if withdrawal is None:
                break
            chain = self._apply_withdrawal(chain, withdrawal)
        return chain

    async def _extend_from_index(self, key: int, chain: NoteChain, abort: Optional[asyncio.Event]) -> NoteChain:
        """Follow the spent-nullifier index until the tail is unspent."""
        while chain.is_live:
            _check_abort(abort)
            withdrawal = await self._call(
                self.indexer.fetch_withdrawal_by_nullifier_hash,
                self._tail_nullifier_hash(key, chain),
                description="Spent nullifier lookup",
            )
            if withdrawal is None:
                break
            chain = self._apply_withdrawal(chain, withdrawal)
        return chain

    # ===== Deposit scan =====

    def _scan_deposits(
        self,
        key: int,
        pool: str,
        known: Dict[int, NoteChain],
        deposits: Dict[int, Activity],
        pending: Dict[int, float],
        precommitments: Dict[int, int],
    ) -> Tuple[List[Tuple[int, Activity]], int]:
        found: List[Tuple[int, Activity]] = []
        checked = 0
        misses = 0
        index = 0
        while misses < self.gap_limit:
            if index in known:
                index += 1
                continue
            pre = precommitments.get(index)
            if pre is None:
                pre = precommitments[index] = derive_deposit_precommitment(key, pool, index)
            checked += 1
            activity = deposits.get(pre)
            if activity is not None:
                found.append((index, activity))
                misses = 0
            elif index not in pending:
                misses += 1
            index += 1
        return found, checked

    @staticmethod
    def _deposit_note(pool: str, index: int, activity: Activity) -> Optional[Note]:
        if activity.label is None or activity.amount is None:
            logger.warning(f"Deposit {activity.id} for index {index} lacks label or amount; skipping")
            return None
        return Note(
            pool_address=pool,
            deposit_index=index,
            change_index=0,
            amount=activity.amount,
            label=activity.label,
            transaction_hash=activity.transaction_hash,
            block_number=activity.block_number,
            timestamp=activity.timestamp,
            status=NoteStatus.UNSPENT if activity.amount > 0 else NoteStatus.SPENT,
        )

    # ===== Public API =====

    async def discover(
        self,
        account_key,
        pool_address: str,
        public_key: str,
        *,
        abort: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DiscoveryResult:
        """
        Bring the note cache for (public_key, pool_address) up to date.

        Raises:
            OperationAborted: abort was set; pages already processed stay persisted
            IndexerUnavailableError: the indexer kept failing transiently
        """
        key = parse_account_key(account_key)
        pool = normalize_pool_address(pool_address)

        cached = await self.store.get_cached_notes(public_key, pool)
        chains: Dict[int, NoteChain] = {c.deposit_index: c for c in cached.note_chains} if cached else {}
        cursor = cached.sync_cursor if cached else None
        pending = cached.live_pending(self._clock()) if cached else {}
        precommitments: Dict[int, int] = {}

        progress = DiscoveryProgress(last_cursor=cursor)
        new_chains = 0
        logger.info(f"Discovery started for pool {pool} from cursor {cursor!r} ({len(chains)} cached chains)")

        while True:
            _check_abort(abort)
            page = await self._call(
                self.indexer.fetch_activities,
                pool,
                limit=self.page_size,
                after=cursor,
                order_direction="asc",
                description="Activity page fetch",
            )
            deposits = {
                a.precommitment_hash: a for a in page.items
                if a.type is ActivityType.DEPOSIT and a.precommitment_hash is not None
            }
            withdrawals = {
                a.spent_nullifier: a for a in page.items
                if a.type is ActivityType.WITHDRAWAL and a.spent_nullifier is not None
            }

            touched: Dict[int, NoteChain] = {}
            for index, chain in list(chains.items()):
                if chain.is_live:
                    extended = self._extend_from_page(key, chain, withdrawals)
                    if extended is not chain:
                        chains[index] = touched[index] = extended

            found, checked = self._scan_deposits(key, pool, chains, deposits, pending, precommitments)
            confirmed: List[int] = []
            for index, activity in found:
                note = self._deposit_note(pool, index, activity)
                if note is None:
                    continue
                chain = self._extend_from_page(key, NoteChain(notes=[note]), withdrawals)
                chain = await self._extend_from_index(key, chain, abort)
                chains[index] = touched[index] = chain
                confirmed.append(index)
                pending.pop(index, None)
                new_chains += 1
                logger.info(f"Found deposit index {index} ({len(chain.notes)} notes)")

            next_cursor = page.page_info.end_cursor or cursor
            await self.store.store_discovered_notes(
                public_key, pool, list(touched.values()), next_cursor, confirmed_indices=confirmed
            )

            progress.pages_processed += 1
            progress.current_page_activity_count = len(page.items)
            progress.deposits_checked += checked
            progress.deposits_matched += len(confirmed)
            progress.last_cursor = next_cursor
            if on_progress:
                on_progress(progress)

            cursor = next_cursor
            if not page.page_info.has_next_page or not page.items:
                break

        progress.complete = True
        if on_progress:
            on_progress(progress)

        final = await self.store.get_cached_notes(public_key, pool)
        result = DiscoveryResult(
            note_chains=final.note_chains if final else sorted(chains.values(), key=lambda c: c.deposit_index),
            new_chains_found=new_chains,
            last_used_index=final.last_used_deposit_index if final else -1,
            cursor=cursor,
            pages_processed=progress.pages_processed,
        )
        logger.info(
            f"Discovery finished for pool {pool}: {result.new_chains_found} new chains, "
            f"{len(result.unspent_notes)} unspent notes, {progress.pages_processed} pages"
        )
        return result
