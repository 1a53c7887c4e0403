"""
Wallet session: ties account keys, the encrypted store and the engines
together for one pool.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from shinobi import config
from shinobi.crypto_core.accounts import AccountKeys, generate_account, keys_from_mnemonic
from shinobi.crypto_core.derivation import normalize_pool_address
from shinobi.crypto_core.field_encryption import hash_pubkey
from shinobi.crypto_core.notes import Note, NoteChain
from shinobi.database.note_store import EncryptedNoteStore
from shinobi.database.records import AccountRecord, CachedNoteData, PasskeyRecord
from shinobi.errors import IndexerError, InvalidWithdrawalError, SessionNotInitializedError, StorageError
from shinobi.logging_config import get_logger
from shinobi.wallet.allocator import CommitmentAllocator, DepositAllocation
from shinobi.wallet.discovery import DiscoveryResult, NoteDiscoveryEngine, ProgressCallback
from shinobi.wallet.locks import OperationGuard
from shinobi.wallet.prover import Groth16Prover
from shinobi.wallet.withdrawal import (
    WithdrawalData,
    WithdrawalProofBuilder,
    create_withdrawal_data,
    encode_relay_call,
)

logger = get_logger("wallet.session")


@dataclass
class WithdrawalHandoff:
    """Everything the submission layer needs; nothing here is secret."""

    proof: dict
    public_signals: List[str]
    withdrawal_data: WithdrawalData
    scope: int
    contract_proof: dict
    relay_calldata: bytes
    spent_note: Note
    change_note: Note


class WalletSession:
    def __init__(
        self,
        store: EncryptedNoteStore,
        indexer,
        label_fetcher,
        scope_reader,
        prover: Groth16Prover,
        pool_address: str = config.POOL_ADDRESS,
        entrypoint: str = config.ENTRYPOINT_ADDRESS,
        fee_recipient: str = config.FEE_RECIPIENT_ADDRESS,
        relay_fee_bps: int = config.RELAY_FEE_BPS,
        discovery: Optional[NoteDiscoveryEngine] = None,
    ):
        self.store = store
        self.indexer = indexer
        self.pool_address = normalize_pool_address(pool_address)
        self.entrypoint = entrypoint
        self.fee_recipient = fee_recipient
        self.relay_fee_bps = relay_fee_bps
        self.guard = OperationGuard()
        self.allocator = CommitmentAllocator(store, indexer, guard=self.guard)
        self.discovery = discovery or NoteDiscoveryEngine(store, indexer)
        self.builder = WithdrawalProofBuilder(indexer, label_fetcher, scope_reader, prover, guard=self.guard)
        self._keys: Optional[AccountKeys] = None

    # ===== Accounts =====

    @property
    def keys(self) -> AccountKeys:
        if self._keys is None or not self.store.session_active:
            raise SessionNotInitializedError("wallet is locked")
        return self._keys

    async def create_account(self, account_name: str, password: str, iterations: Optional[int] = None) -> AccountKeys:
        """New random account; sync starts from the indexer's current head."""
        if await self.store.account_exists(account_name):
            raise StorageError(f"account '{account_name}' already exists")
        keys = generate_account()
        await self._open(account_name, password, keys, iterations)
        await self._initialize_sync_baseline()
        return keys

    async def restore_account(
        self,
        account_name: str,
        mnemonic: Union[str, List[str]],
        password: str,
        iterations: Optional[int] = None,
    ) -> AccountKeys:
        """Existing phrase; the first sync scans the full history."""
        if await self.store.account_exists(account_name):
            raise StorageError(f"account '{account_name}' already exists")
        keys = keys_from_mnemonic(mnemonic)
        await self._open(account_name, password, keys, iterations)
        return keys

    async def _open(self, account_name: str, password: str, keys: AccountKeys, iterations: Optional[int]) -> None:
        await self.store.unlock_with_password(account_name, password, iterations)
        await self.store.store_account(AccountRecord(account_name=account_name, mnemonic=keys.mnemonic))
        self._keys = keys
        logger.info(f"Account '{account_name}' ready ({keys.address})")

    async def unlock(self, account_name: str, password: str, iterations: Optional[int] = None) -> AccountKeys:
        await self.store.unlock_with_password(account_name, password, iterations)
        return await self._load_keys()

    async def unlock_with_passkey(self, account_name: str, prf_output: bytes) -> AccountKeys:
        if await self.store.get_passkey(account_name) is None:
            raise StorageError(f"no passkey registered for '{account_name}'")
        self.store.unlock_with_passkey(account_name, prf_output)
        return await self._load_keys()

    async def create_passkey_account(self, account_name: str, credential_id: str, prf_output: bytes) -> AccountKeys:
        """New account whose session key comes from a passkey PRF output instead of a password."""
        if await self.store.account_exists(account_name):
            raise StorageError(f"account '{account_name}' already exists")
        keys = generate_account()
        self.store.unlock_with_passkey(account_name, prf_output)
        await self.store.store_account(AccountRecord(account_name=account_name, mnemonic=keys.mnemonic))
        await self.store.store_passkey(PasskeyRecord(
            account_name=account_name,
            credential_id=credential_id,
            public_key_hash=hash_pubkey(keys.public_key),
        ))
        self._keys = keys
        await self._initialize_sync_baseline()
        return keys

    async def _load_keys(self) -> AccountKeys:
        try:
            record = await self.store.get_account()
        except StorageError:
            self.store.clear_session()
            raise
        if record is None:
            self.store.clear_session()
            raise StorageError("account record not found")
        self._keys = keys_from_mnemonic(record.mnemonic)
        return self._keys

    def lock(self) -> None:
        self._keys = None
        self.store.clear_session()

    async def _initialize_sync_baseline(self) -> None:
        try:
            page = await self.indexer.fetch_activities(self.pool_address, limit=1, order_direction="desc")
        except IndexerError as e:
            logger.warning(f"Could not read the indexer head, first sync will scan full history: {e}")
            return
        await self.store.initialize_sync_baseline(
            self.keys.public_key, self.pool_address, page.page_info.end_cursor
        )

    # ===== Notes =====

    async def sync(
        self,
        abort: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DiscoveryResult:
        keys = self.keys
        return await self.discovery.discover(
            keys.account_key, self.pool_address, keys.public_key, abort=abort, on_progress=on_progress
        )

    async def note_chains(self) -> List[NoteChain]:
        cached = await self.store.get_cached_notes(self.keys.public_key, self.pool_address)
        return cached.note_chains if cached else []

    async def unspent_notes(self) -> List[Note]:
        return [c.tail for c in await self.note_chains() if c.is_live]

    async def prepare_deposit(self) -> DepositAllocation:
        keys = self.keys
        return await self.allocator.allocate_deposit_index(keys.account_key, self.pool_address, keys.public_key)

    async def prepare_withdrawal(
        self,
        note: Note,
        amount: int,
        recipient: str,
        abort: Optional[asyncio.Event] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> WithdrawalHandoff:
        keys = self.keys
        withdrawal_data = create_withdrawal_data(self.entrypoint, recipient, self.fee_recipient, self.relay_fee_bps)
        result = await self.builder.build_proof(
            note, amount, withdrawal_data, keys.account_key, abort=abort, on_progress=on_progress
        )
        contract_proof = result.contract_proof()
        return WithdrawalHandoff(
            proof=result.proof,
            public_signals=result.public_signals,
            withdrawal_data=withdrawal_data,
            scope=result.scope,
            contract_proof=contract_proof,
            relay_calldata=encode_relay_call(withdrawal_data, contract_proof, result.scope),
            spent_note=result.spent_note,
            change_note=result.new_note,
        )

    async def confirm_withdrawal(
        self,
        handoff: WithdrawalHandoff,
        transaction_hash: Optional[str] = None,
        block_number: Optional[int] = None,
        timestamp: Optional[int] = None,
    ) -> NoteChain:
        """Record a landed withdrawal locally without waiting for the next sync."""
        spent = handoff.spent_note
        withdrawn = spent.amount - handoff.change_note.amount

        def apply(data: CachedNoteData) -> CachedNoteData:
            chain = data.chain_for(spent.deposit_index)
            if chain is None or chain.tail.change_index != spent.change_index or not chain.is_live:
                raise InvalidWithdrawalError(
                    f"note ({spent.deposit_index}, {spent.change_index}) is not the live tail of its chain"
                )
            updated = chain.spend(withdrawn, transaction_hash, block_number, timestamp)
            return data.merged_with([updated])

        data = await self.store.update_note_cache(self.keys.public_key, self.pool_address, apply)
        return data.chain_for(spent.deposit_index)  # type: ignore[return-value]
