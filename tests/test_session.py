import pytest

from conftest import (
    ENTRYPOINT,
    ETH,
    FEE_RECIPIENT,
    POOL,
    RECIPIENT,
    FakeIndexer,
    FakeLabelFetcher,
    FakeProver,
    FakeScopeReader,
    deposit_activity,
    foreign_deposit,
    publish_note,
)
from shinobi.crypto_core.accounts import keys_from_mnemonic
from shinobi.crypto_core.notes import to_wei
from shinobi.database.note_store import EncryptedNoteStore
from shinobi.errors import SessionNotInitializedError, StorageError
from shinobi.wallet.discovery import NoteDiscoveryEngine
from shinobi.wallet.session import WalletSession

MNEMONIC = "test test test test test test test test test test test junk"
ITERATIONS = 1000


def make_wallet(indexer=None, labels=None):
    store = EncryptedNoteStore()
    indexer = indexer or FakeIndexer()
    return WalletSession(
        store,
        indexer,
        labels or FakeLabelFetcher(),
        FakeScopeReader(),
        FakeProver(),
        pool_address=POOL,
        entrypoint=ENTRYPOINT,
        fee_recipient=FEE_RECIPIENT,
        discovery=NoteDiscoveryEngine(store, indexer, retry_delay=0),
    )


class TestAccountLifecycle:
    async def test_create_and_unlock(self):
        wallet = make_wallet()
        keys = await wallet.create_account("alice", "pw", ITERATIONS)
        wallet.lock()
        with pytest.raises(SessionNotInitializedError):
            wallet.keys
        unlocked = await wallet.unlock("alice", "pw", ITERATIONS)
        assert unlocked.account_key == keys.account_key

    async def test_wrong_password(self):
        wallet = make_wallet()
        await wallet.create_account("alice", "pw", ITERATIONS)
        wallet.lock()
        with pytest.raises(StorageError):
            await wallet.unlock("alice", "nope", ITERATIONS)

    async def test_duplicate_name_rejected(self):
        wallet = make_wallet()
        await wallet.create_account("alice", "pw", ITERATIONS)
        with pytest.raises(StorageError):
            await wallet.restore_account("Alice", MNEMONIC, "pw", ITERATIONS)

    async def test_new_account_skips_history(self):
        # deposit made by the same phrase before this account existed locally
        indexer = FakeIndexer([foreign_deposit(1)])
        wallet = make_wallet(indexer)
        keys = await wallet.create_account("alice", "pw", ITERATIONS)
        indexer.activities.insert(0, deposit_activity(0, ETH, label=1, key=keys.account_key))
        result = await wallet.sync()
        assert result.note_chains == []

    async def test_restore_scans_history(self):
        key = keys_from_mnemonic(MNEMONIC).account_key
        indexer = FakeIndexer([deposit_activity(0, ETH, label=1, key=key), deposit_activity(1, ETH, label=2, key=key)])
        wallet = make_wallet(indexer)
        await wallet.restore_account("bob", MNEMONIC, "pw", ITERATIONS)
        result = await wallet.sync()
        assert [c.deposit_index for c in result.note_chains] == [0, 1]
        allocation = await wallet.prepare_deposit()
        assert allocation.deposit_index == 2

    async def test_passkey_account(self):
        wallet = make_wallet()
        keys = await wallet.create_passkey_account("carol", "cred-1", b"\x07" * 32)
        wallet.lock()
        assert (await wallet.unlock_with_passkey("carol", b"\x07" * 32)).account_key == keys.account_key
        wallet.lock()
        with pytest.raises(StorageError):
            await wallet.unlock_with_passkey("carol", b"\x08" * 32)


class TestWithdrawalFlow:
    async def test_prepare_and_confirm(self):
        key = keys_from_mnemonic(MNEMONIC).account_key
        indexer = FakeIndexer([deposit_activity(0, ETH, label=9, key=key)])
        labels = FakeLabelFetcher()
        wallet = make_wallet(indexer, labels)
        await wallet.restore_account("bob", MNEMONIC, "pw", ITERATIONS)
        await wallet.sync()

        (note,) = await wallet.unspent_notes()
        publish_note(indexer, labels, note, key=key)
        handoff = await wallet.prepare_withdrawal(note, to_wei("0.4"), RECIPIENT)
        assert handoff.change_note.amount == to_wei("0.6")
        assert len(handoff.relay_calldata) > 4
        assert handoff.contract_proof["pB"] == [[4, 3], [6, 5]]

        chain = await wallet.confirm_withdrawal(handoff, transaction_hash="0xfeed")
        assert chain.tail.change_index == 1
        assert chain.tail.amount == to_wei("0.6")
        assert [n.change_index for n in await wallet.unspent_notes()] == [1]
