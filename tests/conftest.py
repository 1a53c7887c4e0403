"""Shared fixtures and in-memory fakes for the indexer, IPFS, RPC and prover."""
from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest
from eth_utils import to_checksum_address

from shinobi.api.schemas import Activity, ActivityPage, ActivityType, AspApprovalList, AspRootUpdate, PageInfo, StateTreeLeaf
from shinobi.crypto_core.derivation import derive_deposit_precommitment, derive_note_secrets, nullifier_hash
from shinobi.crypto_core.merkle import LeanMerkleTree
from shinobi.crypto_core.notes import Note, compute_commitment
from shinobi.database.note_store import EncryptedNoteStore
from shinobi.errors import TransientIndexerError
from shinobi.wallet.prover import Groth16Prover

POOL = to_checksum_address("0x" + "ab" * 20)
OTHER_POOL = to_checksum_address("0x" + "cd" * 20)
ENTRYPOINT = to_checksum_address("0x" + "e1" * 20)
RECIPIENT = to_checksum_address("0x" + "0f" * 20)
FEE_RECIPIENT = to_checksum_address("0x" + "fe" * 20)
ACCOUNT_KEY = 0x1F2E3D4C5B6A79881F2E3D4C5B6A79881F2E3D4C5B6A79881F2E3D4C5B6A7988
PUBLIC_KEY = "0x02" + "33" * 32
ETH = 10 ** 18
SCOPE = 0x5C0FE


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def deposit_activity(index: int, amount: int, label: int, key: int = ACCOUNT_KEY, pool: str = POOL) -> Activity:
    return Activity(
        id=f"deposit-{index}-{label}",
        type=ActivityType.DEPOSIT,
        amount=amount,
        label=label,
        precommitment_hash=derive_deposit_precommitment(key, pool, index),
        transaction_hash="0x" + f"{index:064x}",
        block_number=100 + index,
        timestamp=1_700_000_000 + index,
    )


def foreign_deposit(n: int, amount: int = ETH) -> Activity:
    """Deposit made by somebody else; never matches our derivations."""
    return Activity(
        id=f"foreign-{n}",
        type=ActivityType.DEPOSIT,
        amount=amount,
        label=10_000 + n,
        precommitment_hash=987_654_321 + n,
    )


def withdrawal_activity(
    deposit_index: int,
    change_index: int,
    amount: int,
    key: int = ACCOUNT_KEY,
    pool: str = POOL,
) -> Activity:
    nullifier, _ = derive_note_secrets(key, pool, deposit_index, change_index)
    return Activity(
        id=f"withdrawal-{deposit_index}-{change_index}",
        type=ActivityType.WITHDRAWAL,
        amount=amount,
        spent_nullifier=nullifier_hash(nullifier),
        transaction_hash="0x" + f"{deposit_index:032x}{change_index:032x}",
        block_number=500 + change_index,
        timestamp=1_700_100_000 + change_index,
    )


class FakeIndexer:
    """Activity feed with integer-offset cursors plus the lookups the engines use."""

    def __init__(self, activities: Optional[List[Activity]] = None):
        self.activities: List[Activity] = list(activities or [])
        self.state_leaves: List[int] = []
        self.asp_root: int = 0
        self.asp_cid: str = "bafy-labels"
        self.transient_failures = 0
        self.calls: Dict[str, int] = {}
        self.on_fetch = None

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientIndexerError("simulated 503")

    async def fetch_activities(self, pool_address, limit=100, after=None, order_direction="asc") -> ActivityPage:
        self._count("fetch_activities")
        await asyncio.sleep(0)
        if self.on_fetch:
            self.on_fetch()
        if order_direction == "desc":
            head = str(len(self.activities)) if self.activities else None
            return ActivityPage(items=self.activities[-limit:][::-1], page_info=PageInfo(end_cursor=head))
        start = int(after) if after else 0
        items = self.activities[start:start + limit]
        end = start + len(items)
        return ActivityPage(
            items=items,
            page_info=PageInfo(
                has_next_page=end < len(self.activities),
                end_cursor=str(end) if items else None,
            ),
        )

    async def fetch_deposit_by_precommitment(self, precommitment_hash: int) -> Optional[Activity]:
        self._count("fetch_deposit_by_precommitment")
        await asyncio.sleep(0)
        for activity in self.activities:
            if activity.type is ActivityType.DEPOSIT and activity.precommitment_hash == precommitment_hash:
                return activity
        return None

    async def fetch_withdrawal_by_nullifier_hash(self, value: int) -> Optional[Activity]:
        self._count("fetch_withdrawal_by_nullifier_hash")
        for activity in self.activities:
            if activity.type is ActivityType.WITHDRAWAL and activity.spent_nullifier == value:
                return activity
        return None

    async def fetch_state_tree_leaves(self, pool_address: str) -> List[StateTreeLeaf]:
        self._count("fetch_state_tree_leaves")
        return [StateTreeLeaf(leaf_index=i, leaf_value=v) for i, v in enumerate(self.state_leaves)]

    async def fetch_latest_asp_root(self) -> AspRootUpdate:
        self._count("fetch_latest_asp_root")
        return AspRootUpdate(root=self.asp_root, ipfs_cid=self.asp_cid)


class FakeLabelFetcher:
    def __init__(self, labels: Optional[List[int]] = None):
        self.labels = list(labels or [])

    async def fetch(self, cid: str) -> AspApprovalList:
        return AspApprovalList(cumulative_approved_labels=[str(label) for label in self.labels])


class FakeScopeReader:
    def __init__(self, scope: int = SCOPE):
        self.scope = scope

    async def fetch_scope(self, pool_address: str) -> int:
        return self.scope


class FakeProver(Groth16Prover):
    def __init__(self, valid: bool = True, delay: float = 0.0):
        self.valid = valid
        self.delay = delay
        self.inputs: List[dict] = []

    async def prove(self, inputs):
        self.inputs.append(inputs)
        if self.delay:
            await asyncio.sleep(self.delay)
        proof = {
            "pi_a": ["1", "2", "1"],
            "pi_b": [["3", "4"], ["5", "6"], ["1", "0"]],
            "pi_c": ["7", "8", "1"],
            "protocol": "groth16",
        }
        signals = [inputs["withdrawnValue"], inputs["stateRoot"], inputs["stateTreeDepth"], inputs["ASPRoot"],
                   inputs["ASPTreeDepth"], inputs["context"], "11", "12"]
        return proof, signals

    async def verify(self, proof, public_signals):
        return self.valid


def publish_note(indexer: FakeIndexer, labels: FakeLabelFetcher, note: Note, key: int = ACCOUNT_KEY,
                 other_leaves: int = 0) -> None:
    """Put note's commitment into the state tree and its label into the ASP list."""
    indexer.state_leaves = [1000 + i for i in range(other_leaves)] + [compute_commitment(key, note)]
    if note.label not in labels.labels:
        labels.labels.append(note.label)
    indexer.asp_root = LeanMerkleTree(labels.labels).root


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> EncryptedNoteStore:
    s = EncryptedNoteStore(clock=clock)
    s.initialize_account_session("alice", b"k" * 32)
    return s


@pytest.fixture
def indexer() -> FakeIndexer:
    return FakeIndexer()
