"""
Withdrawal proof building.

A withdrawal spends one unspent note and creates its change note at
changeIndex + 1. The proof shows the spent commitment is in the pool's state
tree and its label is in the ASP (approved labels) tree, bound to a context
hash over the withdrawal data and the pool scope.

Network snapshots are always fetched fresh: a proof built against a stale
root is rejected on-chain.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from shinobi import config
from shinobi.crypto_core.derivation import (
    NoteRole,
    derive_note_secrets,
    derive_nullifier,
    derive_secret,
    normalize_pool_address,
    nullifier_hash,
    parse_account_key,
)
from shinobi.crypto_core.field import field_from_bytes
from shinobi.crypto_core.merkle import MAX_TREE_DEPTH, LeanMerkleTree, MerkleProof, pad_siblings
from shinobi.crypto_core.notes import Note, NoteStatus, compute_commitment
from shinobi.errors import (
    InvalidWithdrawalError,
    NoteAlreadySpentError,
    NotFoundInTreeError,
    OperationAborted,
    ProofGenerationError,
    ProofVerificationFailure,
    StaleSnapshotError,
)
from shinobi.logging_config import get_logger
from shinobi.wallet.locks import OperationGuard
from shinobi.wallet.prover import Groth16Prover, Proof, PublicSignals

logger = get_logger("wallet.withdrawal")

PROOF_BUILD = "proof"
BPS_DENOMINATOR = 10_000
RELAY_SIGNATURE = "relay((address,bytes),(uint256[2],uint256[2][2],uint256[2],uint256[8]),uint256)"

ProgressCallback = Callable[[str], None]


# ===== Withdrawal data / context =====

@dataclass(frozen=True)
class WithdrawalData:
    processooor: str
    data: bytes

    def as_tuple(self) -> Tuple[str, bytes]:
        return (self.processooor, self.data)


def create_withdrawal_data(
    entrypoint: str,
    recipient: str,
    fee_recipient: str,
    relay_fee_bps: int = config.RELAY_FEE_BPS,
) -> WithdrawalData:
    if not 0 <= relay_fee_bps <= BPS_DENOMINATOR:
        raise InvalidWithdrawalError(f"relay fee {relay_fee_bps} bps out of range")
    try:
        payload = encode(
            ["address", "address", "uint256"],
            [to_checksum_address(recipient), to_checksum_address(fee_recipient), relay_fee_bps],
        )
        return WithdrawalData(processooor=to_checksum_address(entrypoint), data=payload)
    except (ValueError, TypeError) as e:
        raise InvalidWithdrawalError(f"invalid withdrawal address: {e}") from None


def compute_context(withdrawal_data: WithdrawalData, scope: int) -> int:
    """keccak256(abi.encode((processooor, data), scope)) reduced into the field."""
    encoded = encode(["(address,bytes)", "uint256"], [withdrawal_data.as_tuple(), scope])
    return field_from_bytes(keccak(encoded))


def calculate_withdrawal_amounts(withdraw_amount: int, relay_fee_bps: int = config.RELAY_FEE_BPS) -> Dict[str, int]:
    execution_fee = withdraw_amount * relay_fee_bps // BPS_DENOMINATOR
    return {
        "withdraw_amount": withdraw_amount,
        "execution_fee": execution_fee,
        "you_receive": withdraw_amount - execution_fee,
        "relay_fee_bps": relay_fee_bps,
    }


# ===== Contract formatting =====

def format_proof_for_contract(proof: Proof, public_signals: PublicSignals) -> Dict[str, Any]:
    """snarkjs proof -> Solidity verifier layout (pi_b coordinates swapped)."""
    if len(public_signals) < 8:
        raise ProofGenerationError(f"expected 8 public signals, got {len(public_signals)}")
    return {
        "pA": [int(proof["pi_a"][0]), int(proof["pi_a"][1])],
        "pB": [
            [int(proof["pi_b"][0][1]), int(proof["pi_b"][0][0])],
            [int(proof["pi_b"][1][1]), int(proof["pi_b"][1][0])],
        ],
        "pC": [int(proof["pi_c"][0]), int(proof["pi_c"][1])],
        "pubSignals": [int(s) for s in public_signals[:8]],
    }


def encode_relay_call(withdrawal_data: WithdrawalData, contract_proof: Dict[str, Any], scope: int) -> bytes:
    """Calldata for Entrypoint.relay(withdrawal, proof, scope)."""
    selector = keccak(text=RELAY_SIGNATURE)[:4]
    args = encode(
        ["(address,bytes)", "(uint256[2],uint256[2][2],uint256[2],uint256[8])", "uint256"],
        [
            withdrawal_data.as_tuple(),
            (contract_proof["pA"], contract_proof["pB"], contract_proof["pC"], contract_proof["pubSignals"]),
            scope,
        ],
    )
    return selector + args


# ===== Result =====

@dataclass
class WithdrawalProof:
    proof: Proof
    public_signals: PublicSignals
    withdrawal_data: WithdrawalData
    context: int
    scope: int
    spent_note: Note
    new_note: Note
    circuit_inputs: Dict[str, Any]

    def contract_proof(self) -> Dict[str, Any]:
        return format_proof_for_contract(self.proof, self.public_signals)


@dataclass
class _Snapshot:
    state_leaves: List[int]
    asp_root: int
    labels: List[int]
    scope: int


def _check_abort(abort: Optional[asyncio.Event]) -> None:
    if abort is not None and abort.is_set():
        raise OperationAborted("withdrawal proof build aborted")


def build_circuit_inputs(
    *,
    withdrawn_value: int,
    state_proof: MerkleProof,
    asp_proof: MerkleProof,
    context: int,
    label: int,
    existing_value: int,
    existing_nullifier: int,
    existing_secret: int,
    new_nullifier: int,
    new_secret: int,
    max_depth: int = MAX_TREE_DEPTH,
) -> Dict[str, Any]:
    """Assemble the withdraw circuit's input map; every value is a decimal string."""
    def depth(proof: MerkleProof) -> int:
        return len(proof.siblings) if proof.root else 0

    return {
        "withdrawnValue": str(withdrawn_value),
        "stateRoot": str(state_proof.root),
        "stateTreeDepth": str(depth(state_proof)),
        "ASPRoot": str(asp_proof.root),
        "ASPTreeDepth": str(depth(asp_proof)),
        "context": str(context),
        "label": str(label),
        "existingValue": str(existing_value),
        "existingNullifier": str(existing_nullifier),
        "existingSecret": str(existing_secret),
        "newNullifier": str(new_nullifier),
        "newSecret": str(new_secret),
        "stateSiblings": [str(s) for s in pad_siblings(state_proof.siblings, max_depth)],
        "stateIndex": str(state_proof.leaf_index),
        "ASPSiblings": [str(s) for s in pad_siblings(asp_proof.siblings, max_depth)],
        "ASPIndex": str(asp_proof.leaf_index),
    }


class WithdrawalProofBuilder:
    def __init__(
        self,
        indexer,
        label_fetcher,
        scope_reader,
        prover: Groth16Prover,
        guard: Optional[OperationGuard] = None,
        max_depth: int = MAX_TREE_DEPTH,
    ):
        """
        Args:
            indexer: Exposes fetch_state_tree_leaves, fetch_latest_asp_root and
                fetch_withdrawal_by_nullifier_hash
            label_fetcher: Exposes fetch(cid) -> AspApprovalList
            scope_reader: Exposes fetch_scope(pool_address) -> int
            prover: Groth16 prover used for proving and the self-check
            guard: Shared operation guard (one proof build per account and pool)
            max_depth: Circuit's fixed sibling count
        """
        self.indexer = indexer
        self.label_fetcher = label_fetcher
        self.scope_reader = scope_reader
        self.prover = prover
        self.guard = guard or OperationGuard()
        self.max_depth = max_depth

    async def _fetch_asp(self) -> Tuple[int, List[int]]:
        update = await self.indexer.fetch_latest_asp_root()
        approval = await self.label_fetcher.fetch(update.ipfs_cid)
        return update.root, approval.labels

    async def _fetch_snapshot(self, pool: str, spent_hash: int) -> _Snapshot:
        tasks = [
            asyncio.ensure_future(self.indexer.fetch_state_tree_leaves(pool)),
            asyncio.ensure_future(self._fetch_asp()),
            asyncio.ensure_future(self.scope_reader.fetch_scope(pool)),
            asyncio.ensure_future(self.indexer.fetch_withdrawal_by_nullifier_hash(spent_hash)),
        ]
        try:
            leaves, (asp_root, labels), scope, spent = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        if spent is not None:
            raise NoteAlreadySpentError(
                f"note nullifier already spent on-chain (tx {spent.transaction_hash})"
            )
        ordered = [leaf.leaf_value for leaf in sorted(leaves, key=lambda leaf: leaf.leaf_index)]
        return _Snapshot(state_leaves=ordered, asp_root=asp_root, labels=labels, scope=scope)

    def _prepare_inputs(
        self,
        key: int,
        note: Note,
        withdraw_amount: int,
        context: int,
        snapshot: _Snapshot,
    ) -> Dict[str, Any]:
        existing_nullifier, existing_secret = derive_note_secrets(
            key, note.pool_address, note.deposit_index, note.change_index
        )
        commitment = compute_commitment(key, note)

        state_tree = LeanMerkleTree(snapshot.state_leaves)
        asp_tree = LeanMerkleTree(snapshot.labels)
        if asp_tree.root != snapshot.asp_root:
            raise StaleSnapshotError(
                f"ASP label list root {asp_tree.root} does not match indexer root {snapshot.asp_root}"
            )

        state_index = state_tree.index_of(commitment)
        if state_index < 0:
            raise NotFoundInTreeError(
                f"commitment of note ({note.deposit_index}, {note.change_index}) is not in the state tree"
            )
        asp_index = asp_tree.index_of(note.label)
        if asp_index < 0:
            raise NotFoundInTreeError(f"label of note ({note.deposit_index}, {note.change_index}) is not approved")

        new_change_index = note.change_index + 1
        return build_circuit_inputs(
            withdrawn_value=withdraw_amount,
            state_proof=state_tree.generate_proof(state_index),
            asp_proof=asp_tree.generate_proof(asp_index),
            context=context,
            label=note.label,
            existing_value=note.amount,
            existing_nullifier=existing_nullifier,
            existing_secret=existing_secret,
            new_nullifier=derive_nullifier(key, note.pool_address, note.deposit_index, new_change_index, NoteRole.CHANGE),
            new_secret=derive_secret(key, note.pool_address, note.deposit_index, new_change_index, NoteRole.CHANGE),
            max_depth=self.max_depth,
        )

    async def build_proof(
        self,
        existing_note: Note,
        withdraw_amount: int,
        withdrawal_data: WithdrawalData,
        account_key,
        *,
        abort: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> WithdrawalProof:
        """
        Build and self-verify a withdrawal proof for existing_note.

        Raises:
            InvalidWithdrawalError: note spent or amount outside (0, note.amount]
            NoteAlreadySpentError: the indexer already shows the nullifier spent
            StaleSnapshotError: ASP label list and indexer root disagree
            NotFoundInTreeError: commitment or label missing from the fresh trees
            CircuitConfigurationError: a tree is deeper than the circuit allows
            ProofGenerationError: the prover failed
            ProofVerificationFailure: the proof did not verify
            OperationInProgressError: another build holds this account and pool
            OperationAborted: abort was set
        """
        if existing_note.is_spent:
            raise InvalidWithdrawalError("cannot withdraw from a spent note")
        if withdraw_amount <= 0 or withdraw_amount > existing_note.amount:
            raise InvalidWithdrawalError(
                f"withdraw amount {withdraw_amount} outside (0, {existing_note.amount}]"
            )
        key = parse_account_key(account_key)
        pool = normalize_pool_address(existing_note.pool_address)

        def report(stage: str) -> None:
            if on_progress:
                on_progress(stage)

        async with self.guard.hold(PROOF_BUILD, key, pool, wait=False):
            _check_abort(abort)
            report("fetching")
            existing_nullifier, _ = derive_note_secrets(
                key, pool, existing_note.deposit_index, existing_note.change_index
            )
            snapshot = await self._fetch_snapshot(pool, nullifier_hash(existing_nullifier))
            context = compute_context(withdrawal_data, snapshot.scope)

            _check_abort(abort)
            report("building_trees")
            inputs = await asyncio.to_thread(
                self._prepare_inputs, key, existing_note, withdraw_amount, context, snapshot
            )

            _check_abort(abort)
            report("proving")
            proof, public_signals = await self.prover.prove(inputs)

            _check_abort(abort)
            report("verifying")
            if not await self.prover.verify(proof, public_signals):
                raise ProofVerificationFailure(
                    f"proof for note ({existing_note.deposit_index}, {existing_note.change_index}) failed verification"
                )

            new_note = _project_change_note(existing_note, withdraw_amount)
            report("done")
            logger.info(
                f"Withdrawal proof ready for note ({existing_note.deposit_index}, {existing_note.change_index}) "
                f"in pool {pool}"
            )
            return WithdrawalProof(
                proof=proof,
                public_signals=public_signals,
                withdrawal_data=withdrawal_data,
                context=context,
                scope=snapshot.scope,
                spent_note=existing_note.mark_spent(),
                new_note=new_note,
                circuit_inputs=inputs,
            )


def _project_change_note(note: Note, withdraw_amount: int) -> Note:
    remaining = note.amount - withdraw_amount
    return Note(
        pool_address=note.pool_address,
        deposit_index=note.deposit_index,
        change_index=note.change_index + 1,
        amount=remaining,
        label=note.label,
        status=NoteStatus.UNSPENT if remaining > 0 else NoteStatus.SPENT,
    )
