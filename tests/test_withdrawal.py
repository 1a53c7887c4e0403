import asyncio

import pytest
from eth_abi import decode
from eth_utils import keccak

from conftest import (
    ACCOUNT_KEY,
    ENTRYPOINT,
    ETH,
    FEE_RECIPIENT,
    POOL,
    RECIPIENT,
    SCOPE,
    FakeLabelFetcher,
    FakeProver,
    FakeScopeReader,
    publish_note,
    withdrawal_activity,
)
from shinobi.crypto_core.derivation import NoteRole, derive_nullifier, derive_secret
from shinobi.crypto_core.merkle import MAX_TREE_DEPTH, LeanMerkleTree
from shinobi.crypto_core.notes import Note, NoteStatus, to_wei
from shinobi.errors import (
    CircuitConfigurationError,
    IndexerError,
    InvalidWithdrawalError,
    NoteAlreadySpentError,
    NotFoundInTreeError,
    OperationAborted,
    OperationInProgressError,
    ProofVerificationFailure,
    StaleSnapshotError,
)
from shinobi.wallet.withdrawal import (
    RELAY_SIGNATURE,
    WithdrawalProofBuilder,
    calculate_withdrawal_amounts,
    compute_context,
    create_withdrawal_data,
    encode_relay_call,
    format_proof_for_contract,
)

LABEL = 424242


def make_note(amount=ETH, change_index=0, status=NoteStatus.UNSPENT):
    return Note(pool_address=POOL, deposit_index=0, change_index=change_index, amount=amount,
                label=LABEL, status=status)


@pytest.fixture
def labels():
    return FakeLabelFetcher([11, 12])


@pytest.fixture
def prover():
    return FakeProver()


@pytest.fixture
def builder(indexer, labels, prover):
    return WithdrawalProofBuilder(indexer, labels, FakeScopeReader(), prover)


@pytest.fixture
def withdrawal_data():
    return create_withdrawal_data(ENTRYPOINT, RECIPIENT, FEE_RECIPIENT, 1000)


class TestBuildProof:
    async def test_partial_withdrawal(self, builder, indexer, labels, prover, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note, other_leaves=3)

        stages = []
        result = await builder.build_proof(note, to_wei("0.4"), withdrawal_data, ACCOUNT_KEY,
                                           on_progress=stages.append)

        assert stages == ["fetching", "building_trees", "proving", "verifying", "done"]
        assert result.new_note.change_index == 1
        assert result.new_note.amount == to_wei("0.6")
        assert result.new_note.label == LABEL
        assert result.spent_note.is_spent
        assert result.scope == SCOPE
        assert result.context == compute_context(withdrawal_data, SCOPE)

        inputs = prover.inputs[0]
        assert inputs["withdrawnValue"] == str(to_wei("0.4"))
        assert inputs["existingValue"] == str(ETH)
        assert inputs["label"] == str(LABEL)
        assert inputs["context"] == str(result.context)
        assert inputs["newNullifier"] == str(derive_nullifier(ACCOUNT_KEY, POOL, 0, 1, NoteRole.CHANGE))
        assert inputs["newSecret"] == str(derive_secret(ACCOUNT_KEY, POOL, 0, 1, NoteRole.CHANGE))
        assert len(inputs["stateSiblings"]) == MAX_TREE_DEPTH
        assert len(inputs["ASPSiblings"]) == MAX_TREE_DEPTH
        assert inputs["stateTreeDepth"] == "2"
        assert all(isinstance(v, (str, list)) for v in inputs.values())

    async def test_full_withdrawal_leaves_empty_change(self, builder, indexer, labels, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note)
        result = await builder.build_proof(note, ETH, withdrawal_data, ACCOUNT_KEY)
        assert result.new_note.amount == 0
        assert result.new_note.is_spent

    async def test_single_leaf_trees_use_index_zero(self, indexer, prover, withdrawal_data):
        note = make_note()
        labels = FakeLabelFetcher([])
        publish_note(indexer, labels, note)
        builder = WithdrawalProofBuilder(indexer, labels, FakeScopeReader(), prover)
        await builder.build_proof(note, to_wei("0.1"), withdrawal_data, ACCOUNT_KEY)
        inputs = prover.inputs[0]
        assert inputs["stateIndex"] == "0" and inputs["ASPIndex"] == "0"
        assert inputs["stateTreeDepth"] == "0" and inputs["ASPTreeDepth"] == "0"
        assert set(inputs["stateSiblings"]) == {"0"}

    async def test_change_note_spend(self, builder, indexer, labels, prover, withdrawal_data):
        note = make_note(amount=to_wei("0.6"), change_index=1)
        publish_note(indexer, labels, note)
        result = await builder.build_proof(note, to_wei("0.1"), withdrawal_data, ACCOUNT_KEY)
        assert result.new_note.change_index == 2
        assert prover.inputs[0]["existingNullifier"] == str(
            derive_nullifier(ACCOUNT_KEY, POOL, 0, 1, NoteRole.CHANGE)
        )


class TestPreconditions:
    @pytest.mark.parametrize("amount", [0, -1, ETH + 1])
    async def test_amount_out_of_range(self, builder, withdrawal_data, amount):
        with pytest.raises(InvalidWithdrawalError):
            await builder.build_proof(make_note(), amount, withdrawal_data, ACCOUNT_KEY)

    async def test_spent_note(self, builder, withdrawal_data):
        with pytest.raises(InvalidWithdrawalError):
            await builder.build_proof(make_note(status=NoteStatus.SPENT), 1, withdrawal_data, ACCOUNT_KEY)


class TestFreshSnapshotChecks:
    async def test_commitment_missing(self, builder, indexer, labels, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note)
        indexer.state_leaves = [1, 2, 3]
        with pytest.raises(NotFoundInTreeError):
            await builder.build_proof(note, 1, withdrawal_data, ACCOUNT_KEY)

    async def test_label_not_approved(self, builder, indexer, labels, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note)
        labels.labels.remove(LABEL)
        indexer.asp_root = LeanMerkleTree(labels.labels).root
        with pytest.raises(NotFoundInTreeError):
            await builder.build_proof(note, 1, withdrawal_data, ACCOUNT_KEY)

    async def test_stale_asp_root(self, builder, indexer, labels, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note)
        indexer.asp_root += 1
        with pytest.raises(StaleSnapshotError):
            await builder.build_proof(note, 1, withdrawal_data, ACCOUNT_KEY)

    async def test_already_spent_on_chain(self, builder, indexer, labels, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note)
        indexer.activities.append(withdrawal_activity(0, 0, ETH))
        with pytest.raises(NoteAlreadySpentError):
            await builder.build_proof(note, 1, withdrawal_data, ACCOUNT_KEY)

    async def test_tree_deeper_than_circuit(self, indexer, labels, prover, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note, other_leaves=3)
        builder = WithdrawalProofBuilder(indexer, labels, FakeScopeReader(), prover, max_depth=1)
        with pytest.raises(CircuitConfigurationError):
            await builder.build_proof(note, 1, withdrawal_data, ACCOUNT_KEY)


class TestProverOutcome:
    async def test_verification_failure(self, indexer, labels, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note)
        builder = WithdrawalProofBuilder(indexer, labels, FakeScopeReader(), FakeProver(valid=False))
        with pytest.raises(ProofVerificationFailure):
            await builder.build_proof(note, 1, withdrawal_data, ACCOUNT_KEY)

    async def test_abort(self, builder, indexer, labels, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note)
        abort = asyncio.Event()
        abort.set()
        with pytest.raises(OperationAborted):
            await builder.build_proof(note, 1, withdrawal_data, ACCOUNT_KEY, abort=abort)

    async def test_second_build_rejected_while_first_runs(self, indexer, labels, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note)
        builder = WithdrawalProofBuilder(indexer, labels, FakeScopeReader(), FakeProver(delay=0.05))
        results = await asyncio.gather(
            builder.build_proof(note, 1, withdrawal_data, ACCOUNT_KEY),
            builder.build_proof(note, 2, withdrawal_data, ACCOUNT_KEY),
            return_exceptions=True,
        )
        assert not isinstance(results[0], Exception)
        assert isinstance(results[1], OperationInProgressError)


class BrokenScopeReader:
    async def fetch_scope(self, pool_address):
        raise IndexerError("eth_call reverted")


class TestSnapshotFailure:
    async def test_pending_fetches_cancelled(self, indexer, labels, withdrawal_data):
        note = make_note()
        publish_note(indexer, labels, note)
        started, cancelled = asyncio.Event(), asyncio.Event()

        async def slow_leaves(pool_address):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        indexer.fetch_state_tree_leaves = slow_leaves
        builder = WithdrawalProofBuilder(indexer, labels, BrokenScopeReader(), FakeProver())
        with pytest.raises(IndexerError):
            await builder.build_proof(note, 1, withdrawal_data, ACCOUNT_KEY)
        assert started.is_set() and cancelled.is_set()


class TestContractEncoding:
    def test_withdrawal_data_layout(self, withdrawal_data):
        recipient, fee_recipient, bps = decode(["address", "address", "uint256"], withdrawal_data.data)
        assert recipient.lower() == RECIPIENT.lower()
        assert fee_recipient.lower() == FEE_RECIPIENT.lower()
        assert bps == 1000
        assert withdrawal_data.processooor == ENTRYPOINT

    def test_withdrawal_data_validation(self):
        with pytest.raises(InvalidWithdrawalError):
            create_withdrawal_data(ENTRYPOINT, "0xnope", FEE_RECIPIENT)
        with pytest.raises(InvalidWithdrawalError):
            create_withdrawal_data(ENTRYPOINT, RECIPIENT, FEE_RECIPIENT, 10_001)

    def test_context_bound_to_scope_and_data(self, withdrawal_data):
        other = create_withdrawal_data(ENTRYPOINT, FEE_RECIPIENT, FEE_RECIPIENT, 1000)
        assert compute_context(withdrawal_data, 1) != compute_context(withdrawal_data, 2)
        assert compute_context(withdrawal_data, 1) != compute_context(other, 1)

    def test_pi_b_swapped(self):
        proof = {"pi_a": ["1", "2", "1"], "pi_b": [["3", "4"], ["5", "6"], ["1", "0"]], "pi_c": ["7", "8", "1"]}
        formatted = format_proof_for_contract(proof, [str(i) for i in range(8)])
        assert formatted["pB"] == [[4, 3], [6, 5]]
        assert formatted["pubSignals"] == list(range(8))

    def test_relay_calldata_selector(self, withdrawal_data):
        proof = {"pi_a": ["1", "2", "1"], "pi_b": [["3", "4"], ["5", "6"], ["1", "0"]], "pi_c": ["7", "8", "1"]}
        calldata = encode_relay_call(withdrawal_data, format_proof_for_contract(proof, ["0"] * 8), SCOPE)
        assert calldata[:4] == keccak(text=RELAY_SIGNATURE)[:4]

    def test_fee_split(self):
        amounts = calculate_withdrawal_amounts(10_000, 1000)
        assert amounts["execution_fee"] == 1000
        assert amounts["you_receive"] == 9000

