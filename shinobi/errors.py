"""Error taxonomy for the wallet core."""
from __future__ import annotations


class ShinobiError(Exception):
    """Base class for every error raised by the wallet core."""


class DerivationError(ShinobiError):
    """Account key or pool address material is malformed."""


class CollisionExhaustedError(ShinobiError):
    """No free deposit index was found within the attempt budget."""

    def __init__(self, pool_address: str, first_index: int, attempts: int):
        self.pool_address = pool_address
        self.first_index = first_index
        self.attempts = attempts
        super().__init__(
            f"deposit index allocation exhausted for pool {pool_address}: "
            f"indices {first_index}..{first_index + attempts - 1} are all taken"
        )


class NotFoundInTreeError(ShinobiError):
    """Commitment or label is absent from the freshly built tree."""


class StaleSnapshotError(ShinobiError):
    """Local ASP tree root does not match the indexer's latest root."""


class NoteAlreadySpentError(ShinobiError):
    """The note's nullifier has already been published on-chain."""


class InvalidWithdrawalError(ShinobiError):
    """A withdrawal request violates its preconditions."""


class CircuitConfigurationError(ShinobiError):
    """Tree data does not fit the circuit's fixed input layout."""


class ProofGenerationError(ShinobiError):
    """The prover failed to produce a proof."""


class ProofVerificationFailure(ShinobiError):
    """A generated proof did not verify against the verification key."""


class StorageError(ShinobiError):
    """Encrypted storage could not be read or written."""


class SessionNotInitializedError(StorageError):
    """The store was used before a session key was installed."""


class IndexerError(ShinobiError):
    """The indexer returned an unusable response."""


class TransientIndexerError(IndexerError):
    """Network-level or overload failure worth retrying."""


class IndexerUnavailableError(IndexerError):
    """Raised when an indexer call fails after all retries"""


class InvalidLabelListError(IndexerError):
    """The ASP label list fetched from IPFS has an unexpected shape."""


class OperationInProgressError(ShinobiError):
    """Another operation already holds the guard for this account and pool."""


class OperationAborted(ShinobiError):
    """The caller's abort signal was set."""
