"""
Note and note-chain model.

A chain groups every note that descends from one deposit. Change indices run
0, 1, 2, ... without gaps; only the tail may be unspent.
"""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shinobi.crypto_core.derivation import derive_note_secrets, precommitment
from shinobi.crypto_core.poseidon import poseidon3

WEI_PER_ETH = 10 ** 18


class NoteStatus(str, Enum):
    UNSPENT = "unspent"
    SPENT = "spent"


class Note(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    pool_address: str = Field(..., description="Pool contract address")
    deposit_index: int = Field(..., ge=0)
    change_index: int = Field(..., ge=0)
    amount: int = Field(..., ge=0, description="Value in wei")
    label: int = Field(..., ge=0, description="Label assigned by the pool at deposit time")
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    timestamp: Optional[int] = None
    status: NoteStatus = NoteStatus.UNSPENT

    @property
    def key(self) -> Tuple[int, int]:
        return (self.deposit_index, self.change_index)

    @property
    def is_spent(self) -> bool:
        return self.status is NoteStatus.SPENT

    def mark_spent(self) -> "Note":
        return self.model_copy(update={"status": NoteStatus.SPENT})


class NoteChain(BaseModel):
    notes: List[Note] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_invariants(self) -> "NoteChain":
        deposit_index = self.notes[0].deposit_index
        for i, note in enumerate(self.notes):
            if note.deposit_index != deposit_index:
                raise ValueError("all notes in a chain must share deposit_index")
            if note.change_index != i:
                raise ValueError(f"change indices must run 0..n-1 without gaps (got {note.change_index} at {i})")
            if i < len(self.notes) - 1 and not note.is_spent:
                raise ValueError("only the last note of a chain may be unspent")
        return self

    @property
    def deposit_index(self) -> int:
        return self.notes[0].deposit_index

    @property
    def pool_address(self) -> str:
        return self.notes[0].pool_address

    @property
    def tail(self) -> Note:
        return self.notes[-1]

    @property
    def is_live(self) -> bool:
        return not self.tail.is_spent

    @property
    def balance(self) -> int:
        return 0 if self.tail.is_spent else self.tail.amount

    def unspent_note(self) -> Optional[Note]:
        return None if self.tail.is_spent else self.tail

    def spend(
        self,
        withdrawn: int,
        transaction_hash: Optional[str] = None,
        block_number: Optional[int] = None,
        timestamp: Optional[int] = None,
    ) -> "NoteChain":
        """Spend the unspent tail, returning a new chain with the change note appended."""
        tail = self.tail
        if tail.is_spent:
            raise ValueError("chain has no unspent note")
        if withdrawn <= 0 or withdrawn > tail.amount:
            raise ValueError(f"withdrawn amount {withdrawn} outside (0, {tail.amount}]")
        remaining = tail.amount - withdrawn
        change = Note(
            pool_address=tail.pool_address,
            deposit_index=tail.deposit_index,
            change_index=tail.change_index + 1,
            amount=remaining,
            label=tail.label,
            transaction_hash=transaction_hash,
            block_number=block_number,
            timestamp=timestamp,
            status=NoteStatus.UNSPENT if remaining > 0 else NoteStatus.SPENT,
        )
        return NoteChain(notes=self.notes[:-1] + [tail.mark_spent(), change])


def merge_chain(existing: NoteChain, incoming: NoteChain) -> NoteChain:
    """Union two views of one chain keyed by change index; spent status wins."""
    if existing.deposit_index != incoming.deposit_index:
        raise ValueError("cannot merge chains of different deposits")
    by_index: Dict[int, Note] = {n.change_index: n for n in existing.notes}
    for note in incoming.notes:
        current = by_index.get(note.change_index)
        if current is None:
            by_index[note.change_index] = note
        elif note.is_spent and not current.is_spent:
            by_index[note.change_index] = current.mark_spent()
    notes = [by_index[i] for i in sorted(by_index)]
    # a later note implies every earlier one was spent
    notes = [n.mark_spent() if i < len(notes) - 1 and not n.is_spent else n for i, n in enumerate(notes)]
    return NoteChain(notes=notes)


def merge_chains(existing: Iterable[NoteChain], incoming: Iterable[NoteChain]) -> List[NoteChain]:
    merged: Dict[int, NoteChain] = {c.deposit_index: c for c in existing}
    for chain in incoming:
        current = merged.get(chain.deposit_index)
        merged[chain.deposit_index] = chain if current is None else merge_chain(current, chain)
    return [merged[k] for k in sorted(merged)]


def compute_commitment(account_key, note: Note) -> int:
    """Commitment = Poseidon(amount, label, Poseidon(nullifier, secret))."""
    nullifier, secret = derive_note_secrets(account_key, note.pool_address, note.deposit_index, note.change_index)
    return poseidon3(note.amount, note.label, precommitment(nullifier, secret))


def to_wei(amount: Union[str, int, Decimal]) -> int:
    """Convert an ETH-denominated amount into wei."""
    value = Decimal(str(amount)) * WEI_PER_ETH
    if value != value.to_integral_value():
        raise ValueError(f"amount {amount} has more than 18 decimals")
    return int(value)


def from_wei(amount: int) -> Decimal:
    return Decimal(amount) / WEI_PER_ETH
