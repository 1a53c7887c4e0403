"""Typed payloads persisted by the encrypted store."""
from __future__ import annotations

import time
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from shinobi.crypto_core.notes import NoteChain, merge_chains


class AccountRecord(BaseModel):
    account_name: str
    mnemonic: List[str] = Field(..., description="Backup phrase words")
    created_at: float = Field(default_factory=time.time)


class PasskeyRecord(BaseModel):
    account_name: str
    credential_id: str
    public_key_hash: str
    created: float = Field(default_factory=time.time)


class CachedNoteData(BaseModel):
    pool_address: str
    public_key: str
    note_chains: List[NoteChain] = Field(default_factory=list)
    last_used_deposit_index: int = -1
    sync_cursor: Optional[str] = None
    # deposit index -> unix expiry of the reservation
    pending_deposits: Dict[int, float] = Field(default_factory=dict)
    last_sync_time: Optional[float] = None

    def chain_for(self, deposit_index: int) -> Optional[NoteChain]:
        for chain in self.note_chains:
            if chain.deposit_index == deposit_index:
                return chain
        return None

    def merged_with(self, chains: List[NoteChain]) -> "CachedNoteData":
        merged = merge_chains(self.note_chains, chains)
        highest = max((c.deposit_index for c in merged), default=-1)
        return self.model_copy(update={
            "note_chains": merged,
            "last_used_deposit_index": max(self.last_used_deposit_index, highest),
        })

    def live_pending(self, now: Optional[float] = None) -> Dict[int, float]:
        now = time.time() if now is None else now
        return {i: exp for i, exp in self.pending_deposits.items() if exp > now}
