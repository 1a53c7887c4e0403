"""
Pydantic models for indexer and IPFS payloads.

The indexer serialises BigInt columns as strings; validators turn them into
ints so downstream code compares field elements directly.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shinobi.crypto_core.field import parse_field


def _big_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        text = value.strip()
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    return int(value)


class IndexerModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ActivityType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    RAGEQUIT = "RAGEQUIT"


class Activity(IndexerModel):
    id: str
    type: ActivityType
    asp_status: Optional[str] = Field(None, alias="aspStatus")
    pool_id: Optional[str] = Field(None, alias="poolId")
    user: Optional[str] = None
    recipient: Optional[str] = None
    amount: Optional[int] = Field(None, description="Deposit value or withdrawn value in wei")
    original_amount: Optional[int] = Field(None, alias="originalAmount")
    vetting_fee_amount: Optional[int] = Field(None, alias="vettingFeeAmount")
    commitment: Optional[int] = None
    label: Optional[int] = None
    precommitment_hash: Optional[int] = Field(None, alias="precommitmentHash")
    spent_nullifier: Optional[int] = Field(None, alias="spentNullifier")
    new_commitment: Optional[int] = Field(None, alias="newCommitment")
    fee_amount: Optional[int] = Field(None, alias="feeAmount")
    fee_refund: Optional[int] = Field(None, alias="feeRefund")
    relayer: Optional[str] = None
    is_sponsored: Optional[bool] = Field(None, alias="isSponsored")
    block_number: Optional[int] = Field(None, alias="blockNumber")
    timestamp: Optional[int] = None
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")

    @field_validator(
        "amount", "original_amount", "vetting_fee_amount", "commitment", "label",
        "precommitment_hash", "spent_nullifier", "new_commitment", "fee_amount",
        "fee_refund", "block_number", "timestamp",
        mode="before",
    )
    @classmethod
    def _parse_big_int(cls, v):
        return _big_int(v)


class PageInfo(IndexerModel):
    has_next_page: bool = Field(False, alias="hasNextPage")
    end_cursor: Optional[str] = Field(None, alias="endCursor")


class ActivityPage(IndexerModel):
    items: List[Activity] = Field(default_factory=list)
    page_info: PageInfo = Field(default_factory=PageInfo, alias="pageInfo")


class StateTreeLeaf(IndexerModel):
    leaf_index: int = Field(..., alias="leafIndex")
    leaf_value: int = Field(..., alias="leafValue")

    @field_validator("leaf_index", "leaf_value", mode="before")
    @classmethod
    def _parse_big_int(cls, v):
        return _big_int(v)


class AspRootUpdate(IndexerModel):
    root: int
    ipfs_cid: str = Field(..., alias="ipfsCID")
    timestamp: Optional[int] = None

    @field_validator("root", "timestamp", mode="before")
    @classmethod
    def _parse_big_int(cls, v):
        return _big_int(v)


class AspApprovalList(IndexerModel):
    cumulative_approved_labels: List[str] = Field(..., alias="cumulativeApprovedLabels")
    pool_id: Optional[str] = Field(None, alias="poolId")
    asp_root: Optional[str] = Field(None, alias="aspRoot")

    @field_validator("cumulative_approved_labels")
    @classmethod
    def _labels_numeric(cls, labels: List[str]) -> List[str]:
        for label in labels:
            parse_field(label)
        return labels

    @property
    def labels(self) -> List[int]:
        return [parse_field(label) for label in self.cumulative_approved_labels]


class PoolStats(IndexerModel):
    total_deposits: Optional[int] = Field(None, alias="totalDeposits")
    total_withdrawals: Optional[int] = Field(None, alias="totalWithdrawals")
    member_count: Optional[int] = Field(None, alias="memberCount")
    created_at: Optional[int] = Field(None, alias="createdAt")

    @field_validator("total_deposits", "total_withdrawals", "member_count", "created_at", mode="before")
    @classmethod
    def _parse_big_int(cls, v):
        return _big_int(v)


class IndexerStatus(IndexerModel):
    status: Optional[Dict[str, Any]] = None
