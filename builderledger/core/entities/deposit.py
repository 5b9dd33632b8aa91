"""
Deposit Entity for Builder Ledger

Tracks user capital transfers for fair competition filtering.
"""
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


class DepositRecord(BaseModel):
    """
    Represents a single deposit/withdrawal event.
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "time_ms": 1705000000000,
                "amount": "10000.0",
                "tx_hash": "0xabc123...",
            }
        },
    )

    time_ms: int
    amount: Decimal  # Positive = deposit, Negative = withdrawal
    tx_hash: Optional[str] = None


class DepositsAggregateResponse(BaseModel):
    """
    Aggregated deposit data for a user.
    """
    total_deposits: Decimal
    total_withdrawals: Decimal
    net_transfers: Decimal
    deposit_count: int
    withdrawal_count: int
    deposits: list[DepositRecord]
