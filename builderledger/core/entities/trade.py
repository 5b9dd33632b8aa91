from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Fill(BaseModel):
    """
    Canonical trade execution used throughout the core logic.
    Compatible with FastAPI serialisation (decimals render as strings).
    """
    model_config = ConfigDict(frozen=True)

    user: str
    time_ms: int = Field(ge=0)
    coin: str
    side: Literal["B", "A"]  # B = buy, A = ask/sell
    px: Decimal = Field(ge=0)
    sz: Decimal = Field(gt=0)
    fee: Decimal = Decimal("0")
    closed_pnl: Optional[Decimal] = None
    builder_fee: Optional[Decimal] = None
    tid: str
    hash: Optional[str] = None

    @property
    def signed_sz(self) -> Decimal:
        return self.sz if self.side == "B" else -self.sz

    @property
    def is_builder_fill(self) -> bool:
        return self.builder_fee is not None and self.builder_fee > 0

    @property
    def notional(self) -> Decimal:
        return self.px * self.sz


class TradeResponse(BaseModel):
    """Fill as listed by the trades endpoint."""
    time_ms: int
    coin: str
    side: str
    px: Decimal
    sz: Decimal
    fee: Decimal
    closed_pnl: Decimal
    builder: Optional[str] = None  # 'attributed' when the fill paid a builder fee
    tid: str

    @classmethod
    def from_fill(cls, fill: Fill) -> "TradeResponse":
        return cls(
            time_ms=fill.time_ms,
            coin=fill.coin,
            side=fill.side,
            px=fill.px,
            sz=fill.sz,
            fee=fill.fee,
            closed_pnl=fill.closed_pnl if fill.closed_pnl is not None else Decimal("0"),
            builder="attributed" if fill.is_builder_fill else None,
            tid=fill.tid,
        )
