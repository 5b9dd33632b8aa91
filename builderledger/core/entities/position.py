from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

ZERO = Decimal("0")


class PositionSnapshot(BaseModel):
    """
    Position state right after the fill(s) at ``time_ms``.
    Keyed by (user, coin, time_ms).
    """
    model_config = ConfigDict(frozen=True)

    user: str
    coin: str
    time_ms: int
    net_size: Decimal
    avg_entry_px: Decimal


class PositionLifecycle(BaseModel):
    """
    One contiguous interval of non-zero exposure for (user, coin).
    ``end_ms`` stays None while the position is open.
    """
    model_config = ConfigDict(frozen=True)

    user: str
    coin: str
    start_ms: int
    end_ms: Optional[int] = None
    has_builder_fills: bool = False
    has_non_builder_fills: bool = False

    @property
    def is_open(self) -> bool:
        return self.end_ms is None

    def covers(self, time_ms: int) -> bool:
        return self.start_ms <= time_ms and (self.is_open or time_ms <= self.end_ms)


class PositionState(BaseModel):
    """Running fold state for one (user, coin) reconstruction pass."""
    model_config = ConfigDict(frozen=True)

    net_size: Decimal = ZERO
    avg_entry_px: Decimal = ZERO
    open_lifecycle: Optional[PositionLifecycle] = None
    # Last lifecycle closed by this pass; needed to merge a same-millisecond reopen
    last_closed: Optional[PositionLifecycle] = None


class ReconstructionResult(BaseModel):
    snapshots: List[PositionSnapshot]
    lifecycles: List[PositionLifecycle]


class PositionResponse(BaseModel):
    """Snapshot as listed by the position history endpoint."""
    time_ms: int
    coin: str
    net_size: Decimal
    avg_entry_px: Decimal
    tainted: Optional[bool] = None  # only set in builder-only mode

    @classmethod
    def from_snapshot(cls, snapshot: PositionSnapshot, builder_only: bool = False) -> "PositionResponse":
        return cls(
            time_ms=snapshot.time_ms,
            coin=snapshot.coin,
            net_size=snapshot.net_size,
            avg_entry_px=snapshot.avg_entry_px,
            # Tainted snapshots are already filtered out in builder-only mode
            tainted=False if builder_only else None,
        )


class EquitySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: str
    time_ms: int
    account_value: Decimal
