from decimal import Decimal
from typing import Dict, Literal, Optional

from pydantic import BaseModel

LeaderboardMetric = Literal["volume", "pnl", "returnPct"]
LEADERBOARD_METRICS = ("volume", "pnl", "returnPct")


class CoinPnL(BaseModel):
    realized_pnl: Decimal
    fees_paid: Decimal
    trade_count: int


class PnLResponse(BaseModel):
    """
    Realized PnL summary for one user.
    ``coins`` holds a per-coin breakdown when no coin filter was given.
    """
    user: str
    coin: Optional[str] = None
    realized_pnl: Decimal
    return_pct: Decimal
    fees_paid: Decimal
    trade_count: int
    tainted: Optional[bool] = None  # only set in builder-only mode
    coins: Optional[Dict[str, CoinPnL]] = None


class UserMetrics(BaseModel):
    """Per-account aggregate computed before ranking."""
    user: str
    metric_value: Decimal
    trade_count: int
    tainted: bool = False


class LeaderboardEntry(BaseModel):
    rank: int
    user: str
    metric_value: Decimal
    trade_count: int
    tainted: bool
