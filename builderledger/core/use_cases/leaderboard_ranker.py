from decimal import Decimal
from typing import Iterable, List, Optional

from builderledger.core.entities.leaderboard import LEADERBOARD_METRICS, LeaderboardEntry, UserMetrics
from builderledger.core.entities.trade import Fill
from builderledger.core.errors import InputInvalid
from builderledger.core.use_cases.pnl_calculator import realized_pnl, return_pct, trading_volume


def validate_metric(metric: str) -> str:
    if metric not in LEADERBOARD_METRICS:
        raise InputInvalid(f"metric must be one of {', '.join(LEADERBOARD_METRICS)}, got '{metric}'")
    return metric


def metric_value(
    metric: str,
    fills: List[Fill],
    equity_start: Optional[Decimal] = None,
    max_start_capital: Optional[Decimal] = None
) -> Decimal:
    if metric == "volume":
        return trading_volume(fills)
    if metric == "pnl":
        return realized_pnl(fills)
    if metric == "returnPct":
        return return_pct(realized_pnl(fills), equity_start, max_start_capital)
    raise InputInvalid(f"Unknown metric '{metric}'")


def rank(rows: Iterable[UserMetrics]) -> List[LeaderboardEntry]:
    """
    Descending by metric value. Equal values keep ascending user order, and
    ranks run 1..n without gaps.
    """
    ordered = sorted(rows, key=lambda r: r.user)
    # list.sort is stable, also with reverse=True
    ordered.sort(key=lambda r: r.metric_value, reverse=True)

    return [
        LeaderboardEntry(
            rank=i + 1,
            user=row.user,
            metric_value=row.metric_value,
            trade_count=row.trade_count,
            tainted=row.tainted,
        )
        for i, row in enumerate(ordered)
    ]
