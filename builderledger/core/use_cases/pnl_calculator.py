from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from builderledger.core.entities.leaderboard import CoinPnL
from builderledger.core.entities.trade import Fill

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def realized_pnl(fills: Iterable[Fill]) -> Decimal:
    return sum((f.closed_pnl for f in fills if f.closed_pnl is not None), ZERO)


def fees_paid(fills: Iterable[Fill]) -> Decimal:
    return sum((f.fee for f in fills), ZERO)


def trading_volume(fills: Iterable[Fill]) -> Decimal:
    return sum((f.notional for f in fills), ZERO)


def return_pct(
    pnl: Decimal,
    equity_start: Optional[Decimal],
    max_start_capital: Optional[Decimal] = None
) -> Decimal:
    """
    100 * pnl / effective capital, where effective capital is the starting
    equity capped at ``max_start_capital`` when one is given.

    Missing or non-positive starting equity yields 0 rather than an error.
    This is intentional: aggregate endpoints always return a number, at the
    cost of not telling a break-even account from one with no capital base.
    """
    if equity_start is None or equity_start <= 0:
        return ZERO
    effective_capital = equity_start
    if max_start_capital is not None:
        effective_capital = min(equity_start, max_start_capital)
    return HUNDRED * pnl / effective_capital


def calculate_pnl(
    fills: List[Fill],
    equity_start: Optional[Decimal] = None,
    max_start_capital: Optional[Decimal] = None
) -> dict:
    pnl = realized_pnl(fills)
    return {
        "realized_pnl": pnl,
        "return_pct": return_pct(pnl, equity_start, max_start_capital),
        "fees_paid": fees_paid(fills),
        "trade_count": len(fills),
    }


def breakdown_by_coin(fills: Iterable[Fill]) -> Dict[str, CoinPnL]:
    per_coin: Dict[str, List[Fill]] = defaultdict(list)
    for fill in fills:
        per_coin[fill.coin].append(fill)

    return {
        coin: CoinPnL(
            realized_pnl=realized_pnl(coin_fills),
            fees_paid=fees_paid(coin_fills),
            trade_count=len(coin_fills),
        )
        for coin, coin_fills in sorted(per_coin.items())
    }
