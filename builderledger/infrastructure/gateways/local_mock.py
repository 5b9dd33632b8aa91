from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from builderledger.core.entities.deposit import DepositRecord
from builderledger.core.entities.trade import Fill
from builderledger.core.interfaces.datasource import IDataSource
from builderledger.core.use_cases.position_reconstructor import fill_sort_key


class LocalMockDataSource(IDataSource):
    """
    In-memory venue for tests and offline runs. Seed it with fills, equity
    values and deposits; queries behave like the real gateway (dedup by tid,
    ascending time).
    """

    def __init__(
        self,
        fills: Optional[Iterable[Fill]] = None,
        equity: Optional[Dict[str, Decimal]] = None,
        deposits: Optional[Dict[str, List[DepositRecord]]] = None,
    ):
        self.fills: Dict[str, Fill] = {}
        self.equity: Dict[str, Decimal] = dict(equity or {})
        self.deposits: Dict[str, List[DepositRecord]] = {u: list(d) for u, d in (deposits or {}).items()}
        self.add_fills(fills or [])

    def add_fills(self, fills: Iterable[Fill]) -> None:
        for fill in fills:
            self.fills[fill.tid] = fill

    async def get_fills(self, user, coin=None, start_time=None, end_time=None) -> List[Fill]:
        fills = [
            f for f in self.fills.values()
            if f.user == user
            and (coin is None or f.coin == coin)
            and (start_time is None or f.time_ms >= start_time)
            and (end_time is None or f.time_ms <= end_time)
        ]
        return sorted(fills, key=fill_sort_key)

    async def get_equity_at(self, user: str, timestamp: Optional[int] = None) -> Decimal:
        return self.equity.get(user, Decimal("0"))

    async def get_user_deposits(self, user, from_ms=None, to_ms=None) -> List[DepositRecord]:
        return [
            d for d in sorted(self.deposits.get(user, []), key=lambda d: d.time_ms)
            if (from_ms is None or d.time_ms >= from_ms) and (to_ms is None or d.time_ms <= to_ms)
        ]

    async def health(self) -> bool:
        return True
