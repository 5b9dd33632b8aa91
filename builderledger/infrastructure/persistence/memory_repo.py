import threading
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from builderledger.core.entities.deposit import DepositRecord
from builderledger.core.entities.position import EquitySnapshot, PositionLifecycle, PositionSnapshot
from builderledger.core.entities.trade import Fill
from builderledger.core.interfaces.repository import ILedgerRepository
from builderledger.core.use_cases.position_reconstructor import fill_sort_key


def _in_range(time_ms: int, from_ms: Optional[int], to_ms: Optional[int]) -> bool:
    if from_ms is not None and time_ms < from_ms:
        return False
    if to_ms is not None and time_ms > to_ms:
        return False
    return True


class InMemoryRepo(ILedgerRepository):
    """
    Dict-backed repository keyed by each record's natural key.
    Used when DATABASE_URL is not set, and in tests.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._fills: Dict[str, Fill] = {}
        self._positions: Dict[Tuple[str, str, int], PositionSnapshot] = {}
        self._lifecycles: Dict[Tuple[str, str, int], PositionLifecycle] = {}
        self._equity: Dict[Tuple[str, int], EquitySnapshot] = {}
        self._deposits: Dict[Tuple[str, int], DepositRecord] = {}

    def upsert_fills(self, fills: List[Fill]) -> None:
        with self._lock:
            for f in fills:
                self._fills[f.tid] = f

    def replace_positions(self, user: str, coin: str, snapshots: List[PositionSnapshot]) -> None:
        with self._lock:
            self._positions = {k: p for k, p in self._positions.items() if k[:2] != (user, coin)}
            for p in snapshots:
                self._positions[(p.user, p.coin, p.time_ms)] = p

    def replace_lifecycles(self, user: str, coin: str, lifecycles: List[PositionLifecycle]) -> None:
        with self._lock:
            self._lifecycles = {k: lc for k, lc in self._lifecycles.items() if k[:2] != (user, coin)}
            for lc in lifecycles:
                self._lifecycles[(lc.user, lc.coin, lc.start_ms)] = lc

    def upsert_equity_snapshot(self, snapshot: EquitySnapshot) -> None:
        with self._lock:
            self._equity[(snapshot.user, snapshot.time_ms)] = snapshot

    def upsert_deposits(self, user: str, deposits: List[DepositRecord]) -> None:
        with self._lock:
            for d in deposits:
                self._deposits[(user, d.time_ms)] = d

    def get_fills(self, user, coin=None, from_ms=None, to_ms=None) -> List[Fill]:
        with self._lock:
            fills = [
                f for f in self._fills.values()
                if f.user == user
                and (coin is None or f.coin == coin)
                and _in_range(f.time_ms, from_ms, to_ms)
            ]
        return sorted(fills, key=fill_sort_key)

    def get_positions(self, user, coin=None, from_ms=None, to_ms=None) -> List[PositionSnapshot]:
        with self._lock:
            positions = [
                p for (u, c, t), p in self._positions.items()
                if u == user and (coin is None or c == coin) and _in_range(t, from_ms, to_ms)
            ]
        return sorted(positions, key=lambda p: (p.time_ms, p.coin))

    def get_lifecycles(self, user, coin=None, from_ms=None, to_ms=None) -> List[PositionLifecycle]:
        with self._lock:
            lifecycles = [
                lc for (u, c, _), lc in self._lifecycles.items()
                if u == user
                and (coin is None or c == coin)
                and (to_ms is None or lc.start_ms <= to_ms)
                and (from_ms is None or lc.end_ms is None or lc.end_ms >= from_ms)
            ]
        return sorted(lifecycles, key=lambda lc: (lc.start_ms, lc.coin))

    def get_equity_at(self, user: str, time_ms: int) -> Optional[Decimal]:
        with self._lock:
            candidates = [s for (u, t), s in self._equity.items() if u == user and t <= time_ms]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.time_ms).account_value

    def get_deposits(self, user, from_ms=None, to_ms=None) -> List[DepositRecord]:
        with self._lock:
            deposits = [
                d for (u, t), d in self._deposits.items()
                if u == user and _in_range(t, from_ms, to_ms)
            ]
        return sorted(deposits, key=lambda d: d.time_ms)

    def get_active_users(self, coin=None, from_ms=None, to_ms=None) -> List[str]:
        with self._lock:
            users = {
                f.user for f in self._fills.values()
                if (coin is None or f.coin == coin) and _in_range(f.time_ms, from_ms, to_ms)
            }
        return sorted(users)

    def health(self) -> bool:
        return True
