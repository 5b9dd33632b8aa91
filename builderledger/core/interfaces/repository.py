from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from builderledger.core.entities.deposit import DepositRecord
from builderledger.core.entities.position import EquitySnapshot, PositionLifecycle, PositionSnapshot
from builderledger.core.entities.trade import Fill


class ILedgerRepository(ABC):
    """
    Durable storage for fills and everything derived from them.

    Fills, equity and deposits are upserted on their natural key; snapshots
    and lifecycles are replaced per (user, coin) by each reconstruction pass. Natural keys:
      fill        -> tid
      snapshot    -> (user, coin, time_ms)
      lifecycle   -> (user, coin, start_ms)
      equity      -> (user, time_ms)
      deposit     -> (user, time_ms)
    Failures raise StorageFailure. Methods are synchronous; async callers
    offload them with ``asyncio.to_thread``.
    """

    @abstractmethod
    def upsert_fills(self, fills: List[Fill]) -> None:
        pass

    @abstractmethod
    def replace_positions(self, user: str, coin: str, snapshots: List[PositionSnapshot]) -> None:
        """
        Swaps every stored snapshot of (user, coin) for ``snapshots`` in one
        transaction. Derived rows are rebuilt from the full fill set, so keys
        an earlier pass produced and this one does not must disappear.
        """
        pass

    @abstractmethod
    def replace_lifecycles(self, user: str, coin: str, lifecycles: List[PositionLifecycle]) -> None:
        """Same contract as ``replace_positions``, for lifecycles."""
        pass

    @abstractmethod
    def upsert_equity_snapshot(self, snapshot: EquitySnapshot) -> None:
        pass

    @abstractmethod
    def upsert_deposits(self, user: str, deposits: List[DepositRecord]) -> None:
        pass

    @abstractmethod
    def get_fills(
        self,
        user: str,
        coin: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None
    ) -> List[Fill]:
        """Fills ordered by (time_ms, tid)."""
        pass

    @abstractmethod
    def get_positions(
        self,
        user: str,
        coin: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None
    ) -> List[PositionSnapshot]:
        """Snapshots ordered by time_ms."""
        pass

    @abstractmethod
    def get_lifecycles(
        self,
        user: str,
        coin: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None
    ) -> List[PositionLifecycle]:
        """
        Lifecycles overlapping [from_ms, to_ms]: start_ms <= to_ms and
        (end_ms is None or end_ms >= from_ms). Ordered by start_ms.
        """
        pass

    @abstractmethod
    def get_equity_at(self, user: str, time_ms: int) -> Optional[Decimal]:
        """Account value of the latest snapshot at or before ``time_ms``."""
        pass

    @abstractmethod
    def get_deposits(
        self,
        user: str,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None
    ) -> List[DepositRecord]:
        pass

    @abstractmethod
    def get_active_users(
        self,
        coin: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None
    ) -> List[str]:
        """Distinct users with at least one fill in range, sorted ascending."""
        pass

    @abstractmethod
    def health(self) -> bool:
        pass
