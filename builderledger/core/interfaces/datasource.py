from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from builderledger.core.entities.deposit import DepositRecord
from builderledger.core.entities.trade import Fill


class IDataSource(ABC):
    """
    Venue abstraction. Lets the core swap the Hyperliquid public API for any
    other fill provider without touching reconstruction or aggregation.
    """

    @abstractmethod
    async def get_fills(
        self,
        user: str,
        coin: Optional[str] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None
    ) -> List[Fill]:
        """
        Returns fills deduplicated by ``tid`` and sorted by time ascending.
        Raises UpstreamUnavailable when the venue cannot be reached.
        """
        pass

    @abstractmethod
    async def get_equity_at(self, user: str, timestamp: Optional[int] = None) -> Decimal:
        pass

    @abstractmethod
    async def get_user_deposits(
        self,
        user: str,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None
    ) -> List[DepositRecord]:
        pass

    @abstractmethod
    async def health(self) -> bool:
        pass
