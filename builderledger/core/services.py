import asyncio
import logging
import time
import weakref
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from builderledger.core.entities.deposit import DepositsAggregateResponse
from builderledger.core.entities.leaderboard import LeaderboardEntry, PnLResponse, UserMetrics
from builderledger.core.entities.position import (
    EquitySnapshot,
    PositionLifecycle,
    PositionResponse,
    ReconstructionResult,
)
from builderledger.core.entities.trade import Fill, TradeResponse
from builderledger.core.errors import InputInvalid, LedgerError, UpstreamUnavailable
from builderledger.core.interfaces.datasource import IDataSource
from builderledger.core.interfaces.repository import ILedgerRepository
from builderledger.core.use_cases.leaderboard_ranker import metric_value, rank, validate_metric
from builderledger.core.use_cases.lifecycle_filter import filter_builder_fills, filter_builder_positions
from builderledger.core.use_cases.pnl_calculator import breakdown_by_coin, calculate_pnl
from builderledger.core.use_cases.position_reconstructor import PositionReconstructor
from builderledger.core.use_cases.taint_detector import any_tainted
from builderledger.infrastructure.cache.redis_service import RedisService

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


# --- Input validation ---

def validate_range(from_ms: Optional[int], to_ms: Optional[int]) -> None:
    if from_ms is not None and from_ms < 0:
        raise InputInvalid("fromMs must be non-negative")
    if to_ms is not None and to_ms < 0:
        raise InputInvalid("toMs must be non-negative")
    if from_ms is not None and to_ms is not None and from_ms > to_ms:
        raise InputInvalid("fromMs must not be after toMs")


def validate_user(user: Optional[str]) -> str:
    if not user or not user.strip():
        raise InputInvalid("user parameter is required")
    return user.strip()


def validate_capital(max_start_capital: Optional[Decimal]) -> None:
    if max_start_capital is not None and max_start_capital <= 0:
        raise InputInvalid("maxStartCapital must be positive")


class UserLocks:
    """
    One asyncio.Lock per user. Reconstruction holds it while writing so a
    concurrent query never sees a half-applied pass. Entries are weak: a lock
    nobody holds or waits on is dropped.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def for_user(self, user: str) -> asyncio.Lock:
        lock = self._locks.get(user)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user] = lock
        return lock


# --- Business Logic Services ---

class IngestionService:
    def __init__(
        self,
        datasource: IDataSource,
        repo: ILedgerRepository,
        locks: Optional[UserLocks] = None,
        cache: Optional[RedisService] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.datasource = datasource
        self.repo = repo
        self.locks = locks or UserLocks()
        self.cache = cache
        self.clock = clock

    async def ingest_user(
        self,
        user: str,
        coin: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None
    ) -> int:
        """
        Fetches fills, stores them and rebuilds positions for every coin they
        touch. Returns the number of fills fetched.
        """
        user = validate_user(user)
        validate_range(from_ms, to_ms)
        logger.info(f"Ingesting fills for user {user}, coin: {coin or 'all'}")

        fills = await self.datasource.get_fills(user, coin or None, from_ms, to_ms)
        if not fills:
            logger.info(f"No fills found for user {user}")
            return 0

        coins = sorted({f.coin for f in fills})
        async with self.locks.for_user(user):
            await asyncio.to_thread(self.repo.upsert_fills, fills)
            # Coins never interact, so their folds run side by side
            await asyncio.gather(*(
                asyncio.to_thread(self.reconstruct_coin, user, c) for c in coins
            ))
        self._invalidate_leaderboards()

        await self._record_equity(user)
        logger.info(f"Ingested {len(fills)} fills for user {user} across {len(coins)} coin(s)")
        return len(fills)

    def reconstruct_coin(self, user: str, coin: str) -> ReconstructionResult:
        """
        Replays the full stored fill set of (user, coin), not just the fetched
        window, so the result does not depend on how history was paged in.
        """
        fills = self.repo.get_fills(user, coin)
        result = PositionReconstructor.reconstruct(user, coin, fills)
        self.repo.replace_positions(user, coin, result.snapshots)
        self.repo.replace_lifecycles(user, coin, result.lifecycles)
        logger.info(
            f"Reconstructed {user}/{coin}: {len(result.snapshots)} snapshots, "
            f"{len(result.lifecycles)} lifecycles"
        )
        return result

    def _invalidate_leaderboards(self) -> None:
        # Any rebuilt lifecycle can change taint, so every cached board is stale
        if self.cache is not None and self.cache.enabled:
            self.cache.delete_pattern("leaderboard:*")

    async def _record_equity(self, user: str) -> None:
        # Best effort: fills and positions are already committed at this point
        try:
            equity = await self.datasource.get_equity_at(user)
        except UpstreamUnavailable as e:
            logger.warning(f"Failed to fetch equity for user {user}: {e}")
            return
        snapshot = EquitySnapshot(user=user, time_ms=self.clock(), account_value=equity)
        await asyncio.to_thread(self.repo.upsert_equity_snapshot, snapshot)

    async def ingest_users(self, users: Iterable[str]) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"users_processed": 0, "fills_ingested": 0, "failed": {}}
        for user in users:
            try:
                stats["fills_ingested"] += await self.ingest_user(user)
                stats["users_processed"] += 1
            except LedgerError as e:
                logger.error(f"Failed to ingest user {user}: {e}")
                stats["failed"][user] = str(e)
        return stats


class LedgerQueryService:
    def __init__(
        self,
        repo: ILedgerRepository,
        locks: Optional[UserLocks] = None,
        cache: Optional[RedisService] = None,
        cache_ttl: int = 60,
    ):
        self.repo = repo
        self.locks = locks or UserLocks()
        self.cache = cache
        self.cache_ttl = cache_ttl

    async def _load(
        self,
        user: str,
        coin: Optional[str],
        from_ms: Optional[int],
        to_ms: Optional[int],
        builder_only: bool
    ) -> Tuple[List[Fill], List[PositionLifecycle]]:
        async with self.locks.for_user(user):
            fills = await asyncio.to_thread(self.repo.get_fills, user, coin, from_ms, to_ms)
            lifecycles = await asyncio.to_thread(self.repo.get_lifecycles, user, coin, from_ms, to_ms)
        if builder_only:
            fills = filter_builder_fills(fills, lifecycles)
        return fills, lifecycles

    async def list_trades(
        self,
        user: str,
        coin: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
        builder_only: bool = False
    ) -> List[TradeResponse]:
        user = validate_user(user)
        validate_range(from_ms, to_ms)
        fills, _ = await self._load(user, coin or None, from_ms, to_ms, builder_only)
        return [TradeResponse.from_fill(f) for f in fills]

    async def position_history(
        self,
        user: str,
        coin: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
        builder_only: bool = False
    ) -> List[PositionResponse]:
        user = validate_user(user)
        validate_range(from_ms, to_ms)
        coin = coin or None

        async with self.locks.for_user(user):
            snapshots = await asyncio.to_thread(self.repo.get_positions, user, coin, from_ms, to_ms)
            if builder_only:
                lifecycles = await asyncio.to_thread(self.repo.get_lifecycles, user, coin, from_ms, to_ms)

        if builder_only:
            snapshots = filter_builder_positions(snapshots, lifecycles)
        return [PositionResponse.from_snapshot(s, builder_only) for s in snapshots]

    async def _equity_at_start(self, user: str, from_ms: Optional[int]) -> Optional[Decimal]:
        # No range start means no reference capital; the return is then 0
        if from_ms is None:
            return None
        return await asyncio.to_thread(self.repo.get_equity_at, user, from_ms)

    async def pnl_summary(
        self,
        user: str,
        coin: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
        builder_only: bool = False,
        max_start_capital: Optional[Decimal] = None
    ) -> PnLResponse:
        user = validate_user(user)
        validate_range(from_ms, to_ms)
        validate_capital(max_start_capital)
        coin = coin or None

        fills, lifecycles = await self._load(user, coin, from_ms, to_ms, builder_only)
        equity = await self._equity_at_start(user, from_ms)
        totals = calculate_pnl(fills, equity, max_start_capital)

        return PnLResponse(
            user=user,
            coin=coin,
            tainted=any_tainted(lifecycles) if builder_only else None,
            coins=breakdown_by_coin(fills) if coin is None else None,
            **totals,
        )

    async def leaderboard(
        self,
        metric: str,
        coin: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
        builder_only: bool = False,
        max_start_capital: Optional[Decimal] = None
    ) -> List[LeaderboardEntry]:
        """
        Ranks every user with fills in range. In builder-only mode a user with
        any tainted lifecycle cannot rank at all, which is stricter than the
        per-fill filtering of single-user views.
        """
        validate_metric(metric)
        validate_range(from_ms, to_ms)
        validate_capital(max_start_capital)
        coin = coin or None

        cache_key = f"leaderboard:{metric}:{coin}:{from_ms}:{to_ms}:{builder_only}:{max_start_capital}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return [LeaderboardEntry.model_validate(e) for e in cached]

        users = await asyncio.to_thread(self.repo.get_active_users, coin, from_ms, to_ms)

        # Users are independent: compute in parallel, merge afterwards
        rows = await asyncio.gather(*(
            self._user_metrics(u, metric, coin, from_ms, to_ms, builder_only, max_start_capital)
            for u in users
        ))
        entries = rank(r for r in rows if r is not None)

        if self.cache is not None:
            self.cache.set(cache_key, entries, self.cache_ttl)
        return entries

    async def _user_metrics(
        self,
        user: str,
        metric: str,
        coin: Optional[str],
        from_ms: Optional[int],
        to_ms: Optional[int],
        builder_only: bool,
        max_start_capital: Optional[Decimal]
    ) -> Optional[UserMetrics]:
        fills, lifecycles = await self._load(user, coin, from_ms, to_ms, builder_only)
        tainted = any_tainted(lifecycles)

        if builder_only and tainted:
            return None
        if not fills:
            return None

        equity = None
        if metric == "returnPct":
            equity = await self._equity_at_start(user, from_ms)

        return UserMetrics(
            user=user,
            metric_value=metric_value(metric, fills, equity, max_start_capital),
            trade_count=len(fills),
            tainted=tainted,
        )


class DepositService:
    def __init__(self, datasource: IDataSource, repo: ILedgerRepository):
        self.datasource = datasource
        self.repo = repo

    async def get_deposits(
        self,
        user: str,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None
    ) -> DepositsAggregateResponse:
        """
        Venue first; results are stored for later. Falls back to stored
        records when the venue returns nothing for the range.
        """
        user = validate_user(user)
        validate_range(from_ms, to_ms)

        deposits = await self.datasource.get_user_deposits(user, from_ms, to_ms)
        if deposits:
            await asyncio.to_thread(self.repo.upsert_deposits, user, deposits)
        else:
            deposits = await asyncio.to_thread(self.repo.get_deposits, user, from_ms, to_ms)

        total_deposits = sum((d.amount for d in deposits if d.amount > 0), Decimal("0"))
        total_withdrawals = abs(sum((d.amount for d in deposits if d.amount < 0), Decimal("0")))

        return DepositsAggregateResponse(
            total_deposits=total_deposits,
            total_withdrawals=total_withdrawals,
            net_transfers=total_deposits - total_withdrawals,
            deposit_count=sum(1 for d in deposits if d.amount > 0),
            withdrawal_count=sum(1 for d in deposits if d.amount < 0),
            deposits=deposits,
        )
