import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# --- Imports ---
from builderledger.config import get_settings
from builderledger.core.entities.deposit import DepositsAggregateResponse
from builderledger.core.entities.leaderboard import LeaderboardEntry, PnLResponse
from builderledger.core.entities.position import PositionResponse
from builderledger.core.entities.trade import TradeResponse
from builderledger.core.errors import InputInvalid, StorageFailure, UpstreamUnavailable
from builderledger.core.interfaces.datasource import IDataSource
from builderledger.core.interfaces.repository import ILedgerRepository
from builderledger.core.services import DepositService, IngestionService, LedgerQueryService, UserLocks
from builderledger.infrastructure.cache.redis_service import RedisService
from builderledger.infrastructure.gateways.hl_public_api import HLPublicGateway
from builderledger.infrastructure.gateways.local_mock import LocalMockDataSource
from builderledger.infrastructure.persistence.memory_repo import InMemoryRepo
from builderledger.infrastructure.persistence.postgres_repo import PostgresRepo

# Setup Logging
logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger("BuilderLedger")


# --- Dependency Injection ---

@lru_cache
def get_repo() -> ILedgerRepository:
    db_url = get_settings().database_url
    if not db_url:
        logger.info("DATABASE_URL not set. Using in-memory repository.")
        return InMemoryRepo()
    return PostgresRepo(db_url)


@lru_cache
def get_datasource() -> IDataSource:
    settings = get_settings()
    if settings.datasource == "mock":
        return LocalMockDataSource()
    return HLPublicGateway(
        use_testnet=settings.use_testnet,
        max_batches=settings.max_fill_batches,
        batch_delay_ms=settings.batch_delay_ms,
    )


@lru_cache
def get_cache() -> RedisService:
    return RedisService(get_settings().redis_url)


@lru_cache
def get_locks() -> UserLocks:
    return UserLocks()


def get_query_service(
    repo: ILedgerRepository = Depends(get_repo),
    locks: UserLocks = Depends(get_locks),
    cache: RedisService = Depends(get_cache),
) -> LedgerQueryService:
    return LedgerQueryService(repo, locks, cache, get_settings().leaderboard_cache_ttl)


def get_ingestion_service(
    gateway: IDataSource = Depends(get_datasource),
    repo: ILedgerRepository = Depends(get_repo),
    locks: UserLocks = Depends(get_locks),
    cache: RedisService = Depends(get_cache),
) -> IngestionService:
    return IngestionService(gateway, repo, locks, cache)


def get_deposit_service(
    gateway: IDataSource = Depends(get_datasource),
    repo: ILedgerRepository = Depends(get_repo),
) -> DepositService:
    return DepositService(gateway, repo)


# --- Startup ingestion ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    wallets = get_settings().test_wallets
    task = None
    if wallets:
        logger.info(f"Starting initial ingestion for {len(wallets)} test wallets...")
        service = IngestionService(get_datasource(), get_repo(), get_locks(), get_cache())
        task = asyncio.create_task(service.ingest_users(wallets))
    yield
    if task is not None and not task.done():
        task.cancel()


app = FastAPI(
    title="Builder Ledger API",
    version="1.0.0",
    description="Position reconstruction, builder-only taint filtering and competition leaderboard API",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error mapping ---

@app.exception_handler(InputInvalid)
async def input_invalid_handler(request: Request, exc: InputInvalid):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(UpstreamUnavailable)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable):
    return JSONResponse(status_code=503, content={"error": str(exc), "retryable": True})


@app.exception_handler(StorageFailure)
async def storage_failure_handler(request: Request, exc: StorageFailure):
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Storage failure"})


# --- Endpoints ---

@app.get("/health")
async def health(
    gateway: IDataSource = Depends(get_datasource),
    repo: ILedgerRepository = Depends(get_repo),
):
    database_ok = await asyncio.to_thread(repo.health)
    datasource_ok = await gateway.health()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "connected" if database_ok else "disconnected",
        "datasource": "reachable" if datasource_ok else "unreachable",
    }


@app.get("/v1/trades", response_model=List[TradeResponse])
async def get_trades(
    user: str = Query(..., description="User Address"),
    coin: Optional[str] = Query(None, description="Token Symbol"),
    fromMs: Optional[int] = Query(None),
    toMs: Optional[int] = Query(None),
    builderOnly: bool = Query(False, description="Only builder fills outside tainted lifecycles"),
    service: LedgerQueryService = Depends(get_query_service),
):
    return await service.list_trades(user, coin, fromMs, toMs, builderOnly)


@app.get("/v1/positions/history", response_model=List[PositionResponse], response_model_exclude_none=True)
async def get_positions_history(
    user: str = Query(...),
    coin: Optional[str] = Query(None),
    fromMs: Optional[int] = Query(None),
    toMs: Optional[int] = Query(None),
    builderOnly: bool = Query(False),
    service: LedgerQueryService = Depends(get_query_service),
):
    return await service.position_history(user, coin, fromMs, toMs, builderOnly)


@app.get("/v1/pnl", response_model=PnLResponse, response_model_exclude_none=True)
async def get_pnl(
    user: str = Query(..., description="User wallet address"),
    coin: Optional[str] = Query(None, description="Coin symbol; omit for portfolio"),
    fromMs: Optional[int] = Query(None),
    toMs: Optional[int] = Query(None),
    builderOnly: bool = Query(False),
    maxStartCapital: Optional[Decimal] = Query(None, description="Cap on starting equity for returnPct"),
    service: LedgerQueryService = Depends(get_query_service),
):
    return await service.pnl_summary(user, coin, fromMs, toMs, builderOnly, maxStartCapital)


@app.get("/v1/leaderboard", response_model=List[LeaderboardEntry])
async def get_leaderboard(
    metric: str = Query(..., description="'volume', 'pnl' or 'returnPct'"),
    coin: Optional[str] = Query(None),
    fromMs: Optional[int] = Query(None, description="Competition start time"),
    toMs: Optional[int] = Query(None, description="Competition end time"),
    builderOnly: bool = Query(False, description="Exclude users with any tainted lifecycle"),
    maxStartCapital: Optional[Decimal] = Query(None),
    service: LedgerQueryService = Depends(get_query_service),
):
    return await service.leaderboard(metric, coin, fromMs, toMs, builderOnly, maxStartCapital)


@app.get("/v1/deposits", response_model=DepositsAggregateResponse)
async def get_deposits(
    user: str = Query(..., description="User wallet address"),
    fromMs: Optional[int] = Query(None, description="Start timestamp (ms)"),
    toMs: Optional[int] = Query(None, description="End timestamp (ms)"),
    service: DepositService = Depends(get_deposit_service),
):
    """
    Deposit/withdrawal history for fair competition filtering.
    """
    return await service.get_deposits(user, fromMs, toMs)


@app.post("/v1/sync")
async def sync_data(
    user: str = Query(..., description="User wallet address"),
    coin: Optional[str] = Query(None, description="Token Symbol"),
    fromMs: Optional[int] = Query(None),
    toMs: Optional[int] = Query(None),
    service: IngestionService = Depends(get_ingestion_service),
):
    """
    Fetches fills from the venue, persists them and rebuilds positions.
    """
    count = await service.ingest_user(user, coin, fromMs, toMs)
    return {"status": "success", "user": user, "fills_ingested": count}
