import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw.strip())


class Settings(BaseModel):
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    datasource: str = "hyperliquid"  # 'hyperliquid' or 'mock'
    use_testnet: bool = False
    max_fill_batches: int = 50
    batch_delay_ms: int = 100
    leaderboard_cache_ttl: int = 60
    test_wallets: List[str] = []
    log_level: str = "INFO"


def load_settings() -> Settings:
    wallets = os.getenv("TEST_WALLETS", "")
    return Settings(
        database_url=os.getenv("DATABASE_URL") or None,
        redis_url=os.getenv("REDIS_URL") or None,
        datasource=os.getenv("DATASOURCE", "hyperliquid").strip().lower(),
        use_testnet=_env_bool("HL_USE_TESTNET"),
        max_fill_batches=_env_int("HL_MAX_FILL_BATCHES", 50),
        batch_delay_ms=_env_int("HL_BATCH_DELAY_MS", 100),
        leaderboard_cache_ttl=_env_int("LEADERBOARD_CACHE_TTL", 60),
        test_wallets=[w.strip() for w in wallets.split(",") if w.strip()],
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
