"""
Endpoint tests against the in-memory repository and mock data source.

Covers:
- /health
- /v1/sync
- /v1/trades, /v1/positions/history (builderOnly)
- /v1/pnl (maxStartCapital)
- /v1/leaderboard
- /v1/deposits
- error mapping (400 / 503)
"""
from decimal import Decimal

from httpx import AsyncClient

from builderledger.core.entities.deposit import DepositRecord
from builderledger.core.entities.position import EquitySnapshot
from builderledger.core.errors import UpstreamUnavailable

TEST_USER = "0x31ca8395cf837de08b24da3f660e77761dfb974b"


async def seed(client: AsyncClient, datasource, fills, user=TEST_USER):
    datasource.add_fills(fills)
    resp = await client.post(f"/v1/sync?user={user}")
    assert resp.status_code == 200
    return resp.json()


async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy", "database": "connected", "datasource": "reachable"}


async def test_sync_reports_fill_count(client: AsyncClient, datasource, make_fill):
    body = await seed(client, datasource, [make_fill(1000, "B", 1, 100), make_fill(2000, "A", 1, 110)])
    assert body["status"] == "success"
    assert body["fills_ingested"] == 2


async def test_trades_builder_only(client: AsyncClient, datasource, make_fill):
    await seed(client, datasource, [
        make_fill(1000, "B", 1, 50000, builder=True),
        make_fill(2000, "B", 1, 50500, builder=False),
        make_fill(3000, "A", 2, 51000, builder=True, closed_pnl=1500),
        make_fill(4000, "B", "0.5", 49000, builder=True),
    ])

    resp = await client.get(f"/v1/trades?user={TEST_USER}&coin=BTC")
    assert resp.status_code == 200
    assert len(resp.json()) == 4

    resp = await client.get(f"/v1/trades?user={TEST_USER}&coin=BTC&builderOnly=true")
    data = resp.json()
    assert [t["time_ms"] for t in data] == [4000]
    assert Decimal(data[0]["sz"]) == Decimal("0.5")
    assert data[0]["builder"] == "attributed"


async def test_trades_time_filter(client: AsyncClient, datasource, make_fill):
    await seed(client, datasource, [make_fill(t, "B", 1, 100) for t in (1000, 2000, 3000)])

    resp = await client.get(f"/v1/trades?user={TEST_USER}&fromMs=1500&toMs=2500")
    assert [t["time_ms"] for t in resp.json()] == [2000]


async def test_positions_history(client: AsyncClient, datasource, make_fill):
    await seed(client, datasource, [
        make_fill(1000, "B", 1, 50000),
        make_fill(2000, "B", 1, 52000),
        make_fill(3000, "A", 1, 53000),
    ])

    resp = await client.get(f"/v1/positions/history?user={TEST_USER}&coin=BTC")
    assert resp.status_code == 200
    data = resp.json()
    assert [Decimal(p["net_size"]) for p in data] == [Decimal("1"), Decimal("2"), Decimal("1")]
    assert Decimal(data[-1]["avg_entry_px"]) == Decimal("51000")
    assert "tainted" not in data[-1]


async def test_positions_history_builder_only(client: AsyncClient, datasource, make_fill):
    await seed(client, datasource, [
        make_fill(1000, "B", 1, 100, builder=False),
        make_fill(2000, "A", 1, 110, builder=True),
        make_fill(3000, "B", 1, 120, builder=True),
    ])

    resp = await client.get(f"/v1/positions/history?user={TEST_USER}&coin=BTC&builderOnly=true")
    data = resp.json()
    assert [p["time_ms"] for p in data] == [3000]
    assert data[0]["tainted"] is False


async def test_pnl_with_capital_cap(client: AsyncClient, datasource, repo, make_fill):
    await seed(client, datasource, [
        make_fill(2000, "B", 1, 100, fee="1.5"),
        make_fill(3000, "A", 1, 5100, fee="1.5", closed_pnl=5000),
    ])
    repo.upsert_equity_snapshot(EquitySnapshot(user=TEST_USER, time_ms=1000, account_value=Decimal("1000000")))

    resp = await client.get(f"/v1/pnl?user={TEST_USER}&coin=BTC&fromMs=1500&maxStartCapital=10000")
    assert resp.status_code == 200
    data = resp.json()
    assert Decimal(data["realized_pnl"]) == Decimal("5000")
    assert Decimal(data["return_pct"]) == Decimal("50")
    assert Decimal(data["fees_paid"]) == Decimal("3")
    assert data["trade_count"] == 2
    assert "tainted" not in data


async def test_pnl_portfolio_breakdown(client: AsyncClient, datasource, make_fill):
    await seed(client, datasource, [
        make_fill(1000, "A", 1, 100, closed_pnl=10),
        make_fill(2000, "A", 1, 100, coin="ETH", closed_pnl=-4),
    ])

    resp = await client.get(f"/v1/pnl?user={TEST_USER}&builderOnly=true")
    data = resp.json()
    assert Decimal(data["realized_pnl"]) == Decimal("6")
    assert set(data["coins"]) == {"BTC", "ETH"}
    assert data["tainted"] is False


async def test_leaderboard(client: AsyncClient, datasource, make_fill):
    other = "0xdfc7170a41764724040e34c9c11816f19934145c"
    await seed(client, datasource, [make_fill(1000, "B", 1, 100), make_fill(2000, "A", 1, 150, closed_pnl=50)])
    await seed(client, datasource, [
        make_fill(1000, "B", 1, 100, user=other),
        make_fill(1500, "B", 1, 100, user=other, builder=False),
        make_fill(2000, "A", 2, 200, user=other, closed_pnl=200),
    ], user=other)

    resp = await client.get("/v1/leaderboard?metric=pnl")
    assert [(e["rank"], e["user"]) for e in resp.json()] == [(1, other), (2, TEST_USER)]

    resp = await client.get("/v1/leaderboard?metric=pnl&builderOnly=true")
    data = resp.json()
    assert [e["user"] for e in data] == [TEST_USER]
    assert data[0]["tainted"] is False


async def test_leaderboard_requires_valid_metric(client: AsyncClient):
    resp = await client.get("/v1/leaderboard?metric=sharpe")
    assert resp.status_code == 400
    assert "metric" in resp.json()["error"]


async def test_invalid_range_is_rejected(client: AsyncClient):
    resp = await client.get(f"/v1/trades?user={TEST_USER}&fromMs=2000&toMs=1000")
    assert resp.status_code == 400


async def test_missing_user_is_rejected(client: AsyncClient):
    resp = await client.get("/v1/pnl")
    assert resp.status_code == 422


async def test_deposits(client: AsyncClient, datasource):
    datasource.deposits[TEST_USER] = [
        DepositRecord(time_ms=1000, amount=Decimal("10000"), tx_hash="0xabc"),
        DepositRecord(time_ms=5000, amount=Decimal("-2500"), tx_hash="0xdef"),
    ]

    resp = await client.get(f"/v1/deposits?user={TEST_USER}&fromMs=0&toMs=4000")
    assert resp.status_code == 200
    data = resp.json()
    assert Decimal(data["total_deposits"]) == Decimal("10000")
    assert data["withdrawal_count"] == 0
    assert [d["time_ms"] for d in data["deposits"]] == [1000]


async def test_upstream_failure_is_retryable(client: AsyncClient, datasource, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise UpstreamUnavailable("Hyperliquid userFillsByTime request failed")

    monkeypatch.setattr(datasource, "get_fills", unavailable)

    resp = await client.post(f"/v1/sync?user={TEST_USER}")
    assert resp.status_code == 503
    assert resp.json()["retryable"] is True
