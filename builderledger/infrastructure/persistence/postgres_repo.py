import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import List, Optional

import psycopg2
from psycopg2.extras import execute_values

from builderledger.core.entities.deposit import DepositRecord
from builderledger.core.entities.position import EquitySnapshot, PositionLifecycle, PositionSnapshot
from builderledger.core.entities.trade import Fill
from builderledger.core.errors import StorageFailure
from builderledger.core.interfaces.repository import ILedgerRepository

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS fills (
        tid VARCHAR PRIMARY KEY,
        "user" VARCHAR NOT NULL,
        coin VARCHAR NOT NULL,
        time_ms BIGINT NOT NULL,
        side VARCHAR(1) NOT NULL,
        px NUMERIC NOT NULL,
        sz NUMERIC NOT NULL,
        fee NUMERIC NOT NULL,
        closed_pnl NUMERIC,
        builder_fee NUMERIC,
        hash VARCHAR
    );
    """,
    'CREATE INDEX IF NOT EXISTS fills_user_coin_time ON fills ("user", coin, time_ms);',
    """
    CREATE TABLE IF NOT EXISTS position_snapshots (
        "user" VARCHAR NOT NULL,
        coin VARCHAR NOT NULL,
        time_ms BIGINT NOT NULL,
        net_size NUMERIC NOT NULL,
        avg_entry_px NUMERIC NOT NULL,
        PRIMARY KEY ("user", coin, time_ms)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS position_lifecycles (
        "user" VARCHAR NOT NULL,
        coin VARCHAR NOT NULL,
        start_ms BIGINT NOT NULL,
        end_ms BIGINT,
        has_builder_fills BOOLEAN NOT NULL,
        has_non_builder_fills BOOLEAN NOT NULL,
        PRIMARY KEY ("user", coin, start_ms)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS equity_snapshots (
        "user" VARCHAR NOT NULL,
        time_ms BIGINT NOT NULL,
        account_value NUMERIC NOT NULL,
        PRIMARY KEY ("user", time_ms)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS deposits (
        "user" VARCHAR NOT NULL,
        time_ms BIGINT NOT NULL,
        amount NUMERIC NOT NULL,
        tx_hash VARCHAR,
        PRIMARY KEY ("user", time_ms)
    );
    """,
]


def _range_clause(column: str, from_ms: Optional[int], to_ms: Optional[int], params: list) -> str:
    clause = ""
    if from_ms is not None:
        clause += f" AND {column} >= %s"
        params.append(from_ms)
    if to_ms is not None:
        clause += f" AND {column} <= %s"
        params.append(to_ms)
    return clause


class PostgresRepo(ILedgerRepository):
    def __init__(self, dsn: str):
        self.dsn = dsn
        self._init_db()

    @contextmanager
    def _cursor(self):
        """Connection per call: commit on success, rollback on error, always close."""
        try:
            conn = psycopg2.connect(self.dsn)
        except psycopg2.Error as e:
            logger.error(f"Failed to connect to DB: {e}")
            raise StorageFailure(f"Database unavailable: {e}") from e
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
            cur.close()
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"Database operation failed: {e}")
            raise StorageFailure(str(e)) from e
        finally:
            conn.close()

    def _init_db(self):
        with self._cursor() as cur:
            for statement in SCHEMA:
                cur.execute(statement)

    # Writes

    def upsert_fills(self, fills: List[Fill]) -> None:
        # ON CONFLICT cannot touch one row twice per statement
        unique = list({f.tid: f for f in fills}.values())
        if not unique:
            return
        data = [
            (f.tid, f.user, f.coin, f.time_ms, f.side, f.px, f.sz, f.fee, f.closed_pnl, f.builder_fee, f.hash)
            for f in unique
        ]
        with self._cursor() as cur:
            execute_values(cur, """
                INSERT INTO fills (tid, "user", coin, time_ms, side, px, sz, fee, closed_pnl, builder_fee, hash)
                VALUES %s
                ON CONFLICT (tid) DO UPDATE SET
                    closed_pnl = EXCLUDED.closed_pnl,
                    builder_fee = EXCLUDED.builder_fee,
                    fee = EXCLUDED.fee
            """, data)

    def replace_positions(self, user: str, coin: str, snapshots: List[PositionSnapshot]) -> None:
        unique = list({p.time_ms: p for p in snapshots}.values())
        data = [(p.user, p.coin, p.time_ms, p.net_size, p.avg_entry_px) for p in unique]
        # Delete and insert commit together
        with self._cursor() as cur:
            cur.execute('DELETE FROM position_snapshots WHERE "user" = %s AND coin = %s', (user, coin))
            if data:
                execute_values(cur, """
                    INSERT INTO position_snapshots ("user", coin, time_ms, net_size, avg_entry_px)
                    VALUES %s
                """, data)

    def replace_lifecycles(self, user: str, coin: str, lifecycles: List[PositionLifecycle]) -> None:
        unique = list({lc.start_ms: lc for lc in lifecycles}.values())
        data = [
            (lc.user, lc.coin, lc.start_ms, lc.end_ms, lc.has_builder_fills, lc.has_non_builder_fills)
            for lc in unique
        ]
        with self._cursor() as cur:
            cur.execute('DELETE FROM position_lifecycles WHERE "user" = %s AND coin = %s', (user, coin))
            if data:
                execute_values(cur, """
                    INSERT INTO position_lifecycles ("user", coin, start_ms, end_ms, has_builder_fills, has_non_builder_fills)
                    VALUES %s
                """, data)

    def upsert_equity_snapshot(self, snapshot: EquitySnapshot) -> None:
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO equity_snapshots ("user", time_ms, account_value)
                VALUES (%s, %s, %s)
                ON CONFLICT ("user", time_ms) DO UPDATE SET account_value = EXCLUDED.account_value
            """, (snapshot.user, snapshot.time_ms, snapshot.account_value))

    def upsert_deposits(self, user: str, deposits: List[DepositRecord]) -> None:
        unique = list({d.time_ms: d for d in deposits}.values())
        if not unique:
            return
        data = [(user, d.time_ms, d.amount, d.tx_hash) for d in unique]
        with self._cursor() as cur:
            execute_values(cur, """
                INSERT INTO deposits ("user", time_ms, amount, tx_hash)
                VALUES %s
                ON CONFLICT ("user", time_ms) DO UPDATE SET
                    amount = EXCLUDED.amount,
                    tx_hash = EXCLUDED.tx_hash
            """, data)

    # Reads

    def get_fills(self, user, coin=None, from_ms=None, to_ms=None) -> List[Fill]:
        query = """
            SELECT tid, "user", coin, time_ms, side, px, sz, fee, closed_pnl, builder_fee, hash
            FROM fills
            WHERE "user" = %s
        """
        params: list = [user]
        if coin:
            query += " AND coin = %s"
            params.append(coin)
        query += _range_clause("time_ms", from_ms, to_ms, params)
        # tid ordering matches fill_sort_key for numeric venue ids
        query += " ORDER BY time_ms ASC, LENGTH(tid) ASC, tid ASC"

        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()

        return [
            Fill(
                tid=row[0],
                user=row[1],
                coin=row[2],
                time_ms=row[3],
                side=row[4],
                px=row[5],
                sz=row[6],
                fee=row[7],
                closed_pnl=row[8],
                builder_fee=row[9],
                hash=row[10],
            )
            for row in rows
        ]

    def get_positions(self, user, coin=None, from_ms=None, to_ms=None) -> List[PositionSnapshot]:
        query = """
            SELECT "user", coin, time_ms, net_size, avg_entry_px
            FROM position_snapshots
            WHERE "user" = %s
        """
        params: list = [user]
        if coin:
            query += " AND coin = %s"
            params.append(coin)
        query += _range_clause("time_ms", from_ms, to_ms, params)
        query += " ORDER BY time_ms ASC, coin ASC"

        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()

        return [
            PositionSnapshot(user=row[0], coin=row[1], time_ms=row[2], net_size=row[3], avg_entry_px=row[4])
            for row in rows
        ]

    def get_lifecycles(self, user, coin=None, from_ms=None, to_ms=None) -> List[PositionLifecycle]:
        query = """
            SELECT "user", coin, start_ms, end_ms, has_builder_fills, has_non_builder_fills
            FROM position_lifecycles
            WHERE "user" = %s
        """
        params: list = [user]
        if coin:
            query += " AND coin = %s"
            params.append(coin)
        if from_ms is not None:
            query += " AND (end_ms IS NULL OR end_ms >= %s)"
            params.append(from_ms)
        if to_ms is not None:
            query += " AND start_ms <= %s"
            params.append(to_ms)
        query += " ORDER BY start_ms ASC, coin ASC"

        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()

        return [
            PositionLifecycle(
                user=row[0],
                coin=row[1],
                start_ms=row[2],
                end_ms=row[3],
                has_builder_fills=row[4],
                has_non_builder_fills=row[5],
            )
            for row in rows
        ]

    def get_equity_at(self, user: str, time_ms: int) -> Optional[Decimal]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT account_value FROM equity_snapshots
                WHERE "user" = %s AND time_ms <= %s
                ORDER BY time_ms DESC
                LIMIT 1
            """, (user, time_ms))
            row = cur.fetchone()
        return row[0] if row else None

    def get_deposits(self, user, from_ms=None, to_ms=None) -> List[DepositRecord]:
        query = 'SELECT time_ms, amount, tx_hash FROM deposits WHERE "user" = %s'
        params: list = [user]
        query += _range_clause("time_ms", from_ms, to_ms, params)
        query += " ORDER BY time_ms ASC"

        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()

        return [DepositRecord(time_ms=row[0], amount=row[1], tx_hash=row[2]) for row in rows]

    def get_active_users(self, coin=None, from_ms=None, to_ms=None) -> List[str]:
        query = 'SELECT DISTINCT "user" FROM fills WHERE TRUE'
        params: list = []
        if coin:
            query += " AND coin = %s"
            params.append(coin)
        query += _range_clause("time_ms", from_ms, to_ms, params)
        query += ' ORDER BY "user" ASC'

        with self._cursor() as cur:
            cur.execute(query, params)
            return [row[0] for row in cur.fetchall()]

    def health(self) -> bool:
        try:
            with self._cursor() as cur:
                cur.execute("SELECT 1")
            return True
        except StorageFailure:
            return False
