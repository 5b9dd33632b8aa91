import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from hyperliquid.info import Info
from hyperliquid.utils import constants

from builderledger.core.entities.deposit import DepositRecord
from builderledger.core.entities.trade import Fill
from builderledger.core.errors import UpstreamUnavailable
from builderledger.core.interfaces.datasource import IDataSource
from builderledger.core.use_cases.position_reconstructor import fill_sort_key

logger = logging.getLogger(__name__)

# userFillsByTime returns at most this many fills per request
FILLS_PAGE_LIMIT = 2000


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


class HLPublicGateway(IDataSource):
    """
    Implementation of IDataSource for the Hyperliquid Public Info API.
    Uses the official Python SDK wrapped in asyncio threads for non-blocking execution.
    """

    def __init__(self, use_testnet: bool = False, max_batches: int = 50, batch_delay_ms: int = 100):
        """
        :param use_testnet: Boolean to toggle between Mainnet and Testnet.
        :param max_batches: Pagination ceiling per fill query.
        :param batch_delay_ms: Pause between pages to stay under the rate limit.
        """
        self.api_url = constants.TESTNET_API_URL if use_testnet else constants.MAINNET_API_URL
        self.max_batches = max_batches
        self.batch_delay_ms = batch_delay_ms
        self._info: Optional[Info] = None
        logger.info(f"HLPublicGateway configured. URL: {self.api_url}")

    async def _post(self, payload: Dict[str, Any]) -> Any:
        """
        The SDK is synchronous, so every call runs in a separate thread.
        The client is built lazily since Info() fetches exchange metadata on construction.
        """
        try:
            if self._info is None:
                # 'skip_ws=True': REST history only, no background WS threads
                self._info = await asyncio.to_thread(Info, base_url=self.api_url, skip_ws=True)
            return await asyncio.to_thread(self._info.post, "/info", payload)
        except Exception as e:
            logger.error(f"Hyperliquid request {payload.get('type')} failed: {e}")
            raise UpstreamUnavailable(f"Hyperliquid {payload.get('type')} request failed: {e}") from e

    async def get_fills(
        self,
        user: str,
        coin: Optional[str] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None
    ) -> List[Fill]:
        """
        Pages forward through 'userFillsByTime'. Each page restarts at the
        latest timestamp seen, so fills sharing that millisecond are fetched
        again and dropped by tid.
        """
        cursor = start_time if start_time is not None else 0
        seen: Dict[str, Fill] = {}

        for batch in range(1, self.max_batches + 1):
            payload = {"type": "userFillsByTime", "user": user, "startTime": cursor}
            if end_time is not None:
                payload["endTime"] = end_time

            raw_fills = await self._post(payload) or []
            new_count = 0
            for fill in self._map_fills(raw_fills, user):
                if fill.tid not in seen:
                    seen[fill.tid] = fill
                    new_count += 1

            logger.info(f"Fills batch {batch} for {user}: {len(raw_fills)} fetched, {new_count} new")

            if len(raw_fills) < FILLS_PAGE_LIMIT or new_count == 0:
                break

            cursor = max(int(f.get("time", cursor)) for f in raw_fills)
            await asyncio.sleep(self.batch_delay_ms / 1000)
        else:
            logger.warning(f"Stopped paging fills for {user} after {self.max_batches} batches")

        fills = [f for f in seen.values() if coin is None or f.coin == coin]
        # API pages are not guaranteed ascending
        fills.sort(key=fill_sort_key)
        return fills

    def _map_fills(self, raw_fills: List[dict], user: str) -> List[Fill]:
        """
        Maps raw Hyperliquid JSON fills to the domain entity.
        Malformed or zero-size fills are skipped.
        """
        fills = []
        for raw in raw_fills:
            try:
                fills.append(Fill(
                    user=user,
                    time_ms=int(raw["time"]),
                    coin=raw["coin"],
                    side=raw["side"],
                    px=Decimal(str(raw["px"])),
                    sz=Decimal(str(raw["sz"])),
                    fee=_to_decimal(raw.get("fee")) or Decimal("0"),
                    closed_pnl=_to_decimal(raw.get("closedPnl")),
                    builder_fee=_to_decimal(raw.get("builderFee")),
                    tid=str(raw["tid"]),
                    hash=raw.get("hash"),
                ))
            except (KeyError, TypeError, ValueError, InvalidOperation) as map_err:
                logger.warning(f"Skipping malformed fill {raw.get('tid')}: {map_err}")
        return fills

    async def get_equity_at(self, user: str, timestamp: Optional[int] = None) -> Decimal:
        """
        Account value from 'clearinghouseState'. The public API only exposes the
        current value, so ``timestamp`` is ignored; historical equity comes from
        snapshots recorded at ingestion time.
        """
        state = await self._post({"type": "clearinghouseState", "user": user}) or {}
        summary = state.get("marginSummary") or state.get("crossMarginSummary") or {}
        return _to_decimal(summary.get("accountValue")) or Decimal("0")

    async def get_user_deposits(
        self,
        user: str,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None
    ) -> List[DepositRecord]:
        """
        Deposit/withdrawal history from 'userNonFundingLedgerUpdates'.
        Withdrawals are returned with negative amounts.
        """
        payload: Dict[str, Any] = {
            "type": "userNonFundingLedgerUpdates",
            "user": user,
            "startTime": from_ms if from_ms is not None else 0,
        }
        if to_ms is not None:
            payload["endTime"] = to_ms

        raw_updates = await self._post(payload) or []

        deposits = []
        for update in raw_updates:
            try:
                delta = update.get("delta", {})
                update_type = delta.get("type", "")
                if update_type not in ("deposit", "withdraw"):
                    continue

                timestamp = int(update.get("time", 0))
                if from_ms is not None and timestamp < from_ms:
                    continue
                if to_ms is not None and timestamp > to_ms:
                    continue

                amount = Decimal(str(delta.get("usdc", "0")))
                if update_type == "withdraw":
                    amount = -abs(amount)

                deposits.append(DepositRecord(
                    time_ms=timestamp,
                    amount=amount,
                    tx_hash=update.get("hash"),
                ))
            except (TypeError, ValueError, InvalidOperation, AttributeError) as e:
                logger.warning(f"Skipping malformed ledger update: {e}")

        deposits.sort(key=lambda d: d.time_ms)
        return deposits

    async def health(self) -> bool:
        try:
            await self._post({"type": "meta"})
            return True
        except UpstreamUnavailable:
            return False
