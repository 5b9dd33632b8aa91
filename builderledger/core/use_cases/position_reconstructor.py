from decimal import Decimal
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from builderledger.core.entities.position import (
    ZERO,
    PositionLifecycle,
    PositionSnapshot,
    PositionState,
    ReconstructionResult,
)
from builderledger.core.entities.trade import Fill
from builderledger.core.errors import InputInvalid


def fill_sort_key(fill: Fill) -> Tuple[int, int, int, str]:
    """
    Replay order: time ascending, ties broken by tid. Numeric tids compare
    numerically and sort before non-numeric ones, which compare lexically.
    Independent of input order, so shuffled input replays identically.
    """
    if fill.tid.isdigit():
        return (fill.time_ms, 0, int(fill.tid), "")
    return (fill.time_ms, 1, 0, fill.tid)


class StepResult(NamedTuple):
    state: PositionState
    snapshot: PositionSnapshot
    # Set when this fill opened or closed a lifecycle
    lifecycle: Optional[PositionLifecycle]


class PositionReconstructor:
    """
    Position history as a fold over the sorted fills of one (user, coin):
    ``apply_fill(state, fill) -> (state', snapshot, lifecycle?)``.
    Coins never interact, so separate coins can be folded in parallel.
    """

    @staticmethod
    def sort_fills(fills: Iterable[Fill]) -> List[Fill]:
        return sorted(fills, key=fill_sort_key)

    @staticmethod
    def next_avg_entry_px(old_size: Decimal, avg_entry_px: Decimal, signed_sz: Decimal, px: Decimal) -> Decimal:
        """Average-cost entry price after applying ``signed_sz`` at ``px``."""
        new_size = old_size + signed_sz

        if new_size == 0:
            return ZERO
        if old_size == 0:
            return px
        # Growing on the same side: weighted average
        if (old_size > 0) == (signed_sz > 0):
            total_cost = abs(old_size) * avg_entry_px + abs(signed_sz) * px
            return total_cost / abs(new_size)
        # Partial reduction: price stays sticky
        if abs(new_size) < abs(old_size):
            return avg_entry_px
        # Flipped through zero in one fill
        return px

    @staticmethod
    def apply_fill(state: PositionState, fill: Fill) -> StepResult:
        old_size = state.net_size
        signed_sz = fill.signed_sz
        new_size = old_size + signed_sz
        attributed = fill.is_builder_fill

        lifecycle = state.open_lifecycle
        last_closed = state.last_closed
        event: Optional[PositionLifecycle] = None

        if old_size == 0 and new_size != 0:
            if last_closed is not None and last_closed.start_ms == fill.time_ms:
                # Reopened within the millisecond it opened and closed: same
                # (user, coin, start_ms) key, so keep extending that record.
                lifecycle = last_closed.model_copy(update={
                    "end_ms": None,
                    "has_builder_fills": last_closed.has_builder_fills or attributed,
                    "has_non_builder_fills": last_closed.has_non_builder_fills or not attributed,
                })
            else:
                lifecycle = PositionLifecycle(
                    user=fill.user,
                    coin=fill.coin,
                    start_ms=fill.time_ms,
                    has_builder_fills=attributed,
                    has_non_builder_fills=not attributed,
                )
            event = lifecycle
        elif lifecycle is not None:
            lifecycle = lifecycle.model_copy(update={
                "has_builder_fills": lifecycle.has_builder_fills or attributed,
                "has_non_builder_fills": lifecycle.has_non_builder_fills or not attributed,
            })

        avg_entry_px = PositionReconstructor.next_avg_entry_px(
            old_size, state.avg_entry_px, signed_sz, fill.px
        )

        snapshot = PositionSnapshot(
            user=fill.user,
            coin=fill.coin,
            time_ms=fill.time_ms,
            net_size=new_size,
            avg_entry_px=avg_entry_px,
        )

        if old_size != 0 and new_size == 0 and lifecycle is not None:
            lifecycle = lifecycle.model_copy(update={"end_ms": fill.time_ms})
            event = lifecycle
            last_closed = lifecycle
            lifecycle = None

        next_state = PositionState(
            net_size=new_size,
            avg_entry_px=avg_entry_px,
            open_lifecycle=lifecycle,
            last_closed=last_closed,
        )
        return StepResult(next_state, snapshot, event)

    @staticmethod
    def reconstruct(user: str, coin: str, fills: Iterable[Fill]) -> ReconstructionResult:
        """
        Replays every fill of (user, coin). Fills sharing a millisecond
        collapse into one snapshot holding the state after the last of them.
        A lifecycle still open at the end is returned with end_ms None.
        """
        state = PositionState()
        snapshots: Dict[int, PositionSnapshot] = {}
        lifecycles: Dict[int, PositionLifecycle] = {}

        for fill in PositionReconstructor.sort_fills(fills):
            if fill.user != user or fill.coin != coin:
                raise InputInvalid(
                    f"Fill {fill.tid} belongs to {fill.user}/{fill.coin}, not {user}/{coin}"
                )

            state, snapshot, lifecycle = PositionReconstructor.apply_fill(state, fill)
            snapshots[snapshot.time_ms] = snapshot
            if lifecycle is not None:
                lifecycles[lifecycle.start_ms] = lifecycle

        if state.open_lifecycle is not None:
            lifecycles[state.open_lifecycle.start_ms] = state.open_lifecycle

        return ReconstructionResult(
            snapshots=list(snapshots.values()),
            lifecycles=sorted(lifecycles.values(), key=lambda lc: lc.start_ms),
        )
