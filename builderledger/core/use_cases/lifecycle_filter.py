"""
Builder-only visibility rules.

Attribution is judged per fill, contamination per lifecycle: one manual fill
inside a bot-run position invalidates the whole interval, since the two cannot
be split into independent average-cost trajectories.

Interval bounds are inclusive; an open lifecycle extends to +infinity.
"""
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from builderledger.core.entities.position import PositionLifecycle, PositionSnapshot
from builderledger.core.entities.trade import Fill
from builderledger.core.use_cases.taint_detector import is_tainted

Interval = Tuple[int, Optional[int]]


def _in_interval(time_ms: int, interval: Interval) -> bool:
    start, end = interval
    return start <= time_ms and (end is None or time_ms <= end)


def group_by_coin(lifecycles: Iterable[PositionLifecycle]) -> Dict[str, List[PositionLifecycle]]:
    grouped: Dict[str, List[PositionLifecycle]] = defaultdict(list)
    for lc in lifecycles:
        grouped[lc.coin].append(lc)
    return grouped


def tainted_ranges(lifecycles: Iterable[PositionLifecycle]) -> Dict[str, List[Interval]]:
    """Exclusion intervals per coin, built from tainted lifecycles only."""
    ranges: Dict[str, List[Interval]] = defaultdict(list)
    for lc in lifecycles:
        if is_tainted(lc):
            ranges[lc.coin].append((lc.start_ms, lc.end_ms))
    return ranges


def filter_builder_fills(fills: Iterable[Fill], lifecycles: Iterable[PositionLifecycle]) -> List[Fill]:
    """Keep builder-attributed fills that fall outside every tainted lifecycle of their coin."""
    ranges = tainted_ranges(lifecycles)
    visible = []
    for fill in fills:
        if not fill.is_builder_fill:
            continue
        if any(_in_interval(fill.time_ms, r) for r in ranges.get(fill.coin, ())):
            continue
        visible.append(fill)
    return visible


def filter_builder_positions(
    snapshots: Iterable[PositionSnapshot],
    lifecycles: Iterable[PositionLifecycle]
) -> List[PositionSnapshot]:
    """
    Keep snapshots covered by a lifecycle of their coin and by no tainted one.
    Snapshots between lifecycles carry no exposure and are dropped.
    """
    by_coin = group_by_coin(lifecycles)
    visible = []
    for snapshot in snapshots:
        covering = [lc for lc in by_coin.get(snapshot.coin, ()) if lc.covers(snapshot.time_ms)]
        if covering and not any(is_tainted(lc) for lc in covering):
            visible.append(snapshot)
    return visible
