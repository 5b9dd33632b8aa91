from decimal import Decimal

from builderledger.core.entities.position import PositionLifecycle, PositionSnapshot
from builderledger.core.use_cases.lifecycle_filter import (
    filter_builder_fills,
    filter_builder_positions,
    tainted_ranges,
)
from builderledger.core.use_cases.position_reconstructor import PositionReconstructor
from builderledger.core.use_cases.taint_detector import any_tainted, is_tainted

TEST_USER = "0x31ca8395cf837de08b24da3f660e77761dfb974b"


def lifecycle(start, end, builder, manual, coin="BTC"):
    return PositionLifecycle(
        user=TEST_USER,
        coin=coin,
        start_ms=start,
        end_ms=end,
        has_builder_fills=builder,
        has_non_builder_fills=manual,
    )


def snapshot(time_ms, net_size="1", coin="BTC"):
    return PositionSnapshot(
        user=TEST_USER,
        coin=coin,
        time_ms=time_ms,
        net_size=Decimal(net_size),
        avg_entry_px=Decimal("100"),
    )


def test_taint_requires_both_kinds_of_fill():
    assert not is_tainted(lifecycle(1, 2, builder=True, manual=False))
    assert not is_tainted(lifecycle(1, 2, builder=False, manual=True))
    assert is_tainted(lifecycle(1, 2, builder=True, manual=True))


def test_any_tainted():
    clean = lifecycle(1, 2, builder=True, manual=False)
    dirty = lifecycle(3, None, builder=True, manual=True)
    assert not any_tainted([clean])
    assert any_tainted([clean, dirty])
    assert not any_tainted([])


def test_tainted_lifecycle_excluded_in_full(make_fill):
    fills = [
        make_fill(1000, "B", 1, 50000, builder=True),
        make_fill(2000, "B", 1, 50500, builder=False),
        make_fill(3000, "A", 2, 51000, builder=True, closed_pnl=1500),
    ]
    result = PositionReconstructor.reconstruct(TEST_USER, "BTC", fills)

    # Two of three fills carry a builder fee, yet none survive
    assert filter_builder_fills(fills, result.lifecycles) == []


def test_clean_lifecycle_fills_survive(make_fill):
    tainted = [
        make_fill(1000, "B", 1, 100, builder=True),
        make_fill(2000, "A", 1, 101, builder=False),
    ]
    clean = [
        make_fill(3000, "B", 1, 102, builder=True),
        make_fill(4000, "A", 1, 103, builder=True),
    ]
    result = PositionReconstructor.reconstruct(TEST_USER, "BTC", tainted + clean)

    assert filter_builder_fills(tainted + clean, result.lifecycles) == clean


def test_non_builder_fill_dropped_even_in_clean_lifecycle(make_fill):
    manual = make_fill(1000, "B", 1, 100, builder=False)
    lifecycles = [lifecycle(1000, None, builder=False, manual=True)]

    assert filter_builder_fills([manual], lifecycles) == []


def test_open_tainted_lifecycle_extends_to_infinity(make_fill):
    later = make_fill(10 ** 12, "B", 1, 100, builder=True)
    lifecycles = [lifecycle(1000, None, builder=True, manual=True)]

    assert tainted_ranges(lifecycles) == {"BTC": [(1000, None)]}
    assert filter_builder_fills([later], lifecycles) == []


def test_taint_is_scoped_to_its_coin(make_fill):
    eth_fill = make_fill(1500, "B", 1, 3000, coin="ETH", builder=True)
    lifecycles = [lifecycle(1000, 2000, builder=True, manual=True, coin="BTC")]

    assert filter_builder_fills([eth_fill], lifecycles) == [eth_fill]


def test_positions_inside_clean_lifecycle_visible():
    lifecycles = [
        lifecycle(100, 120, builder=True, manual=False),
        lifecycle(200, None, builder=True, manual=True),
    ]
    snapshots = [snapshot(100), snapshot(120, "0"), snapshot(150, "0"), snapshot(200), snapshot(250)]

    visible = filter_builder_positions(snapshots, lifecycles)

    # 150 sits between lifecycles, 200+ belongs to the tainted one
    assert [s.time_ms for s in visible] == [100, 120]


def test_shared_boundary_with_tainted_lifecycle_is_hidden():
    lifecycles = [
        lifecycle(100, 200, builder=True, manual=False),
        lifecycle(200, 300, builder=True, manual=True),
    ]
    visible = filter_builder_positions([snapshot(150), snapshot(200)], lifecycles)

    assert [s.time_ms for s in visible] == [150]


def test_filtering_preserves_order_and_is_deterministic(make_fill):
    fills = [make_fill(t, "B" if t % 2000 else "A", 1, 100) for t in range(1000, 9000, 1000)]
    result = PositionReconstructor.reconstruct(TEST_USER, "BTC", fills)

    first = filter_builder_fills(fills, result.lifecycles)
    second = filter_builder_fills(fills, result.lifecycles)
    assert first == second == fills
