from typing import Iterable

from builderledger.core.entities.position import PositionLifecycle


def is_tainted(lifecycle: PositionLifecycle) -> bool:
    """A lifecycle is tainted when it mixes builder and non-builder fills."""
    return lifecycle.has_builder_fills and lifecycle.has_non_builder_fills


def any_tainted(lifecycles: Iterable[PositionLifecycle]) -> bool:
    return any(is_tainted(lc) for lc in lifecycles)
