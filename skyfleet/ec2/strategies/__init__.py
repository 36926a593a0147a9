"""Allocation strategies.

Example:
    from skyfleet.ec2.strategies import select_strategy

    strategy_cls = select_strategy(template)
    records = strategy_cls(context, template, ids, min_count).allocate()
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

from .base import AllocationContext, AllocationStrategy, BaseStrategy
from .on_demand import OnDemandStrategy
from .scaling_group import ScalingGroupStrategy
from .spot import SpotAllocationRecord, SpotStrategy

if TYPE_CHECKING:
    from skyfleet.template import Template


class StrategyKind(StrEnum):
    ON_DEMAND = "on-demand"
    SPOT = "spot"
    SCALING_GROUP = "scaling-group"


def strategy_kind(template: Template | None) -> StrategyKind:
    """Scaling group if automatic, else spot if requested, else on-demand."""
    if template is None:
        return StrategyKind.ON_DEMAND
    if template.automatic:
        return StrategyKind.SCALING_GROUP
    if template.use_spot_instances:
        return StrategyKind.SPOT
    return StrategyKind.ON_DEMAND


_STRATEGIES: dict[StrategyKind, type[BaseStrategy]] = {
    StrategyKind.ON_DEMAND: OnDemandStrategy,
    StrategyKind.SPOT: SpotStrategy,
    StrategyKind.SCALING_GROUP: ScalingGroupStrategy,
}


def select_strategy(template: Template | None) -> type[BaseStrategy]:
    return _STRATEGIES[strategy_kind(template)]


__all__ = [
    "AllocationContext",
    "AllocationStrategy",
    "BaseStrategy",
    "OnDemandStrategy",
    "ScalingGroupStrategy",
    "SpotAllocationRecord",
    "SpotStrategy",
    "StrategyKind",
    "select_strategy",
    "strategy_kind",
]
