"""
Trigger rules (pure functions of price and order state).

Static/strategy orders:  buy  -> price <= target
                         sell -> price >= target
Dynamic trailing orders: ratchet the extreme first, recompute the target,
then compare against the fresh target.
"""

from __future__ import annotations

from veiled_agent.orders.models import (
    Direction,
    DynamicOrder,
    DynamicStatus,
    StaticOrder,
    StrategyOrder,
)


def crosses(direction: Direction, price: float, target: float) -> bool:
    if direction == Direction.BUY:
        return price <= target
    return price >= target


def static_triggered(price: float, order: StaticOrder) -> bool:
    if order.processed or order.payload is None:
        return False
    return crosses(order.payload.direction, price, order.payload.target_price)


def strategy_triggered(price: float, order: StrategyOrder) -> bool:
    return crosses(Direction.BUY, price, order.price)


def trailing_target(direction: Direction, extreme: float, offset: float) -> float:
    return extreme - offset if direction == Direction.BUY else extreme + offset


def ratchet_extreme(direction: Direction, extreme: float | None, price: float) -> float:
    if extreme is None:
        return price
    return max(extreme, price) if direction == Direction.BUY else min(extreme, price)


def update_dynamic(price: float, order: DynamicOrder) -> bool:
    """
    Apply one tick to an active dynamic order; returns True when it triggers.

    Mutates `extreme_price`, `current_target` and, on trigger, `status`.
    """
    if order.status != DynamicStatus.ACTIVE:
        return False
    order.extreme_price = ratchet_extreme(order.direction, order.extreme_price, price)
    order.current_target = trailing_target(order.direction, order.extreme_price, order.trailing_offset)
    if crosses(order.direction, price, order.current_target):
        order.status = DynamicStatus.TRIGGERED
        return True
    return False
