from __future__ import annotations

import logging
from typing import Iterable, Optional

from veiled_agent.common.logging import log_event
from veiled_agent.orders.models import (
    DynamicOrder,
    ProcessedReason,
    StaticOrder,
    StrategyOrder,
)

logger = logging.getLogger(__name__)


class OrderRegistry:
    """
    In-memory source of truth for every order the engine evaluates.

    Owned by a single engine instance and mutated only from its control loop,
    so no locking is needed.
    """

    def __init__(self) -> None:
        self._static: dict[str, StaticOrder] = {}
        self._dynamic: dict[str, DynamicOrder] = {}
        self._strategy: dict[str, StrategyOrder] = {}
        self.processed_count: int = 0

    # ---- static orders ----

    def upsert_static(self, order: StaticOrder) -> bool:
        """
        Insert a static order unless its id is already known.

        Returns True when the order was inserted.
        """
        if order.order_id in self._static:
            return False
        self._static[order.order_id] = order
        return True

    def get_static(self, order_id: str) -> Optional[StaticOrder]:
        return self._static.get(order_id)

    def has_static(self, order_id: str) -> bool:
        return order_id in self._static

    def static_orders(self) -> list[StaticOrder]:
        return list(self._static.values())

    def pending_static(self) -> list[StaticOrder]:
        return [o for o in self._static.values() if o.is_pending]

    def mark_processed(self, order_id: str, *, reason: ProcessedReason) -> bool:
        order = self._static.get(order_id)
        if order is None or order.processed:
            return False
        order.processed = True
        order.processed_reason = reason
        order.next_attempt_at = None
        self.processed_count += 1
        log_event(logger, "registry.static_processed", order_id=order_id, reason=reason.value)
        return True

    # ---- dynamic orders ----

    def add_dynamic(self, order: DynamicOrder) -> bool:
        if order.id in self._dynamic:
            return False
        self._dynamic[order.id] = order
        return True

    def get_dynamic(self, order_id: str) -> Optional[DynamicOrder]:
        return self._dynamic.get(order_id)

    def dynamic_orders(self) -> list[DynamicOrder]:
        return list(self._dynamic.values())

    def dynamic_for_connection(self, connection_id: str) -> list[DynamicOrder]:
        return [o for o in self._dynamic.values() if o.owner_connection == connection_id]

    def remove_dynamic(self, order_id: str) -> Optional[DynamicOrder]:
        return self._dynamic.pop(order_id, None)

    # ---- strategy (legacy session) orders ----

    def upsert_strategy(self, order: StrategyOrder) -> bool:
        """
        Keep one strategy order per user; a newer nonce replaces the old one.
        """
        key = order.user.lower()
        existing = self._strategy.get(key)
        if existing is not None and order.nonce <= existing.nonce:
            return False
        self._strategy[key] = order
        return True

    def get_strategy(self, user: str) -> Optional[StrategyOrder]:
        return self._strategy.get(user.lower())

    def strategy_orders(self) -> list[StrategyOrder]:
        return list(self._strategy.values())

    def remove_strategy(self, user: str) -> Optional[StrategyOrder]:
        return self._strategy.pop(user.lower(), None)

    # ---- restore ----

    def restore(self, pending: Iterable[StaticOrder], *, processed_count: int) -> None:
        for order in pending:
            self.upsert_static(order)
        self.processed_count = max(0, int(processed_count))
