"""
Durable agent state: ledger cursor + orders not yet settled.

File layout (JSON, camelCase to stay readable by other tooling):

    {
      "cursor": {"txDigest": "...", "eventSeq": "0"} | null,
      "processedCount": 3,
      "pendingOrders": [{"orderId", "blobReference", "payload", "settlementAttempts"?}],
      "deferredOrders": [{"orderId", "blobReference", "attempts", "lastError"}]
    }

`pendingOrders` is a cache of the registry filter (unprocessed, payload
present); it is never edited independently of the registry.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from veiled_agent.common.logging import log_event
from veiled_agent.orders.models import OrderPayload, StaticOrder
from veiled_agent.orders.registry import OrderRegistry

logger = logging.getLogger(__name__)


class StateStoreError(RuntimeError):
    """
    Raised when the state file exists but cannot be read back.
    """


@dataclass(slots=True)
class DeferredOrder:
    """
    A ledger event whose blob could not be fetched or decrypted yet.
    """

    order_id: str
    blob_reference: str
    attempts: int = 1
    last_error: str = ""

    def to_json(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "blobReference": self.blob_reference,
            "attempts": int(self.attempts),
            "lastError": self.last_error,
        }

    @classmethod
    def from_json(cls, d: dict[str, Any]) -> "DeferredOrder":
        return cls(
            order_id=str(d["orderId"]),
            blob_reference=str(d["blobReference"]),
            attempts=int(d.get("attempts") or 1),
            last_error=str(d.get("lastError") or ""),
        )


@dataclass(slots=True)
class AgentState:
    cursor: Optional[dict[str, Any]] = None
    processed_count: int = 0
    pending_orders: list[StaticOrder] = field(default_factory=list)
    deferred_orders: list[DeferredOrder] = field(default_factory=list)

    @classmethod
    def from_registry(
        cls,
        registry: OrderRegistry,
        *,
        cursor: Optional[dict[str, Any]],
        deferred: list[DeferredOrder],
    ) -> "AgentState":
        return cls(
            cursor=dict(cursor) if cursor is not None else None,
            processed_count=registry.processed_count,
            pending_orders=registry.pending_static(),
            deferred_orders=list(deferred),
        )

    def to_json(self) -> dict[str, Any]:
        pending: list[dict[str, Any]] = []
        for o in self.pending_orders:
            if o.payload is None:
                continue
            row: dict[str, Any] = {
                "orderId": o.order_id,
                "blobReference": o.blob_reference,
                "payload": o.payload.to_wire(),
            }
            if o.settlement_attempts:
                row["settlementAttempts"] = int(o.settlement_attempts)
            pending.append(row)
        return {
            "cursor": self.cursor,
            "processedCount": int(self.processed_count),
            "pendingOrders": pending,
            "deferredOrders": [d.to_json() for d in self.deferred_orders],
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "AgentState":
        cursor = data.get("cursor")
        if cursor is not None and not isinstance(cursor, dict):
            raise StateStoreError(f"cursor must be an object or null, got {type(cursor).__name__}")

        pending: list[StaticOrder] = []
        for row in data.get("pendingOrders") or []:
            try:
                payload = OrderPayload.model_validate(row["payload"])
                pending.append(
                    StaticOrder(
                        order_id=str(row["orderId"]),
                        blob_reference=str(row["blobReference"]),
                        payload=payload,
                        settlement_attempts=int(row.get("settlementAttempts") or 0),
                    )
                )
            except (KeyError, TypeError, ValidationError) as e:
                log_event(
                    logger,
                    "state.pending_order_unreadable",
                    severity="WARNING",
                    order_id=(row or {}).get("orderId") if isinstance(row, dict) else None,
                    error=str(e),
                )

        deferred: list[DeferredOrder] = []
        for row in data.get("deferredOrders") or []:
            try:
                deferred.append(DeferredOrder.from_json(row))
            except (KeyError, TypeError, ValueError) as e:
                log_event(logger, "state.deferred_order_unreadable", severity="WARNING", error=str(e))

        return cls(
            cursor=cursor,
            processed_count=int(data.get("processedCount") or 0),
            pending_orders=pending,
            deferred_orders=deferred,
        )


class StateStore:
    """
    Single-writer JSON file store with atomic replace.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def load(self) -> AgentState:
        if not self.path.exists():
            log_event(logger, "state.fresh_start", path=str(self.path))
            return AgentState()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"cannot read state file {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise StateStoreError(f"state file {self.path} must hold a JSON object")
        state = AgentState.from_json(raw)
        log_event(
            logger,
            "state.loaded",
            path=str(self.path),
            cursor=state.cursor,
            processed_count=state.processed_count,
            pending=len(state.pending_orders),
            deferred=len(state.deferred_orders),
        )
        return state

    def save(self, state: AgentState) -> None:
        data = state.to_json()
        target_dir = self.path.parent
        target_dir.mkdir(parents=True, exist_ok=True)
        # Temp file in the same directory so the replace stays atomic.
        fd, tmp = tempfile.mkstemp(prefix=".agent_state_", suffix=".json", dir=str(target_dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
