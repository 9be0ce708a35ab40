from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from veiled_agent.common.logging import log_event
from veiled_agent.ingestion.identity import LedgerIdentity

logger = logging.getLogger(__name__)

ORDER_MODULE = "order"
ORDER_CREATED_EVENT = "OrderCreated"
CREATE_ORDER_FUNCTION = "create_order"
DEFAULT_GAS_BUDGET = "10000000"

# sui_getObject error codes meaning the object is gone for good.
_GONE_ERROR_CODES = {"deleted", "notExists"}


class LedgerError(RuntimeError):
    """
    JSON-RPC error or transport failure talking to the ledger.
    """


@dataclass(frozen=True, slots=True)
class OrderCreatedEvent:
    event_id: dict[str, Any]
    order_id: str
    user: str
    blob_id: str
    timestamp_ms: Optional[int] = None


@dataclass(frozen=True, slots=True)
class EventPage:
    events: list[OrderCreatedEvent]
    next_cursor: Optional[dict[str, Any]]
    has_next_page: bool


def decode_blob_id(raw: Any) -> str:
    """
    `blob_id` is a vector<u8> holding the UTF-8 blob id; JSON-RPC renders it
    as a list of ints (older nodes: a plain string).
    """
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return bytes(int(b) for b in raw).decode("utf-8")
    raise ValueError(f"unsupported blob_id encoding: {type(raw).__name__}")


def parse_order_event(raw: dict[str, Any]) -> OrderCreatedEvent:
    parsed = raw.get("parsedJson") or {}
    ts = raw.get("timestampMs")
    return OrderCreatedEvent(
        event_id=dict(raw["id"]),
        order_id=str(parsed["order_id"]),
        user=str(parsed.get("user") or ""),
        blob_id=decode_blob_id(parsed["blob_id"]),
        timestamp_ms=int(ts) if ts is not None else None,
    )


class LedgerClient:
    """
    Minimal JSON-RPC client for the order-anchoring ledger.
    """

    def __init__(self, http: httpx.AsyncClient, rpc_url: str, package_id: str, *, timeout_s: float = 15.0) -> None:
        self._http = http
        self._rpc_url = rpc_url
        self.package_id = package_id
        self._timeout_s = float(timeout_s)
        self._ids = itertools.count(1)

    @property
    def order_event_type(self) -> str:
        return f"{self.package_id}::{ORDER_MODULE}::{ORDER_CREATED_EVENT}"

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        return await self._http.post(self._rpc_url, json=body, timeout=self._timeout_s)

    async def call(self, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._post(body)
            resp.raise_for_status()
            decoded = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerError(f"{method} failed: {e}") from e
        if decoded.get("error"):
            raise LedgerError(f"{method} error: {decoded['error']}")
        return decoded.get("result")

    async def query_order_events(self, cursor: Optional[dict[str, Any]], *, limit: int = 50) -> EventPage:
        """
        OrderCreated events strictly after `cursor`, ascending.
        """
        result = await self.call(
            "suix_queryEvents",
            [{"MoveEventType": self.order_event_type}, cursor, int(limit), False],
        )
        result = result or {}
        events: list[OrderCreatedEvent] = []
        for raw in result.get("data") or []:
            try:
                events.append(parse_order_event(raw))
            except (KeyError, TypeError, ValueError, UnicodeDecodeError) as e:
                # Keep the position so the cursor can still move past it.
                log_event(logger, "ledger.event_unparseable", severity="WARNING", event_id=raw.get("id"), error=str(e))
                events.append(
                    OrderCreatedEvent(event_id=dict(raw.get("id") or {}), order_id="", user="", blob_id="")
                )
        return EventPage(
            events=events,
            next_cursor=result.get("nextCursor"),
            has_next_page=bool(result.get("hasNextPage")),
        )

    async def order_exists(self, order_id: str) -> bool:
        """
        False once the order object has been deleted (cancelled on the ledger).
        """
        result = await self.call("sui_getObject", [order_id, {"showContent": False}]) or {}
        err = result.get("error")
        if err:
            code = err.get("code") if isinstance(err, dict) else None
            if code in _GONE_ERROR_CODES:
                return False
            raise LedgerError(f"sui_getObject {order_id}: {err}")
        return result.get("data") is not None

    async def create_order(self, identity: LedgerIdentity, blob_id: str) -> str:
        """
        Anchor a blob id with `order::create_order`; returns the tx digest.
        """
        built = await self.call(
            "unsafe_moveCall",
            [
                identity.address,
                self.package_id,
                ORDER_MODULE,
                CREATE_ORDER_FUNCTION,
                [],
                [list(blob_id.encode("utf-8"))],
                None,
                DEFAULT_GAS_BUDGET,
            ],
        )
        tx_bytes = (built or {}).get("txBytes")
        if not tx_bytes:
            raise LedgerError("unsafe_moveCall returned no txBytes")

        signature = identity.sign_transaction(tx_bytes)
        executed = await self.call(
            "sui_executeTransactionBlock",
            [tx_bytes, [signature], {"showEffects": True}, "WaitForLocalExecution"],
        ) or {}
        status = ((executed.get("effects") or {}).get("status") or {}).get("status")
        if status not in (None, "success"):
            raise LedgerError(f"create_order failed on ledger: {executed.get('effects', {}).get('status')}")
        digest = str(executed.get("digest") or "")
        log_event(logger, "ledger.order_anchored", blob_id=blob_id, tx_digest=digest)
        return digest
