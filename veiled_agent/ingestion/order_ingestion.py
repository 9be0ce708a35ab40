from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from veiled_agent.common.logging import bind_correlation_id, log_event
from veiled_agent.ingestion.blob_store import BlobStore, BlobStoreError
from veiled_agent.ingestion.decryption import DecryptionError, Decryptor
from veiled_agent.ingestion.ledger_client import LedgerClient, OrderCreatedEvent
from veiled_agent.orders.models import StaticOrder
from veiled_agent.orders.registry import OrderRegistry
from veiled_agent.persistence.state_store import DeferredOrder

logger = logging.getLogger(__name__)

_MaybeAwaitable = Union[None, Awaitable[None]]


@dataclass(frozen=True, slots=True)
class PollResult:
    inserted: int = 0
    deferred: int = 0
    dropped: int = 0
    duplicates: int = 0
    events_seen: int = 0


class OrderIngestion:
    """
    Discovers static orders on the ledger and decrypts them into the registry.

    The cursor advances past every event whether or not its blob could be
    decrypted; failed blobs go to a bounded retry list (`deferred`) that is
    persisted alongside the cursor.
    """

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        blobs: BlobStore,
        decryptor: Decryptor,
        registry: OrderRegistry,
        persist: Callable[[], None],
        cursor: Optional[dict[str, Any]] = None,
        deferred: Optional[list[DeferredOrder]] = None,
        page_size: int = 50,
        max_decrypt_attempts: int = 3,
        on_ingested: Optional[Callable[[StaticOrder], _MaybeAwaitable]] = None,
        on_rejected: Optional[Callable[[str, str], _MaybeAwaitable]] = None,
    ) -> None:
        self._ledger = ledger
        self._blobs = blobs
        self._decryptor = decryptor
        self._registry = registry
        self._persist = persist
        self.cursor: Optional[dict[str, Any]] = dict(cursor) if cursor is not None else None
        self.deferred: list[DeferredOrder] = list(deferred or [])
        self._page_size = max(1, int(page_size))
        self._max_attempts = max(1, int(max_decrypt_attempts))
        self._on_ingested = on_ingested
        self._on_rejected = on_rejected

    async def _notify(self, cb: Optional[Callable[..., _MaybeAwaitable]], *args: Any) -> None:
        if cb is None:
            return
        res = cb(*args)
        if inspect.isawaitable(res):
            await res

    async def _decrypt_into_registry(self, order_id: str, blob_id: str) -> StaticOrder:
        blob = await self._blobs.fetch(blob_id)
        payload = await self._decryptor.decrypt(order_id=order_id, blob=blob)
        order = StaticOrder(order_id=order_id, blob_reference=blob_id, payload=payload)
        self._registry.upsert_static(order)
        log_event(
            logger,
            "ingestion.order_inserted",
            order_id=order_id,
            blob_id=blob_id,
            direction=payload.direction.value,
            target_price=payload.target_price,
        )
        return order

    def _find_deferred(self, order_id: str) -> Optional[DeferredOrder]:
        for d in self.deferred:
            if d.order_id == order_id:
                return d
        return None

    async def _record_failure(self, order_id: str, blob_id: str, error: Exception, *, attempts: int) -> bool:
        """
        Returns True when the order stays deferred, False when dropped.
        """
        existing = self._find_deferred(order_id)
        if attempts >= self._max_attempts:
            if existing is not None:
                self.deferred.remove(existing)
            log_event(
                logger,
                "ingestion.order_dropped",
                severity="ERROR",
                order_id=order_id,
                blob_id=blob_id,
                attempts=attempts,
                error=str(error),
            )
            await self._notify(self._on_rejected, blob_id, f"Order could not be decrypted: {error}")
            return False

        if existing is None:
            self.deferred.append(
                DeferredOrder(order_id=order_id, blob_reference=blob_id, attempts=attempts, last_error=str(error))
            )
        else:
            existing.attempts = attempts
            existing.last_error = str(error)
        log_event(
            logger,
            "ingestion.order_deferred",
            severity="WARNING",
            order_id=order_id,
            blob_id=blob_id,
            attempts=attempts,
            error=str(error),
        )
        return True

    async def _retry_deferred(self) -> tuple[int, int, int]:
        inserted = deferred = dropped = 0
        for entry in list(self.deferred):
            if self._registry.has_static(entry.order_id):
                self.deferred.remove(entry)
                self._persist()
                continue
            try:
                order = await self._decrypt_into_registry(entry.order_id, entry.blob_reference)
            except (BlobStoreError, DecryptionError) as e:
                if await self._record_failure(entry.order_id, entry.blob_reference, e, attempts=entry.attempts + 1):
                    deferred += 1
                else:
                    dropped += 1
                self._persist()
                continue
            self.deferred.remove(entry)
            self._persist()
            inserted += 1
            await self._notify(self._on_ingested, order)
        return inserted, deferred, dropped

    async def _ingest_event(self, event: OrderCreatedEvent) -> str:
        if not event.order_id or not event.blob_id:
            return "skipped"
        if self._registry.has_static(event.order_id) or self._find_deferred(event.order_id) is not None:
            return "duplicate"
        try:
            order = await self._decrypt_into_registry(event.order_id, event.blob_id)
        except (BlobStoreError, DecryptionError) as e:
            kept = await self._record_failure(event.order_id, event.blob_id, e, attempts=1)
            return "deferred" if kept else "dropped"
        await self._notify(self._on_ingested, order)
        return "inserted"

    async def poll_once(self) -> PollResult:
        """
        Retry deferred blobs, then read one page of events after the cursor.

        The cursor is persisted after each event. Ledger query failures
        propagate to the caller (the timer loop logs and retries next interval).
        """
        with bind_correlation_id():
            inserted, deferred, dropped = await self._retry_deferred()
            duplicates = 0

            page = await self._ledger.query_order_events(self.cursor, limit=self._page_size)
            for event in page.events:
                outcome = await self._ingest_event(event)
                if outcome == "inserted":
                    inserted += 1
                elif outcome == "deferred":
                    deferred += 1
                elif outcome == "dropped":
                    dropped += 1
                elif outcome == "duplicate":
                    duplicates += 1
                if event.event_id:
                    self.cursor = dict(event.event_id)
                self._persist()

            result = PollResult(
                inserted=inserted,
                deferred=deferred,
                dropped=dropped,
                duplicates=duplicates,
                events_seen=len(page.events),
            )
            if page.events or inserted or dropped:
                log_event(
                    logger,
                    "ingestion.poll_completed",
                    cursor=self.cursor,
                    events_seen=result.events_seen,
                    inserted=result.inserted,
                    deferred=result.deferred,
                    dropped=result.dropped,
                    duplicates=result.duplicates,
                    has_next_page=page.has_next_page,
                )
            return result
