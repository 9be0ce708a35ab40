"""
Trigger-and-settlement engine.

One instance owns every piece of mutable state (registry, cursor, deferred
blobs, connection ownership) and is driven by a single queue:

    tick timer ──────┐
    ingestion timer ─┼──> inbox ──> AgentEngine (sequential)
    gateway sessions ┘

Per tick: fetch price once -> evaluate every order -> broadcast PRICE_UPDATE
-> dispatch triggered orders one at a time -> persist after each mutation.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from veiled_agent.common.backoff import Backoff
from veiled_agent.common.config import AgentConfig
from veiled_agent.common.kill_switch import ExecutionHaltedError
from veiled_agent.common.logging import bind_correlation_id, log_event
from veiled_agent.execution.settlement import (
    ExecutionError,
    SettlementDispatcher,
    SettlementRequest,
    SettlementResult,
)
from veiled_agent.execution.signatures import signed_by, verify_order_payload
from veiled_agent.execution.trigger import (
    static_triggered,
    strategy_triggered,
    trailing_target,
    update_dynamic,
)
from veiled_agent.gateway.protocol import (
    CancelDynamicOrder,
    ClientMessage,
    CreateDynamicOrder,
    CreateOrder,
    DynamicOrderCreated,
    DynamicOrderExecuted,
    DynamicOrderFailed,
    DynamicOrderTriggered,
    InvalidCommand,
    OrderError,
    OrderExecuted,
    OrderPending,
    PriceUpdate,
    ServerMessage,
    StrategyUpdate,
    UnknownMessage,
    UpdateDynamicOrder,
)
from veiled_agent.gateway.server import SessionClosed, SessionEvent, SessionMessage
from veiled_agent.ingestion.blob_store import BlobStore, BlobStoreError
from veiled_agent.ingestion.decryption import Decryptor
from veiled_agent.ingestion.identity import LedgerIdentity
from veiled_agent.ingestion.ledger_client import LedgerClient, LedgerError
from veiled_agent.ingestion.order_ingestion import OrderIngestion
from veiled_agent.marketdata.price_oracle import NoPriceAvailable, PriceOracle
from veiled_agent.orders.models import (
    Direction,
    DynamicOrder,
    DynamicStatus,
    ProcessedReason,
    StaticOrder,
    StrategyOrder,
)
from veiled_agent.orders.registry import OrderRegistry
from veiled_agent.persistence.state_store import AgentState, StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TickDue:
    pass


@dataclass(frozen=True, slots=True)
class IngestionDue:
    pass


@dataclass(frozen=True, slots=True)
class StopRequested:
    pass


class Notifier(Protocol):
    def broadcast(self, message: ServerMessage) -> None: ...

    async def send(self, connection_id: str, message: ServerMessage) -> bool: ...


class AgentEngine:
    def __init__(
        self,
        *,
        cfg: AgentConfig,
        registry: OrderRegistry,
        oracle: PriceOracle,
        dispatcher: SettlementDispatcher,
        store: StateStore,
        ledger: LedgerClient,
        blobs: BlobStore,
        decryptor: Decryptor,
        identity: Optional[LedgerIdentity] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg
        self.registry = registry
        self.oracle = oracle
        self.dispatcher = dispatcher
        self.store = store
        self.ledger = ledger
        self.blobs = blobs
        self.decryptor = decryptor
        self.identity = identity
        self.notifier = notifier
        self._clock = clock
        self._backoff = Backoff(
            base_seconds=cfg.settlement_backoff_base_s,
            max_seconds=cfg.settlement_backoff_max_s,
        )

        self.inbox: asyncio.Queue[object] = asyncio.Queue()
        self.ingestion: Optional[OrderIngestion] = None
        self.last_price: Optional[float] = None
        # blob id -> connection that asked for it to be anchored
        self._blob_owners: dict[str, str] = {}
        self._tick_pending = False
        self._ingestion_pending = False

    # ---- state ----

    def restore(self) -> AgentState:
        """
        Load persisted state and rebuild the registry before any timer runs.
        """
        state = self.store.load()
        self.registry.restore(state.pending_orders, processed_count=state.processed_count)
        self.ingestion = OrderIngestion(
            ledger=self.ledger,
            blobs=self.blobs,
            decryptor=self.decryptor,
            registry=self.registry,
            persist=self.persist,
            cursor=state.cursor,
            deferred=state.deferred_orders,
            page_size=self.cfg.ingestion_page_size,
            max_decrypt_attempts=self.cfg.decrypt_max_attempts,
            on_ingested=self._on_order_ingested,
            on_rejected=self._on_order_rejected,
        )
        log_event(
            logger,
            "engine.restored",
            pending=len(state.pending_orders),
            deferred=len(state.deferred_orders),
            processed_count=state.processed_count,
            cursor=state.cursor,
        )
        return state

    def persist(self) -> None:
        cursor = self.ingestion.cursor if self.ingestion is not None else None
        deferred = self.ingestion.deferred if self.ingestion is not None else []
        self.store.save(AgentState.from_registry(self.registry, cursor=cursor, deferred=deferred))

    # ---- notifications ----

    def _broadcast(self, message: ServerMessage) -> None:
        if self.notifier is not None:
            self.notifier.broadcast(message)

    async def _send(self, connection_id: Optional[str], message: ServerMessage) -> None:
        if self.notifier is None or not connection_id:
            return
        delivered = await self.notifier.send(connection_id, message)
        if not delivered:
            logger.debug("connection %s gone; dropped %s", connection_id, message.type)

    async def _on_order_ingested(self, order: StaticOrder) -> None:
        owner = self._blob_owners.get(order.blob_reference)
        if owner and order.payload is not None:
            await self._send(
                owner,
                OrderPending(
                    order_id=order.order_id,
                    direction=order.payload.direction,
                    amount=order.payload.amount,
                    target_price=order.payload.target_price,
                ),
            )

    async def _on_order_rejected(self, blob_id: str, error: str) -> None:
        owner = self._blob_owners.pop(blob_id, None)
        await self._send(owner, OrderError(error=error))

    # ---- tick ----

    def _due(self, next_attempt_at: Optional[float], now: float) -> bool:
        return next_attempt_at is None or now >= next_attempt_at

    async def run_tick(self) -> Optional[float]:
        """
        One evaluation cycle. Returns the tick price, or None when no price
        source answered (nothing is evaluated on such a tick).
        """
        with bind_correlation_id():
            try:
                price = await self.oracle.current_price()
            except NoPriceAvailable as e:
                log_event(logger, "tick.skipped", severity="WARNING", error=str(e))
                return None

            self.last_price = price
            now = self._clock()

            static_hits = [
                o
                for o in self.registry.static_orders()
                if static_triggered(price, o) and self._due(o.next_attempt_at, now)
            ]

            dynamic_hits: list[DynamicOrder] = []
            for order in self.registry.dynamic_orders():
                if update_dynamic(price, order):
                    if self._due(order.next_attempt_at, now):
                        dynamic_hits.append(order)
                    else:
                        order.status = DynamicStatus.ACTIVE

            strategy_hits = [
                o
                for o in self.registry.strategy_orders()
                if strategy_triggered(price, o) and self._due(o.next_attempt_at, now)
            ]

            self._broadcast(PriceUpdate(price=price))

            for order in static_hits:
                await self._settle_static(order, price)
            for order in dynamic_hits:
                await self._settle_dynamic(order, price)
            for order in strategy_hits:
                await self._settle_strategy(order, price)

            log_event(
                logger,
                "tick.evaluated",
                price=price,
                static_triggered=len(static_hits),
                dynamic_triggered=len(dynamic_hits),
                strategy_triggered=len(strategy_hits),
                pending_static=len(self.registry.pending_static()),
                active_dynamic=len(self.registry.dynamic_orders()),
            )
            return price

    async def _dispatch(self, request: SettlementRequest) -> tuple[Optional[SettlementResult], Optional[str]]:
        """
        Returns (result, None) on success, (None, error) on failure and
        (None, None) when the kill switch refused the call.
        """
        try:
            return await self.dispatcher.dispatch(request), None
        except ExecutionHaltedError as e:
            log_event(logger, "settlement.halted", severity="WARNING", order_ref=request.order_ref, error=str(e))
            return None, None
        except ExecutionError as e:
            log_event(
                logger,
                "settlement.failed",
                severity="ERROR",
                order_ref=request.order_ref,
                kind=request.kind,
                error=str(e),
            )
            return None, str(e)

    def _retry_at(self, attempts: int) -> Optional[float]:
        if attempts >= self.cfg.settlement_max_attempts:
            return None
        return self._clock() + self._backoff.next_delay_s(error_count=attempts)

    async def _settle_static(self, order: StaticOrder, price: float) -> None:
        payload = order.payload
        if payload is None or order.processed:
            return
        owner = self._blob_owners.get(order.blob_reference)

        if not verify_order_payload(payload):
            self.registry.mark_processed(order.order_id, reason=ProcessedReason.INVALID_SIGNATURE)
            self.persist()
            log_event(logger, "settlement.rejected_signature", severity="WARNING", order_id=order.order_id)
            self._blob_owners.pop(order.blob_reference, None)
            await self._send(owner, OrderError(error="Invalid order signature"))
            return

        if self.cfg.cancellation_check_enabled:
            try:
                exists = await self.ledger.order_exists(order.order_id)
            except LedgerError as e:
                log_event(
                    logger,
                    "settlement.cancellation_check_failed",
                    severity="WARNING",
                    order_id=order.order_id,
                    error=str(e),
                )
                return
            if not exists:
                self.registry.mark_processed(order.order_id, reason=ProcessedReason.CANCELLED)
                self.persist()
                log_event(logger, "settlement.skipped_cancelled", order_id=order.order_id)
                self._blob_owners.pop(order.blob_reference, None)
                return

        result, error = await self._dispatch(
            SettlementRequest(
                order_ref=order.order_id,
                kind="static",
                direction=payload.direction,
                amount=payload.amount,
                beneficiary=payload.owner_address,
                price=price,
                signature=payload.signature,
            )
        )
        if result is None and error is None:
            return

        if result is not None:
            self.registry.mark_processed(order.order_id, reason=ProcessedReason.EXECUTED)
            self.persist()
            self._blob_owners.pop(order.blob_reference, None)
            self._broadcast(
                OrderExecuted(
                    order_id=order.order_id,
                    tx_ref=result.tx_ref,
                    direction=payload.direction,
                    amount=payload.amount,
                    target_price=payload.target_price,
                    executed_at=result.executed_at,
                )
            )
            return

        order.settlement_attempts += 1
        order.next_attempt_at = self._retry_at(order.settlement_attempts)
        if order.next_attempt_at is None:
            self.registry.mark_processed(order.order_id, reason=ProcessedReason.FAILED)
            self._blob_owners.pop(order.blob_reference, None)
            await self._send(owner, OrderError(error=f"Settlement failed: {error}"))
        self.persist()

    async def _settle_dynamic(self, order: DynamicOrder, price: float) -> None:
        await self._send(order.owner_connection, DynamicOrderTriggered(price=price))
        result, error = await self._dispatch(
            SettlementRequest(
                order_ref=order.id,
                kind="dynamic",
                direction=order.direction,
                amount=order.amount,
                beneficiary=order.beneficiary or "",
                price=price,
            )
        )
        if result is None and error is None:
            order.status = DynamicStatus.ACTIVE
            return

        if result is not None:
            order.status = DynamicStatus.EXECUTED
            self.registry.remove_dynamic(order.id)
            log_event(logger, "dynamic.executed", order_id=order.id, tx_ref=result.tx_ref)
            await self._send(order.owner_connection, DynamicOrderExecuted(tx_ref=result.tx_ref))
            return

        order.settlement_attempts += 1
        order.next_attempt_at = self._retry_at(order.settlement_attempts)
        if order.next_attempt_at is None:
            order.status = DynamicStatus.FAILED
            self.registry.remove_dynamic(order.id)
            log_event(logger, "dynamic.failed", severity="ERROR", order_id=order.id, attempts=order.settlement_attempts)
            await self._send(order.owner_connection, DynamicOrderFailed(error=error or "settlement failed"))
        else:
            order.status = DynamicStatus.ACTIVE

    async def _settle_strategy(self, order: StrategyOrder, price: float) -> None:
        order_ref = f"strategy-{order.user.lower()}-{order.nonce}"
        result, error = await self._dispatch(
            SettlementRequest(
                order_ref=order_ref,
                kind="strategy",
                direction=Direction.BUY,
                amount=order.amount,
                beneficiary=order.user,
                price=price,
                signature=order.signature,
            )
        )
        if result is None and error is None:
            return

        current = self.registry.get_strategy(order.user)
        if result is not None:
            if current is order:
                self.registry.remove_strategy(order.user)
            self._broadcast(
                OrderExecuted(
                    order_id=order_ref,
                    tx_ref=result.tx_ref,
                    direction=Direction.BUY,
                    amount=order.amount,
                    target_price=order.price,
                    executed_at=result.executed_at,
                )
            )
            return

        order.settlement_attempts += 1
        order.next_attempt_at = self._retry_at(order.settlement_attempts)
        if order.next_attempt_at is None:
            if current is order:
                self.registry.remove_strategy(order.user)
            await self._send(order.owner_connection, OrderError(error=f"Settlement failed: {error}"))

    # ---- ingestion ----

    async def run_ingestion(self) -> None:
        if self.ingestion is None:
            raise RuntimeError("engine.restore() must run before ingestion")
        try:
            await self.ingestion.poll_once()
        except LedgerError as e:
            log_event(logger, "ingestion.poll_failed", severity="WARNING", error=str(e))

    # ---- sessions ----

    async def handle_session_event(self, event: SessionEvent) -> None:
        if isinstance(event, SessionClosed):
            self._close_session(event.connection_id)
            return
        with bind_correlation_id():
            try:
                await self._handle_command(event.connection_id, event.message)
            except InvalidCommand as e:
                log_event(
                    logger,
                    "gateway.command_rejected",
                    severity="WARNING",
                    connection_id=event.connection_id,
                    error=str(e),
                )
                await self._send(event.connection_id, OrderError(error=str(e)))

    def _close_session(self, connection_id: str) -> None:
        cancelled = 0
        for order in self.registry.dynamic_for_connection(connection_id):
            self.registry.remove_dynamic(order.id)
            cancelled += 1
        for blob_id in [b for b, c in self._blob_owners.items() if c == connection_id]:
            del self._blob_owners[blob_id]
        if cancelled:
            log_event(logger, "dynamic.cancelled_on_disconnect", connection_id=connection_id, cancelled=cancelled)

    async def _handle_command(self, connection_id: str, message: ClientMessage) -> None:
        if isinstance(message, UnknownMessage):
            return
        if isinstance(message, CreateOrder):
            await self._create_static_order(connection_id, message)
        elif isinstance(message, CreateDynamicOrder):
            await self._create_dynamic_order(connection_id, message)
        elif isinstance(message, UpdateDynamicOrder):
            self._update_dynamic_order(connection_id, message)
        elif isinstance(message, CancelDynamicOrder):
            self._cancel_dynamic_order(connection_id, message)
        elif isinstance(message, StrategyUpdate):
            self._apply_strategy_update(connection_id, message)

    async def _create_static_order(self, connection_id: str, message: CreateOrder) -> None:
        if self.identity is None:
            raise InvalidCommand("Order anchoring is not configured on this agent")
        try:
            blob_id = await self.blobs.upload(message.encrypted_payload)
            digest = await self.ledger.create_order(self.identity, blob_id)
        except (BlobStoreError, LedgerError) as e:
            log_event(logger, "gateway.create_order_failed", severity="ERROR", connection_id=connection_id, error=str(e))
            await self._send(connection_id, OrderError(error=f"Failed to create order: {e}"))
            return
        self._blob_owners[blob_id] = connection_id
        log_event(logger, "gateway.order_anchored", connection_id=connection_id, blob_id=blob_id, tx_digest=digest)
        self._request_ingestion()

    async def _create_dynamic_order(self, connection_id: str, message: CreateDynamicOrder) -> None:
        spec = message.order
        order_id = spec.id or f"dyn-{uuid.uuid4().hex}"
        if self.registry.get_dynamic(order_id) is not None:
            raise InvalidCommand(f"Dynamic order {order_id} already exists")
        if not spec.user_address:
            raise InvalidCommand("Dynamic order requires userAddress")

        order = DynamicOrder(
            id=order_id,
            direction=spec.direction,
            trailing_offset=spec.trailing_offset,
            amount=spec.amount,
            owner_connection=connection_id,
            beneficiary=spec.user_address,
            extreme_price=self.last_price,
        )
        if order.extreme_price is not None:
            order.current_target = trailing_target(order.direction, order.extreme_price, order.trailing_offset)
        self.registry.add_dynamic(order)
        log_event(
            logger,
            "dynamic.created",
            order_id=order_id,
            connection_id=connection_id,
            direction=order.direction.value,
            trailing_offset=order.trailing_offset,
            extreme_price=order.extreme_price,
        )
        await self._send(connection_id, DynamicOrderCreated(order_id=order_id))

    def _owned_dynamic(self, connection_id: str, order_id: str) -> DynamicOrder:
        order = self.registry.get_dynamic(order_id)
        if order is None or order.owner_connection != connection_id:
            raise InvalidCommand(f"Unknown dynamic order {order_id}")
        return order

    def _update_dynamic_order(self, connection_id: str, message: UpdateDynamicOrder) -> None:
        order = self._owned_dynamic(connection_id, message.order_id)
        if order.status != DynamicStatus.ACTIVE:
            raise InvalidCommand(f"Dynamic order {order.id} is {order.status.value}")
        if message.new_target is not None and message.new_trailing_offset is not None:
            raise InvalidCommand("Specify newTarget or newTrailingOffset, not both")

        offset = order.trailing_offset
        if message.new_trailing_offset is not None:
            offset = message.new_trailing_offset
        elif message.new_target is not None:
            if order.extreme_price is None:
                raise InvalidCommand("newTarget needs a price observation first")
            if order.direction == Direction.BUY:
                offset = order.extreme_price - message.new_target
            else:
                offset = message.new_target - order.extreme_price
            if offset < 0:
                raise InvalidCommand("newTarget is on the wrong side of the current extreme price")

        if message.new_amount is not None:
            order.amount = message.new_amount
        order.trailing_offset = offset
        if order.extreme_price is not None:
            order.current_target = trailing_target(order.direction, order.extreme_price, offset)
        log_event(
            logger,
            "dynamic.updated",
            order_id=order.id,
            trailing_offset=order.trailing_offset,
            current_target=order.current_target,
            amount=order.amount,
        )

    def _cancel_dynamic_order(self, connection_id: str, message: CancelDynamicOrder) -> None:
        order = self._owned_dynamic(connection_id, message.order_id)
        self.registry.remove_dynamic(order.id)
        log_event(logger, "dynamic.cancelled", order_id=order.id, connection_id=connection_id)

    def _apply_strategy_update(self, connection_id: str, message: StrategyUpdate) -> None:
        if not signed_by(message.signed_message(), message.signature, message.session_signer):
            log_event(
                logger,
                "strategy.signature_rejected",
                severity="WARNING",
                connection_id=connection_id,
                user=message.user,
            )
            return
        order = StrategyOrder(
            user=message.user,
            price=message.price,
            nonce=message.nonce,
            session_signer=message.session_signer,
            owner_connection=connection_id,
            amount=self.cfg.strategy_order_amount,
            signature=message.signature,
        )
        if self.registry.upsert_strategy(order):
            log_event(logger, "strategy.updated", user=message.user, price=message.price, nonce=message.nonce)
        else:
            log_event(logger, "strategy.stale_nonce_ignored", user=message.user, nonce=message.nonce)

    # ---- scheduler ----

    def _request_tick(self) -> None:
        if not self._tick_pending:
            self._tick_pending = True
            self.inbox.put_nowait(TickDue())

    def _request_ingestion(self) -> None:
        if not self._ingestion_pending:
            self._ingestion_pending = True
            self.inbox.put_nowait(IngestionDue())

    def request_stop(self) -> None:
        self.inbox.put_nowait(StopRequested())

    async def _timer(self, fire: Callable[[], None], interval_s: float) -> None:
        while True:
            fire()
            await asyncio.sleep(interval_s)

    async def handle(self, event: object) -> None:
        if isinstance(event, TickDue):
            self._tick_pending = False
            await self.run_tick()
        elif isinstance(event, IngestionDue):
            self._ingestion_pending = False
            await self.run_ingestion()
        elif isinstance(event, (SessionMessage, SessionClosed)):
            await self.handle_session_event(event)

    async def run(self) -> None:
        """
        Consume the inbox until StopRequested. `restore()` must run first.
        """
        if self.ingestion is None:
            raise RuntimeError("engine.restore() must run before run()")
        timers = [
            asyncio.create_task(self._timer(self._request_tick, self.cfg.tick_interval_s)),
            asyncio.create_task(self._timer(self._request_ingestion, self.cfg.ingestion_interval_s)),
        ]
        log_event(
            logger,
            "engine.started",
            tick_interval_s=self.cfg.tick_interval_s,
            ingestion_interval_s=self.cfg.ingestion_interval_s,
        )
        try:
            while True:
                event = await self.inbox.get()
                if isinstance(event, StopRequested):
                    break
                try:
                    await self.handle(event)
                except Exception:
                    logger.exception("engine.event_failed", extra={"event_type": "engine.event_failed"})
        finally:
            for t in timers:
                t.cancel()
            await asyncio.gather(*timers, return_exceptions=True)
            log_event(logger, "engine.stopped")
