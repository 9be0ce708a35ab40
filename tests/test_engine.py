from __future__ import annotations

import asyncio
import json

import pytest
from eth_account import Account

from veiled_agent.common.kill_switch import ExecutionHaltedError
from veiled_agent.engine import IngestionDue
from veiled_agent.execution.settlement import ExecutionError
from veiled_agent.execution.signatures import canonical_order_payload
from veiled_agent.gateway.protocol import (
    CancelDynamicOrder,
    CreateDynamicOrder,
    CreateOrder,
    OrderExecuted,
    PriceUpdate,
    StrategyUpdate,
    UpdateDynamicOrder,
)
from veiled_agent.gateway.server import SessionClosed, SessionMessage
from veiled_agent.ingestion.ledger_client import LedgerError
from veiled_agent.orders.models import Direction, DynamicStatus, ProcessedReason, StaticOrder

from tests.conftest import (
    FakeBlobs,
    FakeDecryptor,
    FakeDispatcher,
    FakeLedger,
    make_config,
    order_event,
    payload,
    sign_text,
)

K1 = Account.from_key("0x" + "11" * 32)
K2 = Account.from_key("0x" + "22" * 32)
USER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


def _static(engine, order_id: str, target: float, direction: str = "buy", **kwargs) -> StaticOrder:
    order = StaticOrder(order_id=order_id, blob_reference=f"blob-{order_id}", payload=payload(target, direction, **kwargs))
    engine.registry.upsert_static(order)
    return order


def _dynamic(direction: str, offset: float, *, order_id: str = "dyn-1", amount: float = 2.0, user: str = USER):
    return CreateDynamicOrder.model_validate(
        {
            "type": "CREATE_DYNAMIC_ORDER",
            "order": {
                "id": order_id,
                "direction": direction,
                "trailingOffset": offset,
                "amount": amount,
                "userAddress": user,
            },
        }
    )


async def _session(engine, connection_id: str, message) -> None:
    await engine.handle_session_event(SessionMessage(connection_id=connection_id, message=message))


# ---- static orders ----


@pytest.mark.asyncio
async def test_static_buy_triggers_exactly_once(make_engine, state_path):
    engine = make_engine(prices=[3000.0, 2950.0, 2900.0])
    _static(engine, "order-1", 2950.0)

    for _ in range(3):
        await engine.run_tick()

    requests = engine.dispatcher.requests
    assert len(requests) == 1
    assert (requests[0].order_ref, requests[0].price, requests[0].direction) == ("order-1", 2950.0, Direction.BUY)
    assert requests[0].beneficiary == USER
    assert engine.registry.get_static("order-1").processed_reason is ProcessedReason.EXECUTED

    executed = [m for m in engine.notifier.broadcasts if isinstance(m, OrderExecuted)]
    assert [m.order_id for m in executed] == ["order-1"]
    assert executed[0].tx_ref == "0xtx1"

    saved = json.loads(state_path.read_text())
    assert saved["processedCount"] == 1
    assert saved["pendingOrders"] == []


@pytest.mark.asyncio
async def test_sell_order_below_target_is_not_triggered(make_engine):
    engine = make_engine(prices=[3050.0])
    _static(engine, "order-1", 3100.0, "sell")
    await engine.run_tick()
    assert engine.dispatcher.requests == []
    assert engine.registry.get_static("order-1").is_pending


@pytest.mark.asyncio
async def test_price_is_broadcast_before_any_dispatch(make_engine):
    seen_at_dispatch: list[int] = []

    class _Recording(FakeDispatcher):
        async def dispatch(self, request):
            seen_at_dispatch.append(len(engine.notifier.broadcasts))
            return await super().dispatch(request)

    engine = make_engine(prices=[2900.0], dispatcher=_Recording())
    _static(engine, "order-1", 2950.0)
    _static(engine, "order-2", 3000.0)

    await engine.run_tick()

    assert isinstance(engine.notifier.broadcasts[0], PriceUpdate)
    assert engine.notifier.broadcasts[0].price == 2900.0
    assert seen_at_dispatch == [1, 2]


@pytest.mark.asyncio
async def test_no_price_means_no_evaluation(make_engine):
    engine = make_engine(prices=[None])
    _static(engine, "order-1", 2950.0)

    assert await engine.run_tick() is None
    assert engine.dispatcher.requests == []
    assert engine.notifier.broadcasts == []


@pytest.mark.asyncio
async def test_invalid_signature_is_marked_processed_without_settlement(make_engine):
    engine = make_engine(prices=[2900.0])
    unsigned = payload(2950.0, owner=K2.address)
    forged = sign_text(canonical_order_payload(unsigned), K1.key.hex())
    _static(engine, "order-1", 2950.0, owner=K2.address, signature=forged)

    await engine.run_tick()

    assert engine.dispatcher.requests == []
    order = engine.registry.get_static("order-1")
    assert order.processed is True
    assert order.processed_reason is ProcessedReason.INVALID_SIGNATURE


@pytest.mark.asyncio
async def test_validly_signed_order_settles_with_its_signature(make_engine):
    engine = make_engine(prices=[2900.0])
    unsigned = payload(2950.0, owner=K1.address)
    sig = sign_text(canonical_order_payload(unsigned), K1.key.hex())
    _static(engine, "order-1", 2950.0, owner=K1.address, signature=sig)

    await engine.run_tick()

    assert [r.signature for r in engine.dispatcher.requests] == [sig]


@pytest.mark.asyncio
async def test_order_cancelled_on_ledger_is_skipped(make_engine):
    ledger = FakeLedger()
    ledger.existing = set()
    engine = make_engine(prices=[2900.0], ledger=ledger)
    _static(engine, "order-1", 2950.0)

    await engine.run_tick()

    assert engine.dispatcher.requests == []
    assert engine.registry.get_static("order-1").processed_reason is ProcessedReason.CANCELLED


@pytest.mark.asyncio
async def test_failed_cancellation_check_defers_to_next_tick(make_engine):
    ledger = FakeLedger()
    ledger.exists_error = LedgerError("rpc timeout")
    engine = make_engine(prices=[2900.0], ledger=ledger)
    _static(engine, "order-1", 2950.0)

    await engine.run_tick()
    assert engine.dispatcher.requests == []
    assert engine.registry.get_static("order-1").is_pending

    ledger.exists_error = None
    await engine.run_tick()
    assert len(engine.dispatcher.requests) == 1


@pytest.mark.asyncio
async def test_cancellation_check_can_be_disabled(make_engine, state_path):
    ledger = FakeLedger()
    ledger.existing = set()
    engine = make_engine(
        prices=[2900.0],
        ledger=ledger,
        cfg=make_config(state_path=str(state_path), cancellation_check_enabled=False),
    )
    _static(engine, "order-1", 2950.0)
    await engine.run_tick()
    assert len(engine.dispatcher.requests) == 1


@pytest.mark.asyncio
async def test_failed_settlement_backs_off_then_gives_up(make_engine, clock):
    dispatcher = FakeDispatcher()
    dispatcher.fail_with = [ExecutionError("reverted")] * 3
    engine = make_engine(prices=[2900.0], dispatcher=dispatcher)
    order = _static(engine, "order-1", 2950.0)

    await engine.run_tick()
    assert (order.settlement_attempts, order.next_attempt_at) == (1, clock.now + 5.0)

    # still inside the backoff window
    await engine.run_tick()
    assert len(dispatcher.requests) == 1

    clock.advance(5.0)
    await engine.run_tick()
    assert (order.settlement_attempts, order.next_attempt_at) == (2, clock.now + 10.0)

    clock.advance(10.0)
    await engine.run_tick()
    assert len(dispatcher.requests) == 3
    assert order.processed_reason is ProcessedReason.FAILED

    clock.advance(1000.0)
    await engine.run_tick()
    assert len(dispatcher.requests) == 3


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failure(make_engine, clock):
    dispatcher = FakeDispatcher()
    dispatcher.fail_with = [ExecutionError("nonce too low")]
    engine = make_engine(prices=[2900.0], dispatcher=dispatcher)
    order = _static(engine, "order-1", 2950.0)

    await engine.run_tick()
    clock.advance(5.0)
    await engine.run_tick()

    assert len(dispatcher.requests) == 2
    assert order.processed_reason is ProcessedReason.EXECUTED


@pytest.mark.asyncio
async def test_kill_switch_does_not_consume_an_attempt(make_engine):
    dispatcher = FakeDispatcher()
    dispatcher.fail_with = [ExecutionHaltedError("halted")]
    engine = make_engine(prices=[2900.0], dispatcher=dispatcher)
    order = _static(engine, "order-1", 2950.0)

    await engine.run_tick()
    assert order.is_pending
    assert order.settlement_attempts == 0
    assert order.next_attempt_at is None

    await engine.run_tick()
    assert order.processed_reason is ProcessedReason.EXECUTED


# ---- dynamic orders ----


@pytest.mark.asyncio
async def test_trailing_sell_triggers_on_bounce_off_the_low(make_engine):
    engine = make_engine(prices=[3000.0, 3100.0, 3000.0])
    await engine.run_tick()

    await _session(engine, "c1", _dynamic("sell", 100.0))
    order = engine.registry.get_dynamic("dyn-1")
    assert (order.extreme_price, order.current_target) == (3000.0, 3100.0)

    await engine.run_tick()
    assert (order.extreme_price, order.current_target) == (3000.0, 3100.0)
    assert engine.dispatcher.requests and engine.dispatcher.requests[0].price == 3100.0


@pytest.mark.asyncio
async def test_trailing_buy_follows_the_high_then_triggers(make_engine):
    engine = make_engine(prices=[3000.0, 3100.0, 3000.0])
    await engine.run_tick()
    await _session(engine, "c1", _dynamic("buy", 100.0))
    order = engine.registry.get_dynamic("dyn-1")

    await engine.run_tick()
    assert (order.extreme_price, order.current_target) == (3100.0, 3000.0)
    assert engine.dispatcher.requests == []

    await engine.run_tick()
    request = engine.dispatcher.requests[0]
    assert (request.kind, request.direction, request.amount, request.price) == ("dynamic", Direction.BUY, 2.0, 3000.0)
    assert request.beneficiary == USER
    assert engine.registry.get_dynamic("dyn-1") is None
    assert engine.notifier.sent_types("c1") == [
        "DYNAMIC_ORDER_CREATED",
        "DYNAMIC_ORDER_TRIGGERED",
        "DYNAMIC_ORDER_EXECUTED",
    ]


@pytest.mark.asyncio
async def test_dynamic_order_without_price_takes_first_tick_as_extreme(make_engine):
    engine = make_engine(prices=[3000.0])
    await _session(engine, "c1", _dynamic("buy", 50.0))
    order = engine.registry.get_dynamic("dyn-1")
    assert order.extreme_price is None

    await engine.run_tick()
    assert (order.extreme_price, order.current_target) == (3000.0, 2950.0)
    assert engine.dispatcher.requests == []


@pytest.mark.asyncio
async def test_dynamic_failure_exhaustion_reports_failed(make_engine, clock):
    dispatcher = FakeDispatcher()
    dispatcher.fail_with = [ExecutionError("reverted")] * 3
    engine = make_engine(prices=[3000.0], dispatcher=dispatcher)
    await engine.run_tick()
    await _session(engine, "c1", _dynamic("buy", 0.0))
    order = engine.registry.get_dynamic("dyn-1")

    await engine.run_tick()
    assert order.status is DynamicStatus.ACTIVE
    clock.advance(5.0)
    await engine.run_tick()
    clock.advance(10.0)
    await engine.run_tick()

    assert len(dispatcher.requests) == 3
    assert order.status is DynamicStatus.FAILED
    assert engine.registry.get_dynamic("dyn-1") is None
    assert engine.notifier.sent_types("c1")[-1] == "DYNAMIC_ORDER_FAILED"


@pytest.mark.asyncio
async def test_disconnect_cancels_only_that_connections_dynamic_orders(make_engine):
    engine = make_engine(prices=[3000.0])
    await engine.run_tick()
    await _session(engine, "c1", _dynamic("buy", 100.0, order_id="a"))
    await _session(engine, "c2", _dynamic("buy", 100.0, order_id="b"))

    await engine.handle_session_event(SessionClosed(connection_id="c1"))

    assert [o.id for o in engine.registry.dynamic_orders()] == ["b"]


@pytest.mark.asyncio
async def test_dynamic_order_requires_beneficiary(make_engine):
    engine = make_engine()
    await _session(engine, "c1", _dynamic("buy", 100.0, user=""))
    assert engine.registry.dynamic_orders() == []
    assert engine.notifier.sent_types("c1") == ["ORDER_ERROR"]


@pytest.mark.asyncio
async def test_duplicate_dynamic_id_is_rejected(make_engine):
    engine = make_engine()
    await _session(engine, "c1", _dynamic("buy", 100.0))
    await _session(engine, "c1", _dynamic("sell", 5.0))
    assert engine.registry.get_dynamic("dyn-1").direction is Direction.BUY
    assert engine.notifier.sent_types("c1") == ["DYNAMIC_ORDER_CREATED", "ORDER_ERROR"]


@pytest.mark.asyncio
async def test_update_with_new_target_becomes_an_offset(make_engine):
    engine = make_engine(prices=[3000.0])
    await engine.run_tick()
    await _session(engine, "c1", _dynamic("buy", 50.0))

    await _session(engine, "c1", UpdateDynamicOrder(type="UPDATE_DYNAMIC_ORDER", order_id="dyn-1", new_target=2900.0))
    order = engine.registry.get_dynamic("dyn-1")
    assert (order.trailing_offset, order.current_target) == (100.0, 2900.0)

    await _session(
        engine,
        "c1",
        UpdateDynamicOrder(type="UPDATE_DYNAMIC_ORDER", order_id="dyn-1", new_trailing_offset=20.0, new_amount=5.0),
    )
    assert (order.trailing_offset, order.current_target, order.amount) == (20.0, 2980.0, 5.0)


@pytest.mark.asyncio
async def test_update_rejections(make_engine):
    engine = make_engine(prices=[3000.0])
    await engine.run_tick()
    await _session(engine, "c1", _dynamic("buy", 50.0))

    # buy target above the high would be a negative offset
    await _session(engine, "c1", UpdateDynamicOrder(type="UPDATE_DYNAMIC_ORDER", order_id="dyn-1", new_target=3100.0))
    await _session(
        engine,
        "c1",
        UpdateDynamicOrder(type="UPDATE_DYNAMIC_ORDER", order_id="dyn-1", new_target=2900.0, new_trailing_offset=5.0),
    )
    # not the owner
    await _session(engine, "c2", UpdateDynamicOrder(type="UPDATE_DYNAMIC_ORDER", order_id="dyn-1", new_amount=9.0))

    order = engine.registry.get_dynamic("dyn-1")
    assert (order.trailing_offset, order.amount) == (50.0, 2.0)
    assert engine.notifier.sent_types("c1") == ["DYNAMIC_ORDER_CREATED", "ORDER_ERROR", "ORDER_ERROR"]
    assert engine.notifier.sent_types("c2") == ["ORDER_ERROR"]


@pytest.mark.asyncio
async def test_cancel_dynamic_order(make_engine):
    engine = make_engine()
    await _session(engine, "c1", _dynamic("sell", 10.0))
    await _session(engine, "c1", CancelDynamicOrder(type="CANCEL_DYNAMIC_ORDER", order_id="dyn-1"))
    assert engine.registry.get_dynamic("dyn-1") is None


# ---- strategy orders ----


def _strategy(price: float, nonce: int, *, signer=K1, user=K2) -> StrategyUpdate:
    fields = {
        "intent": "STRATEGY_UPDATE",
        "price": price,
        "nonce": nonce,
        "user": user.address,
        "sessionSigner": K1.address,
    }
    unsigned = StrategyUpdate.model_validate({**fields, "signature": "0x"})
    return StrategyUpdate.model_validate({**fields, "signature": sign_text(unsigned.signed_message(), signer.key.hex())})


@pytest.mark.asyncio
async def test_strategy_update_settles_when_price_falls_to_it(make_engine):
    engine = make_engine(prices=[2500.0, 2400.0])
    await _session(engine, "c1", _strategy(2400.0, 1))

    await engine.run_tick()
    assert engine.dispatcher.requests == []

    await engine.run_tick()
    request = engine.dispatcher.requests[0]
    assert request.kind == "strategy"
    assert request.order_ref == f"strategy-{K2.address.lower()}-1"
    assert request.beneficiary == K2.address
    assert request.amount == 100.0
    assert engine.registry.strategy_orders() == []
    assert any(isinstance(m, OrderExecuted) for m in engine.notifier.broadcasts)


@pytest.mark.asyncio
async def test_strategy_update_with_wrong_signer_is_ignored(make_engine):
    engine = make_engine(prices=[2000.0])
    await _session(engine, "c1", _strategy(2400.0, 1, signer=K2))
    await engine.run_tick()
    assert engine.registry.strategy_orders() == []
    assert engine.dispatcher.requests == []


@pytest.mark.asyncio
async def test_stale_strategy_nonce_does_not_replace_newer(make_engine):
    engine = make_engine(prices=[3000.0])
    await _session(engine, "c1", _strategy(2400.0, 5))
    await _session(engine, "c1", _strategy(2800.0, 4))
    assert engine.registry.get_strategy(K2.address).price == 2400.0


@pytest.mark.asyncio
async def test_strategy_order_survives_disconnect(make_engine):
    engine = make_engine(prices=[3000.0])
    await _session(engine, "c1", _strategy(2400.0, 1))
    await engine.handle_session_event(SessionClosed(connection_id="c1"))
    assert engine.registry.get_strategy(K2.address) is not None


# ---- order creation and ingestion ----


@pytest.mark.asyncio
async def test_create_order_uploads_anchors_and_reports_pending(make_engine):
    ledger = FakeLedger()
    decryptor = FakeDecryptor({"order-1": payload(2950.0)})
    engine = make_engine(ledger=ledger, decryptor=decryptor, identity=object())

    await _session(engine, "c1", CreateOrder(type="CREATE_ORDER", encrypted_payload=b"ciphertext"))

    assert engine.blobs.uploaded == [b"ciphertext"]
    assert ledger.anchored == ["blob-1"]
    assert isinstance(engine.inbox.get_nowait(), IngestionDue)

    ledger.events.append(order_event(1, "order-1", "blob-1"))
    await engine.run_ingestion()

    assert engine.registry.get_static("order-1").is_pending
    pending = [m for cid, m in engine.notifier.sent if cid == "c1"]
    assert [m.type for m in pending] == ["ORDER_PENDING"]
    assert (pending[0].order_id, pending[0].target_price) == ("order-1", 2950.0)


@pytest.mark.asyncio
async def test_failed_anchor_does_not_claim_the_blob(make_engine):
    ledger = FakeLedger()
    ledger.create_error = LedgerError("execution failed")
    decryptor = FakeDecryptor({"order-1": payload(2950.0)})
    engine = make_engine(ledger=ledger, decryptor=decryptor, identity=object())

    await _session(engine, "c1", CreateOrder(type="CREATE_ORDER", encrypted_payload=b"ciphertext"))
    assert engine.notifier.sent_types("c1") == ["ORDER_ERROR"]
    assert engine.inbox.empty()

    # the same blob anchored elsewhere later must not report back to c1
    ledger.events.append(order_event(1, "order-1", "blob-1"))
    await engine.run_ingestion()

    assert engine.registry.get_static("order-1").is_pending
    assert engine.notifier.sent_types("c1") == ["ORDER_ERROR"]


@pytest.mark.asyncio
async def test_create_order_without_ledger_identity_is_an_error(make_engine):
    engine = make_engine(identity=None)
    await _session(engine, "c1", CreateOrder(type="CREATE_ORDER", encrypted_payload=b"ciphertext"))
    assert engine.blobs.uploaded == []
    assert engine.notifier.sent_types("c1") == ["ORDER_ERROR"]


@pytest.mark.asyncio
async def test_ingestion_failure_is_logged_not_raised(make_engine):
    ledger = FakeLedger()
    ledger.query_error = LedgerError("rpc down")
    engine = make_engine(ledger=ledger)
    await engine.run_ingestion()
    assert engine.ingestion.cursor is None


@pytest.mark.asyncio
async def test_restart_does_not_execute_twice(make_engine, state_path):
    events = [order_event(1, "order-1", "blob-1"), order_event(2, "order-2", "blob-2")]
    decryptor = FakeDecryptor({"order-1": payload(2950.0), "order-2": payload(2000.0)})
    blobs = {"blob-1": b"c1", "blob-2": b"c2"}

    first = make_engine(prices=[2950.0], ledger=FakeLedger(events), blobs=FakeBlobs(blobs), decryptor=decryptor)
    await first.run_ingestion()
    await first.run_tick()
    assert [r.order_ref for r in first.dispatcher.requests] == ["order-1"]

    ledger = FakeLedger(events)
    second = make_engine(prices=[2950.0], ledger=ledger, blobs=FakeBlobs(blobs), decryptor=decryptor)
    await second.run_ingestion()
    await second.run_tick()

    assert second.dispatcher.requests == []
    assert [o.order_id for o in second.registry.pending_static()] == ["order-2"]
    assert second.registry.processed_count == 1
    assert ledger.queries == [{"txDigest": "digest2", "eventSeq": "0"}]


# ---- scheduler ----


@pytest.mark.asyncio
async def test_due_events_are_coalesced(make_engine):
    engine = make_engine()
    engine._request_tick()
    engine._request_tick()
    engine._request_ingestion()
    assert engine.inbox.qsize() == 2

    await engine.handle(engine.inbox.get_nowait())
    engine._request_tick()
    assert engine.inbox.qsize() == 2


@pytest.mark.asyncio
async def test_run_processes_events_until_stopped(make_engine):
    engine = make_engine(prices=[2900.0])
    _static(engine, "order-1", 2950.0)

    task = asyncio.create_task(engine.run())
    for _ in range(200):
        if engine.dispatcher.requests:
            break
        await asyncio.sleep(0.01)
    engine.request_stop()
    await asyncio.wait_for(task, 2)

    assert [r.order_ref for r in engine.dispatcher.requests] == ["order-1"]


@pytest.mark.asyncio
async def test_run_requires_restore(make_engine):
    engine = make_engine(restore=False)
    with pytest.raises(RuntimeError):
        await engine.run()
