from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from veiled_agent.common.config import AgentConfig, PoolConfig
from veiled_agent.engine import AgentEngine
from veiled_agent.execution.settlement import SettlementRequest, SettlementResult
from veiled_agent.ingestion.blob_store import BlobStoreError
from veiled_agent.ingestion.decryption import DecryptionError
from veiled_agent.ingestion.ledger_client import EventPage, OrderCreatedEvent
from veiled_agent.marketdata.price_oracle import NoPriceAvailable
from veiled_agent.orders.models import OrderPayload
from veiled_agent.orders.registry import OrderRegistry
from veiled_agent.persistence.state_store import StateStore

USDC = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
WETH = "0xfFf9976782d46CC05630D1f6eBAb18b2324d6B14"
HOOK = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


def sign_text(message: str, private_key: str) -> str:
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def make_config(**overrides: Any) -> AgentConfig:
    base = AgentConfig(
        settlement_rpc_url="http://127.0.0.1:8545",
        agent_private_key="0x" + "ab" * 32,
        settlement_contract_address=HOOK,
        ledger_package_id="0xa0418d4c65c9ff236ec7bb8f650d88ddab6ee42cf31ce41f288e493dcf3df29e",
        ledger_rpc_url="http://ledger.test",
        blob_aggregator_url="http://aggregator.test",
        blob_publisher_url="http://publisher.test",
        pool=PoolConfig(manager_address=None, currency0=WETH, currency1=USDC, hooks=HOOK),
        decryption_mode="shared_secret",
        agent_shared_secret="veiled-agent-secret-2026",
        market_api_url=None,
        settlement_backoff_base_s=5.0,
        settlement_backoff_max_s=120.0,
    )
    return dataclasses.replace(base, **overrides)


def payload(
    target: float,
    direction: str = "buy",
    *,
    amount: float = 100.0,
    owner: str = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
    signature: Optional[str] = None,
) -> OrderPayload:
    data: dict[str, Any] = {
        "targetPrice": target,
        "amount": amount,
        "direction": direction,
        "userEthAddress": owner,
    }
    if signature is not None:
        data["signature"] = signature
    return OrderPayload.model_validate(data)


class FakeOracle:
    def __init__(self, prices: list[float | None]) -> None:
        self.prices = list(prices)
        self.calls = 0
        self.source_names = ["fake"]

    async def current_price(self) -> float:
        self.calls += 1
        price = self.prices.pop(0) if len(self.prices) > 1 else self.prices[0]
        if price is None:
            raise NoPriceAvailable("fake oracle has no price")
        return price


class FakeDispatcher:
    """
    Records every request; `fail_with` queues outcomes (exception or None for success).
    """

    agent_address = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

    def __init__(self) -> None:
        self.requests: list[SettlementRequest] = []
        self.fail_with: list[Optional[Exception]] = []

    async def dispatch(self, request: SettlementRequest) -> SettlementResult:
        self.requests.append(request)
        if self.fail_with:
            err = self.fail_with.pop(0)
            if err is not None:
                raise err
        return SettlementResult(
            order_ref=request.order_ref,
            tx_ref=f"0xtx{len(self.requests)}",
            executed_at="2026-10-16T00:00:00+00:00",
        )


class FakeNotifier:
    def __init__(self) -> None:
        self.broadcasts: list[Any] = []
        self.sent: list[tuple[str, Any]] = []

    def broadcast(self, message: Any) -> None:
        self.broadcasts.append(message)

    async def send(self, connection_id: str, message: Any) -> bool:
        self.sent.append((connection_id, message))
        return True

    def sent_types(self, connection_id: Optional[str] = None) -> list[str]:
        return [m.type for cid, m in self.sent if connection_id is None or cid == connection_id]


def order_event(seq: int, order_id: str, blob_id: str) -> OrderCreatedEvent:
    return OrderCreatedEvent(
        event_id={"txDigest": f"digest{seq}", "eventSeq": "0"},
        order_id=order_id,
        user="0xsuiuser",
        blob_id=blob_id,
    )


class FakeLedger:
    def __init__(self, events: Optional[list[OrderCreatedEvent]] = None) -> None:
        self.events = list(events or [])
        self.queries: list[Optional[dict[str, Any]]] = []
        self.existing: Optional[set[str]] = None
        self.exists_error: Optional[Exception] = None
        self.anchored: list[str] = []
        self.query_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None

    async def query_order_events(self, cursor: Optional[dict[str, Any]], *, limit: int = 50) -> EventPage:
        self.queries.append(cursor)
        if self.query_error is not None:
            raise self.query_error
        start = 0
        if cursor is not None:
            for i, e in enumerate(self.events):
                if e.event_id == cursor:
                    start = i + 1
                    break
        page = self.events[start : start + limit]
        return EventPage(
            events=page,
            next_cursor=page[-1].event_id if page else cursor,
            has_next_page=start + limit < len(self.events),
        )

    async def order_exists(self, order_id: str) -> bool:
        if self.exists_error is not None:
            raise self.exists_error
        return self.existing is None or order_id in self.existing

    async def create_order(self, identity: Any, blob_id: str) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.anchored.append(blob_id)
        return f"anchor-{blob_id}"


class FakeBlobs:
    def __init__(self, blobs: Optional[dict[str, bytes]] = None) -> None:
        self.blobs = dict(blobs or {})
        self.uploaded: list[bytes] = []
        self.fetch_errors: dict[str, int] = {}

    async def fetch(self, blob_id: str) -> bytes:
        remaining = self.fetch_errors.get(blob_id, 0)
        if remaining:
            self.fetch_errors[blob_id] = remaining - 1
            raise BlobStoreError(f"fetch {blob_id} failed")
        if blob_id not in self.blobs:
            raise BlobStoreError(f"blob {blob_id} not found")
        return self.blobs[blob_id]

    async def upload(self, data: bytes) -> str:
        self.uploaded.append(data)
        blob_id = f"blob-{len(self.uploaded)}"
        self.blobs[blob_id] = data
        return blob_id


class FakeDecryptor:
    """
    Maps order id -> payload (or the exception decryption should raise).
    """

    def __init__(self, payloads: dict[str, OrderPayload | Exception]) -> None:
        self.payloads = dict(payloads)
        self.calls: list[str] = []

    async def decrypt(self, *, order_id: str, blob: bytes) -> OrderPayload:
        self.calls.append(order_id)
        result = self.payloads.get(order_id)
        if result is None:
            raise DecryptionError(f"no payload for {order_id}")
        if isinstance(result, Exception):
            raise result
        return result


class Clock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


@pytest.fixture(autouse=True)
def _execution_allowed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("EXECUTION_HALTED", raising=False)
    monkeypatch.delenv("EXECUTION_HALTED_FILE", raising=False)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "agent_state.json"


@pytest.fixture
def make_engine(state_path: Path, clock: Clock) -> Callable[..., AgentEngine]:
    def _make(
        *,
        prices: Optional[list[float | None]] = None,
        cfg: Optional[AgentConfig] = None,
        ledger: Optional[FakeLedger] = None,
        blobs: Optional[FakeBlobs] = None,
        decryptor: Optional[FakeDecryptor] = None,
        dispatcher: Optional[FakeDispatcher] = None,
        identity: Any = None,
        restore: bool = True,
    ) -> AgentEngine:
        engine = AgentEngine(
            cfg=cfg or make_config(state_path=str(state_path)),
            registry=OrderRegistry(),
            oracle=FakeOracle(prices or [3000.0]),  # type: ignore[arg-type]
            dispatcher=dispatcher or FakeDispatcher(),  # type: ignore[arg-type]
            store=StateStore(state_path),
            ledger=ledger or FakeLedger(),  # type: ignore[arg-type]
            blobs=blobs or FakeBlobs(),  # type: ignore[arg-type]
            decryptor=decryptor or FakeDecryptor({}),
            identity=identity,
            notifier=FakeNotifier(),
            clock=clock,
        )
        if restore:
            engine.restore()
        return engine

    return _make

