"""
Settlement dispatch against the settlement hook contract.

One `dispatch()` call is exactly one `settle(...)` transaction (or one
synthetic result in dry-run mode). Retry policy lives with the caller.

Parameter construction:
- buy  -> pay currency1 (quote), receive currency0 (base): zeroForOne = False
- sell -> pay currency0 (base), receive currency1 (quote): zeroForOne = True
- amount is the quote notional of the order; it becomes the exact input in
  the currency the user owes (sell converts through the tick price)
- price limit = tick price moved against the order by `slippage_bps`
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from eth_account.signers.local import LocalAccount
from web3 import Web3

from veiled_agent.common.config import PoolConfig
from veiled_agent.common.kill_switch import require_execution_allowed
from veiled_agent.common.logging import log_event
from veiled_agent.orders.models import Direction

logger = logging.getLogger(__name__)

# TickMath bounds (exclusive).
MIN_SQRT_PRICE = 4295128739
MAX_SQRT_PRICE = 1461446703485210103287273052203988822378723970342

Q96 = 2**96

_POOL_KEY_COMPONENTS = [
    {"name": "currency0", "type": "address"},
    {"name": "currency1", "type": "address"},
    {"name": "fee", "type": "uint24"},
    {"name": "tickSpacing", "type": "int24"},
    {"name": "hooks", "type": "address"},
]
_SWAP_PARAMS_COMPONENTS = [
    {"name": "zeroForOne", "type": "bool"},
    {"name": "amountSpecified", "type": "int256"},
    {"name": "sqrtPriceLimitX96", "type": "uint160"},
]

SETTLEMENT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "settle",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "key", "type": "tuple", "components": _POOL_KEY_COMPONENTS},
            {"name": "params", "type": "tuple", "components": _SWAP_PARAMS_COMPONENTS},
            {"name": "user", "type": "address"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    }
]


class ExecutionError(RuntimeError):
    """
    A settlement call failed, timed out, or reverted.
    """


@dataclass(frozen=True, slots=True)
class SwapParams:
    zero_for_one: bool
    amount_specified: int
    sqrt_price_limit_x96: int

    def as_tuple(self) -> tuple[bool, int, int]:
        return (self.zero_for_one, self.amount_specified, self.sqrt_price_limit_x96)


@dataclass(frozen=True, slots=True)
class SettlementRequest:
    order_ref: str
    kind: str
    direction: Direction
    amount: float
    beneficiary: str
    price: float
    signature: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SettlementResult:
    order_ref: str
    tx_ref: str
    executed_at: str
    dry_run: bool = False


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def sqrt_price_x96_from_price(price: float, *, decimals0: int, decimals1: int) -> int:
    """
    Inverse of the pool price read: human price (currency1 per currency0) -> sqrtPriceX96.
    """
    raw = float(price) * (10 ** (decimals1 - decimals0))
    if raw <= 0 or not math.isfinite(raw):
        raise ValueError(f"price must be positive, got {price!r}")
    value = int(math.sqrt(raw) * Q96)
    return min(max(value, MIN_SQRT_PRICE + 1), MAX_SQRT_PRICE - 1)


def build_swap_params(
    *,
    direction: Direction,
    amount: float,
    price: float,
    pool: PoolConfig,
    slippage_bps: int,
) -> SwapParams:
    if amount <= 0:
        raise ValueError("amount must be positive")
    if price <= 0:
        raise ValueError("price must be positive")
    slip = max(0, int(slippage_bps)) / 10_000

    if direction == Direction.BUY:
        zero_for_one = False
        exact_in = int(round(amount * (10**pool.currency1_decimals)))
        limit_price = price * (1 + slip)
    else:
        zero_for_one = True
        exact_in = int(round((amount / price) * (10**pool.currency0_decimals)))
        limit_price = price * (1 - slip)

    if exact_in <= 0:
        raise ValueError("amount rounds to zero in the input currency")

    return SwapParams(
        zero_for_one=zero_for_one,
        # Negative amountSpecified means exact input.
        amount_specified=-exact_in,
        sqrt_price_limit_x96=sqrt_price_x96_from_price(
            limit_price,
            decimals0=pool.currency0_decimals,
            decimals1=pool.currency1_decimals,
        ),
    )


def _signature_bytes(signature: Optional[str]) -> bytes:
    if not signature:
        return b""
    s = signature[2:] if signature.lower().startswith("0x") else signature
    try:
        return bytes.fromhex(s)
    except ValueError:
        return b""


class SettlementDispatcher:
    def __init__(
        self,
        *,
        w3: Web3,
        account: LocalAccount,
        contract_address: str,
        pool: PoolConfig,
        slippage_bps: int = 100,
        receipt_timeout_s: float = 120.0,
        dry_run: bool = False,
    ) -> None:
        self._w3 = w3
        self._account = account
        self._pool = pool
        self._slippage_bps = int(slippage_bps)
        self._receipt_timeout_s = float(receipt_timeout_s)
        self._dry_run = bool(dry_run)
        self._contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=SETTLEMENT_ABI)

    @property
    def agent_address(self) -> str:
        return self._account.address

    def pool_key(self) -> tuple[str, str, int, int, str]:
        p = self._pool
        return (
            Web3.to_checksum_address(p.currency0),
            Web3.to_checksum_address(p.currency1),
            int(p.fee),
            int(p.tick_spacing),
            Web3.to_checksum_address(p.hooks),
        )

    def _send(self, params: SwapParams, beneficiary: str, signature: bytes) -> str:
        fn = self._contract.functions.settle(
            self.pool_key(),
            params.as_tuple(),
            Web3.to_checksum_address(beneficiary),
            signature,
        )
        tx = fn.build_transaction(
            {
                "from": self._account.address,
                "nonce": self._w3.eth.get_transaction_count(self._account.address, "pending"),
                "chainId": self._w3.eth.chain_id,
            }
        )
        signed = self._account.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout_s)
        tx_ref = Web3.to_hex(tx_hash)
        if int(receipt.get("status", 0)) != 1:
            raise ExecutionError(f"settle reverted: {tx_ref}")
        return tx_ref

    async def dispatch(self, request: SettlementRequest) -> SettlementResult:
        """
        Issue exactly one settlement call for `request`.

        Raises ExecutionHaltedError (kill switch, nothing sent) or
        ExecutionError (call failed, reverted, or could not be built).
        """
        require_execution_allowed(operation=f"settle {request.kind} order {request.order_ref}")

        try:
            params = build_swap_params(
                direction=request.direction,
                amount=request.amount,
                price=request.price,
                pool=self._pool,
                slippage_bps=self._slippage_bps,
            )
        except ValueError as e:
            raise ExecutionError(f"cannot build settlement params: {e}") from e

        log_event(
            logger,
            "settlement.dispatching",
            order_ref=request.order_ref,
            kind=request.kind,
            direction=request.direction.value,
            amount=request.amount,
            price=request.price,
            zero_for_one=params.zero_for_one,
            amount_specified=str(params.amount_specified),
            dry_run=self._dry_run,
        )

        if self._dry_run:
            return SettlementResult(
                order_ref=request.order_ref,
                tx_ref=f"dryrun-{uuid.uuid4().hex}",
                executed_at=_utc_now_iso(),
                dry_run=True,
            )

        try:
            tx_ref = await asyncio.to_thread(self._send, params, request.beneficiary, _signature_bytes(request.signature))
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"settle failed for {request.order_ref}: {e}") from e

        log_event(logger, "settlement.succeeded", order_ref=request.order_ref, kind=request.kind, tx_ref=tx_ref)
        return SettlementResult(order_ref=request.order_ref, tx_ref=tx_ref, executed_at=_utc_now_iso())
