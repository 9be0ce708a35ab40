"""
Order records held by the registry.

Two populations share the settlement path:
- StaticOrder: discovered on the ledger, payload decrypted from a blob, durable.
- DynamicOrder: trailing order owned by a live gateway session, ephemeral.

StrategyOrder is the legacy per-user session order (STRATEGY_UPDATE intent);
it is ephemeral like a dynamic order but triggers like a static buy.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class Direction(str, Enum):
    BUY = "buy"
    SELL = "sell"


class DynamicStatus(str, Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    EXECUTED = "executed"
    FAILED = "failed"


class ProcessedReason(str, Enum):
    """
    Why a static order stopped being eligible. Stored only in memory and logs.
    """

    EXECUTED = "executed"
    INVALID_SIGNATURE = "invalid_signature"
    CANCELLED = "cancelled"
    FAILED = "failed"


class OrderPayload(BaseModel):
    """
    Decrypted contents of a static order blob.

    Wire form uses camelCase; the owner may arrive as `userEthAddress`
    (what clients write) or `ownerAddress`.
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    target_price: float = Field(validation_alias=AliasChoices("targetPrice", "target_price"), gt=0)
    amount: float = Field(gt=0)
    direction: Direction
    owner_address: str = Field(
        validation_alias=AliasChoices("userEthAddress", "ownerAddress", "owner_address"),
        min_length=1,
    )
    signature: Optional[str] = None

    @field_validator("direction", mode="before")
    @classmethod
    def _lower_direction(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "targetPrice": self.target_price,
            "amount": self.amount,
            "direction": self.direction.value,
            "userEthAddress": self.owner_address,
        }
        if self.signature is not None:
            out["signature"] = self.signature
        return out


@dataclass(slots=True)
class StaticOrder:
    order_id: str
    blob_reference: str
    payload: Optional[OrderPayload] = None
    processed: bool = False
    processed_reason: Optional[ProcessedReason] = None
    settlement_attempts: int = 0
    # Monotonic time before which the order is not re-dispatched (after a failure).
    next_attempt_at: Optional[float] = None

    @property
    def is_pending(self) -> bool:
        return not self.processed and self.payload is not None


@dataclass(slots=True)
class DynamicOrder:
    id: str
    direction: Direction
    trailing_offset: float
    amount: float
    owner_connection: str
    beneficiary: Optional[str] = None
    extreme_price: Optional[float] = None
    current_target: Optional[float] = None
    status: DynamicStatus = DynamicStatus.ACTIVE
    settlement_attempts: int = 0
    next_attempt_at: Optional[float] = None


@dataclass(slots=True)
class StrategyOrder:
    """
    Per-user buy-below order from a verified STRATEGY_UPDATE message.
    """

    user: str
    price: float
    nonce: int
    session_signer: str
    owner_connection: str
    amount: float
    signature: str = ""
    settlement_attempts: int = 0
    next_attempt_at: Optional[float] = None
