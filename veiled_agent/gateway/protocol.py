"""
Gateway wire protocol.

Every message is a JSON object tagged by `type` (the legacy strategy message
is tagged by `intent` instead). Inbound messages are decoded once, here, into
a closed set of variants; anything unrecognised or malformed becomes
`UnknownMessage`, which the engine treats as a no-op.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from veiled_agent.execution.signatures import STRATEGY_UPDATE_KEYS, canonical_json
from veiled_agent.orders.models import Direction


class InvalidCommand(ValueError):
    """
    Well-formed command that cannot be applied (unknown order, bad values).
    """


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, alias_generator=to_camel, populate_by_name=True)


def _byte(v: Any) -> int:
    if isinstance(v, bool) or not isinstance(v, int) or not 0 <= v <= 255:
        raise ValueError("encryptedPayload values must be integers in 0..255")
    return v


def decode_payload_bytes(value: Any) -> bytes:
    """
    Encrypted payloads arrive as base64 text, a list of byte values, or a
    serialised typed array (`{"0": 12, "1": 34, ...}`).
    """
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"encryptedPayload is not valid base64: {e}") from e
    if isinstance(value, list):
        return bytes(_byte(b) for b in value)
    if isinstance(value, dict):
        try:
            ordered = sorted(value.items(), key=lambda kv: int(kv[0]))
        except (TypeError, ValueError) as e:
            raise ValueError("encryptedPayload object keys must be indices") from e
        return bytes(_byte(v) for _, v in ordered)
    raise ValueError(f"unsupported encryptedPayload type: {type(value).__name__}")


class CreateOrder(_Inbound):
    type: Literal["CREATE_ORDER"]
    encrypted_payload: bytes

    @field_validator("encrypted_payload", mode="before")
    @classmethod
    def _decode(cls, v: Any) -> bytes:
        data = decode_payload_bytes(v)
        if not data:
            raise ValueError("encryptedPayload is empty")
        return data


class DynamicOrderSpec(_Inbound):
    id: Optional[str] = None
    direction: Direction
    trailing_offset: float = Field(ge=0)
    amount: float = Field(gt=0)
    user_address: Optional[str] = None

    @field_validator("direction", mode="before")
    @classmethod
    def _lower_direction(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class CreateDynamicOrder(_Inbound):
    type: Literal["CREATE_DYNAMIC_ORDER"]
    order: DynamicOrderSpec


class UpdateDynamicOrder(_Inbound):
    type: Literal["UPDATE_DYNAMIC_ORDER"]
    order_id: str
    new_target: Optional[float] = Field(default=None, gt=0)
    new_amount: Optional[float] = Field(default=None, gt=0)
    new_trailing_offset: Optional[float] = Field(default=None, ge=0)


class CancelDynamicOrder(_Inbound):
    type: Literal["CANCEL_DYNAMIC_ORDER"]
    order_id: str


class StrategyUpdate(_Inbound):
    intent: Literal["STRATEGY_UPDATE"]
    price: float = Field(gt=0)
    nonce: int
    user: str
    session_signer: str
    signature: str

    def signed_message(self) -> str:
        return canonical_json(
            {
                "intent": self.intent,
                "price": self.price,
                "nonce": self.nonce,
                "user": self.user,
                "sessionSigner": self.session_signer,
            },
            STRATEGY_UPDATE_KEYS,
        )


class UnknownMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Optional[str] = None
    reason: str = "unrecognized"


TypedCommand = Annotated[
    Union[CreateOrder, CreateDynamicOrder, UpdateDynamicOrder, CancelDynamicOrder],
    Field(discriminator="type"),
]
_TYPED = TypeAdapter(TypedCommand)

ClientMessage = Union[
    CreateOrder,
    CreateDynamicOrder,
    UpdateDynamicOrder,
    CancelDynamicOrder,
    StrategyUpdate,
    UnknownMessage,
]


def decode_client_message(raw: str | bytes) -> ClientMessage:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, UnicodeDecodeError, RecursionError):
        return UnknownMessage(reason="not_json")
    if not isinstance(data, dict):
        return UnknownMessage(reason="not_object")

    tag = data.get("type")
    tag_s = str(tag) if tag is not None else None
    try:
        if data.get("intent") == "STRATEGY_UPDATE":
            return StrategyUpdate.model_validate(data)
        if tag is None:
            return UnknownMessage(reason="untagged")
        return _TYPED.validate_python(data)
    except ValidationError as e:
        return UnknownMessage(type=tag_s, reason=f"invalid:{e.error_count()}")


# ---- server -> client ----


class _Outbound(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), separators=(",", ":"))


class PriceUpdate(_Outbound):
    type: Literal["PRICE_UPDATE"] = "PRICE_UPDATE"
    price: float


class OrderPending(_Outbound):
    type: Literal["ORDER_PENDING"] = "ORDER_PENDING"
    order_id: str
    direction: Direction
    amount: float
    target_price: float


class OrderExecuted(_Outbound):
    type: Literal["ORDER_EXECUTED"] = "ORDER_EXECUTED"
    order_id: str
    tx_ref: str
    direction: Direction
    amount: float
    target_price: float
    executed_at: str


class OrderError(_Outbound):
    type: Literal["ORDER_ERROR"] = "ORDER_ERROR"
    error: str


class DynamicOrderCreated(_Outbound):
    type: Literal["DYNAMIC_ORDER_CREATED"] = "DYNAMIC_ORDER_CREATED"
    order_id: str


class DynamicOrderTriggered(_Outbound):
    type: Literal["DYNAMIC_ORDER_TRIGGERED"] = "DYNAMIC_ORDER_TRIGGERED"
    price: float


class DynamicOrderExecuted(_Outbound):
    type: Literal["DYNAMIC_ORDER_EXECUTED"] = "DYNAMIC_ORDER_EXECUTED"
    tx_ref: str


class DynamicOrderFailed(_Outbound):
    type: Literal["DYNAMIC_ORDER_FAILED"] = "DYNAMIC_ORDER_FAILED"
    error: str


ServerMessage = Union[
    PriceUpdate,
    OrderPending,
    OrderExecuted,
    OrderError,
    DynamicOrderCreated,
    DynamicOrderTriggered,
    DynamicOrderExecuted,
    DynamicOrderFailed,
]
