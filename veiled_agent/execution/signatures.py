"""
Payload canonicalisation + owner signature checks.

Clients sign `JSON.stringify(payload)` with an EIP-191 personal-sign
signature. Canonical form reproduces that string: compact separators,
fixed key order, integral floats rendered without a fractional part.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Sequence

from eth_account import Account
from eth_account.messages import encode_defunct

from veiled_agent.orders.models import OrderPayload

logger = logging.getLogger(__name__)

ORDER_PAYLOAD_KEYS: tuple[str, ...] = ("targetPrice", "amount", "direction", "userEthAddress")
STRATEGY_UPDATE_KEYS: tuple[str, ...] = ("intent", "price", "nonce", "user", "sessionSigner")


def _js_number(v: Any) -> Any:
    if isinstance(v, float) and v.is_integer():
        return int(v)
    return v


def canonical_json(fields: Mapping[str, Any], keys: Sequence[str]) -> str:
    ordered = {k: _js_number(fields[k]) for k in keys if k in fields}
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False)


def canonical_order_payload(payload: OrderPayload) -> str:
    return canonical_json(payload.to_wire(), ORDER_PAYLOAD_KEYS)


def recover_signer(message: str, signature: str) -> str | None:
    """
    Address that signed `message`, or None when the signature is unusable.
    """
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:  # eth_keys raises its own BadSignature/ValidationError types
        logger.debug("signature recovery failed: %s", e)
        return None


def signed_by(message: str, signature: str, expected: str) -> bool:
    signer = recover_signer(message, signature)
    return signer is not None and signer.lower() == expected.strip().lower()


def verify_order_payload(payload: OrderPayload) -> bool:
    """
    True when the payload is unsigned or signed by its claimed owner.
    """
    if not payload.signature:
        return True
    return signed_by(canonical_order_payload(payload), payload.signature, payload.owner_address)
