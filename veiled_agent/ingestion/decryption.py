"""
Order blob decryption.

Two capabilities:
- SealDecryptor: external threshold-decryption service. The agent proves
  possession of its ledger identity by signing a request bound to the
  package namespace and the order id.
- SharedSecretDecryptor: legacy XOR scheme with a shared secret, kept for
  clients that never adopted threshold encryption.

Both return the decoded OrderPayload or raise DecryptionError.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from veiled_agent.common.config import AgentConfig
from veiled_agent.ingestion.identity import LedgerIdentity
from veiled_agent.orders.models import OrderPayload

logger = logging.getLogger(__name__)


class DecryptionError(RuntimeError):
    """
    Blob was rejected, malformed, or did not decode to an order payload.
    """


class Decryptor(Protocol):
    async def decrypt(self, *, order_id: str, blob: bytes) -> OrderPayload: ...


def parse_payload(plaintext: bytes) -> OrderPayload:
    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError(f"plaintext is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise DecryptionError("plaintext is not a JSON object")
    try:
        return OrderPayload.model_validate(data)
    except ValidationError as e:
        raise DecryptionError(f"invalid order payload: {e.error_count()} error(s)") from e


def xor_bytes(data: bytes, secret: bytes) -> bytes:
    if not secret:
        raise ValueError("shared secret must not be empty")
    return bytes(b ^ secret[i % len(secret)] for i, b in enumerate(data))


class SharedSecretDecryptor:
    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8")

    def encrypt(self, payload: dict[str, Any]) -> bytes:
        return xor_bytes(json.dumps(payload, separators=(",", ":")).encode("utf-8"), self._secret)

    async def decrypt(self, *, order_id: str, blob: bytes) -> OrderPayload:
        return parse_payload(xor_bytes(blob, self._secret))


def decryption_proof_message(*, package_id: str, order_id: str, requester: str) -> bytes:
    return f"veiled-decrypt:{package_id}:{order_id}:{requester}".encode("utf-8")


class SealDecryptor:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        service_url: str,
        package_id: str,
        identity: LedgerIdentity,
        timeout_s: float = 20.0,
    ) -> None:
        self._http = http
        self._service_url = service_url.rstrip("/")
        self._package_id = package_id
        self._identity = identity
        self._timeout_s = float(timeout_s)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        return await self._http.post(f"{self._service_url}/v1/decrypt", json=body, timeout=self._timeout_s)

    async def decrypt(self, *, order_id: str, blob: bytes) -> OrderPayload:
        proof = self._identity.sign_personal_message(
            decryption_proof_message(package_id=self._package_id, order_id=order_id, requester=self._identity.address)
        )
        body = {
            "packageId": self._package_id,
            "orderId": order_id,
            "encryptedObject": base64.b64encode(blob).decode("ascii"),
            "requester": self._identity.address,
            "signature": proof,
        }
        try:
            resp = await self._post(body)
        except httpx.HTTPError as e:
            raise DecryptionError(f"decryption service unreachable: {e}") from e
        if resp.status_code >= 400:
            raise DecryptionError(f"decryption rejected ({resp.status_code}): {resp.text[:200]}")
        try:
            plaintext = base64.b64decode(resp.json()["plaintext"], validate=True)
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise DecryptionError(f"malformed decryption response: {e}") from e
        return parse_payload(plaintext)


def build_decryptor(
    cfg: AgentConfig,
    *,
    http: httpx.AsyncClient,
    identity: Optional[LedgerIdentity],
) -> Decryptor:
    mode = cfg.decryption_mode
    if mode == "shared_secret":
        if not cfg.agent_shared_secret:
            raise ValueError("DECRYPTION_MODE=shared_secret requires AGENT_SHARED_SECRET")
        return SharedSecretDecryptor(cfg.agent_shared_secret)
    if mode == "seal":
        if not cfg.decryption_service_url:
            raise ValueError("DECRYPTION_MODE=seal requires DECRYPTION_SERVICE_URL")
        if identity is None:
            raise ValueError("DECRYPTION_MODE=seal requires AGENT_SUI_PRIVATE_KEY")
        return SealDecryptor(
            http,
            service_url=cfg.decryption_service_url,
            package_id=cfg.ledger_package_id,
            identity=identity,
        )
    raise ValueError(f"unknown DECRYPTION_MODE: {mode!r}")
