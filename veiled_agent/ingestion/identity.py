"""
Ledger-side agent identity (ED25519).

The same key signs ledger transactions (order anchoring) and the personal
message that proves possession of the agent identity to the decryption
capability.

Signature wire form is the ledger's serialized signature:
    base64(flag(0x00) || signature(64) || public_key(32))
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from typing import Optional

from nacl.signing import SigningKey

ED25519_FLAG = 0x00

# Intent prefixes: (scope, version, app_id)
_TRANSACTION_INTENT = bytes([0, 0, 0])
_PERSONAL_MESSAGE_INTENT = bytes([3, 0, 0])


def _blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def _uleb128(n: int) -> bytes:
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_seed(raw: str) -> bytes:
    s = raw.strip()
    candidates: list[bytes] = []
    hex_s = s[2:] if s.lower().startswith("0x") else s
    try:
        candidates.append(bytes.fromhex(hex_s))
    except ValueError:
        pass
    try:
        candidates.append(base64.b64decode(s, validate=True))
    except (binascii.Error, ValueError):
        pass
    for c in candidates:
        if len(c) == 32:
            return c
        # Exported keys carry the scheme flag in front of the seed.
        if len(c) == 33 and c[0] == ED25519_FLAG:
            return c[1:]
    raise ValueError("ledger private key must be a 32-byte ed25519 seed (hex or base64)")


class LedgerIdentity:
    def __init__(self, signing_key: SigningKey) -> None:
        self._key = signing_key
        self.public_key: bytes = bytes(signing_key.verify_key)
        self.address: str = "0x" + _blake2b_256(bytes([ED25519_FLAG]) + self.public_key).hex()

    @classmethod
    def from_secret(cls, raw: str) -> "LedgerIdentity":
        return cls(SigningKey(_decode_seed(raw)))

    @classmethod
    def from_optional_secret(cls, raw: Optional[str]) -> Optional["LedgerIdentity"]:
        return cls.from_secret(raw) if raw else None

    def _serialize(self, digest: bytes) -> str:
        sig = self._key.sign(digest).signature
        return base64.b64encode(bytes([ED25519_FLAG]) + sig + self.public_key).decode("ascii")

    def sign_transaction(self, tx_bytes_b64: str) -> str:
        tx_bytes = base64.b64decode(tx_bytes_b64)
        return self._serialize(_blake2b_256(_TRANSACTION_INTENT + tx_bytes))

    def sign_personal_message(self, message: bytes) -> str:
        bcs_message = _uleb128(len(message)) + message
        return self._serialize(_blake2b_256(_PERSONAL_MESSAGE_INTENT + bcs_message))
