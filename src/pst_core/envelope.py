"""PST Commitment Engine - payload encryption and commitment hashing."""
from __future__ import annotations

import hashlib
import os
import struct
from dataclasses import dataclass
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationError, MalformedPayload
from .protocol import IV_LEN, KEY_LEN, NONCE_FMT, NONCE_MAX, PACKED_MIN_LEN, TAG_LEN


@dataclass(frozen=True)
class EncryptedPayload:
    iv: bytes
    tag: bytes
    ciphertext: bytes

    def to_json(self) -> dict:
        return {
            "ivHex": self.iv.hex(),
            "tagHex": self.tag.hex(),
            "ciphertextHex": self.ciphertext.hex(),
        }

    @classmethod
    def from_json(cls, obj: dict) -> "EncryptedPayload":
        return cls(
            iv=bytes.fromhex(obj["ivHex"]),
            tag=bytes.fromhex(obj["tagHex"]),
            ciphertext=bytes.fromhex(obj["ciphertextHex"]),
        )


class Sealed(NamedTuple):
    payload: EncryptedPayload
    packed: bytes


def pack(payload: EncryptedPayload) -> bytes:
    """Canonical wire form: iv || tag || ciphertext."""
    if len(payload.iv) != IV_LEN or len(payload.tag) != TAG_LEN:
        raise MalformedPayload(f"iv={len(payload.iv)} tag={len(payload.tag)}")
    return payload.iv + payload.tag + payload.ciphertext


def unpack(packed: bytes) -> EncryptedPayload:
    """Split packed bytes into components. Fails closed on short input."""
    if len(packed) < PACKED_MIN_LEN:
        raise MalformedPayload(f"got {len(packed)} bytes, need at least {PACKED_MIN_LEN}")
    return EncryptedPayload(
        iv=bytes(packed[:IV_LEN]),
        tag=bytes(packed[IV_LEN:PACKED_MIN_LEN]),
        ciphertext=bytes(packed[PACKED_MIN_LEN:]),
    )


def _cipher(key: bytes) -> AESGCM:
    if len(key) != KEY_LEN:
        raise ValueError(f"encryption key must be {KEY_LEN} bytes, got {len(key)}")
    return AESGCM(key)


def encrypt(key: bytes, plaintext: bytes) -> Sealed:
    """AES-256-GCM encrypt under a fresh random IV."""
    iv = os.urandom(IV_LEN)
    # AESGCM appends the tag to the ciphertext.
    sealed = _cipher(key).encrypt(iv, plaintext, None)
    payload = EncryptedPayload(iv=iv, tag=sealed[-TAG_LEN:], ciphertext=sealed[:-TAG_LEN])
    return Sealed(payload, pack(payload))


def decrypt(key: bytes, packed: bytes) -> bytes:
    """Verify and decrypt packed bytes. Never returns partial plaintext."""
    payload = unpack(packed)
    try:
        return _cipher(key).decrypt(payload.iv, payload.ciphertext + payload.tag, None)
    except InvalidTag:
        raise AuthenticationError("tag verification failed") from None


def encode_nonce(nonce: int) -> bytes:
    if not 0 <= nonce <= NONCE_MAX:
        raise ValueError(f"nonce out of u64 range: {nonce}")
    return struct.pack(NONCE_FMT, nonce)


def commitment_hash(nonce: int, packed: bytes) -> bytes:
    """sha256(nonce_u64_le || packed)."""
    h = hashlib.sha256()
    h.update(encode_nonce(nonce))
    h.update(packed)
    return h.digest()
