"""PST Core - Commitment engine and shared error taxonomy."""
from .envelope import (
    EncryptedPayload,
    Sealed,
    commitment_hash,
    decrypt,
    encrypt,
    pack,
    unpack,
)

__all__ = [
    "EncryptedPayload",
    "Sealed",
    "commitment_hash",
    "decrypt",
    "encrypt",
    "pack",
    "unpack",
]
