"""Wire codec for ledger accounts and instructions.

Account:     [Discriminator(8) | Authority(32) | Commitment(32) | Nonce(8, LE) | Policy(1)]
Instruction: [Discriminator(8) | fixed-width little-endian fields]
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Union

from pst_core.envelope import encode_nonce
from pst_core.protocol import (
    ACCOUNT_BODY_FMT,
    ACCOUNT_DISCRIMINATOR,
    ACCOUNT_LEN,
    ACCOUNT_PREFIX_LEN,
    AUTHORITY_LEN,
    COMMITMENT_LEN,
    IX_ASSERT_STATE,
    IX_INITIALIZE,
    IX_SET_POLICY,
    IX_TRANSFER_AUTHORITY,
    IX_UPDATE,
    NONCE_FMT,
)

from .record import LedgerRecord, UpdatePolicy


def encode_account(record: LedgerRecord) -> bytes:
    body = struct.pack(
        ACCOUNT_BODY_FMT,
        record.authority,
        record.commitment,
        record.nonce,
        int(record.policy),
    )
    return ACCOUNT_DISCRIMINATOR + body


def decode_account(data: bytes) -> LedgerRecord:
    """Decode account bytes. The prefix is checked, then skipped."""
    if len(data) < ACCOUNT_LEN:
        raise ValueError(f"account data too short: {len(data)} < {ACCOUNT_LEN}")
    if data[:ACCOUNT_PREFIX_LEN] != ACCOUNT_DISCRIMINATOR:
        raise ValueError("account discriminator mismatch")
    authority, commitment, nonce, policy = struct.unpack_from(
        ACCOUNT_BODY_FMT, data, ACCOUNT_PREFIX_LEN
    )
    return LedgerRecord(
        authority=authority,
        commitment=commitment,
        nonce=nonce,
        policy=UpdatePolicy.from_byte(policy),
    )


@dataclass(frozen=True)
class Initialize:
    commitment: bytes
    policy: UpdatePolicy


@dataclass(frozen=True)
class Update:
    old_commitment: bytes
    new_commitment: bytes
    next_nonce: int


@dataclass(frozen=True)
class SetPolicy:
    policy: UpdatePolicy


@dataclass(frozen=True)
class TransferAuthority:
    new_authority: bytes


@dataclass(frozen=True)
class AssertState:
    expected_commitment: bytes
    expected_nonce: int


Instruction = Union[Initialize, Update, SetPolicy, TransferAuthority, AssertState]


def encode_instruction(ix: Instruction) -> bytes:
    if isinstance(ix, Initialize):
        return IX_INITIALIZE + ix.commitment + bytes([int(ix.policy)])
    if isinstance(ix, Update):
        return IX_UPDATE + ix.old_commitment + ix.new_commitment + encode_nonce(ix.next_nonce)
    if isinstance(ix, SetPolicy):
        return IX_SET_POLICY + bytes([int(ix.policy)])
    if isinstance(ix, TransferAuthority):
        return IX_TRANSFER_AUTHORITY + ix.new_authority
    if isinstance(ix, AssertState):
        return IX_ASSERT_STATE + ix.expected_commitment + encode_nonce(ix.expected_nonce)
    raise TypeError(f"unknown instruction: {ix!r}")


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise ValueError("instruction data truncated")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return bytes(chunk)

    def u64(self) -> int:
        return struct.unpack(NONCE_FMT, self.take(8))[0]

    def done(self) -> None:
        if self.pos != len(self.data):
            raise ValueError("trailing instruction data")


def decode_instruction(data: bytes) -> Instruction:
    r = _Reader(data)
    tag = r.take(8)
    if tag == IX_INITIALIZE:
        ix = Initialize(r.take(COMMITMENT_LEN), UpdatePolicy.from_byte(r.take(1)[0]))
    elif tag == IX_UPDATE:
        ix = Update(r.take(COMMITMENT_LEN), r.take(COMMITMENT_LEN), r.u64())
    elif tag == IX_SET_POLICY:
        ix = SetPolicy(UpdatePolicy.from_byte(r.take(1)[0]))
    elif tag == IX_TRANSFER_AUTHORITY:
        ix = TransferAuthority(r.take(AUTHORITY_LEN))
    elif tag == IX_ASSERT_STATE:
        ix = AssertState(r.take(COMMITMENT_LEN), r.u64())
    else:
        raise ValueError(f"unknown instruction discriminator {tag.hex()}")
    r.done()
    return ix
