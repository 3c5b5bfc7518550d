"""Ledger-side state machine for one private state record.

The machine never sees payload content. It chains commitments and enforces
that only the authority advances the record, in an order allowed by the
active policy. Every operation validates fully before mutating, so a
failure leaves the record untouched.
"""
from __future__ import annotations

import logging

from pst_core.errors import (
    AlreadyInitialized,
    CommitmentMismatch,
    NotInitialized,
    Unauthorized,
)
from pst_core.protocol import AUTHORITY_LEN, COMMITMENT_LEN

from .assertion import require_state
from .record import LedgerRecord, UpdatePolicy

log = logging.getLogger(__name__)

UNINITIALIZED = "Uninitialized"
ACTIVE = "Active"


def _require_len(name: str, value: bytes, size: int) -> None:
    if len(value) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(value)}")


class PrivateStateMachine:
    """Uninitialized -> Active(authority, commitment, nonce, policy)."""

    def __init__(self, record: LedgerRecord | None = None):
        self._record = record

    @property
    def state(self) -> str:
        return UNINITIALIZED if self._record is None else ACTIVE

    @property
    def record(self) -> LedgerRecord | None:
        return self._record

    def _active(self) -> LedgerRecord:
        if self._record is None:
            raise NotInitialized()
        return self._record

    def _authorized(self, caller: bytes) -> LedgerRecord:
        record = self._active()
        if caller != record.authority:
            raise Unauthorized(caller=caller.hex())
        return record

    def initialize(self, initial_commitment: bytes, policy: int, authority: bytes) -> LedgerRecord:
        if self._record is not None:
            raise AlreadyInitialized()
        _require_len("commitment", initial_commitment, COMMITMENT_LEN)
        _require_len("authority", authority, AUTHORITY_LEN)
        self._record = LedgerRecord(
            authority=bytes(authority),
            commitment=bytes(initial_commitment),
            nonce=0,
            policy=UpdatePolicy.from_byte(policy),
        )
        log.info("initialize %s", self._record.summary())
        return self._record

    def update(
        self,
        caller: bytes,
        old_commitment: bytes,
        new_commitment: bytes,
        next_nonce: int,
    ) -> LedgerRecord:
        record = self._authorized(caller)
        _require_len("new_commitment", new_commitment, COMMITMENT_LEN)
        # Knowing the current commitment proves possession of the current state.
        if old_commitment != record.commitment:
            raise CommitmentMismatch(
                expected=record.commitment_hex, actual=bytes(old_commitment).hex()
            )
        record.policy.check_nonce(record.nonce, next_nonce)
        self._record = record.evolve(commitment=bytes(new_commitment), nonce=next_nonce)
        log.info("update %s", self._record.summary())
        return self._record

    def set_policy(self, caller: bytes, policy: int) -> LedgerRecord:
        record = self._authorized(caller)
        new_policy = UpdatePolicy.from_byte(policy)
        self._record = record.evolve(policy=new_policy)
        log.info("policy: %s -> %s", record.policy.label, new_policy.label)
        return self._record

    def transfer_authority(self, caller: bytes, new_authority: bytes) -> LedgerRecord:
        record = self._authorized(caller)
        _require_len("new_authority", new_authority, AUTHORITY_LEN)
        self._record = record.evolve(authority=bytes(new_authority))
        log.info("authority: %s -> %s", record.authority.hex()[:12], new_authority.hex()[:12])
        return self._record

    def assert_state(self, expected_commitment: bytes, expected_nonce: int) -> LedgerRecord:
        """Any caller. Never mutates."""
        record = self._active()
        require_state(record, expected_commitment, expected_nonce)
        return record
