"""Freshness assertion over a ledger record.

Third parties gate their own actions on these checks. Both functions are
pure and deterministic, so they are safe to evaluate off the critical path
and to retry.
"""
from __future__ import annotations

from pst_core.errors import CommitmentMismatch, NonceMismatch

from .record import LedgerRecord


def state_matches(record: LedgerRecord, expected_commitment: bytes, expected_nonce: int) -> bool:
    return record.commitment == expected_commitment and record.nonce == expected_nonce


def require_state(record: LedgerRecord, expected_commitment: bytes, expected_nonce: int) -> None:
    """Raising form of state_matches. Commitment is checked before nonce."""
    if record.commitment != expected_commitment:
        raise CommitmentMismatch(
            expected=expected_commitment.hex(), actual=record.commitment_hex
        )
    if record.nonce != expected_nonce:
        raise NonceMismatch(expected=expected_nonce, actual=record.nonce)
