"""Gated consumer: an action that runs only against a fresh private state.

The consumer never sees plaintext or keys. It links to one record and
counts actions whose expected (commitment, nonce) matched the ledger at the
time of the call.
"""
from __future__ import annotations

from dataclasses import dataclass

from pst_core.errors import InvalidPrivateState, UnknownRecord

from .assertion import require_state
from .client import LedgerClient


@dataclass
class GatedCounter:
    private_state: str
    count: int = 0

    def gated_action(
        self,
        client: LedgerClient,
        private_state: str,
        expected_commitment: bytes,
        expected_nonce: int,
    ) -> int:
        if private_state != self.private_state:
            raise InvalidPrivateState(expected=self.private_state, actual=private_state)
        record = client.fetch_record(private_state)
        if record is None:
            raise UnknownRecord(record_id=private_state)
        require_state(record, expected_commitment, expected_nonce)
        self.count += 1
        return self.count
