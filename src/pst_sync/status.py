"""Sync status of the local cache against the ledger's current record."""
from __future__ import annotations

from enum import Enum

from pst_ledger.record import LedgerRecord

from .records import CommittedRecord, PendingRecord


class SyncStatus(str, Enum):
    IN_SYNC = "IN_SYNC"
    PENDING = "PENDING"
    LANDED_PENDING = "LANDED_PENDING"
    STALE = "STALE"
    DIVERGED = "DIVERGED"


def derive_status(
    ledger: LedgerRecord,
    committed: CommittedRecord,
    pending: PendingRecord | None,
) -> SyncStatus:
    """Pure classification. Order matters: DIVERGED wins over everything."""
    if committed.nonce > ledger.nonce:
        return SyncStatus.DIVERGED
    if pending is not None and pending.landed_on(ledger):
        return SyncStatus.LANDED_PENDING
    if committed.matches(ledger):
        return SyncStatus.PENDING if pending is not None else SyncStatus.IN_SYNC
    # Ledger is ahead, or at our nonce with a different commitment.
    return SyncStatus.STALE
