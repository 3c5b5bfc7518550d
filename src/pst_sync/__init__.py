"""PST Sync - local Committed/Pending cache reconciled against the ledger."""
from .reconcile import Reconciler, SyncReport, bootstrap
from .status import SyncStatus, derive_status
from .store import FileStore, LocalStore, MemoryStore

__all__ = [
    "FileStore",
    "LocalStore",
    "MemoryStore",
    "Reconciler",
    "SyncReport",
    "SyncStatus",
    "bootstrap",
    "derive_status",
]
