"""PST Ledger - record state machine, wire codec and ledger client."""
from .assertion import require_state, state_matches
from .client import Confirmation, InMemoryLedger, LedgerClient, Outcome, new_record_id
from .record import LedgerRecord, UpdatePolicy
from .state import PrivateStateMachine

__all__ = [
    "Confirmation",
    "InMemoryLedger",
    "LedgerClient",
    "LedgerRecord",
    "Outcome",
    "PrivateStateMachine",
    "UpdatePolicy",
    "new_record_id",
    "require_state",
    "state_matches",
]
