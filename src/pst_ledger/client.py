"""Ledger Client interface and an in-process ledger implementing it.

The reconciliation protocol only talks to a ledger through LedgerClient.
InMemoryLedger is the reference implementation: it keeps encoded account
bytes per record, verifies instruction signatures and runs each instruction
through a PrivateStateMachine. With auto_apply=False submissions queue until
settle(), which models confirmation latency.
"""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol

from nacl.utils import random as random_bytes

from pst_core.atomic import read_json_if_exists, write_json_atomic
from pst_core.errors import PSTError, TransitionRejected

from .codec import (
    AssertState,
    Initialize,
    Instruction,
    SetPolicy,
    TransferAuthority,
    Update,
    decode_account,
    encode_account,
)
from .crypto import SignedInstruction
from .record import LedgerRecord
from .state import PrivateStateMachine

log = logging.getLogger(__name__)

OnChange = Callable[[LedgerRecord], None]


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Confirmation:
    outcome: Outcome
    record: LedgerRecord | None = None
    error: dict | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS


class LedgerClient(Protocol):
    def fetch_record(self, record_id: str) -> LedgerRecord | None: ...

    def submit(self, signed: SignedInstruction) -> str: ...

    def confirm(self, transition_id: str, timeout: float) -> Confirmation: ...

    def subscribe(self, record_id: str, on_change: OnChange) -> Callable[[], None]: ...


def new_record_id() -> str:
    return random_bytes(32).hex()


class InMemoryLedger:
    def __init__(self, auto_apply: bool = True, snapshot_path: Path | None = None):
        self.auto_apply = auto_apply
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._lock = threading.RLock()
        self._accounts: dict[str, bytes] = {}
        self._queue: list[tuple[str, SignedInstruction]] = []
        self._results: dict[str, Confirmation] = {}
        self._done: dict[str, threading.Event] = {}
        self._subscribers: dict[str, list[OnChange]] = {}
        if self.snapshot_path is not None:
            snap = read_json_if_exists(self.snapshot_path) or {}
            self._accounts = {k: bytes.fromhex(v) for k, v in snap.get("accounts", {}).items()}

    # -- reads -------------------------------------------------------------

    def fetch_record(self, record_id: str) -> LedgerRecord | None:
        with self._lock:
            data = self._accounts.get(record_id)
        return decode_account(data) if data is not None else None

    def account_data(self, record_id: str) -> bytes | None:
        with self._lock:
            return self._accounts.get(record_id)

    # -- submission --------------------------------------------------------

    def submit(self, signed: SignedInstruction) -> str:
        transition_id = uuid.uuid4().hex
        with self._lock:
            self._done[transition_id] = threading.Event()
            self._queue.append((transition_id, signed))
        if self.auto_apply:
            self.settle()
        return transition_id

    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def settle(self, limit: int | None = None) -> int:
        """Apply queued submissions in arrival order. Returns how many ran."""
        applied = 0
        while limit is None or applied < limit:
            with self._lock:
                if not self._queue:
                    break
                transition_id, signed = self._queue.pop(0)
                confirmation, mutated = self._apply(signed)
                self._results[transition_id] = confirmation
                listeners = list(self._subscribers.get(signed.record_id, ()))
            self._done[transition_id].set()
            applied += 1
            if mutated:
                for listener in listeners:
                    listener(confirmation.record)
        return applied

    def confirm(self, transition_id: str, timeout: float) -> Confirmation:
        with self._lock:
            done = self._done.get(transition_id)
        if done is None:
            raise TransitionRejected(f"unknown transition {transition_id}")
        if not done.wait(timeout):
            return Confirmation(Outcome.TIMEOUT)
        with self._lock:
            return self._results[transition_id]

    def subscribe(self, record_id: str, on_change: OnChange) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(record_id, []).append(on_change)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._subscribers.get(record_id, [])
                if on_change in listeners:
                    listeners.remove(on_change)

        return unsubscribe

    def force_record(self, record_id: str, record: LedgerRecord) -> None:
        """Overwrite an account outside the instruction path (fault injection)."""
        with self._lock:
            self._accounts[record_id] = encode_account(record)
            self._save()
            listeners = list(self._subscribers.get(record_id, ()))
        for listener in listeners:
            listener(record)

    def reload(self) -> list[str]:
        """Re-read the snapshot written by other processes. Returns changed ids."""
        if self.snapshot_path is None:
            return []
        snap = read_json_if_exists(self.snapshot_path) or {}
        fresh = {k: bytes.fromhex(v) for k, v in snap.get("accounts", {}).items()}
        with self._lock:
            changed = [k for k, v in fresh.items() if self._accounts.get(k) != v]
            self._accounts = fresh
            notify = [(k, list(self._subscribers.get(k, ()))) for k in changed]
        for record_id, listeners in notify:
            record = decode_account(fresh[record_id])
            for listener in listeners:
                listener(record)
        return changed

    # -- execution ---------------------------------------------------------

    def _apply(self, signed: SignedInstruction) -> tuple[Confirmation, bool]:
        try:
            caller = signed.verified_signer()
            ix = signed.instruction
            data = self._accounts.get(signed.record_id)
            machine = PrivateStateMachine(decode_account(data) if data is not None else None)
            record = self._execute(machine, caller, ix)
        except PSTError as e:
            log.info("rejected %s on %s: %s", type(e).__name__, signed.record_id[:12], e)
            return Confirmation(Outcome.FAILURE, error=e.to_dict()), False
        except ValueError as e:
            log.info("malformed instruction on %s: %s", signed.record_id[:12], e)
            return Confirmation(Outcome.FAILURE, error={"code": "E_MALFORMED_INSTRUCTION", "detail": str(e)}), False
        mutated = not isinstance(ix, AssertState)
        if mutated:
            self._accounts[signed.record_id] = encode_account(record)
            self._save()
        return Confirmation(Outcome.SUCCESS, record=record), mutated

    @staticmethod
    def _execute(machine: PrivateStateMachine, caller: bytes, ix: Instruction) -> LedgerRecord:
        match ix:
            case Initialize(commitment, policy):
                return machine.initialize(commitment, policy, caller)
            case Update(old_commitment, new_commitment, next_nonce):
                return machine.update(caller, old_commitment, new_commitment, next_nonce)
            case SetPolicy(policy):
                return machine.set_policy(caller, policy)
            case TransferAuthority(new_authority):
                return machine.transfer_authority(caller, new_authority)
            case AssertState(expected_commitment, expected_nonce):
                return machine.assert_state(expected_commitment, expected_nonce)
            case _:
                raise ValueError(f"unsupported instruction {ix!r}")

    def _save(self) -> None:
        if self.snapshot_path is None:
            return
        write_json_atomic(
            self.snapshot_path,
            {"accounts": {k: v.hex() for k, v in sorted(self._accounts.items())}},
        )
