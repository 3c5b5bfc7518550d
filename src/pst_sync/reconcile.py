"""Local reconciliation protocol.

The ledger is the source of truth for versioning. Locally we keep the last
confirmed record (Committed) and at most one staged proposal (Pending).

Proposal:
  1. Committed must exist and no Pending may exist.
  2. The ledger must equal Committed, otherwise nothing is staged.
  3. Decrypt, mutate, re-encrypt, commit at the policy's next nonce.
  4. Pending is written durably BEFORE submission.
  5. Submit and record the transition id into Pending.
  6. Confirmed: Committed is written, then Pending removed.
     Failed, timed out or unconfirmable: Pending removed, nothing promoted.

refresh() derives the sync status and finishes promotions that a process
exit or a concurrent refresh left behind (LANDED_PENDING). A transition abandoned
after a timeout is never promoted later: if it lands, refresh() reports
STALE.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from nacl.signing import SigningKey

from pst_core.envelope import EncryptedPayload, commitment_hash, decrypt, encrypt, pack
from pst_core.errors import (
    CommitmentMismatch,
    ConfirmationTimeout,
    ConsistencyError,
    MissingLocalState,
    PendingExists,
    PSTError,
    StaleLocalState,
    TransitionRejected,
    TransportError,
    UnknownRecord,
)
from pst_core.protocol import COMMITTED_FILE, DEFAULT_CONFIRM_TIMEOUT, PENDING_FILE
from pst_ledger.client import LedgerClient, Outcome, new_record_id
from pst_ledger.codec import Initialize, Instruction, Update
from pst_ledger.crypto import sign_instruction
from pst_ledger.record import LedgerRecord, UpdatePolicy

from .records import CommittedRecord, PendingRecord, utc_now
from .status import SyncStatus, derive_status
from .store import LocalStore

log = logging.getLogger(__name__)

Mutation = Callable[[bytes], bytes]


@dataclass(frozen=True)
class SyncReport:
    status: SyncStatus
    ledger: LedgerRecord
    committed: CommittedRecord
    pending: PendingRecord | None = None
    promoted: bool = False
    policy_synced: bool = False
    late_arrival: bool = False

    def line(self) -> str:
        return (
            f"STATUS: {self.status.value} chain_nonce {self.ledger.nonce} "
            f"chain_commitment {self.ledger.commitment_hex[:12]} policy {self.ledger.policy.label} "
            f"local_nonce {self.committed.nonce} local_commitment {self.committed.commitment.hex()[:12]}"
        )


def _submit_and_confirm(
    client: LedgerClient,
    signing_key: SigningKey,
    record_id: str,
    ix: Instruction,
    timeout: float,
) -> tuple[str, LedgerRecord]:
    transition_id = client.submit(sign_instruction(signing_key, record_id, ix))
    confirmation = client.confirm(transition_id, timeout)
    match confirmation.outcome:
        case Outcome.SUCCESS:
            return transition_id, confirmation.record
        case Outcome.FAILURE:
            raise TransitionRejected(transition_id=transition_id, ledger_error=confirmation.error)
        case Outcome.TIMEOUT:
            raise ConfirmationTimeout(transition_id=transition_id, timeout=timeout)
        case _:
            raise TransportError(f"unexpected outcome {confirmation.outcome!r}")


def bootstrap(
    client: LedgerClient,
    store: LocalStore,
    signing_key: SigningKey,
    key: bytes,
    plaintext: bytes,
    policy: UpdatePolicy = UpdatePolicy.STRICT_SEQUENTIAL,
    timeout: float = DEFAULT_CONFIRM_TIMEOUT,
    record_id: str | None = None,
) -> "Reconciler":
    """Create a ledger record at nonce 0 and the matching local Committed."""
    record_id = record_id or new_record_id()
    sealed = encrypt(key, plaintext)
    initial = commitment_hash(0, sealed.packed)
    _, record = _submit_and_confirm(
        client, signing_key, record_id, Initialize(initial, policy), timeout
    )
    committed = CommittedRecord(
        state_pubkey=record_id,
        nonce=record.nonce,
        commitment=record.commitment,
        policy=record.policy,
        payload=sealed.payload,
    )
    store.write(COMMITTED_FILE, committed.to_json())
    store.remove(PENDING_FILE)
    log.info("initialized %s %s", record_id[:12], record.summary())
    return Reconciler(client, store, record_id)


class Reconciler:
    """Keeps one local cache consistent with one ledger record.

    All reads and writes of the local records happen under one reentrant
    lock, so concurrent refresh() calls cannot promote twice.
    """

    def __init__(self, client: LedgerClient, store: LocalStore, record_id: str | None = None):
        self.client = client
        self.store = store
        self._lock = threading.RLock()
        self._abandoned: set[tuple[int, bytes]] = set()
        self.last_status: SyncStatus | None = None
        if record_id is None:
            record_id = self._require_committed().state_pubkey
        self.record_id = record_id

    # -- local records -----------------------------------------------------

    def committed(self) -> CommittedRecord | None:
        obj = self.store.read(COMMITTED_FILE)
        return CommittedRecord.from_json(obj) if obj is not None else None

    def pending(self) -> PendingRecord | None:
        obj = self.store.read(PENDING_FILE)
        return PendingRecord.from_json(obj) if obj is not None else None

    def _require_committed(self) -> CommittedRecord:
        committed = self.committed()
        if committed is None:
            raise MissingLocalState(COMMITTED_FILE)
        return committed

    def _fetch(self) -> LedgerRecord:
        record = self.client.fetch_record(self.record_id)
        if record is None:
            raise UnknownRecord(record_id=self.record_id)
        return record

    def plaintext(self, key: bytes) -> bytes:
        return decrypt(key, self._require_committed().packed)

    # -- status ------------------------------------------------------------

    def refresh(self) -> SyncReport:
        """Derive the sync status from a fresh ledger read.

        Idempotent; safe to call from any thread.
        """
        with self._lock:
            ledger = self._fetch()
            committed = self._require_committed()
            pending = self.pending()
            status = derive_status(ledger, committed, pending)
            report = SyncReport(status, ledger, committed, pending)

            match status:
                case SyncStatus.LANDED_PENDING:
                    promoted = self._write_promotion(pending, ledger.policy)
                    log.info("promoted pending -> committed nonce=%d", pending.to_nonce)
                    report = SyncReport(status, ledger, promoted, pending, promoted=True)
                case SyncStatus.IN_SYNC | SyncStatus.PENDING:
                    if ledger.policy != committed.policy:
                        synced = committed.with_policy(ledger.policy)
                        self.store.write(COMMITTED_FILE, synced.to_json())
                        log.info("synced policy to chain: %s", ledger.policy.label)
                        report = SyncReport(status, ledger, synced, pending, policy_synced=True)
                case SyncStatus.STALE:
                    late = (ledger.nonce, ledger.commitment) in self._abandoned
                    if late:
                        log.warning(
                            "abandoned transition landed late at nonce=%d; not promoting",
                            ledger.nonce,
                        )
                    log.warning(
                        "local state stale: chain nonce=%d local nonce=%d",
                        ledger.nonce, committed.nonce,
                    )
                    report = SyncReport(status, ledger, committed, pending, late_arrival=late)
                case SyncStatus.DIVERGED:
                    log.error(
                        "local committed nonce=%d is ahead of chain nonce=%d",
                        committed.nonce, ledger.nonce,
                    )
                case _:
                    raise ValueError(f"unhandled status {status!r}")

            if status is not self.last_status:
                log.info("status %s -> %s", getattr(self.last_status, "value", None), status.value)
                self.last_status = status
            return report

    def _write_promotion(self, pending: PendingRecord, policy: UpdatePolicy) -> CommittedRecord:
        # Committed is durable before Pending disappears.
        promoted = pending.promote(policy)
        self.store.write(COMMITTED_FILE, promoted.to_json())
        self.store.remove(PENDING_FILE)
        return promoted

    def _promote(self, staged: PendingRecord, record: LedgerRecord) -> CommittedRecord:
        with self._lock:
            current = self.pending()
            if current is not None and current.target == staged.target:
                return self._write_promotion(current, record.policy)
            committed = self._require_committed()
            # A concurrent refresh() already promoted this transition.
            if (committed.nonce, committed.commitment) == staged.target:
                return committed
            raise ConsistencyError(
                "confirmed transition has no local pending record",
                to_nonce=staged.to_nonce,
            )

    def _discard(self, staged: PendingRecord, abandoned: bool = False) -> None:
        with self._lock:
            current = self.pending()
            if current is not None and current.target == staged.target:
                self.store.remove(PENDING_FILE)
            if abandoned:
                self._abandoned.add(staged.target)

    def _give_up(self, staged: PendingRecord) -> CommittedRecord | None:
        """Abandon an unconfirmed transition unless refresh() already promoted it."""
        with self._lock:
            committed = self._require_committed()
            if (committed.nonce, committed.commitment) == staged.target:
                return committed
            # It may still land; refresh() then reports STALE.
            self._discard(staged, abandoned=True)
            return None

    # -- proposal ----------------------------------------------------------

    def propose(
        self,
        key: bytes,
        signing_key: SigningKey,
        mutate: Mutation,
        timeout: float = DEFAULT_CONFIRM_TIMEOUT,
        skip: int = 0,
    ) -> CommittedRecord:
        """Stage, submit and confirm one transition of the private value."""
        with self._lock:
            committed = self._require_committed()
            existing = self.pending()
            if existing is not None:
                raise PendingExists(to_nonce=existing.to_nonce, transition_id=existing.transition_id)

            ledger = self._fetch()
            status = derive_status(ledger, committed, None)
            if status is SyncStatus.DIVERGED:
                raise ConsistencyError(local_nonce=committed.nonce, chain_nonce=ledger.nonce)
            if status is not SyncStatus.IN_SYNC:
                raise StaleLocalState(
                    chain_nonce=ledger.nonce,
                    chain_commitment=ledger.commitment_hex,
                    local_nonce=committed.nonce,
                    local_commitment=committed.commitment.hex(),
                )
            if ledger.policy != committed.policy:
                committed = committed.with_policy(ledger.policy)
                self.store.write(COMMITTED_FILE, committed.to_json())
                log.info("synced policy to chain: %s", ledger.policy.label)

            next_nonce = ledger.policy.next_nonce(ledger.nonce, skip)
            sealed = encrypt(key, mutate(decrypt(key, committed.packed)))
            staged = PendingRecord(
                state_pubkey=self.record_id,
                from_nonce=ledger.nonce,
                to_nonce=next_nonce,
                old_commitment=ledger.commitment,
                new_commitment=commitment_hash(next_nonce, sealed.packed),
                new_payload=sealed.payload,
                created_at=utc_now(),
            )
            self.store.write(PENDING_FILE, staged.to_json())

        ix = Update(staged.old_commitment, staged.new_commitment, staged.to_nonce)
        try:
            transition_id = self.client.submit(sign_instruction(signing_key, self.record_id, ix))
        except PSTError:
            self._discard(staged)
            raise
        except Exception as e:
            self._discard(staged)
            raise TransportError(str(e)) from e

        with self._lock:
            current = self.pending()
            if current is not None and current.target == staged.target:
                staged = staged.with_transition(transition_id)
                self.store.write(PENDING_FILE, staged.to_json())

        try:
            confirmation = self.client.confirm(transition_id, timeout)
        except PSTError:
            landed = self._give_up(staged)
            if landed is None:
                raise
            return landed
        except Exception as e:
            landed = self._give_up(staged)
            if landed is None:
                raise TransportError(str(e), transition_id=transition_id) from e
            return landed
        match confirmation.outcome:
            case Outcome.SUCCESS:
                committed = self._promote(staged, confirmation.record)
                log.info("COMMITTED nonce=%d tx=%s", committed.nonce, transition_id)
                return committed
            case Outcome.FAILURE:
                self._discard(staged)
                log.warning("update failed policy=%s tx=%s", ledger.policy.label, transition_id)
                raise TransitionRejected(transition_id=transition_id, ledger_error=confirmation.error)
            case Outcome.TIMEOUT:
                landed = self._give_up(staged)
                if landed is not None:
                    return landed
                log.warning("abandoned transition %s after %.1fs", transition_id, timeout)
                raise ConfirmationTimeout(transition_id=transition_id, timeout=timeout)
            case _:
                self._discard(staged)
                raise TransportError(f"unexpected outcome {confirmation.outcome!r}")

    def abandon_pending(self) -> bool:
        """Drop a Pending left behind by a crash, unless it actually landed."""
        with self._lock:
            staged = self.pending()
            if staged is None:
                return False
            report = self.refresh()
            if report.status is SyncStatus.LANDED_PENDING:
                return False
            self._discard(staged, abandoned=True)
            log.warning("abandoned pending transition to nonce=%d", staged.to_nonce)
            return True

    # -- other authority actions -------------------------------------------

    def submit(self, signing_key: SigningKey, ix: Instruction, timeout: float = DEFAULT_CONFIRM_TIMEOUT) -> LedgerRecord:
        """Submit a non-payload instruction (policy, authority, assertion) and refresh."""
        _, record = _submit_and_confirm(self.client, signing_key, self.record_id, ix, timeout)
        self.refresh()
        return record

    def resync(self, payload: EncryptedPayload) -> CommittedRecord:
        """Adopt the ledger's current record given a payload that opens it."""
        with self._lock:
            ledger = self._fetch()
            if commitment_hash(ledger.nonce, pack(payload)) != ledger.commitment:
                raise CommitmentMismatch("payload does not open the current ledger commitment")
            committed = CommittedRecord(
                state_pubkey=self.record_id,
                nonce=ledger.nonce,
                commitment=ledger.commitment,
                policy=ledger.policy,
                payload=payload,
            )
            self.store.write(COMMITTED_FILE, committed.to_json())
            self.store.remove(PENDING_FILE)
            log.info("resynced local state to chain %s", ledger.summary())
            return committed
