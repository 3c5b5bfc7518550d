"""Local Committed and Pending records and their JSON file formats."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone

from pst_core.envelope import EncryptedPayload, pack
from pst_core.protocol import RECORD_VERSION
from pst_ledger.record import LedgerRecord, UpdatePolicy


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class CommittedRecord:
    """Last ledger record this process has seen confirmed, plus its payload."""

    state_pubkey: str
    nonce: int
    commitment: bytes
    policy: UpdatePolicy
    payload: EncryptedPayload

    @property
    def packed(self) -> bytes:
        return pack(self.payload)

    def matches(self, record: LedgerRecord) -> bool:
        return record.same_version(self.nonce, self.commitment)

    def with_policy(self, policy: UpdatePolicy) -> "CommittedRecord":
        return replace(self, policy=policy)

    def to_json(self) -> dict:
        return {
            "version": RECORD_VERSION,
            "statePubkey": self.state_pubkey,
            "nonce": str(self.nonce),
            "commitmentHex": self.commitment.hex(),
            "policy": int(self.policy),
            "payload": self.payload.to_json(),
        }

    @classmethod
    def from_json(cls, obj: dict) -> "CommittedRecord":
        return cls(
            state_pubkey=obj["statePubkey"],
            nonce=int(obj["nonce"]),
            commitment=bytes.fromhex(obj["commitmentHex"]),
            # Files written before policies existed are strict.
            policy=UpdatePolicy.from_byte(int(obj.get("policy", 0))),
            payload=EncryptedPayload.from_json(obj["payload"]),
        )


@dataclass(frozen=True)
class PendingRecord:
    """A staged transition that has not been confirmed or abandoned yet."""

    state_pubkey: str
    from_nonce: int
    to_nonce: int
    old_commitment: bytes
    new_commitment: bytes
    new_payload: EncryptedPayload
    transition_id: str = ""
    created_at: str = ""

    @property
    def target(self) -> tuple[int, bytes]:
        return (self.to_nonce, self.new_commitment)

    def landed_on(self, record: LedgerRecord) -> bool:
        return record.same_version(self.to_nonce, self.new_commitment)

    def with_transition(self, transition_id: str) -> "PendingRecord":
        return replace(self, transition_id=transition_id)

    def promote(self, policy: UpdatePolicy) -> CommittedRecord:
        return CommittedRecord(
            state_pubkey=self.state_pubkey,
            nonce=self.to_nonce,
            commitment=self.new_commitment,
            policy=policy,
            payload=self.new_payload,
        )

    def to_json(self) -> dict:
        return {
            "version": RECORD_VERSION,
            "statePubkey": self.state_pubkey,
            "fromNonce": str(self.from_nonce),
            "toNonce": str(self.to_nonce),
            "oldCommitmentHex": self.old_commitment.hex(),
            "newCommitmentHex": self.new_commitment.hex(),
            "newPayload": self.new_payload.to_json(),
            "transitionId": self.transition_id,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_json(cls, obj: dict) -> "PendingRecord":
        return cls(
            state_pubkey=obj["statePubkey"],
            from_nonce=int(obj["fromNonce"]),
            to_nonce=int(obj["toNonce"]),
            old_commitment=bytes.fromhex(obj["oldCommitmentHex"]),
            new_commitment=bytes.fromhex(obj["newCommitmentHex"]),
            new_payload=EncryptedPayload.from_json(obj["newPayload"]),
            transition_id=obj.get("transitionId", ""),
            created_at=obj.get("createdAt", ""),
        )
