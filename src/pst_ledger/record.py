"""Ledger record and update policy."""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum

from pst_core.errors import InvalidPolicy, NonceNotMonotonic, NonceNotSequential
from pst_core.protocol import (
    AUTHORITY_LEN,
    COMMITMENT_LEN,
    NONCE_MAX,
    POLICY_ALLOW_SKIPS,
    POLICY_STRICT_SEQUENTIAL,
)


class UpdatePolicy(IntEnum):
    """How far the nonce may advance per accepted transition."""

    STRICT_SEQUENTIAL = POLICY_STRICT_SEQUENTIAL
    ALLOW_SKIPS = POLICY_ALLOW_SKIPS

    @classmethod
    def from_byte(cls, value: int) -> "UpdatePolicy":
        try:
            return cls(value)
        except ValueError:
            raise InvalidPolicy(f"got {value!r}") from None

    @classmethod
    def parse(cls, text: str) -> "UpdatePolicy":
        normalized = text.strip().lower()
        if normalized in ("strict", "strict_sequential", "0"):
            return cls.STRICT_SEQUENTIAL
        if normalized in ("allow_skips", "allow", "skips", "1"):
            return cls.ALLOW_SKIPS
        raise InvalidPolicy(f"got {text!r}")

    @property
    def label(self) -> str:
        match self:
            case UpdatePolicy.STRICT_SEQUENTIAL:
                return "strict"
            case UpdatePolicy.ALLOW_SKIPS:
                return "allow_skips"
            case _:
                raise InvalidPolicy(f"got {int(self)!r}")

    def check_nonce(self, current: int, next_nonce: int) -> None:
        """Raise InvalidNonce unless next_nonce is an allowed successor of current."""
        if not 0 <= next_nonce <= NONCE_MAX:
            raise NonceNotMonotonic(f"{next_nonce} is outside the u64 range")
        match self:
            case UpdatePolicy.STRICT_SEQUENTIAL:
                # No successor exists once the counter is exhausted.
                if current >= NONCE_MAX or next_nonce != current + 1:
                    raise NonceNotSequential(f"current={current} next={next_nonce}")
            case UpdatePolicy.ALLOW_SKIPS:
                if next_nonce <= current:
                    raise NonceNotMonotonic(f"current={current} next={next_nonce}")
            case _:
                raise InvalidPolicy(f"got {int(self)!r}")

    def next_nonce(self, current: int, skip: int = 0) -> int:
        """Successor a well-behaved writer proposes for this policy."""
        if skip < 0:
            raise ValueError("skip must be non-negative")
        match self:
            case UpdatePolicy.STRICT_SEQUENTIAL:
                if skip:
                    raise ValueError("Policy is strict; skip is not allowed.")
                candidate = current + 1
            case UpdatePolicy.ALLOW_SKIPS:
                candidate = current + 1 + skip
            case _:
                raise InvalidPolicy(f"got {int(self)!r}")
        self.check_nonce(current, candidate)
        return candidate


@dataclass(frozen=True)
class LedgerRecord:
    authority: bytes
    commitment: bytes
    nonce: int
    policy: UpdatePolicy

    def __post_init__(self):
        if len(self.authority) != AUTHORITY_LEN:
            raise ValueError(f"authority must be {AUTHORITY_LEN} bytes")
        if len(self.commitment) != COMMITMENT_LEN:
            raise ValueError(f"commitment must be {COMMITMENT_LEN} bytes")
        if not 0 <= self.nonce <= NONCE_MAX:
            raise ValueError(f"nonce out of u64 range: {self.nonce}")

    @property
    def commitment_hex(self) -> str:
        return self.commitment.hex()

    def same_version(self, nonce: int, commitment: bytes) -> bool:
        return self.nonce == nonce and self.commitment == commitment

    def evolve(self, **changes) -> "LedgerRecord":
        return replace(self, **changes)

    def summary(self) -> str:
        return (
            f"nonce={self.nonce} commitment_prefix={self.commitment[:6].hex()} "
            f"policy={self.policy.label}"
        )
