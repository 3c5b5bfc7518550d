"""PST error taxonomy.

Every error carries a stable code from ERRORS so that callers and the CLI
can report failures without parsing messages.
"""
from __future__ import annotations

ERRORS = {
  "E_COMMITMENT_MISMATCH": "Stored commitment does not match the provided commitment",
  "E_NONCE_MISMATCH": "Nonce does not match expected value",
  "E_NONCE_NOT_SEQUENTIAL": "Nonce must increment exactly by one",
  "E_NONCE_NOT_MONOTONIC": "Nonce must be strictly greater than the stored nonce",
  "E_INVALID_POLICY": "Invalid policy; expected 0 (StrictSequential) or 1 (AllowSkips)",
  "E_UNAUTHORIZED": "Caller is not the record authority",
  "E_ALREADY_INITIALIZED": "Record is already initialized",
  "E_NOT_INITIALIZED": "Record is not initialized",
  "E_SIG_INVALID": "Instruction signature invalid",
  "E_AUTH_FAILED": "Payload authentication failed",
  "E_PAYLOAD_MALFORMED": "Payload framing is invalid",
  "E_MALFORMED_INSTRUCTION": "Instruction data could not be decoded",
  "E_TRANSPORT": "Ledger submission failed",
  "E_TX_REJECTED": "Ledger rejected the transition",
  "E_TX_TIMEOUT": "Ledger confirmation timed out",
  "E_UNKNOWN_RECORD": "Ledger has no record with this id",
  "E_DIVERGED": "Local committed state is ahead of the ledger",
  "E_PENDING_EXISTS": "A pending transition already exists",
  "E_LOCAL_STALE": "Local committed state does not match the ledger",
  "E_LOCAL_MISSING": "Local committed state is missing",
  "E_INVALID_PRIVATE_STATE": "Consumer is not linked to this private state",
}


class PSTError(Exception):
    code = "E_PST"

    def __init__(self, detail: str | None = None, **context):
        self.detail = detail
        self.context = context
        message = ERRORS.get(self.code, self.code)
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def to_dict(self) -> dict:
        out = {"code": self.code, "message": ERRORS.get(self.code, self.code)}
        if self.detail:
            out["detail"] = self.detail
        out.update(self.context)
        return out


# Ledger-side validation. Never auto-retried.
class ValidationError(PSTError):
    pass


class CommitmentMismatch(ValidationError):
    code = "E_COMMITMENT_MISMATCH"


class NonceMismatch(ValidationError):
    code = "E_NONCE_MISMATCH"


class InvalidNonce(ValidationError):
    pass


class NonceNotSequential(InvalidNonce):
    code = "E_NONCE_NOT_SEQUENTIAL"


class NonceNotMonotonic(InvalidNonce):
    code = "E_NONCE_NOT_MONOTONIC"


class InvalidPolicy(ValidationError):
    code = "E_INVALID_POLICY"


class Unauthorized(ValidationError):
    code = "E_UNAUTHORIZED"


class AlreadyInitialized(ValidationError):
    code = "E_ALREADY_INITIALIZED"


class NotInitialized(ValidationError):
    code = "E_NOT_INITIALIZED"


class BadSignature(ValidationError):
    code = "E_SIG_INVALID"


class InvalidPrivateState(ValidationError):
    code = "E_INVALID_PRIVATE_STATE"


# Payload integrity. Fatal for that payload.
class AuthenticationError(PSTError):
    code = "E_AUTH_FAILED"


class MalformedPayload(AuthenticationError):
    code = "E_PAYLOAD_MALFORMED"


# Submission/confirmation. Retry after discarding Pending.
class TransportError(PSTError):
    code = "E_TRANSPORT"


class TransitionRejected(TransportError):
    code = "E_TX_REJECTED"


class ConfirmationTimeout(TransportError):
    code = "E_TX_TIMEOUT"


class UnknownRecord(TransportError):
    code = "E_UNKNOWN_RECORD"


# Promote-only-after-confirmation was violated. Requires manual intervention.
class ConsistencyError(PSTError):
    code = "E_DIVERGED"


# Local preconditions of the proposal protocol.
class LocalStateError(PSTError):
    pass


class PendingExists(LocalStateError):
    code = "E_PENDING_EXISTS"


class StaleLocalState(LocalStateError):
    code = "E_LOCAL_STALE"


class MissingLocalState(LocalStateError):
    code = "E_LOCAL_MISSING"
