"""PST protocol constants.

Single source of truth for payload framing, commitment encoding and the
ledger account/instruction layouts. Keep this file stable. The ledger and
every local reconciler must remain synchronized.
"""
import hashlib


def _discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode("ascii")).digest()[:8]


# Encrypted payload framing: [IV(12) | Tag(16) | Ciphertext(n)]
KEY_LEN = 32  # AES-256
IV_LEN = 12
TAG_LEN = 16
PACKED_MIN_LEN = IV_LEN + TAG_LEN

# Commitment: sha256(nonce_u64_le || packed)
COMMITMENT_LEN = 32
NONCE_FMT = "<Q"
NONCE_MAX = 2**64 - 1

# Ledger account: [Discriminator(8) | Authority(32) | Commitment(32) | Nonce(8) | Policy(1)]
ACCOUNT_DISCRIMINATOR = _discriminator("account", "PrivateState")
ACCOUNT_PREFIX_LEN = 8
ACCOUNT_BODY_FMT = "<32s32sQB"
ACCOUNT_BODY_LEN = 73
ACCOUNT_LEN = ACCOUNT_PREFIX_LEN + ACCOUNT_BODY_LEN
AUTHORITY_LEN = 32

# Instruction discriminators
IX_INITIALIZE = _discriminator("global", "initialize")
IX_UPDATE = _discriminator("global", "update")
IX_SET_POLICY = _discriminator("global", "set_policy")
IX_TRANSFER_AUTHORITY = _discriminator("global", "transfer_authority")
IX_ASSERT_STATE = _discriminator("global", "assert_state")

# Policy bytes
POLICY_STRICT_SEQUENTIAL = 0
POLICY_ALLOW_SKIPS = 1

# Local record files
COMMITTED_FILE = "state.committed.json"
PENDING_FILE = "state.pending.json"
RECORD_VERSION = 1

# Debounce window for local file change notifications (seconds)
DEFAULT_DEBOUNCE = 0.08
DEFAULT_CONFIRM_TIMEOUT = 30.0
