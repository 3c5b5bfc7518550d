import os

import pytest

from pst_core.errors import (
    AlreadyInitialized,
    CommitmentMismatch,
    InvalidNonce,
    InvalidPolicy,
    NonceMismatch,
    NonceNotMonotonic,
    NonceNotSequential,
    NotInitialized,
    Unauthorized,
)
from pst_core.protocol import NONCE_MAX
from pst_ledger.assertion import require_state, state_matches
from pst_ledger.record import LedgerRecord, UpdatePolicy
from pst_ledger.state import ACTIVE, UNINITIALIZED, PrivateStateMachine

AUTH = b"\x11" * 32
OTHER = b"\x22" * 32


def c(tag: int) -> bytes:
    return bytes([tag]) * 32


def active(policy=UpdatePolicy.STRICT_SEQUENTIAL, nonce=0) -> PrivateStateMachine:
    return PrivateStateMachine(LedgerRecord(AUTH, c(1), nonce, policy))


def test_initialize_sets_nonce_zero():
    m = PrivateStateMachine()
    assert m.state == UNINITIALIZED
    rec = m.initialize(c(1), 1, AUTH)
    assert m.state == ACTIVE
    assert rec == LedgerRecord(AUTH, c(1), 0, UpdatePolicy.ALLOW_SKIPS)


def test_initialize_twice_fails():
    m = PrivateStateMachine()
    m.initialize(c(1), 0, AUTH)
    with pytest.raises(AlreadyInitialized):
        m.initialize(c(2), 0, AUTH)
    assert m.record.commitment == c(1)


def test_initialize_rejects_unknown_policy():
    m = PrivateStateMachine()
    with pytest.raises(InvalidPolicy):
        m.initialize(c(1), 2, AUTH)
    assert m.state == UNINITIALIZED


def test_operations_require_initialization():
    m = PrivateStateMachine()
    with pytest.raises(NotInitialized):
        m.update(AUTH, c(1), c(2), 1)
    with pytest.raises(NotInitialized):
        m.assert_state(c(1), 0)


def test_strict_sequential_accepts_only_plus_one():
    for nxt in (0, 2, 3, 100):
        m = active(nonce=0)
        with pytest.raises(NonceNotSequential):
            m.update(AUTH, c(1), c(2), nxt)
        assert m.record.nonce == 0
        assert m.record.commitment == c(1)
    m = active(nonce=0)
    rec = m.update(AUTH, c(1), c(2), 1)
    assert (rec.nonce, rec.commitment) == (1, c(2))


def test_allow_skips_requires_strictly_greater():
    for nxt in (0, 4, 5):
        m = active(UpdatePolicy.ALLOW_SKIPS, nonce=5)
        with pytest.raises(NonceNotMonotonic):
            m.update(AUTH, c(1), c(2), nxt)
        assert m.record.nonce == 5
    for nxt in (6, 7, 1000, NONCE_MAX):
        m = active(UpdatePolicy.ALLOW_SKIPS, nonce=5)
        assert m.update(AUTH, c(1), c(2), nxt).nonce == nxt


def test_invalid_nonce_is_one_family():
    m = active(nonce=3)
    with pytest.raises(InvalidNonce):
        m.update(AUTH, c(1), c(2), 3)


def test_strict_at_counter_end_has_no_successor():
    m = active(nonce=NONCE_MAX)
    with pytest.raises(NonceNotSequential):
        m.update(AUTH, c(1), c(2), NONCE_MAX)


def test_update_rejects_wrong_old_commitment_regardless_of_nonce():
    for policy, nxt in ((UpdatePolicy.STRICT_SEQUENTIAL, 1), (UpdatePolicy.ALLOW_SKIPS, 9)):
        m = active(policy)
        with pytest.raises(CommitmentMismatch):
            m.update(AUTH, c(9), c(2), nxt)
        assert m.record == LedgerRecord(AUTH, c(1), 0, policy)


def test_update_requires_authority():
    m = active()
    with pytest.raises(Unauthorized):
        m.update(OTHER, c(1), c(2), 1)
    assert m.record.nonce == 0


def test_set_policy_replaces_policy_only():
    m = active(nonce=4)
    rec = m.set_policy(AUTH, 1)
    assert rec == LedgerRecord(AUTH, c(1), 4, UpdatePolicy.ALLOW_SKIPS)
    with pytest.raises(Unauthorized):
        m.set_policy(OTHER, 0)
    with pytest.raises(InvalidPolicy):
        m.set_policy(AUTH, 7)
    assert m.record.policy is UpdatePolicy.ALLOW_SKIPS


def test_policy_change_changes_nonce_rule():
    m = active(nonce=0)
    m.set_policy(AUTH, UpdatePolicy.ALLOW_SKIPS)
    m.update(AUTH, c(1), c(2), 10)
    m.set_policy(AUTH, UpdatePolicy.STRICT_SEQUENTIAL)
    with pytest.raises(NonceNotSequential):
        m.update(AUTH, c(2), c(3), 12)
    assert m.update(AUTH, c(2), c(3), 11).nonce == 11


def test_transfer_authority():
    m = active()
    with pytest.raises(Unauthorized):
        m.transfer_authority(OTHER, OTHER)
    m.transfer_authority(AUTH, OTHER)
    assert m.record.authority == OTHER
    with pytest.raises(Unauthorized):
        m.update(AUTH, c(1), c(2), 1)
    assert m.update(OTHER, c(1), c(2), 1).nonce == 1


def test_assert_state_never_mutates():
    m = active(nonce=3)
    before = m.record
    assert m.assert_state(c(1), 3) == before
    with pytest.raises(CommitmentMismatch):
        m.assert_state(c(2), 3)
    with pytest.raises(NonceMismatch):
        m.assert_state(c(1), 4)
    assert m.record == before


def test_assertion_predicate_is_pure():
    rec = LedgerRecord(AUTH, c(1), 2, UpdatePolicy.STRICT_SEQUENTIAL)
    assert state_matches(rec, c(1), 2)
    assert not state_matches(rec, c(1), 3)
    assert not state_matches(rec, c(3), 2)
    for _ in range(3):
        require_state(rec, c(1), 2)
    assert rec == LedgerRecord(AUTH, c(1), 2, UpdatePolicy.STRICT_SEQUENTIAL)


def test_policy_next_nonce():
    assert UpdatePolicy.STRICT_SEQUENTIAL.next_nonce(5) == 6
    assert UpdatePolicy.ALLOW_SKIPS.next_nonce(5, skip=3) == 9
    with pytest.raises(ValueError):
        UpdatePolicy.STRICT_SEQUENTIAL.next_nonce(5, skip=1)


def test_policy_parse_and_labels():
    assert UpdatePolicy.parse("strict") is UpdatePolicy.STRICT_SEQUENTIAL
    assert UpdatePolicy.parse("Allow_Skips") is UpdatePolicy.ALLOW_SKIPS
    assert UpdatePolicy.ALLOW_SKIPS.label == "allow_skips"
    with pytest.raises(InvalidPolicy):
        UpdatePolicy.parse("loose")


def test_record_validates_field_widths():
    with pytest.raises(ValueError):
        LedgerRecord(b"\x00" * 31, c(1), 0, UpdatePolicy.STRICT_SEQUENTIAL)
    with pytest.raises(ValueError):
        LedgerRecord(AUTH, os.urandom(16), 0, UpdatePolicy.STRICT_SEQUENTIAL)
