import threading

import pytest
from nacl.signing import SigningKey

from pst_core.errors import (
    CommitmentMismatch,
    InvalidPrivateState,
    NonceMismatch,
    TransitionRejected,
)
from pst_ledger.client import InMemoryLedger, Outcome, new_record_id
from pst_ledger.codec import AssertState, Initialize, SetPolicy, Update
from pst_ledger.consumer import GatedCounter
from pst_ledger.crypto import SignedInstruction, sign_instruction
from pst_ledger.record import UpdatePolicy


def c(tag: int) -> bytes:
    return bytes([tag]) * 32


def init(ledger, sk, policy=UpdatePolicy.STRICT_SEQUENTIAL):
    rid = new_record_id()
    tid = ledger.submit(sign_instruction(sk, rid, Initialize(c(1), policy)))
    assert ledger.confirm(tid, 1).ok
    return rid


def test_initialize_and_fetch():
    ledger = InMemoryLedger()
    sk = SigningKey.generate()
    rid = init(ledger, sk)
    rec = ledger.fetch_record(rid)
    assert rec.authority == bytes(sk.verify_key)
    assert (rec.commitment, rec.nonce, rec.policy) == (c(1), 0, UpdatePolicy.STRICT_SEQUENTIAL)
    assert len(ledger.account_data(rid)) == 81
    assert ledger.fetch_record(new_record_id()) is None


def test_rejected_update_reports_failure_without_effect():
    ledger = InMemoryLedger()
    sk = SigningKey.generate()
    rid = init(ledger, sk)
    tid = ledger.submit(sign_instruction(sk, rid, Update(c(9), c(2), 1)))
    conf = ledger.confirm(tid, 1)
    assert conf.outcome is Outcome.FAILURE
    assert conf.error["code"] == CommitmentMismatch.code
    assert ledger.fetch_record(rid).nonce == 0


def test_non_authority_signer_is_rejected():
    ledger = InMemoryLedger()
    rid = init(ledger, SigningKey.generate())
    tid = ledger.submit(sign_instruction(SigningKey.generate(), rid, Update(c(1), c(2), 1)))
    assert ledger.confirm(tid, 1).error["code"] == "E_UNAUTHORIZED"


def test_forged_signature_is_rejected():
    ledger = InMemoryLedger()
    sk = SigningKey.generate()
    rid = init(ledger, sk)
    signed = sign_instruction(SigningKey.generate(), rid, Update(c(1), c(2), 1))
    forged = SignedInstruction(rid, signed.data, bytes(sk.verify_key), signed.signature)
    conf = ledger.confirm(ledger.submit(forged), 1)
    assert conf.error["code"] == "E_SIG_INVALID"


def test_same_prior_commitment_only_one_update_wins():
    ledger = InMemoryLedger(auto_apply=False)
    sk = SigningKey.generate()
    rid = new_record_id()
    ledger.submit(sign_instruction(sk, rid, Initialize(c(1), UpdatePolicy.ALLOW_SKIPS)))
    a = ledger.submit(sign_instruction(sk, rid, Update(c(1), c(2), 1)))
    b = ledger.submit(sign_instruction(sk, rid, Update(c(1), c(3), 2)))
    assert ledger.settle() == 3
    outcomes = {ledger.confirm(a, 0).outcome, ledger.confirm(b, 0).outcome}
    assert outcomes == {Outcome.SUCCESS, Outcome.FAILURE}
    assert ledger.fetch_record(rid).commitment == c(2)


def test_confirm_times_out_until_settled():
    ledger = InMemoryLedger(auto_apply=False)
    sk = SigningKey.generate()
    tid = ledger.submit(sign_instruction(sk, new_record_id(), Initialize(c(1), 0)))
    assert ledger.confirm(tid, 0.01).outcome is Outcome.TIMEOUT
    ledger.settle()
    assert ledger.confirm(tid, 0.01).ok


def test_confirm_wakes_when_settled_from_another_thread():
    ledger = InMemoryLedger(auto_apply=False)
    tid = ledger.submit(sign_instruction(SigningKey.generate(), new_record_id(), Initialize(c(1), 0)))
    t = threading.Timer(0.05, ledger.settle)
    t.start()
    assert ledger.confirm(tid, 5).ok
    t.join()


def test_confirm_unknown_transition():
    with pytest.raises(TransitionRejected):
        InMemoryLedger().confirm("nope", 0)


def test_subscribers_see_mutations_only():
    ledger = InMemoryLedger()
    sk = SigningKey.generate()
    rid = init(ledger, sk)
    seen = []
    unsubscribe = ledger.subscribe(rid, seen.append)
    ledger.submit(sign_instruction(sk, rid, AssertState(c(1), 0)))
    ledger.submit(sign_instruction(sk, rid, Update(c(1), c(2), 1)))
    ledger.submit(sign_instruction(sk, rid, Update(c(9), c(3), 2)))
    assert [r.nonce for r in seen] == [1]
    unsubscribe()
    ledger.submit(sign_instruction(sk, rid, SetPolicy(UpdatePolicy.ALLOW_SKIPS)))
    assert len(seen) == 1


def test_assert_state_instruction_is_read_only():
    ledger = InMemoryLedger()
    sk = SigningKey.generate()
    rid = init(ledger, sk)
    before = ledger.account_data(rid)
    anyone = SigningKey.generate()
    assert ledger.confirm(ledger.submit(sign_instruction(anyone, rid, AssertState(c(1), 0))), 1).ok
    bad = ledger.confirm(ledger.submit(sign_instruction(anyone, rid, AssertState(c(1), 1))), 1)
    assert bad.error["code"] == NonceMismatch.code
    assert ledger.account_data(rid) == before


def test_snapshot_persists_and_reloads(tmp_path):
    path = tmp_path / "ledger.json"
    sk = SigningKey.generate()
    first = InMemoryLedger(snapshot_path=path)
    rid = init(first, sk)
    second = InMemoryLedger(snapshot_path=path)
    assert second.fetch_record(rid) == first.fetch_record(rid)

    seen = []
    second.subscribe(rid, seen.append)
    first.submit(sign_instruction(sk, rid, Update(c(1), c(2), 1)))
    assert second.reload() == [rid]
    assert [r.nonce for r in seen] == [1]
    assert second.reload() == []


def test_gated_counter():
    ledger = InMemoryLedger()
    sk = SigningKey.generate()
    rid = init(ledger, sk)
    consumer = GatedCounter(rid)
    assert consumer.gated_action(ledger, rid, c(1), 0) == 1
    ledger.submit(sign_instruction(sk, rid, Update(c(1), c(2), 1)))
    with pytest.raises(CommitmentMismatch):
        consumer.gated_action(ledger, rid, c(1), 0)
    assert consumer.gated_action(ledger, rid, c(2), 1) == 2
    with pytest.raises(InvalidPrivateState):
        consumer.gated_action(ledger, new_record_id(), c(2), 1)
    assert consumer.count == 2
