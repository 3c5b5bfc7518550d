import json
import os

import pytest
from nacl.signing import SigningKey

from pst_ledger.client import InMemoryLedger
from pst_sync.reconcile import bootstrap
from pst_sync.store import MemoryStore


def counter_bytes(n: int) -> bytes:
    return json.dumps({"counter": n}).encode("utf-8")


def bump(plaintext: bytes) -> bytes:
    return counter_bytes(json.loads(plaintext)["counter"] + 1)


@pytest.fixture
def authority():
    return SigningKey.generate()


@pytest.fixture
def key():
    return os.urandom(32)


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_record(ledger, store, authority, key):
    """Bootstrap a counter record and advance it to the requested nonce."""

    def _make(nonce: int = 0, **kwargs):
        rec = bootstrap(ledger, store, authority, key, counter_bytes(0), **kwargs)
        for _ in range(nonce):
            rec.propose(key, authority, bump)
        return rec

    return _make
