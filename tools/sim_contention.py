import json
import threading

from nacl.signing import SigningKey
from nacl.utils import random as random_bytes

from pst_core.errors import ConfirmationTimeout, StaleLocalState
from pst_core.protocol import COMMITTED_FILE
from pst_ledger.client import InMemoryLedger
from pst_sync.reconcile import Reconciler, bootstrap
from pst_sync.store import MemoryStore


def counter(plaintext: bytes) -> int:
    return json.loads(plaintext)["counter"]


def bump(plaintext: bytes) -> bytes:
    return json.dumps({"counter": counter(plaintext) + 1}).encode("utf-8")


def report(name: str, rec: Reconciler) -> str:
    r = rec.refresh()
    line = f"writer={name} {r.status.value} chain_nonce={r.ledger.nonce} local_nonce={r.committed.nonce}"
    print(line)
    return r.status.value


def run_contention(rounds: int) -> list[str]:
    """Two writers share one record; each update makes the other STALE."""
    ledger = InMemoryLedger()
    authority = SigningKey.generate()
    key = random_bytes(32)

    store_a, store_b = MemoryStore(), MemoryStore()
    a = bootstrap(ledger, store_a, authority, key, json.dumps({"counter": 0}).encode("utf-8"))
    store_b.write(COMMITTED_FILE, store_a.read(COMMITTED_FILE))
    b = Reconciler(ledger, store_b, a.record_id)

    seen = []
    writers = [("A", a, b), ("B", b, a)]
    for i in range(rounds):
        name, me, other = writers[i % 2]
        me.propose(key, authority, bump)
        print(f"writer={name} COMMITTED nonce={me.committed().nonce}")
        seen.append(report(name, me))
        other_name = "B" if name == "A" else "A"
        seen.append(report(other_name, other))
        try:
            other.propose(key, authority, bump)
        except StaleLocalState:
            print(f"writer={other_name} LOCAL_STALE")
        # The writers share payloads out of band.
        other.resync(me.committed().payload)
        seen.append(report(other_name, other))
    return seen


def run_late_arrival() -> list[str]:
    """A timed-out transition that lands later is reported STALE, not promoted."""
    ledger = InMemoryLedger(auto_apply=False)
    authority = SigningKey.generate()
    key = random_bytes(32)
    store = MemoryStore()

    # Initialize has to land before we can propose.
    done = threading.Event()

    def settle_until_done():
        while not done.is_set():
            ledger.settle()
            done.wait(0.005)

    t = threading.Thread(target=settle_until_done, daemon=True)
    t.start()
    rec = bootstrap(ledger, store, authority, key, json.dumps({"counter": 0}).encode("utf-8"))
    done.set()
    t.join()

    try:
        rec.propose(key, authority, bump, timeout=0.05)
    except ConfirmationTimeout:
        print("writer=A TIMEOUT pending abandoned")
    ledger.settle()
    return [report("A", rec)]


if __name__ == "__main__":
    import sys

    # Usage:
    #   python tools/sim_contention.py [--rounds N] [--late]

    args = [a for a in sys.argv[1:] if a]

    late = "--late" in args
    args = [a for a in args if a != "--late"]

    rounds = 2
    if "--rounds" in args:
        i = args.index("--rounds")
        if i + 1 >= len(args):
            raise SystemExit("--rounds requires a value")
        rounds = int(args[i + 1])

    if late:
        run_late_arrival()
    else:
        run_contention(rounds)
