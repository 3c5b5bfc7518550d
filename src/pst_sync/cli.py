"""PST demo CLI - private counter kept off-ledger, committed on-ledger."""
from __future__ import annotations

import base64
import functools
import json
import logging
import threading
from pathlib import Path

import click
from nacl.signing import SigningKey
from nacl.utils import random as random_bytes

from pst_core.atomic import read_json_if_exists, write_json_atomic
from pst_core.envelope import EncryptedPayload
from pst_core.errors import PendingExists, PSTError, StaleLocalState
from pst_core.protocol import DEFAULT_CONFIRM_TIMEOUT, KEY_LEN
from pst_ledger.client import InMemoryLedger
from pst_ledger.codec import AssertState, SetPolicy, TransferAuthority
from pst_ledger.record import UpdatePolicy

from .reconcile import Reconciler, bootstrap
from .store import FileStore
from .watch import Watcher, follow

LEDGER_FILE = "ledger.json"
STATE_DIR = "state"
DEMO_KEY_FILE = "demo-key.json"
AUTHORITY_FILE = "authority.key"


class Home:
    """Paths and collaborators rooted at one working directory."""

    def __init__(self, root: Path, timeout: float):
        self.root = root
        self.timeout = timeout
        self.ledger = InMemoryLedger(snapshot_path=root / LEDGER_FILE)
        self.store = FileStore(root / STATE_DIR)

    def reconciler(self) -> Reconciler:
        return Reconciler(self.ledger, self.store)

    def authority(self, create: bool = False) -> SigningKey:
        path = self.root / AUTHORITY_FILE
        if not path.exists():
            if not create:
                raise click.ClickException(f"Missing {AUTHORITY_FILE}. Run init first.")
            sk = SigningKey.generate()
            path.write_text(bytes(sk).hex() + "\n", encoding="utf-8")
            return sk
        return SigningKey(bytes.fromhex(path.read_text(encoding="utf-8").strip()))

    def key(self, required: bool = True) -> bytes | None:
        obj = read_json_if_exists(self.root / DEMO_KEY_FILE)
        if obj is None:
            if required:
                raise click.ClickException(f"Missing {DEMO_KEY_FILE}.")
            return None
        return base64.b64decode(obj["keyBase64"])

    def write_key(self, key: bytes) -> None:
        write_json_atomic(
            self.root / DEMO_KEY_FILE,
            {"version": 1, "keyBase64": base64.b64encode(key).decode("ascii")},
        )


def fail_closed(fn):
    """Report PST errors as a single FATAL line and exit 1."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except PSTError as e:
            click.echo(f"FATAL: {e.code}: {e}")
            raise SystemExit(1)

    return wrapper


def _counter(plaintext: bytes) -> int:
    return int(json.loads(plaintext.decode("utf-8"))["counter"])


def _encode_counter(value: int) -> bytes:
    return json.dumps({"counter": value}, sort_keys=True, separators=(",", ":")).encode("utf-8")


@click.group()
@click.option("--home", type=click.Path(file_okay=False, path_type=Path), default=".",
              envvar="PST_HOME", show_default=True, help="Directory holding ledger and local state")
@click.option("--timeout", type=float, default=DEFAULT_CONFIRM_TIMEOUT, envvar="PST_TIMEOUT",
              show_default=True, help="Confirmation timeout in seconds")
@click.option("--verbose", is_flag=True, help="Log protocol events to stderr")
@click.pass_context
def main(ctx: click.Context, home: Path, timeout: float, verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    home.mkdir(parents=True, exist_ok=True)
    ctx.obj = Home(home, timeout)


@main.command("init")
@click.option("--policy", default="strict", show_default=True, help="strict or allow_skips")
@click.option("--counter", type=int, default=0, show_default=True)
@click.pass_obj
@fail_closed
def init_cmd(home: Home, policy: str, counter: int) -> None:
    """Create a private counter record."""
    authority = home.authority(create=True)
    key = home.key(required=False)
    if key is None:
        key = random_bytes(KEY_LEN)
        home.write_key(key)
    rec = bootstrap(
        home.ledger, home.store, authority, key, _encode_counter(counter),
        policy=UpdatePolicy.parse(policy), timeout=home.timeout,
    )
    click.echo("Initialized Private State")
    click.echo(f"State account: {rec.record_id}")
    click.echo(f"Saved: {home.store.root}")


@main.command("inc")
@click.option("--skip", type=int, default=0, show_default=True, help="Extra nonce skip (allow_skips only)")
@click.pass_obj
@fail_closed
def inc_cmd(home: Home, skip: int) -> None:
    """Increment the private counter by one."""
    rec = home.reconciler()
    try:
        committed = rec.propose(
            home.key(), home.authority(),
            lambda p: _encode_counter(_counter(p) + 1),
            timeout=home.timeout, skip=skip,
        )
    except PendingExists:
        click.echo("PENDING_EXISTS")
        click.echo("Resolve state.pending.json before creating a new update.")
        raise SystemExit(1)
    except StaleLocalState as e:
        click.echo("LOCAL_STALE")
        for k in ("chain_nonce", "chain_commitment", "local_nonce", "local_commitment"):
            click.echo(f"  {k}: {e.context[k]}")
        click.echo("Resolve by syncing local state or re-running init.")
        raise SystemExit(1)
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(f"COMMITTED nonce={committed.nonce}")
    click.echo(f"Counter: {_counter(rec.plaintext(home.key()))}")


def _echo_report(home: Home, rec: Reconciler, report, decrypt: bool) -> None:
    click.echo(report.line())
    if report.promoted:
        click.echo("PROMOTED pending -> committed")
    if report.policy_synced:
        click.echo("SYNCED policy to chain")
    key = home.key(required=False) if decrypt else None
    if key is not None:
        click.echo(f"Decrypted counter: {_counter(rec.plaintext(key))}")


@main.command("status")
@click.option("--no-decrypt", is_flag=True, help="Observer mode: never touch the key")
@click.pass_obj
@fail_closed
def status_cmd(home: Home, no_decrypt: bool) -> None:
    """Print the sync status once."""
    rec = home.reconciler()
    _echo_report(home, rec, rec.refresh(), not no_decrypt)


@main.command("abandon")
@click.pass_obj
@fail_closed
def abandon_cmd(home: Home) -> None:
    """Discard a pending transition that never landed."""
    if home.reconciler().abandon_pending():
        click.echo("ABANDONED pending")
    else:
        click.echo("NOTHING to abandon")


@main.command("watch")
@click.option("--interval", type=float, default=0.25, show_default=True)
@click.option("--no-decrypt", is_flag=True)
@click.pass_obj
@fail_closed
def watch_cmd(home: Home, interval: float, no_decrypt: bool) -> None:
    """Follow ledger and local changes until interrupted."""
    rec = home.reconciler()
    watcher = Watcher(rec, on_report=lambda r: _echo_report(home, rec, r, not no_decrypt))
    stop = threading.Event()
    click.echo("Watching on-chain updates...")
    watcher.start()
    try:
        follow(watcher, home.store, stop, interval, reload_ledger=home.ledger.reload)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()
    if watcher.error is not None:
        raise watcher.error


@main.command("set-policy")
@click.argument("policy")
@click.pass_obj
@fail_closed
def set_policy_cmd(home: Home, policy: str) -> None:
    rec = home.reconciler()
    record = rec.submit(home.authority(), SetPolicy(UpdatePolicy.parse(policy)), home.timeout)
    click.echo(f"policy: {record.policy.label}")


@main.command("transfer")
@click.argument("new_authority")
@click.pass_obj
@fail_closed
def transfer_cmd(home: Home, new_authority: str) -> None:
    """Hand the record to another Ed25519 public key (hex)."""
    rec = home.reconciler()
    record = rec.submit(home.authority(), TransferAuthority(bytes.fromhex(new_authority)), home.timeout)
    click.echo(f"authority: {record.authority.hex()}")


@main.command("assert")
@click.option("--commitment", "commitment_hex", default=None, help="Expected commitment (hex)")
@click.option("--nonce", type=int, default=None, help="Expected nonce")
@click.pass_obj
@fail_closed
def assert_cmd(home: Home, commitment_hex: str | None, nonce: int | None) -> None:
    """Assert the ledger record is at the expected version (defaults to local Committed)."""
    rec = home.reconciler()
    committed = rec.committed()
    expected_commitment = bytes.fromhex(commitment_hex) if commitment_hex else committed.commitment
    expected_nonce = committed.nonce if nonce is None else nonce
    # Any caller may assert; observers hold no authority key.
    rec.submit(SigningKey.generate(), AssertState(expected_commitment, expected_nonce), home.timeout)
    click.echo(f"ASSERT_OK nonce={expected_nonce}")


@main.command("resync")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
@fail_closed
def resync_cmd(home: Home, payload_file: Path) -> None:
    """Adopt the ledger's current version given its payload {ivHex, tagHex, ciphertextHex}."""
    payload = EncryptedPayload.from_json(json.loads(payload_file.read_text(encoding="utf-8")))
    committed = home.reconciler().resync(payload)
    click.echo(f"RESYNCED nonce={committed.nonce}")


if __name__ == "__main__":
    main()
