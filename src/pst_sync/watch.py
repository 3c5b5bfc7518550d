"""Drive status derivation from ledger and local-file change notifications.

Both sources only enqueue. A single worker thread drains the queue and calls
Reconciler.refresh(), so there is no ordering dependency between sources.
Local notifications are debounced. DIVERGED halts the worker: it needs
manual intervention, never automatic repair. Any other unexpected error,
including one raised by on_report, halts it the same way and is kept in
`error`.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import Callable

from pst_core.errors import ConsistencyError, PSTError
from pst_core.protocol import DEFAULT_DEBOUNCE
from pst_ledger.client import LedgerClient
from pst_ledger.record import LedgerRecord

from .reconcile import Reconciler, SyncReport
from .status import SyncStatus
from .store import LocalStore

log = logging.getLogger(__name__)

_STOP = object()


class Watcher:
    def __init__(
        self,
        reconciler: Reconciler,
        client: LedgerClient | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        on_report: Callable[[SyncReport], None] | None = None,
    ):
        self.reconciler = reconciler
        self.client = client or reconciler.client
        self.debounce = debounce
        self.on_report = on_report
        self.error: Exception | None = None
        self.halted = threading.Event()
        self._queue: queue.Queue = queue.Queue()
        self._timer: threading.Timer | None = None
        self._timer_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def start(self) -> "Watcher":
        self._unsubscribe = self.client.subscribe(self.reconciler.record_id, self.ledger_changed)
        self._thread = threading.Thread(target=self._run, name="pst-watch", daemon=True)
        self._thread.start()
        self._queue.put(("initial", None))
        return self

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._queue.put(_STOP)
        if self._thread is not None:
            self._thread.join(timeout)

    # -- producers ---------------------------------------------------------

    def ledger_changed(self, record: LedgerRecord) -> None:
        # Only a trigger: refresh() reads the ledger itself.
        log.debug("ledger notification nonce=%d", record.nonce)
        self._queue.put(("ledger", None))

    def local_changed(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self._queue.put, args=(("local", None),))
            self._timer.daemon = True
            self._timer.start()

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until everything enqueued so far has been processed."""
        marker = threading.Event()
        self._queue.put(("flush", marker))
        return marker.wait(timeout)

    # -- consumer ----------------------------------------------------------

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            source, arg = item
            if source == "flush":
                arg.set()
                continue
            if self.halted.is_set():
                continue
            try:
                report = self.reconciler.refresh()
            except PSTError as e:
                log.error("refresh after %s change failed: %s", source, e)
                continue
            except Exception as e:
                self._halt(e)
                continue
            if report.status is SyncStatus.DIVERGED:
                self._halt(ConsistencyError(
                    local_nonce=report.committed.nonce, chain_nonce=report.ledger.nonce
                ))
            if self.on_report is not None:
                try:
                    self.on_report(report)
                except Exception as e:
                    self._halt(e)

    def _halt(self, error: Exception) -> None:
        if self.error is None:
            self.error = error
        self.halted.set()
        log.error("reconciliation halted: %s: %s", type(error).__name__, error)


def follow(
    watcher: Watcher,
    store: LocalStore,
    stop: threading.Event,
    interval: float = 0.25,
    reload_ledger: Callable[[], object] | None = None,
) -> None:
    """Poll the local store (and optionally a ledger snapshot) until stop is set."""
    last = store.fingerprint()
    while not stop.wait(interval):
        if reload_ledger is not None:
            reload_ledger()
        current = store.fingerprint()
        if current != last:
            last = current
            watcher.local_changed()
        if watcher.halted.is_set():
            return
