"""Local record storage.

Every store honours the same contract: write() replaces a record
atomically, so a crash leaves either the previous record or the new one.
"""
from __future__ import annotations

import copy
import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from pst_core.atomic import read_json_if_exists, remove_if_exists, write_json_atomic


class LocalStore(ABC):
    @abstractmethod
    def read(self, name: str) -> dict | None: ...

    @abstractmethod
    def write(self, name: str, obj: dict) -> None: ...

    @abstractmethod
    def remove(self, name: str) -> None: ...

    @abstractmethod
    def fingerprint(self) -> tuple:
        """Cheap value that changes whenever any record changes."""


class FileStore(LocalStore):
    """JSON files under one directory, replaced via temp file + rename."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path(self, name: str) -> Path:
        return self.root / name

    def read(self, name: str) -> dict | None:
        return read_json_if_exists(self.path(name))

    def write(self, name: str, obj: dict) -> None:
        write_json_atomic(self.path(name), obj)

    def remove(self, name: str) -> None:
        remove_if_exists(self.path(name))

    def fingerprint(self) -> tuple:
        if not self.root.exists():
            return ()
        out = []
        for p in sorted(self.root.glob("*.json")):
            st = p.stat()
            out.append((p.name, st.st_mtime_ns, st.st_size))
        return tuple(out)


class MemoryStore(LocalStore):
    """In-memory store for tests. Records are copied in and out."""

    def __init__(self):
        self._records: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._version = 0
        self.writes: list[str] = []

    def read(self, name: str) -> dict | None:
        with self._lock:
            obj = self._records.get(name)
            return copy.deepcopy(obj) if obj is not None else None

    def write(self, name: str, obj: dict) -> None:
        # Round-trip through JSON so that only serializable records are accepted.
        data = json.loads(json.dumps(obj))
        with self._lock:
            self._records[name] = data
            self._version += 1
            self.writes.append(name)

    def remove(self, name: str) -> None:
        with self._lock:
            if self._records.pop(name, None) is not None:
                self._version += 1

    def fingerprint(self) -> tuple:
        with self._lock:
            return (self._version,)
