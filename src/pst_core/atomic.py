"""Crash-safe JSON file helpers.

A write goes to a sibling temp file, is flushed and fsynced, then renamed
over the target. Readers see either the old file or the new one, never a
half-written file.
"""
from __future__ import annotations

import json
import os
import secrets
from pathlib import Path


def write_json_atomic(path: Path, obj) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp-{os.getpid()}-{secrets.token_hex(4)}")
    data = json.dumps(obj, indent=2, ensure_ascii=False) + "\n"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def read_json_if_exists(path: Path):
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None


def remove_if_exists(path: Path) -> None:
    Path(path).unlink(missing_ok=True)
