"""Safe loading/saving helpers for the persisted JSON documents."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from utils.log_utils import tprint


def load_json(path: str | Path) -> dict:
    p = Path(path)
    if not p.exists():
        return {}
    return json.loads(p.read_text())


def save_json(path: str | Path, data: Any) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2))
    os.replace(tmp, p)


class JsonDocument:
    """One independently loadable/saveable JSON document on disk.

    Reads never raise: a missing, unreadable or unparsable file loads as None.
    Writes never raise either; a failed write is logged and reported as False
    so in-memory state stays authoritative for the process lifetime.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Any | None:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            tprint(f"[STORAGE][WARN] Could not read {self.path.name}: {exc}")
            return None

    def save(self, data: Any) -> bool:
        try:
            save_json(self.path, data)
        except (OSError, TypeError, ValueError) as exc:
            tprint(f"[STORAGE][WARN] Could not write {self.path.name}: {exc}")
            return False
        return True
