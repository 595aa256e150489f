"""Per-user persistence for the pose library, its snapshots and action settings.

Layout::

  user_data/<user_id>/
    pose_library.json
    pose_snapshots.json
    action_settings.json

The three documents are loaded and saved independently.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from utils.file_utils import JsonDocument


class PoseLibraryStore:
    def __init__(self, user_id: str = "default", base_dir: str | Path = "user_data") -> None:
        self.base_dir = Path(base_dir) / user_id
        self.library = JsonDocument(self.base_dir / "pose_library.json")
        self.snapshots = JsonDocument(self.base_dir / "pose_snapshots.json")
        self.settings = JsonDocument(self.base_dir / "action_settings.json")

    def load_library(self) -> Any | None:
        return self.library.load()

    def save_library(self, document: dict[str, Any]) -> bool:
        return self.library.save(document)

    def load_snapshots(self) -> list[Any]:
        data = self.snapshots.load()
        return data if isinstance(data, list) else []

    def save_snapshots(self, snapshots: list[dict[str, Any]]) -> bool:
        return self.snapshots.save(snapshots)

    def load_settings(self) -> dict[str, Any] | None:
        data = self.settings.load()
        return data if isinstance(data, dict) else None

    def save_settings(self, document: dict[str, Any]) -> bool:
        return self.settings.save(document)
