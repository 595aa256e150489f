"""User-trained pose templates: sample banks, snapshot history and matching.

A fixed number of slots each hold an ordered bank of captured samples
(insertion order = recency, oldest evicted first). A candidate hand is scored
against every slot by the mean of its k closest samples, and the best slot
wins only when that score is under ``match_threshold``.

Every mutation persists the library and records a full-state snapshot
(deduplicated against the previous snapshot), so any earlier state can be
restored wholesale.
"""

from __future__ import annotations

import json
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from command_controller.errors import StateValidationError
from gesture_module.features import embedding_distance, extract_features, pair_distance, serialize_landmarks
from gesture_module.library_schema import (
    LIBRARY_VERSION,
    PoseSample,
    PoseSlot,
    build_document,
    migrate_library_document,
    sanitize_label,
)
from gesture_module.library_store import PoseLibraryStore
from gesture_module.types import PoseFeature, PoseMatch, normalize_handedness
from utils.event_bus import Channel
from utils.log_utils import tprint
from utils.settings_store import deep_log

DEFAULT_MATCH_THRESHOLD = 0.13
DEFAULT_MAX_SAMPLES_PER_SLOT = 24
DEFAULT_MAX_SNAPSHOTS = 12
TOP_K = 3
EMBEDDING_WEIGHT = 0.8
PAIR_WEIGHT = 0.2


@dataclass(frozen=True)
class SnapshotSummary:
    id: str
    created_at: int
    reason: str
    labels: tuple[str, ...]
    sample_counts: tuple[int, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "reason": self.reason,
            "labels": list(self.labels),
            "sampleCounts": list(self.sample_counts),
        }


@dataclass
class LibrarySnapshot:
    id: str
    created_at: int
    reason: str
    labels: list[str]
    slots: list[PoseSlot | None]
    signature: str

    def summary(self) -> SnapshotSummary:
        return SnapshotSummary(
            id=self.id,
            created_at=self.created_at,
            reason=self.reason,
            labels=tuple(self.labels),
            sample_counts=tuple(len(slot.samples) if slot else 0 for slot in self.slots),
        )

    def to_dict(self) -> dict[str, Any]:
        doc = build_document(self.labels, self.slots)
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "reason": self.reason,
            "labels": doc["labels"],
            "slots": doc["slots"],
            "signature": self.signature,
        }


@dataclass(frozen=True)
class SampleCaptured:
    slot_index: int
    sample: PoseSample
    sample_count: int


@dataclass(frozen=True)
class LabelUpdated:
    slot_index: int
    label: str
    labels: tuple[str, ...]


@dataclass(frozen=True)
class SlotCleared:
    slot_index: int


@dataclass(frozen=True)
class LibraryCleared:
    max_poses: int


@dataclass(frozen=True)
class StateImported:
    labels: tuple[str, ...]
    sample_counts: tuple[int, ...]


@dataclass(frozen=True)
class SnapshotCreated:
    snapshot: SnapshotSummary
    snapshots: tuple[SnapshotSummary, ...]


@dataclass(frozen=True)
class SnapshotRestored:
    snapshot: SnapshotSummary
    snapshots: tuple[SnapshotSummary, ...]
    labels: tuple[str, ...]


@dataclass
class LibraryEvents:
    sample_captured: Channel[SampleCaptured] = field(default_factory=lambda: Channel("pose.sample_captured"))
    label_updated: Channel[LabelUpdated] = field(default_factory=lambda: Channel("pose.label_updated"))
    slot_cleared: Channel[SlotCleared] = field(default_factory=lambda: Channel("pose.slot_cleared"))
    library_cleared: Channel[LibraryCleared] = field(default_factory=lambda: Channel("pose.library_cleared"))
    state_imported: Channel[StateImported] = field(default_factory=lambda: Channel("pose.state_imported"))
    snapshot_created: Channel[SnapshotCreated] = field(default_factory=lambda: Channel("pose.snapshot_created"))
    snapshot_restored: Channel[SnapshotRestored] = field(
        default_factory=lambda: Channel("pose.snapshot_restored")
    )


def _iso_now(clock: Callable[[], float]) -> str:
    stamp = datetime.fromtimestamp(clock(), tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _hand_feature(hand: Any) -> PoseFeature:
    feature = getattr(hand, "feature", None)
    if isinstance(feature, PoseFeature) and not feature.is_empty:
        return feature
    return extract_features(getattr(hand, "landmarks", None) or [])


class PoseLibrary:
    def __init__(
        self,
        *,
        max_poses: int = 3,
        match_threshold: float = DEFAULT_MATCH_THRESHOLD,
        max_samples_per_slot: int = DEFAULT_MAX_SAMPLES_PER_SLOT,
        max_snapshots: int = DEFAULT_MAX_SNAPSHOTS,
        slot_labels: list[str] | None = None,
        initial_poses: Any = None,
        store: PoseLibraryStore | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.max_poses = max_poses
        self.match_threshold = match_threshold
        self.max_samples_per_slot = max_samples_per_slot
        self.max_snapshots = max_snapshots
        self.store = store
        self.events = LibraryEvents()
        self._clock = clock or time.time

        requested = list(slot_labels or [])
        self._labels = [
            sanitize_label(requested[i] if i < len(requested) else None, f"pose_{i}")
            for i in range(max_poses)
        ]
        self._slots: list[PoseSlot | None] = [None] * max_poses
        self.next_capture_index = 0
        self._snapshots: list[LibrarySnapshot] = []

        restored = self._load()
        if not restored and initial_poses is not None:
            self._apply(migrate_library_document(initial_poses, self.max_poses, self._labels))

        self._load_snapshots()
        self.capture_snapshot("session-restored" if restored else "seeded-defaults", publish=False)

    # -- labels / read access -------------------------------------------------

    def slot_label(self, slot_index: int) -> str:
        if 0 <= slot_index < self.max_poses:
            return self._labels[slot_index]
        return f"pose_{slot_index}"

    def slot_labels(self) -> list[str]:
        return list(self._labels)

    def get_slot(self, slot_index: int) -> PoseSlot | None:
        if not 0 <= slot_index < self.max_poses:
            return None
        slot = self._slots[slot_index]
        return slot.copy() if slot else None

    def list_slots(self) -> list[PoseSlot | None]:
        return [slot.copy() if slot else None for slot in self._slots]

    def sample_counts(self) -> list[int]:
        return [len(slot.samples) if slot else 0 for slot in self._slots]

    def export_state(self) -> dict[str, Any]:
        return build_document(self._labels, self._slots)

    def export_seed(self) -> str:
        """JSON text of the current state, usable as ``initial_poses``."""
        return json.dumps(self.export_state(), indent=2) + "\n"

    # -- mutation -------------------------------------------------------------

    def import_state(
        self,
        raw: Any,
        *,
        publish: bool = True,
        snapshot: bool = True,
        snapshot_reason: str = "imported-state",
    ) -> dict[str, Any]:
        migrated = migrate_library_document(raw, self.max_poses, self._labels)
        if migrated is None:
            raise StateValidationError("Invalid pose state. Expected slots/poses array.")

        self._apply(migrated)
        self._persist()
        if snapshot:
            self.capture_snapshot(snapshot_reason, publish=publish)
        if publish:
            self.events.state_imported.publish(
                StateImported(labels=tuple(self._labels), sample_counts=tuple(self.sample_counts()))
            )
        return self.export_state()

    def choose_capture_slot(self) -> int:
        first_empty = self._first_empty()
        return first_empty if first_empty is not None else self.next_capture_index

    def capture(self, hand: Any, detector_info: dict[str, Any] | None = None) -> PoseSample:
        return self.capture_at(self.choose_capture_slot(), hand, detector_info)

    def capture_at(self, slot_index: int, hand: Any, detector_info: dict[str, Any] | None = None) -> PoseSample:
        """Append a new sample built from ``hand`` to a slot (never overwrites)."""
        if not 0 <= slot_index < self.max_poses:
            raise ValueError(f"Invalid pose slot index: {slot_index}")

        feature = _hand_feature(hand)
        if feature.is_empty:
            raise ValueError("Cannot capture a pose without a confident 21-point hand.")

        label = self._labels[slot_index]
        captured_at = _iso_now(self._clock)
        metrics = getattr(hand, "metrics", None)
        sample = PoseSample(
            sample_id=f"slot-{slot_index}-sample-{uuid.uuid4().hex[:12]}",
            slot_index=slot_index,
            label=label,
            captured_at=captured_at,
            handedness=normalize_handedness(getattr(hand, "handedness", None)),
            raw_landmarks=tuple(serialize_landmarks(hand.landmarks)),
            feature=feature,
            handedness_score=round(float(getattr(hand, "score", 0.0) or 0.0), 4),
            detector_info=dict(detector_info) if detector_info else None,
            classifier_metrics=dict(metrics) if isinstance(metrics, dict) else None,
        )

        slot = self._slots[slot_index] or PoseSlot(slot_index, label, [], captured_at)
        slot.label = label
        slot.samples.append(sample)
        if len(slot.samples) > self.max_samples_per_slot:
            del slot.samples[: len(slot.samples) - self.max_samples_per_slot]
        slot.updated_at = captured_at
        self._slots[slot_index] = slot

        first_empty = self._first_empty()
        self.next_capture_index = first_empty if first_empty is not None else (slot_index + 1) % self.max_poses

        self._persist()
        self.capture_snapshot(f"captured-slot-{slot_index}")
        self.events.sample_captured.publish(
            SampleCaptured(slot_index=slot_index, sample=sample, sample_count=len(slot.samples))
        )
        return sample

    def set_slot_label(self, slot_index: int, label: Any) -> str | None:
        """Rename a slot; its stored samples are relabeled in place."""
        if not 0 <= slot_index < self.max_poses:
            return None

        next_label = sanitize_label(label, self._labels[slot_index])
        self._labels[slot_index] = next_label
        slot = self._slots[slot_index]
        if slot:
            slot.label = next_label
            slot.samples = [sample.relabeled(slot_index, next_label) for sample in slot.samples]

        self._persist()
        self.capture_snapshot(f"renamed-slot-{slot_index}")
        self.events.label_updated.publish(
            LabelUpdated(slot_index=slot_index, label=next_label, labels=tuple(self._labels))
        )
        return next_label

    def clear_slot(self, slot_index: int) -> None:
        if not 0 <= slot_index < self.max_poses:
            return
        self._slots[slot_index] = None
        self.next_capture_index = self._first_empty() or 0
        self._persist()
        self.capture_snapshot(f"cleared-slot-{slot_index}")
        self.events.slot_cleared.publish(SlotCleared(slot_index=slot_index))

    def clear_all(self) -> None:
        self._slots = [None] * self.max_poses
        self.next_capture_index = 0
        self._persist()
        self.capture_snapshot("cleared-all-slots")
        self.events.library_cleared.publish(LibraryCleared(max_poses=self.max_poses))

    # -- snapshots ------------------------------------------------------------

    def capture_snapshot(self, reason: str = "saved", *, publish: bool = True, force: bool = False) -> str:
        """Record the full current state unless it equals the latest snapshot."""
        state = self.export_state()
        signature = self._signature(state)
        if not force and self._snapshots and self._snapshots[-1].signature == signature:
            return self._snapshots[-1].id

        created_at = int(self._clock() * 1000)
        snapshot = LibrarySnapshot(
            id=f"snapshot-{created_at}-{uuid.uuid4().hex[:6]}",
            created_at=created_at,
            reason=reason,
            labels=list(self._labels),
            slots=[slot.copy() if slot else None for slot in self._slots],
            signature=signature,
        )
        self._snapshots.append(snapshot)
        if len(self._snapshots) > self.max_snapshots:
            del self._snapshots[: len(self._snapshots) - self.max_snapshots]

        self._persist_snapshots()
        deep_log(f"[DEEP][POSES] snapshot {snapshot.id} reason={reason}")
        if publish:
            self.events.snapshot_created.publish(
                SnapshotCreated(snapshot=snapshot.summary(), snapshots=tuple(self.list_snapshots()))
            )
        return snapshot.id

    def list_snapshots(self) -> list[SnapshotSummary]:
        return [snapshot.summary() for snapshot in self._snapshots]

    def restore_snapshot(self, snapshot_id: str) -> bool:
        """Replace the whole library state with a stored snapshot."""
        selected = next((s for s in self._snapshots if s.id == snapshot_id), None)
        if selected is None:
            return False

        self.import_state(
            build_document(selected.labels, selected.slots),
            publish=False,
            snapshot=True,
            snapshot_reason=f"restored:{selected.id}",
        )
        self.events.snapshot_restored.publish(
            SnapshotRestored(
                snapshot=selected.summary(),
                snapshots=tuple(self.list_snapshots()),
                labels=tuple(self._labels),
            )
        )
        return True

    # -- matching -------------------------------------------------------------

    def match_hand(self, hand: Any) -> PoseMatch | None:
        return self.match_feature(_hand_feature(hand))

    def match_feature(self, feature: PoseFeature) -> PoseMatch | None:
        """Score every trained slot by its top-k mean sample distance."""
        if feature.is_empty:
            return None

        best: tuple[float, PoseSlot, int, float, float, float] | None = None
        for slot in self._slots:
            if not slot or not slot.samples:
                continue

            scored: list[tuple[float, int, float, float]] = []
            for index, sample in enumerate(slot.samples):
                vector = embedding_distance(feature.embedding, sample.feature.embedding)
                pairs = pair_distance(feature.pair_distances, sample.feature.pair_distances)
                if not math.isfinite(vector) or not math.isfinite(pairs):
                    continue
                scored.append((EMBEDDING_WEIGHT * vector + PAIR_WEIGHT * pairs, index, vector, pairs))

            if not scored:
                continue

            scored.sort(key=lambda item: item[0])
            k = min(TOP_K, len(scored))
            slot_distance = sum(item[0] for item in scored[:k]) / k
            if best is None or slot_distance < best[0]:
                _, index, vector, pairs = scored[0]
                best = (slot_distance, slot, index, vector, pairs, slot_distance)

        if best is None or best[0] > self.match_threshold:
            return None

        slot_distance, slot, index, vector, pairs, _ = best
        return PoseMatch(
            slot_index=slot.slot_index,
            label=slot.label,
            distance=round(slot_distance, 5),
            sample_count=len(slot.samples),
            source="template-samples",
            vector_distance=round(vector, 5),
            pair_distance=round(pairs, 5),
            matched_sample_id=slot.samples[index].sample_id,
            matched_sample_index=index,
        )

    # -- internals ------------------------------------------------------------

    def _first_empty(self) -> int | None:
        for index, slot in enumerate(self._slots):
            if not slot or not slot.samples:
                return index
        return None

    def _apply(self, migrated: tuple[list[str], list[PoseSlot | None]] | None) -> None:
        if migrated is None:
            return
        self._labels, self._slots = migrated
        self.next_capture_index = self._first_empty() or 0

    @staticmethod
    def _signature(state: dict[str, Any]) -> str:
        return json.dumps(state, sort_keys=True)

    def _load(self) -> bool:
        if self.store is None:
            return False
        migrated = migrate_library_document(self.store.load_library(), self.max_poses, self._labels)
        if migrated is None:
            return False
        self._apply(migrated)
        return True

    def _persist(self) -> None:
        if self.store is not None:
            self.store.save_library(self.export_state())

    def _load_snapshots(self) -> None:
        if self.store is None:
            return
        loaded: list[LibrarySnapshot] = []
        for entry in self.store.load_snapshots():
            snapshot = self._snapshot_from_raw(entry)
            if snapshot is not None:
                loaded.append(snapshot)
        self._snapshots = loaded[-self.max_snapshots :]
        if loaded:
            tprint(f"[POSES] Loaded {len(self._snapshots)} library snapshots")

    def _snapshot_from_raw(self, entry: Any) -> LibrarySnapshot | None:
        if not isinstance(entry, dict):
            return None
        migrated = migrate_library_document(entry, self.max_poses, self._labels)
        if migrated is None:
            return None
        labels, slots = migrated
        try:
            created_at = int(entry.get("createdAt"))
        except (TypeError, ValueError):
            created_at = int(self._clock() * 1000)
        raw_id = entry.get("id")
        return LibrarySnapshot(
            id=raw_id.strip() if isinstance(raw_id, str) and raw_id.strip() else f"snapshot-{created_at}",
            created_at=created_at,
            reason=entry.get("reason") if isinstance(entry.get("reason"), str) else "saved",
            labels=labels,
            slots=slots,
            signature=self._signature(build_document(labels, slots)),
        )

    def _persist_snapshots(self) -> None:
        if self.store is not None:
            self.store.save_snapshots([snapshot.to_dict() for snapshot in self._snapshots])


__all__ = [
    "LIBRARY_VERSION",
    "LibraryEvents",
    "LibrarySnapshot",
    "PoseLibrary",
    "SnapshotSummary",
    "StateValidationError",
]
