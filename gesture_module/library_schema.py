"""Persisted pose-library schema and migration from older document shapes.

Current document (version 2)::

    {"version": 2, "labels": [...], "slots": [null | {slotIndex, label, samples, updatedAt}]}

Older shapes still accepted on load/import:
  * a bare list of slots (version 1),
  * ``{"poses": [...]}`` instead of ``"slots"``,
  * a slot holding one sample directly instead of ``{"samples": [...]}``,
  * samples keeping their features under ``"estimation"`` instead of ``"feature"``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from gesture_module.features import feature_from_dict
from gesture_module.types import PoseFeature, normalize_handedness

LIBRARY_VERSION = 2


def sanitize_label(value: Any, fallback: str) -> str:
    text = str(value if value is not None else "").strip()
    return text or fallback


@dataclass(frozen=True)
class PoseSample:
    sample_id: str
    slot_index: int
    label: str
    captured_at: str
    handedness: str
    raw_landmarks: tuple[dict[str, float], ...]
    feature: PoseFeature
    handedness_score: float = 0.0
    detector_info: dict[str, Any] | None = None
    classifier_metrics: dict[str, Any] | None = None

    def relabeled(self, slot_index: int, label: str) -> "PoseSample":
        return replace(self, slot_index=slot_index, label=label)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sampleId": self.sample_id,
            "slotIndex": self.slot_index,
            "label": self.label,
            "capturedAt": self.captured_at,
            "handedness": self.handedness,
            "handednessScore": self.handedness_score,
            "rawLandmarks": [dict(p) for p in self.raw_landmarks],
            "feature": self.feature.to_dict(),
            "classifierMetrics": self.classifier_metrics,
            "detectorInfo": dict(self.detector_info) if self.detector_info else None,
        }


@dataclass
class PoseSlot:
    slot_index: int
    label: str
    samples: list[PoseSample] = field(default_factory=list)
    updated_at: str = ""

    def copy(self) -> "PoseSlot":
        return PoseSlot(self.slot_index, self.label, list(self.samples), self.updated_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "slotIndex": self.slot_index,
            "label": self.label,
            "samples": [s.to_dict() for s in self.samples],
            "updatedAt": self.updated_at,
        }


def sample_from_raw(raw: Any, slot_index: int, label: str, sample_index: int = 0) -> PoseSample | None:
    """Rebuild a stored sample; None when landmarks or embedding are missing."""
    if not isinstance(raw, Mapping) or not raw.get("rawLandmarks"):
        return None
    feature = feature_from_dict(raw.get("feature") or raw.get("estimation"))
    if feature.is_empty:
        return None

    captured_at = str(raw.get("capturedAt") or "")
    sample_id = raw.get("sampleId")
    if not isinstance(sample_id, str) or not sample_id.strip():
        sample_id = f"slot-{slot_index}-sample-{sample_index}-{captured_at or 'legacy'}"

    landmarks = []
    for point in raw.get("rawLandmarks") or []:
        if not isinstance(point, Mapping):
            return None
        try:
            landmarks.append({axis: float(point.get(axis) or 0.0) for axis in ("x", "y", "z")})
        except (TypeError, ValueError):
            return None

    estimation = raw.get("estimation") if isinstance(raw.get("estimation"), Mapping) else {}
    metrics = raw.get("classifierMetrics", estimation.get("classifierMetrics"))
    detector_info = raw.get("detectorInfo", raw.get("mediapipe"))
    try:
        score = float(raw.get("handednessScore") or 0.0)
    except (TypeError, ValueError):
        score = 0.0

    return PoseSample(
        sample_id=sample_id.strip(),
        slot_index=slot_index,
        label=label,
        captured_at=captured_at,
        handedness=normalize_handedness(raw.get("handedness")),
        raw_landmarks=tuple(landmarks),
        feature=feature,
        handedness_score=score,
        detector_info=dict(detector_info) if isinstance(detector_info, Mapping) else None,
        classifier_metrics=dict(metrics) if isinstance(metrics, Mapping) else None,
    )


def slot_from_raw(raw: Any, slot_index: int, label: str) -> PoseSlot | None:
    if not raw or not isinstance(raw, Mapping):
        return None

    if isinstance(raw.get("samples"), list):
        samples = [
            sample
            for i, item in enumerate(raw["samples"])
            if (sample := sample_from_raw(item, slot_index, label, i)) is not None
        ]
        if not samples:
            return None
        updated_at = str(raw.get("updatedAt") or samples[-1].captured_at)
        return PoseSlot(slot_index, label, samples, updated_at)

    single = sample_from_raw(raw, slot_index, label, 0)
    if single is None:
        return None
    return PoseSlot(slot_index, label, [single], single.captured_at)


def migrate_library_document(
    raw: Any, max_poses: int, fallback_labels: list[str]
) -> tuple[list[str], list[PoseSlot | None]] | None:
    """Bring any known persisted shape up to the current in-memory model.

    Returns None when ``raw`` has no recognizable slot list.
    """
    raw_labels: list[Any] | None = None
    if isinstance(raw, list):
        raw_slots = raw
    elif isinstance(raw, Mapping):
        raw_slots = raw.get("slots") if isinstance(raw.get("slots"), list) else raw.get("poses")
        if isinstance(raw.get("labels"), list):
            raw_labels = raw["labels"]
    else:
        return None

    if not isinstance(raw_slots, list):
        return None

    labels = [
        sanitize_label(
            raw_labels[i] if raw_labels is not None and i < len(raw_labels) else None,
            fallback_labels[i] if i < len(fallback_labels) else f"pose_{i}",
        )
        for i in range(max_poses)
    ]
    slots = [
        slot_from_raw(raw_slots[i] if i < len(raw_slots) else None, i, labels[i])
        for i in range(max_poses)
    ]
    return labels, slots


def build_document(labels: list[str], slots: list[PoseSlot | None]) -> dict[str, Any]:
    return {
        "version": LIBRARY_VERSION,
        "labels": list(labels),
        "slots": [slot.to_dict() if slot else None for slot in slots],
    }
