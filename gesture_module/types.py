"""Data types flowing through the per-frame gesture pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

HAND_LANDMARKS = 21

GESTURE_LABELS = ("pinch", "fist", "open_palm", "thumbs_up", "victory")


def normalize_handedness(value: Any) -> str:
    """Map detector handedness labels ("Left", "right hand", None) to left/right/unknown."""
    lower = str(value or "").lower()
    if "left" in lower:
        return "left"
    if "right" in lower:
        return "right"
    return "unknown"


@dataclass(frozen=True)
class LandmarkPoint:
    x: float
    y: float
    z: float = 0.0

    @classmethod
    def coerce(cls, value: Any) -> "LandmarkPoint":
        """Accept dicts, (x, y[, z]) sequences or objects exposing x/y/z."""
        if isinstance(value, LandmarkPoint):
            return value
        if isinstance(value, Mapping):
            return cls(
                float(value.get("x") or 0.0),
                float(value.get("y") or 0.0),
                float(value.get("z") or 0.0),
            )
        if isinstance(value, Sequence) and not isinstance(value, str):
            coords = [float(v) for v in value]
            while len(coords) < 3:
                coords.append(0.0)
            return cls(coords[0], coords[1], coords[2])
        return cls(
            float(getattr(value, "x", 0.0) or 0.0),
            float(getattr(value, "y", 0.0) or 0.0),
            float(getattr(value, "z", 0.0) or 0.0),
        )

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}


@dataclass(frozen=True)
class PoseFeature:
    """Normalized geometry of one hand; empty when no confident hand was seen."""

    normalized_landmarks: tuple[LandmarkPoint, ...] = ()
    embedding: tuple[float, ...] = ()
    pair_distances: dict[str, float] | None = None

    @property
    def is_empty(self) -> bool:
        return not self.embedding

    def to_dict(self) -> dict[str, Any]:
        return {
            "normalizedLandmarks": [p.to_dict() for p in self.normalized_landmarks],
            "embedding": list(self.embedding),
            "pairDistances": dict(self.pair_distances) if self.pair_distances is not None else None,
        }


@dataclass(frozen=True)
class PoseMatch:
    slot_index: int
    label: str
    distance: float
    sample_count: int
    source: str  # "template-samples" | "default-gesture"
    vector_distance: float = 0.0
    pair_distance: float = 0.0
    matched_sample_id: str | None = None
    matched_sample_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "slotIndex": self.slot_index,
            "label": self.label,
            "distance": self.distance,
            "sampleCount": self.sample_count,
            "source": self.source,
            "vectorDistance": self.vector_distance,
            "pairDistance": self.pair_distance,
            "matchedSampleId": self.matched_sample_id,
        }


@dataclass
class DetectedHand:
    """One hand as reported by the landmark detector."""

    landmarks: tuple[LandmarkPoint, ...]
    handedness: str = "unknown"
    score: float = 0.0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DetectedHand":
        landmarks = raw.get("landmarks") or []
        return cls(
            landmarks=tuple(LandmarkPoint.coerce(p) for p in landmarks),
            handedness=normalize_handedness(raw.get("handedness")),
            score=float(raw.get("score") or raw.get("detectionScore") or 0.0),
        )


@dataclass
class HandFrame:
    """A detected hand enriched with gestures, features and its pose match."""

    landmarks: tuple[LandmarkPoint, ...]
    handedness: str
    detection_score: float
    gestures: frozenset[str] = frozenset()
    feature: PoseFeature = field(default_factory=PoseFeature)
    pose_match: PoseMatch | None = None
    metrics: dict[str, Any] | None = None

    @property
    def score(self) -> float:
        return self.detection_score

    def summary(self) -> dict[str, Any]:
        return {
            "handedness": self.handedness,
            "score": self.detection_score,
            "gestures": sorted(self.gestures),
            "poseMatch": self.pose_match.to_dict() if self.pose_match else None,
        }


@dataclass(frozen=True)
class TriggerAction:
    type: str
    default_action_id: str = "none"


@dataclass(frozen=True)
class TriggerDefinition:
    id: str
    pose_slot: int | None = None
    gesture: str | None = None
    hand: str = "any"  # "any" | "left" | "right"
    hold_ms: float = 500.0
    cooldown_ms: float = 1200.0
    action: TriggerAction | None = None


@dataclass(frozen=True)
class TriggerFired:
    trigger: TriggerDefinition
    hand: HandFrame
    hands: tuple[HandFrame, ...]
    held_ms: float
    timestamp: float


@dataclass(frozen=True)
class ModifierInfo:
    detected: bool = False
    gesture: str | None = None
    expected_gesture: str | None = None
    handedness: str | None = None
    source: str = "none"  # "none" | "secondary-hand" | "payload"


@dataclass(frozen=True)
class HandSummary:
    handedness: str
    gestures: tuple[str, ...]
    pose_slot: int | None
    score: float
    is_primary: bool = False


@dataclass(frozen=True)
class PoseSummary:
    slot_index: int
    label: str | None
    distance: float | None
    sample_count: int | None
    source: str | None


@dataclass(frozen=True)
class TriggerDispatch:
    """Payload handed from a fired trigger to the action router."""

    trigger_id: str
    gesture: str | None
    trigger_pose_slot: int | None
    action: TriggerAction | None
    handedness: str
    timestamp: str
    held_ms: int
    metrics: dict[str, Any] | None
    pose: PoseSummary | None
    hands: tuple[HandSummary, ...]
    modifier: ModifierInfo = ModifierInfo()


@dataclass(frozen=True)
class DispatchError:
    payload: TriggerDispatch
    error: BaseException
