"""Per-frame pipeline: classify, extract features, match templates, run triggers.

Frames are processed synchronously and one at a time. The pipeline keeps the
latest enriched hands so that captures can be taken from "what the camera
sees right now".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from gesture_module.classifier import classify_hand_gestures
from gesture_module.features import extract_features
from gesture_module.library_schema import PoseSample
from gesture_module.pose_classes import DEFAULT_TRIGGERS, POSE_CLASSES
from gesture_module.pose_library import PoseLibrary
from gesture_module.trigger_engine import TriggerEngine
from gesture_module.types import DetectedHand, HandFrame, PoseMatch, TriggerDefinition, TriggerFired
from utils.log_utils import tprint


@dataclass
class FrameResult:
    timestamp: float
    hands: list[HandFrame] = field(default_factory=list)
    fired: list[TriggerFired] = field(default_factory=list)
    best_match: PoseMatch | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "hands": [hand.summary() for hand in self.hands],
            "bestMatch": self.best_match.to_dict() if self.best_match else None,
            "fired": [event.trigger.id for event in self.fired],
        }


class GesturePipeline:
    """Wires the classifier, pose library and trigger engine for one camera."""

    def __init__(
        self,
        library: PoseLibrary | None = None,
        triggers: Iterable[TriggerDefinition] | None = None,
        engine: TriggerEngine | None = None,
    ) -> None:
        self.library = library or PoseLibrary(slot_labels=[pose.label for pose in POSE_CLASSES])
        self.engine = engine or TriggerEngine(DEFAULT_TRIGGERS if triggers is None else triggers)
        self.latest_hands: list[HandFrame] = []
        self.frame_count = 0

    def enrich_hand(self, detected: DetectedHand) -> HandFrame:
        classification = classify_hand_gestures(detected.landmarks, detected.handedness)
        hand = HandFrame(
            landmarks=detected.landmarks,
            handedness=detected.handedness,
            detection_score=detected.score,
            gestures=frozenset(classification.gestures),
            feature=extract_features(detected.landmarks),
            metrics=classification.metrics(),
        )
        hand.pose_match = self.library.match_hand(hand) or self.default_pose_match(hand.gestures)
        return hand

    def default_pose_match(self, gestures: Iterable[str]) -> PoseMatch | None:
        """Map a built-in gesture to its slot when no trained template matched."""
        present = set(gestures)
        for pose in sorted(POSE_CLASSES, key=lambda p: p.slot_index):
            if pose.gesture not in present or pose.slot_index >= self.library.max_poses:
                continue
            slot = self.library.get_slot(pose.slot_index)
            return PoseMatch(
                slot_index=pose.slot_index,
                label=self.library.slot_label(pose.slot_index),
                distance=0.0,
                sample_count=len(slot.samples) if slot else 0,
                source="default-gesture",
            )
        return None

    def process_frame(self, hands: Sequence[DetectedHand | Mapping[str, Any]], timestamp: float) -> FrameResult:
        enriched = [
            self.enrich_hand(hand if isinstance(hand, DetectedHand) else DetectedHand.from_dict(hand))
            for hand in hands
        ]
        self.latest_hands = enriched
        self.frame_count += 1

        fired = self.engine.process_frame(enriched, timestamp)
        for event in fired:
            tprint(f"[GESTURE] Trigger {event.trigger.id} fired after {event.held_ms:.0f}ms")
        return FrameResult(timestamp=timestamp, hands=enriched, fired=fired, best_match=self.best_match())

    def primary_hand(self) -> HandFrame | None:
        if not self.latest_hands:
            return None
        return max(self.latest_hands, key=lambda hand: hand.score)

    def best_match(self) -> PoseMatch | None:
        matches = [hand.pose_match for hand in self.latest_hands if hand.pose_match is not None]
        if not matches:
            return None
        return min(matches, key=lambda match: match.distance)

    def capture_primary(self, slot_index: int, detector_info: dict[str, Any] | None = None) -> PoseSample:
        """Store the highest-scoring hand of the latest frame into ``slot_index``."""
        hand = self.primary_hand()
        if hand is None:
            raise LookupError("No hand in the latest frame to capture.")
        return self.library.capture_at(slot_index, hand, detector_info)
