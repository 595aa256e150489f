"""Threshold-based gesture labels from raw image-space landmarks."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Sequence

from gesture_module.types import HAND_LANDMARKS, LandmarkPoint, normalize_handedness

THUMB_TIP = 4
INDEX_TIP = 8
WRIST = 0

PINCH_THRESHOLD = 0.06
THUMB_VERTICAL_MARGIN = 0.03
THUMBS_UP_MARGIN = 0.05

# finger -> (tip, pip, mcp)
FINGER_JOINTS = {
    "index": (8, 6, 5),
    "middle": (12, 10, 9),
    "ring": (16, 14, 13),
    "pinky": (20, 18, 17),
}


@dataclass(frozen=True)
class GestureClassification:
    gestures: tuple[str, ...]
    pinch_distance: float
    extended_count: int = 0
    fingers: dict[str, bool] | None = None

    def metrics(self) -> dict[str, Any]:
        return {
            "pinchDistance": self.pinch_distance,
            "extendedCount": self.extended_count,
            "fingers": dict(self.fingers) if self.fingers is not None else None,
        }


def _distance(a: LandmarkPoint, b: LandmarkPoint) -> float:
    return math.sqrt((a.x - b.x) ** 2 + (a.y - b.y) ** 2 + (a.z - b.z) ** 2)


def _finger_extended(points: Sequence[LandmarkPoint], tip: int, pip: int, mcp: int) -> bool:
    # Image y grows downward, so an extended finger has tip above pip above mcp.
    return points[tip].y < points[pip].y < points[mcp].y


def _thumb_extended(points: Sequence[LandmarkPoint], handedness: str) -> bool:
    tip, ip, mcp, wrist = points[4], points[3], points[2], points[WRIST]
    if handedness == "right":
        horizontal = tip.x < ip.x < mcp.x
    else:
        horizontal = tip.x > ip.x > mcp.x
    vertical = tip.y < wrist.y - THUMB_VERTICAL_MARGIN
    return horizontal or vertical


def classify_hand_gestures(landmarks: Sequence[Any], handedness: Any = None) -> GestureClassification:
    """Return every gesture label the hand currently satisfies.

    Pinch suppresses open_palm, fist and victory; victory and thumbs_up can
    never co-occur because they need different finger states.
    """
    if not landmarks or len(landmarks) < HAND_LANDMARKS:
        return GestureClassification(gestures=(), pinch_distance=math.inf)

    points = [LandmarkPoint.coerce(p) for p in landmarks]
    side = normalize_handedness(handedness)

    fingers = {"thumb": _thumb_extended(points, side)}
    for name, (tip, pip, mcp) in FINGER_JOINTS.items():
        fingers[name] = _finger_extended(points, tip, pip, mcp)

    pinch_distance = _distance(points[THUMB_TIP], points[INDEX_TIP])
    is_pinch = pinch_distance < PINCH_THRESHOLD
    extended_count = sum(1 for state in fingers.values() if state)

    is_open_palm = extended_count >= 4 and not is_pinch
    is_fist = extended_count == 0 and not is_pinch
    is_victory = (
        fingers["index"] and fingers["middle"] and not fingers["ring"] and not fingers["pinky"] and not is_pinch
    )
    is_thumbs_up = (
        fingers["thumb"]
        and not any(fingers[name] for name in FINGER_JOINTS)
        and points[THUMB_TIP].y < points[WRIST].y - THUMBS_UP_MARGIN
    )

    gestures: list[str] = []
    if is_pinch:
        gestures.append("pinch")
    if is_victory:
        gestures.append("victory")
    if is_thumbs_up:
        gestures.append("thumbs_up")
    if is_open_palm:
        gestures.append("open_palm")
    if is_fist:
        gestures.append("fist")

    return GestureClassification(
        gestures=tuple(gestures),
        pinch_distance=pinch_distance,
        extended_count=extended_count,
        fingers=fingers,
    )
