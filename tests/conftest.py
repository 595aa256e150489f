"""Shared fixtures: synthetic 21-point hands in image coordinates (y grows down)."""

import pytest

from gesture_module.types import HandFrame, PoseMatch

WRIST = (0.5, 0.8)

# finger -> (x, mcp index)
_FINGERS = {"index": (0.45, 5), "middle": (0.5, 9), "ring": (0.55, 13), "pinky": (0.6, 17)}
_EXTENDED_Y = (0.6, 0.5, 0.45, 0.4)  # mcp, pip, dip, tip
_CURLED_Y = (0.6, 0.55, 0.6, 0.62)

_THUMB_OUT = [(0.42, 0.75), (0.38, 0.7), (0.34, 0.66), (0.3, 0.62)]
_THUMB_FOLDED = [(0.44, 0.78), (0.47, 0.8), (0.49, 0.82), (0.47, 0.84)]

# gesture -> (thumb out, extended fingers)
_SHAPES = {
    "open_palm": (True, {"index", "middle", "ring", "pinky"}),
    "fist": (False, set()),
    "victory": (False, {"index", "middle"}),
    "thumbs_up": (True, set()),
}


def build_landmarks(gesture="open_palm", dx=0.0, dy=0.0, scale=1.0, jitter=0.0):
    """Return 21 ``{x, y, z}`` dicts for ``gesture``, moved and scaled about the wrist."""
    thumb_out, extended = _SHAPES[gesture]
    points = [WRIST] + (_THUMB_OUT if thumb_out else _THUMB_FOLDED)
    for name, (x, _) in _FINGERS.items():
        ys = _EXTENDED_Y if name in extended else _CURLED_Y
        points.extend((x + jitter * i, y) for i, y in enumerate(ys))

    wx, wy = WRIST
    return [
        {"x": wx + (x - wx) * scale + dx, "y": wy + (y - wy) * scale + dy, "z": 0.0}
        for x, y in points
    ]


def build_hand_frame(slot=None, handedness="right", score=0.9, gestures=()):
    """A pre-enriched hand whose pose match points at ``slot``."""
    match = None
    if slot is not None:
        match = PoseMatch(slot_index=slot, label=f"pose_{slot}", distance=0.01, sample_count=1, source="template-samples")
    return HandFrame(
        landmarks=(),
        handedness=handedness,
        detection_score=score,
        gestures=frozenset(gestures),
        pose_match=match,
    )


@pytest.fixture
def landmarks():
    return build_landmarks


@pytest.fixture
def hand_frame():
    return build_hand_frame

