"""Tests for the threshold gesture classifier."""

import math

import pytest

from gesture_module.classifier import classify_hand_gestures
from gesture_module.types import normalize_handedness


class TestClassifyHandGestures:
    @pytest.mark.parametrize("gesture", ["open_palm", "fist", "victory", "thumbs_up"])
    def test_single_gesture(self, landmarks, gesture):
        """Each synthetic shape is classified as exactly its own gesture."""
        result = classify_hand_gestures(landmarks(gesture), "Right")

        assert result.gestures == (gesture,)

    def test_left_hand_thumbs_up(self, landmarks):
        """A raised thumb counts as extended regardless of handedness."""
        result = classify_hand_gestures(landmarks("thumbs_up"), "Left")

        assert result.gestures == ("thumbs_up",)

    def test_pinch_suppresses_palm(self, landmarks):
        """Thumb tip touching index tip is a pinch, never an open palm."""
        points = landmarks("open_palm")
        points[4] = dict(points[8], x=points[8]["x"] + 0.01)

        result = classify_hand_gestures(points, "right")

        assert "pinch" in result.gestures
        assert "open_palm" not in result.gestures
        assert result.pinch_distance < 0.06

    def test_metrics(self, landmarks):
        """Metrics expose the pinch distance, extended count and finger states."""
        metrics = classify_hand_gestures(landmarks("victory"), "right").metrics()

        assert metrics["extendedCount"] == 2
        assert metrics["fingers"]["index"] is True
        assert metrics["fingers"]["ring"] is False

    def test_short_hand_has_no_gestures(self, landmarks):
        """Fewer than 21 landmarks yields no gestures and an infinite pinch distance."""
        result = classify_hand_gestures(landmarks("fist")[:10])

        assert result.gestures == ()
        assert result.pinch_distance == math.inf


class TestNormalizeHandedness:
    @pytest.mark.parametrize(
        "raw, expected",
        [("Left", "left"), ("right hand", "right"), (None, "unknown"), ("ambi", "unknown")],
    )
    def test_labels(self, raw, expected):
        """Detector labels collapse to left/right/unknown."""
        assert normalize_handedness(raw) == expected
