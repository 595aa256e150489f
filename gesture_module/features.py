"""Hand geometry features: wrist-centred, scale-normalized landmarks.

Every hand is translated so the wrist (landmark 0) sits at the origin and then
divided by the largest point norm, which makes the 63-value embedding
independent of where the hand is in the image and how large it appears.
Rotation about the camera axis is left in on purpose: the orientation of a
pose is part of what distinguishes it.
"""

from __future__ import annotations

import math
from typing import Any, Mapping, Sequence

import numpy as np

from gesture_module.types import HAND_LANDMARKS, LandmarkPoint, PoseFeature

EPSILON = 1e-6
PRECISION = 6

# name -> (landmark a, landmark b)
PAIR_INDICES: dict[str, tuple[int, int]] = {
    "thumbIndex": (4, 8),
    "indexMiddle": (8, 12),
    "middleRing": (12, 16),
    "ringPinky": (16, 20),
    "wristMiddleTip": (0, 12),
}


def landmark_array(landmarks: Sequence[Any]) -> np.ndarray:
    """Return an (n, 3) float64 array from any landmark-like sequence."""
    if not landmarks:
        return np.zeros((0, 3), dtype=np.float64)
    points = [LandmarkPoint.coerce(p) for p in landmarks]
    return np.array([[p.x, p.y, p.z] for p in points], dtype=np.float64)


def normalize_landmarks(landmarks: Sequence[Any]) -> np.ndarray:
    """Translate wrist to origin and scale by the largest point norm.

    Returns an empty (0, 3) array when fewer than 21 landmarks are given.
    """
    coords = landmark_array(landmarks)
    if len(coords) < HAND_LANDMARKS:
        return np.zeros((0, 3), dtype=np.float64)

    coords = coords - coords[0]
    norms = np.linalg.norm(coords, axis=1)
    scale = max(EPSILON, float(norms.max()))
    return coords / scale


def serialize_landmarks(landmarks: Sequence[Any], precision: int = PRECISION) -> list[dict[str, float]]:
    coords = np.round(landmark_array(landmarks), precision)
    return [{"x": float(x), "y": float(y), "z": float(z)} for x, y, z in coords]


def extract_features(landmarks: Sequence[Any]) -> PoseFeature:
    """Build the normalized landmarks, embedding and finger-pair distances."""
    normalized = normalize_landmarks(landmarks)
    if not len(normalized):
        return PoseFeature()

    rounded = np.round(normalized, PRECISION)
    pair_distances = {
        name: round(float(np.linalg.norm(normalized[a] - normalized[b])), PRECISION)
        for name, (a, b) in PAIR_INDICES.items()
    }
    return PoseFeature(
        normalized_landmarks=tuple(LandmarkPoint(float(x), float(y), float(z)) for x, y, z in rounded),
        embedding=tuple(float(v) for v in rounded.flatten()),
        pair_distances=pair_distances,
    )


def feature_from_dict(raw: Mapping[str, Any] | None) -> PoseFeature:
    """Rebuild a feature from its persisted form (current or legacy key names)."""
    if not isinstance(raw, Mapping):
        return PoseFeature()
    embedding = raw.get("embedding") or []
    pairs = raw.get("pairDistances")
    if pairs is None:
        pairs = raw.get("pair_distances")
    normalized = raw.get("normalizedLandmarks") or raw.get("normalized_landmarks") or []
    try:
        return PoseFeature(
            normalized_landmarks=tuple(LandmarkPoint.coerce(p) for p in normalized),
            embedding=tuple(float(v) for v in embedding),
            pair_distances=(
                {str(k): float(v) for k, v in pairs.items() if isinstance(v, (int, float))}
                if isinstance(pairs, Mapping)
                else None
            ),
        )
    except (TypeError, ValueError):
        return PoseFeature()


def embedding_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Mean absolute difference; infinite when lengths differ or are empty."""
    if not a or not b or len(a) != len(b):
        return math.inf
    return float(np.mean(np.abs(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64))))


def pair_distance(a: Mapping[str, float] | None, b: Mapping[str, float] | None) -> float:
    """Mean absolute difference over the pair-distance keys both sides share."""
    if not a or not b:
        return math.inf
    keys = [
        key
        for key, value in a.items()
        if isinstance(value, (int, float)) and isinstance(b.get(key), (int, float))
    ]
    if not keys:
        return math.inf
    return sum(abs(a[key] - b[key]) for key in keys) / len(keys)
