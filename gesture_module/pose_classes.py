"""Built-in pose classes and the trigger set shipped with them."""

from __future__ import annotations

from dataclasses import dataclass

from gesture_module.types import TriggerAction, TriggerDefinition

POSE_ACTION_TYPE = "pose-action"


@dataclass(frozen=True)
class PoseClass:
    slot_index: int
    label: str
    gesture: str


POSE_CLASSES: tuple[PoseClass, ...] = (
    PoseClass(0, "thumbs_up", "thumbs_up"),
    PoseClass(1, "palm", "open_palm"),
    PoseClass(2, "peace", "victory"),
)

POSE_CLASS_BY_SLOT = {pose.slot_index: pose for pose in POSE_CLASSES}
POSE_CLASS_BY_GESTURE = {pose.gesture: pose for pose in POSE_CLASSES}

_SLOT_DEFAULT_ACTIONS = {
    0: "read_summarize",
    1: "screenshot_analyze",
    2: "conversation_site_brief",
}

DEFAULT_TRIGGERS: tuple[TriggerDefinition, ...] = tuple(
    TriggerDefinition(
        id=f"pose-{slot}-trigger",
        pose_slot=slot,
        hand="any",
        hold_ms=420,
        cooldown_ms=1200,
        action=TriggerAction(type=POSE_ACTION_TYPE, default_action_id=action_id),
    )
    for slot, action_id in _SLOT_DEFAULT_ACTIONS.items()
)


def default_slot_labels() -> list[str]:
    return [pose.label for pose in sorted(POSE_CLASSES, key=lambda p: p.slot_index)]
