"""Typed events published by the action router."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from gesture_module.types import ModifierInfo, TriggerDispatch
from utils.event_bus import Channel


@dataclass(frozen=True)
class BridgeStatus:
    message: str
    type: str = "info"  # "info" | "error"


@dataclass(frozen=True)
class BridgeResult:
    pose_slot: int
    pose_label: str
    action_id: str
    base_action_id: str
    output: str
    meta: dict[str, Any]
    modifier: ModifierInfo
    execution: dict[str, Any]
    payload: TriggerDispatch | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "poseSlot": self.pose_slot,
            "poseLabel": self.pose_label,
            "actionId": self.action_id,
            "baseActionId": self.base_action_id,
            "output": self.output,
            "meta": self.meta,
            "modifierDetected": self.modifier.detected,
            "execution": self.execution,
        }


@dataclass(frozen=True)
class BridgeFailure:
    pose_slot: int
    pose_label: str
    action_id: str
    base_action_id: str
    modifier: ModifierInfo
    execution: dict[str, Any]
    error: BaseException
    payload: TriggerDispatch | None = None
    primary_error: BaseException | None = None
    fallback_error: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "poseSlot": self.pose_slot,
            "poseLabel": self.pose_label,
            "actionId": self.action_id,
            "baseActionId": self.base_action_id,
            "error": str(self.error),
            "errorCode": getattr(self.error, "code", None),
            "execution": self.execution,
        }


@dataclass(frozen=True)
class BridgeSkipped:
    pose_slot: int | None
    action_id: str
    reason: str
    execution: dict[str, Any]
    payload: TriggerDispatch | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "poseSlot": self.pose_slot,
            "actionId": self.action_id,
            "reason": self.reason,
            "execution": self.execution,
        }


@dataclass
class RouterEvents:
    status: Channel[BridgeStatus] = field(default_factory=lambda: Channel("bridge.status"))
    result: Channel[BridgeResult] = field(default_factory=lambda: Channel("bridge.result"))
    error: Channel[BridgeFailure] = field(default_factory=lambda: Channel("bridge.error"))
    skipped: Channel[BridgeSkipped] = field(default_factory=lambda: Channel("bridge.skipped"))


@dataclass(frozen=True)
class RouteOutcome:
    """What happened to one fired trigger."""

    status: str  # "ok" | "error" | "skipped"
    action_id: str
    reason: str | None = None
    result: BridgeResult | None = None
    error: BaseException | None = None
