"""Safety gate applied to every routed action before it runs."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable

from command_controller.action_settings import ActionSettings
from command_controller.actions import ActionDefinition
from command_controller.confirmations import ConfirmationRequest, Confirmer, StaticConfirmer
from gesture_module.types import ModifierInfo


@dataclass(frozen=True)
class SafetyDecision:
    ok: bool
    reason: str | None = None


def human_duration(ms: float) -> str:
    return f"{ms / 1000:.1f}s"


class SafetyGate:
    """Manual confirmation, or an armed per-slot cooldown.

    The cooldown here is separate from the trigger engine's own cooldown and
    is measured between executed actions, not between firings.
    """

    def __init__(self, confirmer: Confirmer | None = None, clock: Callable[[], float] | None = None) -> None:
        self.confirmer = confirmer or StaticConfirmer(False)
        self._clock = clock or time.monotonic
        self.last_run_at: dict[int, float] = {}

    def check(
        self,
        settings: ActionSettings,
        action: ActionDefinition,
        pose_slot: int,
        pose_label: str,
        modifier: ModifierInfo | None = None,
    ) -> SafetyDecision:
        if settings.safety_mode == "confirm_each":
            request = ConfirmationRequest(action=action, pose_slot=pose_slot, pose_label=pose_label, modifier=modifier)
            if not self.confirmer.confirm(request):
                return SafetyDecision(False, "Action rejected in confirmation dialog.")
            return SafetyDecision(True)

        if not settings.armed:
            return SafetyDecision(False, "Cooldown mode is not armed.")

        now_ms = self._clock() * 1000.0
        elapsed = now_ms - self.last_run_at.get(pose_slot, -math.inf)
        if elapsed < settings.cooldown_ms:
            left = human_duration(settings.cooldown_ms - elapsed)
            return SafetyDecision(False, f"Pose {pose_slot} is cooling down ({left} left).")

        self.last_run_at[pose_slot] = now_ms
        return SafetyDecision(True)

    def reset(self) -> None:
        self.last_run_at.clear()
