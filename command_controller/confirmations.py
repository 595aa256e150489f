"""Confirmation requests shown before an action runs in confirm_each mode."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

from command_controller.actions import ActionDefinition
from gesture_module.types import ModifierInfo


@dataclass(frozen=True)
class ConfirmationRequest:
    action: ActionDefinition
    pose_slot: int
    pose_label: str
    modifier: ModifierInfo | None = None

    def to_prompt(self) -> str:
        lines = [
            f'Run "{self.action.label}" for pose {self.pose_slot} ({self.pose_label})?',
            self.action.description or "No action description.",
            f"Scopes: {', '.join(self.action.required_scopes)}" if self.action.required_scopes else "Scopes: none",
        ]
        if self.modifier is not None and self.modifier.detected:
            lines.append(f"Modifier: {self.modifier.gesture} ({self.modifier.handedness or 'unknown'} hand)")
        return "\n".join(lines)


class Confirmer(Protocol):
    def confirm(self, request: ConfirmationRequest) -> bool: ...


class StaticConfirmer:
    """Answers every request the same way; used headless and in tests."""

    def __init__(self, answer: bool = False) -> None:
        self.answer = answer
        self.requests: list[ConfirmationRequest] = []

    def confirm(self, request: ConfirmationRequest) -> bool:
        self.requests.append(request)
        return self.answer


class CallbackConfirmer:
    def __init__(self, callback: Callable[[str], bool]) -> None:
        self._callback = callback

    def confirm(self, request: ConfirmationRequest) -> bool:
        return bool(self._callback(request.to_prompt()))
