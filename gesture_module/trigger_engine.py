"""Hold/cooldown state machine turning per-frame matches into discrete firings.

A trigger fires once its pose has been held continuously for ``hold_ms`` and
at least ``cooldown_ms`` has passed since it last fired. After firing it stays
disarmed until the matching hand disappears, so a pose held indefinitely fires
exactly once.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from gesture_module.types import HandFrame, TriggerDefinition, TriggerFired, normalize_handedness
from utils.event_bus import Channel
from utils.log_utils import tprint
from utils.settings_store import deep_log


@dataclass
class TriggerState:
    started_at: float | None = None
    ready: bool = True
    last_fired_at: float = -math.inf

    @property
    def phase(self) -> str:
        if not self.ready:
            return "cooling"
        if self.started_at is not None:
            return "holding"
        return "idle"

    def reset(self) -> None:
        self.started_at = None
        self.ready = True


class TriggerEngine:
    def __init__(self, triggers: Iterable[TriggerDefinition] = ()) -> None:
        self.fired: Channel[TriggerFired] = Channel("trigger.fired")
        self.triggers: list[TriggerDefinition] = []
        self.states: dict[str, TriggerState] = {}
        self.register(triggers)

    def register(self, triggers: Iterable[TriggerDefinition]) -> None:
        """Replace all trigger definitions and reset their state."""
        self.triggers = list(triggers)
        self.states = {trigger.id: TriggerState() for trigger in self.triggers}

    def state(self, trigger_id: str) -> TriggerState | None:
        return self.states.get(trigger_id)

    def process_frame(self, hands: Sequence[HandFrame], timestamp: float) -> list[TriggerFired]:
        """Advance every trigger by one frame; returns the events fired."""
        fired: list[TriggerFired] = []
        frame_hands = tuple(hands)
        for trigger in self.triggers:
            try:
                event = self._process_trigger(trigger, frame_hands, timestamp)
            except Exception as exc:
                tprint(f"[TRIGGER][ERROR] {trigger.id} failed on frame: {exc}")
                continue
            if event is not None:
                fired.append(event)
                self.fired.publish(event)
        return fired

    def _process_trigger(
        self, trigger: TriggerDefinition, hands: tuple[HandFrame, ...], timestamp: float
    ) -> TriggerFired | None:
        state = self.states.get(trigger.id)
        if state is None:
            return None

        matching = next((hand for hand in hands if self.is_matching_hand(trigger, hand)), None)
        if matching is None:
            state.reset()
            return None

        if state.started_at is None:
            state.started_at = timestamp

        if not state.ready:
            return None

        held_ms = timestamp - state.started_at
        cooldown_ready = timestamp - state.last_fired_at >= trigger.cooldown_ms
        if held_ms < trigger.hold_ms or not cooldown_ready:
            return None

        state.last_fired_at = timestamp
        state.ready = False
        deep_log(f"[DEEP][TRIGGER] {trigger.id} fired held_ms={held_ms:.0f}")
        return TriggerFired(trigger=trigger, hand=matching, hands=hands, held_ms=held_ms, timestamp=timestamp)

    @staticmethod
    def is_matching_hand(trigger: TriggerDefinition, hand: HandFrame) -> bool:
        if trigger.pose_slot is not None:
            if hand.pose_match is None or hand.pose_match.slot_index != trigger.pose_slot:
                return False
        elif not trigger.gesture or trigger.gesture not in hand.gestures:
            return False

        if trigger.hand == "any":
            return True
        return normalize_handedness(hand.handedness) == trigger.hand
