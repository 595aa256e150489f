"""Bridge from fired triggers to action handlers.

Each fired trigger is flattened into a :class:`TriggerDispatch` (hand summaries,
pose match, default modifier) and handed to the handler registered for the
trigger's action type.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Sequence

from gesture_module.types import (
    DispatchError,
    HandFrame,
    HandSummary,
    ModifierInfo,
    PoseSummary,
    TriggerDispatch,
    TriggerFired,
    normalize_handedness,
)
from utils.event_bus import Channel
from utils.log_utils import tprint

ActionHandler = Callable[[TriggerDispatch], "Awaitable[Any] | Any"]

DEFAULT_MODIFIER_GESTURE = "fist"


def summarize_hand(hand: HandFrame, is_primary: bool = False) -> HandSummary:
    return HandSummary(
        handedness=normalize_handedness(hand.handedness),
        gestures=tuple(sorted(hand.gestures)),
        pose_slot=hand.pose_match.slot_index if hand.pose_match else None,
        score=float(hand.score or 0.0),
        is_primary=is_primary,
    )


def detect_default_modifier(hands: Sequence[HandSummary]) -> ModifierInfo:
    secondary = next(
        (hand for hand in hands if not hand.is_primary and DEFAULT_MODIFIER_GESTURE in hand.gestures),
        None,
    )
    if secondary is None:
        return ModifierInfo()
    return ModifierInfo(
        detected=True,
        gesture=DEFAULT_MODIFIER_GESTURE,
        handedness=secondary.handedness,
        source="secondary-hand",
    )


def build_dispatch(event: TriggerFired) -> TriggerDispatch:
    match = event.hand.pose_match
    if event.hands:
        hands = tuple(summarize_hand(hand, hand is event.hand) for hand in event.hands)
    else:
        hands = (summarize_hand(event.hand, True),)

    pose = None
    if match is not None:
        pose = PoseSummary(
            slot_index=match.slot_index,
            label=match.label,
            distance=match.distance,
            sample_count=match.sample_count,
            source=match.source,
        )

    return TriggerDispatch(
        trigger_id=event.trigger.id,
        gesture=event.trigger.gesture or (match.label if match else None),
        trigger_pose_slot=event.trigger.pose_slot,
        action=event.trigger.action,
        handedness=normalize_handedness(event.hand.handedness),
        timestamp=datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        held_ms=int(round(event.held_ms or 0)),
        metrics=event.hand.metrics,
        pose=pose,
        hands=hands,
        modifier=detect_default_modifier(hands),
    )


class TriggerAdapter:
    def __init__(self, fired: Channel[TriggerFired], action_handlers: dict[str, ActionHandler] | None = None) -> None:
        self.fired = fired
        self.action_handlers: dict[str, ActionHandler] = dict(action_handlers or {})
        self.dispatched: Channel[TriggerDispatch] = Channel("trigger.dispatched")
        self.dispatch_error: Channel[DispatchError] = Channel("trigger.dispatch_error")
        self._unsubscribe: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task] = set()

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.fired.subscribe(self.handle_fired)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def is_running(self) -> bool:
        return self._unsubscribe is not None

    def handle_fired(self, event: TriggerFired) -> None:
        """Schedule dispatch on the running loop, or run it to completion."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self.dispatch(event))
            return
        task = loop.create_task(self.dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def dispatch(self, event: TriggerFired) -> TriggerDispatch:
        payload = build_dispatch(event)
        try:
            self.dispatched.publish(payload)
            action_type = payload.action.type if payload.action else None
            handler = self.action_handlers.get(action_type) if action_type else None
            if handler is not None:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
        except Exception as exc:
            tprint(f"[TRIGGER][ERROR] Dispatch of {payload.trigger_id} failed: {exc}")
            self.dispatch_error.publish(DispatchError(payload=payload, error=exc))
        return payload
