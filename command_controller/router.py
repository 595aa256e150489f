"""Routes fired triggers to actions under the configured safety policy.

Only one action runs at a time. A trigger that arrives while an action is
still running is skipped rather than queued. Skips never raise: they come
back as a ``RouteOutcome`` with status "skipped" and are published on the
``skipped`` channel.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Mapping

from command_controller.action_runners import ActionContext, ActionRunner
from command_controller.action_settings import ActionSettings
from command_controller.actions import ActionDefinition, get_action
from command_controller.capabilities import CapabilityRegistry
from command_controller.confirmations import Confirmer
from command_controller.events import (
    BridgeFailure,
    BridgeResult,
    BridgeSkipped,
    BridgeStatus,
    RouteOutcome,
    RouterEvents,
)
from command_controller.fallback_chain import ActionResult, FallbackChain
from command_controller.logger import CommandLogger
from command_controller.remote import RemoteBridgeClient
from command_controller.safety import SafetyGate
from gesture_module.library_store import PoseLibraryStore
from gesture_module.types import ModifierInfo, TriggerDispatch, normalize_handedness


@dataclass(frozen=True)
class ActionRouting:
    base_action_id: str
    action_id: str
    modifier: ModifierInfo


class ActionRouter:
    def __init__(
        self,
        registry: CapabilityRegistry | None = None,
        settings: ActionSettings | None = None,
        confirmer: Confirmer | None = None,
        store: PoseLibraryStore | None = None,
        remote_client: RemoteBridgeClient | None = None,
        pose_label: Callable[[int], str] | None = None,
        clock: Callable[[], float] | None = None,
        logger: CommandLogger | None = None,
    ) -> None:
        self.registry = registry or CapabilityRegistry()
        self.store = store
        self.remote_client = remote_client
        self.events = RouterEvents()
        self.logger = logger or CommandLogger("ROUTER")
        self.gate = SafetyGate(confirmer, clock=clock or time.monotonic)
        self._pose_label = pose_label or (lambda slot: f"pose_{slot}")
        self.in_flight = False

        if settings is None and store is not None:
            settings = ActionSettings.from_dict(store.load_settings())
        self._settings = settings or ActionSettings()

        if remote_client is not None and not self.registry.has("remote_bridge"):
            self.registry.register("remote_bridge", remote_client.send_command)

        self.runner = ActionRunner(self.registry, lambda: self._settings, on_status=self.emit_status)

    # -- settings -------------------------------------------------------------

    @property
    def settings(self) -> ActionSettings:
        return self._settings

    def set_settings(self, settings: ActionSettings | Mapping[str, Any]) -> ActionSettings:
        """Normalize, apply and persist new settings."""
        if not isinstance(settings, ActionSettings):
            settings = ActionSettings.from_dict(settings)
        self._settings = settings
        if self.store is not None:
            self.store.save_settings(settings.to_dict())
        return settings

    def update_settings(self, patch: Mapping[str, Any]) -> ActionSettings:
        return self.set_settings(self._settings.merged(patch))

    # -- routing --------------------------------------------------------------

    @staticmethod
    def resolve_pose_slot(payload: TriggerDispatch) -> int | None:
        if payload.pose is not None:
            return payload.pose.slot_index
        return payload.trigger_pose_slot

    def resolve_pose_label(self, payload: TriggerDispatch, pose_slot: int) -> str:
        label = payload.pose.label if payload.pose is not None else None
        if isinstance(label, str) and label.strip():
            return label.strip()
        return self._pose_label(pose_slot)

    def resolve_modifier(self, payload: TriggerDispatch, pose_slot: int) -> ModifierInfo:
        modifier = self._settings.modifier
        if not modifier.enabled or modifier.strategy != "secondary_hand":
            return ModifierInfo()

        expected = modifier.per_pose_gesture.get(pose_slot) or modifier.gesture
        primary = normalize_handedness(payload.handedness)
        secondary = [
            hand
            for hand in payload.hands
            if not hand.is_primary
            and (primary == "unknown" or normalize_handedness(hand.handedness) != primary)
        ]
        matched = next((hand for hand in secondary if expected in hand.gestures), None)
        if matched is not None:
            return ModifierInfo(
                detected=True,
                gesture=expected,
                expected_gesture=expected,
                handedness=normalize_handedness(matched.handedness),
                source="secondary-hand",
            )

        if payload.modifier.detected and payload.modifier.gesture == expected:
            return ModifierInfo(
                detected=True,
                gesture=expected,
                expected_gesture=expected,
                handedness=normalize_handedness(payload.modifier.handedness),
                source="payload",
            )
        return ModifierInfo(expected_gesture=expected)

    def resolve_action_routing(self, pose_slot: int, payload: TriggerDispatch) -> ActionRouting:
        base_action_id = self._settings.mapping.get(pose_slot, "none")
        modifier = self.resolve_modifier(payload, pose_slot)
        action_id = base_action_id
        if modifier.detected:
            alternate = self._settings.modifier.per_pose_alt_action.get(pose_slot)
            if alternate and alternate != "none":
                action_id = alternate
        return ActionRouting(base_action_id=base_action_id, action_id=action_id, modifier=modifier)

    # -- execution ------------------------------------------------------------

    async def prepare_action(self, action: ActionDefinition) -> None:
        self.registry.ensure_capabilities(action)
        await self.registry.ensure_permissions(action.required_scopes)

    async def handle_trigger(self, payload: TriggerDispatch) -> RouteOutcome:
        execution = self._settings.execution_snapshot()
        pose_slot = self.resolve_pose_slot(payload)
        if pose_slot is None:
            return self._skip(None, "none", "No pose slot on trigger payload.", execution, payload)

        pose_label = self.resolve_pose_label(payload, pose_slot)
        routing = self.resolve_action_routing(pose_slot, payload)
        action = get_action(routing.action_id)
        if action.id == "none":
            return self._skip(pose_slot, "none", f"No action mapped for pose {pose_slot}.", execution, payload)

        if self.in_flight:
            return self._skip(pose_slot, action.id, "Previous action still running.", execution, payload)

        decision = self.gate.check(self._settings, action, pose_slot, pose_label, routing.modifier)
        if not decision.ok:
            return self._skip(pose_slot, action.id, decision.reason or "Blocked by safety gate.", execution, payload)

        self.in_flight = True
        try:
            return await self._execute(action, routing, pose_slot, pose_label, execution, payload)
        finally:
            self.in_flight = False

    async def _execute(
        self,
        action: ActionDefinition,
        routing: ActionRouting,
        pose_slot: int,
        pose_label: str,
        execution: dict[str, Any],
        payload: TriggerDispatch,
    ) -> RouteOutcome:
        context = ActionContext(
            payload=payload,
            pose_slot=pose_slot,
            pose_label=pose_label,
            base_action_id=routing.base_action_id,
            modifier=routing.modifier,
        )
        modifier_tag = f" (modifier: {routing.modifier.gesture})" if routing.modifier.detected else ""
        self.emit_status(f"Running {action.label} for pose {pose_slot} ({pose_label}){modifier_tag}...")

        async def _run(selected: ActionDefinition) -> ActionResult:
            return await self.runner.run(selected.id, context)

        chain = FallbackChain(self.prepare_action, _run)
        try:
            outcome = await chain.execute(action)
        except Exception as exc:
            failure = BridgeFailure(
                pose_slot=pose_slot,
                pose_label=pose_label,
                action_id=action.id,
                base_action_id=routing.base_action_id,
                modifier=routing.modifier,
                execution=execution,
                error=exc,
                payload=payload,
                primary_error=getattr(exc, "primary_error", None),
                fallback_error=getattr(exc, "fallback_error", None),
            )
            self.events.error.publish(failure)
            self.emit_status(f"Action failed for pose {pose_slot}: {str(exc) or 'Unknown error'}", "error")
            return RouteOutcome(status="error", action_id=action.id, reason=str(exc), error=exc)

        result = BridgeResult(
            pose_slot=pose_slot,
            pose_label=pose_label,
            action_id=action.id,
            base_action_id=routing.base_action_id,
            output=outcome.result.output,
            meta=outcome.result.meta,
            modifier=routing.modifier,
            execution=execution,
            payload=payload,
        )
        self.events.result.publish(result)
        suffix = " using fallback" if outcome.fallback_used else ""
        self.emit_status(f"Completed {action.label} for pose {pose_slot}{suffix}.")
        return RouteOutcome(status="ok", action_id=action.id, result=result)

    # -- availability ---------------------------------------------------------

    async def check_availability(self) -> dict[str, Any]:
        """Report registered capabilities and the remote session's helper count."""
        capabilities = self.registry.available()
        session_id = self._settings.remote_session_id
        helpers = 0
        remote_ok = False
        if self.remote_client is not None:
            try:
                status = await self.remote_client.status(session_id)
                helpers = int(status.get("helpersConnected", 0))
                remote_ok = True
            except Exception as exc:
                self.logger.warn(f"Remote bridge status unavailable: {exc}")

        ok = "text_prompt" in capabilities
        flags = " ".join(f"{name}=yes" for name in capabilities) or "none"
        message = (
            f"Capabilities: {flags} remote.session={session_id} "
            f"remote.helpers={helpers if remote_ok else 'unreachable'}"
        )
        self.emit_status(message, "info" if ok else "error")
        return {
            "ok": ok,
            "capabilities": capabilities,
            "remoteSessionId": session_id,
            "remoteStatusOk": remote_ok,
            "remoteHelpersConnected": helpers,
            "message": message,
        }

    # -- events ---------------------------------------------------------------

    def emit_status(self, message: str, kind: str = "info") -> None:
        if kind == "error":
            self.logger.error(message)
        else:
            self.logger.info(message)
        self.events.status.publish(BridgeStatus(message=message, type=kind))

    def _skip(
        self,
        pose_slot: int | None,
        action_id: str,
        reason: str,
        execution: dict[str, Any],
        payload: TriggerDispatch,
    ) -> RouteOutcome:
        self.logger.info(f"Skipped {action_id} for pose {pose_slot}: {reason}")
        self.events.skipped.publish(
            BridgeSkipped(pose_slot=pose_slot, action_id=action_id, reason=reason, execution=execution, payload=payload)
        )
        return RouteOutcome(status="skipped", action_id=action_id, reason=reason)
