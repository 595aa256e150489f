"""Run an action, retrying once with a simpler action when it has a fallback."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from command_controller.actions import ActionDefinition, get_action
from command_controller.errors import ActionExecutionError, CapabilityUnavailable
from utils.log_utils import tprint
from utils.settings_store import deep_log, is_deep_logging

# primary action id -> fallback action id
ACTION_FALLBACKS = {"agent_run_brief": "read_summarize"}

_FALLBACK_CODES = {"ERR_FEATURE_DISABLED", "ERR_SCOPE_REQUIRED", "ERR_PERMISSION_DENIED"}
_FALLBACK_MARKERS = ("agent.run", "agent_run", "toolcalling", "model:tools", "permission denied")


@dataclass
class ActionResult:
    output: str
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class FallbackResult:
    """Result of a fallback chain run."""

    status: str  # "ok" | "fallback"
    action_id: str
    result: ActionResult
    fallback_used: str | None
    attempts_made: list[str]
    elapsed_ms: int
    error_message: str | None = None


def is_fallback_error(error: BaseException) -> bool:
    """True for failures caused by a missing feature, scope or permission."""
    if isinstance(error, CapabilityUnavailable):
        return True
    if str(getattr(error, "code", "") or "") in _FALLBACK_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in _FALLBACK_MARKERS)


class FallbackChain:
    def __init__(
        self,
        prepare: Callable[[ActionDefinition], Awaitable[None]],
        run: Callable[[ActionDefinition], Awaitable[ActionResult]],
        fallbacks: dict[str, str] | None = None,
    ) -> None:
        """
        Args:
            prepare: checks capabilities and permissions for an action
            run: executes an action and returns its result
            fallbacks: primary action id -> fallback action id
        """
        self._prepare = prepare
        self._run = run
        self._fallbacks = ACTION_FALLBACKS if fallbacks is None else fallbacks

    async def execute(self, action: ActionDefinition) -> FallbackResult:
        start = time.monotonic()
        attempts = [action.id]
        try:
            await self._prepare(action)
            result = await self._run(action)
            return FallbackResult(
                status="ok",
                action_id=action.id,
                result=result,
                fallback_used=None,
                attempts_made=attempts,
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )
        except Exception as primary_error:
            fallback_id = self._fallbacks.get(action.id)
            if fallback_id is None or not is_fallback_error(primary_error):
                raise
            if is_deep_logging():
                deep_log(f"[DEEP][FALLBACK_CHAIN] {action.id} failed ({primary_error}); trying {fallback_id}")
            return await self._execute_fallback(action, get_action(fallback_id), primary_error, attempts, start)

    async def _execute_fallback(
        self,
        action: ActionDefinition,
        fallback: ActionDefinition,
        primary_error: Exception,
        attempts: list[str],
        start: float,
    ) -> FallbackResult:
        attempts.append(fallback.id)
        tprint(f"[FALLBACK_CHAIN] {action.id} unavailable; falling back to {fallback.id}")
        try:
            await self._prepare(fallback)
            result = await self._run(fallback)
        except Exception as fallback_error:
            raise ActionExecutionError(
                f"Primary action failed: {str(primary_error) or 'Unknown error'}. "
                f"Fallback failed: {str(fallback_error) or 'Unknown error'}.",
                code=getattr(fallback_error, "code", None),
                primary_error=primary_error,
                fallback_error=fallback_error,
            ) from fallback_error

        result.meta = {
            **result.meta,
            "fallbackFrom": action.id,
            "fallbackActionId": fallback.id,
            "fallbackReason": str(primary_error) or "agent run unavailable.",
        }
        return FallbackResult(
            status="fallback",
            action_id=action.id,
            result=result,
            fallback_used=fallback.id,
            attempts_made=attempts,
            elapsed_ms=int((time.monotonic() - start) * 1000),
            error_message=str(primary_error),
        )
