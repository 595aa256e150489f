"""Named host capabilities the action runners call into.

The host (browser extension bridge, desktop shell, test harness) registers
the callables it actually has. Actions declare which names they need, and
the registry is checked up front so a missing capability surfaces as one
actionable error instead of failing halfway through an action.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from command_controller.actions import ActionDefinition
from command_controller.errors import CapabilityUnavailable, PermissionDeniedError

CAPABILITY_NAMES = (
    "text_prompt",
    "page_read",
    "screenshot",
    "tab_open",
    "tab_html",
    "tab_read",
    "tab_close",
    "speech_synthesis",
    "speech_transcription",
    "tool_list",
    "tool_call",
    "agent_run",
    "permissions",
    "remote_bridge",
)

_HINTS = {
    "text_prompt": "Register a model prompt handler.",
    "page_read": "Enable active tab reading.",
    "screenshot": "Enable active tab screenshots.",
    "tab_open": "Enable tab creation.",
    "tab_html": "Enable tab HTML access.",
    "tab_read": "Enable tab reading.",
    "speech_synthesis": "Configure a text-to-speech provider.",
    "speech_transcription": "Configure a speech-to-text provider.",
    "tool_list": "Enable MCP tool listing.",
    "tool_call": "Enable MCP tool calls.",
    "agent_run": "Enable the tool-calling agent feature.",
    "remote_bridge": "Start the command broker or point the client at a bridge server.",
}

GRANTED_STATES = {"granted-once", "granted-always", "granted"}


def permission_granted(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value in GRANTED_STATES)


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CapabilityRegistry:
    def __init__(self, capabilities: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self._capabilities: dict[str, Callable[..., Any]] = {}
        for name, handler in (capabilities or {}).items():
            self.register(name, handler)

    def register(self, name: str, handler: Callable[..., Any]) -> None:
        if name not in CAPABILITY_NAMES:
            raise ValueError(f"Unknown capability: {name}")
        if not callable(handler):
            raise TypeError(f"Capability {name} must be callable")
        self._capabilities[name] = handler

    def unregister(self, name: str) -> None:
        self._capabilities.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._capabilities

    def available(self) -> list[str]:
        """Names of every registered capability, in catalog order."""
        return [name for name in CAPABILITY_NAMES if name in self._capabilities]

    def require(self, name: str) -> Callable[..., Any]:
        handler = self._capabilities.get(name)
        if handler is None:
            hint = _HINTS.get(name, "")
            raise CapabilityUnavailable(name, f"Capability '{name}' is unavailable. {hint}".strip())
        return handler

    async def call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a capability, awaiting it when it is a coroutine function."""
        return await maybe_await(self.require(name)(*args, **kwargs))

    def missing(self, names: Iterable[str]) -> list[str]:
        return [name for name in names if name not in self._capabilities]

    def ensure_capabilities(self, action: ActionDefinition) -> None:
        missing = self.missing(action.capabilities)
        if missing:
            self.require(missing[0])

    async def ensure_permissions(self, scopes: Iterable[str]) -> None:
        """Ask the ``permissions`` capability for any scope not yet granted.

        The capability receives the scope list and returns ``{scope: state}``.
        Without a registered ``permissions`` capability every scope is treated
        as granted.
        """
        required = list(scopes)
        if not required or not self.has("permissions"):
            return

        states = await self.call("permissions", required)
        states = states if isinstance(states, Mapping) else {}
        denied = [scope for scope in required if not permission_granted(states.get(scope))]
        if denied:
            raise PermissionDeniedError(denied, f"Permission denied for scopes: {', '.join(denied)}.")
