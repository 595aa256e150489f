"""Remote helper that executes bridge commands for one session.

The helper keeps an SSE stream open against ``/api/bridge/stream``, runs each
``command`` event against its own capability registry and posts the outcome
to ``/api/bridge/result``. When the stream drops it reconnects after
``reconnect_delay`` seconds until ``stop()`` is called.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections.abc import Mapping
from typing import Any

import aiohttp

from command_controller.action_runners import page_text, page_title, page_url, truncate
from command_controller.action_settings import normalize_session_id
from command_controller.actions import REMOTE_ACTION_ID
from command_controller.bridge import SseEvent
from command_controller.capabilities import CapabilityRegistry
from command_controller.errors import BridgeError
from command_controller.logger import CommandLogger
from utils.settings_store import deep_log

HELPER_SCOPES = ("model:prompt", "browser:activeTab.read", "browser:activeTab.screenshot")
DEFAULT_MAX_CONTEXT_CHARS = 6400
RECONNECT_DELAY_SECS = 1.4


class SseParser:
    """Incremental parser for ``text/event-stream`` lines."""

    def __init__(self) -> None:
        self._event = "message"
        self._data: list[str] = []

    def feed(self, line: str) -> SseEvent | None:
        """Consume one line (without its newline); return an event on a blank line."""
        if not line:
            if not self._data:
                self._event = "message"
                return None
            raw = "\n".join(self._data)
            event = self._event
            self._event = "message"
            self._data = []
            try:
                data = json.loads(raw)
            except ValueError:
                data = raw
            return SseEvent(event, data)

        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value or "message"
        elif field == "data":
            self._data.append(value)
        return None


class BridgeHelper:
    def __init__(
        self,
        registry: CapabilityRegistry,
        session_id: str = "default",
        base_url: str | None = None,
        reconnect_delay: float = RECONNECT_DELAY_SECS,
        logger: CommandLogger | None = None,
    ) -> None:
        self.registry = registry
        self.session_id = normalize_session_id(session_id)
        self.base_url = (base_url or os.getenv("BRIDGE_URL", "http://127.0.0.1:4173")).rstrip("/")
        self.reconnect_delay = reconnect_delay
        self.logger = logger or CommandLogger(f"HELPER:{self.session_id}")
        self.connected = False
        self.stopped = False
        self.permissions_ready = False
        self.last_status = "idle"
        self.last_command_id: str | None = None
        self.last_error: str | None = None
        self.last_ping_at = 0.0
        self._tasks: set[asyncio.Task] = set()

    def status(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "serverOrigin": self.base_url,
            "connected": self.connected,
            "lastStatus": self.last_status,
            "lastCommandId": self.last_command_id,
            "lastError": self.last_error,
            "lastPingAt": self.last_ping_at,
        }

    def set_status(self, message: str) -> None:
        self.last_status = message
        self.logger.info(message)

    # -- stream ---------------------------------------------------------------

    async def run(self) -> None:
        """Stay connected to the relay until stopped."""
        self.stopped = False
        self.set_status(f'Helper started for session "{self.session_id}".')
        while not self.stopped:
            try:
                await self.listen()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self.last_error = str(exc) or exc.__class__.__name__
            if self.stopped:
                break
            self.connected = False
            self.set_status("Relay disconnected. Reconnecting...")
            await asyncio.sleep(self.reconnect_delay)
        self.connected = False

    def stop(self) -> None:
        self.stopped = True
        self.connected = False
        for task in list(self._tasks):
            task.cancel()
        self.set_status("Stopped.")

    async def listen(self) -> None:
        url = f"{self.base_url}/api/bridge/stream"
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=10)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, params={"session": self.session_id}) as resp:
                if resp.status != 200:
                    raise aiohttp.ClientResponseError(
                        resp.request_info, resp.history, status=resp.status, message="stream rejected"
                    )
                self.connected = True
                self.last_error = None
                self.set_status(f"Connected to relay ({self.session_id}).")
                parser = SseParser()
                async for raw in resp.content:
                    if self.stopped:
                        return
                    event = parser.feed(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
                    if event is not None:
                        self.handle_event(event)

    def handle_event(self, event: SseEvent) -> None:
        if event.event == "ready":
            self.connected = True
        elif event.event == "ping":
            self.last_ping_at = time.time()
        elif event.event == "command" and isinstance(event.data, Mapping):
            task = asyncio.get_running_loop().create_task(self.handle_command(event.data))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            deep_log(f"[DEEP][HELPER] ignoring event {event.event}")

    # -- commands -------------------------------------------------------------

    async def handle_command(self, payload: Mapping[str, Any]) -> dict[str, Any] | None:
        """Execute one pushed command and report its result; returns the result."""
        command = payload.get("command") if isinstance(payload.get("command"), Mapping) else payload
        command_id = str(command.get("id") or "").strip()
        if not command_id:
            return None

        self.last_command_id = command_id
        action = command.get("action") or "unknown"
        self.set_status(f"Executing command {command_id[:8]} ({action}).")
        try:
            if action != REMOTE_ACTION_ID:
                raise BridgeError(f"Unsupported command action: {action}")
            result = await self.summarize_current_tab(command)
        except Exception as exc:
            self.last_error = str(exc) or exc.__class__.__name__
            result = {
                "ok": False,
                "errorCode": getattr(exc, "code", None) or "REMOTE_HELPER_ERROR",
                "errorMessage": self.last_error,
            }

        try:
            await self.post_result(command_id, result)
        except (aiohttp.ClientError, asyncio.TimeoutError, BridgeError) as exc:
            self.last_error = str(exc) or exc.__class__.__name__
            self.set_status(f"Failed to report result: {self.last_error}")
            return result
        if result.get("ok"):
            self.set_status("Command completed.")
        else:
            self.set_status(f"Command failed: {result['errorMessage']}")
        return result

    async def ensure_permissions(self) -> None:
        if self.permissions_ready:
            return
        await self.registry.ensure_permissions(HELPER_SCOPES)
        self.permissions_ready = True

    async def summarize_current_tab(self, command: Mapping[str, Any]) -> dict[str, Any]:
        await self.ensure_permissions()
        self.registry.require("text_prompt")
        page = await self.registry.call("page_read")
        title = page_title(page)
        text = page_text(page)
        url = page_url(page)

        screenshot: Any = None
        degraded = False
        degrade_reason = ""
        if self.registry.has("screenshot"):
            try:
                screenshot = await self.registry.call("screenshot")
            except Exception as exc:
                degraded = True
                degrade_reason = str(exc) or "Screenshot capture failed."
        else:
            degraded = True
            degrade_reason = "Screenshot capability is unavailable."

        if isinstance(screenshot, Mapping):
            screenshot_chars = len(str(screenshot.get("dataUrl") or ""))
        else:
            screenshot_chars = len(screenshot) if isinstance(screenshot, str) else 0

        options = command.get("options") if isinstance(command.get("options"), Mapping) else {}
        max_chars = int(options.get("maxContextChars") or DEFAULT_MAX_CONTEXT_CHARS)
        prompt = "\n\n".join(
            [
                "You are a concise browsing assistant.",
                f"Target tab title: {title}",
                f"Target tab URL: {url}",
                f"Trigger pose: {command.get('poseSlot')} ({command.get('poseLabel')})",
                f"Screenshot data URL length: {screenshot_chars}",
                f"Screenshot degraded mode: {degrade_reason}" if degraded else "Screenshot capture succeeded.",
                "Respond with: 1) 2-3 sentence summary, 2) one safe next action, 3) one risk check.",
                "Page content:",
                truncate(text, max_chars),
            ]
        )
        output = await self.registry.call(
            "text_prompt", prompt, provider=command.get("provider"), model=command.get("model")
        )
        return {
            "ok": True,
            "output": str(output or "").strip(),
            "meta": {
                "remoteHelper": True,
                "action": command.get("action"),
                "pageTitle": title,
                "targetTitle": title,
                "targetUrl": url,
                "textChars": len(text),
                "screenshotChars": screenshot_chars,
                "degraded": degraded,
                "degradeReason": degrade_reason if degraded else "",
            },
        }

    async def post_result(self, command_id: str, result: Mapping[str, Any]) -> None:
        url = f"{self.base_url}/api/bridge/result"
        body = {"sessionId": self.session_id, "commandId": command_id, "result": dict(result)}
        timeout = aiohttp.ClientTimeout(total=10)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=body) as resp:
                if resp.status == 200:
                    return
                try:
                    payload = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    payload = None
                message = payload.get("error") if isinstance(payload, dict) else None
                raise BridgeError(message or f"Failed to post helper result ({resp.status}).", resp.status)
