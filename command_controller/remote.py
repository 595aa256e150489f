"""Clients the router uses to hand commands to the command broker."""

from __future__ import annotations

import os
from typing import Any, Protocol

import aiohttp

from command_controller.bridge import CommandBroker
from command_controller.errors import BridgeError


class RemoteBridgeClient(Protocol):
    async def send_command(self, command: dict[str, Any], session_id: str) -> dict[str, Any]: ...

    async def status(self, session_id: str) -> dict[str, Any]: ...


class BrokerRemoteClient:
    """Talks to a broker running in the same process."""

    def __init__(self, broker: CommandBroker) -> None:
        self.broker = broker

    async def send_command(self, command: dict[str, Any], session_id: str) -> dict[str, Any]:
        prepared = self.broker.prepare_command(session_id, command)
        result = await self.broker.dispatch(prepared["sessionId"], prepared)
        return {
            "ok": True,
            "sessionId": prepared["sessionId"],
            "commandId": prepared["id"],
            "result": result,
        }

    async def status(self, session_id: str) -> dict[str, Any]:
        return self.broker.status(session_id)


class HttpBridgeClient:
    """Talks to a bridge server over HTTP."""

    def __init__(self, base_url: str | None = None, timeout_secs: float = 30.0) -> None:
        self.base_url = (base_url or os.getenv("BRIDGE_URL", "http://127.0.0.1:4173")).rstrip("/")
        self.timeout_secs = timeout_secs

    async def send_command(self, command: dict[str, Any], session_id: str) -> dict[str, Any]:
        url = f"{self.base_url}/api/bridge/command"
        timeout = aiohttp.ClientTimeout(total=self.timeout_secs)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json={"sessionId": session_id, "command": command}) as resp:
                try:
                    payload = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    payload = None
                if resp.status != 200:
                    message = payload.get("error") if isinstance(payload, dict) else None
                    raise BridgeError(message or f"Remote bridge command failed ({resp.status}).", resp.status)
        return payload if isinstance(payload, dict) else {}

    async def status(self, session_id: str) -> dict[str, Any]:
        url = f"{self.base_url}/api/bridge/status"
        timeout = aiohttp.ClientTimeout(total=5.0)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, params={"session": session_id}) as resp:
                if resp.status != 200:
                    raise BridgeError(f"Bridge status failed ({resp.status}).", resp.status)
                return await resp.json()
