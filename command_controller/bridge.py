"""Session-scoped command broker between action callers and remote helpers.

Helpers hold a long-lived push channel per session. ``dispatch`` fans a
command out to every helper of the session and returns a future that the
first posted result fulfils; unanswered commands expire after the configured
timeout. Sessions are created lazily and dropped again as soon as they have
neither helpers nor pending commands.

Every entry point must be called on the event loop thread; the HTTP routes
that reach the broker are coroutines, so session state has a single writer
without any locking.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from command_controller.action_settings import normalize_session_id
from command_controller.errors import (
    BridgeError,
    BridgeTimeoutError,
    BridgeValidationError,
    CommandConflictError,
    NoHelperConnectedError,
)
from command_controller.logger import CommandLogger
from utils.settings_store import bridge_ping_interval_secs, bridge_timeout_secs, deep_log


def iso_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_command_id() -> str:
    return f"cmd-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class SseEvent:
    event: str
    data: Any

    def encode(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"


class HelperChannel:
    """One connected helper's outbound event queue."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.id = uuid.uuid4().hex
        self.closed = False
        self._queue: asyncio.Queue[SseEvent | None] = asyncio.Queue()

    def send(self, event: str, data: Any) -> bool:
        if self.closed:
            return False
        self._queue.put_nowait(SseEvent(event, data))
        return True

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    async def next_event(self, timeout: float | None = None) -> SseEvent | None:
        """Next queued event; None on timeout or once the channel is closed."""
        if self.closed and self._queue.empty():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def events(self, ping_interval: float | None = None) -> AsyncIterator[SseEvent]:
        """Yield queued events, interleaving ``ping`` keepalives when idle."""
        interval = bridge_ping_interval_secs() if ping_interval is None else ping_interval
        while not self.closed or not self._queue.empty():
            event = await self.next_event(interval)
            if event is not None:
                yield event
            elif self.closed:
                return
            else:
                yield SseEvent("ping", {"timestamp": iso_timestamp()})


@dataclass
class PendingCommand:
    command_id: str
    future: asyncio.Future
    timer: asyncio.TimerHandle
    created_at: int


@dataclass
class BridgeSession:
    session_id: str
    helpers: dict[str, HelperChannel] = field(default_factory=dict)
    pending: dict[str, PendingCommand] = field(default_factory=dict)
    updated_at: int = 0

    @property
    def is_idle(self) -> bool:
        return not self.helpers and not self.pending


class SessionStore:
    """Session table owned by one broker instance."""

    def __init__(self) -> None:
        self._sessions: dict[str, BridgeSession] = {}

    def get(self, session_id: str) -> BridgeSession | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str, now: int) -> BridgeSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = BridgeSession(session_id=session_id, updated_at=now)
            self._sessions[session_id] = session
        return session

    def discard_if_idle(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.is_idle:
            del self._sessions[session_id]

    def ids(self) -> list[str]:
        return list(self._sessions)

    def values(self) -> list[BridgeSession]:
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()


class CommandBroker:
    def __init__(
        self,
        timeout_secs: float | None = None,
        store: SessionStore | None = None,
        clock: Callable[[], float] | None = None,
        logger: CommandLogger | None = None,
    ) -> None:
        self.timeout_secs = bridge_timeout_secs() if timeout_secs is None else timeout_secs
        self.store = store or SessionStore()
        self._clock = clock or time.time
        self.logger = logger or CommandLogger("BRIDGE")

    def _now(self) -> int:
        return int(self._clock() * 1000)

    # -- helpers --------------------------------------------------------------

    def connect(self, session_id: Any) -> HelperChannel:
        """Attach a new helper channel and push ``ready`` with the session status."""
        sid = normalize_session_id(session_id)
        session = self.store.get_or_create(sid, self._now())
        channel = HelperChannel(sid)
        session.helpers[channel.id] = channel
        session.updated_at = self._now()
        channel.send("ready", self.status(sid))
        self.logger.info(f"Helper connected to session {sid} ({len(session.helpers)} total)")
        return channel

    def disconnect(self, session_id: Any, channel: HelperChannel) -> None:
        sid = normalize_session_id(session_id)
        channel.close()
        session = self.store.get(sid)
        if session is None:
            return
        if session.helpers.pop(channel.id, None) is not None:
            session.updated_at = self._now()
            self.logger.info(f"Helper disconnected from session {sid}")
        self.store.discard_if_idle(sid)

    # -- status ---------------------------------------------------------------

    def status(self, session_id: Any) -> dict[str, Any]:
        sid = normalize_session_id(session_id)
        session = self.store.get(sid)
        return {
            "ok": True,
            "sessionId": sid,
            "helpersConnected": len(session.helpers) if session else 0,
            "pendingCommands": len(session.pending) if session else 0,
            "updatedAt": session.updated_at if session else self._now(),
        }

    def session_ids(self) -> list[str]:
        return self.store.ids()

    # -- commands -------------------------------------------------------------

    def prepare_command(self, session_id: Any, command: Any) -> dict[str, Any]:
        """Copy a raw command, assigning ``id`` and ``timestamp`` when absent."""
        sid = normalize_session_id(session_id)
        prepared = dict(command) if isinstance(command, Mapping) else {}
        prepared["id"] = str(prepared.get("id") or generate_command_id())
        prepared["timestamp"] = prepared.get("timestamp") or iso_timestamp()
        prepared["sessionId"] = sid
        return prepared

    def dispatch(self, session_id: Any, command: Mapping[str, Any]) -> asyncio.Future:
        """Broadcast ``command`` to the session's helpers.

        Must be called from a running event loop. Raises synchronously for
        validation failures; the returned future resolves with the first
        posted result or fails with :class:`BridgeTimeoutError`.
        """
        sid = normalize_session_id(session_id)
        if not isinstance(command, Mapping) or not command.get("action"):
            raise BridgeValidationError("Missing command.action.")
        command_id = str(command.get("id") or "").strip()
        if not command_id:
            raise BridgeValidationError("Missing command id.")

        session = self.store.get(sid)
        if session is not None and command_id in session.pending:
            raise CommandConflictError(f"Duplicate command id: {command_id}")
        if session is None or not session.helpers:
            raise NoHelperConnectedError(f'No target helper connected for session "{sid}".')

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(self.timeout_secs, self._expire, sid, command_id)
        session.pending[command_id] = PendingCommand(command_id, future, timer, self._now())
        session.updated_at = self._now()
        future.add_done_callback(lambda fut: self._on_future_done(sid, command_id, fut))

        envelope = {"sessionId": sid, "command": {**command, "id": command_id}}
        delivered = 0
        for channel in list(session.helpers.values()):
            if channel.send("command", envelope):
                delivered += 1
        deep_log(f"[DEEP][BRIDGE] command {command_id} sent to {delivered} helper(s) in {sid}")
        return future

    async def submit(self, session_id: Any, command: Mapping[str, Any]) -> Any:
        """Dispatch and wait for the result."""
        return await self.dispatch(session_id, command)

    def resolve(self, session_id: Any, command_id: Any, result: Any) -> bool:
        """Fulfil a pending command; False when nothing is pending under that id."""
        sid = normalize_session_id(session_id)
        cid = str(command_id or "").strip()
        session = self.store.get(sid)
        if session is None or cid not in session.pending:
            return False

        pending = session.pending.pop(cid)
        pending.timer.cancel()
        session.updated_at = self._now()
        if not pending.future.done():
            pending.future.set_result(result)
        self.store.discard_if_idle(sid)
        return True

    def shutdown(self) -> None:
        """Fail every pending command and close every helper channel."""
        for session in self.store.values():
            for pending in list(session.pending.values()):
                pending.timer.cancel()
                if not pending.future.done():
                    pending.future.set_exception(BridgeError("Bridge shutting down"))
            session.pending.clear()
            for channel in session.helpers.values():
                channel.close()
            session.helpers.clear()
        self.store.clear()
        self.logger.info("Command broker shut down")

    # -- internals ------------------------------------------------------------

    def _expire(self, session_id: str, command_id: str) -> None:
        session = self.store.get(session_id)
        if session is None:
            return
        pending = session.pending.pop(command_id, None)
        if pending is None:
            return
        session.updated_at = self._now()
        self.logger.warn(f"Command {command_id} in session {session_id} timed out")
        if not pending.future.done():
            pending.future.set_exception(BridgeTimeoutError("Remote helper timed out waiting for result."))
        self.store.discard_if_idle(session_id)

    def _on_future_done(self, session_id: str, command_id: str, future: asyncio.Future) -> None:
        if not future.cancelled():
            return
        session = self.store.get(session_id)
        if session is None:
            return
        pending = session.pending.get(command_id)
        if pending is None or pending.future is not future:
            return
        pending.timer.cancel()
        del session.pending[command_id]
        session.updated_at = self._now()
        self.store.discard_if_idle(session_id)
