"""Tests for the session-scoped command broker."""

import asyncio
import json

import pytest

from command_controller.bridge import CommandBroker, SseEvent
from command_controller.errors import (
    BridgeError,
    BridgeTimeoutError,
    BridgeValidationError,
    CommandConflictError,
    NoHelperConnectedError,
)
from command_controller.remote import BrokerRemoteClient

COMMAND = {"id": "c1", "action": "remote_read_screenshot_summarize"}


def _drain(channel):
    """Pull every queued event off a helper channel without waiting."""
    events = []
    while not channel._queue.empty():
        item = channel._queue.get_nowait()
        if item is not None:
            events.append(item)
    return events


class TestDispatch:
    def test_no_helper_rejects_without_creating_session(self):
        """Dispatch to a session with no helpers fails with 409 and leaves no trace."""
        broker = CommandBroker(timeout_secs=1)

        async def scenario():
            with pytest.raises(NoHelperConnectedError) as excinfo:
                broker.dispatch("lab", COMMAND)
            return excinfo.value

        error = asyncio.run(scenario())

        assert error.status == 409
        assert str(error) == 'No target helper connected for session "lab".'
        assert broker.session_ids() == []

    def test_validation_errors(self):
        """Missing action or id fail with 400 before any session lookup."""
        broker = CommandBroker(timeout_secs=1)

        async def scenario():
            with pytest.raises(BridgeValidationError, match="Missing command.action."):
                broker.dispatch("lab", {"id": "c1"})
            with pytest.raises(BridgeValidationError, match="Missing command id."):
                broker.dispatch("lab", {"action": "x"})

        asyncio.run(scenario())

    def test_command_reaches_every_helper_and_first_result_wins(self):
        """All helpers receive the command; the first posted result resolves it."""
        broker = CommandBroker(timeout_secs=5)

        async def scenario():
            first = broker.connect("lab")
            second = broker.connect("lab")
            _drain(first)
            _drain(second)

            future = broker.dispatch("lab", COMMAND)
            assert broker.resolve("lab", "c1", {"ok": True, "output": "one"}) is True
            assert broker.resolve("lab", "c1", {"ok": True, "output": "two"}) is False
            return await future, _drain(first), _drain(second)

        result, first_events, second_events = asyncio.run(scenario())

        assert result == {"ok": True, "output": "one"}
        for events in (first_events, second_events):
            assert [e.event for e in events] == ["command"]
            assert events[0].data == {"sessionId": "lab", "command": COMMAND}

    def test_duplicate_pending_id_conflicts(self):
        """A second dispatch with a still-pending id is rejected with 409."""
        broker = CommandBroker(timeout_secs=5)

        async def scenario():
            broker.connect("lab")
            future = broker.dispatch("lab", COMMAND)
            with pytest.raises(CommandConflictError):
                broker.dispatch("lab", COMMAND)
            broker.resolve("lab", "c1", {"ok": True})
            await future

        asyncio.run(scenario())

    def test_resolve_without_pending(self):
        """Resolving an unknown id is a no-op returning False."""
        broker = CommandBroker(timeout_secs=1)

        assert broker.resolve("lab", "c1", {"ok": True}) is False
        assert broker.session_ids() == []

    def test_timeout_rejects_and_drops_entry(self):
        """An unanswered command times out and a late result is ignored."""
        broker = CommandBroker(timeout_secs=0.01)

        async def scenario():
            broker.connect("lab")
            future = broker.dispatch("lab", COMMAND)
            with pytest.raises(BridgeTimeoutError):
                await future
            return broker.resolve("lab", "c1", {"ok": True}), broker.status("lab")

        late, status = asyncio.run(scenario())

        assert late is False
        assert status["pendingCommands"] == 0

    def test_cancelled_future_purges_pending(self):
        """Cancelling the caller's future removes the pending entry."""
        broker = CommandBroker(timeout_secs=5)

        async def scenario():
            channel = broker.connect("lab")
            future = broker.dispatch("lab", COMMAND)
            future.cancel()
            await asyncio.sleep(0)
            pending = broker.status("lab")["pendingCommands"]
            broker.disconnect("lab", channel)
            return pending

        assert asyncio.run(scenario()) == 0
        assert broker.session_ids() == []

    def test_shutdown_rejects_pending(self):
        """Shutdown fails outstanding commands and closes helper channels."""
        broker = CommandBroker(timeout_secs=5)

        async def scenario():
            channel = broker.connect("lab")
            future = broker.dispatch("lab", COMMAND)
            broker.shutdown()
            with pytest.raises(BridgeError, match="Bridge shutting down"):
                await future
            return channel

        channel = asyncio.run(scenario())

        assert channel.closed is True
        assert broker.session_ids() == []


class TestSessions:
    def test_status_does_not_create_session(self):
        """Status of an unknown session reports zeros and creates nothing."""
        broker = CommandBroker(timeout_secs=1, clock=lambda: 12.5)

        status = broker.status("  lab!! ")

        assert status == {
            "ok": True,
            "sessionId": "lab",
            "helpersConnected": 0,
            "pendingCommands": 0,
            "updatedAt": 12500,
        }
        assert broker.session_ids() == []

    def test_connect_sends_ready_and_disconnect_drops_session(self):
        """The first event on a channel is ready; the last helper leaving drops the session."""
        broker = CommandBroker(timeout_secs=1)

        async def scenario():
            channel = broker.connect("lab")
            events = _drain(channel)
            ids_while_connected = broker.session_ids()
            broker.disconnect("lab", channel)
            return events, ids_while_connected

        events, ids = asyncio.run(scenario())

        assert events[0].event == "ready"
        assert events[0].data["helpersConnected"] == 1
        assert ids == ["lab"]
        assert broker.session_ids() == []

    def test_idle_channel_yields_pings(self):
        """An idle helper stream produces ping keepalives."""
        broker = CommandBroker(timeout_secs=1)

        async def scenario():
            channel = broker.connect("lab")
            stream = channel.events(ping_interval=0.01)
            ready = await stream.__anext__()
            ping = await stream.__anext__()
            channel.close()
            rest = [event async for event in stream]
            return ready, ping, rest

        ready, ping, rest = asyncio.run(scenario())

        assert ready.event == "ready"
        assert ping.event == "ping"
        assert ping.data["timestamp"].endswith("Z")
        assert rest == []


class TestSseEvent:
    def test_encode(self):
        """Events are framed as event and data lines followed by a blank line."""
        encoded = SseEvent("command", {"id": "c1"}).encode()

        assert encoded == 'event: command\ndata: {"id": "c1"}\n\n'
        assert json.loads(encoded.splitlines()[1][len("data: "):]) == {"id": "c1"}


class TestBrokerRemoteClient:
    def test_send_command_assigns_id_and_waits(self):
        """The in-process client prepares the command and returns the helper result."""
        broker = CommandBroker(timeout_secs=5)
        client = BrokerRemoteClient(broker)

        async def scenario():
            channel = broker.connect("lab")
            _drain(channel)
            task = asyncio.create_task(client.send_command({"action": "remote_read_screenshot_summarize"}, "lab"))
            await asyncio.sleep(0)
            sent = _drain(channel)[0].data["command"]
            broker.resolve("lab", sent["id"], {"ok": True, "output": "done"})
            return sent, await task

        sent, response = asyncio.run(scenario())

        assert sent["id"].startswith("cmd-")
        assert sent["timestamp"].endswith("Z")
        assert response == {"ok": True, "sessionId": "lab", "commandId": sent["id"], "result": {"ok": True, "output": "done"}}

    def test_status_passthrough(self):
        """status mirrors the broker's session status."""
        client = BrokerRemoteClient(CommandBroker(timeout_secs=1))

        status = asyncio.run(client.status("lab"))

        assert status["helpersConnected"] == 0
