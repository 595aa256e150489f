"""Tests for the remote helper: SSE parsing and command execution."""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest
from aiohttp import test_utils, web

from command_controller.bridge import SseEvent
from command_controller.bridge_helper import HELPER_SCOPES, BridgeHelper, SseParser
from command_controller.capabilities import CapabilityRegistry

PAGE = {"title": "Docs", "text": "hello world", "url": "https://example.com/docs"}


def _command(**extra):
    command = {"id": "cmd-1", "action": "remote_read_screenshot_summarize", "poseSlot": 0, "poseLabel": "like"}
    command.update(extra)
    return {"sessionId": "lab", "command": command}


@pytest.fixture
def make_helper():
    def _make(**caps):
        handlers = {"text_prompt": AsyncMock(return_value=" remote summary "), "page_read": Mock(return_value=PAGE)}
        handlers.update(caps)
        registry = CapabilityRegistry({name: fn for name, fn in handlers.items() if fn is not None})
        helper = BridgeHelper(registry, session_id="lab", base_url="http://relay.test")
        helper.post_result = AsyncMock()
        return helper, handlers

    return _make


class TestSseParser:
    def test_event_with_json_data(self):
        """Fields accumulate until a blank line emits the event."""
        parser = SseParser()

        assert parser.feed("event: command") is None
        assert parser.feed('data: {"id": "c1"}') is None
        event = parser.feed("")

        assert event == SseEvent("command", {"id": "c1"})

    def test_comments_and_raw_data(self):
        """Comment lines are ignored and non-JSON data is kept as text."""
        parser = SseParser()

        parser.feed(": keepalive")
        parser.feed("data: first")
        parser.feed("data: second")

        assert parser.feed("") == SseEvent("message", "first\nsecond")

    def test_blank_line_without_data(self):
        """A lone blank line emits nothing and resets the event name."""
        parser = SseParser()
        parser.feed("event: ping")

        assert parser.feed("") is None
        parser.feed("data: 1")
        assert parser.feed("").event == "message"


class TestHandleCommand:
    def test_success_posts_result(self, make_helper):
        """A supported command reads the tab, prompts the model and posts the result."""
        helper, handlers = make_helper(screenshot=Mock(return_value={"dataUrl": "data:image/png;base64,abcd"}))

        result = asyncio.run(helper.handle_command(_command(provider="ollama", model="llama3.2")))

        assert result["ok"] is True
        assert result["output"] == "remote summary"
        assert result["meta"] == {
            "remoteHelper": True,
            "action": "remote_read_screenshot_summarize",
            "pageTitle": "Docs",
            "targetTitle": "Docs",
            "targetUrl": "https://example.com/docs",
            "textChars": len("hello world"),
            "screenshotChars": len("data:image/png;base64,abcd"),
            "degraded": False,
            "degradeReason": "",
        }
        helper.post_result.assert_awaited_once_with("cmd-1", result)
        assert handlers["text_prompt"].await_args.kwargs == {"provider": "ollama", "model": "llama3.2"}
        assert helper.last_status == "Command completed."
        assert helper.last_command_id == "cmd-1"

    def test_screenshot_failure_degrades(self, make_helper):
        """A failing screenshot still produces a result, flagged as degraded."""
        helper, handlers = make_helper(screenshot=Mock(side_effect=RuntimeError("tab hidden")))

        result = asyncio.run(helper.handle_command(_command()))

        assert result["ok"] is True
        assert result["meta"]["degraded"] is True
        assert result["meta"]["degradeReason"] == "tab hidden"
        assert result["meta"]["screenshotChars"] == 0
        assert "Screenshot degraded mode: tab hidden" in handlers["text_prompt"].await_args.args[0]

    def test_missing_screenshot_capability_degrades(self, make_helper):
        """Without a screenshot capability the run degrades with a fixed reason."""
        helper, _ = make_helper()

        result = asyncio.run(helper.handle_command(_command()))

        assert result["meta"]["degradeReason"] == "Screenshot capability is unavailable."

    def test_context_is_truncated(self, make_helper):
        """Page text in the prompt is cut to options.maxContextChars."""
        helper, handlers = make_helper(page_read=Mock(return_value={**PAGE, "text": "x" * 500}))

        asyncio.run(helper.handle_command(_command(options={"maxContextChars": 50})))

        prompt = handlers["text_prompt"].await_args.args[0]
        assert "x" * 51 not in prompt

    def test_unsupported_action_reports_failure(self, make_helper):
        """Unknown actions are posted back as a failed result."""
        helper, _ = make_helper()

        result = asyncio.run(helper.handle_command(_command(action="format_disk")))

        assert result == {
            "ok": False,
            "errorCode": "REMOTE_HELPER_ERROR",
            "errorMessage": "Unsupported command action: format_disk",
        }
        helper.post_result.assert_awaited_once_with("cmd-1", result)
        assert helper.last_status == "Command failed: Unsupported command action: format_disk"

    def test_missing_prompt_capability(self, make_helper):
        """A helper without a model reports the capability error."""
        helper, _ = make_helper(text_prompt=None)

        result = asyncio.run(helper.handle_command(_command()))

        assert result["ok"] is False
        assert "text_prompt" in result["errorMessage"]

    def test_command_without_id_is_ignored(self, make_helper):
        """Commands lacking an id are dropped without posting anything."""
        helper, _ = make_helper()

        assert asyncio.run(helper.handle_command({"command": {"action": "x"}})) is None
        helper.post_result.assert_not_awaited()

    def test_permissions_requested_once(self, make_helper):
        """Helper scopes are requested on the first command only."""
        permissions = AsyncMock(return_value={scope: "granted" for scope in HELPER_SCOPES})
        helper, _ = make_helper(permissions=permissions)

        asyncio.run(helper.handle_command(_command()))
        asyncio.run(helper.handle_command(_command(id="cmd-2")))

        permissions.assert_awaited_once_with(list(HELPER_SCOPES))


class TestEvents:
    def test_ready_and_ping(self, make_helper):
        """ready marks the helper connected and ping records the time."""
        helper, _ = make_helper()

        helper.handle_event(SseEvent("ready", {"helpersConnected": 1}))
        with patch("command_controller.bridge_helper.time.time", return_value=42.0):
            helper.handle_event(SseEvent("ping", {}))

        status = helper.status()
        assert status["connected"] is True
        assert status["lastPingAt"] == 42.0
        assert status["serverOrigin"] == "http://relay.test"

    def test_command_event_schedules_execution(self, make_helper):
        """A command event is executed as a background task."""
        helper, _ = make_helper()

        async def scenario():
            helper.handle_event(SseEvent("command", _command()))
            await asyncio.gather(*helper._tasks)

        asyncio.run(scenario())

        helper.post_result.assert_awaited_once()


class TestStream:
    def test_invalid_utf8_does_not_break_stream(self):
        """Undecodable bytes are replaced and later events are still handled."""
        async def stream(request):
            response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await response.prepare(request)
            await response.write(b"\xff\xfe\n\nevent: ready\ndata: {\"helpersConnected\": 1}\n\n")
            await response.write(b"event: ping\ndata: {\"timestamp\": \"x\"}\n\n")
            await response.write_eof()
            return response

        app = web.Application()
        app.router.add_get("/api/bridge/stream", stream)

        async def scenario():
            server = test_utils.TestServer(app)
            await server.start_server()
            try:
                helper = BridgeHelper(CapabilityRegistry(), session_id="lab", base_url=str(server.make_url("/")))
                await helper.listen()
                return helper
            finally:
                await server.close()

        helper = asyncio.run(scenario())

        assert helper.connected is True
        assert helper.last_ping_at > 0
        assert helper.last_error is None

    def test_run_reconnects_after_drop(self):
        """A dropped stream is retried after the reconnect delay until stopped."""
        helper = BridgeHelper(CapabilityRegistry(), session_id="lab", base_url="http://relay.test", reconnect_delay=0)
        calls = []

        async def listen():
            calls.append(len(calls))
            if len(calls) == 1:
                raise aiohttp.ClientConnectionError("connection reset")
            helper.stop()

        helper.listen = listen

        asyncio.run(helper.run())

        assert calls == [0, 1]
        assert helper.last_error == "connection reset"
        assert helper.last_status == "Stopped."
