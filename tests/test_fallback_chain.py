"""Tests for FallbackChain (primary run, capability fallbacks, combined errors)."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from command_controller.actions import get_action
from command_controller.errors import ActionExecutionError, CapabilityUnavailable, PermissionDeniedError
from command_controller.fallback_chain import ActionResult, FallbackChain, is_fallback_error


def _run_for(results):
    """Build a run callable that returns or raises per action id."""
    async def run(action):
        outcome = results[action.id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return run


class TestFallbackChain:
    """Test suite for FallbackChain."""

    def test_primary_success(self):
        """A working primary action returns ok without touching the fallback."""
        prepare = AsyncMock()
        chain = FallbackChain(prepare, _run_for({"agent_run_brief": ActionResult("agent says hi")}))

        result = asyncio.run(chain.execute(get_action("agent_run_brief")))

        assert result.status == "ok"
        assert result.fallback_used is None
        assert result.attempts_made == ["agent_run_brief"]
        assert result.result.output == "agent says hi"
        assert prepare.await_count == 1

    def test_missing_capability_falls_back(self):
        """A CapabilityUnavailable from prepare switches to the fallback action."""
        async def prepare(action):
            if action.id == "agent_run_brief":
                raise CapabilityUnavailable("agent_run")

        chain = FallbackChain(prepare, _run_for({"read_summarize": ActionResult("summary", {"pageTitle": "Docs"})}))

        result = asyncio.run(chain.execute(get_action("agent_run_brief")))

        assert result.status == "fallback"
        assert result.action_id == "agent_run_brief"
        assert result.fallback_used == "read_summarize"
        assert result.attempts_made == ["agent_run_brief", "read_summarize"]
        assert result.error_message == "Capability 'agent_run' is unavailable."
        assert result.result.meta == {
            "pageTitle": "Docs",
            "fallbackFrom": "agent_run_brief",
            "fallbackActionId": "read_summarize",
            "fallbackReason": "Capability 'agent_run' is unavailable.",
        }

    def test_feature_disabled_code_falls_back(self):
        """An execution error carrying ERR_FEATURE_DISABLED also triggers the fallback."""
        chain = FallbackChain(
            AsyncMock(),
            _run_for(
                {
                    "agent_run_brief": ActionExecutionError("tools off", code="ERR_FEATURE_DISABLED"),
                    "read_summarize": ActionResult("summary"),
                }
            ),
        )

        assert asyncio.run(chain.execute(get_action("agent_run_brief"))).fallback_used == "read_summarize"

    def test_other_errors_propagate(self):
        """Errors unrelated to availability are re-raised unchanged."""
        error = ActionExecutionError("model exploded", code="E_MODEL")
        chain = FallbackChain(AsyncMock(), _run_for({"agent_run_brief": error}))

        with pytest.raises(ActionExecutionError) as excinfo:
            asyncio.run(chain.execute(get_action("agent_run_brief")))

        assert excinfo.value is error

    def test_action_without_fallback_propagates(self):
        """Actions with no fallback entry re-raise even availability errors."""
        chain = FallbackChain(AsyncMock(side_effect=CapabilityUnavailable("page_read")), _run_for({}))

        with pytest.raises(CapabilityUnavailable):
            asyncio.run(chain.execute(get_action("read_summarize")))

    def test_both_fail_combines_messages(self):
        """When the fallback fails too, one error names both failures."""
        primary = CapabilityUnavailable("agent_run")
        secondary = ActionExecutionError("no tab", code="NO_TAB")
        chain = FallbackChain(AsyncMock(), _run_for({"agent_run_brief": primary, "read_summarize": secondary}))

        with pytest.raises(ActionExecutionError) as excinfo:
            asyncio.run(chain.execute(get_action("agent_run_brief")))

        error = excinfo.value
        assert str(error) == (
            "Primary action failed: Capability 'agent_run' is unavailable.. Fallback failed: no tab."
        )
        assert error.code == "NO_TAB"
        assert error.primary_error is primary
        assert error.fallback_error is secondary

    def test_custom_fallback_table(self):
        """A caller-supplied table replaces the built-in one."""
        chain = FallbackChain(
            AsyncMock(),
            _run_for({"ask_model": CapabilityUnavailable("text_prompt"), "read_summarize": ActionResult("ok")}),
            fallbacks={"ask_model": "read_summarize"},
        )

        assert asyncio.run(chain.execute(get_action("ask_model"))).fallback_used == "read_summarize"


class TestIsFallbackError:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (CapabilityUnavailable("agent_run"), True),
            (PermissionDeniedError(["model:tools"]), True),
            (ActionExecutionError("x", code="ERR_SCOPE_REQUIRED"), True),
            (RuntimeError("agent.run is not enabled"), True),
            (RuntimeError("Permission denied by user"), True),
            (RuntimeError("network down"), False),
            (ActionExecutionError("bad", code="E1"), False),
        ],
    )
    def test_classification(self, error, expected):
        """Only missing features, scopes and permissions count as fallback errors."""
        assert is_fallback_error(error) is expected
