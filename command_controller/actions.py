"""Catalog of actions a pose can be mapped to."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ActionDefinition:
    id: str
    label: str
    description: str
    required_scopes: tuple[str, ...] = ()
    requires_browser_api: bool = False
    # capability names that must be registered before the action can run
    capabilities: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "requiredScopes": list(self.required_scopes),
            "requiresBrowserApi": self.requires_browser_api,
            "capabilities": list(self.capabilities),
        }


_PROMPT = "model:prompt"
_TAB_READ = "browser:activeTab.read"
_SCREENSHOT = "browser:activeTab.screenshot"
_TOOLS_CALL = "mcp:tools.call"

ACTIONS: tuple[ActionDefinition, ...] = (
    ActionDefinition("none", "No action", "Do not run any action."),
    ActionDefinition(
        "read_summarize",
        "Read page + summarize",
        "Read active tab content and summarize via model.",
        (_PROMPT, _TAB_READ),
        True,
        ("text_prompt", "page_read"),
    ),
    ActionDefinition(
        "screenshot_analyze",
        "Screenshot + summarize",
        "Capture screenshot and produce quick page brief.",
        (_PROMPT, _SCREENSHOT, _TAB_READ),
        True,
        ("text_prompt", "page_read", "screenshot"),
    ),
    ActionDefinition(
        "screenshot_analyze_alt",
        "Screenshot + risk scan (alt)",
        "Capture screenshot and run stricter risk-focused analysis.",
        (_PROMPT, _SCREENSHOT, _TAB_READ),
        True,
        ("text_prompt", "page_read", "screenshot"),
    ),
    ActionDefinition(
        "research_agent",
        "Research agent",
        "Open search/results tabs and synthesize cited findings.",
        (_PROMPT, _TAB_READ, "browser:tabs.create", "browser:tabs.read"),
        True,
        ("text_prompt", "page_read", "tab_open", "tab_html", "tab_read"),
    ),
    ActionDefinition(
        "research_agent_alt",
        "Research agent (alt)",
        "Run deeper research mode with broader synthesis.",
        (_PROMPT, _TAB_READ, "browser:tabs.create", "browser:tabs.read"),
        True,
        ("text_prompt", "page_read", "tab_open", "tab_html", "tab_read"),
    ),
    ActionDefinition(
        "agent_run_brief",
        "Agent run brief",
        "Use a tool-capable agent run to produce a concise answer.",
        ("model:tools", _PROMPT),
        False,
        ("agent_run",),
    ),
    ActionDefinition(
        "remote_read_screenshot_summarize",
        "Remote tab summarize",
        "Dispatch read+screenshot+summary to a target tab helper session.",
        (),
        False,
        ("remote_bridge",),
    ),
    ActionDefinition(
        "mcp_fetch_brief",
        "MCP fetch + brief",
        "Read current page URL/title, fetch related content via MCP, and summarize.",
        (_TOOLS_CALL, _TAB_READ),
        True,
        ("tool_list", "tool_call", "page_read"),
    ),
    ActionDefinition(
        "mcp_memory_save",
        "MCP memory save",
        "Persist current page context into MCP memory.",
        (_TOOLS_CALL, _TAB_READ),
        True,
        ("tool_list", "tool_call", "page_read"),
    ),
    ActionDefinition(
        "mcp_memory_recall",
        "MCP memory recall",
        "Recall related memory entries for current page context.",
        (_TOOLS_CALL, _TAB_READ),
        True,
        ("tool_list", "tool_call", "page_read"),
    ),
    ActionDefinition(
        "mcp_filesystem_log",
        "MCP filesystem log",
        "Append a local log line for the current page using filesystem MCP.",
        (_TOOLS_CALL, _TAB_READ),
        True,
        ("tool_list", "tool_call", "page_read"),
    ),
    ActionDefinition(
        "mcp_calendar_next",
        "MCP calendar next",
        "Read upcoming events through an MCP calendar server (e.g. CalDAV).",
        (_TOOLS_CALL,),
        False,
        ("tool_list", "tool_call"),
    ),
    ActionDefinition(
        "voice_tts_ping",
        "Voice TTS ping",
        "Speak a short confirmation through text-to-speech.",
        (),
        False,
        ("speech_synthesis",),
    ),
    ActionDefinition(
        "voice_transcribe_note",
        "Voice STT note",
        "Record a short mic note and transcribe it.",
        (),
        False,
        ("speech_transcription",),
    ),
    ActionDefinition(
        "conversation_site_brief",
        "Site conversation brief",
        "Read page, generate concise answer, and speak it aloud.",
        (_PROMPT, _TAB_READ),
        True,
        ("text_prompt", "page_read"),
    ),
    ActionDefinition(
        "ask_model",
        "Ask model",
        "Run custom prompt template against the active context.",
        (_PROMPT,),
        False,
        ("text_prompt",),
    ),
)

ACTION_BY_ID: dict[str, ActionDefinition] = {action.id: action for action in ACTIONS}

MODIFIER_GESTURES = ("fist", "pinch", "open_palm", "thumbs_up", "victory")

REMOTE_ACTION_ID = "remote_read_screenshot_summarize"


def get_action(action_id: str | None) -> ActionDefinition:
    """Look up an action; unknown ids resolve to ``none``."""
    return ACTION_BY_ID.get(action_id or "none", ACTION_BY_ID["none"])
