"""User-editable action settings and their normalization.

Any raw document (persisted JSON, an HTTP body, a partial update) goes through
:meth:`ActionSettings.from_dict`, which never raises: unknown action ids become
``none``, numbers are clamped, and anything unreadable falls back to defaults.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from command_controller.actions import ACTION_BY_ID, MODIFIER_GESTURES

SETTINGS_VERSION = 2
DEFAULT_SESSION_ID = "default"
SESSION_ID_MAX_LENGTH = 64

_SESSION_ID_INVALID = re.compile(r"[^a-zA-Z0-9._-]")

DEFAULT_MAPPING = {0: "read_summarize", 1: "screenshot_analyze", 2: "conversation_site_brief"}
DEFAULT_ALT_ACTIONS = {0: "research_agent_alt", 1: "screenshot_analyze_alt", 2: "voice_tts_ping"}
DEFAULT_MODIFIER_GESTURE = "fist"
DEFAULT_PER_POSE_GESTURE = {0: "fist", 1: "pinch", 2: "fist"}
DEFAULT_ASK_PROMPT = (
    "Pose {{poseId}} ({{poseLabel}}) fired on {{pageTitle}}. Give a concise action recommendation and why."
)


def normalize_session_id(value: Any) -> str:
    """Strip everything outside ``[a-zA-Z0-9._-]`` and cap at 64 characters."""
    text = value.strip() if isinstance(value, str) else ""
    cleaned = _SESSION_ID_INVALID.sub("", text)[:SESSION_ID_MAX_LENGTH]
    return cleaned or DEFAULT_SESSION_ID


def _action_id(value: Any) -> str:
    return value if isinstance(value, str) and value in ACTION_BY_ID else "none"


def _gesture(value: Any, fallback: str = DEFAULT_MODIFIER_GESTURE) -> str:
    text = str(value or "").strip()
    return text if text in MODIFIER_GESTURES else fallback


def _text(value: Any, fallback: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def _clamped_int(value: Any, low: int, high: int, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, number))


def _slot_value(mapping: Any, slot: int, fallback: Any) -> Any:
    if not isinstance(mapping, Mapping):
        return fallback
    if slot in mapping and mapping[slot] is not None:
        return mapping[slot]
    if str(slot) in mapping and mapping[str(slot)] is not None:
        return mapping[str(slot)]
    return fallback


def _per_slot(mapping: Any, defaults: Mapping[int, Any], normalize) -> dict[int, Any]:
    return {slot: normalize(_slot_value(mapping, slot, default)) for slot, default in defaults.items()}


@dataclass(frozen=True)
class ModifierSettings:
    enabled: bool = True
    strategy: str = "secondary_hand"
    gesture: str = DEFAULT_MODIFIER_GESTURE
    per_pose_gesture: dict[int, str] = field(default_factory=lambda: dict(DEFAULT_PER_POSE_GESTURE))
    per_pose_alt_action: dict[int, str] = field(default_factory=lambda: dict(DEFAULT_ALT_ACTIONS))

    @classmethod
    def from_dict(cls, raw: Any) -> "ModifierSettings":
        raw = raw if isinstance(raw, Mapping) else {}
        gesture = _gesture(raw.get("gesture"))
        return cls(
            enabled=raw.get("enabled") is not False,
            strategy="secondary_hand",
            gesture=gesture,
            per_pose_gesture=_per_slot(
                raw.get("perPoseGesture"),
                DEFAULT_PER_POSE_GESTURE,
                lambda value: _gesture(value, gesture),
            ),
            per_pose_alt_action=_per_slot(raw.get("perPoseAltAction"), DEFAULT_ALT_ACTIONS, _action_id),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "strategy": self.strategy,
            "gesture": self.gesture,
            "perPoseGesture": {str(k): v for k, v in self.per_pose_gesture.items()},
            "perPoseAltAction": {str(k): v for k, v in self.per_pose_alt_action.items()},
        }


@dataclass(frozen=True)
class ResearchSettings:
    source_count_default: int = 5
    close_tabs_after_run: bool = True
    search_engine_url_template: str = "https://www.google.com/search?q={{query}}"
    query_template: str = "Research this topic and summarize with citations: {{pageTitle}}"

    @classmethod
    def from_dict(cls, raw: Any) -> "ResearchSettings":
        raw = raw if isinstance(raw, Mapping) else {}
        defaults = cls()
        return cls(
            source_count_default=_clamped_int(raw.get("sourceCountDefault"), 1, 8, defaults.source_count_default),
            close_tabs_after_run=raw.get("closeTabsAfterRun") is not False,
            search_engine_url_template=_text(
                raw.get("searchEngineUrlTemplate"), defaults.search_engine_url_template
            ),
            query_template=_text(raw.get("queryTemplate"), defaults.query_template),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceCountDefault": self.source_count_default,
            "closeTabsAfterRun": self.close_tabs_after_run,
            "searchEngineUrlTemplate": self.search_engine_url_template,
            "queryTemplate": self.query_template,
        }


@dataclass(frozen=True)
class VoiceSettings:
    agent_id: str = ""
    voice_id: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "VoiceSettings":
        raw = raw if isinstance(raw, Mapping) else {}
        agent_id = raw.get("agentId")
        voice_id = raw.get("voiceId")
        return cls(
            agent_id=agent_id.strip() if isinstance(agent_id, str) else "",
            voice_id=voice_id.strip() if isinstance(voice_id, str) else "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {"agentId": self.agent_id, "voiceId": self.voice_id}


@dataclass(frozen=True)
class ActionSettings:
    mapping: dict[int, str] = field(default_factory=lambda: dict(DEFAULT_MAPPING))
    modifier: ModifierSettings = field(default_factory=ModifierSettings)
    research: ResearchSettings = field(default_factory=ResearchSettings)
    voice: VoiceSettings = field(default_factory=VoiceSettings)
    remote_session_id: str = DEFAULT_SESSION_ID
    safety_mode: str = "confirm_each"  # "confirm_each" | "cooldown"
    cooldown_ms: int = 2000
    armed: bool = False
    provider: str = "ollama"
    model: str = "llama3.2"
    ask_prompt_template: str = DEFAULT_ASK_PROMPT

    @classmethod
    def from_dict(cls, raw: Any) -> "ActionSettings":
        raw = raw if isinstance(raw, Mapping) else {}
        defaults = cls()
        remote = raw.get("remoteBridge") if isinstance(raw.get("remoteBridge"), Mapping) else {}
        voice = raw.get("voice", raw.get("elevenLabs"))
        return cls(
            mapping=_per_slot(raw.get("mapping"), DEFAULT_MAPPING, _action_id),
            modifier=ModifierSettings.from_dict(raw.get("modifier")),
            research=ResearchSettings.from_dict(raw.get("research")),
            voice=VoiceSettings.from_dict(voice),
            remote_session_id=normalize_session_id(remote.get("sessionId")),
            safety_mode="cooldown" if raw.get("safetyMode") == "cooldown" else "confirm_each",
            cooldown_ms=_clamped_int(raw.get("cooldownMs"), 0, 5000, defaults.cooldown_ms),
            armed=bool(raw.get("armed")),
            provider=_text(raw.get("provider"), defaults.provider),
            model=_text(raw.get("model"), defaults.model),
            ask_prompt_template=_text(raw.get("askPromptTemplate"), defaults.ask_prompt_template),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SETTINGS_VERSION,
            "mapping": {str(k): v for k, v in self.mapping.items()},
            "modifier": self.modifier.to_dict(),
            "research": self.research.to_dict(),
            "voice": self.voice.to_dict(),
            "remoteBridge": {"sessionId": self.remote_session_id},
            "safetyMode": self.safety_mode,
            "cooldownMs": self.cooldown_ms,
            "armed": self.armed,
            "provider": self.provider,
            "model": self.model,
            "askPromptTemplate": self.ask_prompt_template,
        }

    def merged(self, patch: Mapping[str, Any]) -> "ActionSettings":
        """Apply a partial camelCase update and renormalize."""
        document = self.to_dict()
        for key, value in patch.items():
            if isinstance(value, Mapping) and isinstance(document.get(key), dict):
                document[key] = {**document[key], **value}
            else:
                document[key] = value
        return ActionSettings.from_dict(document)

    def with_armed(self, armed: bool) -> "ActionSettings":
        return replace(self, armed=bool(armed))

    def execution_snapshot(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "safetyMode": self.safety_mode,
            "cooldownMs": self.cooldown_ms,
            "armed": self.armed,
        }
