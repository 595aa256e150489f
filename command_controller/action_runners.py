"""Implementations of every catalog action on top of the capability registry.

Capability call signatures the runners rely on:

    text_prompt(prompt, provider=, model=, system_prompt=None) -> str
    page_read() -> {"title", "text", "url"}
    screenshot() -> {"dataUrl"} | str
    tab_open(url) -> {"id"};  tab_html(tab_id) -> {"html"} | str
    tab_read(tab_id) -> {"title", "text"};  tab_close(tab_id)
    speech_synthesis(text, voice_id=None) -> {"audioBytes"}
    speech_transcription(duration_ms=) -> {"text", "languageCode", ...}
    tool_list() -> [name | {"name"}];  tool_call(tool, args) -> Any
    agent_run(task, provider=, max_tool_calls=) -> (async) iterable of event dicts
    remote_bridge(command, session_id) -> {"ok", "sessionId", "commandId", "result"}
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote, urlparse

from command_controller.action_settings import ActionSettings
from command_controller.actions import REMOTE_ACTION_ID
from command_controller.capabilities import CapabilityRegistry
from command_controller.errors import ActionExecutionError
from command_controller.fallback_chain import ActionResult
from gesture_module.types import ModifierInfo, TriggerDispatch
from utils.settings_store import bridge_timeout_secs

BLOCKED_RESEARCH_HOSTS = (
    "google.com",
    "googleapis.com",
    "googleusercontent.com",
    "gstatic.com",
    "youtube.com",
    "youtu.be",
    "facebook.com",
    "instagram.com",
    "x.com",
    "twitter.com",
)
REMOTE_MAX_CONTEXT_CHARS = 6400
TTS_PING_TEXT = "Hello world."
FILESYSTEM_LOG_PATH = "gesture-log.md"

_HREF_RE = re.compile(r'href="(https?://[^"#]+)"', re.IGNORECASE)
_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_TEMPLATE_RE = re.compile(r"\{\{(\w+)\}\}")


@dataclass
class ActionContext:
    payload: TriggerDispatch | None
    pose_slot: int
    pose_label: str
    base_action_id: str = "none"
    modifier: ModifierInfo = field(default_factory=ModifierInfo)


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def truncate(text: Any, limit: int = 2000) -> str:
    value = str(text or "")
    return value if len(value) <= limit else f"{value[:limit]}..."


def replace_template(template: str, values: Mapping[str, Any]) -> str:
    def _sub(match: re.Match) -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return _TEMPLATE_RE.sub(_sub, str(template or ""))


def page_title(page: Any) -> str:
    if isinstance(page, Mapping) and page.get("title"):
        return str(page["title"])
    return "Untitled page"


def page_text(page: Any) -> str:
    if not isinstance(page, Mapping):
        return ""
    return str(page.get("text") or page.get("textContent") or page.get("content") or "")


def page_url(page: Any) -> str:
    return str(page.get("url") or "") if isinstance(page, Mapping) else ""


def tool_result_preview(result: Any, limit: int = 1400) -> str:
    if isinstance(result, str):
        return truncate(result, limit)
    return truncate(json.dumps(result, indent=2, default=str), limit)


def _is_blocked_host(hostname: str) -> bool:
    host = (hostname or "").lower()
    if not host:
        return True
    return any(host == suffix or host.endswith(f".{suffix}") for suffix in BLOCKED_RESEARCH_HOSTS)


def normalize_search_url(raw: Any) -> str:
    """Return a usable organic result URL, or "" for search/ads/social links."""
    cleaned = str(raw or "").replace("&amp;", "&").strip()
    if not cleaned.startswith("http"):
        return ""
    parsed = urlparse(cleaned)
    if parsed.scheme not in ("http", "https") or _is_blocked_host(parsed.hostname or ""):
        return ""
    if "/aclk?" in cleaned or "doubleclick" in cleaned or "googleadservices" in cleaned:
        return ""
    return parsed.geturl()


def extract_urls_from_html(html: str) -> list[str]:
    urls: list[str] = []
    for match in _HREF_RE.finditer(str(html or "")):
        url = normalize_search_url(match.group(1))
        if url and url not in urls:
            urls.append(url)
    return urls


def parse_json_array(text: Any) -> list[Any]:
    match = _JSON_ARRAY_RE.search(str(text or ""))
    if not match:
        return []
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return []
    return parsed if isinstance(parsed, list) else []


class ActionRunner:
    def __init__(
        self,
        registry: CapabilityRegistry,
        settings: Callable[[], ActionSettings],
        on_status: Callable[[str], None] | None = None,
        tab_settle_secs: tuple[float, float] = (2.2, 2.6),
    ) -> None:
        self.registry = registry
        self._settings = settings
        self._on_status = on_status or (lambda message: None)
        self.tab_settle_secs = tab_settle_secs
        self._handlers = {
            "read_summarize": self.read_summarize,
            "screenshot_analyze": lambda ctx: self.screenshot_analyze(ctx, "default"),
            "screenshot_analyze_alt": lambda ctx: self.screenshot_analyze(ctx, "alt"),
            "research_agent": lambda ctx: self.research_agent(ctx, "default"),
            "research_agent_alt": lambda ctx: self.research_agent(ctx, "alt"),
            "agent_run_brief": self.agent_run_brief,
            REMOTE_ACTION_ID: self.remote_read_screenshot_summarize,
            "mcp_fetch_brief": self.mcp_fetch_brief,
            "mcp_memory_save": self.mcp_memory_save,
            "mcp_memory_recall": self.mcp_memory_recall,
            "mcp_filesystem_log": self.mcp_filesystem_log,
            "mcp_calendar_next": self.mcp_calendar_next,
            "voice_tts_ping": self.voice_tts_ping,
            "voice_transcribe_note": self.voice_transcribe_note,
            "conversation_site_brief": self.conversation_site_brief,
            "ask_model": self.ask_model,
        }

    @property
    def settings(self) -> ActionSettings:
        return self._settings()

    async def run(self, action_id: str, context: ActionContext) -> ActionResult:
        handler = self._handlers.get(action_id)
        if handler is None:
            return ActionResult(output="Action is disabled.")
        return await handler(context)

    # -- shared capability helpers -------------------------------------------

    async def prompt_model(self, prompt: str, system_prompt: str | None = None) -> str:
        settings = self.settings
        output = await self.registry.call(
            "text_prompt", prompt, provider=settings.provider, model=settings.model, system_prompt=system_prompt
        )
        return str(output or "")

    async def read_active_tab(self) -> Mapping[str, Any]:
        page = await self.registry.call("page_read")
        return page if isinstance(page, Mapping) else {}

    async def try_read_active_tab(self) -> Mapping[str, Any]:
        try:
            return await self.read_active_tab()
        except Exception:
            return {}

    async def call_tool(self, candidates: list[str], args: dict[str, Any]) -> Any:
        tool = await self.resolve_tool_name(candidates)
        return await self.registry.call("tool_call", tool, args)

    async def resolve_tool_name(self, candidates: list[str]) -> str:
        """Pick the first available tool, matching exact names then ``*/short_name``."""
        listed = await self.registry.call("tool_list")
        names = [
            str(item.get("name") if isinstance(item, Mapping) else item)
            for item in (listed or [])
            if (item.get("name") if isinstance(item, Mapping) else item)
        ]
        for candidate in candidates:
            if candidate in names:
                return candidate
        for candidate in candidates:
            short = candidate.split("/")[-1]
            found = next((name for name in names if name.endswith(f"/{short}")), None)
            if found:
                return found
        raise ActionExecutionError(f"No compatible MCP tool found. Tried: {', '.join(candidates)}.")

    def _template_values(self, context: ActionContext, title: str) -> dict[str, Any]:
        payload = context.payload
        return {
            "poseId": context.pose_slot,
            "poseLabel": context.pose_label,
            "triggerId": payload.trigger_id if payload else "",
            "handedness": payload.handedness if payload else "unknown",
            "pageTitle": title,
            "timestamp": payload.timestamp if payload else iso_now(),
        }

    # -- page actions ---------------------------------------------------------

    async def read_summarize(self, context: ActionContext) -> ActionResult:
        page = await self.read_active_tab()
        title = page_title(page)
        text = truncate(page_text(page), 4800)
        prompt = "\n\n".join(
            [
                "You are a browser automation assistant.",
                f"Trigger: pose {context.pose_slot} ({context.pose_label}).",
                f"Page title: {title}",
                "Summarize the page briefly and suggest two safe next actions.",
                "Page content:",
                text,
            ]
        )
        output = await self.prompt_model(prompt)
        return ActionResult(output=output, meta={"pageTitle": title, "textChars": len(text)})

    async def screenshot_analyze(self, context: ActionContext, mode: str = "default") -> ActionResult:
        shot = await self.registry.call("screenshot")
        page = await self.try_read_active_tab()
        title = page_title(page)
        text = truncate(page_text(page), 3200)
        data_url = shot.get("dataUrl") if isinstance(shot, Mapping) else shot
        screenshot_chars = len(data_url or "")
        mode_line = (
            "Prioritize risk and ambiguity detection over productivity suggestions."
            if mode == "alt"
            else "Focus on current state and a safe next step."
        )
        prompt = "\n\n".join(
            [
                "You are assisting a browser gesture workflow.",
                f"Trigger: pose {context.pose_slot} ({context.pose_label}).",
                f"A screenshot was captured (data URL length: {screenshot_chars}).",
                mode_line,
                f"Page title: {title}",
                "Assume this may be a text-only model. Use page text context to infer what the user is viewing.",
                "Provide: 1) current-state summary, 2) one recommended next step, 3) one risk check.",
                "Page content:",
                text or "No readability content available.",
            ]
        )
        output = await self.prompt_model(prompt)
        return ActionResult(
            output=output, meta={"pageTitle": title, "screenshotChars": screenshot_chars, "mode": mode}
        )

    async def ask_model(self, context: ActionContext) -> ActionResult:
        page = await self.try_read_active_tab()
        title = page_title(page)
        prompt = replace_template(self.settings.ask_prompt_template, self._template_values(context, title))
        output = await self.prompt_model(prompt)
        return ActionResult(output=output, meta={"pageTitle": title})

    # -- research -------------------------------------------------------------

    def build_research_query(self, context: ActionContext, title: str) -> str:
        rendered = replace_template(
            self.settings.research.query_template, self._template_values(context, title)
        ).strip()
        return rendered or f"Research and summarize with citations: {title}"

    def build_search_url(self, query: str) -> str:
        template = self.settings.research.search_engine_url_template
        encoded = quote(query, safe="")
        if "{{query}}" in template:
            return template.replace("{{query}}", encoded)
        return f"https://www.google.com/search?q={encoded}"

    async def extract_urls_with_model(self, html: str, max_urls: int) -> list[str]:
        prompt = "\n".join(
            [
                f"Extract up to {max_urls} organic result URLs from this search results HTML.",
                "Return only a JSON array of URL strings.",
                "Exclude search engine, ads, and social media domains.",
                "",
                truncate(html, 24000),
            ]
        )
        response = await self.prompt_model(
            prompt,
            system_prompt="You extract organic result links from search HTML and return only a JSON array of URLs.",
        )
        urls: list[str] = []
        for item in parse_json_array(response):
            url = normalize_search_url(item)
            if url and url not in urls:
                urls.append(url)
        return urls[:max_urls]

    async def collect_search_result_urls(self, search_tab_id: Any, max_urls: int) -> list[str]:
        html_result = await self.registry.call("tab_html", search_tab_id)
        html = str(html_result.get("html") if isinstance(html_result, Mapping) else html_result or "")
        if len(html) < 80:
            raise ActionExecutionError("Search result HTML is empty or too short.")

        regex_urls = extract_urls_from_html(html)[:max_urls]
        if len(regex_urls) >= min(2, max_urls):
            return regex_urls

        merged = list(regex_urls)
        for url in await self.extract_urls_with_model(html, max_urls):
            if url not in merged:
                merged.append(url)
        return merged[:max_urls]

    async def synthesize_research(self, query: str, sources: list[dict[str, str]], mode: str) -> str:
        formatted = "\n\n---\n\n".join(
            "\n".join(
                [
                    f"[Source {index}]",
                    f"Title: {source['title']}",
                    f"URL: {source['url']}",
                    f"Content: {truncate(source['text'], 5500)}",
                ]
            )
            for index, source in enumerate(sources, start=1)
        )
        mode_line = (
            "Use a deeper lens: include conflicting points and uncertainties."
            if mode == "alt"
            else "Focus on direct, high-signal conclusions first."
        )
        prompt = "\n\n".join(
            [
                "You are a browser research assistant.",
                f"User intent: {query}",
                mode_line,
                "Synthesize these sources into a concise answer with inline citations like [1], [2].",
                "End with one short risk check and one suggested next action.",
                "",
                formatted,
            ]
        )
        return await self.prompt_model(prompt)

    async def research_agent(self, context: ActionContext, mode: str = "default") -> ActionResult:
        settings = self.settings
        source_count = settings.research.source_count_default
        active = await self.read_active_tab()
        title = page_title(active)
        query = self.build_research_query(context, title)
        search_url = self.build_search_url(query)

        opened: list[tuple[Any, str]] = []
        search_tab_id = None
        sources: list[dict[str, str]] = []
        try:
            self._on_status(f'Research: opening search page for "{query[:70]}"...')
            search_tab = await self.registry.call("tab_open", search_url)
            search_tab_id = search_tab.get("id") if isinstance(search_tab, Mapping) else None
            await asyncio.sleep(self.tab_settle_secs[0])
            if search_tab_id is None:
                raise ActionExecutionError("Search tab was not created.")

            result_urls = await self.collect_search_result_urls(search_tab_id, source_count)
            if not result_urls:
                raise ActionExecutionError("Could not extract any research result URLs.")

            self._on_status(f"Research: opening {len(result_urls)} result tabs...")
            for url in result_urls:
                try:
                    tab = await self.registry.call("tab_open", url)
                except Exception:
                    continue
                if isinstance(tab, Mapping) and tab.get("id") is not None:
                    opened.append((tab["id"], url))

            await asyncio.sleep(self.tab_settle_secs[1])
            if not opened:
                raise ActionExecutionError("No result tabs could be opened.")

            self._on_status(f"Research: reading {len(opened)} pages...")
            for tab_id, url in opened:
                try:
                    page = await self.registry.call("tab_read", tab_id)
                except Exception:
                    continue
                text = truncate(page_text(page), 6000)
                if not text.strip():
                    continue
                source_title = page.get("title") if isinstance(page, Mapping) else None
                sources.append({"url": url, "title": source_title or urlparse(url).hostname or url, "text": text})

            if not sources:
                raise ActionExecutionError("No readable content extracted from opened tabs.")

            self._on_status("Research: synthesizing answer with citations...")
            output = await self.synthesize_research(query, sources, mode)
            return ActionResult(
                output=output,
                meta={
                    "pageTitle": title,
                    "query": query,
                    "mode": mode,
                    "sourceCountRequested": source_count,
                    "sourceCountRead": len(sources),
                    "sources": [{"title": s["title"], "url": s["url"]} for s in sources],
                },
            )
        finally:
            if settings.research.close_tabs_after_run and self.registry.has("tab_close"):
                tab_ids = [tab_id for tab_id, _ in opened]
                if search_tab_id is not None:
                    tab_ids.append(search_tab_id)
                for tab_id in tab_ids:
                    try:
                        await self.registry.call("tab_close", tab_id)
                    except Exception:
                        continue

    # -- agent ----------------------------------------------------------------

    def build_agent_task(self, context: ActionContext, title: str, text: str) -> str:
        parts = [
            "You are a concise browser copilot.",
            f"Trigger: pose {context.pose_slot} ({context.pose_label}).",
            f"Page title: {title}",
            "Give: 1) short summary, 2) one safe next action, 3) one risk check.",
        ]
        if text.strip():
            parts.extend(["Page context:", truncate(text, 1600)])
        else:
            parts.append("No page text context is available.")
        return "\n\n".join(parts)

    async def agent_run_brief(self, context: ActionContext) -> ActionResult:
        page = await self.try_read_active_tab() if self.registry.has("page_read") else {}
        title = page_title(page)
        text = truncate(page_text(page), 2400)
        task = self.build_agent_task(context, title, text)

        stream = await self.registry.call("agent_run", task, provider=self.settings.provider, max_tool_calls=3)
        counts = dict.fromkeys(("status", "thinking", "tool_call", "tool_result", "token", "final", "error"), 0)
        tokens: list[str] = []
        trace: list[dict[str, str]] = []
        final_output = ""

        async for event in _iterate(stream):
            kind = str(event.get("type") or "") if isinstance(event, Mapping) else ""
            if kind in counts:
                counts[kind] += 1
            if kind == "status":
                self._on_status(f"agent run status: {truncate(event.get('message'), 120)}")
            elif kind == "thinking":
                self._on_status(f"agent run thinking: {truncate(event.get('content'), 120)}")
            elif kind in ("tool_call", "tool_result"):
                details = event.get("args") if kind == "tool_call" else event.get("result", event.get("error"))
                trace.append(
                    {
                        "phase": "call" if kind == "tool_call" else "result",
                        "tool": str(event.get("tool") or "unknown"),
                        "details": truncate(json.dumps(details or {}, default=str), 260),
                    }
                )
            elif kind == "token":
                tokens.append(str(event.get("token") or ""))
            elif kind == "final":
                final_output = str(event.get("output") or "").strip()
            elif kind == "error":
                error = event.get("error") if isinstance(event.get("error"), Mapping) else {}
                raise ActionExecutionError(error.get("message") or "agent run failed.", code=error.get("code"))

        output = final_output or "".join(tokens).strip() or "agent run completed with no output."
        return ActionResult(
            output=output,
            meta={
                "mode": "agent.run",
                "pageTitle": title,
                "pageTextChars": len(text),
                "task": truncate(task, 320),
                "eventCounts": counts,
                "toolTrace": trace[:8],
            },
        )

    # -- remote ---------------------------------------------------------------

    def build_remote_command(self, context: ActionContext) -> dict[str, Any]:
        settings = self.settings
        return {
            "id": str(uuid.uuid4()),
            "action": REMOTE_ACTION_ID,
            "timestamp": iso_now(),
            "provider": settings.provider,
            "model": settings.model,
            "poseSlot": context.pose_slot,
            "poseLabel": context.pose_label,
            "options": {
                "maxContextChars": REMOTE_MAX_CONTEXT_CHARS,
                "timeoutMs": int(bridge_timeout_secs() * 1000),
            },
        }

    async def remote_read_screenshot_summarize(self, context: ActionContext) -> ActionResult:
        session_id = self.settings.remote_session_id
        command = self.build_remote_command(context)
        self._on_status(
            f'Remote bridge: dispatching {command["action"]} to session "{session_id}" (cmd {command["id"][:8]}).'
        )
        response = await self.registry.call("remote_bridge", command, session_id)
        result = response.get("result") if isinstance(response, Mapping) else None
        if not isinstance(result, Mapping):
            raise ActionExecutionError("Remote bridge returned no result payload.")
        if result.get("ok") is False:
            raise ActionExecutionError(
                result.get("errorMessage") or "Remote helper execution failed.", code=result.get("errorCode")
            )

        output = str(result.get("output") or "").strip() or "Remote helper completed with no output."
        meta = dict(result.get("meta")) if isinstance(result.get("meta"), Mapping) else {}
        target_title = meta.get("targetTitle") or meta.get("pageTitle") or "Remote page"
        meta.update(
            {
                "pageTitle": target_title,
                "remoteBridge": True,
                "remoteSessionId": session_id,
                "commandId": command["id"],
                "targetUrl": meta.get("targetUrl"),
                "targetTitle": target_title,
            }
        )
        return ActionResult(output=output, meta=meta)

    # -- MCP tools ------------------------------------------------------------

    async def mcp_fetch_brief(self, context: ActionContext) -> ActionResult:
        page = await self.read_active_tab()
        title, url = page_title(page), page_url(page)
        result = await self.call_tool(
            ["fetch/fetch", "http/fetch", "web-fetch/fetch_url", "fetch/get"], {"url": url}
        )
        return ActionResult(
            output=f'Fetched context for "{title}".\n{tool_result_preview(result)}',
            meta={"pageTitle": title, "pageUrl": url},
        )

    async def mcp_memory_save(self, context: ActionContext) -> ActionResult:
        page = await self.read_active_tab()
        title, url = page_title(page), page_url(page)
        result = await self.call_tool(
            ["memory/save_memory", "memory/set", "memory/upsert"],
            {
                "key": url,
                "value": {
                    "title": title,
                    "url": url,
                    "summary": truncate(page_text(page), 2200),
                    "savedAt": iso_now(),
                },
            },
        )
        return ActionResult(
            output=f'Saved memory for "{title}".',
            meta={"pageTitle": title, "pageUrl": url, "result": tool_result_preview(result, 480)},
        )

    async def mcp_memory_recall(self, context: ActionContext) -> ActionResult:
        page = await self.try_read_active_tab()
        title, url = page_title(page), page_url(page)
        result = await self.call_tool(
            ["memory/search_memories", "memory/search", "memory/query"],
            {"query": f"{title} {url}".strip(), "limit": 3},
        )
        return ActionResult(
            output=f'Memory recall for "{title}":\n{tool_result_preview(result)}',
            meta={"pageTitle": title, "pageUrl": url},
        )

    async def mcp_filesystem_log(self, context: ActionContext) -> ActionResult:
        page = await self.try_read_active_tab()
        title, url = page_title(page), page_url(page)
        line = f"{iso_now()} | {title} | {url}\n"
        result = await self.call_tool(
            ["filesystem/append_file", "filesystem/write_file", "fs/append_file"],
            {"path": FILESYSTEM_LOG_PATH, "content": line, "append": True},
        )
        return ActionResult(
            output=f'Appended a local log entry for "{title}".',
            meta={
                "pageTitle": title,
                "pageUrl": url,
                "filePath": FILESYSTEM_LOG_PATH,
                "result": tool_result_preview(result, 480),
            },
        )

    async def mcp_calendar_next(self, context: ActionContext) -> ActionResult:
        result = await self.call_tool(
            ["calendar/list_events", "caldav/list_events", "calendar/next_events"], {"limit": 3}
        )
        return ActionResult(output=f"Upcoming events:\n{tool_result_preview(result)}", meta={"source": "mcp-calendar"})

    # -- voice ----------------------------------------------------------------

    async def speak(self, text: str) -> dict[str, Any]:
        voice_id = self.settings.voice.voice_id or None
        audio = await self.registry.call("speech_synthesis", text, voice_id=voice_id)
        return dict(audio) if isinstance(audio, Mapping) else {}

    async def voice_tts_ping(self, context: ActionContext) -> ActionResult:
        text = (
            f"{TTS_PING_TEXT} Gesture pose {context.pose_slot} ({context.pose_label}) received. "
            "Voice output is active."
        )
        audio = await self.speak(text)
        return ActionResult(output=text, meta={"voiceMode": "tts_ping", "audioBytes": audio.get("audioBytes", 0)})

    async def voice_transcribe_note(self, context: ActionContext) -> ActionResult:
        self._on_status("Voice STT: recording and transcribing note...")
        transcript = await self.registry.call("speech_transcription", duration_ms=2600)
        transcript = transcript if isinstance(transcript, Mapping) else {"text": str(transcript or "")}
        output = str(transcript.get("text") or "").strip() or "[No speech recognized]"
        return ActionResult(
            output=output,
            meta={
                "voiceMode": "stt_note",
                "audioBytes": transcript.get("audioBytes"),
                "durationMs": transcript.get("durationMs", 2600),
                "languageCode": transcript.get("languageCode"),
                "languageProbability": transcript.get("languageProbability"),
                "transcriptionId": transcript.get("transcriptionId"),
            },
        )

    async def conversation_site_brief(self, context: ActionContext) -> ActionResult:
        page = await self.read_active_tab()
        title = page_title(page)
        text = truncate(page_text(page), 5600)
        prompt = "\n\n".join(
            [
                "You are a site-aware voice assistant.",
                f"Trigger: pose {context.pose_slot} ({context.pose_label}).",
                f"Page title: {title}",
                "Write a concise spoken response (4-6 sentences) explaining what this page is about,",
                "why it matters, and one suggested next action.",
                "Page content:",
                text or "No readable page text available.",
            ]
        )
        brief = await self.prompt_model(prompt)
        meta: dict[str, Any] = {"pageTitle": title, "pageTextChars": len(text)}
        try:
            audio = await self.speak(brief)
        except Exception as exc:
            message = str(exc) or "Voice playback unavailable."
            meta.update({"voiceMode": "site_brief_text_fallback", "voiceFallback": True, "ttsError": message})
            return ActionResult(output=f"{brief}\n\n[TTS fallback] {message}", meta=meta)

        meta.update({"voiceMode": "site_brief_tts", "voiceFallback": False, "audioBytes": audio.get("audioBytes", 0)})
        return ActionResult(output=brief, meta=meta)


async def _iterate(stream: Any):
    if hasattr(stream, "__aiter__"):
        async for item in stream:
            yield item
    else:
        for item in stream or []:
            yield item
