"""Capabilities a standalone helper process can offer without a browser host."""

from __future__ import annotations

import html
import os
import re
from typing import Any

import aiohttp

from command_controller.capabilities import CapabilityRegistry
from command_controller.errors import ActionExecutionError
from utils.settings_store import deep_log, get_settings

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_DROP_RE = re.compile(r"<(script|style|noscript)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def html_to_page(url: str, body: str) -> dict[str, str]:
    """Reduce an HTML document to the ``{title, text, url}`` page shape."""
    match = _TITLE_RE.search(body)
    title = html.unescape(_SPACE_RE.sub(" ", match.group(1))).strip() if match else ""
    text = _TAG_RE.sub(" ", _DROP_RE.sub(" ", body))
    return {"title": title, "text": _SPACE_RE.sub(" ", html.unescape(text)).strip(), "url": url}


class OllamaPrompt:
    """``text_prompt`` backed by a local Ollama server."""

    def __init__(self, base_url: str | None = None, default_model: str = "llama3.2", timeout_secs: float = 60.0) -> None:
        settings = get_settings()
        self.base_url = (
            base_url or os.getenv("GESTURE_OLLAMA_URL") or settings.get("ollama_url") or "http://127.0.0.1:11434"
        ).rstrip("/")
        self.default_model = default_model
        self.timeout_secs = timeout_secs

    async def __call__(
        self, prompt: str, provider: str | None = None, model: str | None = None, system_prompt: str | None = None
    ) -> str:
        body: dict[str, Any] = {"model": model or self.default_model, "prompt": prompt, "stream": False}
        if system_prompt:
            body["system"] = system_prompt
        timeout = aiohttp.ClientTimeout(total=self.timeout_secs)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(f"{self.base_url}/api/generate", json=body) as resp:
                if resp.status != 200:
                    raise ActionExecutionError(f"Model request failed ({resp.status}).", code="MODEL_HTTP_ERROR")
                data = await resp.json(content_type=None)
        output = data.get("response", "") if isinstance(data, dict) else ""
        deep_log(f"[DEEP][OLLAMA] {len(output)} chars from {body['model']}")
        return output


class UrlPageReader:
    """``page_read`` that fetches a fixed URL and strips it to text."""

    def __init__(self, url: str, timeout_secs: float = 15.0) -> None:
        self.url = url
        self.timeout_secs = timeout_secs

    async def __call__(self) -> dict[str, str]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_secs)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.url) as resp:
                if resp.status != 200:
                    raise ActionExecutionError(f"Page fetch failed ({resp.status}).", code="PAGE_HTTP_ERROR")
                body = await resp.text(errors="replace")
        return html_to_page(str(self.url), body)


def build_helper_registry(page_url: str, ollama_url: str | None = None, model: str = "llama3.2") -> CapabilityRegistry:
    return CapabilityRegistry(
        {
            "text_prompt": OllamaPrompt(ollama_url, default_model=model),
            "page_read": UrlPageReader(page_url),
        }
    )
