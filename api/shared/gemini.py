"""
Gemini text generation for workflow runs, analysis and suggestions.

Routes call ``get_gemini().generate(...)`` through
``starlette.concurrency.run_in_threadpool`` because the SDK call blocks.
"""

from __future__ import annotations

import json
import re
import threading
from typing import Any

import google.generativeai as genai

from api.shared.logger import get_logger
from api.shared.settings import get_settings

logger = get_logger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


class GeminiNotConfiguredError(RuntimeError):
    """Raised when no Gemini API key is configured."""


class GeminiClient:
    """Thin wrapper over ``google.generativeai`` bound to one API key."""

    def __init__(self, api_key: str | None):
        self.api_key = api_key
        if api_key:
            genai.configure(api_key=api_key)

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def generate(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        top_p: float = 0.9,
        max_output_tokens: int = 3000,
        model: str = DEFAULT_MODEL,
        parts: list[Any] | None = None,
    ) -> str:
        """Generate text for ``prompt``.

        Args:
            prompt: Prompt text.
            temperature: Sampling temperature.
            top_p: Nucleus sampling cutoff.
            max_output_tokens: Response token cap.
            model: Gemini model name.
            parts: Extra content parts sent after the prompt (e.g. a
                ``file_data`` dict for a video URL).

        Returns:
            The response text.

        Raises:
            GeminiNotConfiguredError: If no API key is set.
        """
        if not self.available:
            raise GeminiNotConfiguredError("Gemini API key not configured")

        generative_model = genai.GenerativeModel(
            model,
            generation_config={
                "temperature": temperature,
                "top_p": top_p,
                "max_output_tokens": max_output_tokens,
            },
        )
        contents: Any = [prompt, *parts] if parts else prompt
        response = generative_model.generate_content(contents)
        return response.text


_client: GeminiClient | None = None
_client_lock = threading.Lock()


def get_gemini() -> GeminiClient:
    """Return the shared client, created from settings on first use."""
    global _client
    with _client_lock:
        if _client is None:
            _client = GeminiClient(get_settings().gemini_api_key)
        return _client


def set_gemini(client: GeminiClient | None) -> None:
    """Replace the shared client (``None`` rebuilds it from settings)."""
    global _client
    with _client_lock:
        _client = client


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Pull a JSON object out of model output.

    Tries a fenced code block first, then the span from the first ``{``
    to the last ``}``. Returns ``None`` when neither parses to a dict.
    """
    candidates: list[str] = []
    match = _JSON_FENCE_RE.search(text)
    if match:
        candidates.append(match.group(1))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    return _ANY_FENCE_RE.sub("", text.strip()).strip()
