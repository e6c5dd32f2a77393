"""Gemini generateContent client.

Two call shapes are used by automations:

  - grounded generation: Google Search tool enabled, free-form text out
  - JSON mode: ``responseMimeType=application/json``, no tools (Gemini
    rejects tool use combined with a JSON response mime type)

Uses httpx directly against the REST API with a 2-attempt retry on
timeouts and 429/502/503.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

import config
from utils import track_latency

log = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 502, 503}


class GenerationError(RuntimeError):
    """The generative backend failed to produce a response."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


@dataclass
class GenerationResult:
    text: str
    model: str
    finish_reason: str = ""


def build_payload(
    prompt: str,
    *,
    grounded: bool = False,
    json_mode: bool = False,
    max_output_tokens: int | None = None,
) -> dict:
    generation_config: dict = {
        "maxOutputTokens": max_output_tokens or config.GENERATION_MAX_OUTPUT_TOKENS,
    }
    if json_mode:
        generation_config["responseMimeType"] = "application/json"

    payload: dict = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": generation_config,
    }
    if grounded:
        payload["tools"] = [{"google_search": {}}]
    return payload


def extract_text(data: dict) -> tuple[str, str]:
    """Join the text parts of the first candidate. Returns (text, finish_reason)."""
    candidates = data.get("candidates") or []
    if not candidates:
        feedback = data.get("promptFeedback") or {}
        block_reason = feedback.get("blockReason")
        if block_reason:
            raise GenerationError(f"Prompt blocked: {block_reason}")
        return "", ""

    candidate = candidates[0] or {}
    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))
    return text, str(candidate.get("finishReason") or "")


class GeminiClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = config.GEMINI_API_KEY if api_key is None else api_key
        self.base_url = (base_url or config.GEMINI_BASE_URL).rstrip("/")
        self.timeout = timeout or config.GENAI_TIMEOUT
        self._transport = transport
        self.retry_delay = 2.0

    @track_latency("gemini")
    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        grounded: bool = False,
        json_mode: bool = False,
        max_output_tokens: int | None = None,
    ) -> GenerationResult:
        if not self.api_key:
            raise GenerationError("GEMINI_API_KEY not configured")

        url = f"{self.base_url}/models/{model}:generateContent"
        payload = build_payload(
            prompt,
            grounded=grounded,
            json_mode=json_mode,
            max_output_tokens=max_output_tokens,
        )

        last_exc: Exception | None = None
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self._transport
                ) as client:
                    resp = await client.post(url, params={"key": self.api_key}, json=payload)
                    resp.raise_for_status()
                    data = resp.json()
                text, finish_reason = extract_text(data)
                if finish_reason == "MAX_TOKENS":
                    log.warning("%s hit maxOutputTokens; response may be truncated", model)
                return GenerationResult(text=text, model=model, finish_reason=finish_reason)

            except httpx.TimeoutException as exc:
                last_exc = exc
                if attempt == 0:
                    await asyncio.sleep(self.retry_delay)
                    continue
                raise GenerationError(f"{model} timed out after {self.timeout:.0f}s") from exc
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status in _RETRYABLE_STATUS and attempt == 0:
                    last_exc = exc
                    await asyncio.sleep(self.retry_delay + 1)
                    continue
                log.error("%s returned HTTP %d: %s", model, status, exc.response.text[:500])
                raise GenerationError(f"{model} returned HTTP {status}", status=status) from exc
            except httpx.HTTPError as exc:
                raise GenerationError(f"{model} request failed: {exc}") from exc
            except ValueError as exc:
                raise GenerationError(f"{model} returned an unreadable response: {exc}") from exc

        raise GenerationError(f"{model} call failed: {last_exc}")
