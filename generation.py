"""Two-stage message synthesis.

Stage 1 asks the main model, with Google Search grounding, to write the
scheduled message. Its output is free-form and often wraps the real message
in search notes, drafts or "nothing new today" commentary.

Stage 2 hands that text to a lighter model in JSON mode with a strict
extraction template: decide whether there is a genuine subscriber-facing
message and return only its body. The template is biased towards
``hasNewMessage=false`` when ambiguous; skipping a real update is cheaper
than broadcasting noise.
"""
from __future__ import annotations

import json
import logging
import re
import traceback

import config
from records import ExtractedMessage, Step1Result, Step2Result
from utils import utc_now_iso

log = logging.getLogger(__name__)

TRIGGER_INSTRUCTION = "Generate a scheduled message for today"

EXTRACTION_PROMPT = """\
You are extracting the FINAL WhatsApp message from an AI response.

AI Response:
---
{response}
---

TASK: Determine if there is a VALID message to send, and extract it if so.

SET hasNewMessage = FALSE if the response contains ANY of these:
- The exact text "NO_NEW_CONTENT" (this is a special signal meaning no news found)
- "no new content found" or similar phrases
- "all content has been covered" or similar
- Only a list of previously sent titles without new news
- Commentary about lack of new information
- Error messages or system responses
- Internal thinking without a final message
- Meta-commentary like "I checked all sources...", "The search results confirm..."
- Word count checks, draft iterations
- Any text that is NOT a proper subscriber-facing message

SET hasNewMessage = TRUE only if there is a CLEAR, POLISHED message with:
- An emoji-decorated title (e.g., "🚀 *Title Here!*" or "✨ Title Here 🚀")
- Substantive news/update body text (not just a list of old titles)
- A call-to-action URL at the end like "For more updates visit https://..."
- Content that is clearly meant for subscribers (not admin/system notes)

EXTRACT the message ONLY if hasNewMessage = TRUE:
- The FINAL formatted message with emoji title, body text, and URL
- Usually appears at the END of the response
- Must be a complete, polished message ready to send

Return JSON:
{{
  "message": "The clean message to send (empty string if hasNewMessage is false)",
  "hasNewMessage": true/false,
  "notes": "Reason for decision (e.g., 'No new content found' or 'Valid news message extracted')"
}}

CRITICAL:
- When in doubt, set hasNewMessage = FALSE (better to skip than send garbage)
- The "message" field should be EMPTY ("") if hasNewMessage is false
- Do NOT include AI reasoning, search analysis, word count checks, or draft iterations
Return ONLY the JSON object."""

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)

# Preambles the generator sometimes puts before a "---" separator.
_COMMENTARY_PATTERNS = [
    re.compile(r"^I have reviewed.*?\.\s*---\s*", re.IGNORECASE | re.DOTALL),
    re.compile(r"^After reviewing.*?\.\s*---\s*", re.IGNORECASE | re.DOTALL),
    re.compile(r"^Based on.*?\.\s*---\s*", re.IGNORECASE | re.DOTALL),
    re.compile(r"^Currently.*?\.\s*---\s*", re.IGNORECASE | re.DOTALL),
    re.compile(r"^Therefore.*?\.\s*---\s*", re.IGNORECASE | re.DOTALL),
]


class ExtractionError(ValueError):
    """Stage-2 output could not be decoded into the expected JSON object."""


def build_generation_prompt(system_prompt: str, transcript: str, scheduled_prompt: str = "") -> str:
    return (
        f"{system_prompt}\n\n"
        f"Chat history:\n{transcript}\n\n"
        f"User: {TRIGGER_INSTRUCTION}\n\n"
        f"{scheduled_prompt or ''}"
    )


def build_extraction_prompt(step1_text: str) -> str:
    return EXTRACTION_PROMPT.format(response=step1_text)


def strip_code_fence(text: str) -> str:
    stripped = (text or "").strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def _coerce_bool(value) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
        return None
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def parse_extraction(raw: str) -> ExtractedMessage:
    """Decode the stage-2 JSON object. Raises ExtractionError on anything else."""
    text = strip_code_fence(raw)
    if not text:
        raise ExtractionError("Empty extraction response")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Invalid JSON from extractor: {exc}") from exc
    if not isinstance(data, dict):
        raise ExtractionError(f"Extractor returned {type(data).__name__}, expected an object")

    message = data.get("message")
    return ExtractedMessage(
        message=message if isinstance(message, str) else "",
        has_new_message=_coerce_bool(data.get("hasNewMessage")),
        notes=str(data.get("notes") or ""),
    )


def clean_message(text: str) -> str:
    """Trim and drop known generator commentary preambles."""
    cleaned = (text or "").strip()
    for pattern in _COMMENTARY_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return cleaned.strip()


async def generate_candidate(
    backend,
    system_prompt: str,
    transcript: str,
    scheduled_prompt: str = "",
    *,
    model: str | None = None,
) -> Step1Result:
    """Stage 1: grounded generation. Failures are captured on the result, never raised."""
    model = model or config.GENERATION_MODEL
    result = Step1Result(
        prompt=build_generation_prompt(system_prompt, transcript, scheduled_prompt),
        model=model,
        timestamp=utc_now_iso(),
    )
    log.info("Step 1: calling %s with grounding", model)
    try:
        generated = await backend.generate(
            result.prompt,
            model=model,
            grounded=True,
            max_output_tokens=config.GENERATION_MAX_OUTPUT_TOKENS,
        )
    except Exception as exc:
        log.error("Step 1 generation failed: %s", exc)
        result.error = str(exc) or type(exc).__name__
        result.error_stack = traceback.format_exc()
        return result

    result.response = generated.text or ""
    result.success = True
    log.info("Step 1 completed. Response length: %d chars", result.response_length)
    return result


async def extract_message(backend, step1_text: str, *, model: str | None = None) -> Step2Result:
    """Stage 2: JSON-mode extraction. Failures are captured on the result, never raised."""
    model = model or config.EXTRACTION_MODEL
    result = Step2Result(
        prompt=build_extraction_prompt(step1_text),
        model=model,
        timestamp=utc_now_iso(),
    )
    log.info("Step 2: extracting message with %s", model)
    try:
        generated = await backend.generate(
            result.prompt,
            model=model,
            json_mode=True,
            max_output_tokens=config.GENERATION_MAX_OUTPUT_TOKENS,
        )
        result.response = (generated.text or "").strip()
        result.parsed = parse_extraction(result.response)
    except Exception as exc:
        log.warning("Step 2 extraction failed: %s", exc)
        result.error = str(exc) or type(exc).__name__
        return result

    result.success = True
    log.info("Step 2 completed. Parsed message length: %d chars", len(result.parsed.message))
    return result
