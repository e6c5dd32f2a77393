"""Truncation guard for stage-2 extractions.

The extractor runs on a lighter model that sometimes cuts a long message
short. When the extracted text is much shorter than what stage 1 produced,
the extraction is treated as lossy and the full stage-1 text is used.

This trust rule is asymmetric on purpose: a short extraction is always
assumed to be a truncation artifact, never a correctly isolated short
message. A 1000-char stage-1 response that really does contain a 200-char
message plus 800 chars of search notes will be sent whole.
"""
from __future__ import annotations

from dataclasses import dataclass

import config


@dataclass(frozen=True)
class TruncationDecision:
    message: str
    truncation_detected: bool


def is_truncated(
    step1_text: str,
    extracted: str,
    *,
    min_chars: int | None = None,
    ratio: float | None = None,
) -> bool:
    """True when ``extracted`` looks like a clipped copy of ``step1_text``.

    Requires stage 1 to be longer than ``min_chars`` and the non-empty
    extraction to be shorter than ``ratio`` of it.
    """
    min_chars = config.TRUNCATION_MIN_CHARS if min_chars is None else min_chars
    ratio = config.TRUNCATION_RATIO if ratio is None else ratio
    if not extracted:
        return False
    return len(step1_text) > min_chars and len(extracted) < len(step1_text) * ratio


def resolve_message(
    step1_text: str,
    extracted: str,
    *,
    min_chars: int | None = None,
    ratio: float | None = None,
) -> TruncationDecision:
    """Pick the final message body from the stage-1 text and the extraction.

    An empty extraction falls back to the stage-1 text without being
    flagged as truncation.
    """
    if is_truncated(step1_text, extracted, min_chars=min_chars, ratio=ratio):
        return TruncationDecision(message=step1_text, truncation_detected=True)
    return TruncationDecision(message=extracted or step1_text, truncation_detected=False)
