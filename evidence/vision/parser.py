"""
Verdict parsing.

The model replies in free text that should contain one JSON object, but
may wrap it in prose or markdown fences. Everything heuristic about that
lives in parse_verdict() so it can be hardened without touching the
orchestrator.

Parsing fails closed: a missing or mistyped required field raises
parse_failure (not retryable), never a guessed verdict.
"""

from __future__ import annotations

import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any

from evidence.errors import VerificationError
from evidence.models.schemas import VerificationVerdict
from evidence.vision.prompt import PROMPT_VERSION

logger = logging.getLogger(__name__)

MAX_REASONING_CHARS = 500
MAX_FEEDBACK_CHARS = 200

DEFAULT_MATCH_FEEDBACK = "Photo verified! It matches the reported condition."
DEFAULT_MISMATCH_FEEDBACK = "Photo doesn't match the reported condition. Please try again."


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a model reply.

    Handles replies wrapped in ```json fences or surrounded by prose.
    Raises ValueError when no object can be decoded.
    """
    cleaned = text.strip()
    cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.I).strip()
    cleaned = re.sub(r"```$", "", cleaned).strip()

    try:
        obj = json.loads(cleaned)
        if isinstance(obj, dict):
            return obj
    except ValueError:
        pass

    # Try every "{" as a start; raw_decode stops at the end of the object,
    # so trailing prose (or a second object) doesn't matter.
    decoder = json.JSONDecoder()
    for m in re.finditer(r"\{", cleaned):
        try:
            obj, _ = decoder.raw_decode(cleaned, m.start())
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj
    raise ValueError("No JSON object found in model output")


def coerce_confidence(value: Any) -> int:
    """Number (or numeric string, optionally with %) -> int clamped to [0, 100]."""
    if isinstance(value, bool):
        raise ValueError("confidence must be a number, got bool")
    if isinstance(value, str):
        value = float(value.strip().rstrip("%").strip())
    if not isinstance(value, (int, float)):
        raise ValueError(f"confidence must be a number, got {type(value).__name__}")
    value = float(value)
    if math.isnan(value):
        raise ValueError("confidence is NaN")
    return int(round(max(0.0, min(100.0, value))))


def parse_verdict(content: str, prompt_version: str = PROMPT_VERSION) -> VerificationVerdict:
    """Turn a model reply into a VerificationVerdict, or raise parse_failure."""
    try:
        data = extract_json_object(content or "")

        is_match = data.get("isMatch")
        if not isinstance(is_match, bool):
            raise ValueError("isMatch missing or not a boolean")

        if "confidence" not in data:
            raise ValueError("confidence missing")
        confidence = coerce_confidence(data["confidence"])

        reasoning = data.get("reasoning")
        if not isinstance(reasoning, str):
            raise ValueError("reasoning missing or not a string")
    except (ValueError, OverflowError) as e:
        logger.error("Failed to parse AI response: %s", e)
        raise VerificationError.parse_failure("Failed to parse AI response") from e

    feedback = data.get("feedback")
    if not isinstance(feedback, str) or not feedback.strip():
        feedback = DEFAULT_MATCH_FEEDBACK if is_match else DEFAULT_MISMATCH_FEEDBACK

    return VerificationVerdict(
        is_match=is_match,
        confidence=confidence,
        reasoning=reasoning[:MAX_REASONING_CHARS],
        feedback=feedback.strip()[:MAX_FEEDBACK_CHARS],
        timestamp=datetime.now(timezone.utc),
        prompt_version=prompt_version,
    )
