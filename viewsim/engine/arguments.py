"""Recover viewer decisions from model output that is frequently not valid JSON.

Models wrap arguments in stray tags, stutter keys, leave quotes unescaped, or
get cut off mid-stream. Extraction degrades through three tiers and never
raises. The tool-inference fallbacks live here too so that the policy can be
read and tested apart from the transport.
"""

from __future__ import annotations

import json
import re
from typing import Any

from viewsim.engine.types import ExtractedFields, ToolName, ToolSource

THOUGHT_KEY = "subconscious_thought"
CURIOSITY_KEY = "curiosity_level"
QUIT_REASON_KEY = "reason_for_quitting"

# Wrapper tags, partial tags left by truncated streams, and code fences
POLLUTION_PATTERNS = [
    re.compile(r"</?\s*TOOLCALL\s*>", re.IGNORECASE),
    re.compile(r"</?\s*tool_call\s*>", re.IGNORECASE),
    re.compile(r"(?:TOOLCALL|OLCALL|CALL)>"),
    re.compile(r"^\s*```(?:json)?", re.IGNORECASE),
    re.compile(r"```\s*$"),
]

# A value ends at a quote followed by the next key (comma optional), a closing brace,
# or the end of the text, so inner unescaped quotes stay inside the capture.
_VALUE_END = r'"?\s*(?=,?\s*"[A-Za-z_]+"\s*:|\}|$)'


def _string_field_pattern(key: str) -> re.Pattern[str]:
    # (?:"key": )+ swallows stuttered keys like "key": "key": "value"
    return re.compile(rf'(?:"{key}"\s*:\s*)+"(?P<value>.*?){_VALUE_END}', re.DOTALL)


THOUGHT_PATTERN = _string_field_pattern(THOUGHT_KEY)
QUIT_REASON_PATTERN = _string_field_pattern(QUIT_REASON_KEY)
CURIOSITY_PATTERN = re.compile(rf'(?:"{CURIOSITY_KEY}"\s*:\s*)+"?(?P<value>-?\d+(?:\.\d+)?)')

QUIT_HINTS = [
    re.compile(r"\bquit_video\b"),
    re.compile(r"reason_for_quitting"),
    re.compile(r"_for_quitting"),
    re.compile(r"\bquit\b", re.IGNORECASE),
]
KEEP_HINTS = [
    re.compile(r"\bkeep_playing\b"),
    re.compile(r"subconscious_thought"),
    re.compile(r"curiosity_level"),
]
NEGATIVE_SENTIMENT = ("boring", "low stimulation")

STUTTER_PREFIX = f'"{THOUGHT_KEY}":'


# ============================================================
# Field extraction
# ============================================================


def extract_fields(raw_text: str | None) -> ExtractedFields:
    """Recover thought / curiosity / quit reason from noisy text."""
    if not raw_text:
        return ExtractedFields()

    text = raw_text.strip()

    fields = _fields_from_object(_parse_braced(text))
    if not fields.is_empty:
        return fields

    cleaned = sanitize(text)
    fields = _fields_from_object(_parse_braced(cleaned))
    if not fields.is_empty:
        return fields

    return _regex_sweep(cleaned)


def merge_fields(primary: ExtractedFields, fallback: ExtractedFields) -> ExtractedFields:
    """Fill gaps in ``primary`` from ``fallback``; ``primary`` wins per field."""
    return ExtractedFields(
        thought=primary.thought if primary.thought is not None else fallback.thought,
        curiosity=primary.curiosity if primary.curiosity is not None else fallback.curiosity,
        quit_reason=(
            primary.quit_reason if primary.quit_reason is not None else fallback.quit_reason
        ),
    )


def sanitize(text: str) -> str:
    for pattern in POLLUTION_PATTERNS:
        text = pattern.sub("", text)
    return text.strip()


def clean_thought(thought: str) -> str:
    """Strip a stuttered ``"subconscious_thought":`` prefix captured as part of the value."""
    cleaned = thought.strip()
    if cleaned.startswith(STUTTER_PREFIX):
        cleaned = cleaned[len(STUTTER_PREFIX):].strip()
        if cleaned.startswith('"'):
            cleaned = cleaned[1:]
        if cleaned.endswith('"'):
            cleaned = cleaned[:-1]
    return cleaned


def _parse_braced(text: str) -> Any:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    try:
        return json.loads(text[first:last + 1])
    except json.JSONDecodeError:
        return None


def _fields_from_object(obj: Any) -> ExtractedFields:
    if not isinstance(obj, dict):
        return ExtractedFields()

    thought = obj.get(THOUGHT_KEY)
    reason = obj.get(QUIT_REASON_KEY)
    fields = ExtractedFields(
        thought=clean_thought(str(thought)) if thought else None,
        curiosity=_coerce_int(obj.get(CURIOSITY_KEY)),
        quit_reason=str(reason) if reason else None,
    )
    if not fields.is_empty:
        return fields

    # Text-mode tool calls: {"name": "keep_playing", "arguments": {...}}
    nested = obj.get("arguments", obj.get("parameters"))
    if isinstance(nested, str):
        try:
            nested = json.loads(nested)
        except json.JSONDecodeError:
            return fields
    if isinstance(nested, dict):
        return _fields_from_object(nested)
    return fields


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None


def _regex_sweep(text: str) -> ExtractedFields:
    thought = _match_string(THOUGHT_PATTERN, text)
    curiosity_match = CURIOSITY_PATTERN.search(text)
    return ExtractedFields(
        thought=clean_thought(thought) if thought else None,
        curiosity=_coerce_int(curiosity_match.group("value")) if curiosity_match else None,
        quit_reason=_match_string(QUIT_REASON_PATTERN, text),
    )


def _match_string(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    if not match:
        return None
    captured = match.group("value").strip()
    if not captured:
        return None
    try:
        value = json.loads(f'"{captured}"')
    except json.JSONDecodeError:
        return captured
    return value if isinstance(value, str) and value else captured


# ============================================================
# Tool inference when the provider emitted no tool call
# ============================================================


def infer_tool_from_text(text: str | None) -> ToolName | None:
    """Guess the intended tool from free assistant text, or None if nothing matches."""
    text = (text or "").strip()
    if not text:
        return None

    if any(p.search(text) for p in QUIT_HINTS):
        return ToolName.QUIT_VIDEO
    if any(p.search(text) for p in KEEP_HINTS):
        return ToolName.KEEP_PLAYING
    if any(word in text for word in NEGATIVE_SENTIMENT):
        return ToolName.QUIT_VIDEO
    return None


def resolve_tool(observed: ToolName | None, text: str | None) -> tuple[ToolName, ToolSource]:
    """Pick the tool to apply and record how it was chosen.

    Order: the provider's tool call, then keyword inference over the free
    text, then keep_playing.
    """
    if observed is not None:
        return observed, ToolSource.TOOL_CALL

    inferred = infer_tool_from_text(text)
    if inferred is not None:
        return inferred, ToolSource.TEXT_HEURISTIC

    return ToolName.KEEP_PLAYING, ToolSource.DEFAULT
