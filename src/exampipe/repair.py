"""Best-effort repair of near-JSON returned by the extraction model.

The model is not guaranteed to emit strict JSON, especially close to its
output-token limit. Strategies run in order and each only runs when the
previous one failed:

1. strip enclosing markdown fences
2. parse as-is
3. parse the first balanced ``{...}``/``[...]`` span
4. escape raw control characters inside string literals
5. close unterminated strings and brackets (truncated output)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
import json
import logging
import re
from typing import Any

from .errors import ExtractionParseError

LOGGER = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*[ \t]*\r?\n?(?P<body>.*?)\r?\n?```\s*$", re.DOTALL)
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}
_CLOSERS = {"{": "}", "[": "]"}
_MAX_TRUNCATION_CUTS = 200


class RepairStage(IntEnum):
    """Which strategy produced the parsed value."""

    FENCES = 1
    DIRECT = 2
    BOUNDARY = 3
    CONTROL_CHARS = 4
    BRACKETS = 5


@dataclass(slots=True)
class RepairResult:
    data: Any
    stage: RepairStage

    @property
    def repaired(self) -> bool:
        return self.stage > RepairStage.DIRECT


def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if present."""

    stripped = text.strip().lstrip("\ufeff")
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group("body").strip()
    # An opening fence without its closer, typical of truncated output
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
    return stripped.strip()


def repair_json(text: str) -> RepairResult:
    """Parse ``text`` into JSON, falling back through the repair strategies.

    Raises:
        ExtractionParseError: If every strategy fails.
    """

    cleaned = strip_fences(text or "")

    data = _try_parse(cleaned)
    if data is not _FAILED:
        return RepairResult(data, RepairStage.DIRECT)

    candidate = extract_json_span(cleaned)
    if candidate is None:
        LOGGER.warning("Model output contains no JSON object or array (%s chars)", len(cleaned))
        raise ExtractionParseError(text or "")

    data = _try_parse(candidate)
    if data is not _FAILED:
        LOGGER.info("Recovered JSON by trimming surrounding text")
        return RepairResult(data, RepairStage.BOUNDARY)

    escaped = escape_control_characters(candidate)
    data = _try_parse(escaped)
    if data is not _FAILED:
        LOGGER.info("Recovered JSON by escaping control characters inside strings")
        return RepairResult(data, RepairStage.CONTROL_CHARS)

    data = _parse_truncated(escaped)
    if data is not _FAILED:
        LOGGER.info("Recovered JSON by balancing unterminated brackets")
        return RepairResult(data, RepairStage.BRACKETS)

    LOGGER.error("All JSON repair strategies failed (%s chars)", len(text or ""))
    raise ExtractionParseError(text or "")


def extract_json_span(text: str) -> str | None:
    """Return the first ``{``/``[`` and everything up to its matching closer.

    When the opener is never closed the rest of the text is returned so the
    later strategies can still work on it.
    """

    start = _first_opener(text)
    if start is None:
        return None

    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif stack and char == stack[-1]:
            stack.pop()
            if not stack:
                return text[start : index + 1]
    return text[start:]


def escape_control_characters(text: str) -> str:
    """Escape raw control characters that occur inside string literals.

    Tracks quote state so existing escape sequences and structural
    whitespace between tokens are left untouched.
    """

    out: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
                out.append(char)
                continue
            if char == "\\":
                escaped = True
                out.append(char)
                continue
            if char == '"':
                in_string = False
                out.append(char)
                continue
            if ord(char) < 0x20:
                out.append(_CONTROL_ESCAPES.get(char, f"\\u{ord(char):04x}"))
                continue
            out.append(char)
            continue
        if char == '"':
            in_string = True
        out.append(char)
    return "".join(out)


def close_brackets(text: str) -> str:
    """Append whatever is needed to terminate an unfinished JSON document."""

    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif stack and char == stack[-1]:
            stack.pop()

    suffix = ""
    if in_string:
        # A dangling backslash would escape the quote we add
        if escaped:
            text = text[:-1]
        suffix += '"'
    body = (text + suffix).rstrip()
    body = re.sub(r"[,:]\s*$", "", body)
    return body + "".join(reversed(stack))


def _parse_truncated(text: str) -> Any:
    data = _try_parse(close_brackets(text))
    if data is not _FAILED:
        return data

    # Cut back to earlier element boundaries until the prefix closes cleanly
    for attempts, cut in enumerate(reversed(_comma_positions(text))):
        if attempts >= _MAX_TRUNCATION_CUTS:
            break
        data = _try_parse(close_brackets(text[:cut]))
        if data is not _FAILED:
            return data
    return _FAILED


def _comma_positions(text: str) -> list[int]:
    positions: list[int] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == ",":
            positions.append(index)
    return positions


def _first_opener(text: str) -> int | None:
    positions = [pos for pos in (text.find("{"), text.find("[")) if pos != -1]
    return min(positions) if positions else None


class _Failed:
    __slots__ = ()


_FAILED: Any = _Failed()


def _try_parse(text: str) -> Any:
    if not text:
        return _FAILED
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return _FAILED
