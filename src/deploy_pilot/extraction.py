# extraction.py
# Structured-output extraction: turn free-form model text into a JSON object.
#
# Models wrap their answer in prose, fence it in markdown, or run out of
# output tokens halfway through. Strategies run in a fixed order and the
# first candidate that carries one of the expected keys wins. Objects cut
# short are repaired by closing whatever the model left open.

import json
import logging
import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ParseFailure(Exception):
    """Raised when no strategy recovers a usable JSON object from model text."""

    def __init__(self, message: str, *, truncated: bool = False, preview: str = "") -> None:
        super().__init__(message)
        self.truncated = truncated
        self.preview = preview


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------

ANALYSIS_KEYS = ("summary", "frameworks", "language", "projectType", "buildConfig", "dependencies")
CONFIG_KEYS = ("projectSummary", "files", "deployment", "configType")

PREAMBLE_PATTERNS = [
    re.compile(r"here(?:'s| is) (?:the|my) (?:analysis|json|result)[:\s]*", re.IGNORECASE),
    re.compile(r"final (?:analysis|json|result)[:\s]*", re.IGNORECASE),
    re.compile(r"json (?:analysis|output|result)[:\s]*", re.IGNORECASE),
    re.compile(r"let me (?:provide|compile|create)[^{]*", re.IGNORECASE),
    re.compile(r"now i (?:have|will|can)[^{]*", re.IGNORECASE),
]

_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\n?(.*)$", re.DOTALL)
_PARTIAL_UNICODE_RE = re.compile(r"\\u[0-9a-fA-F]{0,3}$")


@dataclass(frozen=True)
class StructuredExtractionResult:
    """Output of the balanced-brace scanner."""

    json: str | None
    is_truncated: bool
    missing_close_count: int


@dataclass(frozen=True)
class Extraction:
    data: dict
    strategy: str
    repaired: bool


def has_expected_fields(obj: Any, expected_keys: Iterable[str]) -> bool:
    """True when obj is a dict carrying at least one expected key (or none are expected)."""
    if not isinstance(obj, dict):
        return False
    keys = tuple(expected_keys)
    return not keys or any(key in obj for key in keys)


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


def scan_balanced(text: str, start: int = 0) -> StructuredExtractionResult:
    """
    Return the first brace-balanced span at or after `start`.

    Braces inside string literals are not structural, and an escaped quote
    does not end a string. When input ends with braces still open the
    partial span is returned with is_truncated set.
    """
    begin = text.find("{", start)
    if begin == -1:
        return StructuredExtractionResult(json=None, is_truncated=False, missing_close_count=0)

    depth = 0
    in_string = False
    escaped = False
    for index in range(begin, len(text)):
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
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return StructuredExtractionResult(
                    json=text[begin : index + 1], is_truncated=False, missing_close_count=0
                )

    return StructuredExtractionResult(json=text[begin:], is_truncated=True, missing_close_count=depth)


# ---------------------------------------------------------------------------
# Truncation repair
# ---------------------------------------------------------------------------


class _Frame:
    __slots__ = ("closer", "expect", "colon_at")

    def __init__(self, closer: str) -> None:
        self.closer = closer
        # object: key -> colon -> value -> next ; array: value -> next
        self.expect = "key" if closer == "}" else "value"
        self.colon_at = -1


def _closers(stack: list[_Frame]) -> str:
    return "".join(frame.closer for frame in reversed(stack))


def _string_end(text: str, start: int) -> int:
    """Index of the closing quote of the string opened at `start`, or -1."""
    escaped = False
    for index in range(start + 1, len(text)):
        char = text[index]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            return index
    return -1


def _close_string(fragment: str) -> str:
    trailing = len(fragment) - len(fragment.rstrip("\\"))
    if trailing % 2:
        fragment = fragment[:-1]
    fragment = _PARTIAL_UNICODE_RE.sub("", fragment)
    return fragment + '"'


def _is_literal(token: str) -> bool:
    try:
        json.loads(token)
    except ValueError:
        return False
    return True


def repair_truncated(partial: str) -> str | None:
    """
    Close a JSON object that was cut off mid-stream.

    Complete leading members are kept as they are. A trailing comma, a
    half-written key or a key with no colon is dropped; an open string value
    is closed; a dangling colon or half-written scalar becomes `: null`;
    then every open container is closed. Returns None when the text has no
    object or its closers do not match.
    """
    begin = partial.find("{")
    if begin == -1:
        return None
    text = partial[begin:].rstrip()

    stack: list[_Frame] = []
    safe_end, safe_closers = 0, ""
    index = 0
    length = len(text)

    while index < length:
        char = text[index]
        if char.isspace():
            index += 1
            continue
        frame = stack[-1] if stack else None

        if char in "{[":
            stack.append(_Frame("}" if char == "{" else "]"))
            index += 1
            safe_end, safe_closers = index, _closers(stack)
            continue

        if char in "}]":
            if frame is None or frame.closer != char:
                return None
            stack.pop()
            index += 1
            if not stack:
                return text[:index]
            stack[-1].expect = "next"
            safe_end, safe_closers = index, _closers(stack)
            continue

        if frame is None:
            return None

        if char == '"':
            end = _string_end(text, index)
            if end == -1:
                if frame.expect == "key":
                    break
                return text[:index] + _close_string(text[index:]) + _closers(stack)
            index = end + 1
            if frame.expect == "key":
                frame.expect = "colon"
            else:
                frame.expect = "next"
                safe_end, safe_closers = index, _closers(stack)
            continue

        if char == ":":
            frame.expect = "value"
            frame.colon_at = index
            index += 1
            continue

        if char == ",":
            frame.expect = "key" if frame.closer == "}" else "value"
            index += 1
            continue

        # bare scalar: number, true, false, null
        end = index
        while end < length and text[end] not in ",}]" and not text[end].isspace():
            end += 1
        token = text[index:end]
        if end == length:
            if _is_literal(token):
                return text + _closers(stack)
            if frame.closer == "}" and frame.expect == "value":
                return text[: frame.colon_at + 1] + " null" + _closers(stack)
            break
        frame.expect = "next"
        index = end
        safe_end, safe_closers = index, _closers(stack)

    if not stack:
        return None
    frame = stack[-1]
    if frame.expect == "value" and frame.closer == "}" and frame.colon_at != -1:
        return text[: frame.colon_at + 1] + " null" + _closers(stack)
    if frame.expect == "next":
        return text + _closers(stack)
    return text[:safe_end] + safe_closers


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

Candidate = tuple[Any, bool]


def _loads(raw: str) -> Any:
    try:
        return json.loads(raw, strict=False)
    except ValueError:
        return None


def _from_scan(text: str, start: int = 0) -> Iterator[Candidate]:
    scan = scan_balanced(text, start)
    if scan.json is None:
        return
    if not scan.is_truncated:
        data = _loads(scan.json)
        if data is not None:
            yield data, False
        return
    repaired = repair_truncated(scan.json)
    if repaired is None:
        return
    data = _loads(repaired)
    if data is not None:
        LOGGER.debug(
            "structured_output_repaired",
            extra={"missing_close_count": scan.missing_close_count},
        )
        yield data, True


def _direct(text: str) -> Iterator[Candidate]:
    stripped = text.strip()
    if stripped.startswith("{"):
        data = _loads(stripped)
        if data is not None:
            yield data, False


def _fenced(text: str) -> Iterator[Candidate]:
    blocks = [match.group(1) for match in _FENCE_RE.finditer(text)]
    tail = text[text.rfind("```") :] if text.count("```") % 2 else ""
    if tail:
        open_match = _OPEN_FENCE_RE.match(tail)
        if open_match:
            blocks.append(open_match.group(1))
    for block in blocks:
        if "{" in block:
            yield from _from_scan(block)


def _bracket(text: str) -> Iterator[Candidate]:
    yield from _from_scan(text)


def _preamble(text: str) -> Iterator[Candidate]:
    for pattern in PREAMBLE_PATTERNS:
        for match in pattern.finditer(text):
            yield from _from_scan(text[match.end() :])


def _exhaustive(text: str) -> Iterator[Candidate]:
    index = text.find("{")
    while index != -1:
        yield from _from_scan(text, index)
        index = text.find("{", index + 1)


STRATEGIES: list[tuple[str, Callable[[str], Iterator[Candidate]]]] = [
    ("direct", _direct),
    ("fenced", _fenced),
    ("bracket", _bracket),
    ("preamble", _preamble),
    ("exhaustive", _exhaustive),
]


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def _failure(text: str) -> ParseFailure:
    opens, closes = text.count("{"), text.count("}")
    if opens > closes:
        return ParseFailure(
            f"Model response was truncated ({opens - closes} unclosed braces). "
            "Increase the output token budget (max_tokens) and try again.",
            truncated=True,
            preview=text[:300],
        )
    return ParseFailure(
        "Model response did not contain a JSON object with the expected fields. "
        "The model may have returned the wrong format.",
        truncated=False,
        preview=text[:500],
    )


def extract_structured_output(text: str | None, expected_keys: Iterable[str] = ANALYSIS_KEYS) -> Extraction:
    """Run every strategy in priority order. Raises ParseFailure when all fail."""
    if not text or not text.strip():
        raise ParseFailure("Model returned an empty response.", truncated=False, preview="")

    keys = tuple(expected_keys)
    for name, strategy in STRATEGIES:
        for data, repaired in strategy(text):
            if has_expected_fields(data, keys):
                LOGGER.debug(
                    "structured_output_extracted",
                    extra={"strategy": name, "repaired": repaired},
                )
                return Extraction(data=data, strategy=name, repaired=repaired)

    raise _failure(text)


def extract_json(text: str | None, expected_keys: Iterable[str] = ANALYSIS_KEYS) -> dict:
    return extract_structured_output(text, expected_keys).data
