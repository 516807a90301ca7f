"""Recover a {title, content} record from streamed, possibly malformed model output.

The model is asked for exactly one JSON object, but it may wrap the object in
prose, put raw newlines inside string values, or stop mid-object. Each
strategy below is a pure function ``buffer -> ParsedRecord`` that raises
ParseError; ``first_success`` applies them in order, each more tolerant than
the one before. ``extract_final`` always returns a record: when every
strategy fails it builds a visible fallback instead.
"""

import ast
import json
import re
from typing import Callable, Iterable, Optional

from pydantic import ValidationError

from artive.models.rewrite import ParsedRecord
from artive.services.exceptions import UnparseableResult
from artive.utils.logging import get_logger


logger = get_logger(__name__)

FALLBACK_TITLE_SUFFIX = " (改写版)"
FALLBACK_CONTENT = "<p>改写失败，请重试</p>"

PREVIEW_LENGTH = 100

_TITLE_PATTERN = re.compile(r'"title"\s*:\s*"([^"]+)"')
_CONTENT_VALUE_START = re.compile(r'"content"\s*:\s*"')
_CONTENT_END = '"}'


class ParseError(ValueError):
    """Raised by a strategy that cannot produce a complete record."""


Strategy = Callable[[str], ParsedRecord]


def _record_from(obj: object, strategy: str) -> ParsedRecord:
    if not isinstance(obj, dict):
        raise ParseError(f"expected an object, got {type(obj).__name__}")

    title = obj.get("title")
    content = obj.get("content")
    if not isinstance(title, str) or not title.strip():
        raise ParseError("missing title")
    if not isinstance(content, str) or not content.strip():
        raise ParseError("missing content")

    return ParsedRecord(title=title, content=content, strategy=strategy)


def _loads(text: str, strict: bool = True) -> object:
    try:
        return json.loads(text, strict=strict)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON at position {e.pos}: {e.msg}") from e


def _bounded_slice(buffer: str) -> str:
    """Substring from the first '{' to the last '}' inclusive."""
    start = buffer.find("{")
    end = buffer.rfind("}")
    if start == -1 or end <= start:
        raise ParseError("no braces delimiting an object")
    return buffer[start:end + 1]


def parse_strict(buffer: str) -> ParsedRecord:
    """Parse the whole buffer as JSON."""
    return _record_from(_loads(buffer), "strict")


def parse_bounded(buffer: str) -> ParsedRecord:
    """Parse the outermost {...} span, dropping prose around it."""
    return _record_from(_loads(_bounded_slice(buffer)), "bounded")


def repair_content_newlines(text: str) -> str:
    """
    Escape raw newlines that fall inside the "content" string value.

    Once a line holding the "content" key opens the value, every following
    line is joined with an escaped \\n until the line carrying the closing
    '"}' (joined the same way, since its newline is still inside the string).
    A line that starts with '}' closes the object and keeps its raw newline.

    Example:
        >>> repair_content_newlines('{"title":"A","content":"l1\\nl2"}')
        '{"title":"A","content":"l1\\\\nl2"}'
    """
    lines = text.split("\n")
    repaired = lines[0]
    in_content = '"content"' in lines[0] and ":" in lines[0] and _CONTENT_END not in lines[0]

    for line in lines[1:]:
        if in_content:
            if line.lstrip().startswith("}"):
                repaired += "\n" + line
                in_content = False
                continue
            repaired += "\\n" + line
            if _CONTENT_END in line:
                in_content = False
            continue

        repaired += "\n" + line
        if '"content"' in line and ":" in line and _CONTENT_END not in line:
            in_content = True

    return repaired


def parse_newline_repaired(buffer: str) -> ParsedRecord:
    """Escape raw newlines inside the content value, then parse strictly."""
    return _record_from(_loads(repair_content_newlines(_bounded_slice(buffer))), "newline_repair")


def parse_permissive(buffer: str) -> ParsedRecord:
    """
    Evaluate the {...} span as a loose object literal.

    Tries JSON without the control-character restriction first, then a
    Python literal (single quotes, trailing commas).
    """
    text = _bounded_slice(buffer)

    try:
        return _record_from(_loads(text, strict=False), "permissive")
    except ParseError:
        pass

    try:
        obj = ast.literal_eval(text)
    except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError) as e:
        raise ParseError(f"not an object literal: {e}") from e
    return _record_from(obj, "permissive")


def salvage_with_regex(buffer: str) -> ParsedRecord:
    """
    Pull title and content out with patterns when nothing parses.

    Content runs from the start of the "content" value to the last '"}' in
    the buffer, so a value that itself contains '"}' is cut short there.
    """
    title_match = _TITLE_PATTERN.search(buffer)
    content_match = _CONTENT_VALUE_START.search(buffer)
    if title_match is None or content_match is None:
        raise ParseError("title or content key not found")

    content_end = buffer.rfind(_CONTENT_END)
    if content_end < content_match.end():
        raise ParseError("content value is not terminated")

    content = buffer[content_match.end():content_end]
    content = content.replace("\\n", "\n").replace('\\"', '"')

    return _record_from({"title": title_match.group(1), "content": content}, "regex_salvage")


STRATEGIES: tuple[Strategy, ...] = (
    parse_strict,
    parse_bounded,
    parse_newline_repaired,
    parse_permissive,
    salvage_with_regex,
)

PREVIEW_STRATEGIES: tuple[Strategy, ...] = (parse_strict, parse_bounded)


def first_success(strategies: Iterable[Strategy], buffer: str) -> ParsedRecord:
    """
    Return the record from the first strategy that succeeds.

    Raises:
        ParseError: Every strategy failed (message lists each failure)
    """
    failures = []
    for strategy in strategies:
        try:
            return strategy(buffer)
        except ParseError as e:
            failures.append(f"{strategy.__name__}: {e}")
    raise ParseError("; ".join(failures) or "no strategies")


def fallback_record(original_title: str) -> ParsedRecord:
    """Visible placeholder persisted when the output cannot be recovered."""
    try:
        return ParsedRecord(
            title=f"{original_title}{FALLBACK_TITLE_SUFFIX}",
            content=FALLBACK_CONTENT,
            strategy="fallback",
        )
    except ValidationError as e:
        raise UnparseableResult(f"AI响应格式错误: {e}") from e


def extract_final(buffer: str, original_title: str) -> ParsedRecord:
    """
    Run the full cascade on the complete buffer.

    Never raises for bad model output: an empty buffer, or one no strategy
    can read, yields the fallback record.
    """
    if not buffer.strip():
        logger.warning("extract_empty_buffer")
        return fallback_record(original_title)

    try:
        record = first_success(STRATEGIES, buffer)
    except ParseError as e:
        logger.warning(
            "extract_all_strategies_failed",
            buffer_length=len(buffer),
            buffer_head=buffer[:500],
            errors=str(e),
        )
        return fallback_record(original_title)

    logger.info(
        "extract_succeeded",
        strategy=record.strategy,
        title_length=len(record.title),
        content_length=len(record.content),
    )
    return record


class ResultExtractor:
    """
    Accumulates streamed deltas and recovers the record from them.

    ``preview()`` may be called after every delta; it only tries the cheap
    strict strategies and stays silent on failure. ``finalize()`` is the
    authoritative end-of-stream extraction.
    """

    def __init__(self, original_title: str):
        self.original_title = original_title
        self.buffer = ""
        self._last_preview_content: Optional[str] = None

    def feed(self, delta: str) -> None:
        self.buffer += delta

    def preview(self) -> Optional[str]:
        """
        Preview text of the content parsed so far.

        Returns:
            First 100 characters of content followed by '...', or None when
            nothing parses yet or the content has not changed since the last preview
        """
        if "{" not in self.buffer or "}" not in self.buffer:
            return None

        try:
            record = first_success(PREVIEW_STRATEGIES, self.buffer)
        except ParseError:
            return None

        if record.content == self._last_preview_content:
            return None

        self._last_preview_content = record.content
        return record.content[:PREVIEW_LENGTH] + "..."

    def finalize(self) -> ParsedRecord:
        return extract_final(self.buffer, self.original_title)
