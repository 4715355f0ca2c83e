"""Embedded tool-call extraction.

Generated text may carry directives of the form
``{"kuro_tool_call": {"id": ..., "name": ..., "args": {...}}}``. The scanner
below locates the matching closing brace with a depth counter that ignores
braces inside quoted strings, then parses the span as JSON. Malformed spans
are expected (generation is probabilistic) and are left alone.
"""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

TOOL_CALL_KEY = "kuro_tool_call"
TOOL_CALL_MARKER = '{"kuro_tool_call":'
THINK_TAG = re.compile(r"<(/?)think>", re.IGNORECASE)
THINK_TAG_LOOKBACK = len("</think>") - 1


@dataclass(frozen=True)
class ToolCall:
    """One parsed directive."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    @property
    def placeholder(self) -> str:
        return f"__TOOL_PENDING_{self.id}__"

    def envelope(self) -> dict[str, Any]:
        return {TOOL_CALL_KEY: {"id": self.id, "name": self.name, "args": self.args}}


@dataclass(frozen=True)
class DirectiveSpan:
    """A marker occurrence in the text.

    ``end`` is ``None`` while the closing brace has not arrived yet; ``call``
    is ``None`` when the closed span is not a well-formed directive.
    """

    start: int
    end: int | None
    raw: str
    call: ToolCall | None = None


@dataclass
class BraceScan:
    """Resumable brace matcher; ``consume`` picks up where the last chunk ended."""

    depth: int = 0
    in_string: bool = False
    escaped: bool = False

    def consume(self, chunk: str) -> int | None:
        """Return the index in ``chunk`` just past the closing brace, if it arrived."""
        for index, char in enumerate(chunk):
            if self.escaped:
                self.escaped = False
            elif self.in_string:
                if char == "\\":
                    self.escaped = True
                elif char == '"':
                    self.in_string = False
            elif char == '"':
                self.in_string = True
            elif char == "{":
                self.depth += 1
            elif char == "}":
                self.depth -= 1
                if self.depth == 0:
                    return index + 1
        return None


class ThinkTracker:
    """Follows ``<think>``/``</think>`` tags across arbitrarily split text."""

    def __init__(self) -> None:
        self.inside = False
        self._tail = ""

    def feed(self, segment: str) -> None:
        if not segment:
            return
        window = self._tail + segment
        for match in THINK_TAG.finditer(window):
            # Tags lying wholly in the tail were counted by the previous call.
            if match.end() > len(self._tail):
                self.inside = not match.group(1)
        self._tail = window[-THINK_TAG_LOOKBACK:]


def scan_directive(text: str, start: int) -> int | None:
    """Return the index just past the brace closing the object at ``start``."""

    end = BraceScan().consume(text[start:])
    return None if end is None else start + end


def parse_tool_call(raw: str) -> ToolCall | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    body = parsed.get(TOOL_CALL_KEY)
    if not isinstance(body, dict) or not body:
        return None

    name = body.get("name") or "unknown"
    tool_id = body.get("id") or f"{name}-{uuid.uuid4().hex[:8]}"
    args = body.get("args")
    return ToolCall(id=str(tool_id), name=str(name), args=args if isinstance(args, dict) else {})


def iter_directive_spans(text: str, start: int = 0) -> Iterator[DirectiveSpan]:
    """Yield marker spans from ``start`` onward, skipping ``<think>`` blocks.

    Iteration stops at the first span that is still open.
    """

    think = ThinkTracker()
    think.feed(text[:start])
    position = start
    while True:
        index = text.find(TOOL_CALL_MARKER, position)
        if index == -1:
            return
        think.feed(text[position:index])
        if think.inside:
            think.feed(text[index])
            position = index + 1
            continue
        end = scan_directive(text, index)
        if end is None:
            yield DirectiveSpan(start=index, end=None, raw=text[index:])
            return
        raw = text[index:end]
        yield DirectiveSpan(start=index, end=end, raw=raw, call=parse_tool_call(raw))
        position = end


def find_tool_calls(text: str) -> list[DirectiveSpan]:
    """All complete, well-formed directives in ``text``."""

    return [span for span in iter_directive_spans(text) if span.call is not None]


def _partial_marker_length(text: str) -> int:
    longest = min(len(TOOL_CALL_MARKER) - 1, len(text))
    for size in range(longest, 0, -1):
        if text.endswith(TOOL_CALL_MARKER[:size]):
            return size
    return 0


@dataclass(frozen=True)
class ScanResult:
    """Text safe to show and the directives first detected in it."""

    text: str
    calls: tuple[ToolCall, ...] = ()


class ToolCallScanner:
    """Per-turn incremental scanner over the generated text.

    Text is released for display only up to the start of a directive that has
    not closed yet, so raw directive JSON never becomes visible. Each complete
    directive is replaced by its placeholder the first time its id is seen;
    ids already in the seen-set (executed, or handled by a vision event) are
    dropped from the visible text and never reported again.

    Every character is examined once: an open directive keeps its brace state
    between fragments and think tags are tracked as text is released.
    """

    def __init__(self, seen: set[str] | None = None) -> None:
        self._seen: set[str] = seen if seen is not None else set()
        self._pending = ""
        self._open: BraceScan | None = None
        self._open_parts: list[str] = []
        self._think = ThinkTracker()

    @property
    def held(self) -> str:
        return "".join(self._open_parts) + self._pending

    def is_seen(self, tool_id: str) -> bool:
        return tool_id in self._seen

    def mark_seen(self, tool_id: str) -> None:
        self._seen.add(tool_id)

    def reset(self) -> None:
        """Forget the text of a failed attempt; the seen-set survives."""
        self._pending = ""
        self._open = None
        self._open_parts = []
        self._think = ThinkTracker()

    def feed(self, fragment: str) -> ScanResult:
        released: list[str] = []
        calls: list[ToolCall] = []
        if self._open is not None:
            end = self._open.consume(fragment)
            if end is None:
                self._open_parts.append(fragment)
                return ScanResult(text="")
            self._open_parts.append(fragment[:end])
            raw = "".join(self._open_parts)
            self._open = None
            self._open_parts = []
            self._close_directive(raw, released, calls)
            fragment = fragment[end:]

        self._pending += fragment
        self._scan(released, calls, final=False)
        return ScanResult(text="".join(released), calls=tuple(calls))

    def finish(self) -> ScanResult:
        """Release everything still held; unfinished directives stay as raw text."""
        released: list[str] = []
        if self._open is not None:
            released.append(self._release("".join(self._open_parts)))
            self._open = None
            self._open_parts = []
        calls: list[ToolCall] = []
        self._scan(released, calls, final=True)
        return ScanResult(text="".join(released), calls=tuple(calls))

    def _scan(self, released: list[str], calls: list[ToolCall], *, final: bool) -> None:
        while self._pending:
            text = self._pending
            index = text.find(TOOL_CALL_MARKER)
            if index == -1:
                keep = 0 if final else _partial_marker_length(text)
                released.append(self._release(text[: len(text) - keep]))
                self._pending = text[len(text) - keep :]
                return

            released.append(self._release(text[:index]))
            if self._think.inside:
                released.append(self._release(text[index]))
                self._pending = text[index + 1 :]
                continue

            rest = text[index:]
            brace = BraceScan()
            end = brace.consume(rest)
            if end is None:
                if final:
                    released.append(self._release(rest))
                else:
                    self._open = brace
                    self._open_parts = [rest]
                self._pending = ""
                return
            self._pending = rest[end:]
            self._close_directive(rest[:end], released, calls)

    def _close_directive(self, raw: str, released: list[str], calls: list[ToolCall]) -> None:
        call = parse_tool_call(raw)
        if call is None:
            released.append(self._release(raw))
            return
        if call.id in self._seen:
            logger.warning("tool.scan.duplicate id={} name={}", call.id, call.name)
            return
        self._seen.add(call.id)
        calls.append(call)
        released.append(call.placeholder)

    def _release(self, text: str) -> str:
        self._think.feed(text)
        return text
