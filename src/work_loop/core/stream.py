"""Incremental parser for the agent's line-delimited JSON output.

The agent prints one JSON envelope per line (``--output-format stream-json``).
Each envelope has a ``type`` of ``system``, ``assistant``, ``user`` or
``result``; assistant and user envelopes carry ``message.content`` blocks of
type ``text``, ``tool_use`` or ``tool_result``.

``LineParser.feed`` accepts arbitrary chunks, buffers the unterminated tail
and turns every complete line into zero or more typed events. Lines that are
not JSON objects are treated as noise and skipped; lines that look like an
object but fail to decode become an ``ErrorEvent`` and parsing carries on.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Usage:
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True)
class InitEvent:
    session_id: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class ToolStartEvent:
    tool_use_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolEndEvent:
    tool_use_id: str
    content: Any = ""
    is_error: bool = False


@dataclass(frozen=True)
class TextEvent:
    text: str


@dataclass(frozen=True)
class ResultEvent:
    is_error: bool = False
    duration_ms: int | float | None = None
    num_turns: int | None = None
    total_cost_usd: float | None = None
    usage: Usage | None = None


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    raw_line: str | None = None


ParserEvent = Union[InitEvent, ToolStartEvent, ToolEndEvent, TextEvent, ResultEvent, ErrorEvent]


def content_text(content: Any) -> str:
    """Flatten a tool_result content payload (a string or a list of blocks) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                parts.append(str(item.get("text") or ""))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return str(content)


class LineParser:
    """Turns chunks of agent output into ``ParserEvent`` objects.

    Events are returned from ``feed``/``flush`` in input order and, when an
    ``on_event`` callback is given, also passed to it one by one.
    """

    def __init__(self, on_event: Callable[[ParserEvent], None] | None = None):
        self._on_event = on_event
        self._buffer = ""
        self._pending: dict[str, str] = {}

    @property
    def pending_tool_uses(self) -> dict[str, str]:
        """Tool-use ids started but not yet ended, mapped to the tool name."""
        return dict(self._pending)

    def feed(self, chunk: str) -> list[ParserEvent]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        events: list[ParserEvent] = []
        for line in lines:
            events.extend(self.parse_line(line))
        return events

    def flush(self) -> list[ParserEvent]:
        """Parse whatever is left in the buffer as a final, unterminated line."""
        tail, self._buffer = self._buffer, ""
        if not tail.strip():
            return []
        return self.parse_line(tail)

    def reset(self):
        self._buffer = ""
        self._pending.clear()

    def parse_line(self, line: str) -> list[ParserEvent]:
        trimmed = line.strip()
        if not trimmed or not trimmed.startswith("{"):
            return []

        try:
            envelope = json.loads(trimmed)
            if not isinstance(envelope, dict):
                raise ValueError("envelope is not a JSON object")
        except ValueError as e:
            logger.debug("Undecodable line: %s", trimmed[:100])
            return self._emit([ErrorEvent(error=str(e), raw_line=trimmed)])

        try:
            events = self._process(envelope)
        except (AttributeError, KeyError, TypeError) as e:
            events = [ErrorEvent(error=f"Malformed {envelope.get('type')} envelope: {e}", raw_line=trimmed)]
        return self._emit(events)

    # ── Envelope handling ────────────────────────────────────────────────

    def _process(self, envelope: dict) -> list[ParserEvent]:
        kind = envelope.get("type")
        if kind == "system":
            return [self._init_event(envelope)]
        if kind == "assistant":
            events = []
            for block in _content_blocks(envelope):
                event = self._block_event(block)
                if event is not None:
                    events.append(event)
            return events
        if kind == "user":
            return [
                self._tool_end(block)
                for block in _content_blocks(envelope)
                if block.get("type") == "tool_result"
            ]
        if kind == "result":
            return [_result_event(envelope)]
        return []

    def _init_event(self, envelope: dict) -> InitEvent:
        result = envelope.get("result") if isinstance(envelope.get("result"), dict) else {}
        message = envelope.get("message") or {}
        return InitEvent(
            session_id=result.get("session_id", envelope.get("session_id")),
            model=message.get("model", envelope.get("model")),
        )

    def _block_event(self, block: dict) -> ParserEvent | None:
        block_type = block.get("type")
        if block_type == "text":
            return TextEvent(text=block.get("text") or "")
        if block_type == "tool_use":
            tool_use_id = block["id"]
            self._pending[tool_use_id] = block.get("name", "")
            return ToolStartEvent(
                tool_use_id=tool_use_id,
                tool_name=block.get("name", ""),
                input=block.get("input") or {},
            )
        if block_type == "tool_result":
            return self._tool_end(block)
        return None

    def _tool_end(self, block: dict) -> ToolEndEvent:
        tool_use_id = block["tool_use_id"]
        self._pending.pop(tool_use_id, None)
        return ToolEndEvent(
            tool_use_id=tool_use_id,
            content=block.get("content", ""),
            is_error=bool(block.get("is_error", False)),
        )

    def _emit(self, events: list[ParserEvent]) -> list[ParserEvent]:
        if self._on_event:
            for event in events:
                self._on_event(event)
        return events


def _content_blocks(envelope: dict) -> list[dict]:
    message = envelope.get("message") or {}
    content = message.get("content") or []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return [block for block in content if isinstance(block, dict)]


def _result_event(envelope: dict) -> ResultEvent:
    # Older agents nest the summary under "result"; current ones put it at the top level.
    result = envelope.get("result")
    source = result if isinstance(result, dict) else envelope
    usage = source.get("usage")
    return ResultEvent(
        is_error=bool(source.get("is_error", False)),
        duration_ms=source.get("duration_ms"),
        num_turns=source.get("num_turns"),
        total_cost_usd=source.get("total_cost_usd"),
        usage=Usage(
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        ) if isinstance(usage, dict) else None,
    )
