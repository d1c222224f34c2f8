"""Parsing of the worker's stream-json output.

Each stdout line is one JSON record. Anything that does not parse into a
known shape becomes a ``RawLine`` so unknown record kinds never break the
loop. Only assistant text, result text and raw lines carry control signals;
tool calls and tool results are informational.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Union

COMPLETION_MARKER = "TASK_COMPLETE"
NEED_INPUT_MARKER = "NEED_HUMAN_INPUT:"
DEFAULT_QUESTION = "Agent needs human input"

_SESSION_ID = re.compile(r"session[_-]?id[\"\s:]+([a-zA-Z0-9-]+)", re.IGNORECASE)


@dataclass(frozen=True)
class AssistantText:
    text: str
    session_id: str | None = None


@dataclass(frozen=True)
class ToolUse:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


@dataclass(frozen=True)
class ToolResult:
    content: str
    is_error: bool = False
    session_id: str | None = None


@dataclass(frozen=True)
class ResultRecord:
    text: str
    subtype: str = ""
    is_error: bool = False
    session_id: str | None = None


@dataclass(frozen=True)
class SystemRecord:
    subtype: str = ""
    session_id: str | None = None


@dataclass(frozen=True)
class RawLine:
    text: str


Record = Union[AssistantText, ToolUse, ToolResult, ResultRecord, SystemRecord, RawLine]


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)
    return ""


def _session_of(event: dict) -> str | None:
    value = event.get("session_id")
    return value if isinstance(value, str) and value else None


def parse_line(line: str) -> list[Record]:
    """Parse one stdout line into zero or more records."""
    stripped = line.strip()
    if not stripped:
        return []
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        return [RawLine(stripped)]
    if not isinstance(event, dict):
        return [RawLine(stripped)]

    kind = event.get("type")
    session_id = _session_of(event)

    if kind == "system":
        return [SystemRecord(subtype=str(event.get("subtype") or ""), session_id=session_id)]

    if kind == "result":
        result = event.get("result")
        return [
            ResultRecord(
                text=result if isinstance(result, str) else "",
                subtype=str(event.get("subtype") or ""),
                is_error=bool(event.get("is_error")),
                session_id=session_id,
            )
        ]

    if kind == "tool_use":
        return [ToolUse(name=str(event.get("name") or ""), input=event.get("input") or {}, session_id=session_id)]

    if kind in ("assistant", "user"):
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return [RawLine(stripped)]
        records: list[Record] = []
        texts = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and kind == "assistant":
                if isinstance(block.get("text"), str):
                    texts.append(block["text"])
            elif block_type == "tool_use":
                records.append(
                    ToolUse(
                        name=str(block.get("name") or ""),
                        input=block.get("input") if isinstance(block.get("input"), dict) else {},
                        session_id=session_id,
                    )
                )
            elif block_type == "tool_result":
                records.append(
                    ToolResult(
                        content=_text_of(block.get("content")),
                        is_error=bool(block.get("is_error")),
                        session_id=session_id,
                    )
                )
        if texts:
            records.insert(0, AssistantText("\n".join(texts), session_id=session_id))
        return records

    return [RawLine(stripped)]


class StreamParser:
    """Incremental parser fed with decoded stdout chunks.

    Holds back the trailing partial line until its newline arrives.
    """

    def __init__(self):
        self._pending = ""
        self.records: list[Record] = []

    def feed(self, chunk: str) -> list[Record]:
        data = self._pending + chunk
        lines = data.split("\n")
        self._pending = lines.pop()
        parsed = []
        for line in lines:
            parsed.extend(parse_line(line))
        self.records.extend(parsed)
        return parsed

    def close(self) -> list[Record]:
        parsed = parse_line(self._pending)
        self._pending = ""
        self.records.extend(parsed)
        return parsed


def signal_text(records: list[Record]) -> str:
    """Concatenate the channels allowed to carry control signals."""
    parts = []
    for record in records:
        if isinstance(record, (AssistantText, ResultRecord, RawLine)) and record.text:
            parts.append(record.text)
    return "\n".join(parts)


def find_session_id(records: list[Record]) -> str | None:
    """The last continuation token reported by the worker, if any."""
    found = None
    for record in records:
        session_id = getattr(record, "session_id", None)
        if session_id:
            found = session_id
        elif isinstance(record, RawLine):
            match = _SESSION_ID.search(record.text)
            if match:
                found = match.group(1)
    return found


def result_subtype(records: list[Record]) -> str | None:
    for record in reversed(records):
        if isinstance(record, ResultRecord):
            return record.subtype
    return None


def is_complete(text: str) -> bool:
    return COMPLETION_MARKER in text


def needs_input(text: str) -> bool:
    return NEED_INPUT_MARKER in text


def extract_question(text: str) -> str:
    """Everything after the first need-input marker."""
    _, marker, question = text.partition(NEED_INPUT_MARKER)
    if not marker:
        return DEFAULT_QUESTION
    return question.strip() or DEFAULT_QUESTION


def find_question(records: list[Record]) -> str:
    """The question asked by the first signal record carrying the marker.

    A final result record usually repeats the assistant text, so the
    question is taken from one record rather than from the joined output.
    """
    for record in records:
        if isinstance(record, (AssistantText, ResultRecord, RawLine)) and needs_input(record.text):
            return extract_question(record.text)
    return DEFAULT_QUESTION


def describe(record: Record) -> tuple[str, str] | None:
    """``(kind, content)`` for relaying a record to observers, or None."""
    if isinstance(record, AssistantText):
        return "assistant", record.text
    if isinstance(record, ToolUse):
        return "tool", f"Using tool: {record.name}"
    if isinstance(record, ResultRecord):
        return ("result", record.text) if record.text else None
    if isinstance(record, RawLine):
        return "raw", record.text
    return None
