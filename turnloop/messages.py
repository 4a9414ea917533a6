"""Turn message data model."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Iterable, Literal
import uuid

Role = Literal["user", "assistant", "tool", "system"]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class TextPart:
    """Plain text content."""

    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolCallPart:
    """A tool call requested by the model."""

    call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool-call"] = "tool-call"


@dataclass(frozen=True)
class ToolResultPart:
    """The outcome of one tool call, matched to it by call id."""

    call_id: str
    tool_name: str
    output: str
    is_error: bool = False
    type: Literal["tool-result"] = "tool-result"


Part = TextPart | ToolCallPart | ToolResultPart


@dataclass
class TurnMessage:
    """One exchange unit in a conversation history."""

    role: Role
    content: str | list[Part]
    timestamp: str = field(default_factory=_utcnow_iso)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attachments: list[dict[str, Any]] | None = None

    @property
    def parts(self) -> list[Part]:
        if isinstance(self.content, str):
            return [TextPart(self.content)] if self.content else []
        return list(self.content)

    @property
    def text(self) -> str:
        """Concatenated text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [_part_to_dict(p) for p in self.content]
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": content,
            "timestamp": self.timestamp,
        }
        if self.attachments:
            data["attachments"] = list(self.attachments)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TurnMessage":
        raw = data.get("content", "")
        if isinstance(raw, list):
            content: str | list[Part] = [_part_from_dict(p) for p in raw]
        else:
            content = str(raw or "")
        kwargs: dict[str, Any] = {
            "role": data.get("role", "user"),
            "content": content,
            "attachments": data.get("attachments") or None,
        }
        if data.get("timestamp"):
            kwargs["timestamp"] = str(data["timestamp"])
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(**kwargs)


def _part_to_dict(part: Part) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": part.type, "text": part.text}
    if isinstance(part, ToolCallPart):
        return {
            "type": part.type,
            "call_id": part.call_id,
            "tool_name": part.tool_name,
            "arguments": dict(part.arguments),
        }
    return {
        "type": part.type,
        "call_id": part.call_id,
        "tool_name": part.tool_name,
        "output": part.output,
        "is_error": part.is_error,
    }


def _part_from_dict(data: dict[str, Any]) -> Part:
    kind = data.get("type")
    if kind == "tool-call":
        return ToolCallPart(
            call_id=str(data.get("call_id", "")),
            tool_name=str(data.get("tool_name", "")),
            arguments=dict(data.get("arguments") or {}),
        )
    if kind == "tool-result":
        return ToolResultPart(
            call_id=str(data.get("call_id", "")),
            tool_name=str(data.get("tool_name", "")),
            output=str(data.get("output", "")),
            is_error=bool(data.get("is_error", False)),
        )
    return TextPart(text=str(data.get("text", "")))


def user_message(text: str, attachments: list[dict[str, Any]] | None = None) -> TurnMessage:
    return TurnMessage(role="user", content=text, attachments=attachments)


def assistant_message(text: str, tool_calls: Iterable[ToolCallPart] = ()) -> TurnMessage:
    calls = list(tool_calls)
    if not calls:
        return TurnMessage(role="assistant", content=text)
    parts: list[Part] = [TextPart(text)] if text else []
    parts.extend(calls)
    return TurnMessage(role="assistant", content=parts)


def tool_message(result: ToolResultPart) -> TurnMessage:
    return TurnMessage(role="tool", content=[result])


def orphaned_tool_results(messages: Iterable[TurnMessage]) -> list[str]:
    """Return call ids of tool results with no preceding tool call of the same id."""
    seen: set[str] = set()
    orphans: list[str] = []
    for message in messages:
        for part in message.parts:
            if isinstance(part, ToolCallPart):
                seen.add(part.call_id)
            elif isinstance(part, ToolResultPart) and part.call_id not in seen:
                orphans.append(part.call_id)
    return orphans


def first_user_text(messages: Iterable[TurnMessage]) -> str:
    for message in messages:
        if message.role == "user" and message.text.strip():
            return message.text
    return ""
