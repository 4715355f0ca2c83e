"""Turn and message data model.

Everything here is immutable. Metadata and messages change only through the
``with_*`` helpers, which return a new value, so concurrent writers (the stream
controller and the tool executor) compose by applying transformations to
whatever value is current instead of overwriting each other.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Literal

type Role = Literal["user", "assistant"]
type ToolStatus = Literal["pending", "ok", "error"]
type MetadataTransform = Callable[[TurnMetadata], TurnMetadata]


@dataclass(frozen=True)
class Step:
    """One line of progress narration."""

    id: str
    text: str


@dataclass(frozen=True)
class ToolRecord:
    """Lifecycle of one tool call within a turn."""

    id: str
    name: str
    status: ToolStatus = "pending"
    start_time: float = 0.0
    duration_ms: int | None = None


@dataclass(frozen=True)
class RunnerJob:
    """Sandbox job spawned by a ``runner.spawn`` tool call."""

    job_id: str | None
    status: str = "queued"
    lang: str = ""
    cmd: str = ""


@dataclass(frozen=True)
class VisionProgress:
    """Progress of an in-flight image generation."""

    phase: str
    pct: float
    label: str
    preset: str | None = None
    aspect: str | None = None


@dataclass(frozen=True)
class TurnMetadata:
    """Append-only record attached to the in-progress assistant message."""

    steps: tuple[Step, ...] = ()
    tools: dict[str, ToolRecord] = field(default_factory=dict)
    sources: tuple[dict[str, Any], ...] = ()
    tokens: int = 0
    elapsed_ms: int | None = None
    model: str | None = None
    runner: RunnerJob | None = None

    def with_step(self, text: str) -> TurnMetadata:
        step = Step(id=f"{time.time_ns()}-{uuid.uuid4().hex[:6]}", text=text)
        return replace(self, steps=(*self.steps, step))

    def with_tool(self, tool_id: str, name: str, *, start_time: float) -> TurnMetadata:
        record = ToolRecord(id=tool_id, name=name, status="pending", start_time=start_time)
        return replace(self, tools={**self.tools, tool_id: record})

    def with_tool_status(self, tool_id: str, status: ToolStatus, duration_ms: int) -> TurnMetadata:
        record = self.tools.get(tool_id)
        if record is None:
            return self
        updated = replace(record, status=status, duration_ms=duration_ms)
        return replace(self, tools={**self.tools, tool_id: updated})

    def with_sources(self, sources: list[dict[str, Any]]) -> TurnMetadata:
        return replace(self, sources=tuple(sources))

    def with_progress(self, tokens: int, elapsed_ms: int, *, model: str | None = None) -> TurnMetadata:
        return replace(self, tokens=tokens, elapsed_ms=elapsed_ms, model=model if model is not None else self.model)

    def with_runner(self, runner: RunnerJob) -> TurnMetadata:
        return replace(self, runner=runner)


@dataclass(frozen=True)
class Message:
    """One entry of the conversation transcript."""

    role: Role
    content: str = ""
    images: tuple[str, ...] = ()
    redaction_count: int = 0
    meta: TurnMetadata | None = None
    error: bool = False
    edited: bool = False
    vision: VisionProgress | None = None
    vision_images: tuple[str, ...] = ()

    @classmethod
    def user(cls, content: str, *, images: tuple[str, ...] = (), edited: bool = False) -> Message:
        return cls(role="user", content=content, images=images, edited=edited)

    @classmethod
    def assistant_slot(cls) -> Message:
        """Empty assistant message that the next turn streams into."""
        return cls(role="assistant", content="", meta=TurnMetadata())

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.images:
            payload["images"] = list(self.images)
        return payload


class TurnStatus(StrEnum):
    """How a turn terminated."""

    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    GATED = "gated"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CORRECTED = "corrected"


@dataclass(frozen=True)
class TurnOptions:
    """Request options. Advisory only: the server validates every value."""

    temperature: float = 0.7
    thinking: bool = True
    agent: str | None = None
    skill: str | None = None
    power_dial: str | None = None
    vision_preset: str = "draft"
    vision_aspect: str = "1:1"
    web: bool = False


@dataclass(frozen=True)
class Turn:
    """One request/response cycle."""

    session_id: str
    messages: tuple[Message, ...]
    options: TurnOptions = field(default_factory=TurnOptions)
    preempt_session_id: str | None = None
    web_context: str | None = None

    @property
    def query(self) -> str:
        """Content of the newest user message."""
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messages": [message.to_payload() for message in self.messages],
            "agent": self.options.agent,
            "skill": self.options.skill,
            "temperature": self.options.temperature,
            "thinking": self.options.thinking,
            "sessionId": self.session_id,
            "powerDial": self.options.power_dial,
            "preemptSessionId": self.preempt_session_id,
            "visionPreset": self.options.vision_preset,
            "visionAspect": self.options.vision_aspect,
        }
        if self.web_context:
            payload["webContext"] = self.web_context
        return payload


@dataclass(frozen=True)
class TurnOutcome:
    """Result of one stream session."""

    status: TurnStatus
    error: str | None = None
    attempts: int = 1
    tokens: int = 0
    model: str | None = None
    elapsed_ms: int = 0
