"""Typed stream event records.

Each record on the wire is a JSON object tagged by ``type``. Known tags decode
into one of the models below; unknown tags decode to ``None`` so newer servers
can add event kinds without breaking older clients.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Event(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class TokenEvent(_Event):
    type: Literal["token"] = "token"
    content: str


class ThinkingEvent(_Event):
    type: Literal["thinking"] = "thinking"
    content: str = ""


class VisionStartEvent(_Event):
    type: Literal["vision_start"] = "vision_start"
    tool_id: str = Field(default="vision-1", alias="toolId")
    preset: str | None = None
    aspect: str | None = None


class VisionPhaseEvent(_Event):
    type: Literal["vision_phase"] = "vision_phase"
    phase: str
    label: str | None = None


class VisionProgressEvent(_Event):
    type: Literal["vision_progress"] = "vision_progress"
    pct: float = 0.0
    elapsed: int | float | None = None


class Dimensions(BaseModel):
    width: int = 1024
    height: int = 1024


class VisionResultEvent(_Event):
    type: Literal["vision_result"] = "vision_result"
    tool_id: str = Field(default="vision-1", alias="toolId")
    image_url: str = Field(alias="imageUrl")
    dimensions: Dimensions = Field(default_factory=Dimensions)
    seed: int | None = None
    elapsed: int | float | None = None
    preset: str | None = None
    images: list[str] | None = None


class RedactionEvent(_Event):
    type: Literal["redaction"] = "redaction"
    count: int


class PolicyNoticeEvent(_Event):
    type: Literal["policy_notice"] = "policy_notice"
    level: str = "info"
    message: str = ""


class CapabilityEvent(_Event):
    type: Literal["capability"] = "capability"
    downgraded: bool
    profile: str
    reason: str | None = None


class GateEvent(_Event):
    type: Literal["gate"] = "gate"
    message: str


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str


class DoneEvent(_Event):
    type: Literal["done"] = "done"
    model: str | None = None


class AbortedForCorrectionEvent(_Event):
    type: Literal["aborted_for_correction"] = "aborted_for_correction"


class PreemptStartEvent(_Event):
    type: Literal["preempt_start"] = "preempt_start"


class PreemptEndEvent(_Event):
    type: Literal["preempt_end"] = "preempt_end"


StreamEvent = Annotated[
    TokenEvent
    | ThinkingEvent
    | VisionStartEvent
    | VisionPhaseEvent
    | VisionProgressEvent
    | VisionResultEvent
    | RedactionEvent
    | PolicyNoticeEvent
    | CapabilityEvent
    | GateEvent
    | ErrorEvent
    | DoneEvent
    | AbortedForCorrectionEvent
    | PreemptStartEvent
    | PreemptEndEvent,
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)

KNOWN_EVENT_TYPES = frozenset(
    {
        "token",
        "thinking",
        "vision_start",
        "vision_phase",
        "vision_progress",
        "vision_result",
        "redaction",
        "policy_notice",
        "capability",
        "gate",
        "error",
        "done",
        "aborted_for_correction",
        "preempt_start",
        "preempt_end",
    }
)


def decode_event(data: dict[str, Any]) -> StreamEvent | None:
    """Validate one decoded record.

    Returns ``None`` for unknown tags. Raises ``pydantic.ValidationError`` when
    a known tag is missing required fields.
    """
    if data.get("type") not in KNOWN_EVENT_TYPES:
        return None
    return _ADAPTER.validate_python(data)
