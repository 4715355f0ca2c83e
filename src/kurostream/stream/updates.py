"""State-transition records.

The stream controller, tool executor and correction protocol never touch the
transcript directly. They emit these records to a single subscriber (the
conversation) which owns the message list and applies them in order.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from kurostream.types import MetadataTransform, TurnOutcome, VisionProgress


@dataclass(frozen=True)
class ContentAppended:
    """Text released by the render buffer for the in-progress reply."""

    text: str


@dataclass(frozen=True)
class ContentSet:
    """Replace the in-progress reply, optionally only when it is still empty."""

    text: str
    only_if_empty: bool = True
    error: bool = False


@dataclass(frozen=True)
class ContentReplaced:
    """Swap the first occurrence of ``search`` in whichever reply holds it."""

    search: str
    replacement: str


@dataclass(frozen=True)
class MetadataChanged:
    transform: MetadataTransform


@dataclass(frozen=True)
class RedactionCounted:
    count: int


@dataclass(frozen=True)
class VisionChanged:
    progress: VisionProgress | None
    images: tuple[str, ...] = ()


@dataclass(frozen=True)
class CapabilityChanged:
    profile: str
    reason: str | None = None


@dataclass(frozen=True)
class NoticeRaised:
    """User-visible notice outside the transcript; ``ttl`` makes it transient."""

    level: str
    message: str
    ttl: float | None = None


@dataclass(frozen=True)
class ConnectionStatusChanged:
    message: str | None


@dataclass(frozen=True)
class TurnFinished:
    outcome: TurnOutcome


type TurnUpdate = (
    ContentAppended
    | ContentSet
    | ContentReplaced
    | MetadataChanged
    | RedactionCounted
    | VisionChanged
    | CapabilityChanged
    | NoticeRaised
    | ConnectionStatusChanged
    | TurnFinished
)
type UpdateSink = Callable[[TurnUpdate], None]
