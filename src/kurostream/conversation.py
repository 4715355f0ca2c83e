"""Conversation: the one owner of the transcript.

Every component that produces turn output (stream controller, tool executor,
correction protocol) reports through ``TurnUpdate`` records; ``Conversation.apply``
is the only code that writes to the message list. Starting any turn first tears
down the previous one so two streams never write into the same reply.
"""

from __future__ import annotations

import asyncio
import copy
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from functools import partial

from loguru import logger

from kurostream.client import KuroClient
from kurostream.config import Settings
from kurostream.correction import CorrectionProtocol
from kurostream.errors import KuroError
from kurostream.preempt import PreemptProtocol
from kurostream.stream.controller import StreamHandle, StreamSessionController
from kurostream.stream.updates import (
    CapabilityChanged,
    ConnectionStatusChanged,
    ContentAppended,
    ContentReplaced,
    ContentSet,
    MetadataChanged,
    NoticeRaised,
    RedactionCounted,
    TurnFinished,
    TurnUpdate,
    VisionChanged,
)
from kurostream.types import Message, Turn, TurnMetadata, TurnOptions, TurnOutcome

type Listener = Callable[[TurnUpdate], None]


@dataclass(frozen=True)
class Notice:
    level: str
    message: str


def options_from_settings(settings: Settings) -> TurnOptions:
    return TurnOptions(
        temperature=settings.temperature,
        thinking=settings.thinking,
        agent=settings.agent,
        skill=settings.skill,
        power_dial=settings.power_dial,
        vision_preset=settings.vision_preset,
        vision_aspect=settings.vision_aspect,
        web=settings.web_enabled,
    )


class Conversation:
    """A message list plus at most one live turn streaming into its last slot."""

    def __init__(
        self,
        client: KuroClient,
        settings: Settings,
        *,
        session_id: str | None = None,
        options: TurnOptions | None = None,
        messages: Sequence[Message] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._settings = settings
        self._clock = clock
        self.session_id = session_id or uuid.uuid4().hex
        self.options = options or options_from_settings(settings)
        self.messages: list[Message] = list(messages)
        self.notices: list[Notice] = []
        self.connection_status: str | None = None
        self.last_outcome: TurnOutcome | None = None
        self.correction = CorrectionProtocol(self, client, settings, clock=clock)
        self.preempt = PreemptProtocol(client, self.session_id, settings)
        self._listeners: list[Listener] = []
        self._handle: StreamHandle | None = None
        self._generation = 0
        self._slot: int | None = None

    @property
    def is_streaming(self) -> bool:
        return self._handle is not None and not self._handle.done

    @property
    def reply(self) -> Message | None:
        """The assistant message the live (or last) turn writes into."""
        if self._slot is None or self._slot >= len(self.messages):
            return None
        return self.messages[self._slot]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return partial(self._listeners.remove, listener)

    def current_reply(self) -> str:
        reply = self.reply
        return reply.content if reply is not None and self.is_streaming else ""

    def on_input_change(self, text: str) -> None:
        """Route composer edits: corrections while streaming, speculation otherwise."""
        if self.is_streaming:
            self.correction.on_input_change(text)
        else:
            self.preempt.on_input_change(text)

    # Turn lifecycle

    async def send(self, content: str, *, images: Sequence[str] = ()) -> StreamHandle:
        await self._teardown()
        self.messages.extend([Message.user(content, images=tuple(images)), Message.assistant_slot()])
        return self._start_turn()

    async def edit(self, index: int, content: str) -> StreamHandle:
        """Replace a user message and resend; everything after it is dropped."""
        original = self._message_at(index, "user")
        await self._teardown()
        edited = Message.user(content, images=original.images, edited=True)
        self.messages[index:] = [edited, Message.assistant_slot()]
        return self._start_turn()

    async def regenerate(self, index: int) -> StreamHandle:
        """Drop the assistant reply at ``index`` and ask again."""
        self._message_at(index, "assistant")
        if index < 1 or self.messages[index - 1].role != "user":
            raise KuroError(f"message {index} does not follow a user message")
        await self._teardown()
        self.messages[index:] = [Message.assistant_slot()]
        return self._start_turn()

    def fork(self, index: int) -> Conversation:
        """Independent copy of the history up to and including ``index``."""
        if not 0 <= index < len(self.messages):
            raise KuroError(f"no message at index {index}")
        return Conversation(
            self._client,
            self._settings,
            options=self.options,
            messages=copy.deepcopy(self.messages[: index + 1]),
            clock=self._clock,
        )

    async def restart_with_correction(self, build_content: Callable[[str], str]) -> bool:
        """Restart the turn from the last user message with corrected content."""
        await self._teardown()
        index = next((i for i in range(len(self.messages) - 1, -1, -1) if self.messages[i].role == "user"), None)
        if index is None:
            logger.warning("conversation.correction.no_user_message session={}", self.session_id)
            return False
        original = self.messages[index]
        corrected = Message.user(build_content(original.content), images=original.images)
        self.messages[index:] = [corrected, Message.assistant_slot()]
        self._start_turn()
        return True

    async def wait(self) -> TurnOutcome | None:
        if self._handle is None:
            return None
        return await self._handle.wait()

    async def cancel(self) -> TurnOutcome | None:
        """Hard stop of the live turn; never retried."""
        if not self.is_streaming:
            return None
        return await self._teardown()

    async def close(self) -> None:
        await self.cancel()
        self.correction.reset()
        self.preempt.abort()

    def _start_turn(self) -> StreamHandle:
        self._generation += 1
        self._slot = len(self.messages) - 1
        self.connection_status = None
        self.correction.reset()
        turn = Turn(
            session_id=self.session_id,
            messages=tuple(self.messages[: self._slot]),
            options=self.options,
            preempt_session_id=self.preempt.claim(),
        )
        controller = StreamSessionController(
            self._client,
            partial(self._apply_for, self._generation),
            self._settings,
            clock=self._clock,
        )
        self._handle = controller.open(turn)
        return self._handle

    async def _teardown(self) -> TurnOutcome | None:
        handle = self._handle
        if handle is None:
            return None
        if not handle.done:
            handle.cancel()
        try:
            return await handle.wait()
        except asyncio.CancelledError:
            if handle.outcome is None:
                raise
            return handle.outcome

    def _message_at(self, index: int, role: str) -> Message:
        if not 0 <= index < len(self.messages) or self.messages[index].role != role:
            raise KuroError(f"message {index} is not a {role} message")
        return self.messages[index]

    # Update application

    def _apply_for(self, generation: int, update: TurnUpdate) -> None:
        if generation != self._generation:
            logger.debug("conversation.update.stale generation={} update={}", generation, type(update).__name__)
            return
        self.apply(update)

    def apply(self, update: TurnUpdate) -> None:  # noqa: C901
        match update:
            case ContentAppended(text=text):
                self._update_reply(lambda m: replace(m, content=m.content + text))
            case ContentSet(text=text, only_if_empty=only_if_empty, error=error):
                reply = self.reply
                if reply is not None and not (only_if_empty and reply.content):
                    self._update_reply(lambda m: replace(m, content=text, error=error))
            case ContentReplaced(search=search, replacement=replacement):
                self._replace_placeholder(search, replacement)
            case MetadataChanged(transform=transform):
                self._update_reply(lambda m: replace(m, meta=transform(m.meta or TurnMetadata())))
            case RedactionCounted(count=count):
                self._update_reply(lambda m: replace(m, redaction_count=count))
            case VisionChanged(progress=progress, images=images):
                self._update_reply(lambda m: replace(m, vision=progress, vision_images=images or m.vision_images))
            case CapabilityChanged(profile=profile):
                self.options = replace(self.options, power_dial=profile)
            case NoticeRaised(level=level, message=message, ttl=ttl):
                self._add_notice(level, message, ttl)
            case ConnectionStatusChanged(message=message):
                self.connection_status = message
            case TurnFinished(outcome=outcome):
                self.last_outcome = outcome
                self.correction.reset()
        self._publish(update)

    def notify(self, level: str, message: str, *, ttl: float | None = None) -> None:
        self._add_notice(level, message, ttl)
        self._publish(NoticeRaised(level, message, ttl))

    def dismiss_notice(self, notice: Notice) -> None:
        if notice in self.notices:
            self.notices.remove(notice)

    def _add_notice(self, level: str, message: str, ttl: float | None) -> None:
        notice = Notice(level, message)
        self.notices.append(notice)
        if ttl is not None:
            asyncio.get_running_loop().call_later(ttl, self.dismiss_notice, notice)

    def _update_reply(self, change: Callable[[Message], Message]) -> None:
        if self._slot is None or self._slot >= len(self.messages):
            return
        self.messages[self._slot] = change(self.messages[self._slot])

    def _replace_placeholder(self, search: str, replacement: str) -> None:
        for index in range(len(self.messages) - 1, -1, -1):
            message = self.messages[index]
            if message.role == "assistant" and search in message.content:
                self.messages[index] = replace(message, content=message.content.replace(search, replacement, 1))
                return
        logger.debug("conversation.placeholder.missing search={}", search)

    def _publish(self, update: TurnUpdate) -> None:
        for listener in list(self._listeners):
            listener(update)
