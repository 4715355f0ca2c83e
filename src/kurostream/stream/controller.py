"""Stream session controller.

Opens the streamed turn request, consumes the body incrementally and turns
each decoded event into state-transition records for the conversation. Owns
the stale-stream watchdog and the bounded reconnect loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from functools import partial

import httpx
from loguru import logger
from pydantic import ValidationError

from kurostream.client import EVENT_STREAM_CONTENT_TYPE, KuroClient
from kurostream.config import Settings
from kurostream.errors import NonStreamResponseError, ServerResponseError, StaleStreamError, TransportError
from kurostream.stream.buffer import TokenRenderBuffer
from kurostream.stream.events import (
    AbortedForCorrectionEvent,
    CapabilityEvent,
    DoneEvent,
    ErrorEvent,
    GateEvent,
    PolicyNoticeEvent,
    PreemptEndEvent,
    PreemptStartEvent,
    RedactionEvent,
    StreamEvent,
    ThinkingEvent,
    TokenEvent,
    VisionPhaseEvent,
    VisionProgressEvent,
    VisionResultEvent,
    VisionStartEvent,
)
from kurostream.stream.frames import EndOfStream, FrameDecoder, parse_record
from kurostream.stream.updates import (
    CapabilityChanged,
    ConnectionStatusChanged,
    ContentAppended,
    ContentSet,
    MetadataChanged,
    NoticeRaised,
    RedactionCounted,
    TurnFinished,
    UpdateSink,
    VisionChanged,
)
from kurostream.tools.executor import ToolExecutor, render_image_block
from kurostream.tools.extractor import ScanResult, ToolCallScanner
from kurostream.types import Turn, TurnMetadata, TurnOutcome, TurnStatus, VisionProgress

TOKEN_META_INTERVAL = 10
NULL_TOKEN = "\0"
NON_STREAM_FALLBACK = "Unexpected non-stream response from server"
VISION_PHASE_PCT = {"intent": 10, "gpu": 15, "scene_graph": 30, "generate": 42, "composite": 82, "evaluate": 92}
DEFAULT_VISION_PHASE_PCT = 20


class CancelOrigin(StrEnum):
    """Who stopped a stream: only watchdog expiry is eligible for retry."""

    CALLER = "caller"
    WATCHDOG = "watchdog"


class StaleStreamWatchdog:
    """Idle-timeout detector. ``reset`` on every chunk pushes the deadline out."""

    def __init__(self, idle_seconds: float) -> None:
        self.idle_seconds = idle_seconds
        self.fired = False
        self._timeout: asyncio.Timeout | None = None

    @contextlib.asynccontextmanager
    async def guard(self) -> AsyncIterator[StaleStreamWatchdog]:
        self.fired = False
        timeout = asyncio.timeout(self.idle_seconds)
        try:
            async with timeout:
                self._timeout = timeout
                yield self
        except TimeoutError as exc:
            if not timeout.expired():
                raise
            self.fired = True
            raise StaleStreamError(self.idle_seconds) from exc
        finally:
            self._timeout = None

    def reset(self) -> None:
        if self._timeout is not None:
            self._timeout.reschedule(asyncio.get_running_loop().time() + self.idle_seconds)


class StreamHandle:
    """Cancellable handle for one open turn."""

    def __init__(self, turn: Turn) -> None:
        self.turn = turn
        self.cancel_origin: CancelOrigin | None = None
        self.outcome: TurnOutcome | None = None
        self._task: asyncio.Task[TurnOutcome] | None = None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        """Hard abort requested by the caller. Never retried."""
        if self._task is None or self._task.done():
            return
        self.cancel_origin = CancelOrigin.CALLER
        self._task.cancel()

    async def wait(self) -> TurnOutcome:
        if self._task is None:
            raise RuntimeError("stream handle is not attached to a task")
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled() and self.outcome is not None:
                return self.outcome
            raise

    def _attach(self, task: asyncio.Task[TurnOutcome]) -> None:
        self._task = task


@dataclass
class _TurnState:
    turn: Turn
    started: float
    scanner: ToolCallScanner
    executor: ToolExecutor
    buffer: TokenRenderBuffer = field(init=False)
    tokens: int = 0
    content_written: bool = False
    tool_step_added: bool = False
    model: str | None = None
    vision: VisionProgress | None = None
    attempts: int = 0


class StreamSessionController:
    """Drive one turn at a time against the streaming endpoint."""

    def __init__(
        self,
        client: KuroClient,
        sink: UpdateSink,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._sink = sink
        self._settings = settings
        self._clock = clock

    def open(self, turn: Turn) -> StreamHandle:
        handle = StreamHandle(turn)
        task = asyncio.create_task(self._run(turn, handle), name=f"stream:{turn.session_id}")
        task.add_done_callback(partial(self._on_task_done, handle))
        handle._attach(task)
        return handle

    async def _run(self, turn: Turn, handle: StreamHandle) -> TurnOutcome:
        state = _TurnState(
            turn=turn,
            started=self._clock(),
            scanner=ToolCallScanner(),
            executor=ToolExecutor(self._client, self._sink, clock=self._clock),
        )
        state.buffer = TokenRenderBuffer(
            partial(self._emit_text, state),
            frame_interval=self._settings.render_interval_seconds,
        )

        with logger.contextualize(session=turn.session_id):
            logger.info("stream.open messages={} preempt={}", len(turn.messages), turn.preempt_session_id)
            try:
                await self._search_web(state)
                self._step("Connecting to model")
                outcome = await self._run_attempts(state, handle)
            except asyncio.CancelledError:
                state.buffer.close()
                await state.executor.cancel_all()
                outcome = self._outcome(state, TurnStatus.CANCELLED)
                logger.info("stream.cancelled origin={}", handle.cancel_origin)
                self._finish(handle, outcome)
                raise
            except Exception as exc:
                logger.exception("stream.unexpected_error")
                state.buffer.close()
                await state.executor.cancel_all()
                self._sink(ContentSet(f"Error: {exc}", error=True))
                outcome = self._outcome(state, TurnStatus.FAILED, error=str(exc))

            logger.info(
                "stream.finished status={} attempts={} tokens={}", outcome.status, outcome.attempts, outcome.tokens
            )
            self._finish(handle, outcome)
            return outcome

    async def _search_web(self, state: _TurnState) -> None:
        query = state.turn.query
        if not state.turn.options.web or not query:
            return
        self._step("Searching web sources")
        try:
            found = await self._client.web_search(query)
        except (httpx.HTTPError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("stream.web_search.failed error={}", exc)
            return
        if not found.results:
            return
        logger.info("stream.web_search sources={}", len(found.results))
        self._sink(MetadataChanged(partial(TurnMetadata.with_sources, sources=found.results)))
        state.turn = replace(state.turn, web_context=found.context)

    async def _run_attempts(self, state: _TurnState, handle: StreamHandle) -> TurnOutcome:
        while True:
            state.attempts += 1
            state.scanner.reset()
            try:
                status = await self._attempt(state)
            except TransportError as exc:
                self._release(state, state.scanner.finish())
                state.buffer.flush()
                if state.attempts <= self._settings.max_retries and handle.cancel_origin is not CancelOrigin.CALLER:
                    delay = self._settings.retry_delay(state.attempts)
                    logger.warning("stream.retry attempt={} delay={} error={}", state.attempts + 1, delay, exc)
                    self._sink(ConnectionStatusChanged(f"Reconnecting (attempt {state.attempts + 1})..."))
                    await asyncio.sleep(delay)
                    continue
                logger.error("stream.retries_exhausted attempts={} error={}", state.attempts, exc)
                return await self._fail(state, str(exc))
            except ServerResponseError as exc:
                logger.error("stream.server_error status={}", exc.status_code)
                return await self._fail(state, str(exc))
            except NonStreamResponseError as exc:
                logger.error("stream.non_stream_response")
                self._sink(ContentSet(exc.message, error=True))
                self._sink(ConnectionStatusChanged(exc.message))
                return self._outcome(state, TurnStatus.FAILED, error=exc.message)
            return await self._conclude(state, status)

    async def _attempt(self, state: _TurnState) -> TurnStatus:
        watchdog = StaleStreamWatchdog(self._settings.stale_timeout_seconds)
        decoder = FrameDecoder()
        try:
            async with watchdog.guard(), self._client.open_stream(state.turn.to_payload()) as response:
                await self._check_response(response)
                async for chunk in response.aiter_bytes():
                    watchdog.reset()
                    for line in decoder.feed(chunk):
                        status = self._handle_line(line, state)
                        if status is not None:
                            return status
                for line in decoder.close():
                    status = self._handle_line(line, state)
                    if status is not None:
                        return status
        except StaleStreamError:
            logger.warning("stream.stale idle={}s", self._settings.stale_timeout_seconds)
            self._sink(ConnectionStatusChanged("Stream stalled, reconnecting..."))
            raise
        except httpx.TransportError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        return TurnStatus.INCOMPLETE

    async def _check_response(self, response: httpx.Response) -> None:
        if response.is_error:
            body = (await response.aread()).decode("utf-8", errors="replace")
            raise ServerResponseError(response.status_code, body.strip())
        content_type = response.headers.get("content-type", "").lower()
        if EVENT_STREAM_CONTENT_TYPE not in content_type:
            body = (await response.aread()).decode("utf-8", errors="replace")
            raise NonStreamResponseError(_non_stream_message(body))

    def _handle_line(self, line: str, state: _TurnState) -> TurnStatus | None:
        event = parse_record(line)
        if event is None or isinstance(event, EndOfStream):
            return None
        return self._dispatch(event, state)

    def _dispatch(self, event: StreamEvent, state: _TurnState) -> TurnStatus | None:  # noqa: C901
        match event:
            case TokenEvent(content=content):
                self._on_token(content, state)
            case ThinkingEvent(content=content):
                if content:
                    self._step(content)
            case VisionStartEvent():
                self._on_vision_start(event, state)
            case VisionPhaseEvent(phase=phase, label=label):
                if label:
                    self._step(label)
                pct = VISION_PHASE_PCT.get(phase, DEFAULT_VISION_PHASE_PCT)
                self._update_vision(state, phase=phase, pct=pct, label=label or phase)
            case VisionProgressEvent(pct=pct, elapsed=elapsed):
                self._update_vision(state, pct=pct, label=f"Diffusing… {elapsed if elapsed is not None else '?'}s")
            case VisionResultEvent():
                self._on_vision_result(event, state)
            case RedactionEvent(count=count):
                self._sink(RedactionCounted(count))
            case PolicyNoticeEvent(level=level, message=message):
                self._sink(NoticeRaised(level, message))
            case CapabilityEvent(downgraded=True, profile=profile, reason=reason):
                if profile != state.turn.options.power_dial:
                    self._sink(CapabilityChanged(profile, reason))
                    self._sink(NoticeRaised("info", f"Scaled to {profile}: {reason or 'infrastructure adjustment'}"))
            case GateEvent(message=message):
                state.buffer.flush()
                self._sink(ContentSet(message, error=True))
                return TurnStatus.GATED
            case AbortedForCorrectionEvent():
                return TurnStatus.CORRECTED
            case ErrorEvent(message=message):
                state.buffer.flush()
                self._sink(ConnectionStatusChanged(message))
                if not state.content_written:
                    self._sink(ContentSet(f"Error: {message}", error=True))
                    return TurnStatus.FAILED
                logger.warning("stream.error_event message={}", message)
            case DoneEvent(model=model):
                state.model = model
                return TurnStatus.COMPLETED
            case PreemptStartEvent() | PreemptEndEvent():
                logger.debug("stream.preempt event={}", event.type)
        return None

    def _on_token(self, content: str, state: _TurnState) -> None:
        if state.tokens == 0:
            self._step("Generating response")
        state.tokens += 1
        if state.tokens % TOKEN_META_INTERVAL == 0:
            self._sink(
                MetadataChanged(
                    partial(TurnMetadata.with_progress, tokens=state.tokens, elapsed_ms=self._elapsed_ms(state))
                )
            )
        if content == NULL_TOKEN:
            return
        self._release(state, state.scanner.feed(content))

    def _on_vision_start(self, event: VisionStartEvent, state: _TurnState) -> None:
        self._step("Generating image…")
        state.buffer.flush()
        state.scanner.mark_seen(event.tool_id)
        options = state.turn.options
        state.vision = VisionProgress(
            phase="start",
            pct=5,
            label="Initializing…",
            preset=event.preset or options.vision_preset,
            aspect=event.aspect or options.vision_aspect,
        )
        self._sink(VisionChanged(state.vision))

    def _on_vision_result(self, event: VisionResultEvent, state: _TurnState) -> None:
        state.buffer.flush()
        state.scanner.mark_seen(event.tool_id)
        preset = event.preset or "draft"
        block = render_image_block(
            event.image_url,
            width=event.dimensions.width,
            height=event.dimensions.height,
            label=preset,
            elapsed=event.elapsed,
            seed=event.seed,
        )
        self._emit_text(state, f"\n{block}")
        images = tuple(event.images) if event.images and len(event.images) > 1 else ()
        state.vision = None
        self._sink(VisionChanged(None, images))
        elapsed = event.elapsed if event.elapsed is not None else "?"
        self._step(f"Image generated ({elapsed}s · {preset})")

    def _update_vision(self, state: _TurnState, **changes: object) -> None:
        if state.vision is None:
            return
        state.vision = replace(state.vision, **changes)  # type: ignore[arg-type]
        self._sink(VisionChanged(state.vision))

    def _release(self, state: _TurnState, result: ScanResult) -> None:
        state.buffer.push(result.text)
        if not result.calls:
            return
        # Placeholders must be in the transcript before any result can replace them.
        state.buffer.flush()
        if not state.tool_step_added:
            state.tool_step_added = True
            self._step("Validating tool arguments")
        for call in result.calls:
            state.executor.submit(call)

    async def _conclude(self, state: _TurnState, status: TurnStatus) -> TurnOutcome:
        if status is TurnStatus.CORRECTED:
            state.buffer.flush()
            await state.executor.cancel_all()
            return self._outcome(state, status)

        if status in (TurnStatus.COMPLETED, TurnStatus.INCOMPLETE):
            self._release(state, state.scanner.finish())
        state.buffer.flush()
        if status is TurnStatus.COMPLETED:
            self._sink(
                MetadataChanged(
                    partial(
                        TurnMetadata.with_progress,
                        tokens=state.tokens,
                        elapsed_ms=self._elapsed_ms(state),
                        model=state.model or "",
                    )
                )
            )
        await state.executor.wait()
        if status in (TurnStatus.COMPLETED, TurnStatus.INCOMPLETE):
            self._sink(ConnectionStatusChanged(None))
        return self._outcome(state, status)

    async def _fail(self, state: _TurnState, message: str) -> TurnOutcome:
        self._sink(ContentSet(f"Error: {message}", error=True))
        self._sink(ConnectionStatusChanged(message))
        await state.executor.wait()
        return self._outcome(state, TurnStatus.FAILED, error=message)

    def _emit_text(self, state: _TurnState, text: str) -> None:
        if not text:
            return
        state.content_written = True
        self._sink(ContentAppended(text))

    def _step(self, text: str) -> None:
        self._sink(MetadataChanged(partial(TurnMetadata.with_step, text=text)))

    def _elapsed_ms(self, state: _TurnState) -> int:
        return int((self._clock() - state.started) * 1000)

    def _outcome(self, state: _TurnState, status: TurnStatus, *, error: str | None = None) -> TurnOutcome:
        return TurnOutcome(
            status=status,
            error=error,
            attempts=state.attempts,
            tokens=state.tokens,
            model=state.model,
            elapsed_ms=self._elapsed_ms(state),
        )

    def _finish(self, handle: StreamHandle, outcome: TurnOutcome) -> None:
        handle.outcome = outcome
        self._sink(TurnFinished(outcome))

    def _on_task_done(self, handle: StreamHandle, task: asyncio.Task[TurnOutcome]) -> None:
        # A task cancelled before its first step never ran its own cleanup.
        if task.cancelled() and handle.outcome is None:
            self._finish(handle, TurnOutcome(status=TurnStatus.CANCELLED, attempts=0))


def _non_stream_message(body: str) -> str:
    try:
        parsed = json.loads(body or "{}")
    except json.JSONDecodeError:
        return body.strip() or NON_STREAM_FALLBACK
    if isinstance(parsed, dict):
        message = parsed.get("message") or parsed.get("error")
        if isinstance(message, str) and message:
            return message
    return NON_STREAM_FALLBACK
