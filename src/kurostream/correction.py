"""Mid-stream correction.

While a reply is streaming, the user may type a redirect. Once the typed phrase
looks like a deliberate correction (long enough, more than one word, and ended
by punctuation or a typing pause) it becomes applicable. Applying asks the
server to abort the in-flight turn, then restarts the turn with a user message
that carries the original request, what had already been generated and the
correction. History before the corrected message is kept.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections import deque
from collections.abc import Callable
from enum import StrEnum
from typing import Protocol

from loguru import logger

from kurostream.client import KuroClient
from kurostream.config import Settings
from kurostream.errors import CorrectionError, CorrectionRateLimitedError

PUNCTUATION_END = re.compile(r"[.,?!;:]$")
RATE_LIMIT_MESSAGE = "Too many corrections, wait a moment"
REJECTED_MESSAGE = "Correction rejected"


class CorrectionState(StrEnum):
    IDLE = "idle"
    DETECTING = "detecting"
    PENDING_APPLY = "pending_apply"
    ADAPTING = "adapting"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class CorrectionHost(Protocol):
    """What the protocol needs from the conversation it redirects."""

    session_id: str

    @property
    def is_streaming(self) -> bool: ...

    def current_reply(self) -> str: ...

    def notify(self, level: str, message: str, *, ttl: float | None = None) -> None: ...

    async def restart_with_correction(self, build_content: Callable[[str], str]) -> bool: ...


class SlidingWindowRateLimiter:
    """At most ``limit`` acquisitions in any rolling ``window`` seconds."""

    def __init__(self, limit: int, window: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._stamps: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window:
            self._stamps.popleft()

    def remaining(self) -> int:
        self._prune(self._clock())
        return self.limit - len(self._stamps)

    def acquire(self) -> None:
        now = self._clock()
        self._prune(now)
        if len(self._stamps) >= self.limit:
            raise CorrectionRateLimitedError(RATE_LIMIT_MESSAGE)
        self._stamps.append(now)


def build_correction_context(correction: str, partial: str) -> str:
    """Suffix appended to the original user message when a turn is redirected."""
    partial = partial.strip()
    if not partial:
        return f"\n\n[User correction during response: {correction}]"
    return (
        "\n\n[You had begun responding with the following before the user redirected you:]\n"
        f'"""\n{partial}\n"""\n\n'
        f"[User correction during response: {correction}]\n\n"
        "Incorporate the user's correction. Preserve any useful content from your partial "
        "response above, but pivot to address the correction."
    )


class CorrectionProtocol:
    """State machine ``idle -> detecting -> pending_apply -> adapting -> resolved | rejected``."""

    def __init__(
        self,
        host: CorrectionHost,
        client: KuroClient,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._host = host
        self._client = client
        self._settings = settings
        self._limiter = SlidingWindowRateLimiter(
            settings.correction_rate_limit,
            settings.correction_rate_window_seconds,
            clock=clock,
        )
        self.state = CorrectionState.IDLE
        self.phrase = ""
        self._last_length = 0
        self._timer: asyncio.TimerHandle | None = None

    @property
    def applicable(self) -> bool:
        return self.state is CorrectionState.PENDING_APPLY and bool(self.phrase)

    def on_input_change(self, text: str) -> None:
        if not self._host.is_streaming or self.state is CorrectionState.ADAPTING:
            return
        if not text:
            self._cancel_timer()
            self._set_idle()
            self._last_length = 0
            return

        shrinking = len(text) < self._last_length
        self._last_length = len(text)
        if shrinking:
            if self.state is CorrectionState.DETECTING:
                self._cancel_timer()
                self.state = CorrectionState.IDLE
            return

        trimmed = text.strip()
        if len(trimmed) < self._settings.correction_min_chars:
            self._cancel_timer()
            self._set_idle()
            return
        if len(trimmed.split()) < self._settings.correction_min_words:
            return

        self._cancel_timer()
        if PUNCTUATION_END.search(trimmed):
            self._detected(trimmed)
            return
        self.state = CorrectionState.DETECTING
        self._timer = asyncio.get_running_loop().call_later(
            self._settings.correction_debounce_seconds, self._detected, trimmed
        )

    def submit(self, text: str) -> bool:
        """Treat an explicitly entered line as a boundary. Returns ``applicable``."""
        if not self._host.is_streaming or self.state is CorrectionState.ADAPTING:
            return False
        trimmed = text.strip()
        too_short = len(trimmed) < self._settings.correction_min_chars
        if too_short or len(trimmed.split()) < self._settings.correction_min_words:
            return self.applicable
        self._cancel_timer()
        self._detected(trimmed)
        return self.applicable

    def dismiss(self) -> None:
        self._cancel_timer()
        self._set_idle()

    def reset(self) -> None:
        """Forget everything except the rate-limit window; used when streaming stops."""
        self.dismiss()
        self._last_length = 0

    async def apply(self) -> bool:
        """Send the detected correction. Returns True when a corrected turn was started."""
        if not self.applicable:
            return False
        correction = self.phrase
        self._cancel_timer()
        try:
            self._limiter.acquire()
        except CorrectionRateLimitedError as exc:
            logger.warning("correction.rate_limited phrase={!r}", correction)
            self._host.notify("error", str(exc), ttl=self._settings.notice_ttl_seconds)
            return False

        self.state = CorrectionState.ADAPTING
        local_partial = self._host.current_reply()
        try:
            reply = await self._client.correct(self._host.session_id, correction)
        except CorrectionError as exc:
            logger.warning("correction.failed error={}", exc)
            self._reject(str(exc))
            return False

        if not reply.accepted:
            logger.info("correction.rejected reason={}", reply.reason)
            self._reject(reply.reason or REJECTED_MESSAGE)
            return False

        partial = reply.partial_content or local_partial
        logger.info("correction.accepted phrase={!r} partial_chars={}", correction, len(partial))
        await asyncio.sleep(self._settings.correction_grace_seconds)

        context = build_correction_context(correction, partial)
        started = await self._host.restart_with_correction(lambda original: f"{original}{context}")
        self.state = CorrectionState.RESOLVED if started else CorrectionState.IDLE
        self.phrase = ""
        self._last_length = 0
        return started

    def _detected(self, phrase: str) -> None:
        self._timer = None
        if not self._host.is_streaming:
            return
        self.phrase = phrase[: self._settings.correction_max_chars]
        self.state = CorrectionState.PENDING_APPLY
        logger.debug("correction.detected phrase={!r}", self.phrase)

    def _reject(self, reason: str) -> None:
        self.state = CorrectionState.REJECTED
        self._host.notify("error", reason, ttl=self._settings.notice_ttl_seconds)
        self.state = CorrectionState.IDLE
        self.phrase = ""

    def _set_idle(self) -> None:
        self.state = CorrectionState.IDLE
        self.phrase = ""

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
