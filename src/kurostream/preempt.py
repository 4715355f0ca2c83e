"""Speculative preemption.

While the user composes a message, partial input is sent ahead so the server
can pre-warm the reply. Only the session id and the partial text travel; the
conversation history never does. The real turn claims the speculative session
once, and an abandoned session is dropped with a fire-and-forget beacon.
"""

from __future__ import annotations

import asyncio
import re
import threading
from enum import StrEnum

import httpx
from loguru import logger

from kurostream.client import KuroClient
from kurostream.config import Settings

WORD_BOUNDARY = re.compile(r"[\s.,!?;:]")


class PreemptState(StrEnum):
    IDLE = "idle"
    PREEMPTING = "preempting"
    LOADED = "loaded"


class PreemptProtocol:
    def __init__(self, client: KuroClient, session_id: str, settings: Settings) -> None:
        self._client = client
        self._settings = settings
        self.session_id = session_id
        self.state = PreemptState.IDLE
        self._active = False
        self._last_sent = ""
        self._debounce: asyncio.TimerHandle | None = None
        self._loaded: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def enabled(self) -> bool:
        return self._settings.preempt_enabled and self._client.has_credential

    @property
    def active(self) -> bool:
        return self._active

    def debounce_delay(self, value: str) -> float:
        """Shorter wait right after a word boundary, longer mid-word."""
        delay = self._settings.preempt_debounce_seconds
        if value and WORD_BOUNDARY.match(value[-1]):
            return delay
        return delay * self._settings.preempt_non_boundary_factor

    def on_input_change(self, value: str) -> None:
        if not self.enabled:
            return
        self._cancel(self._debounce)
        self._debounce = None

        trimmed = value.strip()
        if len(trimmed.split()) < self._settings.preempt_min_words:
            return
        self._debounce = asyncio.get_running_loop().call_later(self.debounce_delay(value), self._fire, trimmed)

    def claim(self) -> str | None:
        """Hand the speculative session to the real turn. Later calls return None."""
        self._cancel(self._debounce)
        self._cancel(self._loaded)
        self._debounce = self._loaded = None
        self.state = PreemptState.IDLE
        if not self._active:
            return None
        self._active = False
        self._last_sent = ""
        logger.info("preempt.claimed session={}", self.session_id)
        return self.session_id

    def abort(self) -> threading.Thread | None:
        """Abandon any outstanding speculation; the server is told via beacon."""
        in_flight = self._task is not None and not self._task.done()
        outstanding = self._active or in_flight
        self._cancel(self._debounce)
        self._cancel(self._loaded)
        self._debounce = self._loaded = None
        if in_flight and self._task is not None:
            self._task.cancel()
        self._last_sent = ""
        self._active = False
        self.state = PreemptState.IDLE
        if not outstanding or not self.enabled:
            return None
        logger.debug("preempt.abort session={}", self.session_id)
        return self._client.abort_speculation(self.session_id)

    def _fire(self, text: str) -> None:
        self._debounce = None
        self._task = asyncio.create_task(self.speculate(text), name=f"preempt:{self.session_id}")

    async def speculate(self, text: str) -> None:
        if text == self._last_sent or len(text) > self._settings.preempt_max_chars:
            return
        self._last_sent = text
        self._active = True
        self.state = PreemptState.PREEMPTING
        self._cancel(self._loaded)
        self._loaded = None
        try:
            await self._client.speculate(self.session_id, text, self._settings.preempt_mode)
        except httpx.HTTPError as exc:
            logger.debug("preempt.speculate.failed error={}", exc)
            self.state = PreemptState.IDLE
            return
        self._loaded = asyncio.get_running_loop().call_later(
            self._settings.preempt_loaded_after_seconds, self._mark_loaded
        )

    def _mark_loaded(self) -> None:
        self._loaded = None
        if self.state is PreemptState.PREEMPTING:
            self.state = PreemptState.LOADED

    @staticmethod
    def _cancel(handle: asyncio.TimerHandle | None) -> None:
        if handle is not None:
            handle.cancel()
