"""Token render buffer."""

from __future__ import annotations

import asyncio
from collections.abc import Callable


class TokenRenderBuffer:
    """Coalesce token fragments into at most one visible update per frame.

    ``push`` only schedules a flush on the running event loop; many pushes
    within one frame interval become a single ``on_flush`` call. ``flush`` may
    be called directly at any time and is a no-op when nothing is pending.
    """

    def __init__(self, on_flush: Callable[[str], None], *, frame_interval: float = 1 / 60) -> None:
        self._on_flush = on_flush
        self._frame_interval = frame_interval
        self._pending: list[str] = []
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> str:
        return "".join(self._pending)

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def push(self, text: str) -> None:
        if not text:
            return
        self._pending.append(text)
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self._frame_interval, self._on_frame)

    def flush(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self._pending:
            return
        chunk = "".join(self._pending)
        self._pending.clear()
        self._on_flush(chunk)

    def close(self) -> None:
        """Flush synchronously; used before any terminal state is reported."""
        self.flush()

    def _on_frame(self) -> None:
        self._handle = None
        self.flush()
