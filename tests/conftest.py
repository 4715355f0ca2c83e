from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from kurostream.client import KuroClient
from kurostream.config import Settings
from kurostream.stream.updates import ContentAppended, TurnFinished, TurnUpdate

BASE_URL = "http://kuro.test"

type Handler = Callable[[httpx.Request], httpx.Response]


def sse(*events: dict[str, Any] | str) -> bytes:
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


def sse_response(*events: dict[str, Any] | str) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=sse(*events))


def stalled_response(*events: dict[str, Any] | str, stall: float = 5.0) -> httpx.Response:
    """Send ``events`` and then go silent without closing the body."""

    async def body() -> AsyncIterator[bytes]:
        if events:
            yield sse(*events)
        await asyncio.sleep(stall)

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())


def token(content: str) -> dict[str, Any]:
    return {"type": "token", "content": content}


def appended_text(updates: list[TurnUpdate]) -> str:
    return "".join(update.text for update in updates if isinstance(update, ContentAppended))


def finished(updates: list[TurnUpdate]) -> list[TurnFinished]:
    return [update for update in updates if isinstance(update, TurnFinished)]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        base_url=BASE_URL,
        token="secret",
        stale_timeout_seconds=0.2,
        retry_delays_seconds=(0.01, 0.01),
        render_interval_seconds=0.001,
        notice_ttl_seconds=0.05,
        correction_debounce_seconds=0.02,
        correction_grace_seconds=0.0,
        preempt_debounce_seconds=0.02,
        preempt_loaded_after_seconds=0.02,
    )


@pytest.fixture
def make_client(settings: Settings) -> Callable[[Handler], KuroClient]:
    def _make(handler: Handler) -> KuroClient:
        return KuroClient.from_settings(settings, transport=httpx.MockTransport(handler))

    return _make
