"""HTTP client for the inference service.

Wraps one ``httpx.AsyncClient`` carrying the bearer credential. The stream
request has no read timeout (idleness is owned by the stream watchdog); all
other requests use the regular request timeout. Speculation aborts are sent as
beacons: fire-and-forget deliveries from a non-daemon thread, so they complete
even while the process is shutting down.
"""

from __future__ import annotations

import json
import threading
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kurostream.errors import CorrectionError, ToolInvocationError

if TYPE_CHECKING:
    from kurostream.config import Settings

STREAM_PATH = "/api/stream"
CORRECT_PATH = "/api/stream/correct"
SPECULATE_PATH = "/api/preempt/speculate"
PREEMPT_ABORT_PATH = "/api/preempt/abort"
TOOL_INVOKE_PATH = "/api/tools/invoke"
WEB_SEARCH_PATH = "/api/web/search"
TOOL_RESULT_KEY = "kuro_tool_result"
EVENT_STREAM_CONTENT_TYPE = "text/event-stream"
BEACON_TIMEOUT_SECONDS = 5.0


class CorrectionReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    accepted: bool = False
    reason: str | None = None
    phrase: str | None = None
    partial_content: str = Field(default="", alias="partialContent")


class ToolResult(BaseModel):
    ok: bool
    name: str = ""
    result: Any = None
    error: str | None = None


class WebSearchResult(BaseModel):
    results: list[dict[str, Any]] = Field(default_factory=list)
    context: str | None = None


class KuroClient:
    """Async client for every endpoint the turn engine talks to."""

    _ALLOWED_SCHEMES = {"http", "https"}

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        connect_timeout: float = 10.0,
        request_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        scheme = httpx.URL(base_url).scheme
        if scheme not in self._ALLOWED_SCHEMES:
            msg = f"Invalid URL scheme '{scheme}'. Only {self._ALLOWED_SCHEMES} allowed."
            raise ValueError(msg)
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._connect_timeout = connect_timeout
        self._beacon_transport = transport if isinstance(transport, httpx.BaseTransport) else None
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=httpx.Timeout(request_timeout, connect=connect_timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> KuroClient:
        return cls(
            settings.base_url,
            settings.token,
            connect_timeout=settings.connect_timeout_seconds,
            request_timeout=settings.request_timeout_seconds,
            transport=transport,
        )

    @property
    def has_credential(self) -> bool:
        return bool(self._token)

    async def __aenter__(self) -> KuroClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def open_stream(self, payload: dict[str, Any]) -> AbstractAsyncContextManager[httpx.Response]:
        """Start the streamed turn request; the body is consumed incrementally."""
        return self._http.stream(
            "POST",
            STREAM_PATH,
            json=payload,
            timeout=httpx.Timeout(None, connect=self._connect_timeout),
        )

    async def correct(self, session_id: str, correction: str) -> CorrectionReply:
        """Ask the server to abort the in-flight turn and accept a correction."""
        try:
            response = await self._http.post(CORRECT_PATH, json={"sessionId": session_id, "correction": correction})
        except httpx.HTTPError as exc:
            raise CorrectionError(f"Correction request failed: {exc}") from exc

        try:
            return CorrectionReply.model_validate(response.json())
        except (json.JSONDecodeError, ValidationError) as exc:
            raise CorrectionError(f"Invalid correction response (HTTP {response.status_code})") from exc

    async def speculate(self, session_id: str, partial_input: str, mode: str) -> None:
        """Send partial input for pre-warming. Never carries message history."""
        response = await self._http.post(
            SPECULATE_PATH,
            json={"sessionId": session_id, "partialInput": partial_input, "mode": mode},
        )
        response.raise_for_status()

    async def web_search(self, query: str) -> WebSearchResult:
        """Fetch web sources for a query before the turn is streamed."""
        response = await self._http.post(WEB_SEARCH_PATH, json={"query": query})
        response.raise_for_status()
        return WebSearchResult.model_validate(response.json())

    async def invoke_tool(self, envelope: dict[str, Any]) -> ToolResult:
        """Invoke one directive on the side channel.

        Raises:
            ToolInvocationError: On a non-success status or a malformed envelope.
            httpx.HTTPError: On transport failure.
        """
        response = await self._http.post(TOOL_INVOKE_PATH, json=envelope)
        if response.is_error:
            raise ToolInvocationError(response.text or f"HTTP {response.status_code}")
        try:
            body = response.json()
            return ToolResult.model_validate(body[TOOL_RESULT_KEY])
        except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
            raise ToolInvocationError("Invalid response from server") from exc

    def abort_speculation(self, session_id: str) -> threading.Thread:
        """Tell the server to drop a speculative session, fire-and-forget."""
        return self.send_beacon(PREEMPT_ABORT_PATH, {"sessionId": session_id, "token": self._token})

    def send_beacon(self, path: str, payload: dict[str, Any]) -> threading.Thread:
        thread = threading.Thread(
            target=self._deliver_beacon,
            args=(f"{self.base_url}{path}", payload),
            name="kuro-beacon",
            daemon=False,
        )
        thread.start()
        return thread

    def _deliver_beacon(self, url: str, payload: dict[str, Any]) -> None:
        try:
            with httpx.Client(
                headers=self._headers(),
                timeout=BEACON_TIMEOUT_SECONDS,
                transport=self._beacon_transport,
            ) as client:
                client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("client.beacon.failed url={} error={}", url, exc)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers
