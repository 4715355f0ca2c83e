"""Tool executor for directives found in generated text."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from functools import partial
from typing import Any

import httpx
from loguru import logger

from kurostream.client import KuroClient, ToolResult
from kurostream.errors import ToolInvocationError
from kurostream.stream.updates import ContentReplaced, MetadataChanged, UpdateSink
from kurostream.tools.extractor import ToolCall
from kurostream.types import RunnerJob, ToolStatus, TurnMetadata

IMAGE_TOOL = "vision.generate"
RUNNER_TOOL = "runner.spawn"
DEFAULT_DIMENSION = 1024
MALFORMED_RESULT = "Malformed tool result"


def render_tool_error(message: str) -> str:
    return f"**Tool error**: {message}"


def render_image_block(
    url: str,
    *,
    width: int | None = None,
    height: int | None = None,
    label: str | None = None,
    elapsed: Any = None,
    seed: Any = None,
) -> str:
    caption = (
        f"*{width or DEFAULT_DIMENSION}×{height or DEFAULT_DIMENSION} · {label or 'flux'} · "
        f"{elapsed if elapsed is not None else '?'}s · seed {seed if seed is not None else '?'}*"
    )
    return f"![Generated Image]({url})\n{caption}"


def render_result_block(result: Any) -> str:
    return f"```json\n{json.dumps(result, indent=2, ensure_ascii=False, default=str)}\n```"


def render_tool_result(result: ToolResult) -> str:
    if not result.ok:
        return render_tool_error(result.error or "unknown error")
    payload = result.result
    if result.name == IMAGE_TOOL and isinstance(payload, dict) and payload.get("imageUrl"):
        dimensions = payload.get("dimensions") or {}
        return render_image_block(
            payload["imageUrl"],
            width=dimensions.get("width"),
            height=dimensions.get("height"),
            label=payload.get("pipeline"),
            elapsed=payload.get("elapsed"),
            seed=payload.get("seed"),
        )
    return render_result_block(payload)


class ToolExecutor:
    """Run directives against the side channel, at most once per id.

    Each call resolves into its own placeholder span; executions run
    concurrently with the token stream and with each other.
    """

    def __init__(self, client: KuroClient, sink: UpdateSink, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._client = client
        self._sink = sink
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[ToolStatus]] = {}

    @property
    def submitted(self) -> set[str]:
        return set(self._tasks)

    def submit(self, call: ToolCall) -> asyncio.Task[ToolStatus]:
        existing = self._tasks.get(call.id)
        if existing is not None:
            logger.debug("tool.submit.duplicate id={}", call.id)
            return existing

        start = self._clock()
        self._sink(MetadataChanged(partial(TurnMetadata.with_tool, tool_id=call.id, name=call.name, start_time=start)))
        task = asyncio.create_task(self._execute(call, start), name=f"tool:{call.id}")
        self._tasks[call.id] = task
        return task

    async def wait(self) -> None:
        """Wait until every submitted call has resolved its placeholder."""
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _execute(self, call: ToolCall, start: float) -> ToolStatus:
        logger.info("tool.invoke id={} name={}", call.id, call.name)
        try:
            result = await self._client.invoke_tool(call.envelope())
            block = render_tool_result(result)
            if result.ok:
                self._record_side_effects(call, result)
        except (ToolInvocationError, httpx.HTTPError) as exc:
            logger.warning("tool.invoke.error id={} name={} error={}", call.id, call.name, exc)
            return self._resolve_error(call, str(exc) or type(exc).__name__, start)
        except asyncio.CancelledError:
            self._resolve_error(call, "cancelled", start)
            raise
        except Exception as exc:
            logger.warning("tool.result.malformed id={} name={} error={!r}", call.id, call.name, exc)
            return self._resolve_error(call, MALFORMED_RESULT, start)

        status: ToolStatus = "ok" if result.ok else "error"
        self._record_status(call, status, start)
        self._sink(ContentReplaced(call.placeholder, block))
        return status

    def _resolve_error(self, call: ToolCall, message: str, start: float) -> ToolStatus:
        self._record_status(call, "error", start)
        self._sink(ContentReplaced(call.placeholder, render_tool_error(message)))
        return "error"

    def _record_status(self, call: ToolCall, status: ToolStatus, start: float) -> None:
        duration_ms = int((self._clock() - start) * 1000)
        self._sink(
            MetadataChanged(
                partial(TurnMetadata.with_tool_status, tool_id=call.id, status=status, duration_ms=duration_ms)
            )
        )

    def _record_side_effects(self, call: ToolCall, result: ToolResult) -> None:
        payload = result.result if isinstance(result.result, dict) else {}
        if result.name == RUNNER_TOOL and payload:
            runner = RunnerJob(
                job_id=payload.get("jobId"),
                status=payload.get("status") or "queued",
                lang=str(call.args.get("lang", "")),
                cmd=str(call.args.get("cmd", "")),
            )
            self._sink(MetadataChanged(partial(TurnMetadata.with_step, text="Running code in sandbox")))
            self._sink(MetadataChanged(partial(TurnMetadata.with_runner, runner=runner)))
        elif result.name == IMAGE_TOOL and payload.get("imageUrl"):
            step = f"Image generated ({payload.get('elapsed', '?')}s, seed {payload.get('seed', '?')})"
            self._sink(MetadataChanged(partial(TurnMetadata.with_step, text=step)))
