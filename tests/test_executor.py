import asyncio
import json

import httpx
import pytest

from kurostream.stream.updates import ContentReplaced, MetadataChanged, TurnUpdate
from kurostream.tools.executor import MALFORMED_RESULT, ToolExecutor, render_image_block, render_tool_error
from kurostream.tools.extractor import ToolCall
from kurostream.types import TurnMetadata


def _metadata(updates: list[TurnUpdate]) -> TurnMetadata:
    meta = TurnMetadata()
    for update in updates:
        if isinstance(update, MetadataChanged):
            meta = update.transform(meta)
    return meta


def _replacements(updates: list[TurnUpdate]) -> list[ContentReplaced]:
    return [update for update in updates if isinstance(update, ContentReplaced)]


def _result(payload: dict, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json={"kuro_tool_result": payload})


@pytest.mark.asyncio
async def test_same_id_is_invoked_once(make_client) -> None:
    calls: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        return _result({"ok": True, "name": "echo", "result": {"echo": "hi"}})

    client = make_client(handler)
    updates: list[TurnUpdate] = []
    executor = ToolExecutor(client, updates.append)
    call = ToolCall(id="t1", name="echo", args={"text": "hi"})

    first = executor.submit(call)
    second = executor.submit(call)
    assert first is second
    await executor.wait()

    assert calls == [{"kuro_tool_call": {"id": "t1", "name": "echo", "args": {"text": "hi"}}}]
    [replaced] = _replacements(updates)
    assert replaced.search == "__TOOL_PENDING_t1__"
    assert replaced.replacement == '```json\n{\n  "echo": "hi"\n}\n```'
    assert _metadata(updates).tools["t1"].status == "ok"
    await client.aclose()


@pytest.mark.asyncio
async def test_non_success_status_becomes_inline_error(make_client) -> None:
    client = make_client(lambda request: httpx.Response(502, text="upstream down"))
    updates: list[TurnUpdate] = []
    executor = ToolExecutor(client, updates.append)

    executor.submit(ToolCall(id="t1", name="echo"))
    await executor.wait()

    [replaced] = _replacements(updates)
    assert replaced.replacement == render_tool_error("upstream down")
    record = _metadata(updates).tools["t1"]
    assert record.status == "error"
    assert record.duration_ms is not None
    await client.aclose()


@pytest.mark.asyncio
async def test_malformed_envelope_becomes_inline_error(make_client) -> None:
    client = make_client(lambda request: httpx.Response(200, json={"unexpected": True}))
    updates: list[TurnUpdate] = []
    executor = ToolExecutor(client, updates.append)

    executor.submit(ToolCall(id="t1", name="echo"))
    await executor.wait()

    assert _replacements(updates)[0].replacement == "**Tool error**: Invalid response from server"
    await client.aclose()


@pytest.mark.asyncio
async def test_transport_failure_becomes_inline_error(make_client) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    updates: list[TurnUpdate] = []
    executor = ToolExecutor(client, updates.append)

    executor.submit(ToolCall(id="t1", name="echo"))
    await executor.wait()

    assert _replacements(updates)[0].replacement == "**Tool error**: connection refused"
    await client.aclose()


@pytest.mark.asyncio
async def test_tool_failure_result_is_rendered_as_error(make_client) -> None:
    client = make_client(lambda request: _result({"ok": False, "name": "fs.read", "error": "no such file"}))
    updates: list[TurnUpdate] = []
    executor = ToolExecutor(client, updates.append)

    executor.submit(ToolCall(id="t1", name="fs.read"))
    await executor.wait()

    assert _replacements(updates)[0].replacement == "**Tool error**: no such file"
    assert _metadata(updates).tools["t1"].status == "error"
    await client.aclose()


@pytest.mark.asyncio
async def test_image_result_renders_image_block(make_client) -> None:
    payload = {
        "imageUrl": "/api/vision/img/1.png",
        "dimensions": {"width": 768, "height": 512},
        "pipeline": "hq",
        "elapsed": 4.2,
        "seed": 7,
    }
    client = make_client(lambda request: _result({"ok": True, "name": "vision.generate", "result": payload}))
    updates: list[TurnUpdate] = []
    executor = ToolExecutor(client, updates.append)

    executor.submit(ToolCall(id="img", name="vision.generate", args={"prompt": "a cat"}))
    await executor.wait()

    assert _replacements(updates)[0].replacement == render_image_block(
        "/api/vision/img/1.png", width=768, height=512, label="hq", elapsed=4.2, seed=7
    )
    assert "Image generated (4.2s, seed 7)" in [step.text for step in _metadata(updates).steps]
    await client.aclose()


@pytest.mark.asyncio
async def test_runner_result_records_job(make_client) -> None:
    result = {"ok": True, "name": "runner.spawn", "result": {"jobId": "job-9", "status": "running"}}
    client = make_client(lambda request: _result(result))
    updates: list[TurnUpdate] = []
    executor = ToolExecutor(client, updates.append)

    executor.submit(ToolCall(id="r1", name="runner.spawn", args={"lang": "python", "cmd": "main.py"}))
    await executor.wait()

    meta = _metadata(updates)
    assert meta.runner is not None
    assert (meta.runner.job_id, meta.runner.status, meta.runner.lang, meta.runner.cmd) == (
        "job-9",
        "running",
        "python",
        "main.py",
    )
    assert "Running code in sandbox" in [step.text for step in meta.steps]
    await client.aclose()


@pytest.mark.asyncio
async def test_cancel_all_resolves_pending_placeholders(make_client) -> None:
    started = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        started.set()
        await asyncio.sleep(5)
        return _result({"ok": True, "name": "echo"})

    client = make_client(handler)
    updates: list[TurnUpdate] = []
    executor = ToolExecutor(client, updates.append)

    executor.submit(ToolCall(id="slow", name="echo"))
    await started.wait()
    await executor.cancel_all()

    assert _replacements(updates)[0].replacement == "**Tool error**: cancelled"
    assert _metadata(updates).tools["slow"].status == "error"
    await client.aclose()


def test_image_block_caption_defaults() -> None:
    assert render_image_block("/x.png") == "![Generated Image](/x.png)\n*1024×1024 · flux · ?s · seed ?*"


@pytest.mark.asyncio
async def test_malformed_success_payload_stays_inside_its_placeholder(make_client) -> None:
    payload = {"imageUrl": "/i.png", "dimensions": [512, 512]}
    client = make_client(lambda request: _result({"ok": True, "name": "vision.generate", "result": payload}))
    updates: list[TurnUpdate] = []
    executor = ToolExecutor(client, updates.append)

    task = executor.submit(ToolCall(id="t1", name="vision.generate"))
    await executor.wait()

    assert task.result() == "error"
    [replaced] = _replacements(updates)
    assert replaced.search == "__TOOL_PENDING_t1__"
    assert replaced.replacement == render_tool_error(MALFORMED_RESULT)
    assert _metadata(updates).tools["t1"].status == "error"
    await client.aclose()
