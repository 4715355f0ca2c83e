import asyncio
import json

import httpx
import pytest
from conftest import sse_response, stalled_response, token

from kurostream.conversation import Conversation, Notice
from kurostream.correction import CorrectionState
from kurostream.errors import KuroError
from kurostream.stream.updates import ContentAppended, NoticeRaised, TurnUpdate
from kurostream.types import Message, TurnStatus

DONE = {"type": "done", "model": "kuro-8b"}
TOOL_DIRECTIVE = '{"kuro_tool_call":{"id":"t1","name":"echo","args":{}}}'


class StreamServer:
    """Routes requests by path and records what was sent."""

    def __init__(self, *streams: httpx.Response) -> None:
        self._streams = list(streams)
        self.requests: list[tuple[str, dict]] = []

    def bodies(self, path: str) -> list[dict]:
        return [body for request_path, body in self.requests if request_path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.url.path, body))
        match request.url.path:
            case "/api/stream":
                return self._streams.pop(0)
            case "/api/tools/invoke":
                return httpx.Response(200, json={"kuro_tool_result": {"ok": True, "name": "echo", "result": "pong"}})
            case "/api/stream/correct":
                return httpx.Response(200, json={"accepted": True, "partialContent": "The answer is"})
        return httpx.Response(204)


@pytest.mark.asyncio
async def test_send_streams_into_new_assistant_slot(make_client, settings) -> None:
    server = StreamServer(sse_response(token("Hel"), token("lo"), DONE))
    client = make_client(server)
    conversation = Conversation(client, settings, session_id="s1")

    await conversation.send("hi")
    outcome = await conversation.wait()

    assert outcome is not None and outcome.status is TurnStatus.COMPLETED
    assert [m.role for m in conversation.messages] == ["user", "assistant"]
    reply = conversation.messages[-1]
    assert reply.content == "Hello"
    assert reply.meta is not None
    assert reply.meta.model == "kuro-8b"
    assert reply.meta.tokens == 2
    steps = [step.text for step in reply.meta.steps]
    assert steps[:2] == ["Connecting to model", "Generating response"]
    assert server.bodies("/api/stream")[0]["messages"] == [{"role": "user", "content": "hi"}]
    assert not conversation.is_streaming
    await client.aclose()


@pytest.mark.asyncio
async def test_tool_call_is_replaced_by_result_block(make_client, settings) -> None:
    head, tail = TOOL_DIRECTIVE[:20], TOOL_DIRECTIVE[20:]
    server = StreamServer(sse_response(token("Result: "), token(head), token(tail), token(" ok"), DONE))
    client = make_client(server)
    conversation = Conversation(client, settings)
    seen: list[TurnUpdate] = []
    conversation.subscribe(seen.append)

    await conversation.send("ping")
    await conversation.wait()

    assert conversation.messages[-1].content == 'Result: ```json\n"pong"\n``` ok'
    assert all("kuro_tool_call" not in u.text for u in seen if isinstance(u, ContentAppended))
    assert conversation.messages[-1].meta.tools["t1"].status == "ok"
    assert len(server.bodies("/api/tools/invoke")) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_retry_exhaustion_writes_error_once(make_client, settings) -> None:
    server = StreamServer(stalled_response(), stalled_response(), stalled_response())
    client = make_client(server)
    conversation = Conversation(client, settings)

    await conversation.send("hi")
    outcome = await conversation.wait()

    reply = conversation.messages[-1]
    assert outcome.status is TurnStatus.FAILED
    assert reply.error is True
    assert reply.content.startswith("Error: ")
    assert conversation.connection_status == outcome.error
    await client.aclose()


@pytest.mark.asyncio
async def test_cancel_is_caller_initiated(make_client, settings) -> None:
    server = StreamServer(stalled_response(token("par"), stall=5))
    client = make_client(server)
    conversation = Conversation(client, settings)

    await conversation.send("hi")
    await asyncio.sleep(0.05)
    outcome = await conversation.cancel()

    assert outcome is not None and outcome.status is TurnStatus.CANCELLED
    assert conversation.messages[-1].content == "par"
    assert len(server.bodies("/api/stream")) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_edit_truncates_and_resends(make_client, settings) -> None:
    server = StreamServer(
        sse_response(token("first"), DONE),
        sse_response(token("second"), DONE),
        sse_response(token("edited"), DONE),
    )
    client = make_client(server)
    conversation = Conversation(client, settings)
    await conversation.send("one")
    await conversation.wait()
    await conversation.send("two")
    await conversation.wait()

    await conversation.edit(0, "uno")
    await conversation.wait()

    assert [(m.role, m.content) for m in conversation.messages] == [("user", "uno"), ("assistant", "edited")]
    assert conversation.messages[0].edited is True
    assert server.bodies("/api/stream")[-1]["messages"] == [{"role": "user", "content": "uno"}]
    await client.aclose()


@pytest.mark.asyncio
async def test_regenerate_replaces_reply(make_client, settings) -> None:
    server = StreamServer(sse_response(token("meh"), DONE), sse_response(token("better"), DONE))
    client = make_client(server)
    conversation = Conversation(client, settings)
    await conversation.send("q")
    await conversation.wait()

    await conversation.regenerate(1)
    await conversation.wait()

    assert [m.content for m in conversation.messages] == ["q", "better"]
    assert server.bodies("/api/stream")[-1]["messages"] == [{"role": "user", "content": "q"}]
    await client.aclose()


@pytest.mark.asyncio
async def test_regenerate_rejects_user_index(make_client, settings) -> None:
    conversation = Conversation(make_client(StreamServer()), settings, messages=[Message.user("q")])
    with pytest.raises(KuroError):
        await conversation.regenerate(0)


@pytest.mark.asyncio
async def test_fork_is_independent(make_client, settings) -> None:
    server = StreamServer(sse_response(token("a"), DONE))
    client = make_client(server)
    conversation = Conversation(client, settings)
    await conversation.send("q")
    await conversation.wait()

    branch = conversation.fork(0)
    assert [m.content for m in branch.messages] == ["q"]
    assert branch.session_id != conversation.session_id
    branch.messages.append(Message.user("more"))
    assert len(conversation.messages) == 2
    await client.aclose()


@pytest.mark.asyncio
async def test_correction_restarts_with_partial_content(make_client, settings) -> None:
    settings = settings.model_copy(update={"stale_timeout_seconds": 5.0})
    server = StreamServer(
        stalled_response(token("The answer"), stall=5),
        sse_response(token("In metric: 42 km"), DONE),
    )
    client = make_client(server)
    conversation = Conversation(client, settings, session_id="s1")

    await conversation.send("How far is it?")
    await asyncio.sleep(0.05)
    conversation.on_input_change("use metric units please.")
    assert conversation.correction.state is CorrectionState.PENDING_APPLY

    assert await conversation.correction.apply() is True
    assert conversation.correction.state is CorrectionState.RESOLVED
    await conversation.wait()

    assert server.bodies("/api/stream/correct") == [{"sessionId": "s1", "correction": "use metric units please."}]
    assert [m.role for m in conversation.messages] == ["user", "assistant"]
    corrected = conversation.messages[0].content
    assert corrected.startswith("How far is it?\n\n[You had begun responding")
    assert '"""\nThe answer is\n"""' in corrected
    assert "[User correction during response: use metric units please.]" in corrected
    assert conversation.messages[1].content == "In metric: 42 km"
    second_payload = server.bodies("/api/stream")[1]["messages"]
    assert second_payload == [{"role": "user", "content": corrected}]
    await client.aclose()


@pytest.mark.asyncio
async def test_notices_expire(make_client, settings) -> None:
    conversation = Conversation(make_client(StreamServer()), settings)
    seen: list[TurnUpdate] = []
    conversation.subscribe(seen.append)

    conversation.notify("error", "Too many corrections, wait a moment", ttl=0.02)
    conversation.apply(NoticeRaised("warning", "sticky"))
    assert conversation.notices == [
        Notice("error", "Too many corrections, wait a moment"),
        Notice("warning", "sticky"),
    ]
    await asyncio.sleep(0.05)
    assert conversation.notices == [Notice("warning", "sticky")]
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_capability_downgrade_updates_power_dial(make_client, settings) -> None:
    server = StreamServer(
        sse_response({"type": "capability", "downgraded": True, "profile": "instant"}, token("ok"), DONE),
        sse_response(DONE),
    )
    client = make_client(server)
    conversation = Conversation(client, settings)
    await conversation.send("q")
    await conversation.wait()

    assert conversation.options.power_dial == "instant"
    assert Notice("info", "Scaled to instant: infrastructure adjustment") in conversation.notices

    await conversation.send("again")
    await conversation.wait()
    assert server.bodies("/api/stream")[-1]["powerDial"] == "instant"
    await client.aclose()


@pytest.mark.asyncio
async def test_updates_from_a_replaced_turn_are_dropped(make_client, settings) -> None:
    server = StreamServer(sse_response(token("a"), DONE), sse_response(token("b"), DONE))
    client = make_client(server)
    conversation = Conversation(client, settings)
    await conversation.send("q1")
    await conversation.wait()
    await conversation.send("q2")
    await conversation.wait()

    conversation._apply_for(1, ContentAppended("late"))
    assert conversation.messages[-1].content == "b"
    assert conversation.messages[1].content == "a"
    await client.aclose()
