import asyncio
from typing import Any, List

import httpx
import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from neonchat.errors import RateLimitError
from neonchat.orchestrator import sse_format
from neonchat.schemas import ChatRequest, StreamDone, TokenDelta, ToolEndEvent, ToolStartEvent
from neonchat.stream import ChatStreamClient, DecoderState, StreamCallbacks, consume, decode_all, feed, finish
from tests.fakes import FakeGatewayClient, delta_line, probe_response, provider_stream, tool_call


def merged_body() -> bytes:
    events = [
        ToolStartEvent(tool="math", input={"expression": "2+2"}),
        ToolEndEvent(tool="math", output="2+2 = 4"),
    ]
    prefix = "".join(sse_format(event) for event in events).encode("utf-8")
    provider = b": keep-alive\r\n" + delta_line("Olá, ") + b"data: {\"choices\":[{\"delta\":{}}]}\n\n"
    provider += delta_line("mundo 🌍") + b"data: [DONE]\n\n"
    return prefix + provider


def texts(events) -> List[str]:
    return [event.text for event in events if isinstance(event, TokenDelta)]


class Recorder:
    def __init__(self) -> None:
        self.log: List[Any] = []
        self.deltas: List[str] = []

    def callbacks(self, on_delta=None) -> StreamCallbacks:
        def _delta(text: str) -> None:
            self.deltas.append(text)
            self.log.append(("delta", text))
            if on_delta:
                on_delta(text)

        return StreamCallbacks(
            on_phase=lambda phase: self.log.append(("phase", phase)),
            on_tool_event=lambda event: self.log.append(("tool", event.type, event.tool)),
            on_delta=_delta,
            on_done=lambda: self.log.append(("done",)),
            on_error=lambda message: self.log.append(("error", message)),
        )

    def kinds(self, kind: str) -> List[Any]:
        return [entry for entry in self.log if entry[0] == kind]


async def chunked(chunks: List[bytes]):
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk


def test_decoder_classifies_tool_and_delta_lines():
    events = decode_all([merged_body()])
    assert isinstance(events[0], ToolStartEvent)
    assert events[0].input == {"expression": "2+2"}
    assert isinstance(events[1], ToolEndEvent)
    assert texts(events) == ["Olá, ", "mundo 🌍"]
    assert isinstance(events[-1], StreamDone)


def test_decoder_is_chunk_boundary_independent():
    body = merged_body()
    whole = decode_all([body])
    one_byte = decode_all([body[i : i + 1] for i in range(len(body))])
    uneven = decode_all([body[:7], body[7:90], body[90:91], body[91:]])
    assert one_byte == whole
    assert uneven == whole


def test_incomplete_line_waits_for_more_bytes():
    line = delta_line("partial")
    events, state = feed(DecoderState(), line[:20])
    assert events == []
    assert state.buffer == line[:20]
    events, state = feed(state, line[20:])
    assert texts(events) == ["partial"]
    assert state.buffer == b""


def test_unparseable_line_is_pushed_back_not_discarded():
    bad = b"data: {not json\n"
    events, state = feed(DecoderState(), bad + delta_line("after"))
    assert events == []
    assert state.buffer.startswith(b"data: {not json\n")
    assert b"after" in state.buffer

    events, state = finish(state)
    assert texts(events) == ["after"]
    assert state.buffer == b""


def test_lines_after_done_are_ignored():
    events = decode_all([b"data: [DONE]\n\n" + delta_line("late")])
    assert events == [StreamDone()]


def test_provider_line_marks_streaming_phase():
    _, state = feed(DecoderState(), sse_format(ToolStartEvent(tool="math")).encode("utf-8"))
    assert state.saw_content is False
    _, state = feed(state, b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n')
    assert state.saw_content is True


@pytest.mark.asyncio
async def test_consume_dispatches_in_order_and_finishes_once():
    body = merged_body()
    recorder = Recorder()
    await consume(chunked([body[i : i + 3] for i in range(0, len(body), 3)]), recorder.callbacks())
    assert recorder.log[0] == ("phase", "generating")
    assert recorder.log[1:3] == [("tool", "tool_start", "math"), ("tool", "tool_end", "math")]
    assert recorder.log[3] == ("phase", "streaming")
    assert recorder.deltas == ["Olá, ", "mundo 🌍"]
    assert recorder.log[-1] == ("done",)
    assert len(recorder.kinds("done")) == 1
    assert recorder.kinds("error") == []


@pytest.mark.asyncio
async def test_consume_reports_analyzing_phase_for_images():
    recorder = Recorder()
    await consume(chunked(provider_stream(["hi"])), recorder.callbacks(), has_images=True)
    assert recorder.log[0] == ("phase", "analyzing")


@pytest.mark.asyncio
async def test_cancel_after_three_deltas_is_silent():
    cancel = asyncio.Event()
    never = asyncio.Event()

    async def endless():
        for text in ["one ", "two ", "three "]:
            yield delta_line(text)
        await never.wait()
        yield delta_line("never sent")

    recorder = Recorder()

    def stop_after_three(_text: str) -> None:
        if len(recorder.deltas) == 3:
            cancel.set()

    await asyncio.wait_for(
        consume(endless(), recorder.callbacks(on_delta=stop_after_three), cancel=cancel), timeout=2
    )
    assert recorder.deltas == ["one ", "two ", "three "]
    assert recorder.kinds("done") == []
    assert recorder.kinds("error") == []


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_bytes():
    cancel = asyncio.Event()
    never = asyncio.Event()

    async def stalled():
        yield delta_line("first")
        await never.wait()
        yield delta_line("unreachable")

    recorder = Recorder()
    task = asyncio.create_task(consume(stalled(), recorder.callbacks(), cancel=cancel))
    await asyncio.sleep(0.05)
    cancel.set()
    await asyncio.wait_for(task, timeout=2)
    assert recorder.deltas == ["first"]
    assert recorder.kinds("done") == []
    assert recorder.kinds("error") == []


@pytest.mark.asyncio
async def test_transport_failure_reports_one_error_and_keeps_deltas():
    async def dropping():
        yield delta_line("kept")
        raise ConnectionResetError("connection reset by peer")

    recorder = Recorder()
    await consume(dropping(), recorder.callbacks())
    assert recorder.deltas == ["kept"]
    assert recorder.kinds("error") == [("error", "connection reset by peer")]
    assert recorder.kinds("done") == []


@pytest.mark.asyncio
async def test_client_streams_tool_turn_end_to_end(app_factory):
    gateway = FakeGatewayClient(
        completions=[probe_response([tool_call("math", {"expression": "2+2"})])],
        stream_chunks=provider_stream(["It is ", "4."]),
    )
    app, _ = app_factory(fake_gateway=gateway)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            stream_client = ChatStreamClient("http://test", client=http_client)
            recorder = Recorder()
            await stream_client.stream(
                ChatRequest(messages=[{"role": "user", "content": "2+2?"}]), recorder.callbacks()
            )
    assert recorder.kinds("tool") == [("tool", "tool_start", "math"), ("tool", "tool_end", "math")]
    assert "".join(recorder.deltas) == "It is 4."
    assert recorder.kinds("done") == [("done",)]


@pytest.mark.asyncio
async def test_client_rate_limit_surfaces_single_error(app_factory):
    gateway = FakeGatewayClient(stream_error=RateLimitError())
    app, _ = app_factory(fake_gateway=gateway)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            stream_client = ChatStreamClient("http://test", client=http_client)
            recorder = Recorder()
            await stream_client.stream(
                ChatRequest(messages=[{"role": "user", "content": "hi"}]), recorder.callbacks()
            )
    assert recorder.kinds("error") == [("error", RateLimitError.user_message)]
    assert recorder.deltas == []
    assert recorder.kinds("done") == []


@pytest.mark.asyncio
async def test_new_stream_aborts_previous_one():
    never = asyncio.Event()

    class StubClient:
        is_closed = False

        def __init__(self) -> None:
            self.sent = 0

        def build_request(self, method, url, json=None, headers=None):
            return httpx.Request(method, url, json=json, headers=headers)

        async def send(self, request, stream=False):
            self.sent += 1
            if self.sent == 1:
                await never.wait()
            raise httpx.ConnectError("gateway unreachable", request=request)

    stub = StubClient()
    stream_client = ChatStreamClient("http://test", client=stub)
    first, second = Recorder(), Recorder()
    first_task = asyncio.create_task(
        stream_client.stream(ChatRequest(messages=[{"role": "user", "content": "one"}]), first.callbacks())
    )
    await asyncio.sleep(0.01)
    await stream_client.stream(ChatRequest(messages=[{"role": "user", "content": "two"}]), second.callbacks())
    await asyncio.wait_for(first_task, timeout=2)

    assert first.log == []
    assert second.kinds("error") == [("error", "gateway unreachable")]
    assert stub.sent == 2
