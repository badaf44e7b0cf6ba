"""Client-side decoding of the chat event stream.

The decoder is a pure function over :class:`DecoderState`; :func:`consume`
drives it from any async byte iterator and dispatches callbacks, and
:class:`ChatStreamClient` adds the HTTP request and single-flight abort.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx
from pydantic import ValidationError

from .schemas import ChatRequest, StreamDone, StreamEvent, StreamPhase, TokenDelta, ToolEndEvent, ToolStartEvent


logger = logging.getLogger("uvicorn.error")

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
TOOL_EVENT_TYPES = {"tool_start": ToolStartEvent, "tool_end": ToolEndEvent}


@dataclass(frozen=True)
class DecoderState:
    buffer: bytes = b""
    saw_content: bool = False
    done: bool = False


def _classify(payload: Dict[str, Any]) -> Tuple[Optional[StreamEvent], bool]:
    """Map one decoded payload to an event. The flag is True for provider lines."""
    model = TOOL_EVENT_TYPES.get(payload.get("type"))
    if model is not None:
        try:
            return model.model_validate(payload), False
        except ValidationError as exc:
            logger.debug("Skipping malformed tool event: %s", exc)
            return None, False
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None, True
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    if isinstance(content, str) and content:
        return TokenDelta(text=content), True
    return None, True


def _drain(state: DecoderState, final: bool) -> Tuple[List[StreamEvent], DecoderState]:
    events: List[StreamEvent] = []
    buffer = state.buffer
    saw_content = state.saw_content
    done = state.done
    while True:
        index = buffer.find(b"\n")
        if index == -1:
            break
        raw, buffer = buffer[:index], buffer[index + 1 :]
        line = raw.decode("utf-8", errors="replace")
        if line.endswith("\r"):
            line = line[:-1]
        if not line.strip() or line.startswith(":") or not line.startswith(DATA_PREFIX):
            continue
        if done:
            continue
        data = line[len(DATA_PREFIX) :].strip()
        if data == DONE_SENTINEL:
            done = True
            events.append(StreamDone())
            continue
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            if final:
                logger.warning("Dropping undecodable stream line: %s", line[:120])
                continue
            # Wait for more bytes before judging this line.
            buffer = raw + b"\n" + buffer
            break
        if not isinstance(payload, dict):
            continue
        event, from_provider = _classify(payload)
        if from_provider:
            saw_content = True
        if event is not None:
            events.append(event)
    return events, DecoderState(buffer=buffer, saw_content=saw_content, done=done)


def feed(state: DecoderState, data: bytes) -> Tuple[List[StreamEvent], DecoderState]:
    """Append ``data`` to the buffer and decode every complete line it closes."""
    return _drain(replace(state, buffer=state.buffer + data), final=False)


def finish(state: DecoderState) -> Tuple[List[StreamEvent], DecoderState]:
    """Decode whatever is left once the transport has ended."""
    buffer = state.buffer
    if buffer and not buffer.endswith(b"\n"):
        buffer += b"\n"
    events, final_state = _drain(replace(state, buffer=buffer), final=True)
    return events, replace(final_state, buffer=b"")


def decode_all(chunks: List[bytes]) -> List[StreamEvent]:
    state = DecoderState()
    events: List[StreamEvent] = []
    for chunk in chunks:
        batch, state = feed(state, chunk)
        events.extend(batch)
    batch, _ = finish(state)
    events.extend(batch)
    return events


def _noop(*_args: Any) -> None:
    return None


@dataclass
class StreamCallbacks:
    on_phase: Callable[[StreamPhase], None] = _noop
    on_tool_event: Callable[[Union[ToolStartEvent, ToolEndEvent]], None] = _noop
    on_delta: Callable[[str], None] = _noop
    on_done: Callable[[], None] = _noop
    on_error: Callable[[str], None] = _noop


class StreamCancelled(Exception):
    pass


async def _until_cancelled(awaitable: Awaitable[Any], cancel: Optional[asyncio.Event]) -> Any:
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise StreamCancelled()
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if task.done():
        return task.result()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    raise StreamCancelled()


async def consume(
    chunks: AsyncIterator[bytes],
    callbacks: StreamCallbacks,
    cancel: Optional[asyncio.Event] = None,
    has_images: bool = False,
) -> None:
    """Decode ``chunks`` and dispatch to ``callbacks``.

    ``on_done`` fires once after a natural end of stream. Any other failure
    fires ``on_error`` once. Setting ``cancel`` stops reading and returns
    without calling either; deltas already delivered stay delivered.
    """
    state = DecoderState()
    iterator = chunks.__aiter__()
    callbacks.on_phase("analyzing" if has_images else "generating")
    try:
        while True:
            try:
                chunk = await _until_cancelled(iterator.__anext__(), cancel)
            except StopAsyncIteration:
                break
            was_streaming = state.saw_content
            batch, state = feed(state, chunk)
            _dispatch(batch, callbacks, was_streaming, state.saw_content)
            if cancel is not None and cancel.is_set():
                raise StreamCancelled()
        batch, final_state = finish(state)
        _dispatch(batch, callbacks, state.saw_content, final_state.saw_content)
    except StreamCancelled:
        return
    except Exception as exc:
        callbacks.on_error(str(exc) or "Unknown error")
        return
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
    callbacks.on_done()


def _dispatch(events: List[StreamEvent], callbacks: StreamCallbacks, was_streaming: bool, streaming: bool) -> None:
    announced = was_streaming
    for event in events:
        if isinstance(event, (ToolStartEvent, ToolEndEvent)):
            callbacks.on_tool_event(event)
        elif isinstance(event, TokenDelta):
            if not announced:
                callbacks.on_phase("streaming")
                announced = True
            callbacks.on_delta(event.text)
    if streaming and not announced:
        callbacks.on_phase("streaming")


def error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        message = data.get("error") or data.get("detail")
        if message:
            return str(message)
    return f"Error {response.status_code}"


class ChatStreamClient:
    """Streams chat turns from the server, one at a time.

    Starting a new turn cancels the one still in flight; the cancelled turn
    ends without ``on_done`` or ``on_error``.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, read=None))
        self._cancel: Optional[asyncio.Event] = None

    def abort(self) -> None:
        if self._cancel is not None:
            self._cancel.set()
            self._cancel = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def stream(self, request: ChatRequest, callbacks: StreamCallbacks) -> None:
        self.abort()
        cancel = asyncio.Event()
        self._cancel = cancel
        has_images = any(message.has_images for message in request.messages)

        http_request = self.client.build_request(
            "POST",
            f"{self.base_url}/api/chat",
            json=request.model_dump(exclude_none=True),
            headers=self._headers(),
        )
        try:
            response = await _until_cancelled(self.client.send(http_request, stream=True), cancel)
        except StreamCancelled:
            return
        except httpx.HTTPError as exc:
            callbacks.on_error(str(exc) or "Connection failed")
            return

        try:
            if response.status_code >= 400:
                await response.aread()
                callbacks.on_error(error_message(response))
                return
            await consume(response.aiter_bytes(), callbacks, cancel=cancel, has_images=has_images)
        finally:
            await response.aclose()
            if self._cancel is cancel:
                self._cancel = None

    async def close(self) -> None:
        self.abort()
        if self._owns_client and not self.client.is_closed:
            await self.client.aclose()
