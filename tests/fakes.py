import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from neonchat.errors import GatewayError
from neonchat.schemas import CustomMode, MemoryItem, UserSettings


def delta_line(text: str) -> bytes:
    payload = {"choices": [{"index": 0, "delta": {"content": text}}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


def provider_stream(fragments: List[str]) -> List[bytes]:
    return [delta_line(text) for text in fragments] + [b"data: [DONE]\n\n"]


def tool_call(name: str, arguments: Dict[str, Any], call_id: str = "call_1") -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments)},
    }


def probe_response(tool_calls: Optional[List[Dict[str, Any]]] = None, content: str = "") -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "message": message}]}


async def _iter_chunks(chunks: List[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk


def streamed_response(chunks: List[bytes]) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=_iter_chunks(chunks),
        request=httpx.Request("POST", "http://gateway.test/v1/chat/completions"),
    )


class FakeGatewayClient:
    def __init__(
        self,
        completions: Optional[List[Any]] = None,
        stream_chunks: Optional[List[bytes]] = None,
        stream_error: Optional[Exception] = None,
        configured: bool = True,
    ) -> None:
        self.base_url = "http://gateway.test/v1"
        self._configured = configured
        self.completions = list(completions or [])
        self.stream_chunks = stream_chunks if stream_chunks is not None else provider_stream(["Hello", " there"])
        self.stream_error = stream_error
        self.completion_calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.closed = False
        self.opened: List[httpx.Response] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        self.completion_calls.append(
            {"model": model, "messages": messages, "temperature": temperature, "tools": tools}
        )
        if not self.completions:
            return probe_response()
        result = self.completions.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def open_stream(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
    ) -> httpx.Response:
        self.stream_calls.append({"model": model, "messages": messages, "temperature": temperature})
        if self.stream_error is not None:
            raise self.stream_error
        response = streamed_response(self.stream_chunks)
        self.opened.append(response)
        return response

    async def close(self) -> None:
        self.closed = True


class FakeContextStore:
    def __init__(
        self,
        settings: Optional[UserSettings] = None,
        modes: Optional[List[CustomMode]] = None,
        memories: Optional[List[MemoryItem]] = None,
        fail: Optional[set] = None,
    ) -> None:
        self.settings = settings
        self.modes = {mode.id: mode for mode in modes or []}
        self.memories = memories or []
        self.fail = fail or set()
        self.calls: List[str] = []

    async def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        self.calls.append("settings")
        if "settings" in self.fail:
            raise RuntimeError("settings store down")
        return self.settings

    async def get_custom_mode(self, mode_id: str, user_id: str) -> Optional[CustomMode]:
        self.calls.append("custom_mode")
        mode = self.modes.get(mode_id)
        return mode if mode and mode.user_id == user_id else None

    async def list_memory(self, user_id: str, limit: Optional[int] = None) -> List[MemoryItem]:
        self.calls.append("memory")
        if "memory" in self.fail:
            raise RuntimeError("memory store down")
        return self.memories[:limit] if limit is not None else list(self.memories)


class FakeSemanticClient:
    def __init__(self, results: Optional[List[Dict[str, Any]]] = None, fail: bool = False) -> None:
        self.results = results or []
        self.fail = fail
        self.queries: List[str] = []
        self.url = "http://semantic.test/embed"

    @property
    def enabled(self) -> bool:
        return True

    async def search(self, text: str, user_id: str, workspace_id: str, top_k: int = 5) -> List[Dict[str, Any]]:
        self.queries.append(text)
        if self.fail:
            raise GatewayError("semantic search unavailable")
        return self.results[:top_k]

    async def close(self) -> None:
        return None


async def login(app, user_id: str = "user-1") -> Dict[str, str]:
    token = f"token-{user_id}"
    await app.state.db.add_auth_token(token, user_id)
    return {"Authorization": f"Bearer {token}"}
