import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel

from .content import build_content
from .context import AssembledContext, ContextAssembler
from .errors import ConfigurationError, NeonChatError
from .llm import GatewayClient, first_message
from .schemas import ChatRequest, ToolCall, ToolEndEvent, ToolResult, ToolStartEvent
from .tasks import DetachedTasks
from .tools import ToolExecutor, tools_for_gateway


logger = logging.getLogger("uvicorn.error")


class TurnState(str, Enum):
    PROBING = "probing"
    STREAMING_DIRECT = "streaming_direct"
    TOOLS_REQUESTED = "tools_requested"
    EXECUTING_TOOLS = "executing_tools"
    STREAMING_WITH_RESULTS = "streaming_with_results"
    DONE = "done"
    FAILED = "failed"


def sse_format(event: Union[BaseModel, dict]) -> str:
    payload = event.model_dump() if isinstance(event, BaseModel) else event
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def clip(text: str, max_chars: int) -> str:
    return text if len(text) <= max_chars else text[:max_chars]


@dataclass
class ChatTurn:
    """One turn's outbound stream: tool-lifecycle events, then the provider's bytes verbatim."""

    response: httpx.Response
    tool_events: List[Union[ToolStartEvent, ToolEndEvent]] = field(default_factory=list)
    state: TurnState = TurnState.STREAMING_DIRECT
    history: List[TurnState] = field(default_factory=list)

    def _move(self, state: TurnState) -> None:
        self.state = state
        self.history.append(state)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            for event in self.tool_events:
                yield sse_format(event).encode("utf-8")
            async for chunk in self.response.aiter_bytes():
                yield chunk
            self._move(TurnState.DONE)
        except BaseException:
            self._move(TurnState.FAILED)
            raise
        finally:
            await self.response.aclose()

    async def aclose(self) -> None:
        await self.response.aclose()


class ChatOrchestrator:
    """Turns a client chat request into one merged event stream.

    PROBING -> STREAMING_DIRECT -> DONE when the model asks for no tools (or the
    probe fails, or tools are disabled), otherwise PROBING -> TOOLS_REQUESTED ->
    EXECUTING_TOOLS -> STREAMING_WITH_RESULTS -> DONE. Every failure that can
    reach the client as an HTTP status is raised from :meth:`start_turn`, before
    the first byte is produced.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        assembler: ContextAssembler,
        executor: ToolExecutor,
        http_client: httpx.AsyncClient,
        tasks: DetachedTasks,
        model: str,
        audit_store: Optional[Any] = None,
        tools_default: bool = True,
        tool_event_max_chars: int = 200,
        tool_log_max_chars: int = 1000,
    ):
        self.gateway = gateway
        self.assembler = assembler
        self.executor = executor
        self.http_client = http_client
        self.tasks = tasks
        self.model = model
        self.audit_store = audit_store
        self.tools_default = tools_default
        self.tool_event_max_chars = tool_event_max_chars
        self.tool_log_max_chars = tool_log_max_chars

    async def build_messages(self, request: ChatRequest) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        for message in request.messages:
            if isinstance(message.content, list):
                content: Any = message.content
            else:
                content = await build_content(message.content, message.images, self.http_client)
            messages.append({"role": message.role, "content": content})
        return messages

    async def start_turn(self, request: ChatRequest, user_id: Optional[str] = None) -> ChatTurn:
        if not request.messages:
            raise ValueError("messages must not be empty")
        if not self.gateway.configured:
            logger.error("Gateway API key is not configured")
            raise ConfigurationError()
        tools_enabled = self.tools_default if request.enable_tools is None else request.enable_tools

        context = await self.assembler.assemble(
            user_id=user_id,
            mode=request.mode,
            custom_mode_id=request.custom_mode_id,
            workspace_id=request.workspace_id,
            latest_query=request.latest_user_text(),
            global_memory_prompt=request.global_memory_prompt,
            tools_enabled=tools_enabled,
        )
        history = await self.build_messages(request)
        messages = [{"role": "system", "content": context.system_prompt}, *history]

        states: List[TurnState] = []
        probe: Optional[Dict[str, Any]] = None
        if tools_enabled:
            states.append(TurnState.PROBING)
            probe = await self._probe(messages, context)

        calls = self._tool_calls(probe)
        if not calls:
            states.append(TurnState.STREAMING_DIRECT)
            response = await self.gateway.open_stream(self.model, messages, temperature=context.temperature)
            return ChatTurn(response=response, state=TurnState.STREAMING_DIRECT, history=states)

        states.append(TurnState.TOOLS_REQUESTED)
        logger.info("Tool probe requested %d tool call(s): %s", len(calls), [c.tool_name for c in calls])
        states.append(TurnState.EXECUTING_TOOLS)
        results = await self._execute_tools(calls)
        events: List[Union[ToolStartEvent, ToolEndEvent]] = []
        for call, result in zip(calls, results):
            events.append(ToolStartEvent(tool=call.tool_name, input=call.arguments))
            events.append(ToolEndEvent(tool=call.tool_name, output=clip(result.output, self.tool_event_max_chars)))
            self._log_tool_execution(call, result, user_id, request.workspace_id)

        probe_message = first_message(probe or {})
        follow_up = [
            *messages,
            {
                "role": "assistant",
                "content": probe_message.get("content") or "",
                "tool_calls": [call.to_provider() for call in calls],
            },
            *({"role": "tool", "tool_call_id": r.tool_call_id, "content": r.output} for r in results),
        ]
        states.append(TurnState.STREAMING_WITH_RESULTS)
        response = await self.gateway.open_stream(self.model, follow_up, temperature=context.temperature)
        return ChatTurn(
            response=response,
            tool_events=events,
            state=TurnState.STREAMING_WITH_RESULTS,
            history=states,
        )

    async def _probe(self, messages: List[Dict[str, Any]], context: AssembledContext) -> Optional[Dict[str, Any]]:
        try:
            return await self.gateway.chat_completion(
                self.model,
                messages,
                temperature=context.temperature,
                tools=tools_for_gateway(),
            )
        except NeonChatError as exc:
            logger.warning("Tool probe failed, streaming without tools: %s", exc)
            return None

    def _tool_calls(self, probe: Optional[Dict[str, Any]]) -> List[ToolCall]:
        if not probe:
            return []
        raw_calls = first_message(probe).get("tool_calls") or []
        if not isinstance(raw_calls, list):
            return []
        return [ToolCall.from_provider(raw, index) for index, raw in enumerate(raw_calls) if isinstance(raw, dict)]

    async def _execute_tools(self, calls: List[ToolCall]) -> List[ToolResult]:
        results = await asyncio.gather(*(self.executor.run_call(call) for call in calls))
        unmatched = [call.id for call, result in zip(calls, results) if result.tool_call_id != call.id]
        if len(results) != len(calls) or unmatched:
            raise RuntimeError(f"Tool calls without matching results: {unmatched}")
        return list(results)

    def _log_tool_execution(
        self,
        call: ToolCall,
        result: ToolResult,
        user_id: Optional[str],
        workspace_id: Optional[str],
    ) -> None:
        if self.audit_store is None or not user_id:
            return
        self.tasks.submit(
            self.audit_store.add_tool_execution(
                user_id,
                workspace_id,
                call.tool_name,
                call.arguments,
                clip(result.output, self.tool_log_max_chars),
                result.duration_ms,
            ),
            name=f"tool_log:{call.tool_name}",
        )
