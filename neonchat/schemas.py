import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


Role = Literal["user", "assistant", "system", "tool"]
ResponseStyle = Literal["concise", "balanced", "detailed"]
StreamPhase = Literal["analyzing", "generating", "streaming"]


class ChatMessage(BaseModel):
    role: Role
    content: Union[str, List[Dict[str, Any]]] = ""
    images: Optional[List[str]] = None

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(str(part.get("text") or "") for part in self.content if isinstance(part, dict))

    @property
    def has_images(self) -> bool:
        return bool(self.images)


class ChatRequest(BaseModel):
    messages: List[ChatMessage]
    mode: Optional[str] = None
    custom_mode_id: Optional[str] = None
    global_memory_prompt: Optional[str] = None
    workspace_id: Optional[str] = None
    enable_tools: Optional[bool] = None

    def latest_user_text(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.text()
        return ""


class ToolCall(BaseModel):
    id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_provider(cls, raw: Dict[str, Any], index: int = 0) -> "ToolCall":
        """Decode one entry of ``choices[0].message.tool_calls``."""
        function = raw.get("function") or {}
        arguments = function.get("arguments")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        return cls(
            id=str(raw.get("id") or f"call_{index}"),
            tool_name=str(function.get("name") or ""),
            arguments=arguments,
        )

    def to_provider(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.tool_name, "arguments": json.dumps(self.arguments)},
        }


class ToolResult(BaseModel):
    tool_call_id: str
    tool_name: str
    output: str
    duration_ms: int = 0


class ToolStartEvent(BaseModel):
    type: Literal["tool_start"] = "tool_start"
    tool: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolEndEvent(BaseModel):
    type: Literal["tool_end"] = "tool_end"
    tool: str
    output: str = ""


class TokenDelta(BaseModel):
    type: Literal["token_delta"] = "token_delta"
    text: str


class StreamDone(BaseModel):
    type: Literal["done"] = "done"


ToolEvent = Union[ToolStartEvent, ToolEndEvent]
StreamEvent = Union[ToolStartEvent, ToolEndEvent, TokenDelta, StreamDone]


class UserSettings(BaseModel):
    user_id: str
    personality_prompt: Optional[str] = None
    default_mode: str = "default"
    temperature_preference: float = 0.7
    response_style: ResponseStyle = "balanced"


class UserSettingsUpdate(BaseModel):
    personality_prompt: Optional[str] = None
    default_mode: Optional[str] = None
    temperature_preference: Optional[float] = None
    response_style: Optional[ResponseStyle] = None


class CustomMode(BaseModel):
    id: str
    user_id: str
    name: str
    instructions: str
    created_at: Optional[str] = None


class CustomModeCreate(BaseModel):
    name: str
    instructions: str


class MemoryItem(BaseModel):
    id: int
    user_id: str
    category: str = "geral"
    content: str
    importance_score: int = 3
    pinned: bool = False
    last_updated: Optional[str] = None
    created_at: Optional[str] = None


class MemoryCreate(BaseModel):
    content: str
    category: str = "geral"
    importance_score: int = 3
    pinned: bool = False


class MemoryUpdate(BaseModel):
    content: Optional[str] = None
    category: Optional[str] = None
    importance_score: Optional[int] = None
    pinned: Optional[bool] = None


class MemoryExtractRequest(BaseModel):
    messages: List[ChatMessage]


class ToolExecuteRequest(BaseModel):
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ConversationCreate(BaseModel):
    title: Optional[str] = None
    workspace_id: Optional[str] = None


class ConversationUpdate(BaseModel):
    title: Optional[str] = None
    workspace_id: Optional[str] = None


class MessageCreate(BaseModel):
    role: Role
    content: str
    images: Optional[List[str]] = None
