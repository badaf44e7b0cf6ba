"""System prompt assembly.

The prompt is a fixed-order stack of layers, each sourced independently:

    base personality
    user personality override
    response-style directive
    mode / custom-mode instructions
    long-term memory digest
    client global-memory prompt
    semantic-recall digest
    tool-awareness notice

Every provider-backed layer is fetched into a :class:`LayerResult`. A failed
lookup never fails the turn: :func:`fold_layers` keeps the successful layers
and logs the failed ones.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, List, Optional, Tuple

from .schemas import MemoryItem, UserSettings


logger = logging.getLogger("uvicorn.error")

DEFAULT_TEMPERATURE = 0.7
MIN_TEMPERATURE = 0.2
MAX_TEMPERATURE = 1.2
SEMANTIC_MIN_QUERY_CHARS = 10

BASE_PERSONALITY = (
    "You are an advanced, high-level assistant: precise, elegant and strategically intelligent.\n"
    "Your tone is sophisticated, professional and confident.\n"
    "When appropriate, you may use light, subtle wit.\n"
    "Explain clearly, show technical mastery and avoid excessive informality.\n"
    "Be objective when needed and detailed when useful.\n"
    "Prioritize accuracy, currency and structured reasoning.\n"
    "Always answer in the language the user writes in.\n"
    "Use Markdown to format your answers when appropriate. When the user sends images, analyze them in detail."
)

BUILTIN_MODES = {
    "default": "",
    "study": (
        "You are in STUDY mode. Explain concepts in a pedagogical, structured way. Use practical examples and "
        "analogies and break complex information into digestible parts. Suggest further resources and exercises "
        "when relevant."
    ),
    "agent": (
        "You are in AGENT mode. Act proactively and autonomously. Anticipate needs, suggest next steps and provide "
        "complete, actionable solutions. Be direct and results-oriented."
    ),
    "plan": (
        "You are in PLANNING mode. Help build structured plans, roadmaps and strategies. Use lists, timelines, "
        "milestones and prioritization. Consider risks, dependencies and resources."
    ),
    "ask": (
        "You are in QUESTIONS mode. Before answering, ask clarifying questions to better understand the context. "
        "Explore different angles of the problem. Use the Socratic method when appropriate."
    ),
}

STYLE_DIRECTIVES = {
    "concise": "Response style: concise. Keep answers short and to the point; skip preambles and filler.",
    "balanced": "",
    "detailed": (
        "Response style: detailed. Give thorough answers with explanations, examples and relevant context."
    ),
}

TOOL_NOTICE = (
    "Available tools:\n"
    "- web_search: look up current information. Call it for recent events, specific data, or facts that may "
    "have changed.\n"
    "- math: evaluate arithmetic expressions. Call it for any non-trivial calculation instead of computing "
    "mentally.\n"
    "Only call a tool when it adds information you do not already have; otherwise answer directly."
)


def clamp_temperature(value: Any) -> float:
    try:
        temp = float(value)
    except (TypeError, ValueError):
        return DEFAULT_TEMPERATURE
    if temp != temp:
        return DEFAULT_TEMPERATURE
    return max(MIN_TEMPERATURE, min(MAX_TEMPERATURE, temp))


@dataclass
class LayerResult:
    """Outcome of one context provider: a text layer, nothing, or an error."""

    name: str
    text: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fold_layers(results: List[LayerResult]) -> List[Tuple[str, str]]:
    layers: List[Tuple[str, str]] = []
    for result in results:
        if not result.ok:
            logger.warning("Context layer %s unavailable: %s", result.name, result.error)
            continue
        text = (result.text or "").strip()
        if text:
            layers.append((result.name, text))
    return layers


async def _capture(name: str, fetch: Awaitable[Any]) -> Tuple[str, Any, Optional[BaseException]]:
    try:
        return name, await fetch, None
    except Exception as exc:
        return name, None, exc


async def _nothing() -> None:
    return None


def format_memory_digest(items: List[MemoryItem]) -> str:
    if not items:
        return ""
    lines = ["What you know about the user (use it subtly, never mention that you remember it):"]
    for item in items:
        prefix = "[pinned] " if item.pinned else ""
        lines.append(f"- {prefix}[{item.category}] {item.content.strip()}")
    return "\n".join(lines)


def format_semantic_digest(results: List[dict]) -> str:
    if not results:
        return ""
    lines = ["Relevant context from past conversations:"]
    for item in results:
        content = str(item.get("content") or "").strip()
        if content:
            lines.append(f"- {content}")
    return "\n".join(lines) if len(lines) > 1 else ""


@dataclass
class AssembledContext:
    system_prompt: str
    temperature: float
    layers: List[str] = field(default_factory=list)


class ContextAssembler:
    """Builds the layered system prompt and the turn temperature.

    ``store`` must provide ``get_user_settings(user_id)``,
    ``get_custom_mode(mode_id, user_id)`` and ``list_memory(user_id, limit)``;
    :class:`neonchat.db.Database` does. ``semantic`` must provide
    ``search(text, user_id, workspace_id, top_k)``.
    """

    def __init__(self, store: Any, semantic: Optional[Any] = None, memory_limit: int = 10, semantic_top_k: int = 5):
        self.store = store
        self.semantic = semantic
        self.memory_limit = memory_limit
        self.semantic_top_k = semantic_top_k

    async def assemble(
        self,
        user_id: Optional[str] = None,
        mode: Optional[str] = None,
        custom_mode_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        latest_query: str = "",
        global_memory_prompt: Optional[str] = None,
        tools_enabled: bool = True,
    ) -> AssembledContext:
        builtin = mode in BUILTIN_MODES if mode else False
        wants_custom = bool(user_id and custom_mode_id and not builtin)
        wants_semantic = bool(
            user_id
            and workspace_id
            and self.semantic is not None
            and len(latest_query.strip()) >= SEMANTIC_MIN_QUERY_CHARS
        )

        fetched = await asyncio.gather(
            _capture("settings", self.store.get_user_settings(user_id) if user_id else _nothing()),
            _capture("custom_mode", self.store.get_custom_mode(custom_mode_id, user_id) if wants_custom else _nothing()),
            _capture("memory", self.store.list_memory(user_id, limit=self.memory_limit) if user_id else _nothing()),
            _capture(
                "semantic",
                self.semantic.search(latest_query, user_id, workspace_id, top_k=self.semantic_top_k)
                if wants_semantic
                else _nothing(),
            ),
        )
        values = {name: (value, error) for name, value, error in fetched}

        temperature = DEFAULT_TEMPERATURE
        results: List[LayerResult] = [LayerResult("base", BASE_PERSONALITY)]

        settings, settings_error = values["settings"]
        if settings_error is not None:
            results.append(LayerResult("settings", error=settings_error))
        elif isinstance(settings, UserSettings):
            temperature = clamp_temperature(settings.temperature_preference)
            results.append(LayerResult("personality", settings.personality_prompt or ""))
            results.append(LayerResult("style", STYLE_DIRECTIVES.get(settings.response_style, "")))

        if builtin:
            results.append(LayerResult("mode", BUILTIN_MODES[mode]))
        else:
            custom, custom_error = values["custom_mode"]
            if custom_error is not None:
                results.append(LayerResult("custom_mode", error=custom_error))
            elif custom is not None:
                results.append(
                    LayerResult("custom_mode", f'Custom mode "{custom.name}":\n{custom.instructions}')
                )

        memory, memory_error = values["memory"]
        if memory_error is not None:
            results.append(LayerResult("memory", error=memory_error))
        else:
            results.append(LayerResult("memory", format_memory_digest(memory or [])))

        results.append(LayerResult("global_memory", global_memory_prompt or ""))

        semantic, semantic_error = values["semantic"]
        if semantic_error is not None:
            results.append(LayerResult("semantic", error=semantic_error))
        else:
            results.append(LayerResult("semantic", format_semantic_digest(semantic or [])))

        if tools_enabled:
            results.append(LayerResult("tools", TOOL_NOTICE))

        layers = fold_layers(results)
        return AssembledContext(
            system_prompt="\n\n".join(text for _, text in layers),
            temperature=temperature,
            layers=[name for name, _ in layers],
        )
