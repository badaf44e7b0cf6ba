import json
import logging
import re
from typing import Any, Dict, List, Optional

from .errors import MemoryCapacityError, NeonChatError
from .llm import GatewayClient, first_message
from .schemas import ChatMessage, MemoryItem


logger = logging.getLogger("uvicorn.error")

MEMORY_CATEGORIES = (
    "projeto",
    "stack_tecnologica",
    "objetivo",
    "estilo_aprendizado",
    "preferencia_resposta",
    "perfil_tecnico",
    "geral",
)
RECENT_MESSAGES = 6
MAX_EXTRACTED = 3
DEDUP_PREFIX_CHARS = 30

EXTRACTION_PROMPT = (
    "You extract strategic long-term memory. Read the conversation below and extract ONLY persistent facts "
    "about the user that are worth remembering in future conversations.\n\n"
    f"Valid categories: {', '.join(MEMORY_CATEGORIES)}\n\n"
    "Rules:\n"
    "- Extract ONLY factual, useful information about the USER (not about the assistant)\n"
    "- Ignore greetings, generic questions and ephemeral content\n"
    "- Each memory must be one concise, self-contained sentence\n"
    "- Give each memory an importance_score from 1 to 5 (5 = very important)\n"
    "- If there is nothing relevant, return an empty array\n"
    f"- At most {MAX_EXTRACTED} memories per extraction\n\n"
    "Answer ONLY with valid JSON in the form:\n"
    '[{"category": "...", "content": "...", "importance_score": N}]'
)

_FENCE_RE = re.compile(r"```(?:json)?\s*")


def conversation_text(messages: List[ChatMessage]) -> str:
    lines = []
    for message in messages[-RECENT_MESSAGES:]:
        speaker = "User" if message.role == "user" else "Assistant"
        lines.append(f"{speaker}: {message.text()}")
    return "\n\n".join(lines)


def parse_extraction(raw: str) -> List[Dict[str, Any]]:
    """Parse the model's JSON array, tolerating markdown fences. Bad input gives []."""
    cleaned = _FENCE_RE.sub("", raw or "").strip()
    if not cleaned:
        return []
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.warning("Failed to parse memory extraction: %s", cleaned[:200])
        return []
    if not isinstance(data, list):
        return []
    items: List[Dict[str, Any]] = []
    for entry in data[:MAX_EXTRACTED]:
        if not isinstance(entry, dict):
            continue
        content = str(entry.get("content") or "").strip()
        category = str(entry.get("category") or "").strip()
        if not content or not category:
            continue
        items.append(
            {
                "category": category,
                "content": content,
                "importance_score": clamp_importance(entry.get("importance_score")),
            }
        )
    return items


def clamp_importance(value: Any) -> int:
    try:
        score = int(value)
    except (TypeError, ValueError):
        return 3
    return max(1, min(5, score))


def find_duplicate(existing: List[MemoryItem], category: str, content: str) -> Optional[MemoryItem]:
    probe = content.lower()[:DEDUP_PREFIX_CHARS]
    for item in existing:
        if item.category == category and probe in item.content.lower():
            return item
    return None


class MemoryExtractor:
    """Distills durable facts about a user from recent turns into long-term memory."""

    def __init__(self, gateway: GatewayClient, store: Any, model: str, capacity: int = 100):
        self.gateway = gateway
        self.store = store
        self.model = model
        self.capacity = capacity

    async def extract(self, user_id: str, messages: List[ChatMessage]) -> List[MemoryItem]:
        if not messages:
            return []
        try:
            data = await self.gateway.chat_completion(
                self.model,
                [
                    {"role": "system", "content": EXTRACTION_PROMPT},
                    {"role": "user", "content": conversation_text(messages)},
                ],
                temperature=0.2,
            )
        except NeonChatError as exc:
            logger.warning("Memory extraction request failed: %s", exc)
            return []
        extracted = parse_extraction(str(first_message(data).get("content") or ""))
        if not extracted:
            return []

        existing = await self.store.list_memory(user_id)
        saved: List[MemoryItem] = []
        for entry in extracted:
            duplicate = find_duplicate(existing + saved, entry["category"], entry["content"])
            if duplicate is not None:
                if entry["importance_score"] > duplicate.importance_score:
                    await self.store.update_memory_item(
                        duplicate.id, user_id, importance_score=entry["importance_score"]
                    )
                continue
            try:
                item = await self.store.add_memory_item(
                    user_id,
                    entry["content"],
                    category=entry["category"],
                    importance_score=entry["importance_score"],
                    capacity=self.capacity,
                )
            except MemoryCapacityError:
                logger.info("Memory full of pinned items for user %s; skipping extraction", user_id)
                break
            saved.append(item)
        return saved
