import json
from pathlib import Path

import pytest
import respx
from httpx import Response

from neonchat.db import Database
from neonchat.errors import RateLimitError
from neonchat.llm import GatewayClient
from neonchat.memory import (
    EXTRACTION_PROMPT,
    MemoryExtractor,
    clamp_importance,
    conversation_text,
    find_duplicate,
    parse_extraction,
)
from neonchat.schemas import ChatMessage, MemoryItem
from tests.fakes import FakeGatewayClient, probe_response


def _messages(count: int = 2):
    messages = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        messages.append(ChatMessage(role=role, content=f"message {i}"))
    return messages


def _extraction(entries) -> dict:
    return probe_response(content=json.dumps(entries))


async def _db(tmp_path: Path) -> Database:
    db = Database(str(tmp_path / "memory.db"))
    await db.init()
    return db


def test_parse_extraction_strips_fences_and_caps_entries():
    raw = "```json\n" + json.dumps(
        [
            {"category": "projeto", "content": "Builds NeonChat", "importance_score": 9},
            {"category": "objetivo", "content": "Ship v1", "importance_score": 0},
            {"category": "geral", "content": "", "importance_score": 3},
            {"category": "geral", "content": "Lives in Recife"},
            {"category": "geral", "content": "Fourth valid entry"},
        ]
    ) + "\n```"
    items = parse_extraction(raw)
    assert [item["content"] for item in items] == ["Builds NeonChat", "Ship v1", "Lives in Recife"]
    assert [item["importance_score"] for item in items] == [5, 1, 3]


@pytest.mark.parametrize("raw", ["", "not json", '{"category": "geral"}', "[1, 2]"])
def test_parse_extraction_bad_input_gives_empty(raw):
    assert parse_extraction(raw) == []


def test_clamp_importance():
    assert clamp_importance("4") == 4
    assert clamp_importance(None) == 3
    assert clamp_importance(12) == 5


def test_conversation_text_uses_recent_messages():
    text = conversation_text(_messages(8))
    assert "message 0" not in text
    assert text.startswith("User: message 2")
    assert text.endswith("Assistant: message 7")


def test_find_duplicate_matches_category_and_prefix():
    existing = [MemoryItem(id=1, user_id="u1", category="stack_tecnologica", content="Uses FastAPI with SQLite")]
    assert find_duplicate(existing, "stack_tecnologica", "uses fastapi") is not None
    assert find_duplicate(existing, "projeto", "uses fastapi") is None


@pytest.mark.asyncio
async def test_extract_saves_new_memories(tmp_path: Path):
    db = await _db(tmp_path)
    gateway = FakeGatewayClient(
        completions=[_extraction([{"category": "projeto", "content": "Builds a chat app", "importance_score": 4}])]
    )
    extractor = MemoryExtractor(gateway, db, "test-memory")
    saved = await extractor.extract("u1", _messages())

    assert [item.content for item in saved] == ["Builds a chat app"]
    assert (await db.list_memory("u1"))[0].importance_score == 4
    call = gateway.completion_calls[0]
    assert call["model"] == "test-memory"
    assert call["temperature"] == 0.2
    assert call["messages"][0]["content"] == EXTRACTION_PROMPT


@pytest.mark.asyncio
async def test_duplicate_raises_importance_instead_of_inserting(tmp_path: Path):
    db = await _db(tmp_path)
    await db.add_memory_item("u1", "Prefers answers in Portuguese", category="preferencia_resposta", importance_score=2)
    gateway = FakeGatewayClient(
        completions=[
            _extraction(
                [{"category": "preferencia_resposta", "content": "Prefers answers in Portuguese", "importance_score": 5}]
            )
        ]
    )
    saved = await MemoryExtractor(gateway, db, "test-memory").extract("u1", _messages())

    assert saved == []
    items = await db.list_memory("u1")
    assert len(items) == 1
    assert items[0].importance_score == 5


@pytest.mark.asyncio
async def test_gateway_failure_returns_nothing(tmp_path: Path):
    db = await _db(tmp_path)
    gateway = FakeGatewayClient(completions=[RateLimitError()])
    assert await MemoryExtractor(gateway, db, "test-memory").extract("u1", _messages()) == []
    assert await db.list_memory("u1") == []


@pytest.mark.asyncio
async def test_pinned_full_memory_stops_extraction(tmp_path: Path):
    db = await _db(tmp_path)
    await db.add_memory_item("u1", "Pinned fact", pinned=True, capacity=1)
    gateway = FakeGatewayClient(
        completions=[_extraction([{"category": "objetivo", "content": "Learn Rust", "importance_score": 3}])]
    )
    saved = await MemoryExtractor(gateway, db, "test-memory", capacity=1).extract("u1", _messages())
    assert saved == []
    assert [item.content for item in await db.list_memory("u1")] == ["Pinned fact"]


@pytest.mark.asyncio
async def test_no_messages_skips_gateway(tmp_path: Path):
    db = await _db(tmp_path)
    gateway = FakeGatewayClient()
    assert await MemoryExtractor(gateway, db, "test-memory").extract("u1", []) == []
    assert gateway.completion_calls == []


@pytest.mark.asyncio
async def test_non_json_gateway_body_returns_nothing(tmp_path: Path):
    db = await _db(tmp_path)
    gateway = GatewayClient("http://gateway.test/v1", "test-key")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://gateway.test/v1/chat/completions").mock(
                return_value=Response(200, text="<html>bad gateway page</html>")
            )
            saved = await MemoryExtractor(gateway, db, "test-memory").extract("u1", _messages())
    finally:
        await gateway.close()
    assert saved == []
    assert await db.list_memory("u1") == []
