import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .errors import MemoryCapacityError
from .schemas import CustomMode, MemoryItem, UserSettings


DEFAULT_TITLE = "New chat"
TITLE_MAX_CHARS = 80


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def title_from_text(text: str) -> str:
    text = " ".join((text or "").split())
    if len(text) <= TITLE_MAX_CHARS:
        return text
    return text[: TITLE_MAX_CHARS - 3].rstrip() + "..."


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


def _memory_from_row(row: aiosqlite.Row) -> MemoryItem:
    return MemoryItem(
        id=row["id"],
        user_id=row["user_id"],
        category=row["category"],
        content=row["content"],
        importance_score=row["importance_score"],
        pinned=bool(row["pinned_bool"]),
        last_updated=row["last_updated"],
        created_at=row["created_at"],
    )


_MEMORY_COLUMNS = "id, user_id, category, content, importance_score, pinned_bool, last_updated, created_at"


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS auth_tokens(
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    workspace_id TEXT,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT,
                    role TEXT,
                    content TEXT,
                    images_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS user_settings(
                    user_id TEXT PRIMARY KEY,
                    personality_prompt TEXT,
                    default_mode TEXT,
                    temperature_preference REAL,
                    response_style TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS custom_modes(
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT,
                    instructions TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS user_memory(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    category TEXT,
                    content TEXT,
                    importance_score INTEGER,
                    pinned_bool INTEGER DEFAULT 0,
                    created_at TEXT,
                    last_updated TEXT
                );
                CREATE TABLE IF NOT EXISTS tool_executions(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    workspace_id TEXT,
                    tool_name TEXT,
                    input_json TEXT,
                    output TEXT,
                    duration_ms INTEGER,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
                CREATE INDEX IF NOT EXISTS idx_memory_user ON user_memory(user_id);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Auth

    async def add_auth_token(self, token: str, user_id: str) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO auth_tokens(token, user_id, created_at) VALUES (?,?,?)",
            (token, user_id, utc_now()),
        )

    async def get_user_for_token(self, token: str) -> Optional[str]:
        row = await self.fetchone("SELECT user_id FROM auth_tokens WHERE token=?", (token,))
        return row["user_id"] if row else None

    # User settings

    async def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        row = await self.fetchone(
            "SELECT user_id, personality_prompt, default_mode, temperature_preference, response_style "
            "FROM user_settings WHERE user_id=?",
            (user_id,),
        )
        if not row:
            return None
        return UserSettings(
            user_id=row["user_id"],
            personality_prompt=row["personality_prompt"],
            default_mode=row["default_mode"] or "default",
            temperature_preference=row["temperature_preference"] if row["temperature_preference"] is not None else 0.7,
            response_style=row["response_style"] or "balanced",
        )

    async def ensure_user_settings(self, user_id: str) -> UserSettings:
        existing = await self.get_user_settings(user_id)
        if existing:
            return existing
        defaults = UserSettings(user_id=user_id)
        await self.save_user_settings(defaults)
        return defaults

    async def save_user_settings(self, settings: UserSettings) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO user_settings(user_id, personality_prompt, default_mode, temperature_preference, "
            "response_style, updated_at) VALUES (?,?,?,?,?,?)",
            (
                settings.user_id,
                settings.personality_prompt,
                settings.default_mode,
                settings.temperature_preference,
                settings.response_style,
                utc_now(),
            ),
        )

    # Custom modes

    async def add_custom_mode(self, user_id: str, name: str, instructions: str) -> CustomMode:
        mode = CustomMode(id=uuid.uuid4().hex, user_id=user_id, name=name, instructions=instructions, created_at=utc_now())
        await self.execute(
            "INSERT INTO custom_modes(id, user_id, name, instructions, created_at) VALUES (?,?,?,?,?)",
            (mode.id, mode.user_id, mode.name, mode.instructions, mode.created_at),
        )
        return mode

    async def get_custom_mode(self, mode_id: str, user_id: str) -> Optional[CustomMode]:
        row = await self.fetchone(
            "SELECT id, user_id, name, instructions, created_at FROM custom_modes WHERE id=? AND user_id=?",
            (mode_id, user_id),
        )
        return CustomMode(**dict(row)) if row else None

    async def list_custom_modes(self, user_id: str) -> List[CustomMode]:
        rows = await self.fetchall(
            "SELECT id, user_id, name, instructions, created_at FROM custom_modes WHERE user_id=? ORDER BY created_at ASC",
            (user_id,),
        )
        return [CustomMode(**dict(r)) for r in rows]

    async def delete_custom_mode(self, mode_id: str, user_id: str) -> None:
        await self.execute("DELETE FROM custom_modes WHERE id=? AND user_id=?", (mode_id, user_id))

    # Long-term memory

    async def list_memory(self, user_id: str, limit: Optional[int] = None) -> List[MemoryItem]:
        query = (
            f"SELECT {_MEMORY_COLUMNS} FROM user_memory WHERE user_id=? "
            "ORDER BY pinned_bool DESC, importance_score DESC, last_updated DESC"
        )
        params: Tuple[Any, ...] = (user_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (user_id, limit)
        rows = await self.fetchall(query, params)
        return [_memory_from_row(r) for r in rows]

    async def get_memory_item(self, item_id: int, user_id: str) -> Optional[MemoryItem]:
        row = await self.fetchone(
            f"SELECT {_MEMORY_COLUMNS} FROM user_memory WHERE id=? AND user_id=?",
            (item_id, user_id),
        )
        return _memory_from_row(row) if row else None

    async def add_memory_item(
        self,
        user_id: str,
        content: str,
        category: str = "geral",
        importance_score: int = 3,
        pinned: bool = False,
        capacity: int = 100,
    ) -> MemoryItem:
        """Insert a memory, evicting one record first when the user is at capacity.

        The count, the eviction and the insert run inside one write transaction.
        The evicted record is the non-pinned one with the lowest importance, then
        the oldest ``last_updated``. When every stored record is pinned the insert
        is rejected with :class:`MemoryCapacityError`.
        """
        now = utc_now()
        async with aiosqlite.connect(self.path, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute("SELECT COUNT(*) AS cnt FROM user_memory WHERE user_id=?", (user_id,))
                count_row = await cursor.fetchone()
                await cursor.close()
                if count_row["cnt"] >= capacity:
                    cursor = await db.execute(
                        "SELECT id FROM user_memory WHERE user_id=? AND pinned_bool=0 "
                        "ORDER BY importance_score ASC, last_updated ASC, id ASC LIMIT 1",
                        (user_id,),
                    )
                    victim = await cursor.fetchone()
                    await cursor.close()
                    if not victim:
                        raise MemoryCapacityError()
                    await db.execute("DELETE FROM user_memory WHERE id=?", (victim["id"],))
                cursor = await db.execute(
                    "INSERT INTO user_memory(user_id, category, content, importance_score, pinned_bool, created_at, "
                    "last_updated) VALUES (?,?,?,?,?,?,?)",
                    (user_id, category, content, importance_score, 1 if pinned else 0, now, now),
                )
                item_id = cursor.lastrowid
                await cursor.close()
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        return MemoryItem(
            id=item_id,
            user_id=user_id,
            category=category,
            content=content,
            importance_score=importance_score,
            pinned=pinned,
            last_updated=now,
            created_at=now,
        )

    async def update_memory_item(
        self,
        item_id: int,
        user_id: str,
        content: Optional[str] = None,
        category: Optional[str] = None,
        importance_score: Optional[int] = None,
        pinned: Optional[bool] = None,
    ) -> Optional[MemoryItem]:
        current = await self.get_memory_item(item_id, user_id)
        if not current:
            return None
        await self.execute(
            "UPDATE user_memory SET content=?, category=?, importance_score=?, pinned_bool=?, last_updated=? "
            "WHERE id=? AND user_id=?",
            (
                content if content is not None else current.content,
                category if category is not None else current.category,
                importance_score if importance_score is not None else current.importance_score,
                1 if (pinned if pinned is not None else current.pinned) else 0,
                utc_now(),
                item_id,
                user_id,
            ),
        )
        return await self.get_memory_item(item_id, user_id)

    async def delete_memory_item(self, item_id: int, user_id: str) -> None:
        await self.execute("DELETE FROM user_memory WHERE id=? AND user_id=?", (item_id, user_id))

    async def clear_memory(self, user_id: str) -> None:
        await self.execute("DELETE FROM user_memory WHERE user_id=?", (user_id,))

    # Tool audit log

    async def add_tool_execution(
        self,
        user_id: Optional[str],
        workspace_id: Optional[str],
        tool_name: str,
        tool_input: Dict[str, Any],
        output: str,
        duration_ms: int,
    ) -> None:
        await self.execute(
            "INSERT INTO tool_executions(user_id, workspace_id, tool_name, input_json, output, duration_ms, created_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (user_id, workspace_id, tool_name, json.dumps(tool_input, ensure_ascii=False), output, duration_ms, utc_now()),
        )

    async def list_tool_executions(self, user_id: str, limit: int = 50) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, workspace_id, tool_name, input_json, output, duration_ms, created_at FROM tool_executions "
            "WHERE user_id=? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        return [
            {
                "id": r["id"],
                "workspace_id": r["workspace_id"],
                "tool_name": r["tool_name"],
                "input": _json_loads(r["input_json"], {}),
                "output": r["output"],
                "duration_ms": r["duration_ms"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # Conversations

    async def create_conversation(
        self,
        user_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> dict:
        convo_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO conversations(id, user_id, workspace_id, title, created_at, updated_at) VALUES (?,?,?,?,?,?)",
            (convo_id, user_id, workspace_id, title or "", created_at, created_at),
        )
        return {
            "id": convo_id,
            "user_id": user_id,
            "workspace_id": workspace_id,
            "title": title or "",
            "created_at": created_at,
            "updated_at": created_at,
        }

    async def get_conversation(self, conversation_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, user_id, workspace_id, title, created_at, updated_at FROM conversations WHERE id=?",
            (conversation_id,),
        )
        return dict(row) if row else None

    async def list_conversations(
        self,
        user_id: Optional[str],
        workspace_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[dict]:
        query = "SELECT id, user_id, workspace_id, title, created_at, updated_at FROM conversations WHERE user_id IS ?"
        params: List[Any] = [user_id]
        if workspace_id:
            query += " AND workspace_id=?"
            params.append(workspace_id)
        query += " ORDER BY updated_at DESC, created_at DESC LIMIT ?"
        params.append(limit)
        rows = await self.fetchall(query, tuple(params))
        return [dict(r) for r in rows]

    async def update_conversation(
        self,
        conversation_id: str,
        title: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> Optional[dict]:
        current = await self.get_conversation(conversation_id)
        if not current:
            return None
        await self.execute(
            "UPDATE conversations SET title=?, workspace_id=?, updated_at=? WHERE id=?",
            (
                title if title is not None else current["title"],
                workspace_id if workspace_id is not None else current["workspace_id"],
                utc_now(),
                conversation_id,
            ),
        )
        return await self.get_conversation(conversation_id)

    async def ensure_conversation_title(self, conversation_id: str, text: str) -> None:
        row = await self.fetchone("SELECT title FROM conversations WHERE id=?", (conversation_id,))
        if not row:
            return
        current = (row["title"] or "").strip()
        if current and current.lower() != DEFAULT_TITLE.lower():
            return
        title = title_from_text(text)
        if not title:
            return
        await self.execute(
            "UPDATE conversations SET title=?, updated_at=? WHERE id=?",
            (title, utc_now(), conversation_id),
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
        await self.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        images: Optional[List[str]] = None,
    ) -> dict:
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO messages(conversation_id, role, content, images_json, created_at) VALUES (?,?,?,?,?)",
                (conversation_id, role, content, json.dumps(images) if images else None, created_at),
            )
            await db.execute("UPDATE conversations SET updated_at=? WHERE id=?", (created_at, conversation_id))
            await db.commit()
            message_id = cursor.lastrowid
        if role == "user":
            await self.ensure_conversation_title(conversation_id, content)
        return {
            "id": message_id,
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "images": images or [],
            "created_at": created_at,
        }

    async def list_messages(self, conversation_id: str, limit: int = 200) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, conversation_id, role, content, images_json, created_at "
            "FROM messages WHERE conversation_id=? ORDER BY id ASC LIMIT ?",
            (conversation_id, limit),
        )
        return [
            {
                "id": r["id"],
                "conversation_id": r["conversation_id"],
                "role": r["role"],
                "content": r["content"],
                "images": _json_loads(r["images_json"], []),
                "created_at": r["created_at"],
            }
            for r in rows
        ]
