import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .config import AppSettings, load_settings
from .context import BUILTIN_MODES, ContextAssembler, clamp_temperature
from .db import Database
from .errors import ConfigurationError, NeonChatError
from .llm import GatewayClient
from .memory import MemoryExtractor
from .orchestrator import ChatOrchestrator
from .schemas import (
    ChatRequest,
    ConversationCreate,
    ConversationUpdate,
    CustomModeCreate,
    MemoryCreate,
    MemoryExtractRequest,
    MemoryUpdate,
    MessageCreate,
    ToolExecuteRequest,
    UserSettingsUpdate,
)
from .semantic import SemanticRecallClient
from .tasks import DetachedTasks
from .tools import ToolExecutor


logger = logging.getLogger("uvicorn.error")

router = APIRouter()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_gateway(request: Request) -> GatewayClient:
    return request.app.state.gateway


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def get_executor(request: Request) -> ToolExecutor:
    return request.app.state.executor


def get_memory_extractor(request: Request) -> MemoryExtractor:
    return request.app.state.memory_extractor


def get_tasks(request: Request) -> DetachedTasks:
    return request.app.state.tasks


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(request: Request, db: Database = Depends(get_db)) -> Optional[str]:
    token = _bearer_token(request)
    if not token:
        return None
    return await db.get_user_for_token(token)


async def require_user(user_id: Optional[str] = Depends(get_current_user)) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


async def neonchat_error_handler(request: Request, exc: NeonChatError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@router.get("/health")
async def health():
    return {"ok": True}


@router.post("/api/chat")
async def chat(
    payload: ChatRequest,
    user_id: Optional[str] = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    try:
        turn = await orchestrator.start_turn(payload, user_id=user_id)
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    # The body generator may never start if the client leaves early.
    cleanup = BackgroundTasks()
    cleanup.add_task(turn.aclose)
    return StreamingResponse(
        turn.iter_bytes(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
        background=cleanup,
    )


@router.post("/api/tools/execute")
async def execute_tool(
    payload: ToolExecuteRequest,
    user_id: Optional[str] = Depends(get_current_user),
    gateway: GatewayClient = Depends(get_gateway),
    executor: ToolExecutor = Depends(get_executor),
    db: Database = Depends(get_db),
    tasks: DetachedTasks = Depends(get_tasks),
    settings: AppSettings = Depends(get_settings),
):
    if not gateway.configured:
        raise ConfigurationError()
    outcome = await executor.execute(payload.tool_name, payload.input)
    if user_id:
        tasks.submit(
            db.add_tool_execution(
                user_id,
                None,
                payload.tool_name,
                payload.input,
                outcome.output[: settings.tool_log_max_chars],
                outcome.duration_ms,
            ),
            name=f"tool_log:{payload.tool_name}",
        )
    return {"result": outcome.output, "duration_ms": outcome.duration_ms}


@router.get("/api/settings")
async def get_user_settings(user_id: str = Depends(require_user), db: Database = Depends(get_db)):
    settings = await db.ensure_user_settings(user_id)
    return {"settings": settings.model_dump()}


@router.put("/api/settings")
async def update_user_settings(
    payload: UserSettingsUpdate,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
):
    current = await db.ensure_user_settings(user_id)
    # personality_prompt may be cleared with null; other fields keep their value.
    changes = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key == "personality_prompt"
    }
    if "temperature_preference" in changes:
        changes["temperature_preference"] = clamp_temperature(changes["temperature_preference"])
    updated = current.model_copy(update=changes)
    await db.save_user_settings(updated)
    return {"settings": updated.model_dump()}


@router.get("/api/modes")
async def list_modes(user_id: Optional[str] = Depends(get_current_user), db: Database = Depends(get_db)):
    custom = await db.list_custom_modes(user_id) if user_id else []
    return {"builtin": list(BUILTIN_MODES), "custom": [m.model_dump() for m in custom]}


@router.post("/api/modes")
async def create_mode(
    payload: CustomModeCreate,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
):
    name = payload.name.strip()
    instructions = payload.instructions.strip()
    if not name or not instructions:
        raise HTTPException(status_code=400, detail="Name and instructions are required.")
    mode = await db.add_custom_mode(user_id, name, instructions)
    return {"mode": mode.model_dump()}


@router.delete("/api/modes/{mode_id}")
async def delete_mode(mode_id: str, user_id: str = Depends(require_user), db: Database = Depends(get_db)):
    await db.delete_custom_mode(mode_id, user_id)
    return {"ok": True}


@router.get("/api/memory")
async def list_memory(user_id: str = Depends(require_user), db: Database = Depends(get_db)):
    items = await db.list_memory(user_id)
    return {"items": [item.model_dump() for item in items]}


@router.post("/api/memory")
async def create_memory(
    payload: MemoryCreate,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
    settings: AppSettings = Depends(get_settings),
):
    content = payload.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Content is required.")
    item = await db.add_memory_item(
        user_id,
        content,
        category=payload.category,
        importance_score=max(1, min(5, payload.importance_score)),
        pinned=payload.pinned,
        capacity=settings.memory_capacity,
    )
    return {"item": item.model_dump()}


@router.post("/api/memory/extract")
async def extract_memory(
    payload: MemoryExtractRequest,
    user_id: Optional[str] = Depends(get_current_user),
    extractor: MemoryExtractor = Depends(get_memory_extractor),
):
    if not user_id:
        return {"memories": []}
    saved = await extractor.extract(user_id, payload.messages)
    return {"memories": [item.model_dump() for item in saved]}


@router.patch("/api/memory/{item_id}")
async def update_memory(
    item_id: int,
    payload: MemoryUpdate,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
):
    importance = payload.importance_score
    item = await db.update_memory_item(
        item_id,
        user_id,
        content=payload.content,
        category=payload.category,
        importance_score=max(1, min(5, importance)) if importance is not None else None,
        pinned=payload.pinned,
    )
    if not item:
        raise HTTPException(status_code=404, detail="Memory item not found")
    return {"item": item.model_dump()}


@router.delete("/api/memory/{item_id}")
async def delete_memory(item_id: int, user_id: str = Depends(require_user), db: Database = Depends(get_db)):
    await db.delete_memory_item(item_id, user_id)
    return {"ok": True}


@router.delete("/api/memory")
async def clear_memory(user_id: str = Depends(require_user), db: Database = Depends(get_db)):
    await db.clear_memory(user_id)
    return {"ok": True}


async def _owned_conversation(conversation_id: str, user_id: str, db: Database) -> dict:
    convo = await db.get_conversation(conversation_id)
    if not convo or convo.get("user_id") != user_id:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return convo


@router.get("/api/conversations")
async def list_conversations(
    workspace_id: Optional[str] = None,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
):
    conversations = await db.list_conversations(user_id, workspace_id=workspace_id)
    return {"conversations": conversations}


@router.post("/api/conversations")
async def create_conversation(
    payload: Optional[ConversationCreate] = None,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
):
    payload = payload or ConversationCreate()
    convo = await db.create_conversation(user_id=user_id, workspace_id=payload.workspace_id, title=payload.title)
    return {"conversation": convo}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, user_id: str = Depends(require_user), db: Database = Depends(get_db)):
    convo = await _owned_conversation(conversation_id, user_id, db)
    return {"conversation": convo}


@router.patch("/api/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    payload: ConversationUpdate,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
):
    await _owned_conversation(conversation_id, user_id, db)
    convo = await db.update_conversation(conversation_id, title=payload.title, workspace_id=payload.workspace_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": convo}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
):
    await _owned_conversation(conversation_id, user_id, db)
    await db.delete_conversation(conversation_id)
    return {"ok": True}


@router.get("/api/conversations/{conversation_id}/messages")
async def list_conversation_messages(
    conversation_id: str,
    limit: int = 200,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
):
    await _owned_conversation(conversation_id, user_id, db)
    messages = await db.list_messages(conversation_id, limit=limit)
    return {"messages": messages}


@router.post("/api/conversations/{conversation_id}/messages")
async def add_conversation_message(
    conversation_id: str,
    payload: MessageCreate,
    user_id: str = Depends(require_user),
    db: Database = Depends(get_db),
):
    await _owned_conversation(conversation_id, user_id, db)
    message = await db.add_message(conversation_id, payload.role, payload.content, payload.images)
    return {"message": message}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    gateway: Optional[GatewayClient] = None,
    semantic: Optional[SemanticRecallClient] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        if not app.state.gateway.configured:
            logger.warning("No gateway API key configured; chat requests will fail until one is set.")
        try:
            yield
        finally:
            await app.state.tasks.drain()
            await app.state.gateway.close()
            await app.state.semantic.close()
            await app.state.http_client.aclose()

    app = FastAPI(title="NeonChat", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.gateway = gateway or GatewayClient(
        settings.gateway_base_url, settings.gateway_api_key, timeout=settings.request_timeout_s
    )
    app.state.semantic = semantic or SemanticRecallClient(settings.semantic_search_url, settings.gateway_api_key)
    app.state.http_client = http_client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
    app.state.tasks = DetachedTasks()
    app.state.executor = ToolExecutor(app.state.gateway, settings.search_model)
    app.state.assembler = ContextAssembler(
        app.state.db,
        semantic=app.state.semantic if app.state.semantic.enabled else None,
        memory_limit=settings.memory_limit,
        semantic_top_k=settings.semantic_top_k,
    )
    app.state.orchestrator = ChatOrchestrator(
        gateway=app.state.gateway,
        assembler=app.state.assembler,
        executor=app.state.executor,
        http_client=app.state.http_client,
        tasks=app.state.tasks,
        model=settings.chat_model,
        audit_store=app.state.db,
        tools_default=settings.enable_tools_default,
        tool_event_max_chars=settings.tool_event_max_chars,
        tool_log_max_chars=settings.tool_log_max_chars,
    )
    app.state.memory_extractor = MemoryExtractor(
        app.state.gateway, app.state.db, settings.memory_model, capacity=settings.memory_capacity
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(NeonChatError, neonchat_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("NEONCHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "neonchat.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
