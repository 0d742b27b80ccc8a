import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request

from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .conversation_manager import ConversationManager
from .conversation_store import ConversationStore
from .db import Database
from .errors import (
    ContextTooLarge,
    ConversationError,
    ConversationFinished,
    ConversationNotFound,
    ConversationTimeout,
    InvalidToolCall,
    LLMProviderError,
    PlanningFailed,
    StorageError,
    UnknownTool,
    UserInterventionRequired,
)
from .hn_tools import default_registry
from .llm import ChatCompletionsProvider, LLMProvider
from .schemas import ContinueConversationRequest, StartConversationRequest
from .tool_registry import TOOL_TIMEOUT_ERROR, ToolRegistry

logger = logging.getLogger("uvicorn.error")

_STATUS_BY_ERROR = (
    (ConversationNotFound, 404),
    (UnknownTool, 404),
    (ConversationFinished, 409),
    (UserInterventionRequired, 409),
    (InvalidToolCall, 422),
    (PlanningFailed, 422),
    (ContextTooLarge, 422),
    (LLMProviderError, 502),
    (ConversationTimeout, 504),
    (StorageError, 500),
)


def http_error(exc: ConversationError) -> HTTPException:
    status = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 500)
    detail: Dict[str, Any] = {"error": exc.__class__.__name__, "message": str(exc)}
    if exc.conversation_id:
        detail["conversation_id"] = exc.conversation_id
    if isinstance(exc, UserInterventionRequired):
        detail["question"] = exc.question
    if isinstance(exc, InvalidToolCall):
        detail["errors"] = [err.model_dump() for err in exc.errors]
    return HTTPException(status_code=status, detail=detail)


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_manager(request: Request) -> ConversationManager:
    return request.app.state.manager


def get_registry(request: Request) -> ToolRegistry:
    return request.app.state.registry


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    manager: ConversationManager = Depends(get_manager),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    manager.settings = new_settings
    manager.executor.execution_timeout_seconds = new_settings.execution_timeout_seconds
    manager.executor.max_parallel_executions = new_settings.max_parallel_executions
    manager.planner.timeout_seconds = new_settings.step_timeout_seconds
    return {"settings": new_settings.to_safe_dict()}


@router.get("/api/tools")
async def list_tools(category: Optional[str] = None, registry: ToolRegistry = Depends(get_registry)):
    tools = registry.describe_by_category(category) if category else registry.describe_all()
    return {"tools": [tool.model_dump() for tool in tools]}


@router.get("/api/tools/metrics")
async def tool_metrics(registry: ToolRegistry = Depends(get_registry)):
    return {"metrics": {name: metrics.model_dump() for name, metrics in registry.all_metrics().items()}}


@router.post("/api/tools/{tool_name}/validate")
async def validate_tool_call(
    tool_name: str,
    payload: Dict[str, Any] = Body(default={}),
    registry: ToolRegistry = Depends(get_registry),
):
    try:
        errors = registry.validate(tool_name, payload)
    except UnknownTool as exc:
        raise http_error(exc)
    return {"valid": not errors, "errors": [err.model_dump() for err in errors]}


@router.get("/api/tools/{tool_name}")
async def describe_tool(tool_name: str, registry: ToolRegistry = Depends(get_registry)):
    descriptor = registry.describe_by_name(tool_name)
    if descriptor is None:
        raise http_error(UnknownTool(tool_name))
    return {"tool": descriptor.model_dump()}


@router.get("/api/tools/{tool_name}/metrics")
async def single_tool_metrics(tool_name: str, registry: ToolRegistry = Depends(get_registry)):
    metrics = registry.metrics(tool_name)
    if metrics is None:
        raise http_error(UnknownTool(tool_name))
    return {"tool": tool_name, "metrics": metrics.model_dump()}


@router.post("/api/tools/{tool_name}/execute")
async def execute_tool(
    tool_name: str,
    payload: Dict[str, Any] = Body(default={}),
    registry: ToolRegistry = Depends(get_registry),
    settings: AppSettings = Depends(get_settings),
):
    try:
        result = await registry.execute(tool_name, payload, timeout_seconds=settings.execution_timeout_seconds)
    except (UnknownTool, InvalidToolCall) as exc:
        raise http_error(exc)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail={"error": "ToolTimeout", "message": TOOL_TIMEOUT_ERROR})
    return {"result": result.model_dump()}


@router.get("/api/conversations")
async def list_conversations(limit: int = 50, manager: ConversationManager = Depends(get_manager)):
    try:
        conversations = await manager.list_conversations(limit)
    except ConversationError as exc:
        raise http_error(exc)
    return {
        "conversations": [
            convo.model_dump(include={"id", "user_query", "state", "created_at", "updated_at"})
            for convo in conversations
        ]
    }


@router.post("/api/conversations")
async def start_conversation(
    payload: StartConversationRequest,
    manager: ConversationManager = Depends(get_manager),
):
    try:
        conversation = await manager.start_conversation(payload.query, payload.preferences)
    except ConversationError as exc:
        raise http_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"conversation": conversation.model_dump()}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, manager: ConversationManager = Depends(get_manager)):
    try:
        conversation = await manager.get_conversation(conversation_id)
    except ConversationError as exc:
        raise http_error(exc)
    return {"conversation": conversation.model_dump()}


@router.get("/api/conversations/{conversation_id}/context")
async def get_context_statistics(conversation_id: str, manager: ConversationManager = Depends(get_manager)):
    try:
        stats = await manager.context_statistics(conversation_id)
    except ConversationError as exc:
        raise http_error(exc)
    return {"statistics": stats}


@router.post("/api/conversations/{conversation_id}/continue")
async def continue_conversation(
    conversation_id: str,
    payload: Optional[ContinueConversationRequest] = None,
    manager: ConversationManager = Depends(get_manager),
):
    user_input = payload.user_input if payload else None
    try:
        step = await manager.continue_conversation(conversation_id, user_input)
        conversation = await manager.get_conversation(conversation_id)
    except ConversationError as exc:
        raise http_error(exc)
    return {"step": step.model_dump(), "state": conversation.state}


@router.post("/api/conversations/{conversation_id}/run")
async def run_conversation(conversation_id: str, manager: ConversationManager = Depends(get_manager)):
    try:
        conversation = await manager.run_to_completion(conversation_id)
    except ConversationError as exc:
        raise http_error(exc)
    return {"conversation": conversation.model_dump()}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, manager: ConversationManager = Depends(get_manager)):
    try:
        deleted = await manager.delete_conversation(conversation_id)
    except ConversationError as exc:
        raise http_error(exc)
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm: Optional[LLMProvider] = None,
    registry: Optional[ToolRegistry] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        logger.info("hnchat ready with %s tools", len(app.state.registry.names()))
        try:
            yield
        finally:
            await app.state.llm.close()

    app = FastAPI(title="hnchat conversation engine", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm = llm or ChatCompletionsProvider(
        settings.llm_base_url,
        settings.llm_model,
        api_key=settings.llm_api_key,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout_seconds=settings.step_timeout_seconds,
    )
    app.state.registry = registry or default_registry(app.state.db)
    app.state.store = ConversationStore(app.state.db.path)
    app.state.manager = ConversationManager(
        app.state.llm,
        app.state.registry,
        app.state.store,
        db=app.state.db,
        settings=settings,
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("HNCHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "hnchat.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
