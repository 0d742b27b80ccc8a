import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite
from pydantic import ValidationError as ModelValidationError

from .db import connect
from .errors import ConversationNotFound, SerializationError, StorageError
from .schemas import Conversation, ConversationContext, ConversationStep, StepResult, ToolExecution

logger = logging.getLogger("uvicorn.error")

_STEP_INSERT = """
    INSERT INTO conversation_steps(
        conversation_id, step_id, step_type, llm_request, llm_response, tool_calls, results, status, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _step_params(conversation_id: str, step: ConversationStep) -> tuple:
    return (
        conversation_id,
        step.step_id,
        step.step_type,
        step.llm_request,
        step.llm_response,
        _json_dumps([call.model_dump(mode="json") for call in step.tool_calls]),
        step.results.model_dump_json() if step.results is not None else None,
        step.status,
        step.created_at,
    )


def _step_from_row(row: Dict[str, Any]) -> ConversationStep:
    calls = json.loads(row["tool_calls"] or "[]")
    return ConversationStep(
        step_id=row["step_id"],
        step_type=row["step_type"],
        llm_request=row["llm_request"],
        llm_response=row["llm_response"],
        tool_calls=[ToolExecution.model_validate(call) for call in calls],
        results=StepResult.model_validate_json(row["results"]) if row["results"] else None,
        status=row["status"],
        created_at=row["created_at"],
    )


def _conversation_from_row(row: Dict[str, Any], steps: List[ConversationStep]) -> Conversation:
    return Conversation(
        id=row["id"],
        user_query=row["user_query"],
        state=row["state"],
        steps=steps,
        context=ConversationContext.model_validate_json(row["context"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class ConversationStore:
    """Durable conversations: one header row plus ordered step rows."""

    def __init__(self, path: str):
        self.path = path
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[aiosqlite.Connection]:
        async with self._write_lock:
            try:
                async with connect(self.path) as db:
                    await db.execute("BEGIN IMMEDIATE")
                    try:
                        yield db
                    except BaseException:
                        await db.rollback()
                        raise
                    await db.commit()
            except aiosqlite.Error as exc:
                logger.exception("Conversation store %s failed", action)
                raise StorageError(f"Failed to {action} conversation: {exc}") from exc

    async def save(self, conversation: Conversation) -> None:
        async with self._transaction("save") as db:
            await db.execute(
                """
                INSERT INTO conversations(id, user_query, state, context, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.user_query,
                    conversation.state,
                    conversation.context.model_dump_json(),
                    conversation.created_at,
                    conversation.updated_at,
                ),
            )
            await db.executemany(_STEP_INSERT, [_step_params(conversation.id, step) for step in conversation.steps])

    async def update(self, conversation: Conversation) -> None:
        async with self._transaction("update") as db:
            cursor = await db.execute(
                "UPDATE conversations SET state = ?, context = ?, updated_at = ? WHERE id = ?",
                (
                    conversation.state,
                    conversation.context.model_dump_json(),
                    conversation.updated_at,
                    conversation.id,
                ),
            )
            if cursor.rowcount == 0:
                raise ConversationNotFound(conversation.id)
            await db.execute("DELETE FROM conversation_steps WHERE conversation_id = ?", (conversation.id,))
            await db.executemany(_STEP_INSERT, [_step_params(conversation.id, step) for step in conversation.steps])

    async def load(self, conversation_id: str) -> Optional[Conversation]:
        try:
            async with connect(self.path) as db:
                cursor = await db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
                header = await cursor.fetchone()
                if header is None:
                    return None
                cursor = await db.execute(
                    "SELECT * FROM conversation_steps WHERE conversation_id = ? ORDER BY step_id ASC",
                    (conversation_id,),
                )
                step_rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            logger.exception("Conversation store load failed")
            raise StorageError(f"Failed to load conversation: {exc}") from exc
        try:
            steps = [_step_from_row(dict(row)) for row in step_rows]
            return _conversation_from_row(dict(header), steps)
        except (ValueError, ModelValidationError) as exc:
            cause = SerializationError(f"Corrupt conversation data for {conversation_id}", exc)
            raise StorageError(str(cause)) from cause

    async def delete(self, conversation_id: str) -> bool:
        async with self._transaction("delete") as db:
            cursor = await db.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            return cursor.rowcount > 0

    async def list(self, limit: int = 50) -> List[Conversation]:
        try:
            async with connect(self.path) as db:
                cursor = await db.execute(
                    "SELECT * FROM conversations ORDER BY updated_at DESC LIMIT ?",
                    (max(0, int(limit)),),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            logger.exception("Conversation store list failed")
            raise StorageError(f"Failed to list conversations: {exc}") from exc
        conversations: List[Conversation] = []
        for row in rows:
            try:
                conversations.append(_conversation_from_row(dict(row), []))
            except (ValueError, ModelValidationError) as exc:
                cause = SerializationError(f"Corrupt conversation data for {row['id']}", exc)
                raise StorageError(str(cause)) from cause
        return conversations
