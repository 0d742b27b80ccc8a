import pytest

from hnchat.db import connect
from hnchat.errors import ConversationNotFound, StorageError
from hnchat.schemas import Conversation, ConversationContext, ConversationStep, StepResult, ToolBatch, ToolExecution


def make_conversation(conversation_id: str = "conv-1", updated_at: str = "2026-10-01T10:00:00Z") -> Conversation:
    context = ConversationContext()
    context.intermediate_results["search_items_1"] = {"items": [{"id": 1}]}
    context.execution_queue.append(ToolBatch(calls=[ToolExecution(tool_name="search_entities", parameters={"query": "AI"})]))
    return Conversation(
        id=conversation_id,
        user_query="What is trending?",
        state="Executing",
        steps=[
            ConversationStep(
                step_id=1,
                step_type="Planning",
                llm_request="Analyze the user's question",
                llm_response='{"steps": []}',
                results=StepResult(success=True, data={"plan": "{}"}, summary="planned"),
                status="Completed",
                created_at="2026-10-01T10:00:00Z",
            ),
            ConversationStep(
                step_id=2,
                step_type="ToolExecution",
                tool_calls=[
                    ToolExecution(
                        tool_name="search_items",
                        parameters={"query": "rust"},
                        result={"items": []},
                        execution_time_ms=12,
                    )
                ],
                status="Completed",
                created_at="2026-10-01T10:00:01Z",
            ),
        ],
        context=context,
        created_at="2026-10-01T10:00:00Z",
        updated_at=updated_at,
    )


@pytest.mark.asyncio
async def test_round_trip_preserves_steps_and_context(store):
    conversation = make_conversation()
    await store.save(conversation)
    loaded = await store.load("conv-1")
    assert loaded == conversation
    assert loaded.steps[1].tool_calls[0].execution_time_ms == 12
    assert loaded.context.execution_queue[0].calls[0].tool_name == "search_entities"


@pytest.mark.asyncio
async def test_missing_conversation_loads_as_none(store):
    assert await store.load("nope") is None


@pytest.mark.asyncio
async def test_update_replaces_steps(store):
    conversation = make_conversation()
    await store.save(conversation)
    conversation.steps = conversation.steps[:1]
    conversation.state = "Completed"
    conversation.updated_at = "2026-10-01T10:05:00Z"
    await store.update(conversation)

    loaded = await store.load("conv-1")
    assert loaded.state == "Completed"
    assert [step.step_id for step in loaded.steps] == [1]
    assert loaded.updated_at == "2026-10-01T10:05:00Z"


@pytest.mark.asyncio
async def test_update_of_unknown_conversation_raises(store):
    with pytest.raises(ConversationNotFound) as excinfo:
        await store.update(make_conversation("ghost"))
    assert excinfo.value.conversation_id == "ghost"
    assert await store.load("ghost") is None


@pytest.mark.asyncio
async def test_duplicate_save_is_storage_error(store):
    await store.save(make_conversation())
    with pytest.raises(StorageError):
        await store.save(make_conversation())


@pytest.mark.asyncio
async def test_delete_cascades_to_steps(store):
    await store.save(make_conversation())
    assert await store.delete("conv-1") is True
    assert await store.delete("conv-1") is False
    assert await store.load("conv-1") is None
    async with connect(store.path) as db:
        cursor = await db.execute("SELECT COUNT(*) FROM conversation_steps")
        (count,) = await cursor.fetchone()
    assert count == 0


@pytest.mark.asyncio
async def test_list_orders_by_recency_without_steps(store):
    await store.save(make_conversation("old", updated_at="2026-10-01T09:00:00Z"))
    await store.save(make_conversation("new", updated_at="2026-10-03T09:00:00Z"))
    await store.save(make_conversation("mid", updated_at="2026-10-02T09:00:00Z"))

    listed = await store.list()
    assert [conv.id for conv in listed] == ["new", "mid", "old"]
    assert all(conv.steps == [] for conv in listed)
    assert [conv.id for conv in await store.list(limit=2)] == ["new", "mid"]


@pytest.mark.asyncio
async def test_corrupt_context_is_storage_error(store):
    await store.save(make_conversation())
    async with connect(store.path) as db:
        await db.execute("UPDATE conversations SET context = ? WHERE id = ?", ("not json", "conv-1"))
        await db.commit()
    with pytest.raises(StorageError, match="Corrupt conversation data"):
        await store.load("conv-1")
