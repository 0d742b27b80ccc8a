import asyncio
import gc

import pytest

from hnchat.errors import (
    ConversationFinished,
    ConversationNotFound,
    ConversationTimeout,
    LLMProviderError,
    PlanningFailed,
    UserInterventionRequired,
)
from hnchat.tool_registry import ToolRegistry
from tests.fakes import FakeLLMProvider, FlakyLLMProvider, RecordingTool, plan_json


def search_step(step_id, query, depends_on=None):
    return {
        "step_id": step_id,
        "description": f"Search for {query}",
        "tool_name": "search_items",
        "parameters": {"query": query},
        "depends_on": depends_on or [],
        "can_run_parallel": False,
    }


def tool_step(step_id, tool_name, parameters=None):
    return {"step_id": step_id, "tool_name": tool_name, "parameters": parameters or {}}


@pytest.mark.asyncio
async def test_single_tool_conversation_completes_in_three_steps(manager_factory):
    llm = FakeLLMProvider(plan_responses=[plan_json(search_step(1, "rust"))], synthesis_response="Rust is popular.")
    manager = manager_factory(llm)

    conversation = await manager.start_conversation("What do people think about Rust?")
    assert conversation.state == "Planning"
    assert [step.step_type for step in conversation.steps] == ["Planning"]
    assert conversation.steps[0].status == "Completed"
    assert conversation.steps[0].results.data == {"plan": llm.plan_responses[0]}

    first = await manager.continue_conversation(conversation.id)
    assert first.step_type == "ToolExecution"
    assert first.status == "Pending"
    assert (await manager.get_conversation(conversation.id)).state == "Executing"

    executed = await manager.continue_conversation(conversation.id)
    assert executed.status == "Completed"
    assert executed.tool_calls[0].result == {"query": "rust", "items": [], "total_count": 0}
    assert (await manager.get_conversation(conversation.id)).state == "Synthesizing"

    final = await manager.continue_conversation(conversation.id)
    assert final.step_type == "ResultSynthesis"
    assert final.results.data == {"final_answer": "Rust is popular."}

    stored = await manager.get_conversation(conversation.id)
    assert stored.state == "Completed"
    assert [step.step_type for step in stored.steps] == ["Planning", "ToolExecution", "ResultSynthesis"]
    assert [step.step_id for step in stored.steps] == [1, 2, 3]
    results = stored.context.intermediate_results
    assert "search_items_1" in results
    assert "tool_result_search_items" in results
    synthesis_prompt = llm.calls_of("synthesis")[0]["prompt"]
    assert "What do people think about Rust?" in synthesis_prompt
    assert "tool_result_search_items" in synthesis_prompt


@pytest.mark.asyncio
async def test_step_limit_fails_conversation(manager_factory):
    steps = [
        {"step_id": n, "tool_name": "search_entities", "parameters": {"query": f"company {n}"}}
        for n in range(1, 6)
    ]
    manager = manager_factory(FakeLLMProvider(plan_responses=[plan_json(*steps)]))
    conversation = await manager.start_conversation("Compare five companies", {"max_steps": 3})

    for _ in range(3):
        await manager.continue_conversation(conversation.id)
    with pytest.raises(ConversationTimeout) as excinfo:
        await manager.continue_conversation(conversation.id)
    assert excinfo.value.conversation_id == conversation.id

    stored = await manager.get_conversation(conversation.id)
    assert stored.state == "Failed"
    assert len(stored.steps) == 3
    with pytest.raises(ConversationFinished):
        await manager.continue_conversation(conversation.id)


@pytest.mark.asyncio
async def test_conversation_survives_restart_mid_execution(manager_factory):
    llm = FakeLLMProvider(plan_responses=[plan_json(search_step(1, "rust"), search_step(2, "go", depends_on=[1]))])
    manager = manager_factory(llm)
    conversation = await manager.start_conversation("Rust or Go?")
    await manager.continue_conversation(conversation.id)

    restarted = manager_factory(llm)
    stored = await restarted.get_conversation(conversation.id)
    assert stored.state == "Executing"
    assert len(stored.steps) == 2
    assert stored.steps[1].status == "Pending"
    assert len(stored.context.execution_queue) == 1

    final = await restarted.run_to_completion(conversation.id)
    assert final.state == "Completed"
    assert [step.step_type for step in final.steps] == [
        "Planning",
        "ToolExecution",
        "ToolExecution",
        "ResultSynthesis",
    ]


@pytest.mark.asyncio
async def test_empty_plan_goes_straight_to_synthesis(manager_factory):
    manager = manager_factory(FakeLLMProvider(plan_responses=[plan_json()]))
    conversation = await manager.start_conversation("Hello")
    step = await manager.continue_conversation(conversation.id)
    assert step.step_type == "ResultSynthesis"
    stored = await manager.get_conversation(conversation.id)
    assert stored.state == "Completed"
    assert len(stored.steps) == 2


@pytest.mark.asyncio
async def test_free_text_plan_uses_keyword_fallback(manager_factory):
    llm = FakeLLMProvider(plan_responses=["I would search the stories for this."])
    manager = manager_factory(llm)
    conversation = await manager.start_conversation("rust compilers")
    step = await manager.continue_conversation(conversation.id)
    assert [call.tool_name for call in step.tool_calls] == ["search_items"]
    assert step.tool_calls[0].parameters == {"query": "rust compilers", "limit": 25}


@pytest.mark.asyncio
async def test_invalid_plan_fails_conversation(manager_factory):
    manager = manager_factory(FakeLLMProvider(plan_responses=[plan_json(tool_step(1, "forecast_trends"))]))
    conversation = await manager.start_conversation("What happens next year?")
    with pytest.raises(PlanningFailed):
        await manager.continue_conversation(conversation.id)
    stored = await manager.get_conversation(conversation.id)
    assert stored.state == "Failed"
    assert "forecast_trends" in stored.context.intermediate_results["planning_error"]
    planning = stored.last_step("Planning")
    assert planning.status == "Failed"
    assert planning.results.success is False
    assert "forecast_trends" in planning.results.summary


@pytest.mark.asyncio
async def test_clarification_pauses_and_resumes(manager_factory):
    llm = FakeLLMProvider(
        plan_responses=[
            plan_json(clarification="Which time period do you mean?"),
            plan_json(search_step(1, "rust last week")),
        ]
    )
    manager = manager_factory(llm)
    conversation = await manager.start_conversation("What was popular?")

    question = await manager.continue_conversation(conversation.id)
    assert question.step_type == "UserClarification"
    assert question.status == "Pending"
    assert question.llm_response == "Which time period do you mean?"
    assert (await manager.get_conversation(conversation.id)).state == "RequiresUserInput"

    with pytest.raises(UserInterventionRequired) as excinfo:
        await manager.continue_conversation(conversation.id)
    assert excinfo.value.question == "Which time period do you mean?"

    replanned = await manager.continue_conversation(conversation.id, "last week")
    assert replanned.step_type == "Planning"
    assert "Additional information from the user: last week" in replanned.llm_request
    stored = await manager.get_conversation(conversation.id)
    assert stored.state == "Executing"
    assert stored.steps[1].status == "Completed"
    assert stored.context.intermediate_results["user_clarification"] == "last week"

    final = await manager.run_to_completion(conversation.id)
    assert final.state == "Completed"
    assert "User clarification: last week" in llm.calls_of("synthesis")[0]["prompt"]



class ReplanOutageLLM(FakeLLMProvider):
    """Fails the first planning call that carries a user clarification."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.outages = 1

    async def generate(self, prompt, tools=None):
        if self.outages and "Additional information from the user" in prompt:
            self.outages -= 1
            raise LLMProviderError("upstream unavailable")
        return await super().generate(prompt, tools)


@pytest.mark.asyncio
async def test_provider_error_during_replan_keeps_clarification(manager_factory):
    llm = ReplanOutageLLM(
        plan_responses=[
            plan_json(clarification="Companies or people?"),
            plan_json(tool_step(1, "search_entities", {"query": "AI"})),
        ]
    )
    manager = manager_factory(llm)
    conversation = await manager.start_conversation("Who is working on AI?")
    await manager.continue_conversation(conversation.id)

    with pytest.raises(LLMProviderError):
        await manager.continue_conversation(conversation.id, "companies")
    stored = await manager.get_conversation(conversation.id)
    assert stored.state == "Planning"
    assert stored.steps[-1].step_type == "Planning"
    assert stored.steps[-1].status == "Failed"
    assert stored.context.intermediate_results["user_clarification"] == "companies"

    retried = await manager.continue_conversation(conversation.id)
    assert retried.step_type == "Planning"
    assert retried.status == "Completed"
    assert "Additional information from the user: companies" in retried.llm_request

    final = await manager.run_to_completion(conversation.id)
    assert final.state == "Completed"
    executions = [step for step in final.steps if step.step_type == "ToolExecution"]
    assert [call.tool_name for step in executions for call in step.tool_calls] == ["search_entities"]
    assert executions[0].status == "Completed"


@pytest.mark.asyncio
async def test_clarification_supersedes_pending_tool_step(manager_factory):
    llm = FakeLLMProvider(
        plan_responses=[
            plan_json(tool_step(1, "search_items", {"query": "old"})),
            plan_json(tool_step(1, "search_entities", {"query": "new"})),
        ]
    )
    manager = manager_factory(llm)
    conversation = await manager.start_conversation("What about AI?")
    stale = await manager.continue_conversation(conversation.id)
    assert stale.status == "Pending"
    await manager.request_user_input(conversation.id, "Posts or entities?")

    await manager.continue_conversation(conversation.id, "entities only")
    final = await manager.run_to_completion(conversation.id)

    assert final.state == "Completed"
    ran = [
        call.tool_name
        for step in final.steps
        if step.step_type == "ToolExecution"
        for call in step.tool_calls
        if call.result is not None or call.error is not None
    ]
    assert ran == ["search_entities"]
    superseded = next(step for step in final.steps if step.step_id == stale.step_id)
    assert superseded.status == "Failed"
    assert superseded.results.summary == "Superseded by user clarification"

@pytest.mark.asyncio
async def test_request_user_input_then_resume(manager_factory):
    manager = manager_factory(FakeLLMProvider(plan_responses=[plan_json()]))
    conversation = await manager.start_conversation("Tell me about startups")
    step = await manager.request_user_input(conversation.id, "Which sector?")
    assert step.step_type == "UserClarification"
    assert (await manager.get_conversation(conversation.id)).state == "RequiresUserInput"

    await manager.continue_conversation(conversation.id, "fintech")
    stored = await manager.get_conversation(conversation.id)
    assert stored.state == "Synthesizing"
    final = await manager.run_to_completion(conversation.id)
    assert final.state == "Completed"


@pytest.mark.asyncio
async def test_planning_timeout_fails_conversation(manager_factory):
    manager = manager_factory(FakeLLMProvider(delay_seconds=0.5), step_timeout_seconds=0.05)
    with pytest.raises(ConversationTimeout) as excinfo:
        await manager.start_conversation("Slow question")
    stored = await manager.get_conversation(excinfo.value.conversation_id)
    assert stored.state == "Failed"
    assert stored.steps[0].status == "Failed"


@pytest.mark.asyncio
async def test_provider_error_leaves_conversation_retryable(manager_factory):
    llm = FlakyLLMProvider(failures=1, plan_responses=[plan_json(search_step(1, "rust"))])
    manager = manager_factory(llm)
    with pytest.raises(LLMProviderError) as excinfo:
        await manager.start_conversation("Rust?")
    conversation_id = excinfo.value.conversation_id
    stored = await manager.get_conversation(conversation_id)
    assert stored.state == "Planning"
    assert stored.steps[0].status == "Failed"

    retried = await manager.continue_conversation(conversation_id)
    assert retried.step_type == "Planning"
    assert retried.status == "Completed"
    final = await manager.run_to_completion(conversation_id)
    assert final.state == "Completed"


@pytest.mark.asyncio
async def test_failed_batch_is_retried_once(manager_factory):
    tool = RecordingTool("search_archive", error="archive offline")
    registry = ToolRegistry()
    registry.register(tool)
    llm = FakeLLMProvider(plan_responses=[plan_json(tool_step(1, "search_archive"))])
    manager = manager_factory(llm, tool_registry=registry)
    conversation = await manager.start_conversation("Search the archive")

    final = await manager.run_to_completion(conversation.id)
    assert final.state == "Completed"
    assert len(tool.calls) == 2
    executions = [step for step in final.steps if step.step_type == "ToolExecution"]
    assert len(executions) == 2
    assert all(step.results.success is False for step in executions)
    assert "search_archive: archive offline" in llm.calls_of("synthesis")[0]["prompt"]


@pytest.mark.asyncio
async def test_continue_flag_requeues_with_next_parameters(manager_factory):
    tool = RecordingTool(
        "search_pages",
        schema={"type": "object", "properties": {"page": {"type": "integer"}}},
        results=[{"continue": True, "next_parameters": {"page": 2}}, {"items": ["b"]}],
    )
    registry = ToolRegistry()
    registry.register(tool)
    manager = manager_factory(
        FakeLLMProvider(plan_responses=[plan_json(tool_step(1, "search_pages", {"page": 1}))]),
        tool_registry=registry,
    )
    conversation = await manager.start_conversation("Page through results")
    final = await manager.run_to_completion(conversation.id)
    assert final.state == "Completed"
    assert tool.calls == [{"page": 1}, {"page": 2}]


@pytest.mark.asyncio
async def test_rejected_follow_up_marks_step_failed_without_retry(manager_factory):
    tool = RecordingTool(
        "search_pages",
        schema={"type": "object", "properties": {"page": {"type": "integer"}}},
        results=[{"continue": True, "next_parameters": {"page": "two"}}],
    )
    registry = ToolRegistry()
    registry.register(tool)
    manager = manager_factory(
        FakeLLMProvider(plan_responses=[plan_json(tool_step(1, "search_pages", {"page": 1}))]),
        tool_registry=registry,
    )
    conversation = await manager.start_conversation("Page through results")
    final = await manager.run_to_completion(conversation.id)
    assert final.state == "Completed"
    assert len(tool.calls) == 1
    executions = [step for step in final.steps if step.step_type == "ToolExecution"]
    assert [step.status for step in executions] == ["Completed", "Failed"]
    assert executions[1].tool_calls[0].error.startswith("Invalid parameters")


@pytest.mark.asyncio
async def test_concurrent_continues_are_serialized(manager_factory):
    manager = manager_factory(FakeLLMProvider(plan_responses=[plan_json(search_step(1, "rust"))]))
    conversation = await manager.start_conversation("Rust?")
    await asyncio.gather(
        manager.continue_conversation(conversation.id),
        manager.continue_conversation(conversation.id),
    )
    stored = await manager.get_conversation(conversation.id)
    assert len(stored.steps) == 2
    assert stored.steps[1].status == "Completed"
    assert stored.state == "Synthesizing"


@pytest.mark.asyncio
async def test_unknown_conversation_and_empty_query(manager_factory):
    manager = manager_factory(FakeLLMProvider())
    with pytest.raises(ConversationNotFound):
        await manager.continue_conversation("missing")
    with pytest.raises(ValueError):
        await manager.start_conversation("   ")


@pytest.mark.asyncio
async def test_list_delete_and_statistics(manager_factory):
    manager = manager_factory(FakeLLMProvider(plan_responses=[plan_json()]))
    first = await manager.start_conversation("first question")
    second = await manager.start_conversation("second question")
    listed = await manager.list_conversations()
    assert {conv.id for conv in listed} == {first.id, second.id}

    stats = await manager.context_statistics(first.id)
    assert stats["available_tools"] == 4
    assert stats["history_size"] == 0

    assert await manager.delete_conversation(first.id) is True
    assert await manager.delete_conversation(first.id) is False
    with pytest.raises(ConversationNotFound):
        await manager.get_conversation(first.id)


@pytest.mark.asyncio
async def test_entity_question_over_seeded_data(db, manager_factory):
    await db.add_item(1, "story", by="pg", title="AI startups", score=10)
    await db.add_entity(1, "company", "OpenAI", confidence=0.9)
    await db.add_entity(1, "person", "Ada Lovelace")
    plan = plan_json(tool_step(1, "search_entities", {"query": "AI", "entity_type": "company"}))
    manager = manager_factory(FakeLLMProvider(plan_responses=[plan]))

    conversation = await manager.start_conversation("Find AI companies")
    assert conversation.context.data_summary.entity_counts == {"company": 1, "person": 1}
    final = await manager.run_to_completion(conversation.id)

    assert final.state == "Completed"
    assert len(final.steps) == 3
    entities = final.steps[1].tool_calls[0].result["entities"]
    assert [entity["name"] for entity in entities] == ["OpenAI"]


@pytest.mark.asyncio
async def test_locks_are_released_after_completion(manager_factory):
    manager = manager_factory(FakeLLMProvider(plan_responses=[plan_json(search_step(1, "rust"))]))
    conversation = await manager.start_conversation("Rust?")
    final = await manager.run_to_completion(conversation.id)
    assert final.state == "Completed"
    gc.collect()
    assert conversation.id not in manager._locks
