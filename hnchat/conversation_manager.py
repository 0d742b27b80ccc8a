import asyncio
import json
import logging
import uuid
import weakref
from typing import Any, Dict, List, Optional, Tuple

from .config import AppSettings
from .context_manager import ContextManager
from .conversation_store import ConversationStore
from .db import Database, utc_now
from .errors import (
    ContextTooLarge,
    ConversationError,
    ConversationFinished,
    ConversationNotFound,
    ConversationTimeout,
    LLMProviderError,
    PlanningFailed,
    UserInterventionRequired,
)
from .executor import ToolExecutor
from .llm import LLMProvider
from .planner import QueryPlanner, extract_json_object, keyword_tool_calls
from .schemas import (
    Conversation,
    ConversationStep,
    StepResult,
    ToolBatch,
    ToolExecution,
    UserPreferences,
)
from .tool_registry import ToolRegistry

logger = logging.getLogger("uvicorn.error")

INVALID_PARAMETERS_PREFIX = "Invalid parameters"


def _call_signature(calls: List[ToolExecution]) -> List[Tuple[str, str]]:
    return [
        (call.tool_name, json.dumps(call.parameters, sort_keys=True, ensure_ascii=True, default=str))
        for call in calls
    ]


def _fresh_calls(calls: List[ToolExecution]) -> List[ToolExecution]:
    return [ToolExecution(tool_name=call.tool_name, parameters=call.parameters) for call in calls]


class ConversationManager:
    """Drives conversations through planning, tool execution and synthesis, one transition per call."""

    def __init__(
        self,
        llm: LLMProvider,
        registry: ToolRegistry,
        store: ConversationStore,
        db: Optional[Database] = None,
        settings: Optional[AppSettings] = None,
        executor: Optional[ToolExecutor] = None,
        planner: Optional[QueryPlanner] = None,
    ):
        self.llm = llm
        self.registry = registry
        self.store = store
        self.db = db
        self.settings = settings or AppSettings()
        self.executor = executor or ToolExecutor(
            registry,
            execution_timeout_seconds=self.settings.execution_timeout_seconds,
            max_parallel_executions=self.settings.max_parallel_executions,
        )
        self.planner = planner or QueryPlanner(registry, llm, timeout_seconds=self.settings.step_timeout_seconds)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def _context_manager(self, conversation: Conversation) -> ContextManager:
        return ContextManager(
            conversation.context,
            max_context_size=self.settings.max_context_size_bytes,
            max_history_items=self.settings.max_history_items,
        )

    def _max_steps(self, conversation: Conversation) -> int:
        return conversation.context.user_preferences.max_steps or self.settings.max_steps

    def _step_timeout(self, conversation: Conversation) -> float:
        timeout = conversation.context.user_preferences.timeout_seconds
        return float(timeout) if timeout > 0 else self.settings.step_timeout_seconds

    def _set_state(self, conversation: Conversation, state: str) -> None:
        if conversation.state != state:
            logger.info("Conversation %s: %s -> %s", conversation.id, conversation.state, state)
        conversation.state = state

    async def _persist(self, conversation: Conversation) -> None:
        conversation.updated_at = max(utc_now(), conversation.created_at)
        await self.store.update(conversation)

    async def _fail(self, conversation: Conversation, exc: ConversationError) -> None:
        """Mark the conversation Failed, persist it, and raise ``exc``."""
        self._set_state(conversation, "Failed")
        await self._persist(conversation)
        exc.conversation_id = conversation.id
        raise exc

    async def _load(self, conversation_id: str) -> Conversation:
        conversation = await self.store.load(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    def _append_step(self, conversation: Conversation, step_type: str, **fields: Any) -> ConversationStep:
        step = ConversationStep(
            step_id=conversation.next_step_id(),
            step_type=step_type,
            created_at=utc_now(),
            **fields,
        )
        conversation.steps.append(step)
        return step

    async def _ensure_room(self, conversation: Conversation) -> None:
        limit = self._max_steps(conversation)
        if len(conversation.steps) >= limit:
            logger.warning("Conversation %s reached the step limit (%s)", conversation.id, limit)
            await self._fail(conversation, ConversationTimeout(f"Maximum steps ({limit}) reached"))

    async def start_conversation(self, query: str, preferences: Optional[Dict[str, Any]] = None) -> Conversation:
        query = (query or "").strip()
        if not query:
            raise ValueError("Query must not be empty")
        defaults = UserPreferences(
            max_steps=self.settings.max_steps,
            timeout_seconds=int(self.settings.step_timeout_seconds),
        )
        context_manager = await ContextManager.build_initial(
            self.registry.describe_all(),
            db=self.db,
            preferences=defaults,
            max_context_size=self.settings.max_context_size_bytes,
            max_history_items=self.settings.max_history_items,
        )
        for key, value in (preferences or {}).items():
            context_manager.set_preference(key, value)
        now = utc_now()
        conversation = Conversation(
            id=str(uuid.uuid4()),
            user_query=query,
            state="Planning",
            context=context_manager.context,
            created_at=now,
            updated_at=now,
        )
        await self.store.save(conversation)
        logger.info("Conversation %s started: %s", conversation.id, query)
        async with self._lock_for(conversation.id):
            await self._planning_step(conversation)
            await self._persist(conversation)
        return conversation

    async def _generate(self, conversation: Conversation, prompt: str) -> str:
        return await asyncio.wait_for(
            self.llm.generate(prompt, conversation.context.available_tools),
            timeout=self._step_timeout(conversation),
        )

    async def _planning_step(self, conversation: Conversation, clarification: Optional[str] = None) -> ConversationStep:
        prompt = self.planner.build_analysis_prompt(conversation.user_query, conversation.context.available_tools)
        if clarification:
            prompt += f"\n\nAdditional information from the user: {clarification}"
        step = self._append_step(conversation, "Planning", llm_request=prompt, status="InProgress")
        try:
            response = await self._generate(conversation, prompt)
        except asyncio.TimeoutError:
            step.status = "Failed"
            step.results = StepResult(success=False, summary="Planning timed out")
            await self._fail(
                conversation,
                ConversationTimeout(f"Planning step timed out after {self._step_timeout(conversation)}s"),
            )
        except LLMProviderError as exc:
            step.status = "Failed"
            step.results = StepResult(success=False, data={"error": str(exc)}, summary="Planning call failed")
            await self._persist(conversation)
            exc.conversation_id = conversation.id
            raise
        step.llm_response = response
        step.status = "Completed"
        step.results = StepResult(
            success=True,
            data={"plan": response},
            summary="Query analysis and execution plan created",
            next_action="Execute planned tools",
        )
        return step

    async def continue_conversation(self, conversation_id: str, user_input: Optional[str] = None) -> ConversationStep:
        async with self._lock_for(conversation_id):
            conversation = await self._load(conversation_id)
            if conversation.finished:
                raise ConversationFinished("Conversation already finished")
            await self._ensure_room(conversation)
            context_manager = self._context_manager(conversation)
            if conversation.state == "RequiresUserInput":
                if user_input is None:
                    pending = conversation.last_step("UserClarification")
                    exc = UserInterventionRequired(pending.llm_response if pending else "User input required")
                    exc.conversation_id = conversation.id
                    raise exc
                return await self._resume_with_input(conversation, context_manager, user_input)
            if user_input:
                context_manager.store_result("user_input", user_input)
            if conversation.state == "Planning":
                return await self._advance_from_planning(conversation, context_manager)
            if conversation.state == "Executing":
                return await self._advance_execution(conversation, context_manager)
            return await self._synthesis_step(conversation)

    def _derive_batches(
        self,
        conversation: Conversation,
        context_manager: ContextManager,
        response: str,
    ) -> Tuple[List[List[ToolExecution]], Optional[str]]:
        data = extract_json_object(response)
        if data is None:
            calls = keyword_tool_calls(response, conversation.user_query, self.registry.names())
            logger.info("Conversation %s: no JSON plan, keyword fallback chose %s calls", conversation.id, len(calls))
            return ([calls] if calls else []), None
        plan = self.planner.plan_from_dict(data)
        if plan.clarification and not plan.steps:
            return [], plan.clarification
        self.planner.validate_plan(plan)
        for suggestion in self.planner.optimize_plan(plan, conversation.context.execution_history):
            logger.info("Conversation %s: %s", conversation.id, suggestion)
        context_manager.store_result("query_plan", plan.model_dump())
        batches = [
            [ToolExecution(tool_name=step.tool_name, parameters=step.parameters) for step in batch]
            for batch in self.planner.plan_batches(plan)
        ]
        return batches, None

    async def _queue_plan(
        self,
        conversation: Conversation,
        context_manager: ContextManager,
        response: str,
    ) -> Optional[ConversationStep]:
        """Turn a planning response into queued batches; returns a clarification step when one is needed."""
        try:
            batches, clarification = self._derive_batches(conversation, context_manager, response)
        except PlanningFailed as exc:
            logger.warning("Conversation %s: planning failed: %s", conversation.id, exc)
            planning = conversation.last_step("Planning")
            if planning is not None:
                planning.status = "Failed"
                planning.results = StepResult(success=False, data={"error": str(exc)}, summary=str(exc))
            context_manager.store_result("planning_error", str(exc))
            await self._fail(conversation, exc)
        if clarification:
            await self._ensure_room(conversation)
            step = self._append_step(
                conversation,
                "UserClarification",
                llm_response=clarification,
                status="Pending",
                results=StepResult(
                    success=False,
                    summary="Waiting for user clarification",
                    next_action="Resume with user input",
                ),
            )
            self._set_state(conversation, "RequiresUserInput")
            return step
        conversation.context.execution_queue = [ToolBatch(calls=calls) for calls in batches]
        return None

    async def _advance_from_planning(
        self,
        conversation: Conversation,
        context_manager: ContextManager,
    ) -> ConversationStep:
        planning = conversation.last_step("Planning")
        if planning is None or planning.status != "Completed" or planning.llm_response is None:
            clarification = conversation.context.intermediate_results.get("user_clarification")
            step = await self._planning_step(conversation, clarification=clarification)
            await self._persist(conversation)
            return step
        clarification_step = await self._queue_plan(conversation, context_manager, planning.llm_response)
        if clarification_step is not None:
            await self._persist(conversation)
            return clarification_step
        queue = conversation.context.execution_queue
        if not queue:
            return await self._synthesis_step(conversation)
        batch = queue.pop(0)
        step = self._append_step(conversation, "ToolExecution", tool_calls=batch.calls, status="Pending")
        self._set_state(conversation, "Executing")
        await self._persist(conversation)
        return step

    def _previous_attempts(self, conversation: Conversation, step: ConversationStep) -> int:
        signature = _call_signature(step.tool_calls)
        return sum(
            1
            for other in conversation.steps
            if other is not step
            and other.step_type == "ToolExecution"
            and other.status in ("Completed", "Failed")
            and _call_signature(other.tool_calls) == signature
            and all(call.error is not None for call in other.tool_calls)
        )

    async def _advance_execution(
        self,
        conversation: Conversation,
        context_manager: ContextManager,
    ) -> ConversationStep:
        pending = next(
            (
                step
                for step in reversed(conversation.steps)
                if step.step_type == "ToolExecution" and step.status in ("Pending", "InProgress")
            ),
            None,
        )
        queue = conversation.context.execution_queue
        if pending is None:
            if not queue:
                return await self._synthesis_step(conversation)
            batch = queue.pop(0)
            step = self._append_step(conversation, "ToolExecution", tool_calls=batch.calls, status="Pending")
            await self._persist(conversation)
            return step
        return await self._execute_tool_step(conversation, context_manager, pending)

    async def _execute_tool_step(
        self,
        conversation: Conversation,
        context_manager: ContextManager,
        step: ConversationStep,
    ) -> ConversationStep:
        step.status = "InProgress"
        records = await self.executor.execute_batch(step.tool_calls)
        step.tool_calls = records
        for record in records:
            context_manager.record(record)
            if record.result is not None:
                context_manager.store_result(f"tool_result_{record.tool_name}", record.result)
        try:
            context_manager.compress_if_needed()
        except ContextTooLarge as exc:
            step.status = "Failed"
            step.results = StepResult(success=False, summary=str(exc))
            await self._fail(conversation, exc)

        failed = [record for record in records if record.error is not None]
        rejected = [record for record in failed if record.error.startswith(INVALID_PARAMETERS_PREFIX)]
        all_failed = bool(records) and len(failed) == len(records)
        queue = conversation.context.execution_queue
        follow_ups: List[ToolBatch] = []
        if all_failed and not rejected:
            attempts = self._previous_attempts(conversation, step)
            if attempts < self.settings.max_batch_retries:
                logger.warning(
                    "Conversation %s: every call in step %s failed, retrying (attempt %s)",
                    conversation.id,
                    step.step_id,
                    attempts + 1,
                )
                follow_ups.append(ToolBatch(calls=_fresh_calls(step.tool_calls)))
        for record in records:
            if isinstance(record.result, dict) and record.result.get("continue") is True:
                parameters = dict(record.parameters or {})
                next_parameters = record.result.get("next_parameters")
                if isinstance(next_parameters, dict):
                    parameters.update(next_parameters)
                follow_ups.append(ToolBatch(calls=[ToolExecution(tool_name=record.tool_name, parameters=parameters)]))
        queue[:0] = follow_ups

        aggregate = self.executor.aggregate(records)
        summary = f"Executed {len(records)} tools"
        if failed:
            summary += f" ({len(failed)} failed)"
        step.results = StepResult(
            success=not all_failed,
            data={
                "executed_tools": len(records),
                "errors": aggregate["errors"],
                "total_execution_time_ms": aggregate["total_execution_time_ms"],
            },
            summary=summary,
            next_action="Execute queued tools" if queue else "Synthesize results",
        )
        step.status = "Failed" if rejected else "Completed"
        self._set_state(conversation, "Executing" if queue else "Synthesizing")
        await self._persist(conversation)
        return step

    def build_synthesis_prompt(self, conversation: Conversation) -> str:
        results = conversation.context.intermediate_results
        tool_results = {key: value for key, value in results.items() if key.startswith("tool_result_")}
        parts = [
            f"User question: {conversation.user_query}",
            "",
            "Tool results:",
            json.dumps(tool_results, indent=2, ensure_ascii=True, default=str) if tool_results else "(no tool results)",
        ]
        clarification = results.get("user_clarification")
        if clarification:
            parts.extend(["", f"User clarification: {clarification}"])
        errors = [f"{call.tool_name}: {call.error}" for call in conversation.context.execution_history if call.error]
        if errors:
            parts.extend(["", "Tool errors:", *errors[-10:]])
        response_format = conversation.context.user_preferences.response_format
        parts.extend(
            [
                "",
                f"Answer the question using only the tool results above. Respond in {response_format}. "
                "If the results are insufficient, say what is missing.",
            ]
        )
        return "\n".join(parts)

    async def _synthesis_step(self, conversation: Conversation) -> ConversationStep:
        self._set_state(conversation, "Synthesizing")
        await self._ensure_room(conversation)
        prompt = self.build_synthesis_prompt(conversation)
        step = self._append_step(conversation, "ResultSynthesis", llm_request=prompt, status="InProgress")
        try:
            response = await self._generate(conversation, prompt)
        except asyncio.TimeoutError:
            step.status = "Failed"
            step.results = StepResult(success=False, summary="Synthesis timed out")
            await self._fail(
                conversation,
                ConversationTimeout(f"Synthesis step timed out after {self._step_timeout(conversation)}s"),
            )
        except LLMProviderError as exc:
            step.status = "Failed"
            step.results = StepResult(success=False, data={"error": str(exc)}, summary="Synthesis call failed")
            await self._persist(conversation)
            exc.conversation_id = conversation.id
            raise
        step.llm_response = response
        step.status = "Completed"
        step.results = StepResult(success=True, data={"final_answer": response}, summary="Final answer synthesized")
        self._set_state(conversation, "Completed")
        await self._persist(conversation)
        return step

    async def _resume_with_input(
        self,
        conversation: Conversation,
        context_manager: ContextManager,
        user_input: str,
    ) -> ConversationStep:
        pending = next(
            (
                step
                for step in reversed(conversation.steps)
                if step.step_type == "UserClarification" and step.status == "Pending"
            ),
            None,
        )
        if pending is not None:
            pending.status = "Completed"
        for stale in conversation.steps:
            if stale.step_type == "ToolExecution" and stale.status in ("Pending", "InProgress"):
                stale.status = "Failed"
                stale.results = StepResult(success=False, summary="Superseded by user clarification")
        conversation.context.execution_queue = []
        context_manager.store_result("user_clarification", user_input)
        # Planning until the new plan is queued.
        self._set_state(conversation, "Planning")
        step = await self._planning_step(conversation, clarification=user_input)
        clarification_step = await self._queue_plan(conversation, context_manager, step.llm_response or "")
        if clarification_step is not None:
            await self._persist(conversation)
            return clarification_step
        self._set_state(conversation, "Executing" if conversation.context.execution_queue else "Synthesizing")
        await self._persist(conversation)
        return step

    async def request_user_input(self, conversation_id: str, question: str) -> ConversationStep:
        async with self._lock_for(conversation_id):
            conversation = await self._load(conversation_id)
            if conversation.finished:
                raise ConversationFinished("Conversation already finished")
            await self._ensure_room(conversation)
            step = self._append_step(
                conversation,
                "UserClarification",
                llm_response=question,
                status="Pending",
                results=StepResult(
                    success=False,
                    summary="Waiting for user clarification",
                    next_action="Resume with user input",
                ),
            )
            self._set_state(conversation, "RequiresUserInput")
            await self._persist(conversation)
            return step

    async def run_to_completion(self, conversation_id: str) -> Conversation:
        """Continue until the conversation finishes or waits for the user."""
        conversation = await self._load(conversation_id)
        budget = 2 * self._max_steps(conversation) + 2
        for _ in range(budget):
            if conversation.finished or conversation.state == "RequiresUserInput":
                break
            await self.continue_conversation(conversation_id)
            conversation = await self._load(conversation_id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await self._load(conversation_id)

    async def list_conversations(self, limit: int = 50) -> List[Conversation]:
        return await self.store.list(limit)

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._lock_for(conversation_id):
            deleted = await self.store.delete(conversation_id)
        self._locks.pop(conversation_id, None)
        return deleted

    async def context_statistics(self, conversation_id: str) -> Dict[str, Any]:
        conversation = await self._load(conversation_id)
        return self._context_manager(conversation).statistics()
