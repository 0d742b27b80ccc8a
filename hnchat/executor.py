import asyncio
import logging
from typing import Any, Dict, List, Sequence, Tuple

from .errors import InvalidToolCall, ToolExecutionError, UnknownTool
from .schemas import ToolExecution
from .tool_registry import TOOL_TIMEOUT_ERROR, ToolRegistry

logger = logging.getLogger("uvicorn.error")

READ_VERBS = ("search", "get", "list", "query", "analyze")
WRITE_VERBS = ("create", "update", "delete", "modify")


def is_parallel_safe(tool_name: str) -> bool:
    name = tool_name.lower()
    if any(verb in name for verb in WRITE_VERBS):
        return False
    return any(verb in name for verb in READ_VERBS)


class ToolExecutor:
    """Dispatches tool calls through the registry with timeouts, retries and a bounded parallel cohort."""

    def __init__(
        self,
        registry: ToolRegistry,
        execution_timeout_seconds: float = 30.0,
        max_parallel_executions: int = 4,
    ):
        self.registry = registry
        self.execution_timeout_seconds = execution_timeout_seconds
        self.max_parallel_executions = max(1, int(max_parallel_executions))

    def can_run_parallel(self, tool_name: str) -> bool:
        return is_parallel_safe(tool_name)

    def split_batch(self, calls: Sequence[ToolExecution]) -> Tuple[List[ToolExecution], List[ToolExecution]]:
        cohort: List[ToolExecution] = []
        tail: List[ToolExecution] = []
        for call in calls:
            (cohort if self.can_run_parallel(call.tool_name) else tail).append(call)
        return cohort, tail

    async def execute(self, call: ToolExecution) -> ToolExecution:
        pending = call.model_copy(update={"result": None, "error": None, "execution_time_ms": None})
        parameters = call.parameters if call.parameters is not None else {}
        try:
            outcome = await self.registry.execute(
                call.tool_name,
                parameters,
                timeout_seconds=self.execution_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return pending.model_copy(
                update={
                    "error": TOOL_TIMEOUT_ERROR,
                    "execution_time_ms": int(self.execution_timeout_seconds * 1000),
                }
            )
        except UnknownTool as exc:
            logger.warning("Rejected call to unknown tool %s", call.tool_name)
            return pending.model_copy(update={"error": str(exc), "execution_time_ms": 0})
        except InvalidToolCall as exc:
            details = "; ".join(f"{err.field}: {err.message}" for err in exc.errors)
            logger.warning("Rejected invalid call to %s: %s", call.tool_name, details)
            return pending.model_copy(update={"error": f"Invalid parameters: {details}", "execution_time_ms": 0})
        if outcome.success:
            data = outcome.data if outcome.data is not None else {}
            return pending.model_copy(update={"result": data, "execution_time_ms": outcome.execution_time_ms})
        return pending.model_copy(
            update={
                "error": outcome.error or "Tool execution failed",
                "execution_time_ms": outcome.execution_time_ms,
            }
        )

    async def execute_batch(self, calls: Sequence[ToolExecution]) -> List[ToolExecution]:
        cohort, tail = self.split_batch(calls)
        records: List[ToolExecution] = []
        size = self.max_parallel_executions
        for start in range(0, len(cohort), size):
            chunk = cohort[start : start + size]
            records.extend(await asyncio.gather(*(self.execute(call) for call in chunk)))
        for call in tail:
            records.append(await self.execute(call))
        return records

    async def execute_with_retry(
        self,
        call: ToolExecution,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ) -> ToolExecution:
        last_error = "Tool execution failed"
        for attempt in range(max_retries + 1):
            record = await self.execute(call)
            if record.error is None:
                return record
            last_error = record.error
            if attempt < max_retries:
                delay = base_delay * (attempt + 1)
                logger.info(
                    "Retrying %s in %.2fs (attempt %s/%s): %s",
                    call.tool_name,
                    delay,
                    attempt + 1,
                    max_retries,
                    last_error,
                )
                await asyncio.sleep(delay)
        raise ToolExecutionError(call.tool_name, last_error)

    async def execute_with_fallback(
        self,
        primary: ToolExecution,
        fallbacks: Sequence[ToolExecution],
    ) -> ToolExecution:
        first = await self.execute(primary)
        if first.error is None:
            return first
        for fallback in fallbacks:
            logger.info("Primary %s failed, trying fallback %s", primary.tool_name, fallback.tool_name)
            record = await self.execute(fallback)
            if record.error is None:
                return record
        return first

    def aggregate(self, executions: Sequence[ToolExecution]) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        errors: List[str] = []
        total_ms = 0
        for record in executions:
            total_ms += record.execution_time_ms or 0
            if record.error is not None:
                errors.append(f"{record.tool_name}: {record.error}")
            elif record.result is not None:
                results[record.tool_name] = record.result
        return {"results": results, "errors": errors, "total_execution_time_ms": total_ms}

    def execution_metrics(self, executions: Sequence[ToolExecution]) -> Dict[str, Any]:
        times = [record.execution_time_ms or 0 for record in executions]
        successful = sum(1 for record in executions if record.terminated and record.error is None)
        failed = sum(1 for record in executions if record.error is not None)
        total_time = sum(times)
        return {
            "total_executions": len(executions),
            "successful_executions": successful,
            "failed_executions": failed,
            "total_time_ms": total_time,
            "average_time_ms": (total_time / len(times)) if times else 0.0,
            "max_time_ms": max(times) if times else 0,
        }
