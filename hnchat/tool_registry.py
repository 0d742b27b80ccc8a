import asyncio
import logging
import threading
import time
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from .db import utc_now
from .errors import InvalidToolCall, UnknownTool
from .schemas import ToolDescriptor, ToolMetrics, ToolResult, ValidationError

logger = logging.getLogger("uvicorn.error")

TOOL_TIMEOUT_ERROR = "Tool execution timeout"


def _json_pointer(path: Any) -> str:
    parts = [str(part) for part in path]
    return "/" + "/".join(parts) if parts else "/"


def schema_errors(schema: Dict[str, Any], parameters: Any) -> List[ValidationError]:
    """Validate ``parameters`` against a draft-07 schema and flatten the failures."""
    validator = Draft7Validator(schema)
    errors: List[ValidationError] = []
    seen_required = set()
    for err in sorted(validator.iter_errors(parameters), key=lambda e: [str(p) for p in e.absolute_path]):
        base = list(err.absolute_path)
        if err.validator == "required":
            instance = err.instance if isinstance(err.instance, dict) else {}
            for prop in err.validator_value:
                field = _json_pointer(base + [prop])
                if prop in instance or field in seen_required:
                    continue
                seen_required.add(field)
                errors.append(
                    ValidationError(
                        field=field,
                        error_type="required",
                        message=f"'{prop}' is a required property",
                        expected=str(prop),
                        actual=None,
                    )
                )
            continue
        errors.append(
            ValidationError(
                field=_json_pointer(base),
                error_type=str(err.validator),
                message=err.message,
                expected=str(err.validator_value),
                actual=err.instance,
            )
        )
    return errors


class ToolHandler:
    """Base class for tools: a descriptor plus an async execute body."""

    def descriptor(self) -> ToolDescriptor:
        raise NotImplementedError

    @property
    def name(self) -> str:
        return self.descriptor().name

    def validate(self, parameters: Any) -> List[ValidationError]:
        return schema_errors(self.descriptor().parameters_schema, parameters)

    async def execute(self, parameters: Dict[str, Any]) -> Any:
        raise NotImplementedError


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, ToolHandler] = {}
        self._metrics: Dict[str, ToolMetrics] = {}
        self._lock = threading.Lock()

    def register(self, handler: ToolHandler) -> None:
        name = handler.descriptor().name
        with self._lock:
            if name in self._tools:
                logger.info("Replacing registered tool %s", name)
            self._tools[name] = handler
            self._metrics.setdefault(name, ToolMetrics())

    def unregister(self, name: str) -> bool:
        with self._lock:
            self._metrics.pop(name, None)
            return self._tools.pop(name, None) is not None

    def names(self) -> List[str]:
        with self._lock:
            return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def get_handler(self, name: str) -> ToolHandler:
        with self._lock:
            handler = self._tools.get(name)
        if handler is None:
            raise UnknownTool(name)
        return handler

    def describe_all(self) -> List[ToolDescriptor]:
        with self._lock:
            handlers = list(self._tools.values())
        return [handler.descriptor() for handler in handlers]

    def describe_by_category(self, category: str) -> List[ToolDescriptor]:
        return [desc for desc in self.describe_all() if desc.category == category]

    def describe_by_name(self, name: str) -> Optional[ToolDescriptor]:
        with self._lock:
            handler = self._tools.get(name)
        return handler.descriptor() if handler else None

    def tool_summary_lines(self) -> List[str]:
        return [desc.summary_line() for desc in self.describe_all()]

    def validate(self, name: str, parameters: Any) -> List[ValidationError]:
        """Return the schema violations for a call; an empty list means the call is valid."""
        return self.get_handler(name).validate(parameters)

    async def execute(
        self,
        name: str,
        arguments: Dict[str, Any],
        timeout_seconds: Optional[float] = None,
    ) -> ToolResult:
        handler = self.get_handler(name)
        errors = handler.validate(arguments)
        if errors:
            raise InvalidToolCall(name, errors)
        started = time.perf_counter()
        try:
            if timeout_seconds is not None:
                data = await asyncio.wait_for(handler.execute(arguments), timeout=timeout_seconds)
            else:
                data = await handler.execute(arguments)
        except asyncio.TimeoutError:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            self._record(name, False, elapsed_ms)
            logger.warning("Tool %s timed out after %sms", name, elapsed_ms)
            raise
        except Exception as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            self._record(name, False, elapsed_ms)
            logger.warning("Tool %s failed: %s", name, exc)
            return ToolResult(
                success=False,
                error=str(exc) or exc.__class__.__name__,
                execution_time_ms=elapsed_ms,
                metadata={"tool": name},
            )
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        self._record(name, True, elapsed_ms)
        return ToolResult(success=True, data=data, execution_time_ms=elapsed_ms, metadata={"tool": name})

    def _record(self, name: str, success: bool, elapsed_ms: int) -> None:
        with self._lock:
            metrics = self._metrics.setdefault(name, ToolMetrics())
            metrics.total_executions += 1
            if success:
                metrics.successful_executions += 1
            else:
                metrics.failed_executions += 1
            count = metrics.total_executions
            metrics.average_execution_time_ms += (elapsed_ms - metrics.average_execution_time_ms) / count
            metrics.last_execution = utc_now()

    def metrics(self, name: str) -> Optional[ToolMetrics]:
        with self._lock:
            metrics = self._metrics.get(name)
            return metrics.model_copy() if metrics else None

    def all_metrics(self) -> Dict[str, ToolMetrics]:
        with self._lock:
            return {name: metrics.model_copy() for name, metrics in self._metrics.items()}

    def reset_metrics(self) -> None:
        with self._lock:
            self._metrics = {name: ToolMetrics() for name in self._tools}
