import asyncio
import json
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import LLMProviderError, PlanningFailed
from .executor import is_parallel_safe
from .llm import LLMProvider
from .schemas import COMPLEXITY_LEVELS, PlanStep, QueryPlan, ToolDescriptor, ToolExecution
from .tool_registry import ToolRegistry

COMPLEXITY_BASE_MS = {"Simple": 2000, "Moderate": 3000, "Complex": 5000, "VeryComplex": 8000}
PARALLEL_SPEEDUP = 0.7
SLOW_TOOL_MS = 3000
CACHE_MIN_OCCURRENCES = 3
KEYWORD_RESULT_LIMIT = 25
MAX_QUERY_CHARS = 1000

PLAN_FORMAT = """{
  "complexity": "Simple | Moderate | Complex | VeryComplex",
  "required_tools": ["tool_name"],
  "steps": [
    {
      "step_id": 1,
      "description": "what this step does",
      "tool_name": "tool_name",
      "parameters": {},
      "depends_on": [],
      "can_run_parallel": false
    }
  ],
  "clarification": null
}"""


def _scan_object(text: str, start: int) -> Optional[int]:
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx
    return None


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first balanced JSON object embedded in ``text``."""
    if not text:
        return None
    start = text.find("{")
    while start != -1:
        end = _scan_object(text, start)
        if end is None:
            start = text.find("{", start + 1)
            continue
        try:
            parsed = json.loads(text[start : end + 1])
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
        start = text.find("{", start + 1)
    return None


def _int_list(value: Any) -> List[int]:
    if not isinstance(value, list):
        return []
    ids: List[int] = []
    for item in value:
        try:
            ids.append(int(item))
        except (TypeError, ValueError):
            continue
    return ids


def _call_key(tool_name: str, parameters: Any) -> Tuple[str, str]:
    cleaned = dict(parameters) if isinstance(parameters, dict) else parameters
    if isinstance(cleaned, dict):
        cleaned.pop("use_cache", None)
    return tool_name, json.dumps(cleaned, sort_keys=True, ensure_ascii=True, default=str)


def keyword_tool_calls(text: str, query: str, available: Sequence[str]) -> List[ToolExecution]:
    """Derive tool calls from a free-text planning response that carries no JSON plan."""
    lowered = (text or "").lower()
    search_text = (query or "").strip()[:MAX_QUERY_CHARS] or "hacker news"
    calls: List[ToolExecution] = []
    if ("search" in lowered or "find" in lowered) and "search_items" in available:
        calls.append(
            ToolExecution(tool_name="search_items", parameters={"query": search_text, "limit": KEYWORD_RESULT_LIMIT})
        )
    if any(word in lowered for word in ("entit", "compan", "people", "person")) and "search_entities" in available:
        calls.append(
            ToolExecution(
                tool_name="search_entities",
                parameters={"query": search_text, "limit": KEYWORD_RESULT_LIMIT},
            )
        )
    if ("relation" in lowered or "connect" in lowered) and "explore_relations" in available:
        calls.append(ToolExecution(tool_name="explore_relations", parameters={"limit": KEYWORD_RESULT_LIMIT}))
    return calls


class QueryPlanner:
    def __init__(self, registry: ToolRegistry, llm: Optional[LLMProvider] = None, timeout_seconds: float = 60.0):
        self.registry = registry
        self.llm = llm
        self.timeout_seconds = timeout_seconds

    def build_analysis_prompt(self, query: str, tools: Optional[List[ToolDescriptor]] = None) -> str:
        catalog = tools if tools is not None else self.registry.describe_all()
        tool_lines = "\n".join(tool.summary_line() for tool in catalog) or "- (no tools registered)"
        return (
            "Analyze the user's question and produce an execution plan over the available tools.\n\n"
            f"Question: {query}\n\n"
            f"Available tools:\n{tool_lines}\n\n"
            "Respond with a single JSON object of this shape:\n"
            f"{PLAN_FORMAT}\n\n"
            "Use only the tools listed above and parameters that match their schemas. "
            "Steps that only read data and do not depend on each other may set can_run_parallel to true. "
            "If the question cannot be answered without more information from the user, "
            "set clarification to the question to ask and leave steps empty."
        )

    async def analyze_query(self, query: str) -> QueryPlan:
        if self.llm is None:
            raise PlanningFailed("No LLM provider configured for planning")
        tools = self.registry.describe_all()
        prompt = self.build_analysis_prompt(query, tools)
        try:
            response = await asyncio.wait_for(self.llm.generate(prompt, tools), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise PlanningFailed(f"Planning timed out after {self.timeout_seconds}s") from exc
        except LLMProviderError as exc:
            raise PlanningFailed(f"Planning call failed: {exc}") from exc
        plan = self.parse_plan(response)
        self.validate_plan(plan)
        return plan

    def parse_plan(self, text: str) -> QueryPlan:
        data = extract_json_object(text)
        if data is None:
            raise PlanningFailed("No JSON object found in plan response")
        return self.plan_from_dict(data)

    def plan_from_dict(self, data: Dict[str, Any]) -> QueryPlan:
        clarification = data.get("clarification")
        clarification = str(clarification).strip() if clarification else None
        raw_steps = data.get("steps")
        if raw_steps is None and not clarification:
            raise PlanningFailed("No steps found in plan")
        if raw_steps is not None and not isinstance(raw_steps, list):
            raise PlanningFailed("Plan steps must be a list")
        steps: List[PlanStep] = []
        for index, raw in enumerate(raw_steps or []):
            if not isinstance(raw, dict):
                raise PlanningFailed(f"Plan step {index + 1} is not an object")
            try:
                step_id = int(raw.get("step_id", index + 1))
            except (TypeError, ValueError):
                step_id = index + 1
            parameters = raw.get("parameters")
            steps.append(
                PlanStep(
                    step_id=step_id,
                    description=str(raw.get("description") or "Unknown step"),
                    tool_name=str(raw.get("tool_name") or raw.get("tool") or "unknown_tool"),
                    parameters=parameters if isinstance(parameters, dict) else {},
                    depends_on=_int_list(raw.get("depends_on")),
                    can_run_parallel=bool(raw.get("can_run_parallel", False)),
                )
            )
        complexity = data.get("complexity")
        if complexity not in COMPLEXITY_LEVELS:
            complexity = "Moderate"
        required = data.get("required_tools")
        if isinstance(required, list) and required:
            required_tools = [str(name) for name in required]
        else:
            required_tools = list(dict.fromkeys(step.tool_name for step in steps))
        plan = QueryPlan(
            complexity=complexity,
            required_tools=required_tools,
            steps=steps,
            clarification=clarification,
        )
        plan.estimated_duration_ms = self.estimate_duration(plan)
        return plan

    def validate_plan(self, plan: QueryPlan) -> None:
        for name in plan.required_tools:
            if not self.registry.has_tool(name):
                raise PlanningFailed(f"Required tool not available: {name}")
        ids = [step.step_id for step in plan.steps]
        if len(ids) != len(set(ids)):
            raise PlanningFailed("Duplicate step ids in plan")
        known = set(ids)
        for step in plan.steps:
            if not self.registry.has_tool(step.tool_name):
                raise PlanningFailed(f"Step {step.step_id} uses unknown tool: {step.tool_name}")
            for dep in step.depends_on:
                if dep not in known:
                    raise PlanningFailed(f"Step {step.step_id} depends on unknown step {dep}")
        self._check_cycles(plan)
        seen: set = set()
        for step in plan.steps:
            for dep in step.depends_on:
                if dep not in seen:
                    raise PlanningFailed(f"Step {step.step_id} depends on later step {dep}")
            seen.add(step.step_id)
            errors = self.registry.validate(step.tool_name, step.parameters)
            if errors:
                details = "; ".join(f"{err.field}: {err.message}" for err in errors)
                raise PlanningFailed(f"Invalid parameters for step {step.step_id} ({step.tool_name}): {details}")

    def _check_cycles(self, plan: QueryPlan) -> None:
        graph = {step.step_id: list(step.depends_on) for step in plan.steps}
        visited: set = set()
        stack: set = set()

        def visit(node: int) -> None:
            if node in stack:
                raise PlanningFailed(f"Circular dependency detected at step {node}")
            if node in visited:
                return
            stack.add(node)
            for dep in graph.get(node, []):
                visit(dep)
            stack.discard(node)
            visited.add(node)

        for node in graph:
            visit(node)

    def estimate_duration(self, plan: QueryPlan) -> int:
        base = COMPLEXITY_BASE_MS.get(plan.complexity, COMPLEXITY_BASE_MS["Moderate"])
        total = len(plan.steps) * base
        if any(step.can_run_parallel for step in plan.steps):
            total = total * PARALLEL_SPEEDUP
        return int(total)

    def estimate_tool_time(self, tool_name: str) -> int:
        descriptor = self.registry.describe_by_name(tool_name)
        if descriptor and descriptor.constraints.max_execution_time_ms:
            return descriptor.constraints.max_execution_time_ms
        name = tool_name.lower()
        if "search" in name:
            return 3000
        if "analyze" in name:
            return 5000
        if "query" in name:
            return 2000
        return 3000

    def optimize_plan(self, plan: QueryPlan, history: Optional[List[ToolExecution]] = None) -> List[str]:
        """Apply parallelization, caching and de-duplication to a validated plan in place."""
        suggestions: List[str] = []

        first_by_call: Dict[Tuple[str, str], int] = {}
        replaced: Dict[int, int] = {}
        kept: List[PlanStep] = []
        for step in plan.steps:
            key = _call_key(step.tool_name, step.parameters)
            if key in first_by_call:
                replaced[step.step_id] = first_by_call[key]
                suggestions.append(
                    f"Removed step {step.step_id}: duplicates step {first_by_call[key]} ({step.tool_name})"
                )
                continue
            first_by_call[key] = step.step_id
            kept.append(step)
        if replaced:
            for step in kept:
                remapped = [replaced.get(dep, dep) for dep in step.depends_on]
                step.depends_on = [dep for dep in dict.fromkeys(remapped) if dep != step.step_id]
            plan.steps = kept

        slow = [
            step
            for step in plan.steps
            if not step.depends_on
            and not step.can_run_parallel
            and is_parallel_safe(step.tool_name)
            and self.estimate_tool_time(step.tool_name) > SLOW_TOOL_MS
        ]
        if len(slow) >= 2:
            for step in slow:
                step.can_run_parallel = True
            names = ", ".join(step.tool_name for step in slow)
            suggestions.append(f"Parallelized {len(slow)} independent slow steps: {names}")

        if history:
            counts = Counter(_call_key(item.tool_name, item.parameters) for item in history)
            for step in plan.steps:
                if step.parameters.get("use_cache"):
                    continue
                if counts.get(_call_key(step.tool_name, step.parameters), 0) < CACHE_MIN_OCCURRENCES:
                    continue
                candidate = {**step.parameters, "use_cache": True}
                if self.registry.validate(step.tool_name, candidate):
                    continue
                step.parameters = candidate
                suggestions.append(f"Enabled caching for step {step.step_id} ({step.tool_name})")

        plan.required_tools = list(dict.fromkeys(step.tool_name for step in plan.steps))
        plan.estimated_duration_ms = self.estimate_duration(plan)
        return suggestions

    def parallel_groups(self, plan: QueryPlan) -> List[List[int]]:
        """Group step ids by dependency depth; steps in one group never depend on each other."""
        depth: Dict[int, int] = {}
        for step in plan.steps:
            depth[step.step_id] = 1 + max((depth.get(dep, 0) for dep in step.depends_on), default=0)
        groups: Dict[int, List[int]] = {}
        for step in plan.steps:
            groups.setdefault(depth[step.step_id], []).append(step.step_id)
        return [groups[level] for level in sorted(groups)]

    def plan_batches(self, plan: QueryPlan) -> List[List[PlanStep]]:
        batches: List[List[PlanStep]] = []
        current: List[PlanStep] = []
        current_ids: set = set()
        for step in plan.steps:
            blocked = any(dep in current_ids for dep in step.depends_on)
            if current and (not step.can_run_parallel or blocked):
                batches.append(current)
                current, current_ids = [], set()
            if not step.can_run_parallel:
                batches.append([step])
                continue
            current.append(step)
            current_ids.add(step.step_id)
        if current:
            batches.append(current)
        return batches
