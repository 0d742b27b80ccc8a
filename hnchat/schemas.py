from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


ConversationState = Literal[
    "Planning",
    "Executing",
    "Synthesizing",
    "Completed",
    "Failed",
    "RequiresUserInput",
]
StepType = Literal["Planning", "ToolExecution", "ResultSynthesis", "UserClarification"]
StepStatus = Literal["Pending", "InProgress", "Completed", "Failed"]
ToolCategory = Literal["DataQuery", "EntityAnalysis", "RelationExploration", "Analytics"]
QueryComplexity = Literal["Simple", "Moderate", "Complex", "VeryComplex"]

TERMINAL_STATES = {"Completed", "Failed"}
TOOL_CATEGORIES = {"DataQuery", "EntityAnalysis", "RelationExploration", "Analytics"}
COMPLEXITY_LEVELS = {"Simple", "Moderate", "Complex", "VeryComplex"}


class ToolExecution(BaseModel):
    tool_name: str
    parameters: Any = Field(default_factory=dict)
    result: Optional[Any] = None
    error: Optional[str] = None
    execution_time_ms: Optional[int] = None

    @property
    def terminated(self) -> bool:
        return self.execution_time_ms is not None

    @property
    def succeeded(self) -> bool:
        return self.terminated and self.error is None


class StepResult(BaseModel):
    success: bool = True
    data: Any = None
    summary: str = ""
    next_action: Optional[str] = None


class ConversationStep(BaseModel):
    step_id: int
    step_type: StepType
    llm_request: Optional[str] = None
    llm_response: Optional[str] = None
    tool_calls: List[ToolExecution] = Field(default_factory=list)
    results: Optional[StepResult] = None
    status: StepStatus = "Pending"
    created_at: str


class DataSummary(BaseModel):
    total_items: int = 0
    total_entities: int = 0
    entity_counts: Dict[str, int] = Field(default_factory=dict)
    relation_counts: Dict[str, int] = Field(default_factory=dict)
    item_counts: Dict[str, int] = Field(default_factory=dict)
    last_updated: Optional[str] = None


class UserPreferences(BaseModel):
    max_steps: int = 20
    response_format: str = "markdown"
    timeout_seconds: int = 60


class ToolConstraints(BaseModel):
    max_execution_time_ms: Optional[int] = None
    max_result_size: Optional[int] = None
    rate_limit_per_minute: Optional[int] = None
    requires_auth: bool = False


class ToolExample(BaseModel):
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    expected_result: Optional[str] = None


class ToolDescriptor(BaseModel):
    name: str
    description: str
    category: ToolCategory
    version: str = "1.0.0"
    parameters_schema: Dict[str, Any] = Field(default_factory=dict)
    examples: List[ToolExample] = Field(default_factory=list)
    constraints: ToolConstraints = Field(default_factory=ToolConstraints)
    tags: List[str] = Field(default_factory=list)

    def summary_line(self) -> str:
        return f"- {self.name} ({self.category}): {self.description}"


class ToolBatch(BaseModel):
    """Tool calls queued for a future ToolExecution step."""

    calls: List[ToolExecution] = Field(default_factory=list)


class ConversationContext(BaseModel):
    available_tools: List[ToolDescriptor] = Field(default_factory=list)
    data_summary: DataSummary = Field(default_factory=DataSummary)
    user_preferences: UserPreferences = Field(default_factory=UserPreferences)
    execution_history: List[ToolExecution] = Field(default_factory=list)
    intermediate_results: Dict[str, Any] = Field(default_factory=dict)
    execution_queue: List[ToolBatch] = Field(default_factory=list)


class Conversation(BaseModel):
    id: str
    user_query: str
    state: ConversationState = "Planning"
    steps: List[ConversationStep] = Field(default_factory=list)
    context: ConversationContext = Field(default_factory=ConversationContext)
    created_at: str
    updated_at: str

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def next_step_id(self) -> int:
        return len(self.steps) + 1

    def last_step(self, step_type: Optional[str] = None) -> Optional[ConversationStep]:
        for step in reversed(self.steps):
            if step_type is None or step.step_type == step_type:
                return step
        return None


class PlanStep(BaseModel):
    step_id: int
    description: str = "Unknown step"
    tool_name: str = "unknown_tool"
    parameters: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[int] = Field(default_factory=list)
    can_run_parallel: bool = False


class QueryPlan(BaseModel):
    complexity: QueryComplexity = "Moderate"
    required_tools: List[str] = Field(default_factory=list)
    steps: List[PlanStep] = Field(default_factory=list)
    estimated_duration_ms: int = 0
    clarification: Optional[str] = None


class ValidationError(BaseModel):
    field: str
    error_type: str
    message: str
    expected: Optional[str] = None
    actual: Optional[Any] = None


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time_ms: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ToolMetrics(BaseModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time_ms: float = 0.0
    last_execution: Optional[str] = None


class StartConversationRequest(BaseModel):
    query: str = Field(min_length=1)
    preferences: Dict[str, Any] = Field(default_factory=dict)


class ContinueConversationRequest(BaseModel):
    user_input: Optional[str] = None
