"""Workflow data model: platform operations, query sessions, docs validation
and visualization payloads."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from ops_agent.models.agent_schemas import ToolCallRecord


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Platform operations
# ---------------------------------------------------------------------------


class OperationCommand(BaseModel):
    name: str
    command: list[str]


class Operation(BaseModel):
    name: str
    description: str = ""
    operations: list[OperationCommand] = []


class MatchedOperation(BaseModel):
    tool: str
    operation: str
    command: list[str]
    description: str = ""


class IntentMapping(BaseModel):
    matched: bool
    operation: MatchedOperation | None = None
    reason: str | None = None


class ParameterType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    CHOICE = "choice"


class ParameterMetadata(BaseModel):
    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    description: str = ""
    default: Any = None
    choices: list[str] | None = None


class PlatformStep(str, Enum):
    COLLECT_PARAMETERS = "collectParameters"
    EXECUTE = "execute"
    COMPLETE = "complete"


class PlatformSessionData(_CamelModel):
    intent: str
    matched_operation: MatchedOperation = Field(alias="matchedOperation")
    parameters: list[ParameterMetadata] = []
    answers: dict[str, Any] = {}
    current_step: PlatformStep = Field(default=PlatformStep.COLLECT_PARAMETERS, alias="currentStep")


# ---------------------------------------------------------------------------
# Visualization
# ---------------------------------------------------------------------------

VISUALIZATION_TYPES = ("mermaid", "cards", "code", "table", "diff")


class CodeContent(BaseModel):
    language: str = "text"
    code: str


class TableContent(BaseModel):
    headers: list[str]
    rows: list[list[str]]


class CardItem(BaseModel):
    id: str
    title: str
    description: str | None = None
    tags: list[str] | None = None


class DiffContent(BaseModel):
    before: CodeContent
    after: CodeContent


class _VisualizationBase(BaseModel):
    id: str
    label: str


class MermaidVisualization(_VisualizationBase):
    type: Literal["mermaid"] = "mermaid"
    content: str


class CardsVisualization(_VisualizationBase):
    type: Literal["cards"] = "cards"
    content: list[CardItem]


class CodeVisualization(_VisualizationBase):
    type: Literal["code"] = "code"
    content: CodeContent


class TableVisualization(_VisualizationBase):
    type: Literal["table"] = "table"
    content: TableContent


class DiffVisualization(_VisualizationBase):
    type: Literal["diff"] = "diff"
    content: DiffContent


Visualization = Annotated[
    Union[
        MermaidVisualization,
        CardsVisualization,
        CodeVisualization,
        TableVisualization,
        DiffVisualization,
    ],
    Field(discriminator="type"),
]


class VisualizationResponse(_CamelModel):
    title: str
    visualizations: list[Visualization]
    insights: list[str] = []
    tools_used: list[str] | None = Field(default=None, alias="toolsUsed")
    # Set when the model output could not be parsed and raw data is shown instead.
    fallback: bool = False


class CachedVisualization(_CamelModel):
    title: str
    visualizations: list[Visualization]
    insights: list[str] = []
    generated_at: str = Field(alias="generatedAt")


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


class QuerySessionData(_CamelModel):
    tool_name: Literal["query"] = Field(default="query", alias="toolName")
    intent: str
    summary: str
    tools_used: list[str] = Field(default_factory=list, alias="toolsUsed")
    iterations: int = 0
    tool_calls_executed: list[ToolCallRecord] = Field(default_factory=list, alias="toolCallsExecuted")
    cached_visualization: CachedVisualization | None = Field(default=None, alias="cachedVisualization")


class QueryResult(_CamelModel):
    success: bool
    summary: str = ""
    tools_used: list[str] = Field(default_factory=list, alias="toolsUsed")
    iterations: int = 0
    session_id: str | None = Field(default=None, alias="sessionId")
    visualization: VisualizationResponse | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Documentation validation
# ---------------------------------------------------------------------------


class PageStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    FAILED = "failed"
    UNCERTAIN = "uncertain"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DocIssue(BaseModel):
    page: str = ""
    line: int | None = None
    type: str = "runtime"
    severity: IssueSeverity = IssueSeverity.MEDIUM
    description: str


class PageValidation(BaseModel):
    path: str
    title: str | None = None
    status: PageStatus = PageStatus.PENDING
    summary: str = ""


class DocsSessionStatus(str, Enum):
    ACTIVE = "active"
    FINISHED = "finished"


class DocsValidationSessionData(_CamelModel):
    tool_name: Literal["validateDocs"] = Field(default="validateDocs", alias="toolName")
    repo: str
    pod_name: str = Field(default="", alias="podName")
    pod_namespace: str = Field(alias="podNamespace")
    container_image: str = Field(default="", alias="containerImage")
    pages_validated: list[PageValidation] = Field(default_factory=list, alias="pagesValidated")
    issues_found: list[DocIssue] = Field(default_factory=list, alias="issuesFound")
    status: DocsSessionStatus = DocsSessionStatus.ACTIVE
    ttl_hours: int = Field(default=24, alias="ttlHours")


class PageVerdict(BaseModel):
    """The model's JSON verdict for one validated page."""

    status: PageStatus
    summary: str = ""
    issues: list[DocIssue] = []
