"""Models for the agentic tool loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from ops_agent.agents.runner import CancellationToken

ToolExecutor = Callable[[str, dict[str, Any]], Awaitable[Any]]

DEFAULT_MAX_ITERATIONS = 20


class ToolDescriptor(BaseModel):
    name: str
    description: str
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    parallel_safe: bool = False


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: dict[str, Any] = {}


class ToolCallRecord(BaseModel):
    tool: str
    input: dict[str, Any] = {}
    output: Any = None


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0

    def minus(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=max(self.input_tokens - other.input_tokens, 0),
            output_tokens=max(self.output_tokens - other.output_tokens, 0),
            cache_write_tokens=max(self.cache_write_tokens - other.cache_write_tokens, 0),
            cache_read_tokens=max(self.cache_read_tokens - other.cache_read_tokens, 0),
        )


class TokenTotals(BaseModel):
    input: int = 0
    output: int = 0
    cache_write: int = 0
    cache_read: int = 0

    def add(self, usage: Usage) -> None:
        self.input += usage.input_tokens
        self.output += usage.output_tokens
        self.cache_write += usage.cache_write_tokens
        self.cache_read += usage.cache_read_tokens

    def as_usage(self) -> Usage:
        return Usage(
            input_tokens=self.input,
            output_tokens=self.output,
            cache_write_tokens=self.cache_write,
            cache_read_tokens=self.cache_read,
        )


class AIResponse(BaseModel):
    content: str
    usage: Usage = Field(default_factory=Usage)


class LoopStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class CompletionReason(str, Enum):
    FINAL_TEXT = "final_text"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"
    ERROR = "error"


class AgenticResult(BaseModel):
    final_message: str
    iterations: int
    tool_calls_executed: list[ToolCallRecord] = []
    token_totals: TokenTotals = Field(default_factory=TokenTotals)
    status: LoopStatus = LoopStatus.SUCCESS
    completion_reason: CompletionReason = CompletionReason.FINAL_TEXT
    model: str = ""
    started_at: datetime

    @property
    def tools_used(self) -> list[str]:
        """Distinct tool names in order of first use."""
        return list(dict.fromkeys(record.tool for record in self.tool_calls_executed))


class EvaluationContext(BaseModel):
    user_intent: str = ""
    interaction_id: str = ""


@dataclass
class ToolLoopRequest:
    system_prompt: str
    user_message: str
    tools: list[ToolDescriptor]
    tool_executor: ToolExecutor
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    operation: str = "tool-loop"
    evaluation_context: EvaluationContext | None = None
    # Cache eligibility; each provider decides how (or whether) to mark it.
    cache_tools: bool = True
    cache_system_prompt: bool = True
    cancel_token: CancellationToken | None = None
    callback: Any = None


@dataclass
class StepResult:
    """One round-trip to the model, normalized by the provider variant."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    raw: Any = None
