"""Placeholder provider used when no AI credentials are configured.

Lets AI-free operations (session listing, plugin inspection) work while
every model call fails with a readable message.
"""

from __future__ import annotations

from typing import Any

from ops_agent.errors import ProviderCallError
from ops_agent.models.agent_schemas import AIResponse, StepResult, ToolCall, ToolLoopRequest
from ops_agent.providers.base import AIProvider

NOT_AVAILABLE = (
    "AI provider is not available. No API keys configured. "
    "Please set ANTHROPIC_API_KEY, OPENAI_API_KEY, or GOOGLE_API_KEY."
)


class NoOpProvider(AIProvider):
    vendor = "noop"

    def __init__(self) -> None:
        super().__init__("none")

    def is_initialized(self) -> bool:
        return False

    async def send_message(self, message: str, operation: str = "generic", evaluation_context=None) -> AIResponse:
        raise ProviderCallError(NOT_AVAILABLE, self.vendor)

    async def _complete(self, message: str, operation: str) -> AIResponse:
        raise ProviderCallError(NOT_AVAILABLE, self.vendor)

    def _start_conversation(self, request: ToolLoopRequest) -> list[Any]:
        return []

    async def _step(self, request: ToolLoopRequest, conversation: list[Any], prepared_tools: Any) -> StepResult:
        raise ProviderCallError(NOT_AVAILABLE, self.vendor)

    def _append_tool_results(
        self,
        conversation: list[Any],
        step: StepResult,
        results: list[tuple[ToolCall, Any]],
    ) -> None:
        return None
