"""Agent facade: one system prompt, one dispatcher, any provider."""

from __future__ import annotations

import logging

from ops_agent.agents.console_callback import NullCallback, StepCallback
from ops_agent.agents.runner import CancellationToken
from ops_agent.models.agent_schemas import (
    DEFAULT_MAX_ITERATIONS,
    AgenticResult,
    EvaluationContext,
    ToolLoopRequest,
)
from ops_agent.providers.base import AIProvider
from ops_agent.tools.dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)


class AgenticAgent:
    def __init__(
        self,
        provider: AIProvider,
        dispatcher: ToolDispatcher,
        system_prompt: str,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        callback: StepCallback | None = None,
    ) -> None:
        self.provider = provider
        self.dispatcher = dispatcher
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.cb: StepCallback = callback or NullCallback()

    def build_request(
        self,
        task: str,
        operation: str = "tool-loop",
        cancel_token: CancellationToken | None = None,
        interaction_id: str = "",
    ) -> ToolLoopRequest:
        return ToolLoopRequest(
            system_prompt=self.system_prompt,
            user_message=task,
            tools=self.dispatcher.descriptors(),
            tool_executor=self.dispatcher,
            max_iterations=self.max_iterations,
            operation=operation,
            evaluation_context=EvaluationContext(user_intent=task, interaction_id=interaction_id),
            cancel_token=cancel_token,
            callback=self.cb,
        )

    async def run(
        self,
        task: str,
        operation: str = "tool-loop",
        cancel_token: CancellationToken | None = None,
        interaction_id: str = "",
    ) -> AgenticResult:
        request = self.build_request(task, operation, cancel_token, interaction_id)
        logger.info(
            "Running %s with %s/%s and %d tools",
            operation, self.provider.get_vendor_id(), self.provider.get_model(), len(request.tools),
        )
        return await self.provider.tool_loop(request)
