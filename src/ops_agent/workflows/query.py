"""Read-only cluster questions answered through the tool loop."""

from __future__ import annotations

import json
import logging

from ops_agent.agents.agentic_agent import AgenticAgent
from ops_agent.agents.console_callback import StepCallback
from ops_agent.agents.runner import CancellationToken
from ops_agent.models.agent_schemas import AgenticResult, LoopStatus
from ops_agent.models.schemas import QueryResult, QuerySessionData
from ops_agent.plugins.manager import PluginManager
from ops_agent.prompts.prompt_layer import PromptLibrary
from ops_agent.providers.base import AIProvider
from ops_agent.providers.tool_utils import first_json_object
from ops_agent.sessions import SessionStore
from ops_agent.tools import ToolRegistry
from ops_agent.tools.dispatcher import ToolDispatcher
from ops_agent.workflows.visualization import split_visualization_intent, to_cached, visualize

logger = logging.getLogger(__name__)

SESSION_PREFIX = "qry"
QUERY_MAX_ITERATIONS = 30
NO_SUMMARY = "No summary provided"

KUBECTL_READONLY_TOOLS = (
    "kubectl_api_resources",
    "kubectl_get",
    "kubectl_describe",
    "kubectl_logs",
    "kubectl_events",
    "kubectl_get_crd_schema",
)


def parse_summary(content: str) -> str:
    """The ``summary`` string of the first JSON object, else the raw text."""
    candidate = first_json_object(content)
    if candidate is None:
        return content.strip() or NO_SUMMARY
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return content.strip() or NO_SUMMARY
    if isinstance(parsed, dict):
        summary = parsed.get("summary")
        if summary is None or summary == "":
            return NO_SUMMARY
        if isinstance(summary, str) and summary.strip():
            return summary
    return content.strip() or NO_SUMMARY


class QueryWorkflow:
    def __init__(
        self,
        provider: AIProvider,
        registry: ToolRegistry,
        store: SessionStore,
        plugins: PluginManager | None = None,
        prompts: PromptLibrary | None = None,
        max_iterations: int = QUERY_MAX_ITERATIONS,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.store = store
        self.plugins = plugins
        self.prompts = prompts or PromptLibrary()
        self.max_iterations = max_iterations

    def dispatcher(self) -> ToolDispatcher:
        return ToolDispatcher(self.registry, self.plugins, plugin_tools=KUBECTL_READONLY_TOOLS)

    def _system_prompt(self, visualization_mode: bool) -> str:
        partial = "visualization_output" if visualization_mode else "query_simple_output"
        return self.prompts.render("query_system", output_instructions=self.prompts.render(partial))

    async def run(
        self,
        intent: str,
        cancel_token: CancellationToken | None = None,
        callback: StepCallback | None = None,
        interaction_id: str = "",
    ) -> QueryResult:
        intent, visualization_mode = split_visualization_intent(intent.strip())
        if not intent:
            return QueryResult(success=False, error="Intent is required")

        agent = AgenticAgent(
            self.provider,
            self.dispatcher(),
            self._system_prompt(visualization_mode),
            max_iterations=self.max_iterations,
            callback=callback,
        )
        logger.info("Processing query (visualization=%s): %s", visualization_mode, intent)
        result = await agent.run(intent, "query", cancel_token, interaction_id)

        if result.status is LoopStatus.FAILED:
            return QueryResult(
                success=False,
                error=result.final_message,
                iterations=result.iterations,
                tools_used=result.tools_used,
            )
        if visualization_mode:
            return self._visualization_result(intent, result)
        return self._summary_result(intent, result)

    def _summary_result(self, intent: str, result: AgenticResult) -> QueryResult:
        summary = parse_summary(result.final_message)
        session = self.store.create_session(
            QuerySessionData(
                intent=intent,
                summary=summary,
                tools_used=result.tools_used,
                iterations=result.iterations,
                tool_calls_executed=result.tool_calls_executed,
            )
        )
        return QueryResult(
            success=True,
            summary=summary,
            tools_used=result.tools_used,
            iterations=result.iterations,
            session_id=session.session_id,
        )

    def _visualization_result(self, intent: str, result: AgenticResult) -> QueryResult:
        viz = visualize(result.final_message, intent, result.tool_calls_executed, result.tools_used)
        session = self.store.create_session(
            QuerySessionData(
                intent=intent,
                summary=viz.title,
                tools_used=result.tools_used,
                iterations=result.iterations,
                tool_calls_executed=result.tool_calls_executed,
                cached_visualization=to_cached(viz),
            )
        )
        logger.info("Visualization session created: %s", session.session_id)
        return QueryResult(
            success=True,
            summary=viz.title,
            tools_used=result.tools_used,
            iterations=result.iterations,
            session_id=session.session_id,
            visualization=viz,
        )
