"""Tests for the query workflow and visualization parsing."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from ops_agent.errors import ParseError, ProviderCallError
from ops_agent.models.agent_schemas import ToolCallRecord
from ops_agent.sessions import SessionStore
from ops_agent.tools import Tool, ToolRegistry
from ops_agent.workflows.query import QueryWorkflow, parse_summary
from ops_agent.workflows.visualization import (
    parse_visualization_response,
    split_visualization_intent,
    visualize,
)

from stubs import ScriptedProvider, text_step, tool_step

PODS_VIZ = {
    "title": "Pods in default",
    "visualizations": [
        {
            "id": "pods",
            "label": "Pods",
            "type": "table",
            "content": {"headers": ["Name", "Status"], "rows": [["api-0", "Running"]]},
        },
        {"id": "topology", "label": "Topology", "type": "mermaid", "content": "graph TD; svc-->api-0"},
    ],
    "insights": [
        {"title": "Restarts", "severity": "high", "description": "api-0 restarted 4 times"},
        "All pods are scheduled",
    ],
}


# ---------------------------------------------------------------------------
# Summary and visualization parsing
# ---------------------------------------------------------------------------


def test_parse_summary_variants():
    assert parse_summary('Done.\n{"summary": "Two databases run."}') == "Two databases run."
    assert parse_summary("Two databases run.") == "Two databases run."
    assert parse_summary('{"other": 1}') == "No summary provided"
    assert parse_summary("") == "No summary provided"
    assert parse_summary('{"summary": {"pods": 3}}') == '{"summary": {"pods": 3}}'
    assert parse_summary('{"summary": 42}') == '{"summary": 42}'


def test_split_visualization_intent():
    assert split_visualization_intent("[visualization] show pods") == ("show pods", True)
    assert split_visualization_intent("show pods") == ("show pods", False)


class TestVisualizationParsing:
    def test_valid_response(self):
        content = "Here you go:\n```json\n" + json.dumps(PODS_VIZ) + "\n```"
        viz = parse_visualization_response(content, ["kubectl_get"])

        assert viz.title == "Pods in default"
        assert [v.type for v in viz.visualizations] == ["table", "mermaid"]
        assert viz.visualizations[0].content.rows == [["api-0", "Running"]]
        assert viz.insights == ["Restarts [high]: api-0 restarted 4 times", "All pods are scheduled"]
        assert viz.tools_used == ["kubectl_get"]
        assert viz.fallback is False

    @pytest.mark.parametrize(
        "broken",
        [
            {**PODS_VIZ, "title": ""},
            {**PODS_VIZ, "insights": "none"},
            {**PODS_VIZ, "visualizations": [{"label": "x", "type": "code", "content": {"code": "x"}}]},
            {**PODS_VIZ, "visualizations": [{"id": "x", "label": "x", "type": "chart", "content": "x"}]},
            {**PODS_VIZ, "visualizations": [{"id": "x", "label": "x", "type": "table", "content": "rows"}]},
        ],
    )
    def test_invalid_response_raises(self, broken):
        with pytest.raises(ParseError):
            parse_visualization_response(json.dumps(broken))

    def test_unparseable_falls_back_to_raw_data(self):
        records = [ToolCallRecord(tool="kubectl_get", input={"resource": "pods"}, output="api-0 Running")]
        viz = visualize("I was unable to produce JSON", "show pods", records, ["kubectl_get"])

        assert viz.fallback is True
        assert viz.title == "show pods"
        [raw] = viz.visualizations
        assert raw.id == "raw-data"
        assert raw.type == "code"
        assert raw.content.language == "json"
        assert json.loads(raw.content.code) == [
            {"tool": "kubectl_get", "input": {"resource": "pods"}, "output": "api-0 Running"}
        ]


# ---------------------------------------------------------------------------
# QueryWorkflow
# ---------------------------------------------------------------------------


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        Tool(
            name="search_capabilities",
            description="search",
            parameters={"type": "object", "properties": {}},
            execute=lambda args: {"success": True, "data": [{"resourceName": "Cluster"}]},
            parallel_safe=True,
        )
    )
    return registry


class TestQueryWorkflow:
    @pytest.mark.asyncio
    async def test_summary_answer_creates_session(self):
        provider = ScriptedProvider(
            [
                tool_step(("search_capabilities", {"query": "database"})),
                text_step('{"summary": "One PostgreSQL cluster is running."}'),
            ]
        )
        store = SessionStore("qry")
        result = await QueryWorkflow(provider, _registry(), store).run("what databases are running?")

        assert result.success is True
        assert result.summary == "One PostgreSQL cluster is running."
        assert result.iterations == 2
        assert result.tools_used == ["search_capabilities"]
        assert result.session_id.startswith("qry-")

        data = store.get_session(result.session_id).data
        assert data["toolName"] == "query"
        assert data["intent"] == "what databases are running?"
        assert data["toolCallsExecuted"][0]["tool"] == "search_capabilities"
        assert data["cachedVisualization"] is None

        request = provider.requests[0]
        assert request.operation == "query"
        assert request.user_message == "what databases are running?"

    @pytest.mark.asyncio
    async def test_non_string_summary_keeps_the_raw_answer(self):
        provider = ScriptedProvider([text_step('{"summary": {"pods": 3}}')])
        store = SessionStore("qry")
        result = await QueryWorkflow(provider, _registry(), store).run("how many pods?")

        assert result.success is True
        assert result.summary == '{"summary": {"pods": 3}}'
        assert store.get_session(result.session_id).data["summary"] == result.summary

    @pytest.mark.asyncio
    async def test_visualization_mode_caches_the_view(self):
        provider = ScriptedProvider([text_step(json.dumps(PODS_VIZ))])
        store = SessionStore("qry")
        result = await QueryWorkflow(provider, _registry(), store).run("[visualization] show pods")

        assert result.visualization is not None
        assert result.summary == "Pods in default"
        assert provider.requests[0].user_message == "show pods"
        assert '"visualizations"' in provider.requests[0].system_prompt

        cached = store.get_session(result.session_id).data["cachedVisualization"]
        assert cached["title"] == "Pods in default"
        assert [v["id"] for v in cached["visualizations"]] == ["pods", "topology"]
        assert cached["generatedAt"]

    @pytest.mark.asyncio
    async def test_only_read_only_plugin_tools_are_offered(self):
        plugins = MagicMock()
        plugins.is_plugin_tool.return_value = True
        plugins.get_tool_descriptors.return_value = [
            Tool(name=n, description=n, parameters={}, execute=lambda a: None).descriptor()
            for n in ("kubectl_get", "kubectl_delete", "kubectl_logs")
        ]
        provider = ScriptedProvider([text_step('{"summary": "ok"}')])
        await QueryWorkflow(provider, _registry(), SessionStore("qry"), plugins=plugins).run("list pods")

        offered = [t.name for t in provider.requests[0].tools]
        assert offered == ["search_capabilities", "kubectl_get", "kubectl_logs"]

    @pytest.mark.asyncio
    async def test_failed_loop_creates_no_session(self):
        provider = ScriptedProvider([ProviderCallError("rate limited", "stub")])
        store = SessionStore("qry")
        result = await QueryWorkflow(provider, _registry(), store).run("anything")

        assert result.success is False
        assert "rate limited" in result.error
        assert result.session_id is None
        assert store.list_sessions() == []

    @pytest.mark.parametrize("intent", ["", "   ", "[visualization]"])
    @pytest.mark.asyncio
    async def test_empty_intent(self, intent):
        provider = ScriptedProvider()
        result = await QueryWorkflow(provider, _registry(), SessionStore("qry")).run(intent)
        assert result.success is False
        assert result.error == "Intent is required"
        assert provider.step_calls == 0
