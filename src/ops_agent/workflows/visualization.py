"""Visualization output parsing.

Models are asked for a JSON document with a title, a list of typed
visualizations and a list of insights. When the answer cannot be parsed the
caller gets a single ``code`` visualization holding the raw tool data instead.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from ops_agent.errors import ParseError
from ops_agent.models.agent_schemas import ToolCallRecord
from ops_agent.models.schemas import (
    VISUALIZATION_TYPES,
    CachedVisualization,
    CodeContent,
    CodeVisualization,
    VisualizationResponse,
)
from ops_agent.providers.tool_utils import parse_json_response

logger = logging.getLogger(__name__)

VISUALIZATION_PREFIX = "[visualization]"


def split_visualization_intent(intent: str) -> tuple[str, bool]:
    """Strip the visualization prefix; returns ``(intent, visualization_mode)``."""
    if intent.startswith(VISUALIZATION_PREFIX):
        return intent[len(VISUALIZATION_PREFIX):].strip(), True
    return intent, False


def _normalize_insight(insight: Any) -> str:
    if isinstance(insight, str):
        return insight
    if isinstance(insight, dict) and insight.get("title") and insight.get("description"):
        severity = f" [{insight['severity']}]" if insight.get("severity") else ""
        return f"{insight['title']}{severity}: {insight['description']}"
    return str(insight)


def parse_visualization_response(content: str, tools_used: list[str] | None = None) -> VisualizationResponse:
    """Parse a model answer into a VisualizationResponse. Raises ParseError."""
    parsed = parse_json_response(content)
    if (
        not isinstance(parsed, dict)
        or not parsed.get("title")
        or not isinstance(parsed.get("visualizations"), list)
        or not isinstance(parsed.get("insights"), list)
    ):
        raise ParseError("Invalid visualization response structure", raw=content)

    for viz in parsed["visualizations"]:
        if not isinstance(viz, dict) or not all(viz.get(k) for k in ("id", "label", "type")) or "content" not in viz:
            raise ParseError(f"Invalid visualization: missing required fields in {viz!r}", raw=content)
        if viz["type"] not in VISUALIZATION_TYPES:
            raise ParseError(f"Invalid visualization type: {viz['type']}", raw=content)

    try:
        return VisualizationResponse(
            title=parsed["title"],
            visualizations=parsed["visualizations"],
            insights=[_normalize_insight(i) for i in parsed["insights"]],
            tools_used=tools_used,
        )
    except ValidationError as e:
        raise ParseError(f"Invalid visualization content: {e}", raw=content) from e


def raw_data_visualization(
    title: str,
    records: list[ToolCallRecord],
    tools_used: list[str] | None = None,
    reason: str = "",
) -> VisualizationResponse:
    """Fallback view: the raw tool outputs as one JSON code block."""
    data = [{"tool": r.tool, "input": r.input, "output": r.output} for r in records]
    insights = ["The model response could not be rendered; showing raw tool data."]
    if reason:
        insights.append(reason)
    return VisualizationResponse(
        title=title,
        visualizations=[
            CodeVisualization(
                id="raw-data",
                label="Raw data",
                content=CodeContent(language="json", code=json.dumps(data, indent=2, default=str)),
            )
        ],
        insights=insights,
        tools_used=tools_used,
        fallback=True,
    )


def visualize(
    content: str,
    title: str,
    records: list[ToolCallRecord],
    tools_used: list[str] | None = None,
) -> VisualizationResponse:
    try:
        return parse_visualization_response(content, tools_used)
    except ParseError as e:
        logger.warning("Visualization parse failed, falling back to raw data: %s", e)
        return raw_data_visualization(title, records, tools_used, str(e))


def to_cached(response: VisualizationResponse) -> CachedVisualization:
    return CachedVisualization(
        title=response.title,
        visualizations=response.visualizations,
        insights=response.insights,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )
