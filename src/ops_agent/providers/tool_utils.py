"""Prompt-side tool helpers for providers without native tool calling."""

from __future__ import annotations

import json
import re
from typing import Any

from ops_agent.errors import ParseError
from ops_agent.models.agent_schemas import ToolDescriptor

TOOL_CALL_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def format_tool_definitions(tools: list[ToolDescriptor]) -> str:
    parts = []
    for tool in tools:
        parts.append(
            f"### {tool.name}\n{tool.description}\n"
            f"Schema: {json.dumps(tool.input_schema)}\n"
        )
    return "\n".join(parts)


def format_tool_output(tool_name: str, output: Any) -> str:
    return f"Tool '{tool_name}' output:\n{json.dumps(output, indent=2, default=str)}"


def first_json_object(content: str) -> str | None:
    """Return the first balanced {...} span, honoring string literals."""
    start = content.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(content)):
        ch = content[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return content[start : i + 1]
    return None


def extract_tool_calls(content: str) -> list[dict[str, Any]]:
    """Extract ``{"tool": name, ...}`` objects from fenced JSON blocks.

    Falls back to the first bare JSON object when no fence is present.
    Malformed JSON is ignored.
    """
    calls: list[dict[str, Any]] = []
    matches = TOOL_CALL_RE.findall(content)
    if matches:
        for block in matches:
            try:
                parsed = json.loads(block)
            except json.JSONDecodeError:
                continue
            items = parsed if isinstance(parsed, list) else [parsed]
            calls.extend(item for item in items if isinstance(item, dict) and item.get("tool"))
        return calls

    candidate = first_json_object(content)
    if candidate is None:
        return calls
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return calls
    if isinstance(parsed, dict) and parsed.get("tool"):
        calls.append(parsed)
    return calls


def strip_tool_calls(content: str) -> str:
    """Remove fenced JSON blocks, leaving the surrounding prose."""
    return TOOL_CALL_RE.sub("", content).strip()


def parse_json_response(content: str) -> Any:
    """Parse a JSON document out of a model response.

    Accepts a bare document, a fenced block, or JSON surrounded by prose.
    Raises ParseError when nothing parses.
    """
    text = content.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    elif not text.startswith(("{", "[")):
        candidate = first_json_object(text)
        if candidate is not None:
            text = candidate
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Response is not valid JSON: {e}", raw=content) from e
