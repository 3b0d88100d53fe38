"""In-process tools for the agentic loop."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ops_agent.models.agent_schemas import ToolDescriptor

logger = logging.getLogger(__name__)


def unknown_tool(name: str) -> dict[str, Any]:
    return {"success": False, "error": f"Unknown tool: {name}"}


@dataclass
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    # Sync or async; receives the tool arguments.
    execute: Callable[[dict[str, Any]], Any]
    parallel_safe: bool = False

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=self.parameters,
            parallel_safe=self.parallel_safe,
        )


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def register_many(self, tools: list[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool:
        return self._tools[name]

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def list_all(self) -> list[Tool]:
        return list(self._tools.values())

    def to_descriptors(self) -> list[ToolDescriptor]:
        return [tool.descriptor() for tool in self._tools.values()]

    async def execute(self, name: str, args: dict[str, Any]) -> Any:
        """Run a tool; failures come back as ``{"success": False, ...}``."""
        tool = self._tools.get(name)
        if tool is None:
            return unknown_tool(name)
        try:
            result = tool.execute(args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.error("Tool '%s' failed: %s", name, e)
            return {"success": False, "error": f"Error executing '{name}': {e}", "tool": name}
