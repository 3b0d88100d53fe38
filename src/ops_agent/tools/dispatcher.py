"""Routes tool calls from the loop to local tools or plugins."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ops_agent.models.agent_schemas import ToolDescriptor
from ops_agent.plugins.manager import PluginManager
from ops_agent.tools import ToolRegistry, unknown_tool

logger = logging.getLogger(__name__)


def unwrap_plugin_result(result: Any) -> Any:
    """Plugin tools answer ``{success, data}``; the model only needs ``data``."""
    if isinstance(result, dict) and "success" in result and "data" in result:
        if result["success"]:
            return result["data"]
        return {"success": False, "error": result.get("error") or "Plugin tool failed"}
    return result


class ToolDispatcher:
    """A ``ToolExecutor`` over a local registry and an optional plugin allow-list.

    Local tools win over plugin tools with the same name. Anything else comes
    back as an "Unknown tool" result.
    """

    def __init__(
        self,
        registry: ToolRegistry | None = None,
        plugins: PluginManager | None = None,
        plugin_tools: Iterable[str] | None = None,
        session_id: str | None = None,
    ) -> None:
        self.registry = registry or ToolRegistry()
        self.plugins = plugins
        self.plugin_tools = set(plugin_tools) if plugin_tools is not None else None
        self.session_id = session_id

    def _plugin_allowed(self, name: str) -> bool:
        if self.plugins is None or not self.plugins.is_plugin_tool(name):
            return False
        return self.plugin_tools is None or name in self.plugin_tools

    def descriptors(self) -> list[ToolDescriptor]:
        tools = self.registry.to_descriptors()
        if self.plugins is not None:
            local = set(self.registry.names())
            for descriptor in self.plugins.get_tool_descriptors():
                if descriptor.name not in local and self._plugin_allowed(descriptor.name):
                    tools.append(descriptor)
        return tools

    async def __call__(self, name: str, args: dict[str, Any]) -> Any:
        return await self.dispatch(name, args)

    async def dispatch(self, name: str, args: dict[str, Any]) -> Any:
        if self.registry.has(name):
            logger.debug("Dispatching %s to local tool", name)
            return await self.registry.execute(name, args)

        if self._plugin_allowed(name):
            logger.debug("Dispatching %s to plugin %s", name, self.plugins.plugin_for_tool(name))
            response = await self.plugins.invoke_tool(name, args, session_id=self.session_id)
            if not response.success:
                message = response.error.message if response.error else "Plugin tool failed"
                return {"success": False, "error": message, "tool": name}
            return unwrap_plugin_result(response.result)

        logger.warning("Model requested unknown tool %s", name)
        return unknown_tool(name)
