"""Plugin discovery and routing.

Plugins are listed in a JSON file; each one is asked to ``describe`` itself on
startup and the tools it reports are routed back to it by name.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from ops_agent.config import Settings, settings
from ops_agent.errors import ConfigurationError, PluginClientError, PluginDiscoveryError
from ops_agent.models.agent_schemas import ToolDescriptor
from ops_agent.plugins.client import PluginClient
from ops_agent.plugins.types import DiscoveredPlugin, InvokeResponse, PluginConfig, PluginToolDefinition

logger = logging.getLogger(__name__)

_configs_adapter = TypeAdapter(list[PluginConfig])


def parse_plugin_config(path: str | Path) -> list[PluginConfig]:
    """Read the plugin list. A missing file means no plugins."""
    config_path = Path(path)
    if not config_path.is_file():
        logger.debug("No plugin config at %s", config_path)
        return []
    try:
        raw = json.loads(config_path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to read plugin config {config_path}: {e}") from e
    try:
        configs = _configs_adapter.validate_python(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid plugin config {config_path}: {e}") from e

    names = [c.name for c in configs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate plugin names in {config_path}: {', '.join(duplicates)}")
    return configs


class PluginManager:
    def __init__(
        self,
        default_timeout: float = 30.0,
        discovery_attempts: int = 5,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.default_timeout = default_timeout
        self.discovery_attempts = max(discovery_attempts, 1)
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=16)
        self._transport = transport
        self._clients: dict[str, PluginClient] = {}
        self._plugins: dict[str, DiscoveredPlugin] = {}
        # tool name -> plugin name
        self._routes: dict[str, str] = {}

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> PluginManager:
        cfg = cfg or settings
        return cls(
            default_timeout=cfg.plugin_timeout_seconds,
            discovery_attempts=cfg.plugin_discovery_attempts,
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover_plugins(self, configs: list[PluginConfig]) -> list[DiscoveredPlugin]:
        """Describe every configured plugin.

        Optional plugins that stay unreachable are skipped. Raises
        PluginDiscoveryError when any required plugin fails.
        """
        failed: list[dict[str, str]] = []
        discovered: list[DiscoveredPlugin] = []

        for config in configs:
            client = PluginClient(config, self.default_timeout, transport=self._transport)
            try:
                plugin = await self._describe_with_retry(config, client)
            except (PluginClientError, ValidationError) as e:
                await client.aclose()
                logger.error("Failed to discover plugin %s at %s: %s", config.name, config.url, e)
                if config.required:
                    failed.append({"name": config.name, "url": config.url, "error": str(e)})
                continue

            await self._register(config, client, plugin)
            discovered.append(plugin)
            logger.info(
                "Discovered plugin %s v%s with %d tools", plugin.name, plugin.version, len(plugin.tools)
            )

        if failed:
            names = ", ".join(f["name"] for f in failed)
            raise PluginDiscoveryError(f"Required plugins failed discovery: {names}", failed)
        return discovered

    async def _describe_with_retry(self, config: PluginConfig, client: PluginClient) -> DiscoveredPlugin:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.discovery_attempts),
            wait=self._retry_wait,
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "Plugin %s discovery attempt %d failed: %s",
                config.name,
                state.attempt_number,
                state.outcome.exception() if state.outcome else None,
            ),
        )
        async for attempt in retrying:
            with attempt:
                response = await client.describe()
        return DiscoveredPlugin(
            name=config.name,
            url=config.url,
            version=response.version,
            tools=response.tools,
            discovered_at=datetime.now(timezone.utc),
        )

    async def _register(self, config: PluginConfig, client: PluginClient, plugin: DiscoveredPlugin) -> None:
        previous = self._clients.pop(config.name, None)
        if previous is not None:
            await previous.aclose()
            self._routes = {t: p for t, p in self._routes.items() if p != config.name}
        self._clients[config.name] = client
        self._plugins[config.name] = plugin
        for tool in plugin.tools:
            owner = self._routes.get(tool.name)
            if owner is not None and owner != config.name:
                logger.warning(
                    "Tool %s from plugin %s overrides the one from plugin %s", tool.name, config.name, owner
                )
            self._routes[tool.name] = config.name

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_discovered_plugins(self) -> list[DiscoveredPlugin]:
        return list(self._plugins.values())

    def get_discovered_tools(self) -> list[PluginToolDefinition]:
        tools = []
        for tool_name, plugin_name in self._routes.items():
            plugin = self._plugins[plugin_name]
            tools.extend(t for t in plugin.tools if t.name == tool_name)
        return tools

    def get_tool_descriptors(self, names: list[str] | None = None) -> list[ToolDescriptor]:
        tools = self.get_discovered_tools()
        if names is not None:
            wanted = set(names)
            tools = [t for t in tools if t.name in wanted]
        return [t.descriptor() for t in tools]

    def is_plugin_tool(self, name: str) -> bool:
        return name in self._routes

    def plugin_for_tool(self, name: str) -> str | None:
        return self._routes.get(name)

    def get_stats(self) -> dict[str, Any]:
        return {
            "pluginCount": len(self._plugins),
            "toolCount": len(self._routes),
            "plugins": {name: len(p.tools) for name, p in self._plugins.items()},
        }

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def invoke(
        self,
        plugin_name: str,
        tool: str,
        args: dict[str, Any],
        state: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> InvokeResponse:
        """Call one tool on a named plugin; transport failures become failed responses."""
        client = self._clients.get(plugin_name)
        if client is None:
            return InvokeResponse.failure("PLUGIN_NOT_FOUND", f"Plugin not found: {plugin_name}", state)
        try:
            return await client.invoke(tool, args, state, session_id)
        except PluginClientError as e:
            logger.error("Plugin %s failed invoking %s: %s", plugin_name, tool, e)
            return InvokeResponse.failure("PLUGIN_UNREACHABLE", str(e), state)
        except ValidationError as e:
            logger.error("Plugin %s returned a malformed response for %s: %s", plugin_name, tool, e)
            return InvokeResponse.failure("INVALID_RESPONSE", str(e), state)

    async def invoke_tool(
        self,
        tool: str,
        args: dict[str, Any],
        state: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> InvokeResponse:
        """Route a tool call to whichever plugin provides it."""
        plugin_name = self._routes.get(tool)
        if plugin_name is None:
            return InvokeResponse.failure("TOOL_NOT_FOUND", f"Tool not found in any plugin: {tool}", state)
        return await self.invoke(plugin_name, tool, args, state, session_id)

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
        self._plugins.clear()
        self._routes.clear()
