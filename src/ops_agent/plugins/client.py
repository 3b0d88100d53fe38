"""HTTP client for one plugin's ``POST /execute`` endpoint."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ops_agent.errors import PluginClientError
from ops_agent.plugins.types import DescribeResponse, ExecuteRequest, InvokePayload, InvokeResponse, PluginConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class PluginClient:
    def __init__(
        self,
        config: PluginConfig,
        default_timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.timeout = config.timeout or default_timeout
        self._client = httpx.AsyncClient(
            base_url=config.url.rstrip("/"),
            timeout=self.timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def url(self) -> str:
        return self.config.url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def describe(self) -> DescribeResponse:
        logger.debug("Calling plugin describe hook: %s (%s)", self.name, self.url)
        data = await self._execute(ExecuteRequest(hook="describe"))
        response = DescribeResponse.model_validate(data)
        logger.debug("Plugin %s v%s describes %d tools", self.name, response.version, len(response.tools))
        return response

    async def invoke(
        self,
        tool: str,
        args: dict[str, Any],
        state: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> InvokeResponse:
        request = ExecuteRequest(
            hook="invoke",
            session_id=session_id,
            payload=InvokePayload(tool=tool, args=args, state=state or {}),
        )
        logger.debug("Calling plugin invoke hook: %s.%s", self.name, tool)
        data = await self._execute(request)
        response = InvokeResponse.model_validate(data)
        logger.debug("Plugin %s.%s success=%s", self.name, tool, response.success)
        return response

    async def health_check(self) -> bool:
        try:
            await self.describe()
            return True
        except PluginClientError:
            return False

    async def _execute(self, request: ExecuteRequest) -> Any:
        body = request.model_dump(by_alias=True, exclude_none=True)
        try:
            resp = await self._client.post("/execute", json=body)
        except httpx.TimeoutException as e:
            raise PluginClientError(
                f"Plugin request timed out after {self.timeout:g}s", self.name, self.url
            ) from e
        except httpx.HTTPError as e:
            raise PluginClientError(
                f"Failed to communicate with plugin: {e}", self.name, self.url
            ) from e

        if resp.status_code >= 400:
            raise PluginClientError(
                f"Plugin returned HTTP {resp.status_code}: {resp.text}", self.name, self.url
            )
        try:
            return resp.json()
        except ValueError as e:
            raise PluginClientError(f"Plugin returned invalid JSON: {e}", self.name, self.url) from e
