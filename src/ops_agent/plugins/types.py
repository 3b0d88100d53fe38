"""Wire types for the plugin ``/execute`` endpoint."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ops_agent.models.agent_schemas import ToolDescriptor


class PluginConfig(BaseModel):
    name: str
    url: str
    timeout: float | None = None
    required: bool = False


class InvokePayload(BaseModel):
    tool: str
    args: dict[str, Any] = {}
    state: dict[str, Any] = {}


class ExecuteRequest(BaseModel):
    hook: Literal["describe", "invoke"]
    session_id: str | None = Field(default=None, serialization_alias="sessionId")
    payload: InvokePayload | None = None


class PluginToolDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: str = "agentic"
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )


class DescribeResponse(BaseModel):
    name: str
    version: str = ""
    tools: list[PluginToolDefinition] = []


class InvokeError(BaseModel):
    code: str = "PLUGIN_ERROR"
    message: str = "Unknown error"
    details: dict[str, Any] | None = None


class InvokeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(default="", alias="sessionId")
    success: bool
    result: Any = None
    error: InvokeError | None = None
    state: dict[str, Any] = {}

    @classmethod
    def failure(cls, code: str, message: str, state: dict[str, Any] | None = None) -> InvokeResponse:
        return cls(success=False, error=InvokeError(code=code, message=message), state=state or {})


class DiscoveredPlugin(BaseModel):
    name: str
    url: str
    version: str
    tools: list[PluginToolDefinition]
    discovered_at: datetime
