"""Anthropic provider using the native SDK.

Prompt caching needs explicit ``cache_control`` markers and the API accepts
at most four per request, so only the last tool definition (which caches the
whole tool array) and the system prompt carry one.
"""

from __future__ import annotations

import json
from typing import Any

import anthropic
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ops_agent.config import ModelConfig
from ops_agent.errors import ConfigurationError
from ops_agent.models.agent_schemas import AIResponse, StepResult, ToolCall, ToolLoopRequest, Usage
from ops_agent.providers.base import AIProvider
from ops_agent.providers.debug import DebugRecorder

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
MESSAGE_MAX_TOKENS = 64000
STEP_MAX_TOKENS = 4096
CACHE_MARKER = {"type": "ephemeral"}

_TRANSIENT = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


def _usage(raw: Any) -> Usage:
    """Normalize Anthropic usage; cache fields are absent when caching is unused."""
    if raw is None:
        return Usage()
    return Usage(
        input_tokens=getattr(raw, "input_tokens", 0) or 0,
        output_tokens=getattr(raw, "output_tokens", 0) or 0,
        cache_write_tokens=getattr(raw, "cache_creation_input_tokens", 0) or 0,
        cache_read_tokens=getattr(raw, "cache_read_input_tokens", 0) or 0,
    )


def _is_error_output(output: Any) -> bool:
    return isinstance(output, dict) and output.get("success") is False


class AnthropicProvider(AIProvider):
    vendor = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str = "",
        debug: DebugRecorder | None = None,
        operation_models: dict[str, ModelConfig] | None = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("API key is required for anthropic provider")
        super().__init__(model or DEFAULT_MODEL, debug, operation_models)
        self.client = anthropic.AsyncAnthropic(api_key=api_key)

    def is_initialized(self) -> bool:
        return self.client is not None

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=2, max=30),
        reraise=True,
    )
    async def _create(self, **kwargs: Any) -> Any:
        return await self.client.messages.create(**kwargs)

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=2, max=30),
        reraise=True,
    )
    async def _stream(self, **kwargs: Any) -> Any:
        # Streaming keeps long generations from hitting the non-streaming timeout.
        async with self.client.messages.stream(**kwargs) as stream:
            return await stream.get_final_message()

    async def _complete(self, message: str, operation: str) -> AIResponse:
        cfg = self.model_for(operation)
        kwargs: dict[str, Any] = {
            "model": cfg.model,
            "max_tokens": cfg.max_tokens or MESSAGE_MAX_TOKENS,
            "messages": [{"role": "user", "content": message}],
        }
        if cfg.temperature is not None:
            kwargs["temperature"] = cfg.temperature
        final = await self._stream(**kwargs)
        content = "".join(block.text for block in final.content if block.type == "text")
        return AIResponse(content=content, usage=_usage(final.usage))

    def _start_conversation(self, request: ToolLoopRequest) -> list[Any]:
        return [{"role": "user", "content": request.user_message}]

    def _prepare_tools(self, request: ToolLoopRequest) -> list[dict[str, Any]]:
        tools: list[dict[str, Any]] = []
        for tool in request.tools:
            tools.append(
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.input_schema,
                }
            )
        if tools and request.cache_tools:
            tools[-1]["cache_control"] = CACHE_MARKER
        return tools

    def _system_blocks(self, request: ToolLoopRequest) -> list[dict[str, Any]]:
        block: dict[str, Any] = {"type": "text", "text": request.system_prompt}
        if request.cache_system_prompt:
            block["cache_control"] = CACHE_MARKER
        return [block]

    async def _step(
        self,
        request: ToolLoopRequest,
        conversation: list[Any],
        prepared_tools: Any,
    ) -> StepResult:
        cfg = self.model_for(request.operation)
        kwargs: dict[str, Any] = {
            "model": cfg.model,
            "max_tokens": cfg.max_tokens or STEP_MAX_TOKENS,
            "system": self._system_blocks(request),
            "messages": conversation,
        }
        if prepared_tools:
            kwargs["tools"] = prepared_tools
        response = await self._create(**kwargs)

        texts: list[str] = []
        calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))
        return StepResult(
            text="\n".join(texts),
            tool_calls=calls,
            usage=_usage(response.usage),
            raw=response,
        )

    def _append_tool_results(
        self,
        conversation: list[Any],
        step: StepResult,
        results: list[tuple[ToolCall, Any]],
    ) -> None:
        assistant: list[dict[str, Any]] = []
        if step.text:
            assistant.append({"type": "text", "text": step.text})
        for call in step.tool_calls:
            assistant.append(
                {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
            )
        tool_results = [
            {
                "type": "tool_result",
                "tool_use_id": call.id,
                "content": output if isinstance(output, str) else json.dumps(output, default=str),
                "is_error": _is_error_output(output),
            }
            for call, output in results
        ]
        conversation.append({"role": "assistant", "content": assistant})
        conversation.append({"role": "user", "content": tool_results})
