"""OpenAI-compatible provider (OpenAI, Google's OpenAI endpoint, any base_url).

These vendors cache long prompt prefixes automatically, so cache hints from
the request are accepted and ignored. ``prompt_tokens`` includes cached
tokens; the normalized ``input_tokens`` counts only the uncached part.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import openai
from openai import AsyncOpenAI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ops_agent.config import ModelConfig
from ops_agent.errors import ConfigurationError
from ops_agent.models.agent_schemas import AIResponse, StepResult, ToolCall, ToolLoopRequest, Usage
from ops_agent.providers.base import AIProvider
from ops_agent.providers.debug import DebugRecorder

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "openai": "gpt-5",
    "google": "gemini-2.5-pro",
}
BASE_URLS = {
    "google": "https://generativelanguage.googleapis.com/v1beta/openai/",
}
# OpenAI reasoning models reject max_tokens on chat completions.
MAX_TOKENS_PARAM = {
    "openai": "max_completion_tokens",
}

_TRANSIENT = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def _create_openai_client(api_key: str, base_url: str, promptlayer_api_key: str = "") -> AsyncOpenAI:
    """Create an async OpenAI client, optionally wrapped with PromptLayer."""
    kwargs: dict[str, Any] = {"api_key": api_key}
    if base_url:
        kwargs["base_url"] = base_url
    if promptlayer_api_key:
        from promptlayer import PromptLayer

        promptlayer_client = PromptLayer(api_key=promptlayer_api_key)
        return promptlayer_client.openai.AsyncOpenAI(**kwargs)
    return AsyncOpenAI(**kwargs)


def _usage(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    prompt = getattr(raw, "prompt_tokens", 0) or 0
    details = getattr(raw, "prompt_tokens_details", None)
    cached = (getattr(details, "cached_tokens", 0) or 0) if details is not None else 0
    return Usage(
        input_tokens=max(prompt - cached, 0),
        output_tokens=getattr(raw, "completion_tokens", 0) or 0,
        cache_read_tokens=cached,
    )


class OpenAIProvider(AIProvider):
    def __init__(
        self,
        api_key: str,
        model: str = "",
        vendor: str = "openai",
        base_url: str = "",
        debug: DebugRecorder | None = None,
        operation_models: dict[str, ModelConfig] | None = None,
        promptlayer_api_key: str = "",
    ) -> None:
        if not api_key:
            raise ConfigurationError(f"API key is required for {vendor} provider")
        if vendor not in DEFAULT_MODELS:
            raise ConfigurationError(
                f"Unsupported provider: {vendor}. Must be one of: {', '.join(DEFAULT_MODELS)}"
            )
        self.vendor = vendor
        super().__init__(model or DEFAULT_MODELS[vendor], debug, operation_models)
        self._pl_tags = ["ops-agent"] if promptlayer_api_key else None
        self.client = _create_openai_client(
            api_key, base_url or BASE_URLS.get(vendor, ""), promptlayer_api_key
        )

    def is_initialized(self) -> bool:
        return self.client is not None

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=2, max=30),
        reraise=True,
    )
    async def _create(self, operation: str, **kwargs: Any) -> Any:
        cfg = self.model_for(operation)
        kwargs["model"] = cfg.model
        if cfg.temperature is not None:
            kwargs["temperature"] = cfg.temperature
        if cfg.max_tokens is not None:
            kwargs[MAX_TOKENS_PARAM.get(self.vendor, "max_tokens")] = cfg.max_tokens
        if self._pl_tags:
            kwargs["pl_tags"] = [*self._pl_tags, operation]
        return await self.client.chat.completions.create(**kwargs)

    async def _complete(self, message: str, operation: str) -> AIResponse:
        response = await self._create(operation, messages=[{"role": "user", "content": message}])
        return AIResponse(
            content=response.choices[0].message.content or "",
            usage=_usage(response.usage),
        )

    def _start_conversation(self, request: ToolLoopRequest) -> list[Any]:
        return [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": request.user_message},
        ]

    def _prepare_tools(self, request: ToolLoopRequest) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema,
                },
            }
            for tool in request.tools
        ]

    async def _step(
        self,
        request: ToolLoopRequest,
        conversation: list[Any],
        prepared_tools: Any,
    ) -> StepResult:
        kwargs: dict[str, Any] = {"messages": conversation}
        if prepared_tools:
            kwargs["tools"] = prepared_tools
        response = await self._create(request.operation, **kwargs)
        message = response.choices[0].message

        calls: list[ToolCall] = []
        for tool_call in message.tool_calls or []:
            try:
                args = json.loads(tool_call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning("Unparseable arguments for tool '%s'", tool_call.function.name)
                args = {}
            if not isinstance(args, dict):
                args = {"value": args}
            calls.append(ToolCall(id=tool_call.id, name=tool_call.function.name, arguments=args))

        return StepResult(
            text=message.content or "",
            tool_calls=calls,
            usage=_usage(response.usage),
            raw=message,
        )

    def _append_tool_results(
        self,
        conversation: list[Any],
        step: StepResult,
        results: list[tuple[ToolCall, Any]],
    ) -> None:
        conversation.append(
            {
                "role": "assistant",
                "content": step.text or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in step.tool_calls
                ],
            }
        )
        for call, output in results:
            conversation.append(
                {
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": output if isinstance(output, str) else json.dumps(output, default=str),
                }
            )
