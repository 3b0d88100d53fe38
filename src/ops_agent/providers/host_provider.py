"""Provider backed by the calling client's own model (host sampling).

The host exposes plain text completion only, so tools are described in the
system prompt and the model asks for them with fenced JSON blocks of the form
``{"tool": "<name>", ...arguments}``. The host does not report usage.
"""

from __future__ import annotations

import itertools
from typing import Any, Awaitable, Callable

from ops_agent.models.agent_schemas import AIResponse, StepResult, ToolCall, ToolLoopRequest
from ops_agent.providers.base import AIProvider
from ops_agent.providers.debug import DebugRecorder
from ops_agent.providers.tool_utils import (
    extract_tool_calls,
    format_tool_definitions,
    format_tool_output,
    strip_tool_calls,
)

SamplingHandler = Callable[[list[dict[str, str]], str], Awaitable[str]]

TOOL_INSTRUCTIONS = """\
## Tool usage

To call a tool, reply with one or more fenced JSON blocks:

```json
{"tool": "<tool name>", "<argument>": "<value>"}
```

Tool results arrive in the next message. When you have the final answer,
reply with plain text and no JSON blocks."""


class HostProvider(AIProvider):
    vendor = "host"

    def __init__(
        self,
        sampling_handler: SamplingHandler | None = None,
        model: str = "host",
        debug: DebugRecorder | None = None,
    ) -> None:
        super().__init__(model, debug)
        self._sampling_handler = sampling_handler
        self._call_ids = itertools.count(1)

    def set_sampling_handler(self, handler: SamplingHandler) -> None:
        self._sampling_handler = handler

    def is_initialized(self) -> bool:
        return self._sampling_handler is not None

    async def _sample(self, messages: list[dict[str, str]], system_prompt: str) -> str:
        return await self._sampling_handler(messages, system_prompt)

    async def _complete(self, message: str, operation: str) -> AIResponse:
        content = await self._sample([{"role": "user", "content": message}], "")
        return AIResponse(content=content)

    def _start_conversation(self, request: ToolLoopRequest) -> list[Any]:
        return [{"role": "user", "content": request.user_message}]

    def _prepare_tools(self, request: ToolLoopRequest) -> str:
        if not request.tools:
            return request.system_prompt
        return (
            f"{request.system_prompt}\n\n## Available tools\n\n"
            f"{format_tool_definitions(request.tools)}\n{TOOL_INSTRUCTIONS}"
        )

    async def _step(
        self,
        request: ToolLoopRequest,
        conversation: list[Any],
        prepared_tools: Any,
    ) -> StepResult:
        content = await self._sample(conversation, prepared_tools)
        calls = []
        for raw in extract_tool_calls(content):
            args = {k: v for k, v in raw.items() if k != "tool"}
            calls.append(ToolCall(id=f"call-{next(self._call_ids)}", name=str(raw["tool"]), arguments=args))
        text = strip_tool_calls(content) if calls else content
        return StepResult(text=text, tool_calls=calls, raw=content)

    def _append_tool_results(
        self,
        conversation: list[Any],
        step: StepResult,
        results: list[tuple[ToolCall, Any]],
    ) -> None:
        conversation.append({"role": "assistant", "content": step.raw or step.text})
        conversation.append(
            {
                "role": "user",
                "content": "\n\n".join(format_tool_output(call.name, output) for call, output in results),
            }
        )
