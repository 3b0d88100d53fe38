"""Provider contract and the shared tool-loop state machine.

Every vendor variant implements a handful of hooks (``_complete``,
``_start_conversation``, ``_step``, ``_append_tool_results``) and inherits the
loop itself, so iteration limits, usage accounting, the empty-final-text
fallback and failure handling behave identically across vendors.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ops_agent.agents.console_callback import NullCallback, StepCallback
from ops_agent.agents.runner import LoopCancelled
from ops_agent.config import ModelConfig
from ops_agent.errors import ProviderCallError
from ops_agent.models.agent_schemas import (
    AgenticResult,
    AIResponse,
    CompletionReason,
    EvaluationContext,
    LoopStatus,
    StepResult,
    TokenTotals,
    ToolCall,
    ToolCallRecord,
    ToolLoopRequest,
    Usage,
)
from ops_agent.providers.debug import DebugRecorder, EvaluationMetrics

logger = logging.getLogger(__name__)

MAX_ITERATIONS_MESSAGE = "Tool loop reached the iteration limit before producing a final answer."


class UsageScope(str, Enum):
    PER_STEP = "per_step"
    CUMULATIVE = "cumulative"


def last_non_empty(texts: list[str]) -> str:
    for text in reversed(texts):
        if text and text.strip():
            return text
    return ""


class _GuardedCallback:
    """Forwards loop events; a failing callback is logged and the loop goes on."""

    def __init__(self, callback: StepCallback) -> None:
        self._callback = callback

    def _emit(self, event: str, *args: Any) -> None:
        try:
            getattr(self._callback, event)(*args)
        except Exception as e:
            logger.warning("Step callback %s failed: %s", event, e)

    def on_step_start(self, step: int, max_steps: int) -> None:
        self._emit("on_step_start", step, max_steps)

    def on_thinking(self, text: str) -> None:
        self._emit("on_thinking", text)

    def on_tool_call(self, name: str, args: dict[str, Any]) -> None:
        self._emit("on_tool_call", name, args)

    def on_tool_result(self, name: str, output: Any) -> None:
        self._emit("on_tool_result", name, output)

    def on_finish(self, text: str, steps: int, tool_calls: int) -> None:
        self._emit("on_finish", text, steps, tool_calls)


class AIProvider(ABC):
    vendor: str = ""
    usage_scope: UsageScope = UsageScope.PER_STEP

    def __init__(
        self,
        model: str,
        debug: DebugRecorder | None = None,
        operation_models: dict[str, ModelConfig] | None = None,
    ) -> None:
        self.model = model
        self.debug = debug
        self._operation_models = operation_models or {}

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    @abstractmethod
    def is_initialized(self) -> bool: ...

    def get_vendor_id(self) -> str:
        return self.vendor

    def get_model(self) -> str:
        return self.model

    def model_for(self, operation: str) -> ModelConfig:
        """Model settings for an operation tag.

        Falls back to the models.yaml default block (the "" entry), then to the
        provider model.
        """
        override = self._operation_models.get(operation)
        if override is None:
            override = self._operation_models.get("")
        if override is None:
            return ModelConfig(model=self.model)
        return ModelConfig(
            model=override.model or self.model,
            max_tokens=override.max_tokens,
            temperature=override.temperature,
        )

    async def send_message(
        self,
        message: str,
        operation: str = "generic",
        evaluation_context: EvaluationContext | None = None,
    ) -> AIResponse:
        """Single-shot completion without tools. Raises ProviderCallError."""
        if not self.is_initialized():
            raise ProviderCallError(f"{self.vendor} provider not initialized", self.vendor)

        start = time.monotonic()
        try:
            response = await self._complete(message, operation)
        except ProviderCallError:
            raise
        except Exception as e:
            raise ProviderCallError(f"{self.vendor} API error: {e}", self.vendor) from e

        if self.debug is not None:
            duration_ms = int((time.monotonic() - start) * 1000)
            self.debug.record_interaction(operation, message, response, self.vendor, self.model)
            self.debug.record_metrics(
                EvaluationMetrics(
                    operation=operation,
                    vendor=self.vendor,
                    model=self.model_for(operation).model,
                    usage=response.usage,
                    duration_ms=duration_ms,
                    evaluation_context=evaluation_context,
                )
            )
        return response

    async def tool_loop(self, request: ToolLoopRequest) -> AgenticResult:
        """Drive the model through tool calls until it answers or hits the cap.

        Never raises for vendor or tool failures; those come back as a result
        with ``status=failed``.
        """
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        cb: StepCallback = _GuardedCallback(request.callback or NullCallback())
        token = request.cancel_token
        max_iterations = request.max_iterations

        iterations = 0
        records: list[ToolCallRecord] = []
        texts: list[str] = []
        totals = TokenTotals()
        reported = Usage()

        def finish(message: str, status: LoopStatus, reason: CompletionReason) -> AgenticResult:
            result = AgenticResult(
                final_message=message,
                iterations=iterations,
                tool_calls_executed=records,
                token_totals=totals,
                status=status,
                completion_reason=reason,
                model=self.model_for(request.operation).model,
                started_at=started_at,
            )
            self._record_summary(request, result, start)
            return result

        try:
            if not self.is_initialized():
                raise ProviderCallError(f"{self.vendor} provider not initialized", self.vendor)

            conversation = self._start_conversation(request)
            prepared_tools = self._prepare_tools(request)

            while iterations < max_iterations:
                if token is not None:
                    token.raise_if_cancelled()
                iterations += 1
                cb.on_step_start(iterations, max_iterations)

                step_start = time.monotonic()
                step = await self._step(request, conversation, prepared_tools)
                reported = self._accumulate(totals, step.usage, reported)
                texts.append(step.text)
                self._record_step(request, conversation, step, iterations, step_start)

                if not step.tool_calls:
                    message = last_non_empty(texts)
                    cb.on_finish(message, iterations, len(records))
                    logger.info(
                        "Tool loop '%s' finished after %d iterations, %d tool calls",
                        request.operation, iterations, len(records),
                    )
                    return finish(message, LoopStatus.SUCCESS, CompletionReason.FINAL_TEXT)

                if step.text:
                    cb.on_thinking(step.text)

                results = await self._execute_calls(request, step.tool_calls, cb)
                for call, output in results:
                    records.append(
                        ToolCallRecord(tool=call.name, input=call.arguments, output=output)
                    )
                self._append_tool_results(conversation, step, results)

            logger.warning(
                "Tool loop '%s' hit max iterations (%d), returning partial result",
                request.operation, max_iterations,
            )
            message = last_non_empty(texts) or MAX_ITERATIONS_MESSAGE
            cb.on_finish(message, iterations, len(records))
            return finish(message, LoopStatus.SUCCESS, CompletionReason.MAX_ITERATIONS)

        except LoopCancelled as e:
            logger.warning("Tool loop '%s' cancelled: %s", request.operation, e)
            message = last_non_empty(texts) or f"Tool loop cancelled ({e})"
            return finish(message, LoopStatus.FAILED, CompletionReason.CANCELLED)

        except Exception as e:
            logger.error("Tool loop '%s' failed: %s", request.operation, e)
            iterations = 0
            records = []
            totals = TokenTotals()
            return finish(
                f"{self.vendor} tool loop error: {e}",
                LoopStatus.FAILED,
                CompletionReason.ERROR,
            )

    # ------------------------------------------------------------------
    # Vendor hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _complete(self, message: str, operation: str) -> AIResponse: ...

    @abstractmethod
    def _start_conversation(self, request: ToolLoopRequest) -> list[Any]: ...

    def _prepare_tools(self, request: ToolLoopRequest) -> Any:
        return request.tools

    @abstractmethod
    async def _step(
        self,
        request: ToolLoopRequest,
        conversation: list[Any],
        prepared_tools: Any,
    ) -> StepResult: ...

    @abstractmethod
    def _append_tool_results(
        self,
        conversation: list[Any],
        step: StepResult,
        results: list[tuple[ToolCall, Any]],
    ) -> None: ...

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _accumulate(self, totals: TokenTotals, usage: Usage, reported: Usage) -> Usage:
        """Add one step's usage to the run totals; returns the new baseline."""
        if self.usage_scope is UsageScope.CUMULATIVE:
            totals.add(usage.minus(reported))
            return usage
        totals.add(usage)
        return reported

    async def _execute_calls(
        self,
        request: ToolLoopRequest,
        calls: list[ToolCall],
        cb: StepCallback,
    ) -> list[tuple[ToolCall, Any]]:
        """Run the step's tool calls in order.

        Calls run one at a time unless a run of consecutive calls targets tools
        declared ``parallel_safe``; such a run is gathered concurrently.
        """
        safe = {tool.name for tool in request.tools if tool.parallel_safe}
        results: list[tuple[ToolCall, Any]] = []
        batch: list[ToolCall] = []

        async def flush() -> None:
            if not batch:
                return
            if request.cancel_token is not None:
                request.cancel_token.raise_if_cancelled()
            for call in batch:
                cb.on_tool_call(call.name, call.arguments)
            outputs = await asyncio.gather(*(self._run_tool(request, c) for c in batch))
            for call, output in zip(batch, outputs):
                cb.on_tool_result(call.name, output)
                results.append((call, output))
            batch.clear()

        for call in calls:
            if call.name in safe:
                batch.append(call)
                continue
            await flush()
            if request.cancel_token is not None:
                request.cancel_token.raise_if_cancelled()
            cb.on_tool_call(call.name, call.arguments)
            output = await self._run_tool(request, call)
            cb.on_tool_result(call.name, output)
            results.append((call, output))
        await flush()
        return results

    async def _run_tool(self, request: ToolLoopRequest, call: ToolCall) -> Any:
        try:
            return await request.tool_executor(call.name, call.arguments)
        except Exception as e:
            logger.error("Tool '%s' raised inside the executor: %s", call.name, e)
            return {"success": False, "error": str(e), "tool": call.name}

    def _record_step(
        self,
        request: ToolLoopRequest,
        conversation: list[Any],
        step: StepResult,
        iteration: int,
        step_start: float,
    ) -> None:
        if self.debug is None:
            return
        prompt = "\n\n---\n\n".join(
            json.dumps(message, indent=2, default=str) for message in conversation
        )
        rendered = step.text
        if step.tool_calls:
            calls = "\n".join(f"[tool_use] {c.name} {json.dumps(c.arguments)}" for c in step.tool_calls)
            rendered = f"{rendered}\n{calls}".strip()
        operation = f"{request.operation}-iter{iteration}"
        response = AIResponse(content=rendered, usage=step.usage)
        self.debug.record_interaction(
            operation, f"{request.system_prompt}\n\n---\n\n{prompt}", response, self.vendor, self.model
        )
        self.debug.record_metrics(
            EvaluationMetrics(
                operation=operation,
                vendor=self.vendor,
                model=self.model_for(request.operation).model,
                usage=step.usage,
                duration_ms=int((time.monotonic() - step_start) * 1000),
                tool_calls=len(step.tool_calls),
                evaluation_context=request.evaluation_context,
            )
        )

    def _record_summary(self, request: ToolLoopRequest, result: AgenticResult, start: float) -> None:
        if self.debug is None:
            return
        self.debug.record_metrics(
            EvaluationMetrics(
                operation=f"{request.operation}-summary",
                vendor=self.vendor,
                model=result.model,
                usage=result.token_totals.as_usage(),
                duration_ms=int((time.monotonic() - start) * 1000),
                iterations=result.iterations,
                tool_calls=len(result.tool_calls_executed),
                status=result.status.value,
                completion_reason=result.completion_reason.value,
                evaluation_context=request.evaluation_context,
            )
        )
