"""Debug side-channel for provider calls.

When enabled, every provider call leaves a prompt/response pair on disk and
one evaluation-metrics line in ``metrics.jsonl``. Failures here are logged and
never change what the provider returns.
"""

from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel

from ops_agent.models.agent_schemas import AIResponse, EvaluationContext, Usage

logger = logging.getLogger(__name__)


class EvaluationMetrics(BaseModel):
    operation: str
    vendor: str
    model: str
    usage: Usage
    duration_ms: int
    iterations: int = 1
    tool_calls: int = 0
    status: str = "success"
    completion_reason: str = ""
    evaluation_context: EvaluationContext | None = None


def generate_debug_id(operation: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}_{secrets.token_hex(4)}_{operation}"


class DebugRecorder:
    def __init__(self, debug_dir: str | Path) -> None:
        self.debug_dir = Path(debug_dir)

    def _ensure_dir(self) -> Path:
        self.debug_dir.mkdir(parents=True, exist_ok=True)
        return self.debug_dir

    def record_interaction(
        self,
        operation: str,
        prompt: str,
        response: AIResponse,
        vendor: str,
        model: str,
    ) -> str | None:
        """Write prompt and response files. Returns the debug id."""
        debug_id = generate_debug_id(operation)
        timestamp = datetime.now(timezone.utc).isoformat()
        header = (
            f"Timestamp: {timestamp}\n"
            f"Provider: {vendor}\n"
            f"Model: {model}\n"
            f"Operation: {operation}\n"
        )
        try:
            out = self._ensure_dir()
            (out / f"{debug_id}_prompt.md").write_text(
                f"# AI Prompt - {operation}\n\n{header}\n---\n\n{prompt}",
                encoding="utf-8",
            )
            (out / f"{debug_id}_response.md").write_text(
                f"# AI Response - {operation}\n\n{header}"
                f"Input Tokens: {response.usage.input_tokens}\n"
                f"Output Tokens: {response.usage.output_tokens}\n\n"
                f"---\n\n{response.content}",
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("Failed to log AI debug interaction: %s", e)
            return None
        logger.debug("AI interaction logged to %s/%s_*.md", self.debug_dir, debug_id)
        return debug_id

    def record_metrics(self, metrics: EvaluationMetrics) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "provider": metrics.vendor,
            "model": metrics.model,
            "operation": metrics.operation,
            "inputTokens": metrics.usage.input_tokens,
            "outputTokens": metrics.usage.output_tokens,
            "durationMs": metrics.duration_ms,
            "iterations": metrics.iterations,
            "toolCalls": metrics.tool_calls,
            "status": metrics.status,
        }
        if metrics.usage.cache_write_tokens:
            entry["cacheCreationTokens"] = metrics.usage.cache_write_tokens
        if metrics.usage.cache_read_tokens:
            entry["cacheReadTokens"] = metrics.usage.cache_read_tokens
        if metrics.completion_reason:
            entry["completionReason"] = metrics.completion_reason
        if metrics.evaluation_context is not None:
            entry.update(metrics.evaluation_context.model_dump(exclude_defaults=True))
        try:
            with open(self._ensure_dir() / "metrics.jsonl", "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.warning("Failed to log metrics: %s", e)
