"""Step callbacks for the tool loop: no-op, rich console, markdown transcript."""

from __future__ import annotations

import json
from typing import Any, Protocol, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from ops_agent.models.agent_schemas import ToolDescriptor

MAX_RESULT_LINES = 30
MAX_RESULT_CHARS = 2000


class StepCallback(Protocol):
    def on_step_start(self, step: int, max_steps: int) -> None: ...
    def on_thinking(self, text: str) -> None: ...
    def on_tool_call(self, name: str, args: dict[str, Any]) -> None: ...
    def on_tool_result(self, name: str, output: Any) -> None: ...
    def on_finish(self, text: str, steps: int, tool_calls: int) -> None: ...


class NullCallback:
    def on_step_start(self, step: int, max_steps: int) -> None: ...
    def on_thinking(self, text: str) -> None: ...
    def on_tool_call(self, name: str, args: dict[str, Any]) -> None: ...
    def on_tool_result(self, name: str, output: Any) -> None: ...
    def on_finish(self, text: str, steps: int, tool_calls: int) -> None: ...


def _render_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, indent=2, default=str)


def _truncate(text: str) -> str:
    lines = text.splitlines()
    if len(lines) > MAX_RESULT_LINES or len(text) > MAX_RESULT_CHARS:
        kept = lines[:MAX_RESULT_LINES]
        truncated = "\n".join(kept)
        if len(truncated) > MAX_RESULT_CHARS:
            truncated = truncated[:MAX_RESULT_CHARS]
        omitted = len(lines) - MAX_RESULT_LINES
        if omitted > 0:
            truncated += f"\n... ({omitted} more lines)"
        return truncated
    return text


TOOL_ICONS = {
    "search_capabilities": "🔍",
    "query_capabilities": "📦",
    "kubectl_get": "☸ ",
    "kubectl_describe": "🔎",
    "kubectl_logs": "📜",
    "kubectl_events": "📅",
    "kubectl_api_resources": "🗂 ",
    "docs_validate_exec": "🧪",
}


def _format_arg_value(value: Any) -> str:
    """Format a single argument value, truncating long strings."""
    s = str(value)
    if len(s) > 120:
        return s[:120] + "..."
    return s


class ConsoleCallback:
    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def print_tools(self, tools: Sequence[ToolDescriptor]) -> None:
        table = Table(title="Available tools", border_style="dim", show_lines=False)
        table.add_column("Tool", style="bold cyan", no_wrap=True)
        table.add_column("Description", style="dim")
        for tool in tools:
            icon = TOOL_ICONS.get(tool.name, "🔧")
            params = tool.input_schema.get("properties", {})
            param_names = ", ".join(params.keys()) if params else ""
            table.add_row(escape(f"{icon} {tool.name}({param_names})"), escape(tool.description))
        self.console.print(table)
        self.console.print()

    def on_step_start(self, step: int, max_steps: int) -> None:
        self.console.rule(f"[bold blue]Step {step}/{max_steps}", style="blue")

    def on_thinking(self, text: str) -> None:
        self.console.print(
            Panel(
                Text(_truncate(text)),
                title="[bold yellow]Thinking",
                border_style="yellow",
                padding=(0, 1),
            )
        )

    def on_tool_call(self, name: str, args: dict[str, Any]) -> None:
        icon = TOOL_ICONS.get(name, "🔧")
        self.console.print(f"  {icon} [bold cyan]{escape(name)}[/]")
        for k, v in args.items():
            self.console.print(f"      [dim]{escape(str(k))}:[/] {escape(_format_arg_value(v))}")

    def on_tool_result(self, name: str, output: Any) -> None:
        truncated = _truncate(_render_output(output))
        self.console.print(
            Panel(
                Syntax(truncated, "json", theme="ansi_dark", word_wrap=True)
                if len(truncated) > 200
                else Text(truncated, style="dim"),
                title="[dim]result",
                border_style="dim",
                padding=(0, 1),
            )
        )

    def on_finish(self, text: str, steps: int, tool_calls: int) -> None:
        self.console.print()
        self.console.rule("[bold green]Agent finished", style="green")
        self.console.print(
            Panel(
                Text(text),
                title=f"[bold green]Result ({steps} steps, {tool_calls} tool calls)",
                border_style="green",
                padding=(0, 1),
            )
        )


class MarkdownCallback:
    """Collects loop events into a markdown transcript."""

    def __init__(self) -> None:
        self._entries: list[str] = []
        self._current_step: int = 0
        self._finish_text: str = ""
        self._total_steps: int = 0
        self._total_tool_calls: int = 0

    def on_step_start(self, step: int, max_steps: int) -> None:
        self._current_step = step

    def on_thinking(self, text: str) -> None:
        self._entries.append(
            f"<details><summary>Step {self._current_step}: Thinking</summary>\n\n"
            f"{text}\n\n"
            f"</details>"
        )

    def on_tool_call(self, name: str, args: dict[str, Any]) -> None:
        short_args = ", ".join(f'{k}="{_format_arg_value(v)}"' for k, v in args.items())
        # Result is appended by on_tool_result
        self._entries.append(
            f"<details><summary>Step {self._current_step}: {name}({short_args})</summary>\n\n"
        )

    def on_tool_result(self, name: str, output: Any) -> None:
        if self._entries:
            self._entries[-1] += f"```\n{_truncate(_render_output(output))}\n```\n\n</details>"

    def on_finish(self, text: str, steps: int, tool_calls: int) -> None:
        self._finish_text = text
        self._total_steps = steps
        self._total_tool_calls = tool_calls

    def build_transcript(self, title: str) -> str:
        parts: list[str] = [
            f"# {title}",
            "",
            "**Answer:**",
            self._finish_text or "_No final message._",
            "",
        ]
        if self._entries:
            inner = "\n\n".join(self._entries)
            summary = f"Agent log ({self._total_steps} steps, {self._total_tool_calls} tool calls)"
            parts.append(f"<details><summary>{summary}</summary>\n\n{inner}\n\n</details>")
        return "\n".join(parts)


class CompositeCallback:
    """Forwards all callback events to multiple delegates."""

    def __init__(self, callbacks: Sequence[Any]) -> None:
        self._callbacks = callbacks

    def on_step_start(self, step: int, max_steps: int) -> None:
        for cb in self._callbacks:
            cb.on_step_start(step, max_steps)

    def on_thinking(self, text: str) -> None:
        for cb in self._callbacks:
            cb.on_thinking(text)

    def on_tool_call(self, name: str, args: dict[str, Any]) -> None:
        for cb in self._callbacks:
            cb.on_tool_call(name, args)

    def on_tool_result(self, name: str, output: Any) -> None:
        for cb in self._callbacks:
            cb.on_tool_result(name, output)

    def on_finish(self, text: str, steps: int, tool_calls: int) -> None:
        for cb in self._callbacks:
            cb.on_finish(text, steps, tool_calls)
