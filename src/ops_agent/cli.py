import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="ops-agent", help="Agentic Kubernetes operations assistant.")
platform_app = typer.Typer(name="platform", help="Platform operations backed by a script.")
docs_app = typer.Typer(name="validate-docs", help="Documentation validation sessions.")
app.add_typer(platform_app, name="platform")
app.add_typer(docs_app, name="validate-docs")
console = Console()

DEFAULT_SESSION_DIR = "tmp/sessions"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s | %(levelname)s | %(message)s")


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def _provider():
    from ops_agent.config import settings
    from ops_agent.errors import ConfigurationError
    from ops_agent.providers.factory import create_provider_from_env

    try:
        return create_provider_from_env(settings)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        raise typer.Exit(1)


def _store(prefix: str):
    from ops_agent.config import settings
    from ops_agent.sessions import SessionStore

    # Each CLI invocation is a separate process, so sessions always go to disk.
    return SessionStore(
        prefix,
        ttl_seconds=settings.session_ttl_seconds,
        directory=settings.session_dir or DEFAULT_SESSION_DIR,
    )


async def _plugins():
    """Discover configured plugins; None when no plugin is configured."""
    from ops_agent.config import settings
    from ops_agent.errors import ConfigurationError, PluginDiscoveryError
    from ops_agent.plugins.manager import PluginManager, parse_plugin_config

    try:
        configs = parse_plugin_config(settings.plugins_config_path)
    except ConfigurationError as e:
        console.print(f"[bold red]Plugin configuration error:[/] {e}")
        raise typer.Exit(1)
    if not configs:
        return None

    manager = PluginManager.from_settings(settings)
    try:
        await manager.discover_plugins(configs)
    except PluginDiscoveryError as e:
        await manager.aclose()
        console.print(f"[bold red]{e}[/]")
        raise typer.Exit(1)
    return manager


def _runner():
    from ops_agent.agents.runner import LoopRunner, TimeoutMode
    from ops_agent.config import settings

    return LoopRunner(TimeoutMode.ABORT if settings.abort_on_timeout else TimeoutMode.ABANDON)


async def _run_with_budget(operation, timeout: float) -> Any:
    """Run under the configured wall-clock budget; None after a timeout."""
    from ops_agent.agents.runner import timeout_response

    runner = _runner()
    outcome = await runner.run(operation, timeout or None)
    if outcome.timed_out:
        _print_json(timeout_response(timeout))
        # The process is about to exit; nothing is left to receive the result.
        await runner.cancel_abandoned()
        return None
    return outcome.result


def _callback(transcript: Path | None):
    """Console callback, plus a markdown collector when a transcript is requested."""
    from ops_agent.agents.console_callback import CompositeCallback, ConsoleCallback, MarkdownCallback

    console_cb = ConsoleCallback(console)
    if transcript is None:
        return console_cb, console_cb, None
    md_cb = MarkdownCallback()
    return console_cb, CompositeCallback([console_cb, md_cb]), md_cb


@app.command()
def query(
    intent: str = typer.Argument(..., help="Question about the cluster; prefix with [visualization] for visual output"),
    capabilities: Path = typer.Option(None, "--capabilities", help="JSON file of cluster capability records"),
    max_iterations: int = typer.Option(0, "--max-iterations", help="Max tool-loop iterations (0 = default)"),
    timeout: float = typer.Option(-1, "--timeout", help="Wall-clock budget in seconds (-1 = use config, 0 = none)"),
    transcript: Path = typer.Option(None, "--transcript", help="Write a markdown transcript to this file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Answer a read-only question about the cluster."""
    _setup_logging(verbose)

    from ops_agent.config import settings
    from ops_agent.tools import ToolRegistry
    from ops_agent.tools.capability_tools import CapabilityIndex, create_capability_tools
    from ops_agent.workflows.query import QUERY_MAX_ITERATIONS, SESSION_PREFIX, QueryWorkflow

    provider = _provider()
    index = CapabilityIndex.from_file(capabilities) if capabilities else CapabilityIndex()
    registry = ToolRegistry()
    registry.register_many(create_capability_tools(index))
    console_cb, callback, md_cb = _callback(transcript)
    budget = settings.request_timeout_seconds if timeout < 0 else timeout

    async def _main():
        plugins = await _plugins()
        workflow = QueryWorkflow(
            provider,
            registry,
            _store(SESSION_PREFIX),
            plugins=plugins,
            max_iterations=max_iterations or QUERY_MAX_ITERATIONS,
        )
        if plugins is None:
            console.print("[yellow]No plugins configured; kubectl tools are unavailable[/yellow]")
        try:
            console_cb.print_tools(workflow.dispatcher().descriptors())
            return await _run_with_budget(
                lambda token: workflow.run(intent, cancel_token=token, callback=callback), budget
            )
        finally:
            if plugins is not None:
                await plugins.aclose()

    result = asyncio.run(_main())
    if result is None:
        raise typer.Exit(1)
    if md_cb is not None:
        transcript.write_text(md_cb.build_transcript(intent))
        console.print(f"[dim]Transcript written to {transcript}[/dim]")
    _print_json(result.model_dump(by_alias=True, exclude_none=True, mode="json"))
    if not result.success:
        raise typer.Exit(1)


@platform_app.command("run")
def platform_run(
    intent: str = typer.Argument(..., help="What you want to do, e.g. 'install argocd'"),
    script: Path = typer.Option(Path("scripts/dot.nu"), "--script", help="Platform operations script"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Map an intent to a platform operation and run it or ask for parameters."""
    _setup_logging(verbose)
    from ops_agent.workflows.platform import SESSION_PREFIX, PlatformOperations, ScriptOperationSource

    ops = PlatformOperations(_provider(), ScriptOperationSource(script), _store(SESSION_PREFIX))
    result = asyncio.run(ops.handle_intent(intent))
    _print_json(result)
    if not result.get("success"):
        raise typer.Exit(1)


@platform_app.command("execute")
def platform_execute(
    session_id: str = typer.Argument(..., help="Session id returned by 'platform run'"),
    answer: list[str] = typer.Option([], "--answer", "-a", help="Parameter value as name=value (repeatable)"),
    script: Path = typer.Option(Path("scripts/dot.nu"), "--script", help="Platform operations script"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Run a previously matched operation with the collected parameters."""
    _setup_logging(verbose)
    from ops_agent.workflows.platform import SESSION_PREFIX, PlatformOperations, ScriptOperationSource

    answers: dict[str, str] = {}
    for item in answer:
        name, sep, value = item.partition("=")
        if not sep:
            console.print(f"[bold red]Invalid answer '{item}', expected name=value[/]")
            raise typer.Exit(2)
        answers[name.strip()] = value

    ops = PlatformOperations(_provider(), ScriptOperationSource(script), _store(SESSION_PREFIX))
    result = asyncio.run(ops.execute(session_id, answers))
    _print_json(result)
    if not result.get("success"):
        raise typer.Exit(1)


def _docs_workflow(plugins):
    from ops_agent.workflows.validate_docs import SESSION_PREFIX, DocsValidationWorkflow

    return DocsValidationWorkflow(_provider(), _store(SESSION_PREFIX), plugins)


def _run_docs(action) -> dict:
    async def _main():
        plugins = await _plugins()
        try:
            return await action(_docs_workflow(plugins))
        finally:
            if plugins is not None:
                await plugins.aclose()

    result = asyncio.run(_main())
    _print_json(result)
    if not result.get("success"):
        raise typer.Exit(1)
    return result


@docs_app.command("start")
def docs_start(
    repo: str = typer.Argument(..., help="Git repository or docs site URL"),
    image: str = typer.Option("", "--image", help="Container image for the validation pod"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Create a validation session and its pod."""
    _setup_logging(verbose)
    _run_docs(lambda wf: wf.start(repo, image or None))


@docs_app.command("validate")
def docs_validate(
    session_id: str = typer.Argument(..., help="Validation session id"),
    page: str = typer.Argument(..., help="Path of the page to validate"),
    instructions: str = typer.Option("", "--instructions", help="Extra guidance for the validator"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Validate one page inside the session's pod."""
    _setup_logging(verbose)
    from ops_agent.agents.console_callback import ConsoleCallback

    console_cb = ConsoleCallback(console)

    def _validate(wf):
        console_cb.print_tools(wf.dispatcher(session_id).descriptors())
        return wf.validate(session_id, page, instructions, callback=console_cb)

    _run_docs(_validate)


@docs_app.command("status")
def docs_status(
    session_id: str = typer.Argument(..., help="Validation session id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Show a session and its pod status."""
    _setup_logging(verbose)
    _run_docs(lambda wf: wf.status(session_id))


@docs_app.command("list")
def docs_list(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """List validation sessions."""
    _setup_logging(verbose)
    from ops_agent.providers.noop_provider import NoOpProvider
    from ops_agent.workflows.validate_docs import SESSION_PREFIX, DocsValidationWorkflow

    result = DocsValidationWorkflow(NoOpProvider(), _store(SESSION_PREFIX), None).list_sessions()
    _print_json(result)


@docs_app.command("finish")
def docs_finish(
    session_id: str = typer.Argument(..., help="Validation session id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Delete the session's pod and mark it finished."""
    _setup_logging(verbose)
    _run_docs(lambda wf: wf.finish(session_id))


@app.command()
def sessions(
    session_id: str = typer.Argument(None, help="Show one session (any workflow)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """List stored sessions, or show one by id."""
    _setup_logging(verbose)
    from ops_agent.sessions import find_session

    stores = [_store(prefix) for prefix in ("plt", "qry", "dvl")]
    if session_id:
        found = find_session(session_id, stores)
        if found is None:
            console.print(f"[bold red]Session not found: {session_id}[/]")
            raise typer.Exit(1)
        _print_json(found[1].model_dump(mode="json"))
        return

    table = Table(title="Sessions", border_style="dim")
    table.add_column("Session", style="bold cyan", no_wrap=True)
    table.add_column("Created", style="dim")
    table.add_column("Last activity", style="dim")
    table.add_column("Version", justify="right")
    for store in stores:
        for sid in store.list_sessions():
            session = store.get_session(sid)
            if session is None:
                continue
            table.add_row(
                sid,
                session.created_at.isoformat(timespec="seconds"),
                session.last_activity_at.isoformat(timespec="seconds"),
                str(session.version),
            )
    console.print(table)


@app.command()
def plugins(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Discover configured plugins and list their tools."""
    _setup_logging(verbose)
    from ops_agent.config import settings

    async def _main():
        manager = await _plugins()
        if manager is None:
            return None
        try:
            return manager.get_discovered_plugins(), manager.get_stats()
        finally:
            await manager.aclose()

    found = asyncio.run(_main())
    if found is None:
        console.print(f"[yellow]No plugins configured ({settings.plugins_config_path})[/yellow]")
        return

    discovered, stats = found
    table = Table(title="Plugin tools", border_style="dim")
    table.add_column("Plugin", style="bold cyan", no_wrap=True)
    table.add_column("Tool", no_wrap=True)
    table.add_column("Description", style="dim")
    for plugin in discovered:
        for tool in plugin.tools:
            table.add_row(f"{plugin.name} v{plugin.version}", tool.name, tool.description)
    console.print(table)
    console.print(f"[dim]{stats['pluginCount']} plugins, {stats['toolCount']} tools[/dim]")


if __name__ == "__main__":
    app()
