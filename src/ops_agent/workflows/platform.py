"""Platform operations: discover -> map intent -> collect parameters -> execute.

Operations come from a platform script (a Nushell ``dot.nu`` by default).
Parameter collection spans two client calls: the first returns a session id
and the parameter list, the second supplies the answers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from pydantic import TypeAdapter, ValidationError

from ops_agent.errors import ParseError, ProviderCallError, ToolExecutionError
from ops_agent.models.schemas import (
    IntentMapping,
    MatchedOperation,
    Operation,
    ParameterMetadata,
    ParameterType,
    PlatformSessionData,
    PlatformStep,
)
from ops_agent.prompts.prompt_layer import PromptLibrary
from ops_agent.providers.base import AIProvider
from ops_agent.providers.tool_utils import parse_json_response
from ops_agent.sessions import SessionStore

logger = logging.getLogger(__name__)

SESSION_PREFIX = "plt"

_operations_adapter = TypeAdapter(list[Operation])

_SHAPE_TYPES = {
    "bool": ParameterType.BOOLEAN,
    "int": ParameterType.NUMBER,
    "number": ParameterType.NUMBER,
    "float": ParameterType.NUMBER,
    "string": ParameterType.STRING,
}


@dataclass
class CommandResult:
    stdout: str
    stderr: str = ""
    returncode: int = 0


class OperationSource(Protocol):
    async def help_text(self) -> str: ...
    async def parameters(self, command: list[str]) -> list[ParameterMetadata]: ...
    async def run(self, command: list[str], args: list[str]) -> CommandResult: ...


def parse_signatures(metadata: list[dict[str, Any]]) -> list[ParameterMetadata]:
    """Convert Nushell ``scope commands`` JSON into parameter metadata."""
    if not metadata:
        return []
    signatures = (metadata[0].get("signatures") or {}).get("any") or []
    params = []
    for sig in signatures:
        kind = sig.get("parameter_type")
        name = sig.get("parameter_name")
        if kind in ("input", "output") or not name or name == "help":
            continue
        params.append(
            ParameterMetadata(
                name=name,
                type=_SHAPE_TYPES.get(sig.get("syntax_shape", ""), ParameterType.STRING),
                required=kind == "positional" and not sig.get("is_optional", False),
                description=sig.get("description") or "",
                default=sig.get("parameter_default"),
            )
        )
    return params


class ScriptOperationSource:
    """Operations exposed by a Nushell script's subcommands."""

    def __init__(self, script_path: str | Path, shell: str = "nu", timeout: float = 600) -> None:
        self.script_path = str(script_path)
        self.shell = shell
        self.timeout = timeout

    async def _exec(self, *argv: str) -> CommandResult:
        logger.debug("Running %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise ToolExecutionError(f"Failed to run {argv[0]}: {e}", tool=argv[0]) from e
        return CommandResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            returncode=proc.returncode or 0,
        )

    async def help_text(self) -> str:
        result = await self._exec(self.shell, self.script_path, "--help")
        if result.stderr:
            logger.warning("Script help produced stderr: %s", result.stderr.strip())
        return result.stdout

    async def parameters(self, command: list[str]) -> list[ParameterMetadata]:
        name = "main " + " ".join(command)
        script = f'source {self.script_path}; scope commands | where name == "{name}" | to json'
        result = await self._exec(self.shell, "-c", script)
        try:
            metadata = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise ToolExecutionError(f"Unreadable command metadata for '{name}': {e}") from e
        params = parse_signatures(metadata)
        logger.info("Retrieved %d parameters for %s", len(params), name)
        return params

    async def run(self, command: list[str], args: list[str]) -> CommandResult:
        return await self._exec(self.shell, self.script_path, *command, *args)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def build_arguments(parameters: list[ParameterMetadata], answers: dict[str, Any]) -> list[str]:
    args: list[str] = []
    for param in parameters:
        value = answers.get(param.name)
        if value is not None:
            args.extend([f"--{param.name}", _format_value(value)])
    return args


def missing_parameters(parameters: list[ParameterMetadata], answers: dict[str, Any]) -> list[str]:
    return [p.name for p in parameters if p.required and p.name not in answers]


class PlatformOperations:
    def __init__(
        self,
        provider: AIProvider,
        source: OperationSource,
        store: SessionStore,
        prompts: PromptLibrary | None = None,
    ) -> None:
        self.provider = provider
        self.source = source
        self.store = store
        self.prompts = prompts or PromptLibrary()

    async def discover_operations(self) -> list[Operation]:
        help_output = await self.source.help_text()
        prompt = self.prompts.render("parse_operations", help_output=help_output)
        response = await self.provider.send_message(prompt, "platform-discover-operations")
        try:
            operations = _operations_adapter.validate_python(parse_json_response(response.content))
        except ValidationError as e:
            raise ParseError(f"Unexpected operations format: {e}", raw=response.content) from e
        logger.info("Discovered %d platform tools", len(operations))
        return operations

    async def map_intent(self, intent: str, operations: list[Operation]) -> IntentMapping:
        """One model call; either a matched operation or a no-match reason."""
        prompt = self.prompts.render(
            "map_intent",
            intent=intent,
            operations=json.dumps([op.model_dump() for op in operations], indent=2),
        )
        response = await self.provider.send_message(prompt, "platform-map-intent")
        try:
            mapping = IntentMapping.model_validate(parse_json_response(response.content))
        except ValidationError as e:
            raise ParseError(f"Invalid intent mapping: {e}", raw=response.content) from e
        if mapping.matched and (mapping.operation is None or not mapping.operation.command):
            raise ParseError("Matched operation has no command", raw=response.content)
        logger.info(
            "Mapped intent '%s': matched=%s %s",
            intent, mapping.matched, mapping.operation.command if mapping.operation else "",
        )
        return mapping

    async def handle_intent(self, intent: str) -> dict[str, Any]:
        """Discover, map and either execute or ask for parameters."""
        try:
            operations = await self.discover_operations()
            mapping = await self.map_intent(intent, operations)
            if not mapping.matched or mapping.operation is None:
                return {
                    "success": True,
                    "matched": False,
                    "reason": mapping.reason or "No matching operation",
                    "availableOperations": [op.name for op in operations],
                }
            parameters = await self.source.parameters(mapping.operation.command)
        except (ProviderCallError, ParseError, ToolExecutionError) as e:
            logger.error("Platform intent handling failed: %s", e)
            return {"success": False, "error": str(e)}

        if not any(p.required for p in parameters):
            return await self._run(mapping.operation, parameters, {})
        return self.collect_parameters(intent, mapping.operation, parameters)

    def collect_parameters(
        self,
        intent: str,
        operation: MatchedOperation,
        parameters: list[ParameterMetadata],
    ) -> dict[str, Any]:
        data = PlatformSessionData(intent=intent, matched_operation=operation, parameters=parameters)
        session = self.store.create_session(data)
        logger.info("Platform session %s waiting for %d parameters", session.session_id, len(parameters))
        return {
            "success": True,
            "status": "need_more_input",
            "sessionId": session.session_id,
            "operation": operation.model_dump(),
            "parameters": [p.model_dump(mode="json") for p in parameters],
        }

    async def execute(self, session_id: str, answers: dict[str, Any]) -> dict[str, Any]:
        session = self.store.get_session(session_id)
        if session is None:
            return {"success": False, "error": f"Session not found: {session_id}"}
        data = PlatformSessionData.model_validate(session.data)

        missing = missing_parameters(data.parameters, answers)
        if missing:
            return {
                "success": False,
                "error": f"Missing required parameters: {', '.join(missing)}",
                "missingParameters": missing,
            }

        self.store.update_session(
            session_id, {"answers": answers, "currentStep": PlatformStep.EXECUTE.value}
        )
        result = await self._run(data.matched_operation, data.parameters, answers)
        if result["success"]:
            self.store.update_session(session_id, {"currentStep": PlatformStep.COMPLETE.value})
        return {**result, "sessionId": session_id}

    async def _run(
        self,
        operation: MatchedOperation,
        parameters: list[ParameterMetadata],
        answers: dict[str, Any],
    ) -> dict[str, Any]:
        final = dict(answers)
        for param in parameters:
            if param.name not in final and param.default is not None:
                final[param.name] = param.default

        args = build_arguments(parameters, final)
        logger.info("Executing platform operation %s %s", " ".join(operation.command), " ".join(args))
        try:
            result = await self.source.run(operation.command, args)
        except ToolExecutionError as e:
            logger.error("Platform operation failed: %s", e)
            return {"success": False, "error": str(e)}

        if result.returncode != 0:
            return {
                "success": False,
                "error": result.stderr.strip() or f"Command exited with status {result.returncode}",
                "output": result.stdout,
            }
        if result.stderr:
            logger.warning("Operation produced stderr: %s", result.stderr.strip())
        return {
            "success": True,
            "message": f"Successfully executed {operation.tool} {operation.operation}",
            "output": result.stdout,
        }
