"""Documentation validation sessions.

Every Kubernetes side effect (creating the validation pod, running commands
in it, deleting it) is delegated to plugin tools; this module only tracks
sessions and drives the tool loop for each page.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from ops_agent.agents.agentic_agent import AgenticAgent
from ops_agent.agents.console_callback import StepCallback
from ops_agent.agents.runner import CancellationToken
from ops_agent.errors import ParseError
from ops_agent.models.agent_schemas import LoopStatus
from ops_agent.models.schemas import (
    DocsSessionStatus,
    DocsValidationSessionData,
    PageStatus,
    PageValidation,
    PageVerdict,
)
from ops_agent.plugins.manager import PluginManager
from ops_agent.prompts.prompt_layer import PromptLibrary
from ops_agent.providers.base import AIProvider
from ops_agent.providers.tool_utils import parse_json_response
from ops_agent.sessions import SessionStore
from ops_agent.tools.dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)

SESSION_PREFIX = "dvl"
PLUGIN_NAME = "agentic-tools"
DEFAULT_NAMESPACE = "ops-agent-docs-validation"
DEFAULT_IMAGE = "ubuntu:24.04"
DEFAULT_TTL_HOURS = 24

CREATE_POD_TOOL = "docs_validate_create_pod"
DELETE_POD_TOOL = "docs_validate_delete_pod"
POD_STATUS_TOOL = "docs_validate_pod_status"
EXEC_TOOL = "docs_validate_exec"


def _plugin_data(result: Any) -> dict[str, Any]:
    """Plugin tools answer ``{success, data}`` where data may be a JSON string."""
    data = result.get("data") if isinstance(result, dict) else None
    if isinstance(data, str):
        try:
            data = json.loads(data or "{}")
        except json.JSONDecodeError:
            return {}
    return data if isinstance(data, dict) else {}


class DocsValidationWorkflow:
    def __init__(
        self,
        provider: AIProvider,
        store: SessionStore,
        plugins: PluginManager | None,
        prompts: PromptLibrary | None = None,
        namespace: str = DEFAULT_NAMESPACE,
        ttl_hours: int = DEFAULT_TTL_HOURS,
        plugin_name: str = PLUGIN_NAME,
        max_iterations: int = 20,
    ) -> None:
        self.provider = provider
        self.store = store
        self.plugins = plugins
        self.prompts = prompts or PromptLibrary()
        self.namespace = namespace
        self.ttl_hours = ttl_hours
        self.plugin_name = plugin_name
        self.max_iterations = max_iterations

    def _plugin_unavailable(self) -> dict[str, Any] | None:
        if self.plugins is None:
            return {
                "success": False,
                "error": f"Plugin system not available. Documentation validation requires the {self.plugin_name} plugin.",
            }
        return None

    def _load(self, session_id: str) -> DocsValidationSessionData | None:
        session = self.store.get_session(session_id)
        if session is None:
            return None
        return DocsValidationSessionData.model_validate(session.data)

    async def start(self, repo: str, image: str | None = None) -> dict[str, Any]:
        if not repo:
            return {"success": False, "error": 'repo is required for "start" action'}
        unavailable = self._plugin_unavailable()
        if unavailable:
            return unavailable

        session = self.store.create_session(
            DocsValidationSessionData(
                repo=repo,
                pod_namespace=self.namespace,
                container_image=image or "",
                ttl_hours=self.ttl_hours,
            )
        )
        args: dict[str, Any] = {
            "sessionId": session.session_id,
            "namespace": self.namespace,
            "ttlHours": self.ttl_hours,
        }
        if image:
            args["image"] = image

        logger.info("Creating validation pod for %s (%s)", repo, session.session_id)
        response = await self.plugins.invoke(self.plugin_name, CREATE_POD_TOOL, args, session_id=session.session_id)
        result = response.result if isinstance(response.result, dict) else {}
        if not response.success or result.get("success") is False:
            self.store.delete_session(session.session_id)
            if not response.success:
                error = response.error.message if response.error else "Failed to create validation pod"
            else:
                error = result.get("error") or "Failed to create validation pod"
            return {"success": False, "error": error}

        pod = _plugin_data(result)
        pod_name = pod.get("podName", "")
        container_image = pod.get("image") or image or DEFAULT_IMAGE
        self.store.update_session(
            session.session_id, {"podName": pod_name, "containerImage": container_image}
        )
        logger.info("Validation session %s started with pod %s", session.session_id, pod_name)
        return {
            "success": True,
            "sessionId": session.session_id,
            "podName": pod_name,
            "namespace": pod.get("namespace", self.namespace),
            "containerImage": container_image,
            "repo": repo,
            "status": DocsSessionStatus.ACTIVE.value,
            "message": f"Validation session started. Pod {pod_name} is running in namespace "
            f"{pod.get('namespace', self.namespace)}.",
        }

    def dispatcher(self, session_id: str) -> ToolDispatcher:
        """Only the plugin's pod-exec tool, bound to the session."""
        return ToolDispatcher(plugins=self.plugins, plugin_tools=[EXEC_TOOL], session_id=session_id)

    async def validate(
        self,
        session_id: str,
        page: str,
        instructions: str = "",
        cancel_token: CancellationToken | None = None,
        callback: StepCallback | None = None,
    ) -> dict[str, Any]:
        """Run one page through the tool loop and record the verdict."""
        data = self._load(session_id)
        if data is None:
            return {"success": False, "error": f"Session not found: {session_id}"}
        if data.status is DocsSessionStatus.FINISHED:
            return {"success": False, "error": f"Session {session_id} is finished"}
        unavailable = self._plugin_unavailable()
        if unavailable:
            return unavailable

        dispatcher = self.dispatcher(session_id)
        system_prompt = self.prompts.render(
            "validate_docs_system",
            pod_name=data.pod_name,
            namespace=data.pod_namespace,
            repo=data.repo,
        )
        agent = AgenticAgent(
            self.provider, dispatcher, system_prompt, max_iterations=self.max_iterations, callback=callback
        )
        result = await agent.run(
            self.prompts.render("validate_page", page=page, instructions=instructions),
            "validate-docs",
            cancel_token,
        )
        if result.status is LoopStatus.FAILED:
            return {"success": False, "error": result.final_message, "page": page}

        try:
            verdict = PageVerdict.model_validate(parse_json_response(result.final_message))
        except (ParseError, ValidationError) as e:
            logger.warning("Unreadable verdict for %s, marking uncertain: %s", page, e)
            verdict = PageVerdict(status=PageStatus.UNCERTAIN, summary=result.final_message)

        pages = [p for p in data.pages_validated if p.path != page]
        pages.append(PageValidation(path=page, status=verdict.status, summary=verdict.summary))
        page_issues = [issue.model_copy(update={"page": issue.page or page}) for issue in verdict.issues]
        issues = [i for i in data.issues_found if i.page != page] + page_issues
        self.store.update_session(
            session_id,
            {
                "pagesValidated": [p.model_dump(mode="json") for p in pages],
                "issuesFound": [i.model_dump(mode="json") for i in issues],
            },
        )
        return {
            "success": True,
            "sessionId": session_id,
            "page": page,
            "status": verdict.status.value,
            "summary": verdict.summary,
            "issues": [i.model_dump(mode="json") for i in page_issues],
            "iterations": result.iterations,
            "toolsUsed": result.tools_used,
        }

    async def status(self, session_id: str) -> dict[str, Any]:
        session = self.store.get_session(session_id)
        if session is None:
            return {"success": False, "error": f"Session not found: {session_id}"}
        data = DocsValidationSessionData.model_validate(session.data)

        pod_status = "Unknown"
        if data.status is DocsSessionStatus.FINISHED:
            pod_status = "Terminated"
        elif data.pod_name and self.plugins is not None:
            response = await self.plugins.invoke(
                self.plugin_name,
                POD_STATUS_TOOL,
                {"podName": data.pod_name, "namespace": data.pod_namespace},
                session_id=session_id,
            )
            if response.success:
                pod_status = _plugin_data(response.result).get("phase", pod_status)
            # Touch the session so an active validation does not expire.
            self.store.update_session(session_id, {})

        return {
            "success": True,
            "sessionId": session_id,
            "repo": data.repo,
            "status": data.status.value,
            "podName": data.pod_name,
            "podNamespace": data.pod_namespace,
            "podStatus": pod_status,
            "containerImage": data.container_image,
            "pagesValidated": len(data.pages_validated),
            "issuesFound": len(data.issues_found),
            "createdAt": session.created_at.isoformat(),
            "lastActivityAt": session.last_activity_at.isoformat(),
        }

    def list_sessions(self) -> dict[str, Any]:
        sessions = []
        for session_id in self.store.list_sessions():
            session = self.store.get_session(session_id)
            if session is None:
                continue
            data = DocsValidationSessionData.model_validate(session.data)
            sessions.append(
                {
                    "sessionId": session_id,
                    "repo": data.repo,
                    "status": data.status.value,
                    "podName": data.pod_name,
                    "podNamespace": data.pod_namespace,
                    "createdAt": session.created_at.isoformat(),
                    "lastActivityAt": session.last_activity_at.isoformat(),
                }
            )
        return {"success": True, "sessions": sessions, "total": len(sessions)}

    async def finish(self, session_id: str) -> dict[str, Any]:
        data = self._load(session_id)
        if data is None:
            return {"success": False, "error": f"Session not found: {session_id}"}
        if data.status is DocsSessionStatus.FINISHED:
            return {
                "success": True,
                "sessionId": session_id,
                "status": DocsSessionStatus.FINISHED.value,
                "message": "Session already finished",
            }

        pod_deleted = False
        if data.pod_name and self.plugins is not None:
            response = await self.plugins.invoke(
                self.plugin_name,
                DELETE_POD_TOOL,
                {"podName": data.pod_name, "namespace": data.pod_namespace},
                session_id=session_id,
            )
            pod_deleted = response.success and (
                not isinstance(response.result, dict) or response.result.get("success") is not False
            )
            if not pod_deleted:
                logger.warning("Pod %s for session %s was not deleted", data.pod_name, session_id)

        self.store.update_session(session_id, {"status": DocsSessionStatus.FINISHED.value})
        logger.info("Validation session %s finished", session_id)
        return {
            "success": True,
            "sessionId": session_id,
            "status": DocsSessionStatus.FINISHED.value,
            "podDeleted": pod_deleted,
            "pagesValidated": len(data.pages_validated),
            "issuesFound": len(data.issues_found),
        }
