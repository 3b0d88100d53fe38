import pytest
from pydantic import ValidationError

from ops_agent.config import ProviderConfig, Settings
from ops_agent.models.schemas import (
    DocsValidationSessionData,
    ParameterMetadata,
    ParameterType,
    PlatformSessionData,
    QueryResult,
)


def test_parameter_metadata_model():
    param = ParameterMetadata(name="host-name")
    assert param.type == ParameterType.STRING
    assert param.required is False
    assert param.choices is None


def test_platform_session_data_aliases():
    data = PlatformSessionData.model_validate(
        {
            "intent": "create a cluster",
            "matchedOperation": {"tool": "cluster", "operation": "create", "command": ["cluster", "create"]},
        }
    )
    assert data.matched_operation.command == ["cluster", "create"]
    dumped = data.model_dump(mode="json", by_alias=True)
    assert dumped["currentStep"] == "collectParameters"
    assert dumped["answers"] == {}


def test_docs_session_data_defaults():
    data = DocsValidationSessionData(repo="https://example.com/docs.git", pod_namespace="docs")
    dumped = data.model_dump(mode="json", by_alias=True)
    assert dumped["toolName"] == "validateDocs"
    assert dumped["status"] == "active"
    assert dumped["ttlHours"] == 24


def test_query_result_serializes_camel_case():
    result = QueryResult(success=True, summary="ok", session_id="qry-1-abc")
    dumped = result.model_dump(by_alias=True, exclude_none=True)
    assert dumped == {"success": True, "summary": "ok", "toolsUsed": [], "iterations": 0, "sessionId": "qry-1-abc"}


def test_settings_defaults():
    s = Settings(_env_file=None, anthropic_api_key="k")
    assert s.ai_provider == "anthropic"
    assert s.tool_loop_max_iterations == 20
    assert s.session_ttl_seconds == 86400
    assert s.abort_on_timeout is False


def test_provider_config_is_frozen():
    config = ProviderConfig(vendor="anthropic", api_key="k")
    with pytest.raises(ValidationError):
        config.api_key = "other"
