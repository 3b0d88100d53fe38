"""Tests for the vendor providers and provider selection."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest
from tenacity import wait_none

from ops_agent.config import ModelConfig, ProviderConfig, Settings
from ops_agent.errors import ConfigurationError, ProviderCallError
from ops_agent.models.agent_schemas import LoopStatus, ToolLoopRequest
from ops_agent.providers.anthropic_provider import (
    CACHE_MARKER,
    DEFAULT_MODEL,
    MESSAGE_MAX_TOKENS,
    AnthropicProvider,
)
from ops_agent.providers.debug import DebugRecorder
from ops_agent.providers.factory import available_vendors, create_provider, create_provider_from_env
from ops_agent.providers.host_provider import HostProvider
from ops_agent.providers.noop_provider import NoOpProvider
from ops_agent.providers.openai_provider import OpenAIProvider

from stubs import descriptor, echo_executor


def _request(**kwargs) -> ToolLoopRequest:
    return ToolLoopRequest(
        system_prompt="You are an ops assistant.",
        user_message="which pods are failing?",
        tools=[descriptor("search_capabilities"), descriptor("kubectl_get")],
        tool_executor=echo_executor,
        **kwargs,
    )


def _no_keys(**kwargs) -> Settings:
    values = {"anthropic_api_key": "", "openai_api_key": "", "google_api_key": "", **kwargs}
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _anthropic_message(*blocks, input_tokens=0, output_tokens=0, cache_write=None, cache_read=None):
    return SimpleNamespace(
        content=list(blocks),
        usage=SimpleNamespace(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_creation_input_tokens=cache_write,
            cache_read_input_tokens=cache_read,
        ),
    )


def _text_block(text):
    return SimpleNamespace(type="text", text=text)


def _tool_use(block_id, name, args):
    return SimpleNamespace(type="tool_use", id=block_id, name=name, input=args)


class TestAnthropicProvider:
    def _provider(self, responses):
        provider = AnthropicProvider(api_key="sk-test")
        provider.client = MagicMock()
        provider.client.messages.create = AsyncMock(side_effect=responses)
        return provider

    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            AnthropicProvider(api_key="")

    def test_default_model(self):
        assert AnthropicProvider(api_key="sk-test").get_model() == DEFAULT_MODEL

    @pytest.mark.asyncio
    async def test_tool_loop_marks_cache_and_maps_usage(self):
        provider = self._provider(
            [
                _anthropic_message(
                    _text_block("Checking pods"),
                    _tool_use("tu_1", "kubectl_get", {"resource": "pods"}),
                    input_tokens=1200,
                    output_tokens=40,
                    cache_write=900,
                ),
                _anthropic_message(
                    _text_block("Two pods are failing."),
                    input_tokens=150,
                    output_tokens=25,
                    cache_read=900,
                ),
            ]
        )

        result = await provider.tool_loop(_request())

        assert result.status is LoopStatus.SUCCESS
        assert result.final_message == "Two pods are failing."
        assert result.tools_used == ["kubectl_get"]
        assert result.token_totals.input == 1350
        assert result.token_totals.output == 65
        assert result.token_totals.cache_write == 900
        assert result.token_totals.cache_read == 900

        kwargs = provider.client.messages.create.call_args_list[0].kwargs
        assert kwargs["system"] == [
            {"type": "text", "text": "You are an ops assistant.", "cache_control": CACHE_MARKER}
        ]
        assert "cache_control" not in kwargs["tools"][0]
        assert kwargs["tools"][-1]["cache_control"] == CACHE_MARKER

        messages = provider.client.messages.create.call_args_list[1].kwargs["messages"]
        assert messages[1]["role"] == "assistant"
        assert messages[1]["content"][1] == {
            "type": "tool_use",
            "id": "tu_1",
            "name": "kubectl_get",
            "input": {"resource": "pods"},
        }
        tool_result = messages[2]["content"][0]
        assert tool_result["tool_use_id"] == "tu_1"
        assert tool_result["is_error"] is False

    @pytest.mark.asyncio
    async def test_cache_markers_can_be_disabled(self):
        provider = self._provider([_anthropic_message(_text_block("ok"))])
        await provider.tool_loop(_request(cache_tools=False, cache_system_prompt=False))

        kwargs = provider.client.messages.create.call_args.kwargs
        assert all("cache_control" not in tool for tool in kwargs["tools"])
        assert "cache_control" not in kwargs["system"][0]

    @pytest.mark.asyncio
    async def test_api_failure_becomes_failed_result(self):
        provider = self._provider([ValueError("invalid request")])
        result = await provider.tool_loop(_request())
        assert result.status is LoopStatus.FAILED
        assert "invalid request" in result.final_message

    @pytest.mark.asyncio
    async def test_send_message_retries_transient_stream_errors(self, monkeypatch):
        monkeypatch.setattr(AnthropicProvider._stream.retry, "wait", wait_none())
        final = _anthropic_message(_text_block("ready"), input_tokens=5, output_tokens=2)
        attempts = []

        class _Stream:
            async def __aenter__(self):
                attempts.append(1)
                if len(attempts) == 1:
                    raise anthropic.APIConnectionError(
                        request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
                    )
                return self

            async def __aexit__(self, *exc_info):
                return False

            async def get_final_message(self):
                return final

        provider = AnthropicProvider(api_key="sk-test")
        provider.client = MagicMock()
        provider.client.messages.stream = MagicMock(side_effect=lambda **kwargs: _Stream())

        response = await provider.send_message("hi")

        assert response.content == "ready"
        assert response.usage.input_tokens == 5
        assert len(attempts) == 2
        assert provider.client.messages.stream.call_args.kwargs["max_tokens"] == MESSAGE_MAX_TOKENS


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------


def _completion(content="", tool_calls=None, prompt_tokens=0, completion_tokens=0, cached=0):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content, tool_calls=tool_calls))],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            prompt_tokens_details=SimpleNamespace(cached_tokens=cached),
        ),
    )


def _function_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class TestOpenAIProvider:
    def _provider(self, responses, **kwargs):
        provider = OpenAIProvider(api_key="sk-test", **kwargs)
        provider.client = MagicMock()
        provider.client.chat.completions.create = AsyncMock(side_effect=responses)
        return provider

    def test_unsupported_vendor(self):
        with pytest.raises(ConfigurationError, match="Unsupported provider"):
            OpenAIProvider(api_key="sk-test", vendor="mistral")

    def test_google_defaults(self):
        provider = OpenAIProvider(api_key="sk-test", vendor="google")
        assert provider.get_vendor_id() == "google"
        assert provider.get_model() == "gemini-2.5-pro"
        assert "generativelanguage.googleapis.com" in str(provider.client.base_url)

    @pytest.mark.asyncio
    async def test_cached_tokens_are_not_counted_as_input(self):
        provider = self._provider([_completion("hello", prompt_tokens=1000, completion_tokens=20, cached=800)])
        response = await provider.send_message("hi", "generic")

        assert response.content == "hello"
        assert response.usage.input_tokens == 200
        assert response.usage.cache_read_tokens == 800
        assert response.usage.output_tokens == 20

    @pytest.mark.asyncio
    async def test_tool_loop_parses_function_calls(self):
        provider = self._provider(
            [
                _completion(
                    tool_calls=[
                        _function_call("c1", "kubectl_get", '{"resource": "pods"}'),
                        _function_call("c2", "search_capabilities", "{not json"),
                    ]
                ),
                _completion("Nothing is failing."),
            ]
        )

        result = await provider.tool_loop(_request())

        assert result.final_message == "Nothing is failing."
        assert [(r.tool, r.input) for r in result.tool_calls_executed] == [
            ("kubectl_get", {"resource": "pods"}),
            ("search_capabilities", {}),
        ]
        first = provider.client.chat.completions.create.call_args_list[0].kwargs
        assert first["model"] == "gpt-5"
        assert first["tools"][0]["function"]["name"] == "search_capabilities"

        messages = provider.client.chat.completions.create.call_args_list[1].kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "You are an ops assistant."}
        assert messages[2]["tool_calls"][0]["id"] == "c1"
        assert [m["tool_call_id"] for m in messages[3:]] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_max_tokens_parameter_follows_vendor(self):
        models = {"": ModelConfig(max_tokens=2048)}
        openai_provider = self._provider([_completion("ok")], operation_models=models)
        google_provider = self._provider([_completion("ok")], vendor="google", operation_models=models)

        await openai_provider.send_message("hi")
        await google_provider.send_message("hi")

        openai_kwargs = openai_provider.client.chat.completions.create.call_args.kwargs
        assert openai_kwargs["max_completion_tokens"] == 2048
        assert "max_tokens" not in openai_kwargs
        google_kwargs = google_provider.client.chat.completions.create.call_args.kwargs
        assert google_kwargs["max_tokens"] == 2048

    @pytest.mark.asyncio
    async def test_send_message_wraps_errors(self):
        provider = self._provider([RuntimeError("socket closed")])
        with pytest.raises(ProviderCallError, match="socket closed"):
            await provider.send_message("hi")


# ---------------------------------------------------------------------------
# Host sampling
# ---------------------------------------------------------------------------


class TestHostProvider:
    @pytest.mark.asyncio
    async def test_tool_calls_from_fenced_json(self):
        replies = [
            'Let me look.\n```json\n{"tool": "kubectl_get", "resource": "pods"}\n```',
            "All pods are healthy.",
        ]
        seen = []

        async def sample(messages, system_prompt):
            seen.append((list(messages), system_prompt))
            return replies[len(seen) - 1]

        provider = HostProvider(sample)
        result = await provider.tool_loop(_request())

        assert result.final_message == "All pods are healthy."
        assert result.tool_calls_executed[0].tool == "kubectl_get"
        assert result.tool_calls_executed[0].input == {"resource": "pods"}
        assert result.token_totals.input == 0

        system_prompt = seen[0][1]
        assert system_prompt.startswith("You are an ops assistant.")
        assert "### kubectl_get" in system_prompt
        assert seen[1][0][-1]["content"].startswith("Tool 'kubectl_get' output:")

    @pytest.mark.asyncio
    async def test_without_handler_is_not_initialized(self):
        provider = HostProvider()
        assert provider.is_initialized() is False
        with pytest.raises(ProviderCallError):
            await provider.send_message("hi")


# ---------------------------------------------------------------------------
# No-op provider
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_noop_provider_fails_every_call():
    provider = NoOpProvider()
    with pytest.raises(ProviderCallError, match="No API keys configured"):
        await provider.send_message("hi")
    result = await provider.tool_loop(_request())
    assert result.status is LoopStatus.FAILED
    assert result.final_message == "noop tool loop error: noop provider not initialized"


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestFactory:
    def test_unknown_vendor(self):
        with pytest.raises(ConfigurationError, match="Unsupported provider 'mistral'"):
            create_provider(ProviderConfig(vendor="mistral", api_key="k"), operation_models={})

    def test_empty_api_key(self):
        with pytest.raises(ConfigurationError, match="API key is required"):
            create_provider(ProviderConfig(vendor="anthropic"), operation_models={})

    def test_builds_each_family(self):
        anthropic = create_provider(ProviderConfig(vendor="anthropic", api_key="k"), _no_keys(), {})
        openai = create_provider(ProviderConfig(vendor="openai", api_key="k", model="gpt-5-mini"), _no_keys(), {})
        google = create_provider(ProviderConfig(vendor="google", api_key="k"), _no_keys(), {})

        assert isinstance(anthropic, AnthropicProvider)
        assert (openai.get_vendor_id(), openai.get_model()) == ("openai", "gpt-5-mini")
        assert google.get_vendor_id() == "google"

    def test_debug_flag_attaches_recorder(self, tmp_path):
        cfg = _no_keys(debug_dir=str(tmp_path))
        provider = create_provider(ProviderConfig(vendor="anthropic", api_key="k", debug=True), cfg, {})
        assert isinstance(provider.debug, DebugRecorder)

    def test_no_credentials_gives_noop(self):
        provider = create_provider_from_env(_no_keys())
        assert isinstance(provider, NoOpProvider)
        assert available_vendors(_no_keys()) == []

    def test_selected_vendor_without_key(self):
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            create_provider_from_env(_no_keys(ai_provider="openai", anthropic_api_key="k"))

    def test_selected_vendor_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MODELS_CONFIG_PATH", str(tmp_path / "missing.yaml"))
        provider = create_provider_from_env(_no_keys(ai_provider="google", google_api_key="k", ai_model="gemini-2.5-flash"))
        assert isinstance(provider, OpenAIProvider)
        assert provider.get_model() == "gemini-2.5-flash"
