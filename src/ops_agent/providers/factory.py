"""Provider selection.

Call sites receive an ``AIProvider`` and never branch on vendor identity;
the branching happens once, here.
"""

from __future__ import annotations

import logging
from enum import Enum

from ops_agent.config import ModelConfig, ProviderConfig, Settings, get_model_config, load_models_yaml, settings
from ops_agent.errors import ConfigurationError
from ops_agent.providers.anthropic_provider import AnthropicProvider
from ops_agent.providers.base import AIProvider
from ops_agent.providers.debug import DebugRecorder
from ops_agent.providers.noop_provider import NoOpProvider
from ops_agent.providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)


class VendorFamily(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"


PROVIDER_ENV_KEYS = {
    VendorFamily.ANTHROPIC: "anthropic_api_key",
    VendorFamily.OPENAI: "openai_api_key",
    VendorFamily.GOOGLE: "google_api_key",
}


def _vendor(name: str) -> VendorFamily:
    try:
        return VendorFamily(name)
    except ValueError:
        supported = ", ".join(v.value for v in VendorFamily)
        raise ConfigurationError(f"Unsupported provider '{name}'. Supported: {supported}") from None


def _operation_models() -> dict[str, ModelConfig]:
    """Per-operation model settings; the "" entry holds the default block."""
    data = load_models_yaml()
    if not data:
        return {}
    models = {"": get_model_config()}
    models.update({op: get_model_config(op) for op in data.get("operations") or {}})
    return models


def create_provider(
    config: ProviderConfig,
    cfg: Settings | None = None,
    operation_models: dict[str, ModelConfig] | None = None,
) -> AIProvider:
    """Build the provider variant named by ``config.vendor``.

    Raises ConfigurationError for an empty credential or unknown vendor.
    """
    cfg = cfg or settings
    vendor = _vendor(config.vendor)
    if not config.api_key:
        raise ConfigurationError(f"API key is required for {vendor.value} provider")

    debug = DebugRecorder(cfg.debug_dir) if config.debug else None
    if operation_models is None:
        operation_models = _operation_models()

    if vendor is VendorFamily.ANTHROPIC:
        return AnthropicProvider(
            api_key=config.api_key,
            model=config.model,
            debug=debug,
            operation_models=operation_models,
        )
    return OpenAIProvider(
        api_key=config.api_key,
        model=config.model,
        vendor=vendor.value,
        base_url=config.base_url,
        debug=debug,
        operation_models=operation_models,
        promptlayer_api_key=cfg.promptlayer_api_key,
    )


def available_vendors(cfg: Settings | None = None) -> list[VendorFamily]:
    """Vendors that have a credential configured."""
    cfg = cfg or settings
    return [v for v, attr in PROVIDER_ENV_KEYS.items() if getattr(cfg, attr)]


def create_provider_from_env(cfg: Settings | None = None) -> AIProvider:
    """Build the provider selected by ``AI_PROVIDER``.

    Returns the no-op provider when no credential is configured at all, so
    that operations that do not need a model keep working.
    """
    cfg = cfg or settings
    vendor = _vendor(cfg.ai_provider)
    api_key = getattr(cfg, PROVIDER_ENV_KEYS[vendor])
    if not api_key:
        if not available_vendors(cfg):
            logger.warning("No AI credentials configured, using no-op provider")
            return NoOpProvider()
        raise ConfigurationError(
            f"{PROVIDER_ENV_KEYS[vendor].upper()} environment variable must be set "
            f"for {vendor.value} provider"
        )
    return create_provider(
        ProviderConfig(
            vendor=vendor.value,
            api_key=api_key,
            model=cfg.ai_model,
            debug=cfg.debug_ai,
            base_url=cfg.llm_base_url,
        ),
        cfg,
    )
