from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Provider selection
    ai_provider: str = "anthropic"
    ai_model: str = ""
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    google_api_key: str = ""
    llm_base_url: str = ""
    promptlayer_api_key: str = ""

    # Observability side-channel
    debug_ai: bool = False
    debug_dir: str = "tmp/debug-ai"

    # Sessions
    session_dir: str = ""
    session_ttl_seconds: int = 86400

    # Tool loop
    tool_loop_max_iterations: int = 20
    request_timeout_seconds: float = 0
    abort_on_timeout: bool = False

    # Plugins
    plugins_config_path: str = "/etc/ops-agent/plugins.json"
    plugin_timeout_seconds: float = 30
    plugin_discovery_attempts: int = 5


settings = Settings()


class ProviderConfig(BaseModel):
    """Immutable selection of one provider variant."""

    model_config = ConfigDict(frozen=True)

    vendor: str
    api_key: str = ""
    model: str = ""
    debug: bool = False
    base_url: str = ""


@dataclass
class ModelConfig:
    model: str = ""
    max_tokens: int | None = None
    temperature: float | None = None


def load_models_yaml(path: str | Path | None = None) -> dict:
    """Read models.yaml, returning an empty dict when it does not exist."""
    config_path = Path(path or os.environ.get("MODELS_CONFIG_PATH", "models.yaml"))
    if not config_path.is_file():
        return {}

    import yaml

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def get_model_config(operation: str = "", path: str | Path | None = None) -> ModelConfig:
    """Get model config for an operation, merging default + operation override.

    Falls back to Settings env variables if models.yaml doesn't exist.
    """
    data = load_models_yaml(path)

    if not data:
        return ModelConfig(model=settings.ai_model)

    default = data.get("default", {})
    merged = {
        "model": default.get("model", settings.ai_model),
        "max_tokens": default.get("max_tokens"),
        "temperature": default.get("temperature"),
    }

    if operation:
        overrides = data.get("operations", {}).get(operation, {})
        for key, value in overrides.items():
            if key in merged:
                merged[key] = value

    return ModelConfig(**merged)
