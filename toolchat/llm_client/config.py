from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from toolchat.constants import AI_CONFIG_PATH
from toolchat.errors import ConfigError
from toolchat.tool.config_loader import read_config_file

logger = logging.getLogger(__name__)

PROVIDER_NAMES = {
    "anthropic": "Anthropic",
    "openai": "OpenAI",
}

PROVIDER_API_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


@dataclass(frozen=True)
class ModelConfig:
    id: str
    name: str
    max_tokens: int
    enabled: bool = True


@dataclass(frozen=True)
class ProviderConfig:
    enabled: bool = False
    models: Tuple[ModelConfig, ...] = ()

    def model(self, model_id: str) -> Optional[ModelConfig]:
        return next((m for m in self.models if m.id == model_id), None)


@dataclass(frozen=True)
class AIConfig:
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    default_provider: str = "openai"
    default_model: str = ""


def _default_config_path() -> Path:
    explicit = os.getenv("TOOLCHAT_AI_CONFIG")
    if explicit:
        return Path(explicit)
    return AI_CONFIG_PATH


def _parse_models(provider: str, models: Any) -> List[ModelConfig]:
    if not isinstance(models, list):
        raise ConfigError(f"'models' for provider '{provider}' must be a list")
    parsed = []
    for i, item in enumerate(models):
        if not isinstance(item, dict) or not item.get("id"):
            raise ConfigError(f"Model entry {i} of provider '{provider}' requires an 'id'")
        try:
            max_tokens = int(item.get("maxTokens", 4096))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"'maxTokens' of model '{item['id']}' must be an integer") from e
        if max_tokens <= 0:
            raise ConfigError(f"'maxTokens' of model '{item['id']}' must be positive")
        parsed.append(
            ModelConfig(
                id=str(item["id"]),
                name=str(item.get("name", item["id"])),
                max_tokens=max_tokens,
                enabled=bool(item.get("enabled", True)),
            )
        )
    return parsed


def load_ai_config(config_path: str | Path | None = None) -> AIConfig:
    path = config_path or _default_config_path()
    data = read_config_file(path)

    raw_providers = data.get("providers")
    if not isinstance(raw_providers, dict):
        raise ConfigError("Config must contain 'providers' as a mapping")

    providers: Dict[str, ProviderConfig] = {}
    for provider, raw in raw_providers.items():
        if provider not in PROVIDER_NAMES:
            raise ConfigError(
                f"Unknown provider '{provider}'; expected one of {sorted(PROVIDER_NAMES)}"
            )
        if not isinstance(raw, dict):
            raise ConfigError(f"Provider '{provider}' must be a mapping")
        providers[provider] = ProviderConfig(
            enabled=bool(raw.get("enabled", False)),
            models=tuple(_parse_models(provider, raw.get("models", []))),
        )

    default_provider = data.get("defaultProvider")
    if default_provider not in providers:
        raise ConfigError(f"defaultProvider '{default_provider}' is not a configured provider")
    default_model = data.get("defaultModel")
    if not default_model:
        raise ConfigError("Config must contain 'defaultModel'")

    logger.info("Loaded AI providers %s from %s", list(providers), path)
    return AIConfig(
        providers=providers,
        default_provider=default_provider,
        default_model=str(default_model),
    )
