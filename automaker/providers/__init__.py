"""Agent provider abstraction and its concrete backends.

Callers obtain a provider through ``create_provider`` using the configured
backend name and program only against ``BaseProvider``.
"""

from __future__ import annotations

from typing import Optional

from automaker.config import ProviderConfig
from automaker.errors import ValidationError

from .base import (
    ALLOWED_ENV_VARS,
    BaseProvider,
    InstallationStatus,
    ModelDefinition,
    build_env,
    classify_error,
)
from .claude import ClaudeProvider
from .codex import CodexProvider
from .ollama import OllamaProvider

PROVIDERS: dict[str, type[BaseProvider]] = {
    "claude": ClaudeProvider,
    "codex": CodexProvider,
    "ollama": OllamaProvider,
}


def create_provider(config: Optional[ProviderConfig] = None) -> BaseProvider:
    """Instantiate the provider named by ``config.name``."""
    config = config or ProviderConfig()
    try:
        provider_cls = PROVIDERS[config.name]
    except KeyError:
        raise ValidationError(f"Unknown provider: {config.name}") from None
    return provider_cls(config)


__all__ = [
    "ALLOWED_ENV_VARS",
    "BaseProvider",
    "ClaudeProvider",
    "CodexProvider",
    "InstallationStatus",
    "ModelDefinition",
    "OllamaProvider",
    "PROVIDERS",
    "build_env",
    "classify_error",
    "create_provider",
]
