"""Automaker configuration.

Centralised, typed configuration for the execution core. All settings use
Pydantic v2 models so they can be validated at construction time and serialised
to/from JSON or environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

ReasoningEffort = Literal["none", "low", "medium", "high", "ultra"]


class AutoModeConfig(BaseModel):
    """Tuning knobs for the feature scheduler and phase machine."""

    max_concurrency: int = Field(default=3, ge=1, description="Maximum features executing at once")
    enable_dependency_blocking: bool = Field(
        default=True,
        description="When False the dependency gate only warns instead of blocking",
    )
    use_worktrees: bool = Field(default=True, description="Isolate each feature in a git worktree")
    max_verification_retries: int = Field(
        default=3, ge=0, description="Action/Verification retries before a feature is failed"
    )
    retain_worktrees: bool = Field(
        default=True, description="Keep worktrees on disk after a feature reaches a terminal state"
    )
    inter_feature_delay: float = Field(
        default=3.0, ge=0, description="Pause in seconds between scheduling rounds"
    )
    event_buffer_size: int = Field(default=256, ge=1)
    event_overflow_policy: Literal["drop_oldest", "block"] = Field(default="drop_oldest")


class ProviderConfig(BaseModel):
    """Which agent backend to drive and how."""

    name: Literal["claude", "codex", "ollama"] = Field(default="claude")
    model: str = Field(default="")
    planning_max_turns: int = Field(default=10, ge=1)
    action_max_turns: int = Field(default=30, ge=1)
    verification_max_turns: int = Field(default=15, ge=1)
    reasoning_effort: ReasoningEffort = Field(default="medium")
    timeout: int = Field(default=1800, ge=10, description="Per-call timeout in seconds")
    claude_binary: str = Field(default="claude")
    codex_binary: str = Field(default="codex")
    ollama_url: str = Field(default="http://localhost:11434")
    extra_env_allowlist: list[str] = Field(
        default_factory=list,
        description="Additional environment variable names forwarded to the agent process",
    )


class PreviewConfig(BaseModel):
    """Ephemeral per-workspace preview server settings.

    Ports are drawn from a dedicated range starting at 23100 so they never
    collide with common development ports (3000, 5000, 8000, 8080).
    """

    command: str = Field(default="npm run dev")
    host: str = Field(default="localhost")
    port_range_start: int = Field(default=23100, ge=23000)
    port_range_end: int = Field(default=23199, ge=23000)
    startup_timeout: int = Field(default=60, ge=1)
    health_check: bool = Field(default=False, description="Wait for HTTP 200 before reporting running")

    @model_validator(mode="after")
    def _check_range(self) -> "PreviewConfig":
        if self.port_range_end < self.port_range_start:
            raise ValueError("port_range_end must be >= port_range_start")
        return self

    def port_pool(self) -> list[int]:
        """Return every port the manager may hand out, lowest first."""
        return list(range(self.port_range_start, self.port_range_end + 1))


class VerificationConfig(BaseModel):
    """How the Verification phase decides whether a feature works."""

    test_command: str = Field(default="npm test", description="Empty string disables the command")
    timeout: int = Field(default=600, ge=1)
    use_preview_server: bool = Field(default=False)
    review_with_provider: bool = Field(default=True)


class Config(BaseModel):
    """Global Automaker configuration.

    Instances are typically created once by ``AutoModeService`` or by the CLI
    entry point and then passed through the rest of the system.
    """

    data_dir: str = Field(default=".automaker")
    worktrees_dir: str = Field(default=".worktrees")
    branch_prefix: str = Field(default="automaker/")
    git_timeout: float = Field(default=60.0, gt=0)
    sessions_root: Path | None = Field(
        default=None, description="Where session JSON files live; defaults to ~/.automaker/sessions"
    )
    auto_mode: AutoModeConfig = Field(default_factory=AutoModeConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    preview: PreviewConfig = Field(default_factory=PreviewConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    def data_path(self, project_path: str | Path) -> Path:
        """Root of the ``.automaker/`` metadata directory inside a project."""
        return Path(project_path) / self.data_dir

    def features_path(self, project_path: str | Path) -> Path:
        """Path to the human-authored ``feature_list.json``."""
        return self.data_path(project_path) / "feature_list.json"

    def spec_path(self, project_path: str | Path) -> Path:
        """Path to the free-text project specification."""
        return self.data_path(project_path) / "app_spec.txt"

    def context_dir(self, project_path: str | Path) -> Path:
        """Directory holding per-feature running transcripts."""
        return self.data_path(project_path) / "context"

    def worktrees_path(self, project_path: str | Path) -> Path:
        """Root directory for a project's git worktrees."""
        return Path(project_path) / self.worktrees_dir

    @property
    def sessions_dir(self) -> Path:
        return self.sessions_root or (Path.home() / ".automaker" / "sessions")

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file and return its path."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            AUTOMAKER_PROVIDER, AUTOMAKER_MODEL, AUTOMAKER_REASONING_EFFORT,
            AUTOMAKER_MAX_CONCURRENCY, AUTOMAKER_USE_WORKTREES,
            AUTOMAKER_DEPENDENCY_BLOCKING, AUTOMAKER_MAX_RETRIES,
            AUTOMAKER_TEST_COMMAND, AUTOMAKER_PREVIEW_COMMAND, AUTOMAKER_DATA_DIR.
        """
        provider_kwargs: dict[str, Any] = {}
        if os.environ.get("AUTOMAKER_PROVIDER"):
            provider_kwargs["name"] = os.environ["AUTOMAKER_PROVIDER"]
        if os.environ.get("AUTOMAKER_MODEL"):
            provider_kwargs["model"] = os.environ["AUTOMAKER_MODEL"]
        if os.environ.get("AUTOMAKER_REASONING_EFFORT"):
            provider_kwargs["reasoning_effort"] = os.environ["AUTOMAKER_REASONING_EFFORT"]

        auto_kwargs: dict[str, Any] = {}
        if os.environ.get("AUTOMAKER_MAX_CONCURRENCY"):
            auto_kwargs["max_concurrency"] = int(os.environ["AUTOMAKER_MAX_CONCURRENCY"])
        if os.environ.get("AUTOMAKER_USE_WORKTREES"):
            auto_kwargs["use_worktrees"] = _env_bool(os.environ["AUTOMAKER_USE_WORKTREES"])
        if os.environ.get("AUTOMAKER_DEPENDENCY_BLOCKING"):
            auto_kwargs["enable_dependency_blocking"] = _env_bool(
                os.environ["AUTOMAKER_DEPENDENCY_BLOCKING"]
            )
        if os.environ.get("AUTOMAKER_MAX_RETRIES"):
            auto_kwargs["max_verification_retries"] = int(os.environ["AUTOMAKER_MAX_RETRIES"])

        verification_kwargs: dict[str, Any] = {}
        if "AUTOMAKER_TEST_COMMAND" in os.environ:
            verification_kwargs["test_command"] = os.environ["AUTOMAKER_TEST_COMMAND"]

        preview_kwargs: dict[str, Any] = {}
        if os.environ.get("AUTOMAKER_PREVIEW_COMMAND"):
            preview_kwargs["command"] = os.environ["AUTOMAKER_PREVIEW_COMMAND"]

        return cls(
            data_dir=os.environ.get("AUTOMAKER_DATA_DIR", ".automaker"),
            auto_mode=AutoModeConfig(**auto_kwargs),
            provider=ProviderConfig(**provider_kwargs),
            preview=PreviewConfig(**preview_kwargs),
            verification=VerificationConfig(**verification_kwargs),
        )


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")
