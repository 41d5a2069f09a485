"""Shared pytest fixtures for the Automaker test suite.

Provides reusable fixtures for:
- Temporary git repositories (with and without commits)
- A project directory with a feature list
- A scripted provider that replays canned message streams
- Recording observers
- Mock subprocess helpers
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from automaker.config import AutoModeConfig, Config, ProviderConfig, VerificationConfig
from automaker.models import ExecuteRequest, MessageKind, ProviderMessage
from automaker.providers.base import BaseProvider, InstallationStatus, ModelDefinition


# ---------------------------------------------------------------------------
# Git repositories
# ---------------------------------------------------------------------------

def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


def _init_repo(repo: Path) -> None:
    repo.mkdir(parents=True, exist_ok=True)
    _git(repo, "init")
    _git(repo, "config", "user.email", "test@automaker.local")
    _git(repo, "config", "user.name", "Automaker Test")
    _git(repo, "config", "commit.gpgsign", "false")


@pytest.fixture
def tmp_git_repo(tmp_path: Path) -> Path:
    """Temporary git repository with an initial commit."""
    repo_dir = tmp_path / "test-repo"
    _init_repo(repo_dir)
    (repo_dir / "README.md").write_text("# Test Project\n", encoding="utf-8")
    _git(repo_dir, "add", ".")
    _git(repo_dir, "commit", "-m", "Initial commit")
    yield repo_dir


@pytest.fixture
def tmp_empty_repo(tmp_path: Path) -> Path:
    """Freshly initialised git repository with no commits."""
    repo_dir = tmp_path / "empty-repo"
    _init_repo(repo_dir)
    yield repo_dir


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Fast configuration: no pauses, no test command, no provider review."""
    return Config(
        sessions_root=tmp_path / "sessions",
        auto_mode=AutoModeConfig(
            max_concurrency=2,
            use_worktrees=False,
            inter_feature_delay=0,
            max_verification_retries=1,
        ),
        verification=VerificationConfig(test_command="", review_with_provider=False),
    )


# ---------------------------------------------------------------------------
# Feature lists
# ---------------------------------------------------------------------------

def write_features(project: Path, features: list[dict[str, Any]], cfg: Optional[Config] = None) -> Path:
    """Write *features* to the project's feature list and return its path."""
    path = (cfg or Config()).features_path(project)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(features, indent=2), encoding="utf-8")
    return path


def read_features(project: Path, cfg: Optional[Config] = None) -> dict[str, dict[str, Any]]:
    path = (cfg or Config()).features_path(project)
    return {entry["id"]: entry for entry in json.loads(path.read_text(encoding="utf-8"))}


@pytest.fixture
def sample_features() -> list[dict[str, Any]]:
    """A small A -> B -> C chain plus an independent feature."""
    return [
        {"id": "A", "description": "User registration", "category": "auth", "steps": ["Add form"]},
        {"id": "B", "description": "User login", "category": "auth", "dependencies": ["A"]},
        {"id": "C", "description": "Password reset", "category": "auth", "dependencies": ["B"]},
        {"id": "D", "description": "Dark mode", "category": "ui"},
    ]


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Plain (non-git) project directory with an ``.automaker`` folder."""
    project = tmp_path / "project"
    (project / ".automaker").mkdir(parents=True)
    return project


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

Script = list[Union[ProviderMessage, BaseException]]


def text(content: str, session_id: Optional[str] = "sess-1") -> ProviderMessage:
    return ProviderMessage(kind=MessageKind.TEXT_DELTA, text=content, session_id=session_id)


def tool(name: str, **tool_input: Any) -> ProviderMessage:
    return ProviderMessage(kind=MessageKind.TOOL_INVOCATION, tool_name=name, tool_input=tool_input)


def done(stop_reason: str = "end_turn", session_id: Optional[str] = "sess-1") -> ProviderMessage:
    return ProviderMessage(kind=MessageKind.COMPLETION, stop_reason=stop_reason, session_id=session_id)


class FakeProvider(BaseProvider):
    """Provider that replays scripted streams and records every request.

    ``scripts`` maps a feature id (matched against the prompt text) to a list
    of call scripts; each call pops the next one. Calls without a script get
    a short default text + completion. An exception inside a script is raised
    at that point of the stream. ``on_call`` is awaited before each stream.
    """

    name = "fake"
    supported_features = frozenset({"tools", "text", "vision", "resume"})

    def __init__(self, scripts: Optional[dict[str, list[Script]]] = None) -> None:
        super().__init__(ProviderConfig())
        self.scripts = scripts or {}
        self.requests: list[ExecuteRequest] = []
        self.on_call: Optional[Callable[[ExecuteRequest], Any]] = None

    def _script_for(self, request: ExecuteRequest) -> Script:
        prompt = request.prompt_text
        for feature_id, queue in self.scripts.items():
            if f"Feature {feature_id}:" in prompt and queue:
                return queue.pop(0)
        return [text("ok"), done()]

    async def execute(self, request: ExecuteRequest) -> AsyncIterator[ProviderMessage]:
        self.requests.append(request)
        if self.on_call is not None:
            await self.on_call(request)
        for item in self._script_for(request):
            if isinstance(item, BaseException):
                raise item
            yield item

    async def detect_availability(self) -> InstallationStatus:
        return InstallationStatus(installed=True, method="sdk", version="1.0")

    async def list_models(self) -> list[ModelDefinition]:
        return [ModelDefinition(id="fake-1", name="Fake", provider="fake", default=True)]


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------

class RecordingObserver:
    """Collects every event it receives."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def __call__(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]

    def for_feature(self, feature_id: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e.get("featureId") == feature_id]


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


# ---------------------------------------------------------------------------
# Mock Subprocess (generic)
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Factory for mock asyncio subprocess instances.

    Usage:
        def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_exec", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
    ) -> AsyncMock:
        mock_proc = AsyncMock()
        mock_proc.communicate = AsyncMock(
            return_value=(stdout.encode("utf-8"), stderr.encode("utf-8"))
        )
        mock_proc.returncode = returncode
        mock_proc.pid = 99999
        mock_proc.kill = MagicMock()
        mock_proc.terminate = MagicMock()
        mock_proc.wait = AsyncMock(return_value=returncode)
        return mock_proc

    return factory
