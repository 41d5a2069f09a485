"""Pydantic v2 models for the Automaker execution core.

Defines features, workspaces, provider requests and streamed messages,
preview-server instances, and conversation sessions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------

class FeatureStatus(str, Enum):
    """Lifecycle status of a backlog feature."""
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"
    FAILED = "failed"
    BLOCKED = "blocked"


class Feature(BaseModel):
    """A unit of autonomously implemented work.

    Unknown keys from the feature list are kept so saving back never drops
    data owned by other tools.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., description="Stable feature identifier")
    description: str = Field(default="")
    category: str = Field(default="")
    steps: list[str] = Field(default_factory=list)
    status: FeatureStatus = Field(default=FeatureStatus.BACKLOG)
    dependencies: list[str] = Field(default_factory=list)
    workspace_path: Optional[str] = Field(default=None, alias="worktreePath")
    image_paths: list[str] = Field(default_factory=list, alias="imagePaths")

    @property
    def is_terminal(self) -> bool:
        return self.status in (FeatureStatus.VERIFIED, FeatureStatus.FAILED)


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------

class Workspace(BaseModel):
    """An isolated, branch-backed working directory bound to one feature."""
    path: Path
    branch: str
    base_commit: str
    feature_id: str
    project_path: Path
    locked: bool = Field(default=True, description="True while a feature holds the workspace")
    created_at: str = Field(default_factory=_utcnow)


class BranchInfo(BaseModel):
    name: str
    is_current: bool = False
    is_remote: bool = False


class BranchListing(BaseModel):
    """Local branches visible from a workspace plus upstream drift counts."""
    current_branch: str
    branches: list[BranchInfo] = Field(default_factory=list)
    ahead_count: int = 0
    behind_count: int = 0


# ---------------------------------------------------------------------------
# Provider requests and messages
# ---------------------------------------------------------------------------

class MessageKind(str, Enum):
    TEXT_DELTA = "text_delta"
    TOOL_INVOCATION = "tool_invocation"
    TOOL_RESULT = "tool_result"
    PHASE_MARKER = "phase_marker"
    ERROR = "error"
    COMPLETION = "completion"


class ProviderMessage(BaseModel):
    """One item streamed from a provider call, in emission order."""
    kind: MessageKind
    text: str = Field(default="")
    tool_name: Optional[str] = Field(default=None)
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: Optional[str] = Field(default=None)
    is_error: bool = Field(default=False)
    session_id: Optional[str] = Field(default=None, description="Remote session token, when known")
    stop_reason: Optional[str] = Field(default=None, description="completion: 'end_turn' or 'max_turns'")
    raw: dict[str, Any] = Field(default_factory=dict, description="Vendor payload, for debugging")


class PromptPart(BaseModel):
    """A piece of a multi-part prompt: text or an image attachment on disk."""
    type: str = Field(default="text", description="'text' or 'image'")
    text: str = Field(default="")
    path: Optional[str] = Field(default=None)


class ConversationTurn(BaseModel):
    role: str
    content: str


class ExecuteRequest(BaseModel):
    """Everything a provider needs for one call. Immutable once issued."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    prompt: Union[str, list[PromptPart]]
    model: str = Field(default="")
    cwd: str
    allowed_tools: tuple[str, ...] = Field(default=())
    read_only: bool = Field(default=False, description="Forbid file-system mutation")
    max_turns: int = Field(default=20, ge=1)
    reasoning_effort: str = Field(default="medium")
    system_prompt: str = Field(default="")
    session_token: Optional[str] = Field(default=None, description="Prior provider session to resume")
    conversation_history: tuple[ConversationTurn, ...] = Field(default=())
    cancel_token: Any = Field(default=None, exclude=True)

    @property
    def prompt_text(self) -> str:
        """Flatten the prompt to plain text (image parts are dropped)."""
        if isinstance(self.prompt, str):
            return self.prompt
        return "\n\n".join(p.text for p in self.prompt if p.type == "text" and p.text)

    @property
    def image_paths(self) -> list[str]:
        if isinstance(self.prompt, str):
            return []
        return [p.path for p in self.prompt if p.type == "image" and p.path]

    @property
    def wants_resume(self) -> bool:
        """Resume only when both a token and non-empty history were supplied."""
        return bool(self.session_token) and len(self.conversation_history) > 0


# ---------------------------------------------------------------------------
# Preview servers
# ---------------------------------------------------------------------------

class PreviewStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"


class PreviewServerInstance(BaseModel):
    """A build/run process serving one workspace on one port."""
    workspace_path: str
    project_path: str
    port: int
    url: str
    pid: Optional[int] = None
    status: PreviewStatus = PreviewStatus.STARTING
    started_at: str = Field(default_factory=_utcnow)

    def to_result(self) -> dict[str, Any]:
        return {
            "worktreePath": self.workspace_path,
            "port": self.port,
            "url": self.url,
            "status": self.status.value,
        }


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class Turn(BaseModel):
    role: str = Field(..., description="'user' or 'assistant'")
    content: str = Field(default="")
    image_paths: list[str] = Field(default_factory=list)
    timestamp: str = Field(default_factory=_utcnow)


class Session(BaseModel):
    """A persisted conversation context independent of any single feature."""
    id: str
    name: str = Field(default="")
    project_path: Optional[str] = None
    working_directory: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    turns: list[Turn] = Field(default_factory=list)
    archived: bool = False
    provider_session_id: Optional[str] = None
    created_at: str = Field(default_factory=_utcnow)
    updated_at: str = Field(default_factory=_utcnow)

    def summary(self) -> dict[str, Any]:
        """Listing view without the turn bodies."""
        data = self.model_dump(exclude={"turns"})
        data["turn_count"] = len(self.turns)
        return data
