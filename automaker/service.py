"""Request handlers exposed to the board UI.

Every handler returns a plain dict shaped ``{"success": True, ...}`` or
``{"success": False, "error": "..."}``. Missing required fields are rejected
before anything reaches a scheduler. Long-running work is started in the
background; its progress and failures arrive through the event observer.
"""

from __future__ import annotations

import asyncio
import functools
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console

from automaker.config import Config
from automaker.engine import FeatureScheduler, SchedulerState
from automaker.engine.scheduler import RunOptions, follow_up_options
from automaker.errors import AutomakerError, ProviderError, ValidationError
from automaker.events import Observer
from automaker.models import Turn
from automaker.preview import PreviewServerManager
from automaker.providers import BaseProvider, create_provider
from automaker.sessions import SessionStore
from automaker.workspace import WorkspaceManager

console = Console()

Response = dict[str, Any]


def _require(**fields: Any) -> None:
    """Raise ``ValidationError`` naming every missing field."""
    missing = [name for name, value in fields.items() if not value]
    if not missing:
        return
    if len(missing) == 1:
        raise ValidationError(f"{missing[0]} is required")
    raise ValidationError(f"{', '.join(missing[:-1])} and {missing[-1]} are required")


def _error_response(exc: BaseException) -> Response:
    response: Response = {"success": False, "error": str(exc)}
    if isinstance(exc, ProviderError):
        response.update({"errorType": exc.type, **{k: v for k, v in exc.to_dict().items() if k != "message"}})
    return response


def handler(func: Callable[..., Awaitable[Response]]) -> Callable[..., Awaitable[Response]]:
    """Convert raised errors into ``{"success": False, "error": ...}``."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Response:
        try:
            return await func(*args, **kwargs)
        except AutomakerError as exc:
            return _error_response(exc)
        except Exception as exc:  # noqa: BLE001
            console.print(f"[red]{func.__name__} failed: {exc}[/red]")
            return _error_response(exc)

    return wrapper


class AutoModeService:
    """Owns one scheduler per project plus the shared managers."""

    def __init__(
        self,
        config: Optional[Config] = None,
        provider: Optional[BaseProvider] = None,
        observer: Optional[Observer] = None,
    ) -> None:
        self.config = config or Config()
        self.provider = provider or create_provider(self.config.provider)
        self.observer = observer
        self.workspaces = WorkspaceManager(self.config)
        self.previews = PreviewServerManager(self.config.preview)
        self.sessions = SessionStore(self.config.sessions_dir)
        self._schedulers: dict[str, FeatureScheduler] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._runs: dict[str, asyncio.Task[Any]] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def scheduler(self, project_path: str | Path) -> FeatureScheduler:
        key = str(Path(project_path).resolve())
        scheduler = self._schedulers.get(key)
        if scheduler is None:
            scheduler = FeatureScheduler(
                key,
                self.config,
                self.provider,
                workspace_manager=self.workspaces,
                preview_manager=self.previews,
                observer=self.observer,
            )
            scheduler.load_backlog()
            self._schedulers[key] = scheduler
        return scheduler

    def _feature_scheduler(self, project_path: str, feature_id: str) -> FeatureScheduler:
        scheduler = self.scheduler(project_path)
        if feature_id not in scheduler.features:
            scheduler.load_backlog()
        return scheduler

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._background.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            console.print(f"[red]Background task {task.get_name()} failed: {exc}[/red]")

    async def wait_idle(self) -> None:
        """Wait for every background task started by a handler."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        for scheduler in self._schedulers.values():
            scheduler.stop()
        await self.wait_idle()
        await self.previews.stop_all()

    # ------------------------------------------------------------------
    # Auto mode
    # ------------------------------------------------------------------

    @handler
    async def run_feature(
        self,
        project_path: str = "",
        feature_id: str = "",
        use_worktrees: Optional[bool] = None,
        worktree_path: Optional[str] = None,
    ) -> Response:
        _require(projectPath=project_path, featureId=feature_id)
        scheduler = self._feature_scheduler(project_path, feature_id)
        task = scheduler.start_one(
            feature_id, RunOptions(use_worktrees=use_worktrees, workspace_path=worktree_path)
        )
        self._track(task)
        return {"success": True}

    @handler
    async def verify_feature(
        self,
        project_path: str = "",
        feature_id: str = "",
        worktree_path: Optional[str] = None,
    ) -> Response:
        _require(projectPath=project_path, featureId=feature_id)
        scheduler = self._feature_scheduler(project_path, feature_id)
        self._track(scheduler.start_one(feature_id, RunOptions(mode="verify", workspace_path=worktree_path)))
        return {"success": True}

    @handler
    async def follow_up_feature(
        self,
        project_path: str = "",
        feature_id: str = "",
        prompt: str = "",
        image_paths: Optional[list[str]] = None,
        worktree_path: Optional[str] = None,
    ) -> Response:
        _require(projectPath=project_path, featureId=feature_id, prompt=prompt)
        scheduler = self._feature_scheduler(project_path, feature_id)
        options = follow_up_options(prompt, image_paths or (), worktree_path)
        self._track(scheduler.start_one(feature_id, options))
        return {"success": True}

    @handler
    async def commit_feature(
        self,
        project_path: str = "",
        feature_id: str = "",
        worktree_path: Optional[str] = None,
    ) -> Response:
        _require(projectPath=project_path, featureId=feature_id)
        scheduler = self._feature_scheduler(project_path, feature_id)
        commit_hash = await scheduler.commit_feature(feature_id, worktree_path)
        return {"success": True, "commitHash": commit_hash}

    @handler
    async def start(self, project_path: str = "", max_concurrency: Optional[int] = None) -> Response:
        _require(projectPath=project_path)
        scheduler = self.scheduler(project_path)
        key = str(scheduler.project_path)
        pending = self._runs.get(key)
        # run_all only flips the state once its task is first scheduled.
        if scheduler.state != SchedulerState.IDLE or (pending is not None and not pending.done()):
            raise ValidationError("Auto mode is already running")
        scheduler.load_backlog()
        task = asyncio.create_task(scheduler.run_all(max_concurrency), name=f"auto-mode-{Path(project_path).name}")
        self._runs[key] = task
        self._track(task)
        return {"success": True}

    @handler
    async def stop(self, project_path: Optional[str] = None) -> Response:
        schedulers = [self.scheduler(project_path)] if project_path else list(self._schedulers.values())
        stopped = sum(scheduler.stop() for scheduler in schedulers)
        return {"success": True, "runningFeatures": stopped}

    @handler
    async def status(self, project_path: Optional[str] = None) -> Response:
        if project_path:
            return {"success": True, **self.scheduler(project_path).status()}
        running = [fid for s in self._schedulers.values() for fid in s.status()["currentFeatureIds"]]
        return {
            "success": True,
            "isRunning": any(s.status()["isRunning"] for s in self._schedulers.values()),
            "currentFeatureIds": running,
            "runningCount": len(running),
        }

    @handler
    async def models(self) -> Response:
        installation = await self.provider.detect_availability()
        models = await self.provider.list_models()
        return {
            "success": True,
            "provider": self.provider.name,
            "installation": installation.model_dump(),
            "models": [m.model_dump() for m in models],
        }

    # ------------------------------------------------------------------
    # Worktrees and dev servers
    # ------------------------------------------------------------------

    @handler
    async def worktree_create(self, project_path: str = "", feature_id: str = "") -> Response:
        _require(projectPath=project_path, featureId=feature_id)
        workspace = await self.workspaces.create(project_path, feature_id)
        # Created on request, not held by a running feature.
        self.workspaces.release(workspace)
        return {
            "success": True,
            "result": {
                "worktreePath": str(workspace.path),
                "branch": workspace.branch,
                "baseCommit": workspace.base_commit,
            },
        }

    @handler
    async def worktree_list_branches(self, worktree_path: str = "") -> Response:
        _require(worktreePath=worktree_path)
        listing = await self.workspaces.list_branches(worktree_path)
        return {
            "success": True,
            "result": {
                "currentBranch": listing.current_branch,
                "branches": [
                    {"name": b.name, "isCurrent": b.is_current, "isRemote": b.is_remote}
                    for b in listing.branches
                ],
                "aheadCount": listing.ahead_count,
                "behindCount": listing.behind_count,
            },
        }

    @handler
    async def worktree_start_dev(self, project_path: str = "", worktree_path: str = "") -> Response:
        _require(projectPath=project_path, worktreePath=worktree_path)
        instance = await self.previews.start(project_path, worktree_path)
        result = instance.to_result()
        result["message"] = f"Dev server running on port {instance.port}"
        return {"success": True, "result": result}

    @handler
    async def worktree_stop_dev(self, worktree_path: str = "") -> Response:
        _require(worktreePath=worktree_path)
        if not await self.previews.stop(worktree_path):
            return {"success": False, "error": f"No dev server running for worktree: {worktree_path}"}
        return {
            "success": True,
            "result": {"worktreePath": worktree_path, "message": f"Stopped dev server for {worktree_path}"},
        }

    @handler
    async def worktree_list_dev_servers(self) -> Response:
        return {"success": True, "result": {"servers": [i.to_result() for i in self.previews.list()]}}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @handler
    async def session_list(self, include_archived: bool = False) -> Response:
        sessions = await self.sessions.list(include_archived=include_archived)
        return {"success": True, "sessions": [s.summary() for s in sessions]}

    @handler
    async def session_create(
        self,
        name: str = "",
        project_path: Optional[str] = None,
        working_directory: Optional[str] = None,
    ) -> Response:
        session = await self.sessions.start(
            name=name, project_path=project_path, working_directory=working_directory
        )
        return {"success": True, "session": session.summary()}

    @handler
    async def session_append(self, session_id: str = "", role: str = "", content: str = "") -> Response:
        _require(sessionId=session_id, role=role)
        session = await self.sessions.append_turn(session_id, Turn(role=role, content=content))
        return {"success": True, "session": session.summary()}

    @handler
    async def session_history(self, session_id: str = "") -> Response:
        _require(sessionId=session_id)
        turns = await self.sessions.history(session_id)
        return {"success": True, "messages": [t.model_dump() for t in turns]}

    @handler
    async def session_update(
        self,
        session_id: str = "",
        name: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Response:
        _require(sessionId=session_id)
        session = await self.sessions.update(session_id, name=name, tags=tags)
        return {"success": True, "session": session.summary()}

    @handler
    async def session_clear(self, session_id: str = "") -> Response:
        _require(sessionId=session_id)
        await self.sessions.clear(session_id)
        return {"success": True}

    @handler
    async def session_archive(self, session_id: str = "") -> Response:
        _require(sessionId=session_id)
        await self.sessions.archive(session_id)
        return {"success": True}

    @handler
    async def session_unarchive(self, session_id: str = "") -> Response:
        _require(sessionId=session_id)
        await self.sessions.unarchive(session_id)
        return {"success": True}

    @handler
    async def session_delete(self, session_id: str = "") -> Response:
        _require(sessionId=session_id)
        if not await self.sessions.delete(session_id):
            return {"success": False, "error": f"Session {session_id} not found"}
        return {"success": True}
