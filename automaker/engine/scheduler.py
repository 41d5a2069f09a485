"""Feature scheduler: backlog, dependency gate, and concurrency limit.

One ``FeatureScheduler`` exists per project. It owns its lifecycle state
(idle, running, stopping) instead of a process-wide flag, and runs every
selected feature as its own task with its own cancellation token and event
channel.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence

from rich.console import Console

from automaker.cancellation import CancellationToken
from automaker.config import Config
from automaker.errors import (
    AutomakerError,
    NothingToCommitError,
    OperationCancelled,
    ValidationError,
)
from automaker.events import (
    AUTO_MODE_COMPLETE,
    AUTO_MODE_ERROR,
    AUTO_MODE_FEATURE_COMPLETE,
    AUTO_MODE_FEATURE_START,
    AUTO_MODE_PROGRESS,
    EventChannel,
    Observer,
    make_event,
)
from automaker.features import DependencyGraph, FeatureStore
from automaker.models import ConversationTurn, Feature, FeatureStatus, Workspace
from automaker.preview import PreviewServerManager
from automaker.providers import BaseProvider
from automaker.utils import print_summary_table
from automaker.workspace import WorkspaceManager

from .phases import Phase, PhaseMachine, PhaseOutcome
from .verification import VerificationRunner

console = Console()


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


_MODE_START = {
    "full": Phase.PLANNING,
    "follow_up": Phase.ACTION,
    "verify": Phase.VERIFICATION,
}


@dataclass(frozen=True)
class RunOptions:
    """How one execution is started.

    ``mode`` is ``full``, ``follow_up`` or ``verify``. ``workspace_path``
    runs inside an existing directory instead of a managed worktree;
    ``use_worktrees`` overrides the configured default.
    """

    mode: str = "full"
    instructions: str = ""
    image_paths: tuple[str, ...] = ()
    use_worktrees: Optional[bool] = None
    workspace_path: Optional[str] = None


def follow_up_options(
    prompt: str,
    image_paths: Sequence[str] = (),
    workspace_path: Optional[str] = None,
) -> RunOptions:
    if not prompt or not prompt.strip():
        raise ValidationError("prompt is required")
    return RunOptions(
        mode="follow_up",
        instructions=prompt,
        image_paths=tuple(image_paths),
        workspace_path=workspace_path,
    )


class FeatureScheduler:
    """Selects eligible backlog features and executes them concurrently.

    Parameters
    ----------
    project_path:
        Git repository the features are implemented in.
    config:
        Global configuration; ``config.auto_mode`` drives scheduling.
    provider:
        Agent backend shared by every feature execution.
    observer:
        Receives every event; sync or async callable.
    """

    def __init__(
        self,
        project_path: str | Path,
        config: Config,
        provider: BaseProvider,
        *,
        workspace_manager: Optional[WorkspaceManager] = None,
        preview_manager: Optional[PreviewServerManager] = None,
        store: Optional[FeatureStore] = None,
        verifier: Optional[VerificationRunner] = None,
        observer: Optional[Observer] = None,
    ) -> None:
        self.project_path = Path(project_path).resolve()
        self.config = config
        self.provider = provider
        self.workspaces = workspace_manager or WorkspaceManager(config)
        self.previews = preview_manager or PreviewServerManager(config.preview)
        self.store = store or FeatureStore(self.project_path, config)
        self.verifier = verifier or VerificationRunner(config.verification, self.previews)
        self.observer = observer

        self.state = SchedulerState.IDLE
        self.features: dict[str, Feature] = {}
        self.graph = DependencyGraph()
        self.outcomes: dict[str, PhaseOutcome] = {}
        self._rejected: dict[str, str] = {}
        self._running: dict[str, asyncio.Task[PhaseOutcome | None]] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._conversations: dict[str, tuple[Optional[str], list[ConversationTurn]]] = {}
        self._root_token = CancellationToken()
        self._max_concurrency = config.auto_mode.max_concurrency
        self._events: Optional[EventChannel] = None

    # ------------------------------------------------------------------
    # Backlog management
    # ------------------------------------------------------------------

    def submit(self, feature: Feature) -> None:
        """Add *feature* to the backlog, in insertion order.

        Raises:
            DependencyCycleError: If its dependencies close a cycle; the
                backlog is left unchanged.
            ValidationError: If a feature with this id is currently running.
        """
        if feature.id in self._running:
            raise ValidationError(f"Feature {feature.id} is already running")
        self.graph.add_feature(feature.id, feature.dependencies)
        self.features[feature.id] = feature

    def add_dependency(self, feature_id: str, depends_on: str) -> None:
        feature = self._get(feature_id)
        self.graph.add_dependency(feature_id, depends_on)
        if depends_on not in feature.dependencies:
            feature.dependencies.append(depends_on)

    def load_backlog(self) -> list[Feature]:
        """Read the project's feature list into the backlog.

        Stale ``in_progress`` entries from an interrupted run go back to
        backlog. A feature whose dependencies form a cycle is kept but marked
        blocked.
        """
        loaded = self.store.load()
        for feature in loaded:
            if feature.id in self._running:
                continue
            if feature.status == FeatureStatus.IN_PROGRESS:
                feature.status = FeatureStatus.BACKLOG
            try:
                self.submit(feature)
            except AutomakerError as exc:
                console.print(f"[red]Rejected dependencies of {feature.id}: {exc}[/red]")
                self._rejected[feature.id] = str(exc)
                feature.status = FeatureStatus.BLOCKED
                self.graph.add_feature(feature.id)
                self.features[feature.id] = feature
        return loaded

    def eligible(self) -> list[Feature]:
        """Backlog features whose dependencies are all verified, oldest first."""
        return [
            feature
            for feature in self.features.values()
            if feature.status == FeatureStatus.BACKLOG
            and feature.id not in self._running
            and feature.id not in self._rejected
            and (not self.config.auto_mode.enable_dependency_blocking or not self._unmet(feature))
        ]

    def _unmet(self, feature: Feature) -> list[str]:
        return [
            dep
            for dep in self.graph.dependencies(feature.id)
            if dep not in self.features or self.features[dep].status != FeatureStatus.VERIFIED
        ]

    def _blocker(self, feature: Feature) -> Optional[str]:
        """Why *feature* can never run in this round, or None."""
        if feature.id in self._rejected:
            return self._rejected[feature.id]
        for dep in self.graph.dependencies(feature.id):
            if dep not in self.features:
                return f"dependency {dep} does not exist"
            status = self.features[dep].status
            if status in (FeatureStatus.FAILED, FeatureStatus.BLOCKED):
                return f"dependency {dep} is {status.value}"
        return None

    async def _refresh_blocked(self) -> None:
        if not self.config.auto_mode.enable_dependency_blocking:
            return
        changed = True
        while changed:
            changed = False
            for feature in self.features.values():
                if feature.status != FeatureStatus.BACKLOG or feature.id in self._running:
                    continue
                reason = self._blocker(feature)
                if reason is None:
                    continue
                feature.status = FeatureStatus.BLOCKED
                changed = True
                await self.store.update_status(feature.id, FeatureStatus.BLOCKED)
                await self._publish(
                    make_event(
                        AUTO_MODE_ERROR,
                        feature.id,
                        error=f"Feature {feature.id} is blocked: {reason}",
                        errorType="blocked",
                        blocked=True,
                    )
                )

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run_all(self, max_concurrency: Optional[int] = None) -> dict[str, FeatureStatus]:
        """Execute the backlog until nothing eligible remains or ``stop()`` is called.

        Returns the final status of every known feature.
        """
        if self.state != SchedulerState.IDLE:
            raise ValidationError("Auto mode is already running")
        limit = max_concurrency or self.config.auto_mode.max_concurrency
        if limit < 1:
            raise ValidationError("max_concurrency must be >= 1")

        self.state = SchedulerState.RUNNING
        self._max_concurrency = limit
        self._root_token = CancellationToken()
        token = self._root_token
        for feature in self.features.values():
            if feature.status == FeatureStatus.BLOCKED and feature.id not in self._rejected:
                feature.status = FeatureStatus.BACKLOG

        console.print(f"[bold cyan]Auto mode started[/bold cyan] for {self.project_path} (concurrency {limit})")
        self._events = EventChannel(
            self.observer,
            maxsize=self.config.auto_mode.event_buffer_size,
            policy=self.config.auto_mode.event_overflow_policy,
        )
        self._events.start()
        stop_waiter = asyncio.ensure_future(token.wait())
        try:
            while not token.cancelled:
                await self._refresh_blocked()
                for feature in self.eligible():
                    if len(self._running) >= limit:
                        break
                    self._launch(feature, RunOptions())
                if not self._running:
                    break

                await asyncio.wait(
                    {stop_waiter, *self._running.values()},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if self.config.auto_mode.inter_feature_delay and not token.cancelled:
                    await token.wait(self.config.auto_mode.inter_feature_delay)

            if self._running:
                await asyncio.gather(*self._running.values(), return_exceptions=True)
        finally:
            stop_waiter.cancel()
            stopped = token.cancelled
            self.state = SchedulerState.IDLE
            message = "Auto mode stopped" if stopped else "Auto mode completed: no more eligible features"
            await self._publish(make_event(AUTO_MODE_COMPLETE, message=message, stopped=stopped))
            await self._events.close()
            self._events = None
            self._print_summary()

        return {fid: feature.status for fid, feature in self.features.items()}

    def start_one(self, feature_id: str, options: Optional[RunOptions] = None) -> asyncio.Task[PhaseOutcome | None]:
        """Validate and launch one feature outside backlog order.

        Shares the running set and concurrency limit with ``run_all``.

        Raises:
            ValidationError: Unknown or already running feature, full
                concurrency, a stopping scheduler, or unmet dependencies
                while dependency blocking is enabled.
        """
        options = options or RunOptions()
        if options.mode not in _MODE_START:
            raise ValidationError(f"Unknown execution mode: {options.mode}")
        feature = self._get(feature_id)
        if feature_id in self._running:
            raise ValidationError(f"Feature {feature_id} is already running")
        if self.state == SchedulerState.STOPPING:
            raise ValidationError("Auto mode is stopping")
        if len(self._running) >= self._max_concurrency:
            raise ValidationError(
                f"Concurrency limit reached ({self._max_concurrency} features running)"
            )
        if options.mode != "verify":
            if feature_id in self._rejected:
                raise ValidationError(self._rejected[feature_id])
            unmet = self._unmet(feature)
            if unmet:
                if self.config.auto_mode.enable_dependency_blocking:
                    raise ValidationError(
                        f"Feature {feature_id} is blocked by unverified dependencies: {', '.join(unmet)}"
                    )
                console.print(
                    f"[yellow]Warning: {feature_id} starts before dependencies are verified: "
                    f"{', '.join(unmet)}[/yellow]"
                )
        return self._launch(feature, options)

    async def run_one(
        self,
        feature_id: str,
        use_worktrees: Optional[bool] = None,
        workspace_path: Optional[str] = None,
    ) -> Feature:
        """Execute a single feature to completion and return it."""
        options = RunOptions(use_worktrees=use_worktrees, workspace_path=workspace_path)
        await self.start_one(feature_id, options)
        return self.features[feature_id]

    async def verify_one(self, feature_id: str, workspace_path: Optional[str] = None) -> Feature:
        """Run only the Verification phase against the feature's workspace."""
        await self.start_one(feature_id, RunOptions(mode="verify", workspace_path=workspace_path))
        return self.features[feature_id]

    async def follow_up(
        self,
        feature_id: str,
        prompt: str,
        image_paths: Sequence[str] = (),
        workspace_path: Optional[str] = None,
    ) -> Feature:
        """Re-enter Action with an extra instruction, then verify as usual."""
        await self.start_one(feature_id, follow_up_options(prompt, image_paths, workspace_path))
        return self.features[feature_id]

    async def commit_feature(self, feature_id: str, worktree_path: Optional[str] = None) -> str:
        """Commit whatever is in the feature's workspace; return the hash."""
        feature = self._get(feature_id)
        target = worktree_path or feature.workspace_path
        if not target:
            held = self.workspaces.get(self.project_path, feature_id)
            target = str(held.path) if held else str(self.project_path)
        message = f"feat: {feature.description or feature_id}\n\nFeature: {feature_id}"
        return await self.workspaces.commit(Path(target), message)

    def stop(self) -> int:
        """Request cooperative cancellation of every in-flight execution.

        Returns the number of executions signalled. Commits already made are
        kept.
        """
        if self.state == SchedulerState.RUNNING:
            self.state = SchedulerState.STOPPING
        self._root_token.cancel("stopped")
        for token in self._tokens.values():
            token.cancel("stopped")
        console.print(f"[yellow]Stop requested; {len(self._running)} feature(s) in flight[/yellow]")
        return len(self._running)

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "isRunning": self.state != SchedulerState.IDLE or bool(self._running),
            "currentFeatureIds": list(self._running),
            "runningCount": len(self._running),
            "maxConcurrency": self._max_concurrency,
        }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _get(self, feature_id: str) -> Feature:
        feature = self.features.get(feature_id)
        if feature is None:
            raise ValidationError(f"Feature {feature_id} not found")
        return feature

    def _launch(self, feature: Feature, options: RunOptions) -> asyncio.Task[PhaseOutcome | None]:
        if self._root_token.cancelled and self.state == SchedulerState.IDLE:
            self._root_token = CancellationToken()
        token = self._root_token.child()
        previous = feature.status
        feature.status = FeatureStatus.IN_PROGRESS
        self._tokens[feature.id] = token
        task = asyncio.create_task(
            self._execute(feature, token, options, previous),
            name=f"feature-{feature.id}",
        )
        self._running[feature.id] = task
        return task

    async def _execute(
        self,
        feature: Feature,
        token: CancellationToken,
        options: RunOptions,
        previous: FeatureStatus,
    ) -> Optional[PhaseOutcome]:
        channel = EventChannel(
            self.observer,
            maxsize=self.config.auto_mode.event_buffer_size,
            policy=self.config.auto_mode.event_overflow_policy,
        )
        workspace: Optional[Workspace] = None
        outcome: Optional[PhaseOutcome] = None
        try:
            async with channel:
                try:
                    outcome, workspace = await self._drive(feature, token, options, channel)
                except OperationCancelled:
                    pass
                except AutomakerError as exc:
                    await self._fail(feature, exc, channel)
                except Exception as exc:
                    console.print(f"[bold red]Unexpected error in feature {feature.id}: {exc!r}[/bold red]")
                    await self._fail(feature, exc, channel)
                if token.cancelled and feature.status == FeatureStatus.IN_PROGRESS:
                    # Cancelled work is kept on disk; the feature can be picked up again.
                    feature.status = previous if options.mode == "verify" else FeatureStatus.BACKLOG
                    await self.store.update_status(feature.id, feature.status)
        finally:
            if workspace is None:
                workspace = self.workspaces.get(self.project_path, feature.id)
            if workspace is not None:
                self.workspaces.release(workspace)
                if feature.is_terminal and not self.config.auto_mode.retain_worktrees:
                    await self.workspaces.destroy(workspace, delete_branch=False)
            self._running.pop(feature.id, None)
            self._tokens.pop(feature.id, None)
        if outcome is not None:
            self.outcomes[feature.id] = outcome
        return outcome

    async def _fail(self, feature: Feature, exc: BaseException, channel: EventChannel) -> None:
        feature.status = FeatureStatus.FAILED
        await self.store.update_status(feature.id, FeatureStatus.FAILED)
        message = str(exc) or type(exc).__name__
        await channel.publish(
            make_event(AUTO_MODE_ERROR, feature.id, error=message, errorType=type(exc).__name__)
        )
        await channel.publish(
            make_event(AUTO_MODE_FEATURE_COMPLETE, feature.id, passes=False, message=message)
        )

    async def _drive(
        self,
        feature: Feature,
        token: CancellationToken,
        options: RunOptions,
        channel: EventChannel,
    ) -> tuple[Optional[PhaseOutcome], Optional[Workspace]]:
        token.raise_if_cancelled()
        await channel.publish(
            make_event(
                AUTO_MODE_FEATURE_START,
                feature.id,
                feature={"id": feature.id, "description": feature.description, "category": feature.category},
                mode=options.mode,
            )
        )
        await self.store.update_status(feature.id, FeatureStatus.IN_PROGRESS)

        workspace: Optional[Workspace] = None
        cwd = self.project_path
        use_worktrees = options.use_worktrees
        if use_worktrees is None:
            use_worktrees = self.config.auto_mode.use_worktrees
        if options.workspace_path:
            cwd = Path(options.workspace_path)
            if not cwd.is_dir():
                raise ValidationError(f"Workspace path does not exist: {cwd}")
            feature.workspace_path = str(cwd)
        elif use_worktrees:
            token.raise_if_cancelled()
            workspace = await self.workspaces.create(self.project_path, feature.id)
            cwd = workspace.path
            feature.workspace_path = str(workspace.path)

        session_token, history = self._conversations.get(feature.id, (None, []))
        machine = PhaseMachine(
            feature,
            self.provider,
            self.config,
            project_path=self.project_path,
            workspace_path=cwd,
            emit=channel.publish,
            cancel_token=token,
            verifier=self.verifier,
            store=self.store,
            session_token=session_token,
            history=history,
        )
        outcome = await machine.run(_MODE_START[options.mode], options.instructions, options.image_paths)
        self._conversations[feature.id] = (machine.session_token, machine.history)

        if outcome.cancelled:
            return outcome, workspace

        commit_target = workspace if workspace is not None else (cwd if options.workspace_path else None)
        if outcome.passes and commit_target is not None:
            try:
                commit_hash = await self.workspaces.commit(
                    commit_target, f"feat: {feature.description or feature.id}\n\nFeature: {feature.id}"
                )
                await channel.publish(
                    make_event(AUTO_MODE_PROGRESS, feature.id, content=f"Committed {commit_hash[:8]}")
                )
            except NothingToCommitError as exc:
                await channel.publish(make_event(AUTO_MODE_PROGRESS, feature.id, content=str(exc)))

        feature.status = FeatureStatus.VERIFIED if outcome.passes else FeatureStatus.FAILED
        await self.store.update_status(feature.id, feature.status, feature.workspace_path)
        await channel.publish(
            make_event(
                AUTO_MODE_FEATURE_COMPLETE,
                feature.id,
                passes=outcome.passes,
                message=outcome.message,
                retries=outcome.retries,
            )
        )
        return outcome, workspace

    async def _publish(self, event: dict[str, Any]) -> None:
        if self._events is not None:
            await self._events.publish(event)
        elif self.observer is not None:
            result = self.observer(event)
            if asyncio.iscoroutine(result):
                await result

    def _print_summary(self) -> None:
        counts: dict[str, int] = {}
        for feature in self.features.values():
            counts[feature.status.value] = counts.get(feature.status.value, 0) + 1
        print_summary_table({status: str(count) for status, count in sorted(counts.items())}, title="Auto Mode")
