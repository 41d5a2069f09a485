"""Git worktree lifecycle for per-feature isolated workspaces.

Each feature gets its own worktree under ``<project>/.worktrees/`` with a
dedicated branch ``automaker/<name>``, where ``<name>`` is the sanitized
feature id plus a short hash of the raw id so distinct features never share
a directory.
"""

from __future__ import annotations

import asyncio
import hashlib
import shutil
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.panel import Panel

from automaker.config import Config
from automaker.errors import GitOperationError, NothingToCommitError
from automaker.models import BranchInfo, BranchListing, Workspace
from automaker.utils import ensure_dir, sanitize_name

console = Console()

INITIAL_COMMIT_MESSAGE = "chore: automaker initial commit"

PathLike = Union[str, Path]


async def _run_git(
    *args: str,
    cwd: PathLike | None = None,
    timeout: float = 60.0,
) -> tuple[str, str]:
    """Run a git command asynchronously and return (stdout, stderr).

    Raises GitOperationError if the command exits with a non-zero code.
    """
    cmd = ["git"] + list(args)
    cmd_str = " ".join(cmd)

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
        )
    except FileNotFoundError:
        raise GitOperationError("git executable not found in PATH", command=cmd_str)

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise GitOperationError(
            f"Git command timed out after {timeout}s: {cmd_str}",
            command=cmd_str,
        )

    stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
    stderr = stderr_bytes.decode("utf-8", errors="replace").strip()

    if process.returncode != 0:
        raise GitOperationError(
            f"Git command failed (exit {process.returncode}): {cmd_str}\n{stderr}",
            command=cmd_str,
            stderr=stderr,
        )

    return stdout, stderr


def workspace_name(feature_id: str) -> str:
    """Deterministic directory/branch suffix for *feature_id*."""
    digest = hashlib.sha1(feature_id.encode("utf-8")).hexdigest()[:8]
    return f"{sanitize_name(feature_id) or 'feature'}-{digest}"


class WorkspaceManager:
    """Creates, commits, and tears down feature workspaces.

    The set of held workspaces is owned here; creation runs under a
    per-project lock so the bootstrap commit and ``git worktree add`` never
    race inside one repository.
    """

    def __init__(self, config: Optional[Config] = None) -> None:
        self.config = config or Config()
        self._held: dict[tuple[str, str], Workspace] = {}
        self._project_locks: dict[str, asyncio.Lock] = {}

    def _project_lock(self, project: Path) -> asyncio.Lock:
        return self._project_locks.setdefault(str(project), asyncio.Lock())

    async def _git(self, *args: str, cwd: PathLike) -> tuple[str, str]:
        return await _run_git(*args, cwd=cwd, timeout=self.config.git_timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(self, project_path: PathLike, feature_id: str) -> Workspace:
        """Return the workspace for *feature_id*, creating it when needed.

        Idempotent per feature: an already-held workspace is returned as-is,
        and an existing worktree directory or branch from an earlier run is
        reused rather than duplicated.

        Raises:
            GitOperationError: If *project_path* is not a git repository or
                a git command fails.
            SymlinkLoopError: If the worktrees root runs through a symlink cycle.
        """
        project = Path(project_path).resolve()
        key = (str(project), feature_id)

        async with self._project_lock(project):
            existing = self._held.get(key)
            if existing is not None and existing.path.exists():
                return existing

            await self._ensure_repository(project)
            await self._ensure_head(project)
            await self._exclude_worktrees(project)

            name = workspace_name(feature_id)
            branch = f"{self.config.branch_prefix}{name}"
            root = ensure_dir(self.config.worktrees_path(project))
            path = root / name

            if (path / ".git").exists():
                console.print(f"[dim]Reusing worktree {path}[/dim]")
            else:
                if path.exists():
                    # Leftover directory without a worktree registration.
                    shutil.rmtree(path, ignore_errors=True)
                    await self._git("worktree", "prune", cwd=project)
                if await self._branch_exists(project, branch):
                    await self._git("worktree", "add", str(path), branch, cwd=project)
                else:
                    await self._git("worktree", "add", "-b", branch, str(path), "HEAD", cwd=project)

            base_commit, _ = await self._git("rev-parse", "HEAD", cwd=path)
            workspace = Workspace(
                path=path,
                branch=branch,
                base_commit=base_commit,
                feature_id=feature_id,
                project_path=project,
                locked=True,
            )
            self._held[key] = workspace

        console.print(
            Panel(
                f"[green]Workspace ready[/green]\n"
                f"  Path:    {workspace.path}\n"
                f"  Branch:  {workspace.branch}\n"
                f"  Feature: {feature_id}",
                title="Workspace",
                border_style="green",
            )
        )
        return workspace

    async def commit(self, workspace: Union[Workspace, PathLike], message: Optional[str] = None) -> str:
        """Stage everything in the workspace and commit it.

        Returns:
            The new commit hash.

        Raises:
            NothingToCommitError: If the working tree is clean.
            GitOperationError: If git fails.
        """
        path, feature_id = self._resolve_target(workspace)
        if not path.exists():
            raise GitOperationError(f"Workspace path does not exist: {path}")

        status, _ = await self._git("status", "--porcelain", cwd=path)
        if not status:
            raise NothingToCommitError(f"Nothing to commit for feature {feature_id} in {path}")

        if message is None:
            message = f"feat: implement {feature_id}\n\nAutomated commit by Automaker auto-mode"

        await self._git("add", "-A", cwd=path)
        await self._git("commit", "-m", message, cwd=path)
        commit_hash, _ = await self._git("rev-parse", "HEAD", cwd=path)
        console.print(f"[green]Committed[/green] {feature_id} -> [bold]{commit_hash[:8]}[/bold]")
        return commit_hash

    async def destroy(self, workspace: Workspace, delete_branch: bool = False) -> None:
        """Remove the worktree and, optionally, its branch.

        A directory that is already gone or half-removed is tolerated; git's
        worktree list is pruned afterwards so no stale registration remains.
        """
        self._held.pop((str(workspace.project_path), workspace.feature_id), None)
        project = workspace.project_path

        if workspace.path.exists():
            try:
                await self._git("worktree", "remove", "--force", str(workspace.path), cwd=project)
            except GitOperationError:
                console.print("[yellow]Git worktree remove failed, removing directory manually...[/yellow]")
                shutil.rmtree(workspace.path, ignore_errors=True)

        try:
            await self._git("worktree", "prune", cwd=project)
        except GitOperationError as exc:
            console.print(f"[yellow]Warning: worktree prune failed: {exc.stderr}[/yellow]")

        if delete_branch:
            try:
                await self._git("branch", "-D", workspace.branch, cwd=project)
            except GitOperationError as exc:
                if "not found" not in exc.stderr.lower():
                    console.print(
                        f"[yellow]Warning: Could not delete branch {workspace.branch}: {exc.stderr}[/yellow]"
                    )

        console.print(f"[green]Cleaned up workspace:[/green] {workspace.path.name}")

    def release(self, workspace: Workspace) -> None:
        """Mark the workspace free without touching the disk."""
        workspace.locked = False
        self._held.pop((str(workspace.project_path), workspace.feature_id), None)

    def get(self, project_path: PathLike, feature_id: str) -> Optional[Workspace]:
        return self._held.get((str(Path(project_path).resolve()), feature_id))

    def held(self) -> list[Workspace]:
        return list(self._held.values())

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def list_branches(self, workspace: Union[Workspace, PathLike]) -> BranchListing:
        """List local branches and the upstream ahead/behind counts."""
        path, _ = self._resolve_target(workspace)
        current, _ = await self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=path)
        stdout, _ = await self._git("branch", "--format=%(refname:short)", cwd=path)

        branches = [
            BranchInfo(name=name.strip(), is_current=name.strip() == current)
            for name in stdout.splitlines()
            if name.strip() and not name.strip().startswith("(")
        ]

        ahead = behind = 0
        try:
            counts, _ = await self._git("rev-list", "--left-right", "--count", "HEAD...@{upstream}", cwd=path)
            left, right = counts.split()
            ahead, behind = int(left), int(right)
        except (GitOperationError, ValueError):
            pass  # no upstream configured

        return BranchListing(
            current_branch=current,
            branches=branches,
            ahead_count=ahead,
            behind_count=behind,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_target(self, workspace: Union[Workspace, PathLike]) -> tuple[Path, str]:
        if isinstance(workspace, Workspace):
            return workspace.path, workspace.feature_id
        path = Path(workspace)
        return path, path.name

    async def _ensure_repository(self, project: Path) -> None:
        if not project.is_dir():
            raise GitOperationError(f"Project path does not exist: {project}")
        try:
            await self._git("rev-parse", "--git-dir", cwd=project)
        except GitOperationError as exc:
            raise GitOperationError(
                f"Not a git repository: {project}. Workspaces require an initialized git repo.",
                command=exc.command,
                stderr=exc.stderr,
            ) from exc

    async def _ensure_head(self, project: Path) -> None:
        """Create the bootstrap commit when the repository has no commits yet."""
        try:
            await self._git("rev-parse", "--verify", "HEAD", cwd=project)
            return
        except GitOperationError:
            pass
        console.print(f"[cyan]Repository has no commits; creating bootstrap commit in {project}[/cyan]")
        await self._git("commit", "--allow-empty", "-m", INITIAL_COMMIT_MESSAGE, cwd=project)

    async def _branch_exists(self, project: Path, branch: str) -> bool:
        try:
            await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=project)
            return True
        except GitOperationError:
            return False

    async def _exclude_worktrees(self, project: Path) -> None:
        """Keep the worktrees root out of ``git status`` of the main checkout."""
        common_dir, _ = await self._git("rev-parse", "--git-common-dir", cwd=project)
        git_dir = Path(common_dir)
        if not git_dir.is_absolute():
            git_dir = project / git_dir
        exclude = git_dir / "info" / "exclude"
        pattern = f"/{self.config.worktrees_dir.strip('/')}/"
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if pattern in existing.splitlines():
            return
        ensure_dir(exclude.parent)
        with exclude.open("a", encoding="utf-8") as fh:
            if existing and not existing.endswith("\n"):
                fh.write("\n")
            fh.write(pattern + "\n")
