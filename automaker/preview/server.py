"""Ephemeral preview servers, one per workspace, each on its own port.

Ports come from a dedicated pool (23100-23199 by default). A watcher task
per process notices crashes and returns the port to the pool.
"""

from __future__ import annotations

import asyncio
import os
import shlex
from pathlib import Path
from typing import Optional

from rich.console import Console

from automaker.config import PreviewConfig
from automaker.errors import ProcessSpawnError
from automaker.models import PreviewServerInstance, PreviewStatus
from automaker.utils import check_port_available, wait_for_health

console = Console()


class PreviewServerManager:
    """Owns the port pool and every running preview process."""

    def __init__(self, config: Optional[PreviewConfig] = None) -> None:
        self.config = config or PreviewConfig()
        self._instances: dict[str, PreviewServerInstance] = {}
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._allocated: set[int] = set()
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(workspace_path: str | Path) -> str:
        return str(Path(workspace_path).resolve())

    async def start(
        self,
        project_path: str | Path,
        workspace_path: str | Path,
        env: Optional[dict[str, str]] = None,
    ) -> PreviewServerInstance:
        """Start (or return the already running) preview server for a workspace.

        Raises:
            ProcessSpawnError: If the workspace is missing, no port is free,
                the command cannot be spawned, or the health check fails.
        """
        key = self._key(workspace_path)

        async with self._lock:
            current = self._instances.get(key)
            if current is not None and current.status in (PreviewStatus.STARTING, PreviewStatus.RUNNING):
                return current

            if not Path(key).is_dir():
                raise ProcessSpawnError(f"Workspace path does not exist: {key}")

            port = await self._allocate_port()
            cmd = shlex.split(self.config.command)
            if not cmd:
                self._allocated.discard(port)
                raise ProcessSpawnError("Preview command is empty")

            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    cwd=key,
                    env={**os.environ, **(env or {}), "PORT": str(port)},
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                    start_new_session=True,
                )
            except (FileNotFoundError, PermissionError) as exc:
                self._allocated.discard(port)
                raise ProcessSpawnError(
                    f"Failed to start preview server '{self.config.command}': {exc}",
                    command=self.config.command,
                ) from exc

            instance = PreviewServerInstance(
                workspace_path=key,
                project_path=str(project_path),
                port=port,
                url=f"http://{self.config.host}:{port}",
                pid=process.pid,
                status=PreviewStatus.STARTING,
            )
            self._instances[key] = instance
            self._processes[key] = process
            self._watchers[key] = asyncio.create_task(self._watch(key, process))

        console.print(f"[cyan]Preview server starting[/cyan] {instance.url} (pid {instance.pid})")

        if self.config.health_check:
            healthy = await wait_for_health(instance.url, timeout=self.config.startup_timeout)
            if not healthy:
                await self.stop(key)
                raise ProcessSpawnError(
                    f"Preview server at {instance.url} did not become healthy "
                    f"within {self.config.startup_timeout}s",
                    command=self.config.command,
                )

        if instance.status == PreviewStatus.CRASHED:
            raise ProcessSpawnError(
                f"Preview server for {key} exited during startup", command=self.config.command
            )
        if instance.status == PreviewStatus.STARTING:
            instance.status = PreviewStatus.RUNNING
        return instance

    async def stop(self, workspace_path: str | Path) -> bool:
        """Stop the server for a workspace. Returns False if none was running."""
        key = self._key(workspace_path)
        async with self._lock:
            instance = self._instances.pop(key, None)
            process = self._processes.pop(key, None)
            watcher = self._watchers.pop(key, None)
            if instance is None:
                return False
            self._allocated.discard(instance.port)
            instance.status = PreviewStatus.STOPPED

        if watcher is not None:
            watcher.cancel()
        if process is not None and process.returncode is None:
            await self._terminate(process)

        console.print(f"[yellow]Preview server stopped[/yellow] {instance.url}")
        return True

    def list(self) -> list[PreviewServerInstance]:
        """Instances currently believed healthy."""
        return [
            instance
            for key, instance in self._instances.items()
            if instance.status == PreviewStatus.RUNNING
            and self._processes.get(key) is not None
            and self._processes[key].returncode is None
        ]

    def get(self, workspace_path: str | Path) -> Optional[PreviewServerInstance]:
        return self._instances.get(self._key(workspace_path))

    async def stop_all(self) -> None:
        for key in list(self._instances):
            await self.stop(key)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _allocate_port(self) -> int:
        """Reserve the lowest pool port that is neither allocated nor bound. Caller holds the lock."""
        for port in self.config.port_pool():
            if port in self._allocated:
                continue
            if await check_port_available(port, self.config.host):
                self._allocated.add(port)
                return port
        raise ProcessSpawnError(
            f"No free preview port in range {self.config.port_range_start}-{self.config.port_range_end}"
        )

    async def _watch(self, key: str, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        async with self._lock:
            if self._processes.get(key) is not process:
                return
            instance = self._instances.pop(key)
            self._processes.pop(key, None)
            self._watchers.pop(key, None)
            self._allocated.discard(instance.port)
            instance.status = PreviewStatus.CRASHED
        console.print(
            f"[red]Preview server for {key} exited with code {returncode}; port {instance.port} reclaimed[/red]"
        )

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process, grace: float = 5.0) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
