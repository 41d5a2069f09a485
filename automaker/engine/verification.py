"""External test/build command execution for the Verification phase."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rich.console import Console

from automaker.cancellation import CancellationToken
from automaker.config import VerificationConfig
from automaker.errors import ProcessSpawnError
from automaker.preview import PreviewServerManager
from automaker.utils import run_command, truncate

console = Console()


@dataclass
class VerificationResult:
    """Outcome of one test command run inside a workspace."""

    passed: bool
    command: str
    returncode: Optional[int] = None
    output: str = ""
    duration_seconds: float = 0.0
    preview_url: Optional[str] = None
    preview_error: Optional[str] = None

    def feedback(self, limit: int = 4000) -> str:
        """Failure text suitable for handing back to the Action phase."""
        if not self.command:
            return ""
        return (
            f"Command `{self.command}` exited with code {self.returncode}.\n"
            f"Output:\n{truncate(self.output, limit)}"
        )


class VerificationRunner:
    """Runs the configured test command, optionally behind a preview server."""

    def __init__(
        self,
        config: Optional[VerificationConfig] = None,
        preview: Optional[PreviewServerManager] = None,
    ) -> None:
        self.config = config or VerificationConfig()
        self.preview = preview

    async def run(
        self,
        project_path: str | Path,
        workspace_path: str | Path,
        cancel_token: Optional[CancellationToken] = None,
    ) -> VerificationResult:
        command = self.config.test_command.strip()
        if not command:
            return VerificationResult(passed=True, command="", output="No test command configured")

        env: dict[str, str] = {"CI": "true"}
        preview_url: Optional[str] = None
        preview_error: Optional[str] = None
        started_preview = False

        if self.config.use_preview_server and self.preview is not None:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            already_running = self.preview.get(workspace_path) is not None
            try:
                instance = await self.preview.start(project_path, workspace_path)
                preview_url = instance.url
                started_preview = not already_running
                env.update({"PREVIEW_URL": instance.url, "PREVIEW_PORT": str(instance.port)})
            except ProcessSpawnError as exc:
                preview_error = str(exc)
                console.print(f"[yellow]Preview server unavailable: {exc}[/yellow]")

        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            start = time.monotonic()
            returncode, stdout, stderr = await run_command(
                command, cwd=workspace_path, timeout=self.config.timeout, env=env
            )
            duration = time.monotonic() - start
        finally:
            if started_preview and self.preview is not None:
                await self.preview.stop(workspace_path)

        output = "\n".join(part for part in (stdout, stderr) if part)
        return VerificationResult(
            passed=returncode == 0,
            command=command,
            returncode=returncode,
            output=output,
            duration_seconds=duration,
            preview_url=preview_url,
            preview_error=preview_error,
        )
