"""Shared utility functions for Automaker.

Provides async command execution, JSON I/O, symlink-safe directory creation,
Rich-based progress reporting, port probing, and health-check polling.
"""

from __future__ import annotations

import asyncio
import errno
import json
import os
import re
import socket
import time
from pathlib import Path
from typing import Any

import httpx
from rich.console import Console
from rich.rule import Rule
from rich.table import Table

from automaker.errors import SymlinkLoopError

console = Console()

# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


async def run_command(
    cmd: str | list[str],
    cwd: str | Path | None = None,
    timeout: float = 120,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    """Run a command asynchronously.

    Args:
        cmd: Shell command string or list of arguments.
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process is killed.
        env: Optional extra environment variables merged on top of ``os.environ``.

    Returns:
        A ``(returncode, stdout, stderr)`` tuple. A timeout is reported as
        return code ``-1`` with an explanatory stderr.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    if isinstance(cmd, list):
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
        )
    else:
        process = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
        )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return (
            -1,
            "",
            f"Command timed out after {timeout}s: {cmd if isinstance(cmd, str) else ' '.join(cmd)}",
        )

    stdout_str = (stdout_bytes or b"").decode("utf-8", errors="replace").strip()
    stderr_str = (stderr_bytes or b"").decode("utf-8", errors="replace").strip()
    return (process.returncode or 0, stdout_str, stderr_str)


# ---------------------------------------------------------------------------
# String / name helpers
# ---------------------------------------------------------------------------


def sanitize_name(name: str) -> str:
    """Convert an arbitrary feature identifier to a safe directory/branch name.

    Examples::

        sanitize_name("User Authentication") -> "user-authentication"
        sanitize_name("  2FA (TOTP)  ") -> "2fa-totp"
    """
    result = re.sub(r"[^a-zA-Z0-9_-]", "-", name.strip().lower())
    result = re.sub(r"-+", "-", result)
    return result.strip("-")


def truncate(text: str, limit: int = 500) -> str:
    """Return *text* cut to *limit* characters with an ellipsis marker."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def load_json(path: str | Path) -> Any:
    """Load and parse a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    raw = Path(path).read_text(encoding="utf-8")
    return json.loads(raw)


async def save_json(data: dict[str, Any] | list[Any], path: str | Path) -> None:
    """Save data as pretty-printed JSON.

    Parent directories are created automatically. The write goes to a
    sibling temp file first and is renamed into place so readers never see a
    half-written document. It runs in the default executor to keep the event
    loop free.
    """
    file_path = Path(path)
    ensure_dir(file_path.parent)
    content = json.dumps(data, indent=2, ensure_ascii=False, default=str)

    def _write() -> None:
        tmp = file_path.with_suffix(file_path.suffix + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, file_path)

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, _write)


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


def ensure_dir(path: str | Path) -> Path:
    """Create a directory (and parents) if it does not exist.

    An existing directory or symlink is accepted as-is. A path that resolves
    through a cyclic symlink raises ``SymlinkLoopError`` instead of the raw
    ``OSError(ELOOP)``.

    Returns:
        The ``Path`` object for the directory.
    """
    dir_path = Path(path)
    try:
        if dir_path.is_symlink() or dir_path.is_dir():
            return dir_path
        dir_path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise SymlinkLoopError(str(dir_path)) from exc
        raise
    return dir_path


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
        format_duration(3661.0) -> "1h 1m 1s"
    """
    if seconds < 0:
        return "0.0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    if hours > 0 or minutes > 0:
        parts.append(f"{int(secs)}s")
    else:
        parts.append(f"{secs:.1f}s")

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


PHASE_COLORS: dict[str, str] = {
    "planning": "bright_cyan",
    "action": "bright_yellow",
    "verification": "bright_magenta",
}


def print_phase_header(feature_id: str, phase: str) -> None:
    """Print a rule announcing that *feature_id* entered *phase*."""
    color = PHASE_COLORS.get(phase, "white")
    console.print(
        Rule(
            f"[bold {color}] {feature_id}: {phase.upper()} [/bold {color}]",
            style=color,
        )
    )


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)


# ---------------------------------------------------------------------------
# Port helpers
# ---------------------------------------------------------------------------


async def check_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether a TCP port is free.

    Attempts a ``connect`` to host:port. A refused connection means nothing
    is listening, so the port is considered available.
    """
    loop = asyncio.get_running_loop()

    def _probe() -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        try:
            # connect_ex returns 0 when something accepted the connection
            return sock.connect_ex((host, port)) != 0
        finally:
            sock.close()

    return await loop.run_in_executor(None, _probe)


# ---------------------------------------------------------------------------
# Health-check polling
# ---------------------------------------------------------------------------


async def wait_for_health(
    url: str,
    timeout: float = 60,
    interval: float = 1,
) -> bool:
    """Poll *url* until it answers with an HTTP status below 500 or *timeout* passes.

    Returns:
        ``True`` if the server answered within the window, ``False`` otherwise.
    """
    deadline = time.monotonic() + timeout

    async with httpx.AsyncClient(timeout=httpx.Timeout(5.0, connect=3.0)) as client:
        while time.monotonic() < deadline:
            try:
                response = await client.get(url)
                if response.status_code < 500:
                    return True
            except (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError):
                pass

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))

    return False
