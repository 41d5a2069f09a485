"""Provider contract shared by every agent backend.

A provider turns one ``ExecuteRequest`` into a finite, single-consumption
async stream of ``ProviderMessage`` objects. Concrete providers differ only
in how they talk to their vendor; callers select one by configuration name
and never inspect its type.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, ClassVar, Iterable, Optional

from pydantic import BaseModel, Field
from rich.console import Console

from automaker.cancellation import CancellationToken
from automaker.config import ProviderConfig
from automaker.errors import (
    AuthenticationError,
    InvalidRequestError,
    NetworkError,
    ProcessSpawnError,
    ProviderError,
    RateLimitError,
    UnknownProviderError,
)
from automaker.models import ExecuteRequest, ProviderMessage

console = Console()

# Only these variables ever reach an agent process; everything else the host
# exposes is withheld.
ALLOWED_ENV_VARS: tuple[str, ...] = (
    "PATH",
    "HOME",
    "SHELL",
    "TERM",
    "USER",
    "USERNAME",
    "LANG",
    "LC_ALL",
    "TMPDIR",
    # Windows-specific
    "USERPROFILE",
    "APPDATA",
    "LOCALAPPDATA",
)

RATE_LIMIT_TIP = (
    "Tip: If you're running multiple features in auto-mode, consider reducing "
    "concurrency (max_concurrency setting) to avoid hitting rate limits."
)

THINKING_TOKEN_BUDGETS: dict[str, int] = {
    "none": 0,
    "low": 1024,
    "medium": 10000,
    "high": 16000,
    "ultra": 32000,
}


class ModelDefinition(BaseModel):
    """Descriptor for one model a provider can run."""
    id: str
    name: str
    provider: str
    description: str = ""
    context_window: int = 0
    max_output_tokens: int = 0
    supports_vision: bool = False
    supports_tools: bool = True
    tier: str = Field(default="standard", description="'basic', 'standard' or 'premium'")
    default: bool = False


class InstallationStatus(BaseModel):
    """Whether a backend is installed and authenticated on this host."""
    installed: bool
    method: str = Field(default="cli", description="'cli', 'sdk' or 'http'")
    version: Optional[str] = None
    path: Optional[str] = None
    has_api_key: bool = False
    authenticated: bool = False
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


def build_env(
    extra_allowed: Iterable[str] = (),
    source: Optional[dict[str, str]] = None,
) -> dict[str, str]:
    """Return the environment for an agent process.

    Only ``ALLOWED_ENV_VARS`` plus *extra_allowed* are copied from *source*
    (``os.environ`` by default).
    """
    source = os.environ if source is None else source
    env: dict[str, str] = {}
    for key in (*ALLOWED_ENV_VARS, *extra_allowed):
        value = source.get(key)
        if value:
            env[key] = value
    if "HOME" not in env and "USERPROFILE" in env:
        env["HOME"] = env["USERPROFILE"]
    return env


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

_AUTH_PATTERNS = re.compile(
    r"\b401\b|\b403\b|unauthori[sz]ed|invalid api key|invalid x-api-key|authentication|"
    r"not logged in|please run /login|login required|permission denied for api",
    re.IGNORECASE,
)
_RATE_PATTERNS = re.compile(
    r"\b429\b|rate.?limit|too many requests|usage limit|overloaded|quota exceeded",
    re.IGNORECASE,
)
_NETWORK_PATTERNS = re.compile(
    r"econnrefused|econnreset|enotfound|etimedout|connection (refused|reset|error)|"
    r"network|timed out|timeout|getaddrinfo|dns",
    re.IGNORECASE,
)
_INVALID_PATTERNS = re.compile(
    r"\b400\b|\b404\b|\b422\b|invalid.?request|bad request|model not found|unknown model",
    re.IGNORECASE,
)
_RETRY_AFTER = re.compile(r"retry[-_ ]after[\"'\s:=]*(\d+(?:\.\d+)?)", re.IGNORECASE)


def parse_retry_after(text: str) -> Optional[float]:
    match = _RETRY_AFTER.search(text or "")
    return float(match.group(1)) if match else None


def parse_retry_after_header(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    value = (value or "").strip()
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def classify_error(
    message: str,
    status_code: Optional[int] = None,
    retry_after: Optional[float] = None,
    original: Optional[BaseException] = None,
) -> ProviderError:
    """Map a vendor failure onto the provider error taxonomy.

    HTTP status codes take precedence over message text. Rate-limit errors
    carry the retry-after hint (explicit value, else parsed from the text)
    and the reduce-concurrency tip.
    """
    text = (message or "").strip() or "Provider call failed"

    if status_code in (401, 403) or (status_code is None and _AUTH_PATTERNS.search(text)):
        return AuthenticationError(text, original=original)
    if status_code == 429 or (status_code is None and _RATE_PATTERNS.search(text)):
        hint = retry_after if retry_after is not None else parse_retry_after(text)
        return RateLimitError(f"{text}\n\n{RATE_LIMIT_TIP}", retry_after=hint, original=original)
    if status_code is not None and 400 <= status_code < 500:
        return InvalidRequestError(text, original=original)
    if status_code is None and _NETWORK_PATTERNS.search(text):
        return NetworkError(text, original=original)
    if status_code is None and _INVALID_PATTERNS.search(text):
        return InvalidRequestError(text, original=original)
    return UnknownProviderError(text, original=original)


# ---------------------------------------------------------------------------
# Provider base classes
# ---------------------------------------------------------------------------


class BaseProvider(ABC):
    """Uniform capability set over interchangeable agent backends."""

    name: ClassVar[str] = "base"
    supported_features: ClassVar[frozenset[str]] = frozenset()
    env_allowlist: ClassVar[tuple[str, ...]] = ()

    def __init__(self, config: Optional[ProviderConfig] = None) -> None:
        self.config = config or ProviderConfig(name=self.name)  # type: ignore[arg-type]

    @abstractmethod
    def execute(self, request: ExecuteRequest) -> AsyncIterator[ProviderMessage]:
        """Stream messages for *request* in emission order."""

    @abstractmethod
    async def detect_availability(self) -> InstallationStatus:
        """Report installation and authentication status."""

    @abstractmethod
    async def list_models(self) -> list[ModelDefinition]:
        """Return the models this backend offers, default first."""

    def supports(self, feature: str) -> bool:
        return feature in self.supported_features

    def build_env(self) -> dict[str, str]:
        return build_env((*self.env_allowlist, *self.config.extra_env_allowlist))

    async def default_model(self) -> str:
        if self.config.model:
            return self.config.model
        models = await self.list_models()
        for model in models:
            if model.default:
                return model.id
        return models[0].id if models else ""


class CLIProvider(BaseProvider):
    """Base for providers that drive a vendor CLI emitting JSON lines on stdout."""

    binary: str = ""

    async def _stream_json_lines(
        self,
        cmd: list[str],
        cwd: str,
        env: dict[str, str],
        stdin_data: Optional[bytes] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Spawn *cmd* and yield each JSON object it prints.

        Non-JSON lines are skipped. The process is killed when the consumer
        stops early, when *cancel_token* fires, or on timeout. A non-zero exit
        raises a classified ``ProviderError`` built from stderr.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                limit=16 * 1024 * 1024,
            )
        except FileNotFoundError:
            raise ProcessSpawnError(
                f"{self.name} CLI not found: '{cmd[0]}'. Ensure it is installed and in PATH.",
                command=cmd[0],
            )
        except PermissionError:
            raise ProcessSpawnError(f"Permission denied executing: '{cmd[0]}'.", command=cmd[0])

        if stdin_data is not None and process.stdin is not None:
            process.stdin.write(stdin_data)
            await process.stdin.drain()
            process.stdin.close()

        assert process.stdout is not None  # guaranteed by PIPE
        assert process.stderr is not None
        stderr_task = asyncio.create_task(process.stderr.read())
        deadline = time.monotonic() + self.config.timeout
        cancelled = False

        try:
            while True:
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise NetworkError(f"{self.name} call timed out after {self.config.timeout}s")
                try:
                    line_bytes = await asyncio.wait_for(
                        process.stdout.readline(), timeout=min(remaining, 1.0)
                    )
                except asyncio.TimeoutError:
                    # Idle, but the overall deadline has not passed yet.
                    continue
                if not line_bytes:
                    break
                line = line_bytes.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(event, dict):
                    yield event

            if not cancelled:
                returncode = await process.wait()
                stderr_text = (await stderr_task).decode("utf-8", errors="replace").strip()
                if returncode != 0:
                    raise classify_error(stderr_text or f"{self.name} CLI exited with code {returncode}")
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    async def _cli_version(self) -> tuple[bool, Optional[str], Optional[str]]:
        """Run ``<binary> --version``; return (installed, version, error)."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=10.0)
        except FileNotFoundError:
            return False, None, f"'{self.binary}' not found in PATH"
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return False, None, f"'{self.binary} --version' timed out"
        if process.returncode != 0:
            return False, None, f"'{self.binary} --version' exited with {process.returncode}"
        return True, stdout_bytes.decode("utf-8", errors="replace").strip(), None
