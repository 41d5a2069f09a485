"""Claude backend driven through the ``claude`` CLI in stream-json mode.

Usage: claude -p "<prompt>" --output-format stream-json --verbose
       [--model M] [--max-turns N] [--permission-mode MODE]
       [--allowedTools a,b] [--resume SESSION_ID]
"""

from __future__ import annotations

import base64
import json
import mimetypes
import shutil
from pathlib import Path
from typing import Any, AsyncIterator

from automaker.errors import ValidationError
from automaker.models import ExecuteRequest, MessageKind, ProviderMessage

from .base import (
    THINKING_TOKEN_BUDGETS,
    CLIProvider,
    InstallationStatus,
    ModelDefinition,
    classify_error,
)

READ_ONLY_TOOLS = ("Read", "Glob", "Grep", "WebSearch", "WebFetch")
FULL_TOOLS = ("Read", "Write", "Edit", "Glob", "Grep", "Bash", "WebSearch", "WebFetch")

CLAUDE_MODELS: list[ModelDefinition] = [
    ModelDefinition(
        id="claude-opus-4-5-20251101",
        name="Claude Opus 4.5",
        provider="claude",
        description="Most capable Claude model",
        context_window=200000,
        max_output_tokens=16000,
        supports_vision=True,
        tier="premium",
        default=True,
    ),
    ModelDefinition(
        id="claude-sonnet-4-20250514",
        name="Claude Sonnet 4",
        provider="claude",
        description="Balanced performance and cost",
        context_window=200000,
        max_output_tokens=16000,
        supports_vision=True,
        tier="standard",
    ),
    ModelDefinition(
        id="claude-3-5-haiku-20241022",
        name="Claude 3.5 Haiku",
        provider="claude",
        description="Fastest Claude model",
        context_window=200000,
        max_output_tokens=8000,
        supports_vision=True,
        tier="basic",
    ),
]


class ClaudeProvider(CLIProvider):
    """Runs one agent call per ``claude`` subprocess and translates its stream."""

    name = "claude"
    supported_features = frozenset({"tools", "text", "vision", "thinking", "max_turns", "resume"})
    env_allowlist = ("ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN", "ANTHROPIC_BASE_URL")

    @property
    def binary(self) -> str:  # type: ignore[override]
        return self.config.claude_binary

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    def build_command(self, request: ExecuteRequest) -> list[str]:
        multipart = bool(request.image_paths)
        cmd = [self.binary, "-p"]
        if not multipart:
            cmd.append(request.prompt_text)
        cmd += [
            "--output-format", "stream-json",
            "--verbose",
            "--max-turns", str(request.max_turns),
            "--permission-mode", "plan" if request.read_only else "bypassPermissions",
        ]
        if multipart:
            cmd += ["--input-format", "stream-json"]
        if request.model:
            cmd += ["--model", request.model]
        tools = request.allowed_tools or (READ_ONLY_TOOLS if request.read_only else FULL_TOOLS)
        cmd += ["--allowedTools", ",".join(tools)]
        if request.system_prompt:
            cmd += ["--append-system-prompt", request.system_prompt]
        if request.wants_resume:
            cmd += ["--resume", str(request.session_token)]
        return cmd

    def build_stdin(self, request: ExecuteRequest) -> bytes | None:
        """Encode a multi-part prompt as one stream-json user message."""
        if not request.image_paths:
            return None
        content: list[dict[str, Any]] = []
        text = request.prompt_text
        if text:
            content.append({"type": "text", "text": text})
        for image in request.image_paths:
            path = Path(image)
            if not path.is_file():
                raise ValidationError(f"Image attachment not found: {image}")
            media_type = mimetypes.guess_type(path.name)[0] or "image/png"
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": media_type,
                        "data": base64.b64encode(path.read_bytes()).decode("ascii"),
                    },
                }
            )
        message = {"type": "user", "message": {"role": "user", "content": content}}
        return (json.dumps(message) + "\n").encode("utf-8")

    def build_process_env(self, request: ExecuteRequest) -> dict[str, str]:
        env = self.build_env()
        budget = THINKING_TOKEN_BUDGETS.get(request.reasoning_effort, 0)
        if budget:
            env["MAX_THINKING_TOKENS"] = str(budget)
        return env

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, request: ExecuteRequest) -> AsyncIterator[ProviderMessage]:
        cmd = self.build_command(request)
        stdin_data = self.build_stdin(request)
        session_id: str | None = None

        async for event in self._stream_json_lines(
            cmd,
            cwd=request.cwd,
            env=self.build_process_env(request),
            stdin_data=stdin_data,
            cancel_token=request.cancel_token,
        ):
            session_id = event.get("session_id") or session_id
            for message in translate_event(event, session_id):
                yield message

    async def detect_availability(self) -> InstallationStatus:
        installed, version, error = await self._cli_version()
        env = self.build_env()
        has_key = bool(env.get("ANTHROPIC_API_KEY") or env.get("ANTHROPIC_AUTH_TOKEN"))
        return InstallationStatus(
            installed=installed,
            method="cli",
            version=version,
            path=shutil.which(self.binary),
            has_api_key=has_key,
            # The CLI may also be authenticated through its own login flow.
            authenticated=installed,
            error=error,
        )

    async def list_models(self) -> list[ModelDefinition]:
        return list(CLAUDE_MODELS)


def translate_event(event: dict[str, Any], session_id: str | None = None) -> list[ProviderMessage]:
    """Translate one stream-json object into zero or more provider messages.

    Raises a classified ``ProviderError`` for error results other than the
    turn limit, which is reported as a completion with ``stop_reason="max_turns"``.
    """
    kind = event.get("type")
    messages: list[ProviderMessage] = []

    if kind == "assistant":
        for block in _content_blocks(event):
            if block.get("type") == "text" and block.get("text"):
                messages.append(
                    ProviderMessage(kind=MessageKind.TEXT_DELTA, text=block["text"], session_id=session_id)
                )
            elif block.get("type") == "tool_use":
                messages.append(
                    ProviderMessage(
                        kind=MessageKind.TOOL_INVOCATION,
                        tool_name=block.get("name"),
                        tool_input=block.get("input") or {},
                        tool_use_id=block.get("id"),
                        session_id=session_id,
                    )
                )

    elif kind == "user":
        for block in _content_blocks(event):
            if block.get("type") != "tool_result":
                continue
            messages.append(
                ProviderMessage(
                    kind=MessageKind.TOOL_RESULT,
                    text=_flatten_tool_content(block.get("content")),
                    tool_use_id=block.get("tool_use_id"),
                    is_error=bool(block.get("is_error")),
                    session_id=session_id,
                )
            )

    elif kind == "result":
        subtype = event.get("subtype", "")
        if subtype == "error_max_turns":
            messages.append(
                ProviderMessage(
                    kind=MessageKind.COMPLETION,
                    text=event.get("result") or "",
                    session_id=session_id,
                    stop_reason="max_turns",
                    raw=event,
                )
            )
        elif event.get("is_error") or subtype.startswith("error"):
            raise classify_error(event.get("result") or subtype or "Claude run failed")
        else:
            messages.append(
                ProviderMessage(
                    kind=MessageKind.COMPLETION,
                    text=event.get("result") or "",
                    session_id=session_id,
                    stop_reason="end_turn",
                    raw=event,
                )
            )

    return messages


def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    content = (event.get("message") or {}).get("content") or []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return [block for block in content if isinstance(block, dict)]


def _flatten_tool_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""
