"""Codex backend driven through ``codex exec --json``.

Codex prints one JSON event per line (``thread.started``, ``item.*``,
``turn.completed``, ``turn.failed``, ``error``). A run is resumed with
``codex exec ... resume <thread_id> <prompt>``.
"""

from __future__ import annotations

import shutil
from typing import Any, AsyncIterator

from automaker.models import ExecuteRequest, MessageKind, ProviderMessage

from .base import CLIProvider, InstallationStatus, ModelDefinition, classify_error

# Codex understands minimal/low/medium/high only.
REASONING_EFFORT_MAP: dict[str, str] = {
    "none": "minimal",
    "low": "low",
    "medium": "medium",
    "high": "high",
    "ultra": "high",
}

CODEX_MODELS: list[ModelDefinition] = [
    ModelDefinition(
        id="gpt-5-codex",
        name="GPT-5 Codex",
        provider="codex",
        description="Codex-tuned GPT-5 for agentic coding",
        context_window=272000,
        max_output_tokens=128000,
        supports_vision=True,
        tier="premium",
        default=True,
    ),
    ModelDefinition(
        id="gpt-5",
        name="GPT-5",
        provider="codex",
        description="General purpose GPT-5",
        context_window=272000,
        max_output_tokens=128000,
        supports_vision=True,
        tier="standard",
    ),
]

_TOOL_ITEMS = {"command_execution", "file_change", "mcp_tool_call", "web_search"}


class CodexProvider(CLIProvider):
    """Runs one agent call per ``codex exec`` subprocess."""

    name = "codex"
    # No turn limit flag exists, so max_turns is not supported.
    supported_features = frozenset({"tools", "text", "vision", "resume"})
    env_allowlist = ("OPENAI_API_KEY", "OPENAI_BASE_URL", "CODEX_HOME")

    @property
    def binary(self) -> str:  # type: ignore[override]
        return self.config.codex_binary

    def build_command(self, request: ExecuteRequest) -> list[str]:
        cmd = [self.binary, "exec", "--json", "--skip-git-repo-check", "--cd", request.cwd]
        if request.model:
            cmd += ["-m", request.model]
        effort = REASONING_EFFORT_MAP.get(request.reasoning_effort)
        if effort:
            cmd += ["-c", f"model_reasoning_effort={effort}"]
        if request.read_only:
            cmd += ["--sandbox", "read-only"]
        else:
            cmd.append("--full-auto")
        for image in request.image_paths:
            cmd += ["-i", image]

        prompt = request.prompt_text
        if request.system_prompt:
            prompt = f"{request.system_prompt}\n\n{prompt}"
        if request.wants_resume:
            cmd += ["resume", str(request.session_token), prompt]
        else:
            cmd.append(prompt)
        return cmd

    async def execute(self, request: ExecuteRequest) -> AsyncIterator[ProviderMessage]:
        thread_id: str | None = request.session_token if request.wants_resume else None
        async for event in self._stream_json_lines(
            self.build_command(request),
            cwd=request.cwd,
            env=self.build_env(),
            cancel_token=request.cancel_token,
        ):
            if event.get("type") == "thread.started":
                thread_id = event.get("thread_id") or thread_id
                continue
            for message in translate_event(event, thread_id):
                yield message

    async def detect_availability(self) -> InstallationStatus:
        installed, version, error = await self._cli_version()
        env = self.build_env()
        return InstallationStatus(
            installed=installed,
            method="cli",
            version=version,
            path=shutil.which(self.binary),
            has_api_key=bool(env.get("OPENAI_API_KEY")),
            authenticated=installed,
            error=error,
        )

    async def list_models(self) -> list[ModelDefinition]:
        return list(CODEX_MODELS)


def translate_event(event: dict[str, Any], thread_id: str | None = None) -> list[ProviderMessage]:
    kind = event.get("type")
    item = event.get("item") or {}
    item_type = item.get("type")

    if kind == "item.started" and item_type in _TOOL_ITEMS:
        return [
            ProviderMessage(
                kind=MessageKind.TOOL_INVOCATION,
                tool_name="shell" if item_type == "command_execution" else item_type,
                tool_input=_tool_input(item),
                tool_use_id=item.get("id"),
                session_id=thread_id,
            )
        ]

    if kind == "item.completed":
        if item_type == "agent_message":
            return [ProviderMessage(kind=MessageKind.TEXT_DELTA, text=item.get("text", ""), session_id=thread_id)]
        if item_type in _TOOL_ITEMS:
            exit_code = item.get("exit_code")
            return [
                ProviderMessage(
                    kind=MessageKind.TOOL_RESULT,
                    text=item.get("aggregated_output") or "",
                    tool_use_id=item.get("id"),
                    is_error=item.get("status") == "failed" or (exit_code not in (None, 0)),
                    session_id=thread_id,
                )
            ]
        if item_type == "error":
            return [ProviderMessage(kind=MessageKind.ERROR, text=item.get("message", ""), session_id=thread_id)]
        return []

    if kind == "turn.completed":
        return [
            ProviderMessage(
                kind=MessageKind.COMPLETION,
                session_id=thread_id,
                stop_reason="end_turn",
                raw=event,
            )
        ]

    if kind == "turn.failed":
        error = event.get("error") or {}
        raise classify_error(error.get("message") or "Codex turn failed")

    if kind == "error":
        raise classify_error(event.get("message") or "Codex run failed")

    return []


def _tool_input(item: dict[str, Any]) -> dict[str, Any]:
    if item.get("type") == "command_execution":
        return {"command": item.get("command", "")}
    if item.get("type") == "file_change":
        return {"changes": item.get("changes", [])}
    return {k: v for k, v in item.items() if k not in ("id", "type", "status")}
