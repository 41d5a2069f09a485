"""Local Ollama backend over its streaming ``/api/chat`` endpoint.

Ollama keeps no server-side conversation, so "resuming" a session means
replaying the supplied history ahead of the new prompt. The session token
handed back in the completion is a local identifier for that history.
"""

from __future__ import annotations

import base64
import json
import uuid
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import httpx

from automaker.config import ProviderConfig
from automaker.errors import NetworkError, ValidationError
from automaker.models import ExecuteRequest, MessageKind, ProviderMessage

from .base import (
    BaseProvider,
    InstallationStatus,
    ModelDefinition,
    classify_error,
    parse_retry_after_header,
)

DEFAULT_OLLAMA_MODEL = "qwen3-coder:30b"


class OllamaProvider(BaseProvider):
    """Text-only provider; it cannot run tools inside the workspace."""

    name = "ollama"
    supported_features = frozenset({"text", "vision", "resume"})

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(config)
        self.base_url = self.config.ollama_url.rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        """Return a fresh ``AsyncClient`` configured with our base URL and timeout."""
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.config.timeout, connect=10.0),
            transport=self._transport,
        )

    def build_payload(self, request: ExecuteRequest, model: str) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        if request.wants_resume:
            messages.extend({"role": t.role, "content": t.content} for t in request.conversation_history)

        user: dict[str, Any] = {"role": "user", "content": request.prompt_text}
        images = []
        for image in request.image_paths:
            path = Path(image)
            if not path.is_file():
                raise ValidationError(f"Image attachment not found: {image}")
            images.append(base64.b64encode(path.read_bytes()).decode("ascii"))
        if images:
            user["images"] = images
        messages.append(user)

        payload: dict[str, Any] = {"model": model, "messages": messages, "stream": True}
        # Sent only for high effort and above.
        if request.reasoning_effort in ("high", "ultra"):
            payload["think"] = True
        return payload

    async def _open_chat(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        """POST ``/api/chat`` in streaming mode.

        Models without thinking support reject ``think`` with HTTP 400; the
        request is then sent once more without it.
        """
        response = await client.send(client.build_request("POST", "/api/chat", json=payload), stream=True)
        if response.status_code == 400 and payload.get("think"):
            body = (await response.aread()).decode("utf-8", errors="replace")
            if "does not support thinking" in body:
                await response.aclose()
                retry = {k: v for k, v in payload.items() if k != "think"}
                return await client.send(client.build_request("POST", "/api/chat", json=retry), stream=True)
        return response

    async def execute(self, request: ExecuteRequest) -> AsyncIterator[ProviderMessage]:
        model = request.model or self.config.model or DEFAULT_OLLAMA_MODEL
        payload = self.build_payload(request, model)
        session_id = request.session_token if request.wants_resume else uuid.uuid4().hex
        token = request.cancel_token

        try:
            async with self._client() as client:
                response = await self._open_chat(client, payload)
                try:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise classify_error(
                            f"Ollama returned HTTP {response.status_code}: {body[:500]}",
                            status_code=response.status_code,
                            retry_after=parse_retry_after_header(response.headers.get("retry-after")),
                        )
                    async for line in response.aiter_lines():
                        if token is not None and token.cancelled:
                            return
                        if not line.strip():
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if data.get("error"):
                            raise classify_error(str(data["error"]))
                        content = (data.get("message") or {}).get("content", "")
                        if content:
                            yield ProviderMessage(kind=MessageKind.TEXT_DELTA, text=content, session_id=session_id)
                        if data.get("done"):
                            yield ProviderMessage(
                                kind=MessageKind.COMPLETION,
                                session_id=session_id,
                                stop_reason="max_turns" if data.get("done_reason") == "length" else "end_turn",
                                raw={k: v for k, v in data.items() if k != "message"},
                            )
                            return
                finally:
                    await response.aclose()
        except httpx.ConnectError as exc:
            raise classify_error(
                f"Cannot connect to Ollama at {self.base_url} (ECONNREFUSED). Is the server running?",
                original=exc,
            ) from exc
        except httpx.TimeoutException as exc:
            raise classify_error(
                f"Request to Ollama timed out after {self.config.timeout}s.", original=exc
            ) from exc
        except httpx.HTTPError as exc:
            # Dropped connections and protocol errors mid-stream.
            raise NetworkError(
                f"Connection to Ollama at {self.base_url} failed: {str(exc) or type(exc).__name__}", original=exc
            ) from exc

    async def detect_availability(self) -> InstallationStatus:
        try:
            async with self._client() as client:
                response = await client.get("/api/version", timeout=5.0)
                response.raise_for_status()
                version = response.json().get("version")
        except (httpx.HTTPError, ValueError) as exc:
            return InstallationStatus(installed=False, method="http", error=str(exc))
        return InstallationStatus(
            installed=True, method="http", version=version, path=self.base_url, authenticated=True
        )

    async def list_models(self) -> list[ModelDefinition]:
        """List locally pulled models; an unreachable server yields an empty list."""
        try:
            async with self._client() as client:
                response = await client.get("/api/tags", timeout=10.0)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError):
            return []
        names = sorted(m.get("name", "") for m in data.get("models", []) if m.get("name"))
        preferred = self.config.model or DEFAULT_OLLAMA_MODEL
        if preferred in names:
            names.remove(preferred)
            names.insert(0, preferred)
        return [
            ModelDefinition(
                id=name,
                name=name,
                provider="ollama",
                supports_tools=False,
                supports_vision="vl" in name or "llava" in name,
                tier="basic",
                default=index == 0,
            )
            for index, name in enumerate(names)
        ]
