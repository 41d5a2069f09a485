"""Persistent conversation sessions, one JSON file per session."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from automaker.errors import ValidationError
from automaker.models import Session, Turn
from automaker.utils import load_json, save_json


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore:
    """Append-only turn history per session.

    ``clear`` is the only operation that removes turns; it keeps the
    session's id and metadata.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._lock = asyncio.Lock()

    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise ValidationError(f"Invalid session id: {session_id!r}")
        return self.root / f"{session_id}.json"

    def _read(self, session_id: str) -> Session:
        path = self._path(session_id)
        if not path.exists():
            raise ValidationError(f"Session {session_id} not found")
        return Session.model_validate(load_json(path))

    async def _write(self, session: Session, touch: bool = True) -> None:
        if touch:
            session.updated_at = _now()
        await save_json(session.model_dump(mode="json"), self._path(session.id))

    async def start(
        self,
        session_id: Optional[str] = None,
        *,
        working_directory: Optional[str] = None,
        name: str = "",
        project_path: Optional[str] = None,
    ) -> Session:
        """Create a session, or return the existing one with this id."""
        async with self._lock:
            session_id = session_id or uuid.uuid4().hex
            path = self._path(session_id)
            if path.exists():
                return self._read(session_id)
            session = Session(
                id=session_id,
                name=name or f"Session {session_id[:8]}",
                project_path=project_path,
                working_directory=working_directory or project_path,
            )
            await self._write(session)
            return session

    async def resume(self, session_id: str) -> Session:
        return self._read(session_id)

    async def append_turn(self, session_id: str, turn: Turn) -> Session:
        async with self._lock:
            session = self._read(session_id)
            session.turns.append(turn)
            await self._write(session)
            return session

    async def history(self, session_id: str) -> list[Turn]:
        return list(self._read(session_id).turns)

    async def clear(self, session_id: str) -> Session:
        async with self._lock:
            session = self._read(session_id)
            session.turns = []
            await self._write(session, touch=False)
            return session

    async def archive(self, session_id: str) -> Session:
        return await self._set_archived(session_id, True)

    async def unarchive(self, session_id: str) -> Session:
        return await self._set_archived(session_id, False)

    async def _set_archived(self, session_id: str, archived: bool) -> Session:
        async with self._lock:
            session = self._read(session_id)
            session.archived = archived
            await self._write(session)
            return session

    async def update(
        self,
        session_id: str,
        *,
        name: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Session:
        async with self._lock:
            session = self._read(session_id)
            if name is not None:
                session.name = name
            if tags is not None:
                session.tags = list(tags)
            await self._write(session)
            return session

    async def set_provider_session(self, session_id: str, provider_session_id: Optional[str]) -> Session:
        async with self._lock:
            session = self._read(session_id)
            session.provider_session_id = provider_session_id
            await self._write(session)
            return session

    async def list(self, include_archived: bool = False) -> list[Session]:
        """Sessions newest-updated first; archived ones only on request."""
        if not self.root.exists():
            return []
        sessions = []
        for path in self.root.glob("*.json"):
            session = Session.model_validate(load_json(path))
            if session.archived and not include_archived:
                continue
            sessions.append(session)
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            path = self._path(session_id)
            if not path.exists():
                return False
            path.unlink()
            return True
