"""Feature list persistence and the feature dependency graph.

The feature list (``.automaker/feature_list.json``) is authored by people
and the board UI; this module only parses it, writes status changes back,
and appends to per-feature context transcripts.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Iterable, Optional

from automaker.config import Config
from automaker.errors import DependencyCycleError, ValidationError
from automaker.models import Feature, FeatureStatus
from automaker.utils import console, ensure_dir, load_json, sanitize_name, save_json


class FeatureStore:
    """Reads and writes one project's feature list."""

    def __init__(self, project_path: str | Path, config: Config) -> None:
        self.project_path = Path(project_path)
        self.config = config
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self.config.features_path(self.project_path)

    def load(self) -> list[Feature]:
        """Parse the feature list.

        A missing file yields an empty list. Entries without an ``id`` get a
        generated ``feature-<index>-<millis>`` identifier.
        """
        if not self.path.exists():
            return []
        raw = load_json(self.path)
        if not isinstance(raw, list):
            raise ValidationError(f"Feature list must be a JSON array: {self.path}")

        stamp = int(time.time() * 1000)
        features: list[Feature] = []
        for index, entry in enumerate(raw):
            if not isinstance(entry, dict):
                continue
            data = dict(entry)
            data.setdefault("id", f"feature-{index}-{stamp}")
            status = data.get("status")
            if status not in {s.value for s in FeatureStatus}:
                data["status"] = FeatureStatus.BACKLOG.value
            features.append(Feature.model_validate(data))
        return features

    async def save(self, features: Iterable[Feature]) -> None:
        async with self._lock:
            payload = [
                f.model_dump(mode="json", by_alias=True, exclude_none=True) for f in features
            ]
            await save_json(payload, self.path)

    async def update_status(
        self,
        feature_id: str,
        status: FeatureStatus,
        workspace_path: Optional[str] = None,
    ) -> None:
        """Rewrite one feature's status, leaving every other entry untouched."""
        async with self._lock:
            if not self.path.exists():
                return
            raw = load_json(self.path)
            if not isinstance(raw, list):
                return
            found = False
            for entry in raw:
                if isinstance(entry, dict) and entry.get("id") == feature_id:
                    entry["status"] = status.value
                    if workspace_path is not None:
                        entry["worktreePath"] = workspace_path
                    found = True
            if not found:
                console.print(f"[yellow]Feature {feature_id} not found in {self.path}[/yellow]")
                return
            await save_json(raw, self.path)

    def context_path(self, feature_id: str) -> Path:
        return self.config.context_dir(self.project_path) / f"{sanitize_name(feature_id) or 'feature'}.md"

    async def append_context(self, feature_id: str, text: str) -> None:
        """Append *text* to the feature's running transcript file."""
        if not text:
            return
        path = self.context_path(feature_id)
        ensure_dir(path.parent)

        def _append() -> None:
            with path.open("a", encoding="utf-8") as fh:
                fh.write(text)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _append)

    def read_context(self, feature_id: str) -> str:
        path = self.context_path(feature_id)
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")


class DependencyGraph:
    """Directed acyclic graph of ``feature -> dependencies`` edges.

    Every mutation is checked before it is applied; an edge that would close a
    cycle raises ``DependencyCycleError`` and leaves the graph unchanged.
    """

    def __init__(self) -> None:
        self._deps: dict[str, list[str]] = {}

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._deps

    def add_feature(self, feature_id: str, dependencies: Iterable[str] = ()) -> None:
        snapshot = {fid: list(deps) for fid, deps in self._deps.items()}
        self._deps.setdefault(feature_id, [])
        try:
            for dep in dependencies:
                self.add_dependency(feature_id, dep)
        except DependencyCycleError:
            self._deps = snapshot
            raise

    def add_dependency(self, feature_id: str, depends_on: str) -> None:
        if feature_id == depends_on:
            raise DependencyCycleError([feature_id, feature_id])
        if depends_on in self._deps.get(feature_id, []):
            return
        path = self._path(depends_on, feature_id)
        if path is not None:
            raise DependencyCycleError([feature_id] + path)
        self._deps.setdefault(feature_id, []).append(depends_on)
        self._deps.setdefault(depends_on, [])

    def dependencies(self, feature_id: str) -> list[str]:
        return list(self._deps.get(feature_id, []))

    def dependents(self, feature_id: str) -> list[str]:
        return [fid for fid, deps in self._deps.items() if feature_id in deps]

    def _path(self, start: str, goal: str) -> Optional[list[str]]:
        """Return a dependency path from *start* to *goal*, or ``None``."""
        stack: list[tuple[str, list[str]]] = [(start, [start])]
        seen: set[str] = set()
        while stack:
            node, trail = stack.pop()
            if node == goal:
                return trail
            if node in seen:
                continue
            seen.add(node)
            for dep in self._deps.get(node, []):
                stack.append((dep, trail + [dep]))
        return None

