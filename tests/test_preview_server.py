"""Unit tests for automaker.preview.PreviewServerManager.

Processes are replaced by ``FakeProcess`` objects whose ``wait`` blocks
until the test makes them exit, and port probing is patched so the real
host ports do not matter.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, patch

import pytest

from automaker.config import PreviewConfig
from automaker.errors import ProcessSpawnError
from automaker.models import PreviewStatus
from automaker.preview import PreviewServerManager


class FakeProcess:
    _next_pid = 40000

    def __init__(self) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: Optional[int] = None
        self._exited = asyncio.Event()
        self.terminated = False

    def exit(self, code: int = 0) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)


@pytest.fixture
def spawned():
    """Patch process creation; yields the list of FakeProcess objects and spawn kwargs."""
    processes: list[FakeProcess] = []
    calls: list[dict] = []

    async def fake_exec(*cmd, **kwargs):
        calls.append({"cmd": cmd, **kwargs})
        process = FakeProcess()
        processes.append(process)
        return process

    with patch("asyncio.create_subprocess_exec", side_effect=fake_exec), patch(
        "automaker.preview.server.check_port_available", AsyncMock(return_value=True)
    ):
        yield processes, calls


def _workspace(tmp_path: Path, name: str) -> Path:
    path = tmp_path / name
    path.mkdir()
    return path


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# start
# ---------------------------------------------------------------------------

class TestStart:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_port_and_env(self, tmp_path: Path, spawned):
        processes, calls = spawned
        manager = PreviewServerManager(PreviewConfig(command="npm run dev -- --host"))
        ws = _workspace(tmp_path, "ws1")
        instance = await manager.start(tmp_path, ws)

        assert instance.port == 23100
        assert instance.url == "http://localhost:23100"
        assert instance.status == PreviewStatus.RUNNING
        assert instance.pid == processes[0].pid
        assert calls[0]["cmd"] == ("npm", "run", "dev", "--", "--host")
        assert calls[0]["env"]["PORT"] == "23100"
        assert calls[0]["cwd"] == str(ws.resolve())
        await manager.stop_all()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_distinct_ports_per_workspace(self, tmp_path: Path, spawned):
        manager = PreviewServerManager()
        first = await manager.start(tmp_path, _workspace(tmp_path, "a"))
        second = await manager.start(tmp_path, _workspace(tmp_path, "b"))
        assert first.port != second.port
        assert {i.port for i in manager.list()} == {23100, 23101}
        await manager.stop_all()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_idempotent_for_same_workspace(self, tmp_path: Path, spawned):
        processes, _ = spawned
        manager = PreviewServerManager()
        ws = _workspace(tmp_path, "a")
        first = await manager.start(tmp_path, ws)
        second = await manager.start(tmp_path, str(ws) + "/.")
        assert first is second
        assert len(processes) == 1
        await manager.stop_all()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_skips_ports_in_use(self, tmp_path: Path, spawned):
        manager = PreviewServerManager()
        busy = AsyncMock(side_effect=lambda port, host: port != 23100)
        with patch("automaker.preview.server.check_port_available", busy):
            instance = await manager.start(tmp_path, _workspace(tmp_path, "a"))
        assert instance.port == 23101
        await manager.stop_all()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pool_exhausted(self, tmp_path: Path, spawned):
        manager = PreviewServerManager(PreviewConfig(port_range_start=23100, port_range_end=23100))
        await manager.start(tmp_path, _workspace(tmp_path, "a"))
        with pytest.raises(ProcessSpawnError, match="No free preview port"):
            await manager.start(tmp_path, _workspace(tmp_path, "b"))
        await manager.stop_all()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_workspace(self, tmp_path: Path, spawned):
        with pytest.raises(ProcessSpawnError, match="does not exist"):
            await PreviewServerManager().start(tmp_path, tmp_path / "missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_spawn_failure_frees_port(self, tmp_path: Path):
        manager = PreviewServerManager()
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("npm"))), patch(
            "automaker.preview.server.check_port_available", AsyncMock(return_value=True)
        ):
            with pytest.raises(ProcessSpawnError, match="Failed to start"):
                await manager.start(tmp_path, _workspace(tmp_path, "a"))
        assert manager._allocated == set()


# ---------------------------------------------------------------------------
# stop / crash
# ---------------------------------------------------------------------------

class TestStopAndCrash:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_terminates_and_frees_port(self, tmp_path: Path, spawned):
        processes, _ = spawned
        manager = PreviewServerManager()
        ws = _workspace(tmp_path, "a")
        await manager.start(tmp_path, ws)

        assert await manager.stop(ws) is True
        assert processes[0].terminated
        assert manager.list() == []
        assert manager.get(ws) is None

        again = await manager.start(tmp_path, ws)
        assert again.port == 23100
        await manager.stop_all()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_unknown_workspace(self, tmp_path: Path):
        assert await PreviewServerManager().stop(tmp_path / "nothing") is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_crash_reclaims_port(self, tmp_path: Path, spawned):
        processes, _ = spawned
        manager = PreviewServerManager()
        ws = _workspace(tmp_path, "a")
        instance = await manager.start(tmp_path, ws)

        processes[0].exit(1)
        await _settle()

        assert instance.status == PreviewStatus.CRASHED
        assert manager.list() == []
        assert manager.get(ws) is None
        replacement = await manager.start(tmp_path, _workspace(tmp_path, "b"))
        assert replacement.port == 23100
        await manager.stop_all()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_check_failure_stops_server(self, tmp_path: Path, spawned):
        processes, _ = spawned
        manager = PreviewServerManager(PreviewConfig(health_check=True, startup_timeout=1))
        with patch("automaker.preview.server.wait_for_health", AsyncMock(return_value=False)):
            with pytest.raises(ProcessSpawnError, match="did not become healthy"):
                await manager.start(tmp_path, _workspace(tmp_path, "a"))
        assert processes[0].terminated
        assert manager._allocated == set()
