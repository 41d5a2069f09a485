"""Tests for the feature scheduler (automaker.engine.scheduler).

Tests cover:
- Dependency ordering across a concurrent run
- The concurrency limit
- Provider failures and blocked dependents
- Cooperative stop
- Cycle rejection at load time
- Single-feature entry points and their validation
- Worktree-backed execution and commit (real git)
"""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path

import httpx
import pytest

from conftest import FakeProvider, RecordingObserver, read_features, write_features

from automaker.config import Config, ProviderConfig
from automaker.engine import FeatureScheduler, SchedulerState
from automaker.engine.scheduler import RunOptions, follow_up_options
from automaker.errors import RateLimitError, ValidationError
from automaker.events import (
    AUTO_MODE_COMPLETE,
    AUTO_MODE_ERROR,
    AUTO_MODE_FEATURE_COMPLETE,
    AUTO_MODE_FEATURE_START,
    AUTO_MODE_PROGRESS,
)
from automaker.models import FeatureStatus
from automaker.providers import OllamaProvider
from automaker.workspace import workspace_name


def _scheduler(project: Path, config: Config, provider: FakeProvider, observer: RecordingObserver) -> FeatureScheduler:
    scheduler = FeatureScheduler(project, config, provider, observer=observer)
    scheduler.load_backlog()
    return scheduler


def _index(observer: RecordingObserver, event_type: str, feature_id: str) -> int:
    for position, event in enumerate(observer.events):
        if event["type"] == event_type and event.get("featureId") == feature_id:
            return position
    raise AssertionError(f"no {event_type} for {feature_id}")


# ---------------------------------------------------------------------------
# run_all
# ---------------------------------------------------------------------------

class TestRunAll:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_chain_runs_in_dependency_order(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        scheduler = _scheduler(project_dir, config, FakeProvider(), observer)

        statuses = await scheduler.run_all(max_concurrency=2)

        assert statuses == {fid: FeatureStatus.VERIFIED for fid in "ABCD"}
        assert _index(observer, AUTO_MODE_FEATURE_COMPLETE, "A") < _index(observer, AUTO_MODE_FEATURE_START, "B")
        assert _index(observer, AUTO_MODE_FEATURE_COMPLETE, "B") < _index(observer, AUTO_MODE_FEATURE_START, "C")
        assert {e["featureId"] for e in observer.of_type(AUTO_MODE_FEATURE_START)[:2]} == {"A", "D"}
        assert all(entry["status"] == "verified" for entry in read_features(project_dir, config).values())

        (complete,) = observer.of_type(AUTO_MODE_COMPLETE)
        assert complete["stopped"] is False
        assert observer.events[-1] is complete
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrency_limit_respected(self, project_dir, config, observer):
        write_features(project_dir, [{"id": f"F{i}", "description": f"feature {i}"} for i in range(5)], config)
        provider = FakeProvider()
        scheduler = _scheduler(project_dir, config, provider, observer)
        peak = 0

        async def on_call(request):
            nonlocal peak
            peak = max(peak, scheduler.status()["runningCount"])
            await asyncio.sleep(0.01)

        provider.on_call = on_call
        statuses = await scheduler.run_all(max_concurrency=2)

        assert peak == 2
        assert set(statuses.values()) == {FeatureStatus.VERIFIED}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_fails_feature_and_blocks_dependents(
        self, project_dir, config, sample_features, observer
    ):
        write_features(project_dir, sample_features, config)
        provider = FakeProvider({"A": [[RateLimitError("Rate limit reached", retry_after=30)]]})
        scheduler = _scheduler(project_dir, config, provider, observer)

        statuses = await scheduler.run_all()

        assert statuses["A"] == FeatureStatus.FAILED
        assert statuses["B"] == FeatureStatus.BLOCKED
        assert statuses["C"] == FeatureStatus.BLOCKED
        assert statuses["D"] == FeatureStatus.VERIFIED

        errors = [e for e in observer.of_type(AUTO_MODE_ERROR) if e.get("featureId") == "A"]
        assert errors[0]["errorType"] == "rate_limit"
        assert errors[0]["retryAfter"] == 30
        blocked = {e["featureId"] for e in observer.of_type(AUTO_MODE_ERROR) if e.get("blocked")}
        assert blocked == {"B", "C"}
        assert not [e for e in observer.of_type(AUTO_MODE_FEATURE_START) if e["featureId"] in ("B", "C")]

        stored = read_features(project_dir, config)
        assert stored["A"]["status"] == "failed"
        assert stored["B"]["status"] == "blocked"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_feature(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        provider = FakeProvider({"A": [[RuntimeError("socket vanished")]]})
        scheduler = _scheduler(project_dir, config, provider, observer)

        statuses = await scheduler.run_all()

        assert statuses["A"] == FeatureStatus.FAILED
        assert statuses["B"] == FeatureStatus.BLOCKED
        assert statuses["D"] == FeatureStatus.VERIFIED
        assert read_features(project_dir, config)["A"]["status"] == "failed"

        (error,) = [e for e in observer.of_type(AUTO_MODE_ERROR) if e.get("featureId") == "A"]
        assert error["errorType"] == "RuntimeError"
        assert error["error"] == "socket vanished"
        complete = [e for e in observer.of_type(AUTO_MODE_FEATURE_COMPLETE) if e["featureId"] == "A"]
        assert [e["passes"] for e in complete] == [False]
        assert scheduler.status()["runningCount"] == 0
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dropped_ollama_connection_fails_feature(self, project_dir, config, observer):
        write_features(project_dir, [{"id": "A", "description": "Local model feature"}], config)

        def handler(request):
            raise httpx.ReadError("connection dropped", request=request)

        provider = OllamaProvider(ProviderConfig(name="ollama"), transport=httpx.MockTransport(handler))
        scheduler = _scheduler(project_dir, config, provider, observer)

        statuses = await scheduler.run_all()

        assert statuses == {"A": FeatureStatus.FAILED}
        assert read_features(project_dir, config)["A"]["status"] == "failed"
        (error,) = observer.of_type(AUTO_MODE_ERROR)
        assert error["errorType"] == "network"
        (complete,) = observer.of_type(AUTO_MODE_FEATURE_COMPLETE)
        assert complete["passes"] is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_blocked_features_retried_on_next_run(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        provider = FakeProvider({"A": [[RateLimitError("Rate limit reached")]]})
        scheduler = _scheduler(project_dir, config, provider, observer)
        await scheduler.run_all()

        scheduler.features["A"].status = FeatureStatus.BACKLOG
        statuses = await scheduler.run_all()
        assert set(statuses.values()) == {FeatureStatus.VERIFIED}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_dependency_blocks(self, project_dir, config, observer):
        write_features(project_dir, [{"id": "X", "dependencies": ["ghost"]}], config)
        provider = FakeProvider()
        scheduler = _scheduler(project_dir, config, provider, observer)

        statuses = await scheduler.run_all()

        assert statuses["X"] == FeatureStatus.BLOCKED
        assert provider.requests == []
        (error,) = observer.of_type(AUTO_MODE_ERROR)
        assert "ghost does not exist" in error["error"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dependency_blocking_disabled(self, project_dir, config, observer):
        config.auto_mode.enable_dependency_blocking = False
        write_features(project_dir, [{"id": "X", "dependencies": ["ghost"]}], config)
        statuses = await _scheduler(project_dir, config, FakeProvider(), observer).run_all()
        assert statuses["X"] == FeatureStatus.VERIFIED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_returns_feature_to_backlog(self, project_dir, config, observer):
        write_features(project_dir, [{"id": "A", "description": "slow"}], config)
        provider = FakeProvider()
        scheduler = _scheduler(project_dir, config, provider, observer)

        async def on_call(request):
            assert scheduler.stop() == 1
            assert scheduler.state == SchedulerState.STOPPING

        provider.on_call = on_call
        statuses = await scheduler.run_all()

        assert statuses["A"] == FeatureStatus.BACKLOG
        assert read_features(project_dir, config)["A"]["status"] == "backlog"
        assert scheduler.outcomes["A"].cancelled is True
        assert observer.of_type(AUTO_MODE_FEATURE_COMPLETE) == []
        (complete,) = observer.of_type(AUTO_MODE_COMPLETE)
        assert complete["stopped"] is True
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_all_rejects_reentry(self, project_dir, config, observer):
        write_features(project_dir, [{"id": "A"}], config)
        provider = FakeProvider()
        scheduler = _scheduler(project_dir, config, provider, observer)
        raised = []

        async def on_call(request):
            try:
                await scheduler.run_all()
            except ValidationError as exc:
                raised.append(str(exc))

        provider.on_call = on_call
        await scheduler.run_all()
        assert raised and "already running" in raised[0]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_concurrency(self, project_dir, config, observer):
        scheduler = FeatureScheduler(project_dir, config, FakeProvider(), observer=observer)
        with pytest.raises(ValidationError, match="max_concurrency"):
            await scheduler.run_all(max_concurrency=-1)


# ---------------------------------------------------------------------------
# Backlog loading
# ---------------------------------------------------------------------------

class TestLoadBacklog:
    @pytest.mark.unit
    def test_cycle_member_marked_blocked(self, project_dir, config, observer):
        write_features(
            project_dir,
            [{"id": "X", "dependencies": ["Y"]}, {"id": "Y", "dependencies": ["X"]}],
            config,
        )
        scheduler = _scheduler(project_dir, config, FakeProvider(), observer)
        assert scheduler.features["Y"].status == FeatureStatus.BLOCKED
        assert scheduler.graph.dependencies("Y") == []
        assert scheduler.eligible() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cycle_blocks_whole_chain(self, project_dir, config, observer):
        write_features(
            project_dir,
            [{"id": "X", "dependencies": ["Y"]}, {"id": "Y", "dependencies": ["X"]}],
            config,
        )
        provider = FakeProvider()
        statuses = await _scheduler(project_dir, config, provider, observer).run_all()
        assert statuses == {"X": FeatureStatus.BLOCKED, "Y": FeatureStatus.BLOCKED}
        assert provider.requests == []

    @pytest.mark.unit
    def test_stale_in_progress_reset(self, project_dir, config, observer):
        write_features(project_dir, [{"id": "A", "status": "in_progress"}], config)
        scheduler = _scheduler(project_dir, config, FakeProvider(), observer)
        assert scheduler.features["A"].status == FeatureStatus.BACKLOG

    @pytest.mark.unit
    def test_eligible_preserves_file_order(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        scheduler = _scheduler(project_dir, config, FakeProvider(), observer)
        assert [f.id for f in scheduler.eligible()] == ["A", "D"]


# ---------------------------------------------------------------------------
# Single-feature entry points
# ---------------------------------------------------------------------------

class TestStartOne:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_one_verifies_and_persists(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        scheduler = _scheduler(project_dir, config, FakeProvider(), observer)

        feature = await scheduler.run_one("A")

        assert feature.status == FeatureStatus.VERIFIED
        assert read_features(project_dir, config)["A"]["status"] == "verified"
        (complete,) = observer.of_type(AUTO_MODE_FEATURE_COMPLETE)
        assert complete["passes"] is True
        assert scheduler.status()["runningCount"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_feature(self, project_dir, config, observer):
        scheduler = FeatureScheduler(project_dir, config, FakeProvider(), observer=observer)
        with pytest.raises(ValidationError, match="not found"):
            await scheduler.run_one("nope")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unmet_dependencies_rejected(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        scheduler = _scheduler(project_dir, config, FakeProvider(), observer)
        with pytest.raises(ValidationError, match="unverified dependencies: A"):
            scheduler.start_one("B")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_mode(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        scheduler = _scheduler(project_dir, config, FakeProvider(), observer)
        with pytest.raises(ValidationError, match="Unknown execution mode"):
            scheduler.start_one("A", RunOptions(mode="sideways"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_already_running_and_concurrency_full(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        provider = FakeProvider()
        release = asyncio.Event()

        async def on_call(request):
            await release.wait()

        provider.on_call = on_call
        scheduler = _scheduler(project_dir, config, provider, observer)
        first = scheduler.start_one("A")
        second = scheduler.start_one("D")

        with pytest.raises(ValidationError, match="already running"):
            scheduler.start_one("A")
        with pytest.raises(ValidationError, match="Concurrency limit"):
            scheduler.start_one("C")
        assert scheduler.status()["isRunning"] is True

        release.set()
        await asyncio.gather(first, second)
        assert scheduler.features["A"].status == FeatureStatus.VERIFIED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_only_skips_provider(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        provider = FakeProvider()
        scheduler = _scheduler(project_dir, config, provider, observer)

        feature = await scheduler.verify_one("C")

        assert feature.status == FeatureStatus.VERIFIED
        assert provider.requests == []
        (start,) = observer.of_type(AUTO_MODE_FEATURE_START)
        assert start["mode"] == "verify"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_follow_up_reuses_conversation(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        provider = FakeProvider()
        scheduler = _scheduler(project_dir, config, provider, observer)
        await scheduler.run_one("A")

        await scheduler.follow_up("A", "Also validate the email field")

        follow_request = provider.requests[-1]
        assert "Also validate the email field" in follow_request.prompt_text
        assert follow_request.session_token == "sess-1"
        assert len(follow_request.conversation_history) == 4

    @pytest.mark.unit
    def test_follow_up_requires_prompt(self):
        with pytest.raises(ValidationError, match="prompt is required"):
            follow_up_options("   ")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_workspace_path_fails_feature(self, project_dir, config, sample_features, observer):
        write_features(project_dir, sample_features, config)
        scheduler = _scheduler(project_dir, config, FakeProvider(), observer)

        feature = await scheduler.run_one("A", workspace_path=str(project_dir / "gone"))

        assert feature.status == FeatureStatus.FAILED
        (error,) = observer.of_type(AUTO_MODE_ERROR)
        assert error["errorType"] == "ValidationError"


# ---------------------------------------------------------------------------
# Worktrees (real git)
# ---------------------------------------------------------------------------

class TestWorktreeExecution:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_feature_committed_on_its_branch(self, tmp_git_repo, config, observer):
        config.auto_mode.use_worktrees = True
        config.auto_mode.retain_worktrees = False
        write_features(tmp_git_repo, [{"id": "A", "description": "Add greeting"}], config)
        provider = FakeProvider()

        async def on_call(request):
            if not request.read_only:
                (Path(request.cwd) / "greeting.txt").write_text("hello\n", encoding="utf-8")

        provider.on_call = on_call
        scheduler = _scheduler(tmp_git_repo, config, provider, observer)
        feature = await scheduler.run_one("A")

        assert feature.status == FeatureStatus.VERIFIED
        assert Path(feature.workspace_path).parent == tmp_git_repo.resolve() / ".worktrees"
        # Verified worktrees are removed; the branch keeps the work.
        assert not Path(feature.workspace_path).exists()
        assert not (tmp_git_repo / "greeting.txt").exists()

        progress = [e["content"] for e in observer.of_type(AUTO_MODE_PROGRESS)]
        assert any(c.startswith("Committed ") for c in progress)
        branch = f"{config.branch_prefix}{Path(feature.workspace_path).name}"
        subject = subprocess.run(
            ["git", "log", "-1", "--format=%s", branch],
            cwd=tmp_git_repo, check=True, capture_output=True, text=True,
        ).stdout.strip()
        assert subject == "feat: Add greeting"
        assert scheduler.workspaces.held() == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_commit_feature_without_changes(self, tmp_git_repo, config, observer):
        from automaker.errors import NothingToCommitError

        write_features(tmp_git_repo, [{"id": "A"}], config)
        subprocess.run(["git", "add", "-A"], cwd=tmp_git_repo, check=True)
        subprocess.run(["git", "commit", "-m", "features"], cwd=tmp_git_repo, check=True, capture_output=True)
        scheduler = _scheduler(tmp_git_repo, config, FakeProvider(), observer)
        with pytest.raises(NothingToCommitError):
            await scheduler.commit_feature("A")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stop_keeps_commits_and_unfinished_edits(self, tmp_git_repo, config, observer):
        config.auto_mode.use_worktrees = True
        write_features(
            tmp_git_repo,
            [{"id": "A", "description": "Add greeting"}, {"id": "B", "description": "Add farewell"}],
            config,
        )
        provider = FakeProvider()
        scheduler = _scheduler(tmp_git_repo, config, provider, observer)

        async def on_call(request):
            if request.read_only:
                return
            cwd = Path(request.cwd)
            if "Feature A:" in request.prompt_text:
                (cwd / "greeting.txt").write_text("hello\n", encoding="utf-8")
            else:
                (cwd / "farewell.txt").write_text("draft\n", encoding="utf-8")
                assert scheduler.stop() == 1

        provider.on_call = on_call
        statuses = await scheduler.run_all(max_concurrency=1)

        assert statuses == {"A": FeatureStatus.VERIFIED, "B": FeatureStatus.BACKLOG}

        def git(*args: str) -> str:
            return subprocess.run(
                ["git", *args], cwd=tmp_git_repo, check=True, capture_output=True, text=True
            ).stdout.strip()

        branch_a = f"{config.branch_prefix}{workspace_name('A')}"
        assert git("log", "-1", "--format=%s", branch_a) == "feat: Add greeting"
        assert git("show", f"{branch_a}:greeting.txt") == "hello"

        workspace_b = tmp_git_repo.resolve() / config.worktrees_dir / workspace_name("B")
        assert (workspace_b / "farewell.txt").read_text(encoding="utf-8") == "draft\n"
        # Nothing was committed for the stopped feature.
        assert git("rev-parse", f"{config.branch_prefix}{workspace_name('B')}") == git("rev-parse", "HEAD")
        assert read_features(tmp_git_repo, config)["B"]["status"] == "backlog"
