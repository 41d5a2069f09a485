"""Command-line entry point: ``automaker run|verify|models``."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Optional

from rich.console import Console

from automaker.config import Config
from automaker.engine import FeatureScheduler
from automaker.errors import AutomakerError
from automaker.events import (
    AUTO_MODE_COMPLETE,
    AUTO_MODE_ERROR,
    AUTO_MODE_FEATURE_COMPLETE,
    AUTO_MODE_FEATURE_START,
    AUTO_MODE_PROGRESS,
    AUTO_MODE_TOOL,
)
from automaker.models import FeatureStatus
from automaker.providers import create_provider
from automaker.utils import print_summary_table, truncate

console = Console()


class EventPrinter:
    """Renders observer events on the terminal.

    Phase changes already print a rule from the phase machine, so they are
    skipped here. Streamed text is shown only with ``verbose``.
    """

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose

    def __call__(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        fid = event.get("featureId", "")
        if kind == AUTO_MODE_FEATURE_START:
            console.print(f"[bold cyan]>> {fid}[/bold cyan] started ({event.get('mode', 'full')})")
        elif kind == AUTO_MODE_PROGRESS and self.verbose and event.get("content"):
            console.print(f"[dim]{fid}: {truncate(str(event.get('content', '')).strip(), 300)}[/dim]")
        elif kind == AUTO_MODE_TOOL:
            console.print(f"[magenta]{fid}[/magenta] tool [bold]{event.get('tool')}[/bold]")
        elif kind == AUTO_MODE_ERROR:
            hint = f" (retry after {event['retryAfter']}s)" if event.get("retryAfter") else ""
            console.print(f"[bold red]{fid}: {event.get('error')}{hint}[/bold red]")
        elif kind == AUTO_MODE_FEATURE_COMPLETE:
            color = "green" if event.get("passes") else "red"
            console.print(f"[bold {color}]<< {fid}[/bold {color}] {event.get('message', '')}")
        elif kind == AUTO_MODE_COMPLETE:
            console.print(f"[bold]{event.get('message', 'Auto mode finished')}[/bold]")


def _load_config(path: Optional[str]) -> Config:
    if path:
        return Config.load(Path(path))
    return Config.from_env()


async def _run(args: Any) -> int:
    config = _load_config(args.config)
    if args.provider:
        config.provider.name = args.provider
    if args.model:
        config.provider.model = args.model
    if args.no_worktrees:
        config.auto_mode.use_worktrees = False

    scheduler = FeatureScheduler(
        args.project,
        config,
        create_provider(config.provider),
        observer=EventPrinter(verbose=args.verbose),
    )
    scheduler.load_backlog()

    if args.feature:
        feature = await scheduler.run_one(args.feature)
        return 0 if feature.status == FeatureStatus.VERIFIED else 1

    statuses = await scheduler.run_all(args.concurrency)
    return 0 if all(s != FeatureStatus.FAILED for s in statuses.values()) else 1


async def _verify(args: Any) -> int:
    config = _load_config(args.config)
    scheduler = FeatureScheduler(
        args.project,
        config,
        create_provider(config.provider),
        observer=EventPrinter(verbose=args.verbose),
    )
    scheduler.load_backlog()
    feature = await scheduler.verify_one(args.feature, workspace_path=args.worktree)
    return 0 if feature.status == FeatureStatus.VERIFIED else 1


async def _models(args: Any) -> int:
    config = _load_config(args.config)
    if args.provider:
        config.provider.name = args.provider
    provider = create_provider(config.provider)
    status = await provider.detect_availability()
    print_summary_table(
        {
            "Provider": provider.name,
            "Installed": "yes" if status.installed else "no",
            "Version": status.version or "-",
            "Error": status.error or "-",
        },
        title="Provider",
    )
    models = await provider.list_models()
    print_summary_table({m.id: f"{m.name} ({m.tier})" for m in models}, title="Models")
    return 0 if status.installed else 1


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for ``automaker``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Automaker -- autonomous Plan/Act/Verify feature implementation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  automaker run ./my-app\n"
            "  automaker run ./my-app --feature feature-3 --provider codex\n"
            "  automaker verify ./my-app feature-3\n"
            "  automaker models --provider ollama\n"
        ),
    )
    parser.add_argument("--config", "-c", default=None, help="Path to a saved JSON configuration")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print streamed agent output")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run the backlog (or a single feature)")
    run_p.add_argument("project", help="Path to the project git repository")
    run_p.add_argument("--feature", default=None, help="Run only this feature id")
    run_p.add_argument("--concurrency", type=int, default=None, help="Maximum concurrent features")
    run_p.add_argument("--provider", choices=["claude", "codex", "ollama"], default=None)
    run_p.add_argument("--model", default=None, help="Model identifier passed to the provider")
    run_p.add_argument("--no-worktrees", action="store_true", help="Work directly in the project checkout")

    verify_p = sub.add_parser("verify", help="Run only the verification phase for a feature")
    verify_p.add_argument("project", help="Path to the project git repository")
    verify_p.add_argument("feature", help="Feature id")
    verify_p.add_argument("--worktree", default=None, help="Existing worktree to verify")

    models_p = sub.add_parser("models", help="Show provider availability and models")
    models_p.add_argument("--provider", choices=["claude", "codex", "ollama"], default=None)

    args = parser.parse_args(argv)

    if getattr(args, "project", None) and not Path(args.project).is_dir():
        console.print(f"[bold red]Error:[/bold red] Project directory not found: {args.project}")
        sys.exit(1)

    runners = {"run": _run, "verify": _verify, "models": _models}
    try:
        code = asyncio.run(runners[args.command](args))
    except AutomakerError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow]")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
