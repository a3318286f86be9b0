"""CLI entry point for lisa."""

from __future__ import annotations

# Python version check - must be before any imports that use 3.12+ syntax.
import sys

if sys.version_info < (3, 12):  # noqa: UP036
    print("Error: lisa requires Python 3.12 or higher.")
    print(
        "You are running Python {}.{}".format(  # noqa: UP032
            sys.version_info.major, sys.version_info.minor
        )
    )
    sys.exit(1)

import asyncio  # noqa: E402
import signal  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import TYPE_CHECKING  # noqa: E402

import click  # noqa: E402
from rich.console import Console  # noqa: E402
from rich.table import Table  # noqa: E402

from lisa import __version__  # noqa: E402
from lisa.config import LisaConfig  # noqa: E402
from lisa.errors import LisaError  # noqa: E402

if TYPE_CHECKING:
    from lisa.models import Session
    from lisa.session.scheduler import Scheduler

_STATE_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "skipped": "yellow",
    "killed": "magenta",
}


def _load_config(config_path: Path | None) -> tuple[LisaConfig, Path]:
    path = config_path or LisaConfig.default_path(Path.cwd())
    try:
        config = LisaConfig.load(path)
    except LisaError as e:
        raise click.ClickException(str(e)) from e
    # Config lives in <workspace>/.lisa/, relative workspace paths start there.
    base = path.parent.parent if path.parent.name == ".lisa" else path.parent
    return config, config.workspace_path(base.resolve())


def _print_summary(console: Console, sessions: list[Session]) -> None:
    if not sessions:
        console.print("[dim]No sessions ran.[/]")
        return
    table = Table(title="Sessions")
    table.add_column("Issue", style="cyan")
    table.add_column("Branch")
    table.add_column("State")
    table.add_column("Provider")
    table.add_column("Result", overflow="fold")
    for session in sessions:
        style = _STATE_STYLES.get(session.state.value, "white")
        last = session.attempts[-1] if session.attempts else None
        provider = ""
        if last is not None:
            provider = f"{last.provider}/{last.model}" if last.model else last.provider
        result = session.pr_url or (str(session.log_file) if session.log_file else "")
        table.add_row(
            session.issue_id,
            session.branch_name,
            f"[{style}]{session.state.value}[/]",
            provider,
            result,
        )
    console.print(table)
    succeeded = sum(1 for s in sessions if s.state.value == "succeeded")
    console.print(f"{succeeded}/{len(sessions)} session(s) succeeded")


async def _run_scheduler(scheduler: Scheduler) -> list[Session]:
    loop = asyncio.get_running_loop()
    interrupts = 0

    def on_interrupt() -> None:
        nonlocal interrupts
        interrupts += 1
        if interrupts == 1:
            click.echo("\nStopping: killing running sessions (Ctrl-C again to force)...", err=True)
            scheduler.stop()
        else:
            raise KeyboardInterrupt

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await scheduler.run()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="lisa")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Resolve tracked issues with supervised AI coding agents."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--once", is_flag=True, help="Process a single issue and exit")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Stop after N sessions")
@click.option("--dry-run", is_flag=True, help="Show what would run without running it")
@click.option(
    "--concurrency", type=click.IntRange(min=1), default=None, help="Parallel sessions"
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.toml (default: ./.lisa/config.toml)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def run(
    once: bool,
    limit: int | None,
    dry_run: bool,
    concurrency: int | None,
    config_path: Path | None,
    verbose: bool,
) -> None:
    """Pull issues and resolve them one session at a time."""
    from lisa.debug_log import setup_logging
    from lisa.git.pull_requests import GitHubCliPullRequests
    from lisa.instance_lock import InstanceLock
    from lisa.session.scheduler import Scheduler
    from lisa.sources import create_source

    console = Console()
    setup_logging(verbose=verbose)
    config, workspace = _load_config(config_path)

    try:
        source = create_source(config.source, workspace)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    scheduler = Scheduler(
        config,
        source,
        workspace=workspace,
        pull_requests=GitHubCliPullRequests(auth=config.github),
        once=once,
        limit=limit,
        dry_run=dry_run,
        concurrency=concurrency,
    )
    try:
        with InstanceLock(workspace):
            sessions = asyncio.run(_run_scheduler(scheduler))
    except LisaError as e:
        raise click.ClickException(str(e)) from e
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/]")
        sys.exit(130)

    _print_summary(console, sessions)
    if any(s.state.value != "succeeded" for s in sessions):
        sys.exit(1)


@cli.command()
def providers() -> None:
    """List built-in providers and whether they are installed."""
    from lisa.providers.agents import BUILTIN_PROVIDERS, get_available_providers

    installed = {provider.name for provider in asyncio.run(get_available_providers())}
    table = Table(title="Providers")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("Installed")
    table.add_column("Install command", style="dim")
    for info in BUILTIN_PROVIDERS.values():
        ok = info.name in installed
        table.add_row(
            info.name,
            info.description,
            "[green]yes[/]" if ok else "[red]no[/]",
            "" if ok else info.install_command,
        )
    Console().print(table)


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def init(force: bool) -> None:
    """Write a default .lisa/config.toml in the current directory."""
    path = LisaConfig.default_path(Path.cwd())
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force to overwrite)")
    LisaConfig().save(path)
    click.echo(f"Wrote {path}")


@cli.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.toml (default: ./.lisa/config.toml)",
)
def cleanup(config_path: Path | None) -> None:
    """Remove worktrees left behind by crashed sessions."""
    from lisa.git.worktree import WorktreeManager
    from lisa.instance_lock import InstanceLock

    config, workspace = _load_config(config_path)
    roots = [workspace / repo.path for repo in config.repos] or [workspace]
    manager = WorktreeManager()

    async def _cleanup() -> int:
        removed = 0
        for root in roots:
            try:
                removed += len(await manager.cleanup_orphans(root))
            except LisaError as e:
                click.secho(f"{root}: {e}", fg="yellow", err=True)
        return removed

    try:
        with InstanceLock(workspace):
            removed = asyncio.run(_cleanup())
    except LisaError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Removed {removed} orphan worktree(s)")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
