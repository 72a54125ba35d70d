"""Command-line interface for Etz."""

import asyncio
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import CONFIG_FILENAME, Config
from .exceptions import (
    ConfigNotFoundError,
    EtzError,
    GitOperationError,
    InvalidConfigError,
    WorktreeNotFoundError,
)
from .logging_config import setup_logging
from .models import (
    BuildProgress,
    CheckStatus,
    CleanStatus,
    Platform,
    SwitchStatus,
)
from .orchestrator import Orchestrator, run_doctor

console = Console()

SWITCH_ICONS = {
    SwitchStatus.CREATED_NEW: "[green]+[/green]",
    SwitchStatus.ADDED_LOCAL: "[green]✓[/green]",
    SwitchStatus.ADDED_REMOTE: "[green]✓[/green]",
    SwitchStatus.ALREADY_EXISTS: "[cyan]•[/cyan]",
    SwitchStatus.ALREADY_IN_USE: "[yellow]⚠[/yellow]",
    SwitchStatus.DRY_RUN: "[cyan]?[/cyan]",
    SwitchStatus.SKIPPED: "[dim]⊘[/dim]",
    SwitchStatus.ERROR: "[red]✗[/red]",
}

CHECK_ICONS = {
    CheckStatus.PASS: "[green]✓[/green]",
    CheckStatus.WARNING: "[yellow]⚠[/yellow]",
    CheckStatus.FAIL: "[red]✗[/red]",
}


def handle_error(ctx: click.Context, error: EtzError) -> None:
    """Print a typed error with a hint and exit with status 1."""
    if isinstance(error, ConfigNotFoundError):
        console.print("[red]Configuration file not found[/red]")
        console.print(f"[dim]Expected location: {CONFIG_FILENAME} (current directory or home directory)[/dim]")
    elif isinstance(error, InvalidConfigError):
        console.print("[red]Invalid configuration[/red]")
        console.print(f"[dim]{escape(error.details)}[/dim]")
        console.print(f"Check your {CONFIG_FILENAME} file for errors")
    elif isinstance(error, WorktreeNotFoundError):
        console.print("[red]Worktree not found[/red]")
        console.print(f"[dim]{escape(str(error))}[/dim]")
        console.print("List available worktrees: [bold]etz list[/bold]")
    elif isinstance(error, GitOperationError):
        console.print("[red]Git operation failed[/red]")
        console.print(f"[dim]{escape(str(error))}[/dim]")
        if "does not exist" in error.details:
            console.print("Make sure the branch exists or create it first")
        elif "already exists" in error.details:
            console.print("Try using a different branch name or cleaning up existing worktrees")
    else:
        console.print(f"[red]Error: {escape(str(error))}[/red]")
    ctx.exit(1)


def get_orchestrator(ctx: click.Context) -> Orchestrator:
    """Load the configuration on first use and cache the orchestrator."""
    if "orchestrator" not in ctx.obj:
        try:
            config = Config.load_from_file(ctx.obj["config_path"])
        except EtzError as e:
            handle_error(ctx, e)
        level = "DEBUG" if ctx.obj["verbose"] else config.log_level
        setup_logging(level, config.log_file)
        ctx.obj["orchestrator"] = Orchestrator(config)
    return ctx.obj["orchestrator"]


def parse_mappings(values: tuple[str, ...], option: str) -> dict[str, str]:
    """Parse repeated ``repo:branch`` option values."""
    mapping = {}
    for value in values:
        repo, _, branch = value.partition(":")
        if not repo or not branch:
            raise click.BadParameter(f"Invalid mapping: {value}. Use format \"repo:branch\"",
                                     param_hint=option)
        mapping[repo] = branch
    return mapping


@click.group()
@click.option('--config', '-c', 'config_path', type=click.Path(path_type=Path),
              help=f'Configuration file path (default: {CONFIG_FILENAME})')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Etz - Coordinate git worktrees across related repositories."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['verbose'] = verbose


@main.command()
@click.argument('branch', required=False)
@click.option('--label', '-l', help='Worktree label (folder name); defaults to the branch')
@click.option('--repo', '-r', help='Only operate on this repository')
@click.option('--default', '-d', 'default_branch', help='Default branch for all repositories')
@click.option('--branch', '-b', 'branch_mappings', multiple=True,
              help='Branch for one repository as repo:branch (repeatable)')
@click.option('--base', 'base_mappings', multiple=True,
              help='Base branch for new branches of one repository as repo:branch (repeatable)')
@click.option('--dry-run', is_flag=True, help='Preview without executing')
@click.pass_context
def switch(ctx: click.Context, branch: str | None, label: str | None, repo: str | None,
           default_branch: str | None, branch_mappings: tuple[str, ...],
           base_mappings: tuple[str, ...], dry_run: bool) -> None:
    """Create a worktree for every repository under one label."""
    orchestrator = get_orchestrator(ctx)
    branch_map = parse_mappings(branch_mappings, "--branch")
    base_branch_map = parse_mappings(base_mappings, "--base")
    default_branch = branch or default_branch

    if not label and not default_branch:
        console.print("[red]Please provide a branch name or a label[/red]")
        console.print("Examples:")
        console.print("  [bold]etz switch feature-branch[/bold]")
        console.print("  [bold]etz switch -l my-label -d main -b project.ios:feature-a[/bold]")
        ctx.exit(1)

    label = label or default_branch

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        task = progress.add_task("Creating worktrees...", total=None)
        results = orchestrator.switch(
            label=label,
            branch_map=branch_map,
            default_branch=default_branch,
            base_branch_map=base_branch_map,
            dry_run=dry_run,
            repo=repo,
        )
        progress.update(task, description="Done")

    for result in results:
        console.print(f"{SWITCH_ICONS[result.status]} {result.repo_name}: {escape(result.message)}")
        for warning in result.warnings:
            console.print(f"    [yellow]{escape(warning)}[/yellow]")

    failed = [r for r in results if r.status in (SwitchStatus.ERROR, SwitchStatus.ALREADY_IN_USE)]
    if dry_run:
        return

    console.print()
    if failed:
        console.print(f"[red]{len(failed)} repositories failed[/red]")
        ctx.exit(1)
    console.print(f"[green]✓[/green] Worktree '[bold]{label}[/bold]' is ready!")


@main.command(name='list')
@click.pass_context
def list_worktrees(ctx: click.Context) -> None:
    """List all worktree groups."""
    orchestrator = get_orchestrator(ctx)
    groups = orchestrator.list_worktrees()

    if not groups:
        console.print("No worktrees found")
        return

    table = Table(title="Worktrees")
    table.add_column("Label", style="cyan", no_wrap=True)
    table.add_column("Repository", style="green")
    table.add_column("Branch", style="yellow")
    table.add_column("Status", style="magenta")

    for group in groups:
        for i, repo in enumerate(group.repos):
            if not repo.exists:
                state = "[dim]missing[/dim]"
            elif repo.clean:
                state = "clean"
            else:
                state = f"{repo.uncommitted} uncommitted"
            table.add_row(group.label if i == 0 else "", repo.name, repo.branch or "-", state)

    console.print(table)


@main.command()
@click.argument('label')
@click.pass_context
def status(ctx: click.Context, label: str) -> None:
    """Show the state of every repository under a label."""
    orchestrator = get_orchestrator(ctx)
    try:
        info = orchestrator.require_worktree(label)
    except EtzError as e:
        handle_error(ctx, e)

    table = Table(title=f"Worktree: {info.label}")
    table.add_column("Repository", style="green")
    table.add_column("Branch", style="yellow")
    table.add_column("Changes", style="magenta")
    table.add_column("Path", style="blue")

    for repo in info.repos:
        if not repo.exists:
            table.add_row(repo.name, "-", "[dim]not created[/dim]", repo.path)
        else:
            table.add_row(repo.name, repo.branch, str(repo.uncommitted), repo.path)

    console.print(table)


@main.command()
@click.argument('label')
@click.option('--repo', '-r', help='Only clean this repository')
@click.option('--force', '-f', is_flag=True, help='Force deletion even if not a git worktree')
@click.option('--delete-branches', is_flag=True, help='Also delete local git branches')
@click.option('--dry-run', is_flag=True, help='Preview without executing')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def clean(ctx: click.Context, label: str, repo: str | None, force: bool,
          delete_branches: bool, dry_run: bool, yes: bool) -> None:
    """Delete the worktrees of a label."""
    orchestrator = get_orchestrator(ctx)
    try:
        orchestrator.require_worktree(label)
    except EtzError as e:
        handle_error(ctx, e)

    if delete_branches:
        console.print("[yellow]Local branches will also be deleted![/yellow]")

    if not yes and not dry_run:
        if not click.confirm(f"Are you sure you want to delete '{label}'?", default=False):
            console.print("[dim]Cancelled.[/dim]")
            return

    results = orchestrator.clean(label, repo=repo, force=force,
                                 delete_branches=delete_branches, dry_run=dry_run)

    failed = 0
    for result in results:
        if result.success:
            icon = "[cyan]?[/cyan]" if result.status is CleanStatus.DRY_RUN else "[green]✓[/green]"
        else:
            icon = "[red]✗[/red]"
            failed += 1
        name = result.repo_name or label
        console.print(f"{icon} {name}: {escape(result.message)}")
        for warning in result.warnings:
            console.print(f"    [yellow]{escape(warning)}[/yellow]")

    if failed:
        ctx.exit(1)


@main.command()
@click.pass_context
def doctor(ctx: click.Context) -> None:
    """Check configuration and repositories."""
    result = run_doctor(ctx.obj['config_path'])

    for check in result.checks:
        console.print(f"{CHECK_ICONS[check.status]} {check.name}: {check.message}")

    console.print()
    if result.success:
        console.print("[green]✓[/green] All checks passed")
    else:
        console.print("[red]⚠[/red] Some checks failed")
        ctx.exit(1)


@main.command()
@click.argument('repo', required=False)
@click.pass_context
def branches(ctx: click.Context, repo: str | None) -> None:
    """List branches of a repository (the first configured one by default)."""
    orchestrator = get_orchestrator(ctx)
    try:
        names = orchestrator.get_branches(repo)
    except EtzError as e:
        handle_error(ctx, e)

    for name in names:
        console.print(name)


@main.command()
@click.argument('label')
@click.argument('platform', type=click.Choice([p.value for p in Platform]))
@click.option('--check', is_flag=True, help='Only run the pre-condition checks')
@click.option('--fix', is_flag=True, help='Run auto-fix actions for failing checks first')
@click.pass_context
def build(ctx: click.Context, label: str, platform: str, check: bool, fix: bool) -> None:
    """Build the iOS or Android app of a label."""
    orchestrator = get_orchestrator(ctx)
    target = Platform(platform)

    async def _run(description: str, coro_factory):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            console=console
        ) as progress:
            task = progress.add_task(description, total=100)

            def on_progress(event: BuildProgress) -> None:
                progress.update(task, completed=event.progress,
                                description=f"{description} {escape(event.message[:60])}")

            return await coro_factory(on_progress)

    async def _build():
        pre_check = await orchestrator.check_build_pre_conditions(label, target)
        for condition in pre_check.conditions:
            console.print(f"{CHECK_ICONS[condition.status]} {condition.name}: {escape(condition.message)}")

        if check:
            return pre_check.ready

        if fix:
            actions = [c.fix_action for c in pre_check.conditions
                       if c.can_auto_fix and c.status is not CheckStatus.PASS]
            for action in actions:
                result = await _run(f"Running {action}...",
                                    lambda cb, a=action: orchestrator.run_fix_action(label, a, cb))
                if not result.success:
                    console.print(f"[red]{action} failed: {escape(str(result.error))}[/red]")
                    return False
                console.print(f"[green]✓[/green] {action} completed")
            if actions:
                pre_check = await orchestrator.check_build_pre_conditions(label, target)

        if not pre_check.ready:
            console.print("[red]Pre-conditions not met; use --fix to run the suggested fixes[/red]")
            return False

        result = await _run(f"Building {target.value}...",
                            lambda cb: orchestrator.run_build(label, target, cb))
        if not result.success:
            console.print(f"[red]Build failed: {escape(str(result.error))}[/red]")
            return False

        console.print(f"[green]✓[/green] {target.value} build completed in {result.duration:.1f}s")
        if result.output and ctx.obj['verbose']:
            console.print(result.output)
        return True

    if not asyncio.run(_build()):
        ctx.exit(1)


if __name__ == '__main__':
    main()
