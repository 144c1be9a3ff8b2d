"""CLI commands for remote repositories.

This module provides Typer commands that drive the same services the UI
bridge uses: branch discovery, connecting, tree and file fetches, sign-in via
device flow or personal access token, sign-out and connectivity checks.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table
from rich.tree import Tree

from markread.configuration import DEFAULT_CONFIG_PATH, bootstrap_settings
from markread.errors import MarkReadError, NetworkUnreachableError, RateLimitedError
from markread.errors.user_messages import format_error_for_cli

from .identity import resolve
from .models import AuthMethod, DeviceFlowStart, DeviceFlowStatus, Provider, TreeNode
from .services import RemoteServices, build_services

app = typer.Typer(help="Browse GitHub and Azure DevOps repositories without cloning")
console = Console()
error_console = Console(stderr=True)

T = TypeVar("T")

_PROVIDER_ALIASES = {
    "github": Provider.GITHUB,
    "gh": Provider.GITHUB,
    "azure": Provider.AZURE_DEVOPS,
    "azure-devops": Provider.AZURE_DEVOPS,
    "ado": Provider.AZURE_DEVOPS,
}


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config.json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """MarkRead remote repository tools."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    ctx.obj = {"config": config}


def _get_services(ctx: typer.Context) -> RemoteServices:
    """Build services from the configured settings file."""
    config_path = (ctx.obj or {}).get("config", DEFAULT_CONFIG_PATH)
    settings = bootstrap_settings(path=Path(config_path))
    return build_services(settings.remote)


def _run(ctx: typer.Context, action: Callable[[RemoteServices], Awaitable[T]]) -> T:
    """Run an async action against fresh services and map errors to exit code 1."""

    async def runner() -> T:
        services = _get_services(ctx)
        try:
            return await action(services)
        finally:
            await services.aclose()

    try:
        return asyncio.run(runner())
    except MarkReadError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)


def _parse_provider(value: str) -> Provider:
    provider = _PROVIDER_ALIASES.get(value.strip().lower())
    if provider is None:
        error_console.print(f"Error: Unknown provider '{value}'. Use github or azure-devops")
        raise typer.Exit(1)
    return provider


def _parse_auth(value: str) -> AuthMethod:
    try:
        return AuthMethod(value.strip().lower())
    except ValueError:
        error_console.print(f"Error: Invalid auth method '{value}'. Must be: oauth or pat")
        raise typer.Exit(1)


def _repository_id(target: str) -> str:
    """Accept either a repository URL or a ``host/path`` repository id."""
    if target.startswith(("https://", "http://")):
        try:
            return resolve(target).repository_id
        except MarkReadError as exc:
            error_console.print(format_error_for_cli(exc))
            raise typer.Exit(1)
    return target.strip().strip("/")


def _print_device_code(start: DeviceFlowStart) -> None:
    console.print("\n[bold cyan]Sign in to GitHub[/bold cyan]")
    console.print(f"1. Go to: [cyan]{start.verification_uri}[/cyan]")
    console.print(f"2. Enter code: [green bold]{start.user_code}[/green bold]")
    if not start.browser_opened:
        console.print("   (open the link above in your browser)", style="dim")
    console.print("\nWaiting for authorization...", style="dim")


def _add_nodes(branch: Tree, nodes: List[TreeNode]) -> None:
    for node in nodes:
        if node.is_directory:
            _add_nodes(branch.add(f"[bold blue]{node.name}/[/bold blue]"), node.children or [])
        else:
            branch.add(node.name)


# ---------------------------------------------------------------------------
# CLI Commands
# ---------------------------------------------------------------------------


@app.command("info")
def repository_info(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Repository URL"),
    auth: Optional[str] = typer.Option(None, "--auth", "-a", help="Stored credential to use: oauth or pat"),
    known_default: Optional[str] = typer.Option(
        None, "--known-default", help="Previously seen default branch, to detect changes"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List branches and the default branch without connecting."""
    auth_method = _parse_auth(auth) if auth else None
    info = _run(
        ctx,
        lambda services: services.connector.fetch_repository_info(
            url, auth_method, known_default_branch=known_default
        ),
    )

    if json_output:
        print(json.dumps(info.to_wire()))
        return

    table = Table(title=f"\nBranches of {info.repository_id}")
    table.add_column("Branch", style="green")
    table.add_column("Default", style="yellow")
    table.add_column("Head", style="dim")
    for branch in info.branches:
        table.add_row(branch.name, "✓" if branch.is_default else "", (branch.sha or "")[:12])
    console.print(table)
    if info.default_branch_changed:
        console.print(
            f"[yellow]Default branch changed from {known_default} to {info.default_branch}[/yellow]"
        )


@app.command("connect")
def connect_repository(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Repository URL"),
    auth: str = typer.Option("oauth", "--auth", "-a", help="Authentication method: oauth or pat"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch to open"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Personal access token (for pat auth)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Connect to a repository, signing in when needed."""
    auth_method = _parse_auth(auth)
    connected = _run(
        ctx,
        lambda services: services.connector.connect(
            url,
            auth_method,
            branch,
            token=token,
            on_device_flow=None if json_output else _print_device_code,
        ),
    )

    if json_output:
        print(json.dumps(connected.to_wire()))
        return

    console.print(f"\n[green]✓[/green] Connected to [bold]{connected.repository.display_name}[/bold]")
    console.print(f"  Repository id: {connected.repository_id}")
    console.print(f"  Branch: {connected.current_branch} (default: {connected.default_branch})")
    console.print(f"  Branches: {len(connected.branches)}")
    console.print(f"  Identity: {connected.identity}", style="dim")


@app.command("tree")
def show_tree(
    ctx: typer.Context,
    repository: str = typer.Argument(..., help="Repository URL or id"),
    branch: str = typer.Option(..., "--branch", "-b", help="Branch name"),
    all_files: bool = typer.Option(False, "--all", help="Include non-markdown files"),
    refresh: bool = typer.Option(False, "--refresh", help="Bypass the tree cache"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the file tree of a branch (markdown files only by default)."""
    repository_id = _repository_id(repository)
    result = _run(
        ctx,
        lambda services: services.connector.fetch_tree(
            repository_id, branch, not all_files, force_refresh=refresh
        ),
    )

    if json_output:
        print(json.dumps(result.to_wire()))
        return

    root = Tree(f"[bold]{repository_id}[/bold] @ {branch}")
    _add_nodes(root, result.nodes)
    console.print(root)
    console.print(f"\n{result.file_count} files ({result.markdown_file_count} markdown)", style="dim")
    if result.truncated:
        console.print("[yellow]The provider truncated this listing; some files are missing[/yellow]")


@app.command("cat")
def show_file(
    ctx: typer.Context,
    repository: str = typer.Argument(..., help="Repository URL or id"),
    path: str = typer.Argument(..., help="File path relative to the repository root"),
    branch: str = typer.Option(..., "--branch", "-b", help="Branch name"),
) -> None:
    """Print a file from a branch."""
    repository_id = _repository_id(repository)
    content = _run(ctx, lambda services: services.connector.fetch_file(repository_id, branch, path))
    print(content.content, end="" if content.content.endswith("\n") else "\n")


@app.command("login")
def login(
    ctx: typer.Context,
    provider: str = typer.Argument("github", help="Provider to sign in to"),
) -> None:
    """Sign in with the OAuth device flow."""
    selected = _parse_provider(provider)

    async def sign_in(services: RemoteServices):
        start = await services.authenticator.initiate(selected)
        _print_device_code(start)
        while True:
            try:
                return await services.authenticator.wait_for_completion(start.session_id)
            except (NetworkUnreachableError, RateLimitedError) as exc:
                # Session is still pending; report and keep waiting
                error_console.print(f"[yellow]Warning:[/yellow] {exc.user_message}")

    state = _run(ctx, sign_in)
    if state.status != DeviceFlowStatus.SUCCEEDED:
        error_console.print(f"Error: Sign-in {state.status.value}: {state.error or 'no token issued'}")
        raise typer.Exit(1)
    who = f" as [bold]{state.user_login}[/bold]" if state.user_login else ""
    console.print(f"\n[green]✓[/green] Signed in to {selected.value}{who}")


@app.command("pat")
def store_pat(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider: github or azure-devops"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Personal access token"),
    repository_url: Optional[str] = typer.Option(
        None, "--repo", "-r", help="Limit the token to one repository"
    ),
) -> None:
    """Validate and store a personal access token."""
    selected = _parse_provider(provider)
    if not token:
        token = Prompt.ask("Personal access token", password=True)

    account = _run(
        ctx,
        lambda services: services.connector.authenticate_with_pat(selected, token, repository_url),
    )
    console.print(f"[green]✓[/green] Token stored for {repository_url or selected.value} ({account})")


@app.command("logout")
def logout(
    ctx: typer.Context,
    provider: Optional[str] = typer.Argument(None, help="Provider to sign out of"),
    repository: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository URL or id"),
) -> None:
    """Delete stored credentials for a provider or one repository."""
    if provider is None and repository is None:
        error_console.print("Error: Give a provider or --repo")
        raise typer.Exit(1)
    selected = _parse_provider(provider) if provider else None
    repository_id = _repository_id(repository) if repository else None

    removed = _run(ctx, lambda services: services.connector.sign_out(selected, repository_id))
    if removed:
        console.print(f"[green]✓[/green] Removed {removed} stored credential(s)")
    else:
        console.print("No stored credentials matched", style="dim")


@app.command("check")
def check_connectivity(
    ctx: typer.Context,
    provider: Optional[str] = typer.Argument(None, help="Provider to check (default: all)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Check whether the providers are reachable."""
    selected = _parse_provider(provider) if provider else None
    report = _run(ctx, lambda services: services.monitor.check(selected))

    if json_output:
        print(json.dumps(report.to_wire()))
    else:
        table = Table(title="\nConnectivity")
        table.add_column("Provider", style="cyan")
        table.add_column("Status")
        table.add_column("Response", style="dim")
        for result in report.providers:
            status = "[green]reachable[/green]" if result.is_reachable else f"[red]unreachable[/red] {result.error or ''}"
            elapsed = f"{result.response_time_ms} ms" if result.response_time_ms is not None else "-"
            table.add_row(result.provider.value, status, elapsed)
        console.print(table)

    if not report.is_online:
        raise typer.Exit(1)


__all__ = ["app"]
