"""Contao Manager console CLI.

Manages the configured sites and runs update workflows against them.
Tokens are stored encrypted; TOKEN_MASTER_KEY must hold the 64-hex-char
master key (``contao-console keygen`` generates one).

Usage:
    contao-console sites add https://example.org/contao-manager.phar.php
    contao-console sites list
    contao-console update --dry-run
    contao-console history
"""

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console

from contao_console.cli.config import ConsoleConfig, load_config
from contao_console.cli.output import (
    format_history_table,
    format_migration_prompt,
    format_sites_table,
    format_workflow_steps,
)
from contao_console.errors import DomainError, NotFoundError
from contao_console.services.manager_client import ContaoManagerClient
from contao_console.services.manager_protocol import ManagerApiError
from contao_console.services.site_store import SiteCredentialStore, SiteRecord
from contao_console.services.token_cipher import (
    MASTER_KEY_ENV,
    TokenCipher,
    generate_master_key,
)
from contao_console.services.token_migration import migrate_tokens
from contao_console.services.workflow import (
    CHECK_TASKS,
    StepStatus,
    UpdateWorkflow,
    WorkflowConfig,
    WorkflowState,
)

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="contao-console",
    help="Manage remote Contao Manager installations",
    no_args_is_help=True,
)
sites_app = typer.Typer(help="Manage configured sites")
app.add_typer(sites_app, name="sites")

console = Console()

# --- Global state ---
_config: ConsoleConfig = ConsoleConfig()


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to contao-console.yaml config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Contao Manager console."""
    global _config
    try:
        _config = load_config(config_path=config)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (PydanticValidationError, ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    level = logging.DEBUG if verbose else getattr(logging, _config.logging.level.upper())
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _get_cipher() -> TokenCipher:
    try:
        return TokenCipher()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        console.print(f"Generate a key with [bold]contao-console keygen[/bold] and export {MASTER_KEY_ENV}.")
        raise typer.Exit(1)


def _get_store() -> SiteCredentialStore:
    return SiteCredentialStore(_get_cipher(), _config.storage.config_path())


def _resolve_site(store: SiteCredentialStore, url: str | None) -> SiteRecord:
    if url:
        try:
            return store.require_site(url)
        except NotFoundError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
    site = store.get_active_site()
    if site is None:
        console.print("[yellow]No active site.[/yellow] Add one with [bold]contao-console sites add[/bold].")
        raise typer.Exit(1)
    return site


# --- Key management ---


@app.command()
def keygen():
    """Print a new random master key for TOKEN_MASTER_KEY."""
    console.print(generate_master_key(), soft_wrap=True)


@app.command("migrate-tokens")
def migrate_tokens_cmd(
    config_file: Optional[Path] = typer.Option(
        None, "--config-file", help="Config document to migrate (defaults to the configured one)"
    ),
):
    """Encrypt plaintext tokens stored in the config document."""
    path = config_file or _config.storage.config_path()
    cipher = _get_cipher()
    try:
        summary = migrate_tokens(path, cipher)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"[red]Migration failed, backup restored:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"Backup: {summary.backup_path}")
    console.print(f"  encrypted:         [green]{len(summary.encrypted)}[/green]")
    console.print(f"  already encrypted: {len(summary.already_encrypted)}")
    console.print(f"  without token:     {len(summary.skipped)}")
    for error in summary.errors:
        console.print(f"  [red]error:[/red] {error}")
    if summary.errors:
        raise typer.Exit(1)


# --- Site commands ---


@sites_app.command("list")
def sites_list():
    """List configured sites; the active one is marked with *."""
    doc = _get_store().load()
    console.print(format_sites_table(doc.sites, doc.active_site))


@sites_app.command("add")
def sites_add(
    url: str = typer.Argument(help="Contao Manager URL"),
    token: Optional[str] = typer.Option(None, "--token", help="API token (prompted if omitted)"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name (defaults to the hostname)"),
    scope: Optional[str] = typer.Option(None, "--scope", help="read, update, install or admin"),
):
    """Add a site, or replace the token of an existing one."""
    if not token:
        token = typer.prompt("API token", hide_input=True)
    store = _get_store()
    try:
        saved = store.add_or_update_site(url, token=token, name=name, scope=scope)
    except DomainError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    if not saved:
        console.print(f"[red]Could not save {store.path}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Saved[/green] {url}")


@sites_app.command("use")
def sites_use(url: str = typer.Argument(help="Site URL")):
    """Make a site the active one."""
    if not _get_store().set_active_site(url):
        console.print(f"[red]Unknown site or write failed:[/red] {url}")
        raise typer.Exit(1)
    console.print(f"Active site: {url}")


@sites_app.command("remove")
def sites_remove(
    url: str = typer.Argument(help="Site URL"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Remove a site and its stored token."""
    if not yes and not typer.confirm(f"Remove {url}?"):
        raise typer.Exit(0)
    if not _get_store().remove_site(url):
        console.print(f"[red]Unknown site or write failed:[/red] {url}")
        raise typer.Exit(1)
    console.print(f"Removed {url}")


@sites_app.command("rename")
def sites_rename(
    url: str = typer.Argument(help="Site URL"),
    name: str = typer.Argument(help="New display name"),
):
    """Change the display name of a site."""
    if not _get_store().update_site_name(url, name):
        console.print(f"[red]Unknown site or write failed:[/red] {url}")
        raise typer.Exit(1)
    console.print(f"Renamed {url} to {name}")


# --- Workflow commands ---


def _print_step_changes() -> Callable[[WorkflowState], None]:
    """Build an on_change listener that prints every step status change."""
    seen: dict[str, StepStatus] = {}

    def _listener(state: WorkflowState) -> None:
        for step in state.steps:
            if seen.get(step.id) == step.status:
                continue
            seen[step.id] = step.status
            if step.status == StepStatus.pending:
                continue
            suffix = f": {step.error}" if step.error else ""
            console.print(f"  {step.title} [dim]→[/dim] {step.status.value}{suffix}")

    return _listener


async def _confirm(prompt: str) -> bool:
    """Ask on the console without blocking the event loop."""
    return await asyncio.to_thread(typer.confirm, prompt, default=False)


async def _drive_workflow(workflow: UpdateWorkflow, assume_yes: bool) -> None:
    """Run the workflow to its end, answering its prompts on the console."""
    workflow.start()
    cleared_tasks = False
    while True:
        await workflow.wait_until_idle()
        if workflow.has_pending_migrations:
            console.print(format_migration_prompt(workflow.pending_migration))
            if assume_yes or await _confirm("Execute these migrations?"):
                workflow.confirm_migrations()
            else:
                workflow.skip_migrations()
            continue
        step = workflow.state.current
        blocked_by_task = (
            not cleared_tasks
            and step is not None
            and step.id == CHECK_TASKS
            and step.status == StepStatus.error
            and step.data
        )
        if blocked_by_task and (
            assume_yes or await _confirm("Delete the pending remote task and continue?")
        ):
            cleared_tasks = True
            await workflow.clear_pending_tasks()
            continue
        return


async def _run_update(
    store: SiteCredentialStore,
    site: SiteRecord,
    workflow_config: WorkflowConfig,
    assume_yes: bool,
) -> bool:
    entry = store.add_history_entry(site.url, "update")
    if entry is None:
        _log.warning("Could not record history for %s", site.url)

    status = "error"
    workflow: UpdateWorkflow | None = None
    try:
        async with ContaoManagerClient(site, store, timeout=_config.http.timeout_seconds) as api:
            workflow = UpdateWorkflow(
                api,
                poll_interval=_config.polling.interval_seconds,
                poll_timeout=_config.polling.timeout_seconds,
                on_change=_print_step_changes(),
            )
            workflow.initialize(workflow_config)
            try:
                await _drive_workflow(workflow, assume_yes)
                status = "finished" if workflow.is_complete else "error"
            except asyncio.CancelledError:
                workflow.stop()
                status = "cancelled"
                raise
            finally:
                await workflow.close()
    finally:
        steps = workflow.state.to_history_steps() if workflow is not None else []
        if entry is not None:
            store.update_history_entry(site.url, entry.id, status=status, steps=steps)
        if workflow is not None:
            console.print(format_workflow_steps(workflow.state))
    return status == "finished"


@app.command()
def update(
    site_url: Optional[str] = typer.Option(None, "--site", help="Site URL (defaults to the active site)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run a composer dry run before updating"),
    with_deletes: bool = typer.Option(False, "--with-deletes", help="Allow migrations that drop data"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm prompts automatically"),
):
    """Run the update workflow against a site."""
    store = _get_store()
    site = _resolve_site(store, site_url)
    console.print(f"Updating [bold]{site.name}[/bold] ({site.url})")
    workflow_config = WorkflowConfig(perform_dry_run=dry_run, with_deletes=with_deletes)
    try:
        ok = asyncio.run(_run_update(store, site, workflow_config, yes))
    except (DomainError, ManagerApiError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Update interrupted.[/yellow]")
        raise typer.Exit(130)
    if not ok:
        raise typer.Exit(1)
    console.print("[green]Update complete.[/green]")


@app.command()
def history(
    url: Optional[str] = typer.Argument(None, help="Site URL (defaults to the active site)"),
):
    """Show the recorded workflow runs of a site."""
    store = _get_store()
    site = _resolve_site(store, url)
    console.print(format_history_table(site.url, store.get_history(site.url)))
