"""CLI output formatters for Rich tables.

All formatting goes through these functions so the CLI commands stay
clean. Each formatter returns the rendered string.
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from contao_console.services.site_store import HistoryEntry, SiteRecord
from contao_console.services.workflow import WorkflowState
from contao_console.utils.redaction import mask_token

console = Console()

STATUS_COLORS = {
    "pending": "dim",
    "active": "blue",
    "complete": "green",
    "error": "red",
    "skipped": "yellow",
    "started": "blue",
    "finished": "green",
    "cancelled": "dim",
}


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _render(renderable) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def format_sites_table(sites: dict[str, SiteRecord], active_site: str | None) -> str:
    """Format the configured sites, marking the active one.

    Args:
        sites: Sites keyed by URL.
        active_site: URL of the active site, if any.

    Returns:
        Formatted string output.
    """
    if not sites:
        return "No sites configured."

    table = Table(title="Sites", show_lines=True)
    table.add_column("", no_wrap=True)
    table.add_column("Name", style="cyan")
    table.add_column("URL")
    table.add_column("Auth")
    table.add_column("Scope")
    table.add_column("Token")
    table.add_column("Manager")
    table.add_column("Contao")
    table.add_column("PHP")

    for url, site in sites.items():
        versions = site.version_info
        table.add_row(
            "[green]*[/green]" if url == active_site else "",
            site.name,
            url,
            site.auth_method,
            site.scope or "-",
            mask_token(site.token) if site.token else "-",
            (versions.contao_manager_version if versions else None) or "-",
            (versions.contao_version if versions else None) or "-",
            (versions.php_version if versions else None) or "-",
        )
    return _render(table)


def format_workflow_steps(state: WorkflowState) -> str:
    """Format the steps of a workflow run with their status."""
    table = Table(title="Update workflow", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Details")

    for index, step in enumerate(state.steps):
        marker = "→ " if index == state.current_step and state.is_running else ""
        table.add_row(
            str(index + 1),
            f"{marker}{step.title}",
            _colored(step.status.value),
            step.error or step.description,
        )
    return _render(table)


def format_migration_prompt(migration: dict) -> str:
    """Format the pending database migrations found by the dry run."""
    lines = ["[bold]Pending database migrations[/bold]", ""]
    operations = migration.get("operations") or []
    for operation in operations:
        if isinstance(operation, dict):
            lines.append(f"  - {operation.get('name') or operation.get('summary') or operation}")
        else:
            lines.append(f"  - {operation}")
    if not operations:
        lines.append(f"  hash: {migration.get('hash')}")
    return _render(Panel("\n".join(lines), border_style="yellow"))


def format_history_table(url: str, entries: list[HistoryEntry]) -> str:
    """Format the recorded workflow runs of one site, newest first."""
    if not entries:
        return f"No history recorded for {url}."

    table = Table(title=f"History: {url}", show_lines=True)
    table.add_column("Started", no_wrap=True)
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Finished", no_wrap=True)
    table.add_column("Steps")

    for entry in entries:
        steps = ", ".join(f"{s.id} ({s.status})" for s in entry.steps) or "-"
        table.add_row(
            entry.start_time[:19],
            entry.workflow_type,
            _colored(entry.status),
            entry.end_time[:19] if entry.end_time else "-",
            steps,
        )
    return _render(table)
