"""Rich rendering for CLI commands."""

from typing import Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from stackflow.orchestrator.changeset import ChangeAction, ChangeSet
from stackflow.orchestrator.exports import ExportRegistry
from stackflow.orchestrator.orchestrator import DeploymentRunResult, TeardownResult
from stackflow.state.models import StackRecord
from stackflow.utils.errors import DeploymentError

console = Console()

_ACTION_STYLES = {
    ChangeAction.ADD: "green",
    ChangeAction.MODIFY: "yellow",
    ChangeAction.REPLACE: "magenta",
    ChangeAction.REMOVE: "red",
}

_STATUS_STYLES = {
    "Deployed": "green",
    "Failed": "red",
    "RollingBack": "magenta",
    "Pending": "dim",
}


def print_error(error: DeploymentError) -> None:
    """Print a deployment error with its suggestions."""
    console.print(error.to_user_message(), style="red", markup=False)


def print_changeset(changeset: ChangeSet) -> None:
    """Print a change set as a table."""
    if changeset.is_empty:
        console.print(f"[dim]No changes for {changeset.stack_id}[/dim]")
        return

    table = Table(title=f"Change set {changeset.id} ({changeset.stack_id})", show_header=True, header_style="bold")
    table.add_column("Action")
    table.add_column("Resource", style="cyan")
    table.add_column("Type")
    table.add_column("Changed properties")
    table.add_column("Risk")

    for item in changeset.items:
        style = _ACTION_STYLES.get(item.action, "white")
        table.add_row(
            f"[{style}]{item.action.value}[/{style}]",
            item.resource_id,
            item.resource_type,
            ", ".join(item.changed_properties),
            f"[red]{item.risk_reason}[/red]" if item.risky else "",
        )

    console.print(table)
    summary = changeset.get_summary()
    console.print(
        f"[bold]Summary:[/bold] {summary['Add']} to add, {summary['Modify']} to modify, "
        f"{summary['Replace']} to replace, {summary['Remove']} to remove"
    )
    if changeset.is_risky:
        console.print(f"[yellow]{len(changeset.risky_items())} risky change(s) require approval[/yellow]")


def print_deployment_result(result: DeploymentRunResult) -> None:
    """Print the per-stack outcome of a deploy run."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Wave", justify="right")
    table.add_column("Stack", style="cyan")
    table.add_column("State")
    table.add_column("Change set")
    table.add_column("Exports", justify="right")
    table.add_column("Duration", justify="right")

    for number, wave in enumerate(result.waves, 1):
        for name in wave:
            stack_result = result.stack_results.get(name)
            if stack_result is None:
                table.add_row(str(number), name, "[dim]skipped[/dim]", "", "", "")
                continue
            state = stack_result.state.value
            if stack_result.rolled_back:
                state += " (rolled back)"
            style = _STATUS_STYLES.get(stack_result.state.value, "white")
            changeset = stack_result.changeset
            table.add_row(
                str(number),
                name,
                f"[{style}]{state}[/{style}]",
                changeset.id if changeset and not changeset.is_empty else "[dim]no changes[/dim]",
                str(len(stack_result.exports)),
                f"{stack_result.duration:.1f}s",
            )

    console.print(table)
    if result.is_success():
        console.print(f"\n[green]✓ Deployment succeeded[/green] in {result.duration:.1f}s")
    else:
        console.print(f"\n[red]✗ Deployment failed[/red] (exit code {result.exit_code})")
        if result.error is not None:
            print_error(result.error)


def print_teardown_result(result: TeardownResult) -> None:
    if result.destroyed:
        console.print(f"[green]Destroyed:[/green] {', '.join(result.destroyed)}")
    if result.is_success():
        if not result.order:
            console.print("[dim]Nothing to tear down[/dim]")
        return
    remaining = [name for name in result.order if name not in result.destroyed]
    if remaining:
        console.print(f"[yellow]Not destroyed:[/yellow] {', '.join(remaining)}")
    if result.error is not None:
        print_error(result.error)


def print_status(project_name: str, records: List[StackRecord]) -> None:
    table = Table(title=f"Stacks - {project_name}", show_header=True, header_style="bold")
    table.add_column("Stack", style="cyan")
    table.add_column("Status")
    table.add_column("Launch version")
    table.add_column("Units", justify="right")
    table.add_column("Last change set")
    table.add_column("Updated")

    for record in records:
        style = _STATUS_STYLES.get(record.status, "yellow")
        status = f"[{style}]{record.status}[/{style}]"
        if record.last_error:
            status += f"\n[dim]{record.last_error.get('message', '')}[/dim]"
        table.add_row(
            record.name,
            status,
            record.launch_version or "-",
            str(len(record.units)) if record.units else "-",
            record.last_changeset_id or "-",
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S") if record.is_deployed else "-",
        )

    console.print(table)


def print_exports(registry: ExportRegistry) -> None:
    names = registry.names()
    if not names:
        console.print("[dim]No exports published[/dim]")
        return

    table = Table(title="Exports", show_header=True, header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Owner")
    table.add_column("Value")
    table.add_column("Revision", justify="right")
    table.add_column("Imported by")

    for name in names:
        export = registry.get(name)
        table.add_row(
            name,
            export.owner,
            str(export.value),
            str(export.revision),
            ", ".join(sorted(export.consumers)) or "[dim]-[/dim]",
        )

    console.print(table)


def print_graph(project_name: str, waves: List[List[str]], imports: Dict[str, List[str]]) -> None:
    """Print deployment waves with each stack's imports."""
    tree = Tree(f"[bold]{project_name}[/bold]")
    for number, wave in enumerate(waves, 1):
        branch = tree.add(f"Wave {number}")
        for name in wave:
            label = f"[cyan]{name}[/cyan]"
            if imports.get(name):
                label += f" [dim]imports {', '.join(imports[name])}[/dim]"
            branch.add(label)
    console.print(Panel(tree, title="Deployment order", border_style="cyan"))
