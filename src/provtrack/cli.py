"""provtrack CLI - serve the MCP tools and inspect sessions and lineage."""

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from provtrack import __version__, config
from provtrack.errors import IntegrityViolation
from provtrack.log import configure_logging

app = typer.Typer(
    name="provtrack",
    help="Capture session events and trace their provenance.",
    no_args_is_help=True,
)
sessions_app = typer.Typer(help="Inspect tracked sessions.")
lineage_app = typer.Typer(help="Query the provenance graph.")
mcp_app = typer.Typer(help="MCP server management.")

app.add_typer(sessions_app, name="sessions")
app.add_typer(lineage_app, name="lineage")
app.add_typer(mcp_app, name="mcp")

console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"provtrack {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
) -> None:
    """provtrack - session event capture and provenance lineage."""
    configure_logging(config.LOG_LEVEL, config.LOG_JSON)


def _open_runtime():
    from provtrack.runtime import Runtime

    runtime = Runtime()
    runtime.load()
    return runtime


# ── Session commands ─────────────────────────────────────────────


@sessions_app.command("list")
def sessions_list(
    all_sessions: Annotated[
        bool, typer.Option("--all", "-a", help="Include ended and expired sessions")
    ] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows")] = 20,
) -> None:
    """List recent sessions."""
    runtime = _open_runtime()
    try:
        sessions = runtime.sessions.list_sessions(limit=limit)
        if not all_sessions:
            sessions = [s for s in sessions if not runtime.sessions.is_expired(s)]
        if not sessions:
            console.print("[dim]No sessions found.[/dim]")
            return

        table = Table(title="Sessions")
        table.add_column("ID", style="cyan")
        table.add_column("Owner", style="green")
        table.add_column("Started")
        table.add_column("Status")
        table.add_column("Events", justify="right")
        table.add_column("Task")

        for s in sessions:
            status = "ended" if s.end_time else ("expired" if runtime.sessions.is_expired(s) else "active")
            table.add_row(
                s.id,
                s.owner_id,
                s.start_time.strftime("%Y-%m-%d %H:%M"),
                status,
                str(s.metrics.events_count),
                s.task_description or "",
            )
        console.print(table)
    finally:
        runtime.close()


@sessions_app.command("show")
def sessions_show(
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Show one session with its decisions and files."""
    runtime = _open_runtime()
    try:
        session = runtime.sessions.get_session(session_id)
        if not session:
            console.print(f"[red]Session not found:[/red] {session_id}")
            raise typer.Exit(1)

        console.print(f"[bold]{session.id}[/bold] ({session.environment})")
        console.print(f"  Owner: {session.owner_id}  Organization: {session.organization_id}")
        console.print(f"  Intent: {session.current_intent or '-'}")
        m = session.metrics
        console.print(
            f"  Events: {m.events_count}  Decisions: {m.decisions_count}  "
            f"Files: {m.files_modified}  +{m.lines_added}/-{m.lines_removed}"
        )
        for d in session.decisions:
            console.print(f"  [cyan]{d.id}[/cyan] {d.decision} [dim]({d.confidence:.2f})[/dim]")
        for path in session.files_in_scope:
            console.print(f"  [green]•[/green] {path}")
    finally:
        runtime.close()


# ── Lineage commands ─────────────────────────────────────────────


@lineage_app.command("tree")
def lineage_tree(
    event_id: Annotated[str, typer.Argument(help="Event ID")],
    direction: Annotated[
        str, typer.Option("--direction", "-d", help="ancestors, descendants or both")
    ] = "both",
    depth: Annotated[int, typer.Option("--depth", help="Maximum hops")] = config.DEFAULT_TREE_DEPTH,
) -> None:
    """Show the ancestors and descendants of an event."""
    runtime = _open_runtime()
    try:
        tree = runtime.lineage.get_lineage_tree(event_id, direction, depth)  # type: ignore[arg-type]
    finally:
        runtime.close()

    root = Tree(f"[bold]{event_id}[/bold]")
    if tree.ancestors:
        branch = root.add("[cyan]ancestors[/cyan]")
        for node in tree.ancestors:
            branch.add(f"{node.event_id} [dim]depth {node.depth}[/dim]")
    if tree.descendants:
        branch = root.add("[green]descendants[/green]")
        for node in tree.descendants:
            branch.add(f"{node.event_id} [dim]depth {node.depth}[/dim]")
    console.print(root)
    console.print(f"[dim]{len(tree.paths)} materialized path(s)[/dim]")


@lineage_app.command("impact")
def lineage_impact(
    event_id: Annotated[str, typer.Argument(help="Event ID")],
) -> None:
    """Show how far an event's effects reach downstream."""
    runtime = _open_runtime()
    try:
        impact = runtime.lineage.calculate_impact_radius(event_id)
    finally:
        runtime.close()

    table = Table(title=f"Impact of {event_id}")
    table.add_column("Measure", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Direct", str(impact.direct_impact))
    table.add_row("Indirect", str(impact.indirect_impact))
    table.add_row("Total reach", str(impact.total_reach))
    console.print(table)
    for path in impact.critical_paths:
        console.print(f"  [green]critical[/green] {path}")


@lineage_app.command("verify")
def lineage_verify(
    strict: Annotated[
        bool, typer.Option("--strict", help="Exit non-zero when issues are found")
    ] = False,
) -> None:
    """Audit the graph for orphaned parents and circular dependencies."""
    runtime = _open_runtime()
    try:
        report = runtime.lineage.verify_integrity(strict=strict)
    except IntegrityViolation as e:
        for issue in e.issues:
            console.print(f"  [red]✗[/red] {issue.type} {issue.event_id}: {issue.description}")
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        runtime.close()

    if report.valid:
        console.print("[green]✓[/green] Lineage graph is consistent")
        return
    for issue in report.issues:
        console.print(f"  [yellow]![/yellow] {issue.type} {issue.event_id}: {issue.description}")


# ── MCP commands ─────────────────────────────────────────────────


@mcp_app.command("serve")
def mcp_serve() -> None:
    """Start the MCP server (stdio transport)."""
    from provtrack.mcp.server import mcp

    mcp.run()


@mcp_app.command("init")
def mcp_init(
    project_path: Annotated[
        Path, typer.Option("--path", "-p", help="Project path")
    ] = Path("."),
    organization_id: Annotated[
        Optional[str], typer.Option("--org", help="Organization ID for captured sessions")
    ] = None,
) -> None:
    """Register the MCP server in the project's .mcp.json."""
    from provtrack.mcp.installer import PROJECT_CONFIG, install_mcp_project

    project_path = project_path.resolve()
    if install_mcp_project(project_path, organization_id=organization_id):
        console.print(f"  [green]✓[/green] {project_path / PROJECT_CONFIG}")
        console.print("\n[dim]Restart your AI agent to pick up the new MCP server.[/dim]")
    else:
        console.print(f"[red]Failed to write MCP config:[/red] {project_path / PROJECT_CONFIG}")
        raise typer.Exit(1)


@mcp_app.command("remove")
def mcp_remove(
    project_path: Annotated[
        Path, typer.Option("--path", "-p", help="Project path")
    ] = Path("."),
) -> None:
    """Remove the MCP server from the project's .mcp.json."""
    from provtrack.mcp.installer import PROJECT_CONFIG, remove_mcp_project

    project_path = project_path.resolve()
    if not remove_mcp_project(project_path):
        console.print(f"[red]Could not parse:[/red] {project_path / PROJECT_CONFIG}")
        raise typer.Exit(1)
    console.print(f"  [green]✓[/green] removed from {project_path / PROJECT_CONFIG}")
