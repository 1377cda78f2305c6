"""Rich terminal renderer for pipeline runs and the live deployment.

Color scheme
------------
- green     : PASSED
- red       : FAILED
- yellow    : RUNNING
- dim       : NOT_STARTED
- bold red  : BLOCKED
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from deckhand.models.deployment import DeploymentState
from deckhand.models.stages import StageState
from deckhand.monitor.projection import MonitorSnapshot

_STATE_STYLES: dict[StageState, str] = {
    StageState.PASSED: "bold green",
    StageState.FAILED: "bold red",
    StageState.RUNNING: "bold yellow",
    StageState.NOT_STARTED: "dim",
    StageState.BLOCKED: "bold red",
}

_STATE_LABELS: dict[StageState, str] = {
    StageState.PASSED: "[green]PASSED[/green]",
    StageState.FAILED: "[bold red]FAILED[/bold red]",
    StageState.RUNNING: "[yellow]RUNNING[/yellow]",
    StageState.NOT_STARTED: "[dim]NOT STARTED[/dim]",
    StageState.BLOCKED: "[bold red]BLOCKED[/bold red]",
}


class MonitorRenderer:
    """Renders snapshots and deployment state as Rich output.

    Parameters
    ----------
    console:
        Rich Console instance. A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render_snapshot(self, snapshot: MonitorSnapshot) -> Panel:
        """Render a run as a Panel holding its stage table and a summary line."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=3, justify="right")
        table.add_column("Stage", min_width=18)
        table.add_column("State", min_width=12, justify="center")
        table.add_column("Details", min_width=20)
        table.add_column("Artifacts", justify="right", width=9)

        for i, stage in enumerate(snapshot.stages):
            style = _STATE_STYLES.get(stage.state, "")
            details: list[str] = []
            if stage.detail:
                color = "red" if stage.state in (StageState.FAILED, StageState.BLOCKED) else "dim"
                details.append(f"[{color}]{escape(stage.detail)}[/{color}]")
            if stage.entered_at:
                details.append(f"[dim]{stage.entered_at.strftime('%H:%M:%S')}[/dim]")
            table.add_row(
                str(i),
                f"[{style}]{stage.display_name}[/{style}]",
                _STATE_LABELS.get(stage.state, stage.state.value),
                " | ".join(details) if details else "[dim]-[/dim]",
                str(len(stage.artifact_refs)),
            )

        chain = "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        summary = "  |  ".join(
            [
                f"[bold]Run:[/bold] {snapshot.run_id}",
                f"[bold]Revision:[/bold] {snapshot.revision or '-'}",
                f"[bold]Progress:[/bold] {snapshot.completed_count}/{snapshot.total_stages}",
                f"[bold]Chain:[/bold] {chain}",
            ]
        )
        return Panel(
            Group(table, Text(""), Text.from_markup(summary)),
            title="[bold]Deckhand Run[/bold]",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def render_deployment(self, state: DeploymentState | None, host_identifier: str = "") -> Panel:
        """Render what is live on a host."""
        if state is None:
            return Panel(
                f"[dim]Nothing has been activated on {host_identifier or 'this host'}.[/dim]",
                title="[bold]Deployment[/bold]",
                border_style="dim",
            )

        table = Table(show_header=False, box=None, pad_edge=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Host", f"{state.host_identifier} ({state.host_address})")
        table.add_row("Version", f"v{state.version}" + (
            f" [dim](replaced v{state.previous_version})[/dim]" if state.previous_version else ""
        ))
        table.add_row("Revision", state.revision)
        for ref in state.artifacts.refs():
            table.add_row(ref.component.value.upper(), f"{ref.image} [dim]{ref.digest[:19]}[/dim]")
        table.add_row("Allowed hosts", ", ".join(state.runtime.allowed_hosts))
        table.add_row("Debug", "[red]on[/red]" if state.runtime.debug else "off")
        for entry in state.routes.entries:
            target = "static fallback" if entry.is_fallback else str(entry.upstream)
            table.add_row("Route", f"{entry.prefix} -> {target}")
        table.add_row("Activated", state.activated_at.strftime("%Y-%m-%d %H:%M:%S UTC"))

        return Panel(table, title="[bold]Deployment[/bold]", border_style="green")

    def render_runs(self, snapshots: list[MonitorSnapshot]) -> Table:
        """One row per run, newest first."""
        table = Table(title="Recent runs", header_style="bold cyan")
        table.add_column("Run")
        table.add_column("Revision")
        table.add_column("Stages")
        table.add_column("Chain", justify="center")
        for snap in snapshots:
            states = " ".join(
                _STATE_LABELS.get(s.state, s.state.value)
                for s in snap.stages
                if s.state != StageState.NOT_STARTED
            )
            table.add_row(
                snap.run_id,
                snap.revision or "-",
                states or "[dim]-[/dim]",
                "[green]ok[/green]" if snap.chain_valid else "[bold red]BROKEN[/bold red]",
            )
        return table

    def print_snapshot(self, snapshot: MonitorSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def print_deployment(self, state: DeploymentState | None, host_identifier: str = "") -> None:
        self.console.print(self.render_deployment(state, host_identifier))

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")
