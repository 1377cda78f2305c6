"""``deckhand status`` — recent runs, one run in detail, or the live deployment."""

from __future__ import annotations

from pathlib import Path

import typer

from deckhand.cli.wiring import console, current_settings, load_topology, reported_errors
from deckhand.core.run_ledger import RunLedger
from deckhand.core.state_store import DeploymentStateStore
from deckhand.monitor.projection import MonitorProjection
from deckhand.monitor.renderer import MonitorRenderer


def status_cmd(
    run_id: str = typer.Option(None, "--run", help="Show one run in detail."),
    topology: Path = typer.Option(
        None, "--topology", "-t", help="Also show what is live on this topology's host."
    ),
    limit: int = typer.Option(5, "--limit", "-n", help="Number of recent runs to list."),
) -> None:
    """Show pipeline runs from the ledger and the current deployment."""
    settings = current_settings()
    renderer = MonitorRenderer(console)

    with reported_errors():
        ledger = RunLedger(settings.ledger_path)
        projection = MonitorProjection(ledger)

        if run_id:
            snapshot = projection.snapshot(run_id)
            if not any(s.entered_at for s in snapshot.stages):
                console.print(f"[yellow]No ledger entries for run {run_id}.[/yellow]")
                raise typer.Exit(code=1)
            renderer.print_snapshot(snapshot)
            renderer.print_chain_verification(run_id, snapshot.chain_valid)
        else:
            snapshots = projection.recent(limit)
            if snapshots:
                console.print(renderer.render_runs(snapshots))
            else:
                console.print("[dim]No runs recorded yet.[/dim]")

        if topology is not None:
            description = load_topology(topology)
            store = DeploymentStateStore(settings.state_path)
            renderer.print_deployment(
                store.current(description.host_identifier), description.host_identifier
            )
