"""``deckhand rollback`` — re-activate the previous deployment."""

from __future__ import annotations

from pathlib import Path

import typer

from deckhand.cli.wiring import (
    build_orchestrator,
    console,
    current_settings,
    load_topology,
    reported_errors,
)
from deckhand.monitor.renderer import MonitorRenderer


def rollback_cmd(
    topology: Path = typer.Option(..., "--topology", "-t", help="JSON topology description."),
) -> None:
    """Roll the host back to the deployment the current one replaced."""
    settings = current_settings()
    with reported_errors():
        description = load_topology(topology)
        orchestrator = build_orchestrator(settings)
        state = orchestrator.rollback(description)

    console.print(f"[green]Rolled back to revision {state.revision}.[/green]")
    MonitorRenderer(console).print_deployment(state)
