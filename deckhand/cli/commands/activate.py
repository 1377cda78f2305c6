"""``deckhand activate`` — run a published revision on the provisioned host."""

from __future__ import annotations

from pathlib import Path

import typer

from deckhand.cli.wiring import (
    build_orchestrator,
    console,
    current_settings,
    load_routes,
    load_runtime_env,
    load_topology,
    reported_errors,
    route_table,
)
from deckhand.monitor.renderer import MonitorRenderer


def activate_cmd(
    revision: str = typer.Option(..., "--revision", "-r", help="Published revision to activate."),
    topology: Path = typer.Option(..., "--topology", "-t", help="JSON topology description."),
    runtime: Path = typer.Option(
        None, "--runtime", help="Runtime configuration: JSON document or KEY=VALUE file."
    ),
    set_: list[str] = typer.Option(
        None, "--set", help="Runtime value KEY=VALUE (repeatable), e.g. ALLOWED_HOSTS=example.com."
    ),
    route: list[str] = typer.Option(
        None, "--route", help="Proxy route PREFIX=TARGET (repeatable), e.g. /api/=api:8000."
    ),
) -> None:
    """Activate REVISION with configuration supplied now, never from the image."""
    settings = current_settings()
    with reported_errors():
        description = load_topology(topology)
        env = load_runtime_env(runtime, set_)
        routes = route_table(load_routes(route))
        orchestrator = build_orchestrator(settings)
        state = orchestrator.activate(description, revision, env, routes)

    MonitorRenderer(console).print_deployment(state)
    console.print(f"[dim]Run: {orchestrator.run_id}[/dim]")
