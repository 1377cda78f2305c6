"""``deckhand run`` — the full pipeline for one or more revisions.

Several ``--revision`` options simulate triggers arriving back to back.
They are serialized through a RunQueue; ``DECKHAND_TRIGGER_POLICY``
decides whether every one runs (``queue``) or only the newest pending
one does (``supersede``).
"""

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
)
from deckhand.core.orchestrator import PipelineRequest, make_run_id
from deckhand.core.run_queue import RunQueue
from deckhand.models.artifacts import Component
from deckhand.models.deployment import Trigger
from deckhand.monitor.projection import MonitorProjection
from deckhand.monitor.renderer import MonitorRenderer


def run_cmd(
    topology: Path = typer.Option(..., "--topology", "-t", help="JSON topology description."),
    revision: list[str] = typer.Option(..., "--revision", "-r", help="Source revision (repeatable)."),
    api_src: Path = typer.Option(..., "--api-src", help="API service source tree."),
    proxy_src: Path = typer.Option(..., "--proxy-src", help="Proxy/front-end source tree."),
    runtime: Path = typer.Option(
        None, "--runtime", help="Runtime configuration: JSON document or KEY=VALUE file."
    ),
    set_: list[str] = typer.Option(None, "--set", help="Runtime value KEY=VALUE (repeatable)."),
    route: list[str] = typer.Option(None, "--route", help="Proxy route PREFIX=TARGET (repeatable)."),
) -> None:
    """Provision, publish and activate each revision, one run at a time."""
    settings = current_settings()
    with reported_errors():
        description = load_topology(topology)
        env = load_runtime_env(runtime, set_)
        routes = load_routes(route)
        orchestrator = build_orchestrator(settings)
        queue = RunQueue(settings.trigger_policy)

    for rev in revision:
        queue.submit(rev)
    for dropped in queue.superseded:
        console.print(f"[dim]Revision {dropped.revision} superseded by a newer trigger.[/dim]")

    def _run(trigger: Trigger):
        request = PipelineRequest(
            topology=description,
            sources={Component.API: api_src, Component.PROXY: proxy_src},
            revision=trigger.revision,
            runtime_env=env,
            routes=routes,
        )
        return orchestrator.run(request, run_id=make_run_id())

    projection = MonitorProjection(orchestrator.ledger)
    renderer = MonitorRenderer(console)
    failed = False
    for outcome in queue.drain(_run):
        if outcome.succeeded:
            renderer.print_snapshot(projection.snapshot(outcome.result.run_id))
            renderer.print_deployment(outcome.result.deployment)
        else:
            failed = True
            renderer.print_snapshot(projection.snapshot(orchestrator.run_id))
            console.print(
                f"[bold red]Run for {outcome.trigger.revision} failed:[/bold red] "
                f"{outcome.error}"
            )

    if failed:
        console.print("[yellow]The previously activated deployment is still serving.[/yellow]")
        raise typer.Exit(code=1)
