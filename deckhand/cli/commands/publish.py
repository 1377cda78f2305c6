"""``deckhand publish`` — build and push the api/proxy pair for a revision."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from deckhand.cli.wiring import build_orchestrator, console, current_settings, reported_errors
from deckhand.models.artifacts import Component


def publish_cmd(
    revision: str = typer.Option(..., "--revision", "-r", help="Source revision (commit SHA)."),
    api_src: Path = typer.Option(..., "--api-src", help="API service source tree."),
    proxy_src: Path = typer.Option(..., "--proxy-src", help="Proxy/front-end source tree."),
) -> None:
    """Publish both images of REVISION. Re-publishing an unchanged revision is a no-op."""
    settings = current_settings()
    with reported_errors():
        orchestrator = build_orchestrator(settings)
        result = orchestrator.publish(
            {Component.API: api_src, Component.PROXY: proxy_src}, revision
        )

    table = Table(title=f"Revision {result.pair.tag}", header_style="bold cyan")
    table.add_column("Component")
    table.add_column("Image")
    table.add_column("Digest", style="dim")
    for ref in result.pair.refs():
        table.add_row(ref.component.value, ref.image, ref.digest[:19])
    console.print(table)

    if result.latest_updated:
        console.print("[green]Published; latest now points at this revision.[/green]")
    else:
        console.print(
            "[yellow]Published, but the latest tag could not be moved.[/yellow] "
            "The revision tag is valid and deployable."
        )
