"""``deckhand provision`` — create or converge the single host."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from deckhand.cli.wiring import (
    build_orchestrator,
    console,
    current_settings,
    load_topology,
    reported_errors,
)


def provision_cmd(
    topology: Path = typer.Argument(..., help="JSON topology description."),
    teardown: bool = typer.Option(
        False, "--teardown", help="Destroy the host instead of provisioning it."
    ),
) -> None:
    """Provision the host described by TOPOLOGY. Safe to re-run."""
    settings = current_settings()
    with reported_errors():
        description = load_topology(topology)
        orchestrator = build_orchestrator(settings)
        if teardown:
            removed = orchestrator.provisioner.teardown(description)
            if removed:
                console.print(f"[green]Destroyed[/green] {description.host_identifier}")
            else:
                console.print(f"[dim]{description.host_identifier} does not exist.[/dim]")
            return
        result = orchestrator.provision(description)

    host = result.host
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Host", host.identifier)
    table.add_row("Instance", f"{host.instance_id} (generation {host.generation})")
    table.add_row("Address", host.address)
    table.add_row("Login", host.ssh_username)
    table.add_row("Ingress", ", ".join(f"{r.port}/{r.protocol} from {r.cidr}" for r in host.ingress_rules))
    console.print(table)

    if not result.changed:
        console.print("[dim]Host already matches the description; nothing changed.[/dim]")
    elif result.address_changed:
        console.print(
            f"[yellow]Address changed from {result.previous_address} to {host.address}.[/yellow] "
            "Update anything that refers to the old address."
        )
    else:
        console.print("[green]Host provisioned.[/green]")
    console.print(f"[dim]Run: {orchestrator.run_id}[/dim]")
