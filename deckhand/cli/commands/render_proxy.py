"""``deckhand render-proxy`` — print the proxy configuration for a runtime config."""

from __future__ import annotations

from pathlib import Path

import typer

from deckhand.activate.resolver import resolve_runtime_configuration
from deckhand.activate.routing import render_nginx_conf, validate_route_table
from deckhand.cli.wiring import (
    console,
    current_settings,
    load_routes,
    load_runtime_env,
    reported_errors,
    route_table,
)
from deckhand.models.runtime import RouteTable


def render_proxy_cmd(
    runtime: Path = typer.Option(
        None, "--runtime", help="Runtime configuration: JSON document or KEY=VALUE file."
    ),
    set_: list[str] = typer.Option(None, "--set", help="Runtime value KEY=VALUE (repeatable)."),
    route: list[str] = typer.Option(None, "--route", help="Proxy route PREFIX=TARGET (repeatable)."),
    output: Path = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout."),
) -> None:
    """Validate the route table and render the proxy's nginx server block."""
    settings = current_settings()
    with reported_errors():
        env = load_runtime_env(runtime, set_)
        config = resolve_runtime_configuration(env, settings.allowed_hosts_policy).config
        routes = route_table(load_routes(route)) or RouteTable.from_runtime(config)
        validate_route_table(routes, settings.required_api_prefixes)

    conf = render_nginx_conf(routes)
    if output is not None:
        output.write_text(conf, encoding="utf-8")
        console.print(f"[green]Wrote[/green] {output}")
    else:
        typer.echo(conf, nl=False)
