"""Main Typer application — imports and registers all CLI commands.

Entry point: ``deckhand`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from deckhand.cli.commands.activate import activate_cmd
from deckhand.cli.commands.provision import provision_cmd
from deckhand.cli.commands.publish import publish_cmd
from deckhand.cli.commands.render_proxy import render_proxy_cmd
from deckhand.cli.commands.rollback import rollback_cmd
from deckhand.cli.commands.run import run_cmd
from deckhand.cli.commands.status import status_cmd
from deckhand.cli.wiring import configure_logging, current_settings

app = typer.Typer(
    name="deckhand",
    help="Deckhand: provision, publish and activate a two-tier web demo.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

app.command(name="provision", help="Provision (or tear down) the host.")(provision_cmd)
app.command(name="publish", help="Build and push the artifact pair of a revision.")(publish_cmd)
app.command(name="activate", help="Activate a published revision on the host.")(activate_cmd)
app.command(name="run", help="Run the full pipeline for one or more revisions.")(run_cmd)
app.command(name="rollback", help="Re-activate the previous deployment.")(rollback_cmd)
app.command(name="status", help="Show runs and the live deployment.")(status_cmd)
app.command(name="render-proxy", help="Render the proxy configuration.")(render_proxy_cmd)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Configure logging before any command runs."""
    configure_logging("DEBUG" if verbose else current_settings().log_level)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
