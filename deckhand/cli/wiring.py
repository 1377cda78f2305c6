"""Builds the pipeline from settings and loads operator input files.

Shared by every CLI command so each one is independently runnable.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from deckhand.activate.activator import Activator
from deckhand.activate.compose import ComposeEngine
from deckhand.activate.engines import ContainerEngine, LocalEngine
from deckhand.activate.resolver import environment_from_document
from deckhand.config import DeckhandSettings
from deckhand.core.orchestrator import Orchestrator
from deckhand.core.production_guard import ProductionConfigError, enforce_production_constraints
from deckhand.core.run_ledger import LedgerIntegrityError, RunLedger
from deckhand.core.state_store import DeploymentStateStore
from deckhand.errors import DeckhandError
from deckhand.models.host import TopologyDescription
from deckhand.models.runtime import RouteTable
from deckhand.provision.backends import LocalProvider, TerraformProvider
from deckhand.provision.provisioner import Provisioner
from deckhand.publish.builders import DirectoryBuilder
from deckhand.publish.docker import DockerBuilder, DockerRegistry
from deckhand.publish.publisher import ImagePublisher
from deckhand.publish.registry import LocalRegistry

console = Console()


def current_settings() -> DeckhandSettings:
    """Settings re-read from the environment on every command."""
    return DeckhandSettings()


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=Console(stderr=True), show_path=False))


# ---------------------------------------------------------------------------
# Pipeline construction
# ---------------------------------------------------------------------------


def build_orchestrator(settings: DeckhandSettings, *, run_id: str | None = None) -> Orchestrator:
    """Wire provisioner, publisher and activator for the configured backend."""
    enforce_production_constraints(settings)

    if settings.backend == "local":
        provisioner = Provisioner(
            LocalProvider(settings.provider_state_path, max_instances=settings.max_instances)
        )
        registry = LocalRegistry(settings.registry_path, location=settings.registry_url)
        publisher = ImagePublisher(DirectoryBuilder(), registry)
        engine: ContainerEngine = LocalEngine(
            registry,
            state_path=settings.engine_state_path,
            policy=settings.allowed_hosts_policy,
        )
    else:
        provisioner = Provisioner(TerraformProvider(settings.terraform_dir))
        publisher = ImagePublisher(DockerBuilder(), DockerRegistry(settings.registry_url))
        engine = ComposeEngine(ssh_key_path=settings.ssh_key_path, ssh_user=settings.ssh_user)

    activator = Activator(
        engine,
        DeploymentStateStore(settings.state_path),
        policy=settings.allowed_hosts_policy,
        api_prefixes=settings.required_api_prefixes,
        pull_attempts=settings.pull_attempts,
        pull_backoff=settings.pull_backoff_seconds,
        lock_timeout=settings.activation_lock_timeout_seconds,
    )
    return Orchestrator(
        provisioner,
        publisher,
        activator,
        ledger=RunLedger(settings.ledger_path),
        run_id=run_id,
    )


# ---------------------------------------------------------------------------
# Operator input
# ---------------------------------------------------------------------------


def _read_json(path: Path, what: str) -> dict:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise DeckhandError(f"Could not read {what} {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise DeckhandError(f"{what} {path} must contain a JSON object")
    return data


def load_topology(path: Path) -> TopologyDescription:
    """Load a JSON topology description (camelCase or snake_case keys)."""
    return TopologyDescription.model_validate(_read_json(path, "topology file"))


def _parse_assignment(item: str, option: str) -> tuple[str, str]:
    key, sep, value = item.partition("=")
    if not sep or not key.strip():
        raise DeckhandError(f"{option} expects KEY=VALUE, got {item!r}")
    return key.strip(), value


def load_runtime_env(path: Path | None, overrides: list[str] | None = None) -> dict[str, str]:
    """Runtime environment from a JSON document or KEY=VALUE file plus --set overrides."""
    env: dict[str, str] = {}
    if path is not None:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise DeckhandError(f"Could not read runtime file {path}: {exc}") from exc
        if text.lstrip().startswith("{"):
            env.update(environment_from_document(_read_json(path, "runtime file")))
        else:
            for line in text.splitlines():
                line = line.strip()
                if line and not line.startswith("#"):
                    key, value = _parse_assignment(line, str(path))
                    env[key] = value
    for item in overrides or []:
        key, value = _parse_assignment(item, "--set")
        env[key] = value
    return env


def load_routes(items: list[str] | None) -> dict[str, str] | None:
    """Route mapping from repeated ``--route PREFIX=TARGET`` options."""
    if not items:
        return None
    return dict(_parse_assignment(i, "--route") for i in items)


def route_table(mapping: dict[str, str] | None) -> RouteTable | None:
    return RouteTable.from_mapping(mapping) if mapping else None


# ---------------------------------------------------------------------------
# Error reporting
# ---------------------------------------------------------------------------


def _fail(title: str, message: str, remediation: str = "") -> None:
    console.print(f"[bold red]{escape(title)}:[/bold red] {escape(message)}")
    if remediation:
        console.print(f"[yellow]Remediation:[/yellow] {escape(remediation)}")


@contextmanager
def reported_errors() -> Iterator[None]:
    """Print pipeline errors with their remediation and exit with code 1."""
    try:
        yield
    except DeckhandError as exc:
        _fail(type(exc).__name__, str(exc), exc.remediation)
        raise typer.Exit(code=1) from exc
    except (ProductionConfigError, LedgerIntegrityError) as exc:
        _fail(type(exc).__name__, str(exc))
        raise typer.Exit(code=1) from exc
    except ValidationError as exc:
        _fail("Invalid input", str(exc))
        raise typer.Exit(code=1) from exc
