"""Local smoke test — runs the full Deckhand pipeline against the simulated backends.

Usage:
    python demo_local.py
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from deckhand.activate.engines import LocalEngine
from deckhand.cli.wiring import build_orchestrator
from deckhand.config import DeckhandSettings
from deckhand.core.orchestrator import PipelineRequest
from deckhand.models.artifacts import Component
from deckhand.models.host import TopologyDescription

REVISION = "3f9c2a7e41b8d0c6a5e2f1b9c8d7e6a5b4c3d2e1"


def _write_sources(root: Path) -> dict[Component, Path]:
    api = root / "api"
    (api / "demo").mkdir(parents=True)
    (api / "Dockerfile").write_text("FROM python:3.12-slim\nCOPY . /app\nUSER app\n")
    (api / "demo" / "wsgi.py").write_text("application = None\n")

    proxy = root / "proxy"
    (proxy / "dist").mkdir(parents=True)
    (proxy / "Dockerfile").write_text("FROM nginx:1.27-alpine\nCOPY dist/ /usr/share/nginx/html/\nUSER nginx\n")
    (proxy / "dist" / "index.html").write_text("<div id='root'></div>\n")
    return {Component.API: api, Component.PROXY: proxy}


def main() -> None:
    """Provision, publish, activate, then send two requests through the proxy."""
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        state = root / ".deckhand"
        settings = DeckhandSettings(
            ledger_path=state / "ledger.db",
            state_path=state / "deployments.db",
            registry_path=state / "registry",
            provider_state_path=state / "provider.json",
            engine_state_path=state / "engine.json",
        )
        print(f"Deckhand LOCAL MODE | environment: {settings.environment}")
        print()

        orch = build_orchestrator(settings)
        request = PipelineRequest(
            topology=TopologyDescription(region="ap-south-1", instance_class="t3.micro"),
            sources=_write_sources(root),
            revision=REVISION,
            runtime_env={"ALLOWED_HOSTS": "*", "DEBUG": "false"},
        )
        result = orch.run(request)
        print(f"Run ID: {result.run_id}")
        print(f"Host: {result.provision.host.identifier} at {result.provision.host.address}")
        print(f"Deployment: v{result.deployment.version} revision {result.deployment.revision}")

        for stage_id, stage_state in orch.get_states().items():
            icon = {"passed": "OK", "failed": "!!", "blocked": "XX"}.get(stage_state.value, "--")
            print(f"  [{icon}] {stage_id}: {stage_state.value}")
        print(f"Ledger chain valid: {orch.verify_chain()}")

        # A fresh engine over the same state file sees what was activated.
        engine = LocalEngine(state_path=settings.engine_state_path)
        host = result.provision.host
        for path in ("/api/hello/", "/unknown"):
            response = engine.serve(host, path)
            print(f"GET {path} -> {response.status} ({response.served_by}) {response.body[:60]}")


if __name__ == "__main__":
    main()
