"""Shared test fixtures for Deckhand."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from deckhand.activate.activator import Activator
from deckhand.activate.engines import LocalEngine
from deckhand.core.artifact_store import ContentAddressedStore
from deckhand.core.orchestrator import Orchestrator
from deckhand.core.prerequisite_graph import PrerequisiteGraph
from deckhand.core.run_ledger import RunLedger
from deckhand.core.stage_machine import StageMachine
from deckhand.core.state_store import DeploymentStateStore
from deckhand.models.artifacts import ArtifactPair, Component
from deckhand.models.host import HostRecord, TopologyDescription
from deckhand.models.runtime import RuntimeConfiguration
from deckhand.models.stages import DEFAULT_STAGE_DEFINITIONS
from deckhand.provision.backends import LocalProvider
from deckhand.provision.provisioner import Provisioner
from deckhand.publish.builders import DirectoryBuilder
from deckhand.publish.publisher import ImagePublisher
from deckhand.publish.registry import LocalRegistry

REVISION = "3f9c2a7e41b8d0c6a5e2f1b9c8d7e6a5b4c3d2e1"

API_DOCKERFILE = """\
FROM python:3.12-slim
WORKDIR /app
COPY . .
USER app
CMD ["gunicorn", "--bind", "0.0.0.0:8000", "demo.wsgi"]
"""

PROXY_DOCKERFILE = """\
FROM nginx:1.27-alpine
COPY dist/ /usr/share/nginx/html/
USER nginx
"""


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def artifact_store(tmp_dir: Path) -> ContentAddressedStore:
    return ContentAddressedStore(tmp_dir / "blobs")


@pytest.fixture
def graph() -> PrerequisiteGraph:
    """Provide a PrerequisiteGraph with the default pipeline stages."""
    return PrerequisiteGraph(DEFAULT_STAGE_DEFINITIONS)


@pytest.fixture
def stage_machine(ledger: RunLedger, graph: PrerequisiteGraph) -> StageMachine:
    return StageMachine(ledger, graph)


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "dh-test-run-001"


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


@pytest.fixture
def topology() -> TopologyDescription:
    return TopologyDescription(region="ap-south-1", instance_class="t3.micro")


@pytest.fixture
def provider(tmp_dir: Path) -> LocalProvider:
    return LocalProvider(tmp_dir / "provider.json", max_instances=1)


@pytest.fixture
def provisioner(provider: LocalProvider) -> Provisioner:
    return Provisioner(provider)


@pytest.fixture
def host(provisioner: Provisioner, topology: TopologyDescription) -> HostRecord:
    return provisioner.provision(topology).host


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


@pytest.fixture
def revision() -> str:
    return REVISION


@pytest.fixture
def make_source(tmp_dir: Path) -> Callable[..., Path]:
    """Factory fixture: write a component source tree with a Dockerfile."""

    def _factory(name: str, dockerfile: str, files: dict[str, str] | None = None) -> Path:
        root = tmp_dir / "src" / name
        root.mkdir(parents=True, exist_ok=True)
        (root / "Dockerfile").write_text(dockerfile, encoding="utf-8")
        for rel, content in (files or {}).items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return root

    return _factory


@pytest.fixture
def sources(make_source: Callable[..., Path]) -> dict[Component, Path]:
    return {
        Component.API: make_source(
            "api", API_DOCKERFILE, {"demo/wsgi.py": "application = None\n"}
        ),
        Component.PROXY: make_source(
            "proxy", PROXY_DOCKERFILE, {"dist/index.html": "<div id='root'></div>\n"}
        ),
    }


@pytest.fixture
def registry(tmp_dir: Path) -> LocalRegistry:
    return LocalRegistry(tmp_dir / "registry", location="registry.test/twotier")


@pytest.fixture
def publisher(registry: LocalRegistry) -> ImagePublisher:
    return ImagePublisher(DirectoryBuilder(), registry)


@pytest.fixture
def pair(publisher: ImagePublisher, sources: dict[Component, Path]) -> ArtifactPair:
    return publisher.publish(sources, REVISION).pair


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(registry: LocalRegistry) -> LocalEngine:
    return LocalEngine(registry)


@pytest.fixture
def state_store(tmp_dir: Path) -> DeploymentStateStore:
    return DeploymentStateStore(tmp_dir / "deployments.db")


@pytest.fixture
def activator(engine: LocalEngine, state_store: DeploymentStateStore) -> Activator:
    return Activator(engine, state_store, pull_backoff=0.0, sleep=lambda _: None)


@pytest.fixture
def runtime_config() -> RuntimeConfiguration:
    return RuntimeConfiguration(allowed_hosts=("*",), debug=False)


@pytest.fixture
def orchestrator(
    provisioner: Provisioner,
    publisher: ImagePublisher,
    activator: Activator,
    ledger: RunLedger,
    run_id: str,
) -> Orchestrator:
    return Orchestrator(provisioner, publisher, activator, ledger=ledger, run_id=run_id)
