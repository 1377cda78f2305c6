"""Container engines: what actually runs the topology on the host.

``ContainerEngine`` is the seam the Activator drives. ``LocalEngine``
simulates a host well enough to serve requests through the proxy route
table and the API's start-time configuration, and can inject the faults
the Activator must survive. ``ComposeEngine`` (in ``compose.py``) drives
docker compose on the real host over ssh.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from deckhand.activate.resolver import ResolutionPolicy, resolve_runtime_configuration
from deckhand.activate.routing import render_nginx_conf
from deckhand.errors import AccessError
from deckhand.models.artifacts import ArtifactPair, Component
from deckhand.models.host import HostRecord
from deckhand.models.runtime import RouteTable, RuntimeConfiguration

logger = logging.getLogger(__name__)

API_SERVICE = Component.API.value
PROXY_SERVICE = Component.PROXY.value
API_PORT = 8000

INDEX_DOCUMENT = '<!doctype html><html><body><div id="root"></div></body></html>'


class EngineError(RuntimeError):
    """The engine could not run a topology."""


class PullFailure(EngineError):
    """An image pull failed. Transient; the Activator retries it."""


# ---------------------------------------------------------------------------
# Topology plan
# ---------------------------------------------------------------------------


class ServiceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    environment: dict[str, str] = {}
    ports: list[str] = []
    depends_on: list[str] = []


class TopologyPlan(BaseModel):
    """The two-service topology for one activation."""

    model_config = ConfigDict(frozen=True)

    project: str
    services: tuple[ServiceSpec, ...]
    routes: RouteTable
    proxy_conf: str

    def service(self, name: str) -> ServiceSpec:
        for svc in self.services:
            if svc.name == name:
                return svc
        raise KeyError(name)

    @property
    def images(self) -> list[str]:
        return [svc.image for svc in self.services]


def build_topology_plan(
    pair: ArtifactPair,
    runtime: RuntimeConfiguration,
    routes: RouteTable,
    *,
    project: str = "twotier",
) -> TopologyPlan:
    """Plan the api and proxy services.

    Runtime configuration goes to the api service only, through its
    environment; the proxy receives its route table as rendered config.
    """
    api = ServiceSpec(
        name=API_SERVICE,
        image=pair.api.image,
        environment=runtime.to_environment(),
        ports=[str(API_PORT)],
    )
    proxy = ServiceSpec(
        name=PROXY_SERVICE,
        image=pair.proxy.image,
        ports=["80:80"],
        depends_on=[API_SERVICE],
    )
    return TopologyPlan(
        project=project,
        services=(api, proxy),
        routes=routes,
        proxy_conf=render_nginx_conf(routes),
    )


def render_compose(plan: TopologyPlan, *, proxy_conf_path: str = "./nginx.conf") -> dict[str, Any]:
    """Compose document for *plan* (written as JSON, which compose accepts)."""
    services: dict[str, Any] = {}
    for svc in plan.services:
        spec: dict[str, Any] = {"image": svc.image, "restart": "unless-stopped"}
        if svc.environment:
            spec["environment"] = dict(svc.environment)
        if svc.name == API_SERVICE:
            spec["expose"] = list(svc.ports)
        elif svc.ports:
            spec["ports"] = list(svc.ports)
        if svc.depends_on:
            spec["depends_on"] = list(svc.depends_on)
        if svc.name == PROXY_SERVICE:
            spec["volumes"] = [f"{proxy_conf_path}:/etc/nginx/conf.d/default.conf:ro"]
        services[svc.name] = spec
    return {"name": plan.project, "services": services}


@runtime_checkable
class ContainerEngine(Protocol):
    """Protocol for the container runtime on the host."""

    def pull(self, host: HostRecord, image: str) -> None:
        """Pull *image* onto the host. Raise PullFailure on transient failure."""
        ...

    def running(self, host: HostRecord) -> TopologyPlan | None:
        """The topology currently running on the host, if any."""
        ...

    def stop(self, host: HostRecord) -> TopologyPlan | None:
        """Stop the running topology and return it."""
        ...

    def start(self, host: HostRecord, plan: TopologyPlan) -> None:
        """Start *plan* on the host."""
        ...

    def inspect_environment(self, host: HostRecord, service: str) -> dict[str, str]:
        """The environment the running *service* process actually sees."""
        ...


# ---------------------------------------------------------------------------
# Local simulation
# ---------------------------------------------------------------------------


class Response(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: int
    body: str
    served_by: str


ApiHandler = Callable[[str], tuple[int, str]]


def default_api_handler(path: str) -> tuple[int, str]:
    return 200, json.dumps({"path": path})


class LocalEngine:
    """Simulated host runtime.

    The api "process" resolves its RuntimeConfiguration from the
    environment it was started with, exactly once, the way the real
    service does at start. ``serve`` then answers requests through the
    proxy route table.

    Fault injection
    ---------------
    ``pull_failures``
        image -> number of consecutive pull failures before success.
    ``deny_access``
        every call raises AccessError.
    ``drop_env_keys``
        keys removed from the api environment between plan and process,
        the way a missing ``env_file`` wiring loses them.
    ``failing_images``
        images whose container exits immediately on start.

    Parameters
    ----------
    registry:
        Optional registry with a ``resolve(component, tag)`` method; when
        given, pulls of images it does not hold fail.
    state_path:
        Optional JSON file so separate CLI invocations see the same host.
    policy:
        Allow-host resolution policy of the api process.
    """

    def __init__(
        self,
        registry: Any = None,
        *,
        state_path: Path | None = None,
        policy: ResolutionPolicy | str = ResolutionPolicy.PERMISSIVE,
        api_handler: ApiHandler = default_api_handler,
    ) -> None:
        self._registry = registry
        self._state_path = Path(state_path) if state_path else None
        self._policy = ResolutionPolicy(policy)
        self._api_handler = api_handler
        self._running: dict[str, dict[str, Any]] = {}
        self._pulled: set[str] = set()
        self._configs: dict[str, RuntimeConfiguration] = {}
        self.calls: list[tuple[str, str]] = []

        self.pull_failures: dict[str, int] = {}
        self.deny_access = False
        self.drop_env_keys: set[str] = set()
        self.failing_images: set[str] = set()

        if self._state_path and self._state_path.exists():
            data = json.loads(self._state_path.read_text(encoding="utf-8"))
            self._pulled = set(data.get("pulled", []))
            for host_id, entry in data.get("running", {}).items():
                self._running[host_id] = entry
                self._configs[host_id] = resolve_runtime_configuration(
                    entry["api_env"], self._policy
                ).config

    def _save(self) -> None:
        if not self._state_path:
            return
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        self._state_path.write_text(
            json.dumps({"pulled": sorted(self._pulled), "running": self._running}, indent=2),
            encoding="utf-8",
        )

    def _check_access(self, action: str) -> None:
        if self.deny_access:
            raise AccessError(
                f"permission denied while trying to {action}",
                remediation="Add the deploy user to the docker group on the host.",
            )

    def _in_registry(self, image: str) -> bool:
        if self._registry is None:
            return True
        repository, _, tag = image.rpartition(":")
        component = repository.rsplit("/", 1)[-1]
        try:
            return self._registry.resolve(Component(component), tag) is not None
        except ValueError:
            return False

    def pull(self, host: HostRecord, image: str) -> None:
        self.calls.append(("pull", image))
        self._check_access(f"pull {image}")
        remaining = self.pull_failures.get(image, 0)
        if remaining:
            self.pull_failures[image] = remaining - 1
            raise PullFailure(f"registry timeout pulling {image}")
        if not self._in_registry(image):
            raise PullFailure(f"manifest for {image} not found")
        self._pulled.add(image)
        self._save()

    def running(self, host: HostRecord) -> TopologyPlan | None:
        entry = self._running.get(host.identifier)
        return TopologyPlan.model_validate(entry["plan"]) if entry else None

    def stop(self, host: HostRecord) -> TopologyPlan | None:
        self.calls.append(("stop", host.identifier))
        self._check_access("stop the running topology")
        previous = self.running(host)
        self._running.pop(host.identifier, None)
        self._configs.pop(host.identifier, None)
        self._save()
        return previous

    def start(self, host: HostRecord, plan: TopologyPlan) -> None:
        self.calls.append(("start", host.identifier))
        self._check_access("start the topology")
        if host.identifier in self._running:
            raise EngineError(f"a topology is already running on {host.identifier}")
        for image in plan.images:
            if image not in self._pulled:
                raise EngineError(f"image {image} is not present on {host.identifier}")
            if image in self.failing_images:
                raise EngineError(f"container for {image} exited immediately")

        api_env = {
            k: v
            for k, v in plan.service(API_SERVICE).environment.items()
            if k not in self.drop_env_keys
        }
        # Process start: the api resolves its configuration now, once.
        config = resolve_runtime_configuration(api_env, self._policy).config
        self._configs[host.identifier] = config
        self._running[host.identifier] = {
            "plan": plan.model_dump(mode="json"),
            "api_env": api_env,
        }
        self._save()

    def inspect_environment(self, host: HostRecord, service: str) -> dict[str, str]:
        entry = self._running.get(host.identifier)
        if entry is None or service != API_SERVICE:
            return {}
        return dict(entry["api_env"])

    def serve(self, host: HostRecord, path: str, host_header: str = "localhost") -> Response:
        """Answer an HTTP GET for *path* arriving at the proxy."""
        plan = self.running(host)
        if plan is None:
            return Response(status=502, body="no topology running", served_by="none")
        entry = plan.routes.match(path)
        if entry is None:
            return Response(status=404, body="not found", served_by=PROXY_SERVICE)
        if entry.is_fallback:
            return Response(status=200, body=INDEX_DOCUMENT, served_by=PROXY_SERVICE)
        if entry.upstream.service != API_SERVICE:
            return Response(status=502, body="bad gateway", served_by=PROXY_SERVICE)

        config = self._configs[host.identifier]
        if not config.allows_host(host_header):
            return Response(status=400, body="Bad Request (400)", served_by=API_SERVICE)
        status, body = self._api_handler(path)
        return Response(status=status, body=body, served_by=API_SERVICE)

    def resolved_configuration(self, host: HostRecord) -> RuntimeConfiguration | None:
        """Configuration the running api process resolved at start."""
        return self._configs.get(host.identifier)
