"""Activator — replace the running topology with a new artifact pair.

Order of operations for one activation:

1. Resolve the runtime configuration (allow-list, debug, upstreams).
2. Validate the route table against the API prefixes.
3. Pull both images (transient failures retried with backoff).
4. Stop the old topology, start the new one.
5. Verify the running api process received every resolved key.
6. Atomically swap the stored deployment state.

Steps 3-6 run under the host's activation lease in the state store, so
activations from separate processes never interleave. Steps 1-3 change
nothing on the host. If anything from step 4 on fails, including a refused
registry login, the previous topology is restarted and the stored state is
untouched.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping

from deckhand.activate.engines import (
    API_SERVICE,
    ContainerEngine,
    PullFailure,
    TopologyPlan,
    build_topology_plan,
)
from deckhand.activate.resolver import ResolutionPolicy, resolve_runtime_configuration
from deckhand.activate.routing import REQUIRED_API_PREFIXES, validate_route_table
from deckhand.core.retry import call_with_retry
from deckhand.core.state_store import DeploymentStateStore, StaleDeploymentError
from deckhand.errors import (
    ConfigurationPropagationError,
    DeckhandError,
    RegistryPullError,
)
from deckhand.models.artifacts import ArtifactPair
from deckhand.models.deployment import DeploymentState
from deckhand.models.host import HostRecord
from deckhand.models.runtime import RouteTable, RuntimeConfiguration

logger = logging.getLogger(__name__)


class Activator:
    """Run an ArtifactPair on a host with environment-supplied configuration.

    Parameters
    ----------
    engine:
        Any ``ContainerEngine``.
    store:
        Versioned deployment state; the swap is compare-and-set.
    policy:
        Allow-host resolution policy (``permissive`` or ``strict``).
    api_prefixes:
        Path prefixes the front end calls on the API.
    pull_attempts / pull_backoff:
        Retry policy for image pulls.
    lock_timeout:
        Seconds to wait for another activation of the same host to finish.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        store: DeploymentStateStore,
        *,
        policy: ResolutionPolicy | str = ResolutionPolicy.PERMISSIVE,
        api_prefixes: list[str] | tuple[str, ...] = REQUIRED_API_PREFIXES,
        pull_attempts: int = 3,
        pull_backoff: float = 2.0,
        project: str = "twotier",
        lock_timeout: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._store = store
        self._policy = ResolutionPolicy(policy)
        self._api_prefixes = tuple(api_prefixes)
        self._pull_attempts = pull_attempts
        self._pull_backoff = pull_backoff
        self._project = project
        self._lock_timeout = lock_timeout
        self._sleep = sleep
        # Threads sharing this activator queue here; other processes queue on
        # the store's activation lease.
        self._lock = threading.RLock()

    def resolve_configuration(
        self, runtime: RuntimeConfiguration | Mapping[str, str]
    ) -> RuntimeConfiguration:
        """Accept a resolved configuration or resolve one from an env map."""
        if isinstance(runtime, RuntimeConfiguration):
            return runtime
        return resolve_runtime_configuration(runtime, self._policy).config

    def activate(
        self,
        host: HostRecord,
        pair: ArtifactPair,
        runtime: RuntimeConfiguration | Mapping[str, str],
        routes: RouteTable | None = None,
    ) -> DeploymentState:
        """Activate *pair* on *host*. Returns the new current DeploymentState."""
        with self._lock:
            config = self.resolve_configuration(runtime)
            routes = routes or RouteTable.from_runtime(config)
            validate_route_table(routes, self._api_prefixes)
            plan = build_topology_plan(pair, config, routes, project=self._project)

            with self._store.activation_lock(host.identifier, timeout=self._lock_timeout):
                expected_version = self._store.current_version(host.identifier)
                for image in plan.images:
                    self._pull(host, image)

                logger.info("Activating %s on %s (%s)", pair.tag, host.identifier, host.address)
                previous = self._engine.stop(host)
                try:
                    self._engine.start(host, plan)
                    self._verify_delivery(host, config)
                    state = self._store.swap(
                        DeploymentState(
                            host_identifier=host.identifier,
                            host_address=host.address,
                            artifacts=pair,
                            runtime=config,
                            routes=routes,
                        ),
                        expected_version=expected_version,
                    )
                except StaleDeploymentError as exc:
                    # Whatever is now recorded as current is what should serve.
                    self._restore(host, self._current_plan(host) or previous, exc)
                    raise
                except Exception as exc:
                    self._restore(host, previous, exc)
                    raise
                return state

    def rollback(self, host: HostRecord) -> DeploymentState:
        """Re-activate the deployment the current one replaced."""
        with self._lock:
            current = self._store.current(host.identifier)
            if current is None:
                raise DeckhandError(f"Nothing has been activated on {host.identifier}")
            previous = self._store.previous(host.identifier)
            if previous is None:
                raise DeckhandError(
                    f"Version {current.version} on {host.identifier} has no predecessor",
                    remediation="Activate an explicit revision instead.",
                )
            logger.info(
                "Rolling back %s from %s (v%d) to %s (v%d)",
                host.identifier,
                current.revision,
                current.version,
                previous.revision,
                previous.version,
            )
            return self.activate(host, previous.artifacts, previous.runtime, previous.routes)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pull(self, host: HostRecord, image: str) -> None:
        try:
            call_with_retry(
                lambda: self._engine.pull(host, image),
                attempts=self._pull_attempts,
                delay=self._pull_backoff,
                retry_on=(PullFailure,),
                description=f"pull {image}",
                sleep=self._sleep,
            )
        except PullFailure as exc:
            raise RegistryPullError(
                f"Could not pull {image} after {self._pull_attempts} attempts: {exc}",
                remediation="Check that the revision was published and the registry is reachable.",
            ) from exc

    def _verify_delivery(self, host: HostRecord, config: RuntimeConfiguration) -> None:
        delivered = self._engine.inspect_environment(host, API_SERVICE)
        for key, value in config.to_environment().items():
            if key not in delivered:
                raise ConfigurationPropagationError(
                    key,
                    ConfigurationPropagationError.UNDELIVERED,
                    "was resolved at activation but is missing from the running api process",
                    remediation="Check how the api service environment is wired in the topology.",
                )
            if delivered[key] != value:
                raise ConfigurationPropagationError(
                    key,
                    ConfigurationPropagationError.UNDELIVERED,
                    f"running api process sees {delivered[key]!r}, expected {value!r}",
                )

    def _restore(self, host: HostRecord, previous: TopologyPlan | None, cause: Exception) -> None:
        logger.error("Activation on %s failed: %s", host.identifier, cause)
        try:
            if self._engine.running(host) is not None:
                self._engine.stop(host)
            if previous is not None:
                self._engine.start(host, previous)
                logger.warning("Previous topology restored on %s", host.identifier)
        except Exception as restore_exc:
            logger.critical(
                "Could not restore the previous topology on %s: %s", host.identifier, restore_exc
            )

    def _current_plan(self, host: HostRecord) -> TopologyPlan | None:
        current = self._store.current(host.identifier)
        if current is None:
            return None
        return build_topology_plan(
            current.artifacts, current.runtime, current.routes, project=self._project
        )
