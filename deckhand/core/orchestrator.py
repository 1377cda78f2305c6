"""Pipeline orchestrator — one run of provision, publish and activate.

The Orchestrator wires the Provisioner, ImagePublisher and Activator to
the RunLedger through a StageMachine, so every stage transition of every
run (including failed ones) is recorded with input and output hashes.
A stage error is recorded as FAILED, blocks activation, and propagates
unchanged to the caller. Nothing is downgraded to a warning.

Standalone operator actions (provision only, publish only, activate a
published revision, roll back) run through a one-stage graph so they are
recorded the same way.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict

from deckhand.activate.activator import Activator
from deckhand.core.hasher import compute_input_hash, compute_output_hash
from deckhand.core.prerequisite_graph import PrerequisiteGraph
from deckhand.core.run_ledger import RunLedger
from deckhand.core.stage_machine import StageMachine
from deckhand.errors import DeckhandError
from deckhand.models.artifacts import ArtifactPair, Component
from deckhand.models.deployment import DeploymentState
from deckhand.models.host import HostRecord, TopologyDescription
from deckhand.models.ledger import LedgerEntry
from deckhand.models.runtime import RouteTable
from deckhand.models.stages import (
    ACTIVATE,
    DEFAULT_STAGE_DEFINITIONS,
    PROVISION,
    PUBLISH,
    StageDefinition,
    StageState,
    standalone_definitions,
)
from deckhand.provision.provisioner import ProvisionResult, Provisioner
from deckhand.publish.publisher import ImagePublisher, PublishResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def make_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"dh-{ts}-{uuid.uuid4().hex[:6]}"


class PipelineRequest(BaseModel):
    """Everything one pipeline run needs.

    ``runtime_env`` is the operator-supplied environment the api service
    is started with; ``routes`` is an optional explicit route mapping
    (derived from the runtime upstreams when omitted).
    """

    model_config = ConfigDict(frozen=True)

    topology: TopologyDescription
    sources: dict[Component, Path]
    revision: str
    runtime_env: dict[str, str] = {}
    routes: dict[str, str] | None = None

    def route_table(self) -> RouteTable | None:
        return RouteTable.from_mapping(self.routes) if self.routes else None


class PipelineResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    provision: ProvisionResult
    publish: PublishResult
    deployment: DeploymentState


class Orchestrator:
    """Central pipeline orchestrator.

    Parameters
    ----------
    provisioner / publisher / activator:
        The three stage implementations.
    ledger:
        Hash-chained record of every transition.
    run_id:
        Run identifier for the next run. Generated if None.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        publisher: ImagePublisher,
        activator: Activator,
        *,
        ledger: RunLedger,
        run_id: str | None = None,
    ) -> None:
        self.provisioner = provisioner
        self.publisher = publisher
        self.activator = activator
        self.ledger = ledger
        self.run_id = run_id or make_run_id()
        self._machine: StageMachine | None = None

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def _begin(self, definitions: list[StageDefinition], run_id: str | None) -> StageMachine:
        if run_id:
            self.run_id = run_id
        machine = StageMachine(self.ledger, PrerequisiteGraph(definitions))
        machine.initialize_run(self.run_id)
        self._machine = machine
        return machine

    def _execute(
        self,
        machine: StageMachine,
        stage_id: str,
        revision: str,
        inputs: dict[str, Any],
        action: Callable[[], T],
        summarize: Callable[[T], tuple[dict[str, Any], list[str]]],
    ) -> T:
        """Run *action* as *stage_id*: RUNNING, then PASSED or FAILED."""
        input_hash = compute_input_hash(stage_id, inputs)
        machine.transition(
            self.run_id, stage_id, StageState.RUNNING,
            revision=revision,
            input_hash=input_hash,
        )
        try:
            result = action()
        except Exception as exc:
            logger.error("%s: stage %s failed: %s", self.run_id, stage_id, exc)
            machine.transition(
                self.run_id, stage_id, StageState.FAILED,
                revision=revision,
                input_hash=input_hash,
                output_hash=compute_output_hash(stage_id, {"error": str(exc)}),
                detail=f"{type(exc).__name__}: {exc}",
            )
            raise

        outputs, refs = summarize(result)
        machine.transition(
            self.run_id, stage_id, StageState.PASSED,
            revision=revision,
            input_hash=input_hash,
            output_hash=compute_output_hash(stage_id, outputs),
            artifact_references=refs,
        )
        return result

    @staticmethod
    def _summarize_provision(result: ProvisionResult) -> tuple[dict[str, Any], list[str]]:
        host = result.host
        return {
            "host": host.identifier,
            "instance_id": host.instance_id,
            "address": host.address,
            "generation": host.generation,
        }, []

    @staticmethod
    def _summarize_publish(result: PublishResult) -> tuple[dict[str, Any], list[str]]:
        return (
            {"pair": result.pair.model_dump(mode="json"), "latest_updated": result.latest_updated},
            [f"{ref.image}@{ref.digest}" for ref in result.pair.refs()],
        )

    @staticmethod
    def _summarize_activation(state: DeploymentState) -> tuple[dict[str, Any], list[str]]:
        return (
            {"host": state.host_identifier, "version": state.version, "revision": state.revision},
            [ref.image for ref in state.artifacts.refs()],
        )

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------

    def run(self, request: PipelineRequest, *, run_id: str | None = None) -> PipelineResult:
        """Provision, publish and activate one revision.

        Provision and publish are independent; they run sequentially here.
        Activation starts only when both have passed.
        """
        machine = self._begin(DEFAULT_STAGE_DEFINITIONS, run_id)
        revision = request.revision
        logger.info("%s: pipeline run for revision %s", self.run_id, revision)

        provisioned = self._execute(
            machine, PROVISION, revision,
            {"topology": request.topology.model_dump(mode="json")},
            lambda: self.provisioner.provision(request.topology),
            self._summarize_provision,
        )
        published = self._execute(
            machine, PUBLISH, revision,
            {"revision": revision, "sources": {c.value: str(p) for c, p in request.sources.items()}},
            lambda: self.publisher.publish(request.sources, revision),
            self._summarize_publish,
        )
        deployment = self._execute(
            machine, ACTIVATE, revision,
            {
                "host": provisioned.host.identifier,
                "address": provisioned.host.address,
                "pair": published.pair.model_dump(mode="json"),
                "runtime_env": request.runtime_env,
                "routes": request.routes,
            },
            lambda: self.activator.activate(
                provisioned.host,
                published.pair,
                request.runtime_env,
                request.route_table(),
            ),
            self._summarize_activation,
        )
        return PipelineResult(
            run_id=self.run_id,
            provision=provisioned,
            publish=published,
            deployment=deployment,
        )

    # ------------------------------------------------------------------
    # Standalone operator actions
    # ------------------------------------------------------------------

    def provision(self, topology: TopologyDescription) -> ProvisionResult:
        machine = self._begin(standalone_definitions(PROVISION), None)
        return self._execute(
            machine, PROVISION, "",
            {"topology": topology.model_dump(mode="json")},
            lambda: self.provisioner.provision(topology),
            self._summarize_provision,
        )

    def publish(self, sources: dict[Component, Path], revision: str) -> PublishResult:
        machine = self._begin(standalone_definitions(PUBLISH), None)
        return self._execute(
            machine, PUBLISH, revision,
            {"revision": revision, "sources": {c.value: str(p) for c, p in sources.items()}},
            lambda: self.publisher.publish(sources, revision),
            self._summarize_publish,
        )

    def _require_host(self, topology: TopologyDescription) -> HostRecord:
        host = self.provisioner.lookup(topology)
        if host is None:
            raise DeckhandError(
                f"{topology.host_identifier} has not been provisioned",
                remediation="Run `deckhand provision` first.",
            )
        return host

    def activate(
        self,
        topology: TopologyDescription,
        revision: str,
        runtime_env: dict[str, str],
        routes: RouteTable | None = None,
    ) -> DeploymentState:
        """Activate an already-published revision on an existing host."""
        machine = self._begin(standalone_definitions(ACTIVATE), None)

        def _action() -> DeploymentState:
            host = self._require_host(topology)
            pair: ArtifactPair = self.publisher.resolve(revision)
            return self.activator.activate(host, pair, runtime_env, routes)

        return self._execute(
            machine, ACTIVATE, revision,
            {
                "host": topology.host_identifier,
                "revision": revision,
                "runtime_env": runtime_env,
                "routes": routes.model_dump(mode="json") if routes else None,
            },
            _action,
            self._summarize_activation,
        )

    def rollback(self, topology: TopologyDescription) -> DeploymentState:
        """Re-activate the previous deployment of the topology's host."""
        machine = self._begin(standalone_definitions(ACTIVATE), None)
        return self._execute(
            machine, ACTIVATE, "",
            {"host": topology.host_identifier, "rollback": True},
            lambda: self.activator.rollback(self._require_host(topology)),
            self._summarize_activation,
        )

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def get_states(self) -> dict[str, StageState]:
        """Stage states of the current run (rebuilt from the ledger if needed)."""
        if self._machine is None:
            self._machine = StageMachine(self.ledger, PrerequisiteGraph(DEFAULT_STAGE_DEFINITIONS))
        return self._machine.get_all_states(self.run_id)

    def get_run_entries(self) -> list[LedgerEntry]:
        return self.ledger.get_run_entries(self.run_id)

    def verify_chain(self) -> bool:
        return self.ledger.verify_chain(self.run_id)
