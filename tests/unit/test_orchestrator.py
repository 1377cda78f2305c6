"""Tests for the Orchestrator — full runs, failures, standalone actions."""

from __future__ import annotations

import pytest

from deckhand.core.orchestrator import Orchestrator, PipelineRequest, make_run_id
from deckhand.errors import DeckhandError, ProvisioningError, PublishError, RoutingGapError
from deckhand.models.artifacts import Component
from deckhand.models.host import TopologyDescription
from deckhand.models.runtime import RouteTable
from deckhand.models.stages import ACTIVATE, PROVISION, PUBLISH, StageState

REVISION = "3f9c2a7e41b8d0c6a5e2f1b9c8d7e6a5b4c3d2e1"


@pytest.fixture
def request_(topology, sources) -> PipelineRequest:
    return PipelineRequest(
        topology=topology,
        sources=sources,
        revision=REVISION,
        runtime_env={"ALLOWED_HOSTS": "shop.example.com"},
    )


class TestFullRun:
    def test_run_passes_every_stage(self, orchestrator: Orchestrator, request_, run_id):
        result = orchestrator.run(request_)
        assert result.run_id == run_id
        assert result.deployment.version == 1
        assert result.deployment.runtime.allowed_hosts == ("shop.example.com",)
        assert orchestrator.get_states() == {
            PROVISION: StageState.PASSED,
            PUBLISH: StageState.PASSED,
            ACTIVATE: StageState.PASSED,
        }
        assert orchestrator.verify_chain() is True

    def test_ledger_records_hashes_and_refs(self, orchestrator: Orchestrator, request_):
        orchestrator.run(request_)
        entries = orchestrator.get_run_entries()
        assert [e.state_transition for e in entries] == [
            "not_started->running", "running->passed",
        ] * 3
        assert all(e.input_hash for e in entries)
        publish_passed = entries[3]
        assert publish_passed.stage_id == PUBLISH
        assert len(publish_passed.artifact_references) == 2
        assert all("@sha256:" in ref for ref in publish_passed.artifact_references)
        assert all(e.revision == REVISION for e in entries)

    def test_rerun_is_idempotent(self, orchestrator: Orchestrator, request_, provider):
        orchestrator.run(request_)
        second = orchestrator.run(request_, run_id="dh-test-run-002")
        assert second.provision.changed is False
        assert provider.apply_calls == 1
        assert second.deployment.version == 2
        first_entries = orchestrator.ledger.get_run_entries("dh-test-run-001")
        second_entries = orchestrator.ledger.get_run_entries("dh-test-run-002")
        assert first_entries[0].input_hash == second_entries[0].input_hash

    def test_explicit_routes(self, orchestrator: Orchestrator, request_):
        req = request_.model_copy(update={"routes": {"/api/": "api:8000", "/": "static-fallback"}})
        result = orchestrator.run(req)
        assert result.deployment.routes.prefixes == ["/api/", "/"]


class TestFailedRuns:
    def test_provision_failure_blocks_activation(self, orchestrator: Orchestrator, request_, provider):
        provider.apply(TopologyDescription(project_name="other"))  # use up the quota
        with pytest.raises(ProvisioningError):
            orchestrator.run(request_)
        states = orchestrator.get_states()
        assert states[PROVISION] == StageState.FAILED
        assert states[ACTIVATE] == StageState.BLOCKED
        failed = orchestrator.ledger.get_stage_history(orchestrator.run_id, PROVISION)[-1]
        assert failed.detail.startswith("ProvisioningError: InstanceLimitExceeded")
        assert failed.output_hash

    def test_publish_failure_keeps_previous_deployment(
        self, orchestrator: Orchestrator, request_, make_source, sources, state_store, topology
    ):
        first = orchestrator.run(request_)
        broken = {
            Component.API: sources[Component.API],
            Component.PROXY: make_source("broken", "FROM nginx\nENV API_TOKEN=abc\n"),
        }
        req = request_.model_copy(update={
            "revision": "9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a2f1e0d",
            "sources": broken,
        })
        with pytest.raises(PublishError):
            orchestrator.run(req, run_id="dh-test-run-002")
        assert state_store.current(topology.host_identifier).version == first.deployment.version
        assert orchestrator.get_states()[ACTIVATE] == StageState.BLOCKED

    def test_route_gap_fails_activation(self, orchestrator: Orchestrator, request_):
        req = request_.model_copy(update={"routes": {"/": "static-fallback"}})
        with pytest.raises(RoutingGapError):
            orchestrator.run(req)
        assert orchestrator.get_states()[ACTIVATE] == StageState.FAILED
        assert orchestrator.verify_chain() is True


class TestStandaloneActions:
    def test_provision_publish_activate(self, orchestrator: Orchestrator, topology, sources):
        orchestrator.provision(topology)
        orchestrator.publish(sources, REVISION)
        state = orchestrator.activate(topology, REVISION, {"ALLOWED_HOSTS": "*"})
        assert state.revision == "3f9c2a7e41b8"

    def test_activate_requires_provisioned_host(self, orchestrator: Orchestrator, topology, sources):
        orchestrator.publish(sources, REVISION)
        with pytest.raises(DeckhandError, match="has not been provisioned") as excinfo:
            orchestrator.activate(topology, REVISION, {})
        assert "deckhand provision" in excinfo.value.remediation

    def test_activate_unpublished_revision(self, orchestrator: Orchestrator, topology):
        orchestrator.provision(topology)
        with pytest.raises(PublishError, match="not fully published"):
            orchestrator.activate(topology, REVISION, {})

    def test_activate_with_routes(self, orchestrator: Orchestrator, topology, sources):
        orchestrator.provision(topology)
        orchestrator.publish(sources, REVISION)
        with pytest.raises(RoutingGapError):
            orchestrator.activate(
                topology, REVISION, {}, RouteTable.from_mapping({"/": "static-fallback"})
            )

    def test_rollback(self, orchestrator: Orchestrator, request_, sources, topology):
        orchestrator.run(request_)
        (sources[next(iter(sources))] / "CHANGELOG").write_text("v2\n")
        orchestrator.run(
            request_.model_copy(update={"revision": "9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a2f1e0d"}),
            run_id="dh-test-run-002",
        )
        state = orchestrator.rollback(topology)
        assert state.revision == "3f9c2a7e41b8"
        assert state.version == 3


def test_make_run_id_format():
    run_id = make_run_id()
    assert run_id.startswith("dh-")
    assert run_id != make_run_id()
