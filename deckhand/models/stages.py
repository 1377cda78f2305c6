"""Stage state machine models — deterministic transitions."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class StageState(str, Enum):
    """Strict state model for each pipeline stage."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    BLOCKED = "blocked"
    FAILED = "failed"
    PASSED = "passed"


# Valid state transitions — enforced structurally by StageMachine.
# PASSED is terminal within a run; a new revision means a new run.
VALID_TRANSITIONS: dict[StageState, set[StageState]] = {
    StageState.NOT_STARTED: {StageState.RUNNING, StageState.BLOCKED},
    StageState.RUNNING: {StageState.PASSED, StageState.FAILED},
    StageState.BLOCKED: {StageState.NOT_STARTED},
    StageState.FAILED: {StageState.NOT_STARTED},  # manual re-trigger
    StageState.PASSED: set(),
}


class StageDefinition(BaseModel):
    """Defines a pipeline stage and its prerequisites.

    A stage cannot enter RUNNING unless every prerequisite is PASSED.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    ordinal: float
    prerequisites: list[str] = []


PROVISION = "provision"
PUBLISH = "publish"
ACTIVATE = "activate"

# Provision and publish share no mutable resource and may run in either
# order; both must pass before activation.
DEFAULT_STAGE_DEFINITIONS: list[StageDefinition] = [
    StageDefinition(
        stage_id=PROVISION,
        display_name="Provision Host",
        ordinal=0.0,
    ),
    StageDefinition(
        stage_id=PUBLISH,
        display_name="Publish Images",
        ordinal=1.0,
    ),
    StageDefinition(
        stage_id=ACTIVATE,
        display_name="Activate Topology",
        ordinal=2.0,
        prerequisites=[PROVISION, PUBLISH],
    ),
]


def standalone_definitions(stage_id: str) -> list[StageDefinition]:
    """A one-stage plan for running a single operator action on its own."""
    for sd in DEFAULT_STAGE_DEFINITIONS:
        if sd.stage_id == stage_id:
            return [sd.model_copy(update={"prerequisites": []})]
    raise KeyError(f"Unknown stage_id {stage_id!r}")
