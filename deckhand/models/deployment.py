"""Deployment state and pipeline triggers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from deckhand.models.artifacts import ArtifactPair
from deckhand.models.runtime import RouteTable, RuntimeConfiguration


class DeploymentState(BaseModel):
    """What is live on a host: artifact pair, configuration and routing.

    Records are versioned per host and never mutated. Activation writes a
    new version and flips the current pointer in one transaction, so a
    deployment either fully replaces the previous one or leaves it in
    place.
    """

    model_config = ConfigDict(frozen=True)

    host_identifier: str
    host_address: str
    artifacts: ArtifactPair
    runtime: RuntimeConfiguration
    routes: RouteTable
    version: int = 0  # assigned by the state store
    previous_version: int | None = None
    activated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def revision(self) -> str:
        return self.artifacts.tag


class Trigger(BaseModel):
    """A source-revision event that requests a pipeline run."""

    model_config = ConfigDict(frozen=True)

    revision: str
    trigger_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    requested_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
