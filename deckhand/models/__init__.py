"""Deckhand data models — all Pydantic v2, all frozen (immutable)."""

from deckhand.models.artifacts import (
    LATEST_TAG,
    ArtifactPair,
    ArtifactRef,
    BuiltImage,
    Component,
    revision_tag,
)
from deckhand.models.deployment import DeploymentState, Trigger
from deckhand.models.host import (
    ALLOWED_INGRESS_PORTS,
    DEFAULT_SSH_USERNAME,
    HostRecord,
    IngressRule,
    TopologyDescription,
)
from deckhand.models.ledger import LedgerEntry
from deckhand.models.runtime import (
    RUNTIME_ENV_KEYS,
    STATIC_FALLBACK,
    RouteEntry,
    RouteTable,
    RuntimeConfiguration,
    Upstream,
)
from deckhand.models.stages import (
    ACTIVATE,
    DEFAULT_STAGE_DEFINITIONS,
    PROVISION,
    PUBLISH,
    VALID_TRANSITIONS,
    StageDefinition,
    StageState,
)

__all__ = [
    # host
    "ALLOWED_INGRESS_PORTS",
    "DEFAULT_SSH_USERNAME",
    "HostRecord",
    "IngressRule",
    "TopologyDescription",
    # artifacts
    "LATEST_TAG",
    "ArtifactPair",
    "ArtifactRef",
    "BuiltImage",
    "Component",
    "revision_tag",
    # runtime
    "RUNTIME_ENV_KEYS",
    "STATIC_FALLBACK",
    "RouteEntry",
    "RouteTable",
    "RuntimeConfiguration",
    "Upstream",
    # deployment
    "DeploymentState",
    "Trigger",
    # stages
    "ACTIVATE",
    "DEFAULT_STAGE_DEFINITIONS",
    "PROVISION",
    "PUBLISH",
    "VALID_TRANSITIONS",
    "StageDefinition",
    "StageState",
    # ledger
    "LedgerEntry",
]
