"""Activation: resolve configuration, validate routes, swap the topology."""

from deckhand.activate.activator import Activator
from deckhand.activate.compose import ComposeEngine
from deckhand.activate.engines import (
    ContainerEngine,
    EngineError,
    LocalEngine,
    PullFailure,
    TopologyPlan,
    build_topology_plan,
)
from deckhand.activate.resolver import (
    Resolution,
    ResolutionPolicy,
    environment_from_document,
    resolve_runtime_configuration,
)
from deckhand.activate.routing import (
    REQUIRED_API_PREFIXES,
    render_nginx_conf,
    validate_route_table,
)

__all__ = [
    "REQUIRED_API_PREFIXES",
    "Activator",
    "ComposeEngine",
    "ContainerEngine",
    "EngineError",
    "LocalEngine",
    "PullFailure",
    "Resolution",
    "ResolutionPolicy",
    "TopologyPlan",
    "build_topology_plan",
    "environment_from_document",
    "render_nginx_conf",
    "resolve_runtime_configuration",
    "validate_route_table",
]
