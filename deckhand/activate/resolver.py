"""Runtime configuration resolution at service start.

This is the step whose absence the whole tool exists to prevent. The API
service derives its allow-list, debug flag and upstream map from the
environment it is started with. An explicitly supplied value is always
used verbatim. A missing allow-list either defaults to the wildcard (with
a warning, so it shows up in logs) or fails hard, depending on policy.
It never resolves to an empty list.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum

from pydantic import BaseModel, ConfigDict, ValidationError

from deckhand.errors import ConfigurationPropagationError
from deckhand.models.runtime import (
    ENV_ALLOWED_HOSTS,
    ENV_DEBUG,
    ENV_UPSTREAM_ROUTES,
    WILDCARD_HOST,
    RuntimeConfiguration,
    default_upstreams,
    parse_upstream_routes,
)

logger = logging.getLogger(__name__)

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


_DOCUMENT_KEYS = {
    "allowedHosts": ENV_ALLOWED_HOSTS,
    "allowed_hosts": ENV_ALLOWED_HOSTS,
    "debug": ENV_DEBUG,
    "upstreams": ENV_UPSTREAM_ROUTES,
    "upstreamRoutes": ENV_UPSTREAM_ROUTES,
}


def environment_from_document(document: Mapping[str, object]) -> dict[str, str]:
    """Turn a runtime document into the env map the api process sees.

    Accepts ``{"allowedHosts": "*", "debug": false}`` style documents as
    well as plain ``{"ALLOWED_HOSTS": "*"}`` maps. Values are passed
    through unresolved; an empty allow-list stays empty so resolution
    can apply its policy to it.
    """
    env: dict[str, str] = {}
    for key, value in document.items():
        name = _DOCUMENT_KEYS.get(key, key)
        if isinstance(value, bool):
            env[name] = "true" if value else "false"
        elif isinstance(value, (list, tuple)):
            env[name] = ",".join(str(v) for v in value)
        elif isinstance(value, Mapping):
            env[name] = ",".join(f"{prefix}={target}" for prefix, target in value.items())
        elif value is not None:
            env[name] = str(value)
    return env


class ResolutionPolicy(str, Enum):
    PERMISSIVE = "permissive"
    STRICT = "strict"


class Resolution(BaseModel):
    """A resolved configuration and the keys that fell back to defaults."""

    model_config = ConfigDict(frozen=True)

    config: RuntimeConfiguration
    defaulted: tuple[str, ...] = ()


def _parse_debug(raw: str | None) -> bool:
    if raw is None:
        return False
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationPropagationError(
        ENV_DEBUG,
        ConfigurationPropagationError.INVALID,
        f"{raw!r} is not a boolean",
        remediation="Set DEBUG to true or false.",
    )


def resolve_runtime_configuration(
    env: Mapping[str, str],
    policy: ResolutionPolicy | str = ResolutionPolicy.PERMISSIVE,
) -> Resolution:
    """Resolve a RuntimeConfiguration from an environment map.

    Parameters
    ----------
    env:
        The process environment of the service (or the values an operator
        supplied at activation time).
    policy:
        ``permissive`` defaults a missing allow-list to ``*``; ``strict``
        raises ``ConfigurationPropagationError`` with reason ``absent``.
    """
    policy = ResolutionPolicy(policy)
    defaulted: list[str] = []

    raw_hosts = env.get(ENV_ALLOWED_HOSTS)
    hosts = [h.strip() for h in (raw_hosts or "").split(",") if h.strip()]
    if not hosts:
        if policy == ResolutionPolicy.STRICT:
            raise ConfigurationPropagationError(
                ENV_ALLOWED_HOSTS,
                ConfigurationPropagationError.ABSENT,
                "no allow-list was supplied and the strict policy forbids a default",
                remediation="Pass ALLOWED_HOSTS at activation, e.g. --set ALLOWED_HOSTS=example.com",
            )
        logger.warning(
            "%s is %s; defaulting to %r. Requests from any host will be accepted.",
            ENV_ALLOWED_HOSTS,
            "blank" if raw_hosts is not None else "absent",
            WILDCARD_HOST,
        )
        hosts = [WILDCARD_HOST]
        defaulted.append(ENV_ALLOWED_HOSTS)

    debug = _parse_debug(env.get(ENV_DEBUG))
    if ENV_DEBUG not in env:
        defaulted.append(ENV_DEBUG)

    raw_routes = env.get(ENV_UPSTREAM_ROUTES)
    if raw_routes is None or not raw_routes.strip():
        upstreams = default_upstreams()
        defaulted.append(ENV_UPSTREAM_ROUTES)
    else:
        try:
            upstreams = parse_upstream_routes(raw_routes)
        except (ValueError, ValidationError) as exc:
            raise ConfigurationPropagationError(
                ENV_UPSTREAM_ROUTES,
                ConfigurationPropagationError.INVALID,
                str(exc),
                remediation="Use the form /api/=api:8000[,/prefix/=service:port].",
            ) from exc

    try:
        config = RuntimeConfiguration(allowed_hosts=hosts, debug=debug, upstreams=upstreams)
    except ValidationError as exc:
        raise ConfigurationPropagationError(
            ENV_UPSTREAM_ROUTES,
            ConfigurationPropagationError.INVALID,
            str(exc),
        ) from exc
    return Resolution(config=config, defaulted=tuple(defaulted))
