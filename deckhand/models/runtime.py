"""Runtime configuration and proxy route table.

Both are supplied at activation time and never baked into an artifact.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Environment keys injected into the API container.
ENV_ALLOWED_HOSTS = "ALLOWED_HOSTS"
ENV_DEBUG = "DEBUG"
ENV_UPSTREAM_ROUTES = "UPSTREAM_ROUTES"
RUNTIME_ENV_KEYS: tuple[str, ...] = (ENV_ALLOWED_HOSTS, ENV_DEBUG, ENV_UPSTREAM_ROUTES)

STATIC_FALLBACK = "static-fallback"
WILDCARD_HOST = "*"


class Upstream(BaseModel):
    """An internal service address the proxy forwards to."""

    model_config = ConfigDict(frozen=True)

    service: str
    port: int = Field(ge=1, le=65535)

    @classmethod
    def parse(cls, value: str) -> Upstream:
        """Parse ``"service:port"``."""
        service, sep, port = value.strip().rpartition(":")
        if not sep or not service or not port.isdigit():
            raise ValueError(f"upstream {value!r} is not of the form service:port")
        return cls(service=service, port=int(port))

    @property
    def url(self) -> str:
        return f"http://{self.service}:{self.port}"

    def __str__(self) -> str:
        return f"{self.service}:{self.port}"


def _coerce_upstream(value: Any) -> Any:
    return Upstream.parse(value) if isinstance(value, str) else value


def parse_upstream_routes(raw: str) -> dict[str, Upstream]:
    """Parse ``"/api/=api:8000,/admin/=api:8000"`` into a route map."""
    routes: dict[str, Upstream] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        prefix, sep, target = item.partition("=")
        if not sep:
            raise ValueError(f"route {item!r} is not of the form prefix=service:port")
        routes[prefix.strip()] = Upstream.parse(target)
    return routes


def format_upstream_routes(routes: Mapping[str, Upstream]) -> str:
    return ",".join(f"{prefix}={routes[prefix]}" for prefix in sorted(routes))


def default_upstreams() -> dict[str, Upstream]:
    return {"/api/": Upstream(service="api", port=8000)}


class RuntimeConfiguration(BaseModel):
    """Configuration read by the running services at process start.

    ``allowed_hosts`` may never be empty: an empty allow-list rejects every
    request with a generic client error, which is the failure this model
    exists to rule out.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    allowed_hosts: tuple[str, ...]
    debug: bool = False
    upstreams: dict[str, Upstream] = Field(default_factory=default_upstreams)

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def _split_hosts(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple)):
            value = tuple(h.strip() for h in value if h and h.strip())
            if not value:
                raise ValueError(
                    "allowed_hosts resolved to an empty allow-list, "
                    "which would reject every request"
                )
        return value

    @field_validator("upstreams", mode="before")
    @classmethod
    def _parse_upstreams(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_upstream_routes(value)
        if isinstance(value, Mapping):
            return {prefix: _coerce_upstream(v) for prefix, v in value.items()}
        return value

    def allows_host(self, host: str) -> bool:
        """Match a request Host header against the allow-list.

        ``*`` matches anything, ``.example.com`` matches the domain and its
        subdomains, anything else must match exactly. Ports are ignored.
        """
        host = host.strip().lower()
        if host.count(":") == 1:
            host = host.split(":", 1)[0]
        for pattern in self.allowed_hosts:
            pattern = pattern.lower()
            if pattern == WILDCARD_HOST:
                return True
            if pattern.startswith("."):
                if host == pattern[1:] or host.endswith(pattern):
                    return True
            elif host == pattern:
                return True
        return False

    def to_environment(self) -> dict[str, str]:
        """The environment map injected into the API container."""
        return {
            ENV_ALLOWED_HOSTS: ",".join(self.allowed_hosts),
            ENV_DEBUG: "true" if self.debug else "false",
            ENV_UPSTREAM_ROUTES: format_upstream_routes(self.upstreams),
        }


class RouteEntry(BaseModel):
    """One proxy location. ``upstream=None`` serves static content."""

    model_config = ConfigDict(frozen=True)

    prefix: str
    upstream: Upstream | None = None

    @field_validator("prefix")
    @classmethod
    def _slash_delimited(cls, value: str) -> str:
        if not value.startswith("/") or not value.endswith("/"):
            raise ValueError(f"route prefix {value!r} must start and end with '/'")
        return value

    @field_validator("upstream", mode="before")
    @classmethod
    def _parse_target(cls, value: Any) -> Any:
        if value == STATIC_FALLBACK:
            return None
        return _coerce_upstream(value)

    @property
    def is_fallback(self) -> bool:
        return self.upstream is None


class RouteTable(BaseModel):
    """Path-prefix routing owned by the proxy configuration."""

    model_config = ConfigDict(frozen=True)

    entries: tuple[RouteEntry, ...]

    @model_validator(mode="after")
    def _unique_prefixes(self) -> RouteTable:
        prefixes = [e.prefix for e in self.entries]
        duplicates = sorted({p for p in prefixes if prefixes.count(p) > 1})
        if duplicates:
            raise ValueError(f"duplicate route prefixes: {duplicates}")
        return self

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> RouteTable:
        """Build from ``{"/api/": "api:8000", "/": "static-fallback"}``."""
        return cls(
            entries=tuple(
                RouteEntry(prefix=prefix, upstream=target)
                for prefix, target in mapping.items()
            )
        )

    @classmethod
    def from_runtime(cls, config: RuntimeConfiguration) -> RouteTable:
        """Upstream entries from the runtime map plus the ``/`` fallback."""
        mapping: dict[str, Any] = dict(config.upstreams)
        mapping.setdefault("/", STATIC_FALLBACK)
        return cls.from_mapping(mapping)

    @property
    def prefixes(self) -> list[str]:
        return [e.prefix for e in self.entries]

    def match(self, path: str) -> RouteEntry | None:
        """Longest-prefix match for a request path."""
        best: RouteEntry | None = None
        for entry in self.entries:
            if path.startswith(entry.prefix) or path == entry.prefix.rstrip("/"):
                if best is None or len(entry.prefix) > len(best.prefix):
                    best = entry
        return best

    def missing(self, api_prefixes: list[str] | tuple[str, ...]) -> list[str]:
        """API prefixes that would not reach an upstream.

        A prefix that only matches the static fallback counts as missing:
        the proxy would answer with the entry document instead of the API.
        """
        gaps = []
        for prefix in api_prefixes:
            entry = self.match(prefix)
            if entry is None or entry.is_fallback:
                gaps.append(prefix)
        return gaps

    def fallback(self) -> RouteEntry | None:
        for entry in self.entries:
            if entry.prefix == "/" and entry.is_fallback:
                return entry
        return None
