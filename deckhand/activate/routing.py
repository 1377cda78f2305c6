"""Route-table validation and rendering of the proxy configuration.

The front end calls the API through the proxy, so every API prefix the
front end uses must have a proxy location that forwards to the API
upstream. A gap here turns into "request returns the entry document"
at runtime, which is why it is checked before any topology change.
"""

from __future__ import annotations

import logging

from deckhand.errors import RoutingGapError
from deckhand.models.runtime import RouteTable

logger = logging.getLogger(__name__)

REQUIRED_API_PREFIXES: tuple[str, ...] = ("/api/",)

_PROXY_HEADERS: tuple[tuple[str, str], ...] = (
    ("Host", "$host"),
    ("X-Forwarded-Host", "$host"),
    ("X-Real-IP", "$remote_addr"),
    ("X-Forwarded-For", "$proxy_add_x_forwarded_for"),
    ("X-Forwarded-Proto", "$scheme"),
)


def validate_route_table(
    routes: RouteTable,
    api_prefixes: list[str] | tuple[str, ...] = REQUIRED_API_PREFIXES,
) -> None:
    """Raise RoutingGapError unless every API prefix reaches an upstream.

    The table must also carry the ``/`` static fallback that serves the
    single-page entry document.
    """
    missing = routes.missing(api_prefixes)
    if routes.fallback() is None:
        missing.append("/ (static fallback)")
    if missing:
        logger.error("Route table is missing %s", missing)
        raise RoutingGapError(missing)


def render_nginx_conf(routes: RouteTable, *, server_name: str = "_", root: str = "/usr/share/nginx/html") -> str:
    """Render the proxy's nginx server block for *routes*.

    Upstream locations use ``proxy_pass`` without a URI part, so the
    request path (``/api/hello/``) reaches the upstream unchanged.
    """
    lines = [
        "server {",
        "    listen 80;",
        f"    server_name {server_name};",
        f"    root {root};",
        "",
    ]
    ordered = sorted(routes.entries, key=lambda e: len(e.prefix), reverse=True)
    for entry in ordered:
        lines.append(f"    location {entry.prefix} {{")
        if entry.is_fallback:
            lines.append("        try_files $uri $uri/ /index.html;")
        else:
            lines.append(f"        proxy_pass {entry.upstream.url};")
            lines.append("        proxy_http_version 1.1;")
            for header, value in _PROXY_HEADERS:
                lines.append(f"        proxy_set_header {header} {value};")
        lines.append("    }")
        lines.append("")
    lines.append("}")
    return "\n".join(lines) + "\n"
