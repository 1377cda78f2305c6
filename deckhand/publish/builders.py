"""Image builders and the configuration-free artifact check.

An artifact is built once per revision and promoted unchanged, so nothing
environment-specific may be baked into it. The build description (the
component's Dockerfile) is scanned for ``ENV`` instructions that set a
runtime key or something that looks like a secret.
"""

from __future__ import annotations

import io
import logging
import re
import shlex
import tarfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from deckhand.core.hasher import sha256_hex
from deckhand.models.artifacts import BuiltImage, Component, revision_tag
from deckhand.models.runtime import RUNTIME_ENV_KEYS

logger = logging.getLogger(__name__)

DOCKERFILE = "Dockerfile"

_SECRET_LIKE = re.compile(
    r"(SECRET|PASSWORD|PASSWD|TOKEN|API_KEY|PRIVATE_KEY|CREDENTIAL)", re.IGNORECASE
)
_EXCLUDED_DIRS = frozenset({".git", "__pycache__", "node_modules"})


class BuildFailure(RuntimeError):
    """A single component failed to build."""


@runtime_checkable
class ImageBuilder(Protocol):
    """Protocol for component image builders."""

    def build(self, component: Component, source: Path, revision: str) -> BuiltImage:
        """Build *component* from *source*. Raise BuildFailure on failure."""
        ...


def _logical_lines(text: str) -> list[str]:
    """Join backslash continuations and drop comments."""
    lines: list[str] = []
    buffer = ""
    for raw in text.splitlines():
        stripped = raw.strip()
        if not buffer and (not stripped or stripped.startswith("#")):
            continue
        if stripped.endswith("\\"):
            buffer += stripped[:-1] + " "
            continue
        lines.append(buffer + stripped)
        buffer = ""
    if buffer:
        lines.append(buffer)
    return lines


def parse_dockerfile(text: str) -> tuple[list[str], str]:
    """Return (environment keys set by ENV, last declared USER)."""
    env_keys: list[str] = []
    user = ""
    for line in _logical_lines(text):
        instruction, _, rest = line.partition(" ")
        instruction = instruction.upper()
        if instruction == "ENV":
            tokens = shlex.split(rest)
            if tokens and "=" not in tokens[0]:
                # Legacy form: ENV KEY value
                env_keys.append(tokens[0])
            else:
                env_keys.extend(t.split("=", 1)[0] for t in tokens if "=" in t)
        elif instruction == "USER":
            user = rest.strip().split(":", 1)[0]
    return env_keys, user


def find_baked_configuration(env_keys: list[str]) -> list[str]:
    """Keys that must come from the runtime environment, not the image."""
    return sorted(
        {k for k in env_keys if k in RUNTIME_ENV_KEYS or _SECRET_LIKE.search(k)}
    )


def _deterministic_tar(source: Path) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for path in sorted(source.rglob("*")):
            rel = path.relative_to(source)
            if not path.is_file() or _EXCLUDED_DIRS.intersection(rel.parts):
                continue
            data = path.read_bytes()
            info = tarfile.TarInfo(name=rel.as_posix())
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def read_build_description(source: Path) -> tuple[list[str], str]:
    """Read and parse the component's Dockerfile."""
    dockerfile = source / DOCKERFILE
    if not dockerfile.is_file():
        raise BuildFailure(f"{source} has no {DOCKERFILE}")
    return parse_dockerfile(dockerfile.read_text(encoding="utf-8"))


class DirectoryBuilder:
    """Packages a source tree as a reproducible tarball image.

    The same tree always yields the same digest, so re-publishing an
    unchanged revision is a no-op at the registry.
    """

    def build(self, component: Component, source: Path, revision: str) -> BuiltImage:
        source = Path(source)
        if not source.is_dir():
            raise BuildFailure(f"source directory {source} does not exist")
        env_keys, user = read_build_description(source)
        payload = _deterministic_tar(source)
        digest = f"sha256:{sha256_hex(payload)}"
        logger.debug("Built %s from %s as %s", component.value, source, digest)
        return BuiltImage(
            component=component,
            digest=digest,
            payload=payload,
            local_ref=f"{component.value}:{revision_tag(revision)}",
            baked_env=env_keys,
            user=user,
        )
