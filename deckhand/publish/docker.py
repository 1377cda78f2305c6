"""Docker CLI builder and registry.

Credentials are whatever ``docker login`` stored for the executing user;
deckhand treats them as opaque and never passes them into a build.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable
from pathlib import Path

from deckhand.errors import AccessError, DeckhandError, PublishError
from deckhand.models.artifacts import BuiltImage, Component, revision_tag
from deckhand.publish.builders import BuildFailure, read_build_description
from deckhand.publish.registry import tag_conflict

logger = logging.getLogger(__name__)

_ACCESS_MARKERS = ("denied", "unauthorized", "permission denied", "forbidden")

Runner = Callable[..., subprocess.CompletedProcess]


def is_access_failure(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _ACCESS_MARKERS)


def run_cli(argv: list[str], run: Runner = subprocess.run) -> subprocess.CompletedProcess:
    """Run a CLI command, mapping permission failures to AccessError.

    Other non-zero exits are returned to the caller to interpret.
    """
    try:
        proc = run(argv, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise DeckhandError(
            f"{argv[0]} not found on PATH",
            remediation=f"Install {argv[0]} or use DECKHAND_BACKEND=local.",
        ) from exc
    if proc.returncode != 0 and is_access_failure(proc.stderr or ""):
        raise AccessError(
            f"{' '.join(argv[:2])} was refused: {(proc.stderr or '').strip()}",
            remediation="Log in to the registry (docker login) and make sure the "
            "executing user is in the docker group.",
        )
    return proc


class DockerBuilder:
    """Build component images with ``docker build``."""

    def __init__(self, *, docker_bin: str = "docker", run: Runner = subprocess.run) -> None:
        self._docker = docker_bin
        self._run = run

    def build(self, component: Component, source: Path, revision: str) -> BuiltImage:
        source = Path(source)
        env_keys, user = read_build_description(source)
        local_ref = f"deckhand-{component.value}:{revision_tag(revision)}"

        proc = run_cli([self._docker, "build", "-t", local_ref, str(source)], self._run)
        if proc.returncode != 0:
            raise BuildFailure((proc.stderr or "").strip() or "docker build failed")
        proc = run_cli(
            [self._docker, "image", "inspect", "--format", "{{.Id}}", local_ref], self._run
        )
        if proc.returncode != 0:
            raise BuildFailure(f"built image {local_ref} cannot be inspected")

        return BuiltImage(
            component=component,
            digest=proc.stdout.strip(),
            local_ref=local_ref,
            baked_env=env_keys,
            user=user,
        )


class DockerRegistry:
    """Push and look up tags in a remote registry through the docker CLI."""

    def __init__(
        self, location: str, *, docker_bin: str = "docker", run: Runner = subprocess.run
    ) -> None:
        self.location = location
        self._docker = docker_bin
        self._run = run

    def _target(self, component: Component, tag: str) -> str:
        return f"{self.location}/{component.value}:{tag}"

    def push(self, image: BuiltImage, tag: str, *, immutable: bool = False) -> str:
        if immutable:
            existing = self.config_digests(image.component, tag)
            if existing is not None and image.digest in existing:
                return image.digest
            if existing is not None:
                raise tag_conflict(
                    image.component, tag, existing[0] if existing else "an image index", image.digest
                )

        target = self._target(image.component, tag)
        for argv in (
            [self._docker, "tag", image.local_ref, target],
            [self._docker, "push", target],
        ):
            proc = run_cli(argv, self._run)
            if proc.returncode != 0:
                raise PublishError(
                    f"{argv[1]} {target} failed: {(proc.stderr or '').strip()}",
                    failed={image.component.value: "upload failed"},
                )
        logger.info("Pushed %s (%s)", target, image.digest)
        return image.digest

    def resolve(self, component: Component, tag: str) -> str | None:
        digests = self.config_digests(component, tag)
        if digests is None:
            return None
        return digests[0] if digests else "unknown"

    def config_digests(self, component: Component, tag: str) -> list[str] | None:
        """Image IDs behind a tag, one per platform. ``None`` if the tag is absent.

        A single-platform manifest names its config directly. A manifest
        list or OCI index is followed one level to each platform manifest;
        attestation entries (platform ``unknown``) are skipped.
        """
        target = self._target(component, tag)
        manifest = self._inspect(target)
        if manifest is None:
            return None
        config = manifest.get("config", {}).get("digest")
        if config:
            return [config]

        repository = target.rsplit(":", 1)[0]
        digests: list[str] = []
        for entry in manifest.get("manifests", []):
            if entry.get("platform", {}).get("os") == "unknown" or not entry.get("digest"):
                continue
            child = self._inspect(f"{repository}@{entry['digest']}")
            if child is None:
                continue
            digest = child.get("config", {}).get("digest")
            if digest:
                digests.append(digest)
        return digests

    def _inspect(self, reference: str) -> dict | None:
        proc = run_cli([self._docker, "manifest", "inspect", reference], self._run)
        if proc.returncode != 0:
            return None
        return json.loads(proc.stdout or "{}")
