"""Image Publisher — one revision in, one matched artifact pair out.

Both components are built independently; if either fails nothing is
pushed. The immutable revision tag is pushed for both components before
the mutable ``latest`` tag moves, so a consumer following revision tags
never observes half a release.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from deckhand.errors import AccessError, PublishError
from deckhand.models.artifacts import (
    LATEST_TAG,
    ArtifactPair,
    ArtifactRef,
    BuiltImage,
    Component,
    revision_tag,
)
from deckhand.publish.builders import ImageBuilder, find_baked_configuration
from deckhand.publish.registry import Registry

logger = logging.getLogger(__name__)

_ROOT_USERS = frozenset({"", "root", "0"})


class PublishResult(BaseModel):
    """Outcome of one ``publish`` call.

    ``latest_updated`` is False when the mutable tag could not be moved;
    the revision pair is valid and deployable either way.
    """

    model_config = ConfigDict(frozen=True)

    pair: ArtifactPair
    latest_updated: bool = True


class ImagePublisher:
    """Build and push the api and proxy images of a revision.

    Parameters
    ----------
    builder:
        Any ``ImageBuilder``.
    registry:
        Any ``Registry``; its ``location`` is recorded on the refs.
    """

    def __init__(self, builder: ImageBuilder, registry: Registry) -> None:
        self._builder = builder
        self._registry = registry

    @staticmethod
    def _tag(revision: str) -> str:
        try:
            return revision_tag(revision)
        except ValueError as exc:
            raise PublishError(str(exc), remediation="Use a commit SHA as the revision.") from exc

    def _build_all(
        self, sources: Mapping[Component | str, Path], revision: str
    ) -> dict[Component, BuiltImage]:
        built: dict[Component, BuiltImage] = {}
        failed: dict[str, str] = {}
        for component in Component:
            source = sources.get(component, sources.get(component.value))
            if source is None:
                failed[component.value] = "no source tree given"
                continue
            try:
                image = self._builder.build(component, Path(source), revision)
            except AccessError:
                raise
            except Exception as exc:
                logger.error("Build of %s failed: %s", component.value, exc)
                failed[component.value] = str(exc)
                continue

            baked = find_baked_configuration(image.baked_env)
            if baked:
                logger.error(
                    "%s image bakes runtime configuration: %s", component.value, baked
                )
                failed[component.value] = (
                    f"bakes runtime configuration into the image: {', '.join(baked)}"
                )
                continue
            if image.user in _ROOT_USERS:
                logger.warning(
                    "%s image declares no non-root USER; it will run as root",
                    component.value,
                )
            built[component] = image

        if failed:
            raise PublishError(
                f"Build failed for {', '.join(sorted(failed))}; nothing was pushed",
                built=[c.value for c in built],
                failed=failed,
                remediation="Fix the failing component and publish the revision again.",
            )
        return built

    def publish(
        self, sources: Mapping[Component | str, Path], revision: str
    ) -> PublishResult:
        """Build both components and push them under the revision tag.

        Raises PublishError if either build or upload fails.
        """
        tag = self._tag(revision)
        built = self._build_all(sources, revision)

        refs: dict[Component, ArtifactRef] = {}
        for component, image in built.items():
            try:
                digest = self._registry.push(image, tag, immutable=True)
            except (PublishError, AccessError):
                raise
            except Exception as exc:
                raise PublishError(
                    f"Upload of {component.value}:{tag} failed: {exc}",
                    built=[c.value for c in refs],
                    failed={component.value: str(exc)},
                ) from exc
            refs[component] = ArtifactRef(
                component=component,
                tag=tag,
                registry=self._registry.location,
                digest=digest,
            )
        pair = ArtifactPair(api=refs[Component.API], proxy=refs[Component.PROXY])

        latest_updated = True
        for component, image in built.items():
            try:
                self._registry.push(image, LATEST_TAG)
            except Exception as exc:
                latest_updated = False
                logger.error(
                    "Could not move %s:%s to %s: %s; revision pair %s remains valid",
                    component.value,
                    LATEST_TAG,
                    tag,
                    exc,
                    tag,
                )

        logger.info("Published revision %s to %s", tag, self._registry.location)
        return PublishResult(pair=pair, latest_updated=latest_updated)

    def resolve(self, revision: str) -> ArtifactPair:
        """Look up the published pair for *revision*.

        A revision with only one component in the registry raises
        PublishError: a partial publish is never deployable.
        """
        tag = self._tag(revision)
        digests = {c: self._registry.resolve(c, tag) for c in Component}
        missing = [c.value for c, d in digests.items() if not d]
        if missing:
            raise PublishError(
                f"Revision {tag} is not fully published; missing {', '.join(missing)}",
                built=[c.value for c, d in digests.items() if d],
                failed={m: "not in registry" for m in missing},
                remediation="Publish the revision again; a lone artifact is never deployed.",
            )
        refs = {
            c: ArtifactRef(component=c, tag=tag, registry=self._registry.location, digest=d)
            for c, d in digests.items()
        }
        return ArtifactPair(api=refs[Component.API], proxy=refs[Component.PROXY])
