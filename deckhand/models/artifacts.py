"""Artifact references — two per revision, always consumed as a matched pair."""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, model_validator

LATEST_TAG = "latest"

_HEX_REVISION = re.compile(r"^[0-9a-f]{7,64}$")
_TAG_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class Component(str, Enum):
    """The two deployable units of the two-tier demo."""

    API = "api"
    PROXY = "proxy"


def revision_tag(revision: str) -> str:
    """Derive the immutable image tag for a source revision.

    Git SHAs are shortened to 12 characters; anything else is sanitized to
    the registry tag alphabet and capped at 128 characters.
    """
    revision = revision.strip()
    if not revision:
        raise ValueError("revision must not be empty")
    if _HEX_REVISION.match(revision):
        return revision[:12]
    tag = _TAG_UNSAFE.sub("-", revision).lstrip(".-")[:128]
    if not tag or tag == LATEST_TAG:
        raise ValueError(f"revision {revision!r} cannot be used as an image tag")
    return tag


class ArtifactRef(BaseModel):
    """A published image in the shared registry.

    The ``digest`` is "sha256:<hex>" of the pushed image.
    """

    model_config = ConfigDict(frozen=True)

    component: Component
    tag: str
    registry: str
    digest: str = ""

    @property
    def repository(self) -> str:
        return f"{self.registry}/{self.component.value}"

    @property
    def image(self) -> str:
        return f"{self.repository}:{self.tag}"


class ArtifactPair(BaseModel):
    """The api and proxy artifacts of one revision.

    A lone artifact is never deployable, so the pair cannot be constructed
    unless both sides exist, carry the right component and share a tag.
    """

    model_config = ConfigDict(frozen=True)

    api: ArtifactRef
    proxy: ArtifactRef

    @model_validator(mode="after")
    def _matched(self) -> ArtifactPair:
        if self.api.component != Component.API:
            raise ValueError(f"api slot holds a {self.api.component.value} artifact")
        if self.proxy.component != Component.PROXY:
            raise ValueError(f"proxy slot holds a {self.proxy.component.value} artifact")
        if self.api.tag != self.proxy.tag:
            raise ValueError(
                f"artifact tags do not match: api={self.api.tag!r}, "
                f"proxy={self.proxy.tag!r}"
            )
        return self

    @property
    def tag(self) -> str:
        return self.api.tag

    def refs(self) -> list[ArtifactRef]:
        return [self.api, self.proxy]


class BuiltImage(BaseModel):
    """Builder output for one component, before it is pushed.

    ``baked_env`` lists environment keys the build description sets inside
    the image; ``user`` is the declared runtime user ("" if none).
    """

    model_config = ConfigDict(frozen=True)

    component: Component
    digest: str
    payload: bytes = b""
    local_ref: str = ""
    baked_env: list[str] = []
    user: str = ""
