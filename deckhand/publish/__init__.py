"""Image publishing: build both components, push a matched pair."""

from deckhand.publish.builders import BuildFailure, DirectoryBuilder, ImageBuilder
from deckhand.publish.docker import DockerBuilder, DockerRegistry
from deckhand.publish.publisher import ImagePublisher, PublishResult
from deckhand.publish.registry import LocalRegistry, Registry

__all__ = [
    "BuildFailure",
    "DirectoryBuilder",
    "DockerBuilder",
    "DockerRegistry",
    "ImageBuilder",
    "ImagePublisher",
    "LocalRegistry",
    "PublishResult",
    "Registry",
]
