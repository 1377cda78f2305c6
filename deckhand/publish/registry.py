"""Registry protocol and the local content-addressed registry."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from deckhand.core.artifact_store import ContentAddressedStore
from deckhand.errors import PublishError
from deckhand.models.artifacts import BuiltImage, Component

logger = logging.getLogger(__name__)


@runtime_checkable
class Registry(Protocol):
    """Protocol for the shared image registry."""

    location: str

    def push(self, image: BuiltImage, tag: str, *, immutable: bool = False) -> str:
        """Push *image* under *tag* and return its digest.

        With ``immutable=True`` an existing tag pointing at a different
        digest raises ``PublishError``.
        """
        ...

    def resolve(self, component: Component, tag: str) -> str | None:
        """Digest currently tagged *tag*, or None."""
        ...


def tag_conflict(component: Component, tag: str, existing: str, new: str) -> PublishError:
    return PublishError(
        f"{component.value}:{tag} already exists with digest {existing}; "
        f"refusing to overwrite it with {new}",
        failed={component.value: "immutable tag conflict"},
        remediation="Revision tags are immutable. Publish a new revision instead.",
    )


class LocalRegistry:
    """Registry backed by a ContentAddressedStore and a JSON tag index.

    Parameters
    ----------
    base_path:
        Directory for blobs (``blobs/``) and the tag index (``tags.json``).
    location:
        Registry location recorded on every ArtifactRef.
    """

    def __init__(self, base_path: Path, *, location: str = "registry.local/twotier") -> None:
        self.location = location
        self._base = Path(base_path)
        self._blobs = ContentAddressedStore(self._base / "blobs")
        self._index_path = self._base / "tags.json"
        self._lock = threading.Lock()

    def _load_index(self) -> dict[str, dict[str, str]]:
        if not self._index_path.exists():
            return {}
        return json.loads(self._index_path.read_text(encoding="utf-8"))

    def _save_index(self, index: dict[str, dict[str, str]]) -> None:
        self._index_path.write_text(json.dumps(index, indent=2, sort_keys=True), encoding="utf-8")

    def push(self, image: BuiltImage, tag: str, *, immutable: bool = False) -> str:
        with self._lock:
            index = self._load_index()
            tags = index.setdefault(image.component.value, {})
            existing = tags.get(tag)
            if existing == image.digest:
                logger.debug("%s:%s already at %s", image.component.value, tag, existing)
                return existing
            if immutable and existing is not None:
                raise tag_conflict(image.component, tag, existing, image.digest)
            if image.payload:
                self._blobs.store(image.payload)
            tags[tag] = image.digest
            self._save_index(index)
        logger.info("Pushed %s/%s:%s (%s)", self.location, image.component.value, tag, image.digest)
        return image.digest

    def resolve(self, component: Component, tag: str) -> str | None:
        with self._lock:
            return self._load_index().get(component.value, {}).get(tag)

    def tags(self, component: Component) -> dict[str, str]:
        with self._lock:
            return dict(self._load_index().get(component.value, {}))

    def fetch(self, component: Component, tag: str) -> bytes:
        """Image payload for *component* at *tag*."""
        digest = self.resolve(component, tag)
        if digest is None:
            raise FileNotFoundError(f"{self.location}/{component.value}:{tag} not found")
        return self._blobs.retrieve(digest)
