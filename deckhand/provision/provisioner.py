"""Provisioner — converges a TopologyDescription to exactly one host.

Provisioning is idempotent: a description whose fingerprint matches the
one recorded on the existing host is a no-op and the backend is never
called. Any backend failure is re-raised as ``ProvisioningError`` and is
never retried; quota and limit errors need a human.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

from deckhand.errors import ProvisioningError
from deckhand.models.host import HostRecord, TopologyDescription
from deckhand.provision.backends import ProviderBackend

logger = logging.getLogger(__name__)

AddressListener = Callable[[HostRecord, str], None]


class ProvisionResult(BaseModel):
    """Outcome of one ``provision`` call."""

    model_config = ConfigDict(frozen=True)

    host: HostRecord
    changed: bool
    address_changed: bool = False
    previous_address: str | None = None


class Provisioner:
    """Provision the single host described by a TopologyDescription.

    Parameters
    ----------
    backend:
        Any ``ProviderBackend`` (local simulation or Terraform).
    """

    def __init__(self, backend: ProviderBackend) -> None:
        self._backend = backend
        self._listeners: list[AddressListener] = []

    def add_listener(self, listener: AddressListener) -> None:
        """Register ``listener(host, previous_address)`` for address changes."""
        self._listeners.append(listener)

    def lookup(self, description: TopologyDescription) -> HostRecord | None:
        """Current host for *description*, without side effects."""
        try:
            return self._backend.lookup(description.host_identifier)
        except ProvisioningError:
            raise
        except Exception as exc:
            raise ProvisioningError(
                f"Could not look up {description.host_identifier}: {exc}"
            ) from exc

    def provision(self, description: TopologyDescription) -> ProvisionResult:
        """Create or converge the host. Idempotent for an unchanged description."""
        existing = self.lookup(description)
        fingerprint = description.fingerprint()

        if existing is not None and existing.description_fingerprint == fingerprint:
            logger.info(
                "Host %s already matches its description; nothing to do",
                existing.identifier,
            )
            return ProvisionResult(host=existing, changed=False)

        logger.info(
            "Applying topology for %s (%s, %s)",
            description.host_identifier,
            description.region,
            description.instance_class,
        )
        try:
            host = self._backend.apply(description)
        except ProvisioningError as exc:
            logger.error("Provisioning %s failed: %s", description.host_identifier, exc)
            raise
        except Exception as exc:
            logger.error("Provisioning %s failed: %s", description.host_identifier, exc)
            raise ProvisioningError(
                f"Provider rejected {description.host_identifier}: {exc}"
            ) from exc

        previous_address = existing.address if existing else None
        address_changed = previous_address is not None and previous_address != host.address
        if address_changed:
            logger.warning(
                "Host %s address changed %s -> %s; downstream consumers must re-resolve it",
                host.identifier,
                previous_address,
                host.address,
            )
            for listener in self._listeners:
                listener(host, previous_address)

        return ProvisionResult(
            host=host,
            changed=True,
            address_changed=address_changed,
            previous_address=previous_address,
        )

    def teardown(self, description: TopologyDescription) -> bool:
        """Destroy the host. Returns False if it did not exist."""
        try:
            removed = self._backend.destroy(description.host_identifier)
        except ProvisioningError:
            raise
        except Exception as exc:
            raise ProvisioningError(
                f"Could not destroy {description.host_identifier}: {exc}"
            ) from exc
        if removed:
            logger.info("Destroyed host %s", description.host_identifier)
        return removed
