"""Provisioning: one TopologyDescription in, one HostRecord out."""

from deckhand.provision.backends import LocalProvider, ProviderBackend, TerraformProvider
from deckhand.provision.provisioner import ProvisionResult, Provisioner

__all__ = [
    "LocalProvider",
    "ProviderBackend",
    "ProvisionResult",
    "Provisioner",
    "TerraformProvider",
]
