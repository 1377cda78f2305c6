"""Deckhand: deployment configuration resolver for a two-tier web demo.

Provisions a single host, publishes the api and proxy images of a
revision as a matched pair, and activates them with configuration
supplied from the environment at activation time:
  - Idempotent provisioning with address-change notification
  - Configuration-free, immutably tagged artifacts
  - Allow-host resolution that never yields an empty allow-list
  - Route-table validation before any topology change
  - Delivery verification against the running process environment
  - Atomic, versioned deployment state with rollback
  - Hash-chained run ledger and Rich run monitor
"""

__version__ = "0.1.0"
__description__ = "Deployment configuration resolver for a two-tier web demo"

from deckhand.core.orchestrator import Orchestrator
from deckhand.monitor.projection import MonitorProjection
from deckhand.cli.app import app as cli

__all__ = ["Orchestrator", "MonitorProjection", "cli", "__version__"]
