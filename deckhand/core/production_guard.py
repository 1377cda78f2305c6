"""Production configuration guard — enforces hard constraints in production.

The guard runs once when the pipeline is wired up and fails hard
(raises ``ProductionConfigError``) if any constraint is violated. Other
code should not scatter ``if is_production`` checks.
"""

from __future__ import annotations

import logging

from deckhand.config import DeckhandSettings

logger = logging.getLogger(__name__)


class ProductionConfigError(RuntimeError):
    """Raised when production configuration constraints are violated.

    The process cannot safely deploy with the current configuration and
    should exit.
    """


def enforce_production_constraints(settings: DeckhandSettings) -> None:
    """Validate all production-critical settings.

    Constraints enforced in production
    ----------------------------------
    1. Debug mode must be disabled.
    2. The simulated ``local`` backend must not be used.
    3. An SSH key must be configured to reach the host.
    4. The allow-host policy must be ``strict``, so a missing allow-list
       fails at startup instead of defaulting to ``*``.

    Raises
    ------
    ProductionConfigError
        Listing every violation at once.
    """
    if not settings.is_production:
        return

    violations: list[str] = []

    if settings.debug:
        violations.append(
            "debug=True is not allowed in production. Set DECKHAND_DEBUG=false."
        )
    if settings.backend == "local":
        violations.append(
            "backend=local simulates the cloud and registry. Set DECKHAND_BACKEND=docker."
        )
    if settings.ssh_key_path is None:
        violations.append(
            "No SSH key configured for host access. Set DECKHAND_SSH_KEY_PATH."
        )
    if settings.allowed_hosts_policy != "strict":
        violations.append(
            "allowed_hosts_policy must be 'strict' in production. "
            "Set DECKHAND_ALLOWED_HOSTS_POLICY=strict."
        )

    if violations:
        msg = "Production configuration guard failed.\n" + "\n".join(
            f"  - {v}" for v in violations
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production configuration guard passed.")
