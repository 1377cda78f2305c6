"""Error taxonomy for the provision → publish → activate pipeline.

Every error here is fatal to the pipeline run that raised it. Nothing is
downgraded to a warning, and a failed run must leave the previously
activated topology serving traffic.
"""

from __future__ import annotations


class DeckhandError(RuntimeError):
    """Base class for stage-boundary failures.

    ``remediation`` is a human-actionable hint printed by the CLI.
    """

    remediation: str = ""

    def __init__(self, message: str, *, remediation: str = "") -> None:
        super().__init__(message)
        if remediation:
            self.remediation = remediation


class ProvisioningError(DeckhandError):
    """The provider rejected a resource request. Never retried automatically."""


class PublishError(DeckhandError):
    """A build or upload failed; no partial artifact pair is produced."""

    def __init__(
        self,
        message: str,
        *,
        built: list[str] | None = None,
        failed: dict[str, str] | None = None,
        remediation: str = "",
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.built = list(built or [])
        self.failed = dict(failed or {})


class ConfigurationPropagationError(DeckhandError):
    """A required runtime configuration value did not reach the service.

    ``reason`` separates a value that was never supplied (``absent``) from
    one that was supplied but never delivered to the running process
    (``undelivered``). Both look identical to an end user: a rejected
    request.
    """

    ABSENT = "absent"
    UNDELIVERED = "undelivered"
    INVALID = "invalid"

    def __init__(
        self, key: str, reason: str, message: str, *, remediation: str = ""
    ) -> None:
        super().__init__(f"{key} ({reason}): {message}", remediation=remediation)
        self.key = key
        self.reason = reason


class RoutingGapError(DeckhandError):
    """The proxy route table does not cover a path the front end calls."""

    def __init__(self, missing: list[str], *, remediation: str = "") -> None:
        super().__init__(
            f"Route table has no entry for: {', '.join(missing)}",
            remediation=remediation
            or "Add a location for each prefix to the proxy route table.",
        )
        self.missing = list(missing)


class AccessError(DeckhandError):
    """The executing principal lacks rights to the container engine or registry."""


class RegistryPullError(DeckhandError):
    """An image could not be pulled after all retry attempts."""
