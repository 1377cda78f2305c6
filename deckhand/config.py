"""Operator configuration — env-driven, read once per process.

Centralized settings using pydantic-settings. Reads from a .env file and
DECKHAND_* environment variables. These settings describe *how deckhand
runs* (paths, backends, retry policy); they are never baked into artifacts
and never confused with the RuntimeConfiguration injected into the
deployed services at activation time.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class DeckhandSettings(BaseSettings):
    """Deckhand settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export DECKHAND_ENVIRONMENT=production
        export DECKHAND_BACKEND=docker
        export DECKHAND_SSH_KEY_PATH=~/.ssh/demo.pem

    Or via .env file::

        DECKHAND_REGISTRY_URL=docker.io/acme
        DECKHAND_PULL_ATTEMPTS=5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DECKHAND_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    ledger_path: Path = Path(".deckhand/ledger.db")
    state_path: Path = Path(".deckhand/deployments.db")
    registry_path: Path = Path(".deckhand/registry")
    provider_state_path: Path = Path(".deckhand/provider.json")
    engine_state_path: Path = Path(".deckhand/engine.json")

    # Backends: "local" simulates cloud, registry and host; "docker" drives
    # terraform, the docker CLI and docker compose over ssh.
    backend: str = "local"
    registry_url: str = "registry.local/twotier"
    terraform_dir: Path = Path("infra")
    ssh_user: str = "ubuntu"
    ssh_key_path: Path | None = None
    max_instances: int = 1

    # Activation policy
    pull_attempts: int = 3
    pull_backoff_seconds: float = 2.0
    activation_lock_timeout_seconds: float = 600.0
    allowed_hosts_policy: str = "permissive"  # or "strict"
    required_api_prefixes: list[str] = ["/api/"]

    # Trigger serialization: "queue" or "supersede"
    trigger_policy: str = "queue"

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


# Module-level singleton — import as `from deckhand.config import config`
config = DeckhandSettings()
