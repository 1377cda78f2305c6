"""Versioned deployment state with an atomic current-pointer flip.

Each activation stores an immutable DeploymentState under the next version
number for its host and moves the host's current pointer to it, inside a
single ``BEGIN IMMEDIATE`` transaction. The swap is compare-and-set on
the version the caller last saw.

The store also holds a per-host activation lease. A lease row is shared by
every process that opens the same database, so two ``deckhand`` invocations
activating the same host run their stop/start/swap sequences one after the
other instead of interleaving. A lease older than ``lease_seconds`` is
treated as abandoned by a crashed holder and taken over.
"""

from __future__ import annotations

import logging
import os
import socket
import sqlite3
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from deckhand.errors import DeckhandError
from deckhand.models.deployment import DeploymentState

logger = logging.getLogger(__name__)

_CREATE_DEPLOYMENTS = """
CREATE TABLE IF NOT EXISTS deployments (
    host_identifier  TEXT NOT NULL,
    version          INTEGER NOT NULL,
    state_json       TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    PRIMARY KEY (host_identifier, version)
);
"""

_CREATE_CURRENT = """
CREATE TABLE IF NOT EXISTS current_deployment (
    host_identifier  TEXT PRIMARY KEY,
    version          INTEGER NOT NULL
);
"""

_CREATE_LOCKS = """
CREATE TABLE IF NOT EXISTS activation_locks (
    host_identifier  TEXT PRIMARY KEY,
    owner            TEXT NOT NULL,
    acquired_at      REAL NOT NULL
);
"""


class StaleDeploymentError(DeckhandError):
    """Raised when the current deployment changed under a pending swap."""


class ActivationLockedError(DeckhandError):
    """Raised when another activation holds the host's lease past the timeout."""


class DeploymentStateStore:
    """SQLite-backed store of DeploymentState versions per host.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute(_CREATE_DEPLOYMENTS)
            conn.execute(_CREATE_CURRENT)
            conn.execute(_CREATE_LOCKS)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly.
        conn = sqlite3.connect(
            str(self._db_path), isolation_level=None, check_same_thread=False
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current_version(self, host_identifier: str) -> int:
        """Version of the live deployment, 0 when nothing was ever activated."""
        conn = self._connect()
        try:
            return self._current_version(conn, host_identifier)
        finally:
            conn.close()

    def current(self, host_identifier: str) -> DeploymentState | None:
        version = self.current_version(host_identifier)
        return self.get(host_identifier, version) if version else None

    def get(self, host_identifier: str, version: int) -> DeploymentState | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT state_json FROM deployments WHERE host_identifier = ? AND version = ?",
                (host_identifier, version),
            ).fetchone()
        finally:
            conn.close()
        return DeploymentState.model_validate_json(row[0]) if row else None

    def history(self, host_identifier: str) -> list[DeploymentState]:
        """All stored versions for a host, oldest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT state_json FROM deployments WHERE host_identifier = ? ORDER BY version ASC",
                (host_identifier,),
            ).fetchall()
        finally:
            conn.close()
        return [DeploymentState.model_validate_json(row[0]) for row in rows]

    def previous(self, host_identifier: str) -> DeploymentState | None:
        """The deployment that the live one replaced, if any."""
        current = self.current(host_identifier)
        if current is None or current.previous_version is None:
            return None
        return self.get(host_identifier, current.previous_version)

    # ------------------------------------------------------------------
    # Atomic swap
    # ------------------------------------------------------------------

    def swap(self, state: DeploymentState, *, expected_version: int) -> DeploymentState:
        """Store *state* as the next version and make it current.

        Raises StaleDeploymentError if the host's current version is no
        longer *expected_version*. Returns the stored state with its
        ``version`` and ``previous_version`` set.
        """
        host_id = state.host_identifier
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            current = self._current_version(conn, host_id)
            if current != expected_version:
                raise StaleDeploymentError(
                    f"Deployment for {host_id} moved to version {current} "
                    f"(expected {expected_version}); refusing to overwrite it."
                )
            (latest,) = conn.execute(
                "SELECT COALESCE(MAX(version), 0) FROM deployments WHERE host_identifier = ?",
                (host_id,),
            ).fetchone()
            sealed = state.model_copy(
                update={"version": latest + 1, "previous_version": current or None}
            )
            conn.execute(
                "INSERT INTO deployments (host_identifier, version, state_json, created_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    host_id,
                    sealed.version,
                    sealed.model_dump_json(),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.execute(
                "INSERT OR REPLACE INTO current_deployment (host_identifier, version) "
                "VALUES (?, ?)",
                (host_id, sealed.version),
            )
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        logger.info(
            "Deployment for %s is now version %d (revision %s)",
            host_id,
            sealed.version,
            sealed.revision,
        )
        return sealed

    # ------------------------------------------------------------------
    # Activation lease
    # ------------------------------------------------------------------

    def try_acquire(
        self, host_identifier: str, owner: str, *, lease_seconds: float = 1800.0
    ) -> bool:
        """Take the activation lease for a host if it is free or expired."""
        now = time.time()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT owner, acquired_at FROM activation_locks WHERE host_identifier = ?",
                (host_identifier,),
            ).fetchone()
            if row is not None and row[0] != owner:
                if now - row[1] < lease_seconds:
                    conn.execute("ROLLBACK")
                    return False
                logger.warning(
                    "Taking over expired activation lease on %s from %s",
                    host_identifier,
                    row[0],
                )
            conn.execute(
                "INSERT OR REPLACE INTO activation_locks (host_identifier, owner, acquired_at) "
                "VALUES (?, ?, ?)",
                (host_identifier, owner, now),
            )
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        return True

    def release(self, host_identifier: str, owner: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "DELETE FROM activation_locks WHERE host_identifier = ? AND owner = ?",
                (host_identifier, owner),
            )
        finally:
            conn.close()

    @contextmanager
    def activation_lock(
        self,
        host_identifier: str,
        *,
        timeout: float = 600.0,
        poll_interval: float = 0.5,
        lease_seconds: float = 1800.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[str]:
        """Hold the host's activation lease for the duration of the block.

        Waits up to *timeout* seconds for another holder to finish, then
        raises ActivationLockedError.
        """
        owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        deadline = time.monotonic() + timeout
        while not self.try_acquire(host_identifier, owner, lease_seconds=lease_seconds):
            if time.monotonic() >= deadline:
                raise ActivationLockedError(
                    f"Another activation of {host_identifier} is in progress; "
                    f"gave up after {timeout:g}s."
                )
            sleep(poll_interval)
        logger.debug("Activation lease on %s held by %s", host_identifier, owner)
        try:
            yield owner
        finally:
            self.release(host_identifier, owner)

    @staticmethod
    def _current_version(conn: sqlite3.Connection, host_identifier: str) -> int:
        row = conn.execute(
            "SELECT version FROM current_deployment WHERE host_identifier = ?",
            (host_identifier,),
        ).fetchone()
        return row[0] if row else 0
