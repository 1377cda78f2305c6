"""Adversarial tests — ledger tampering and chain integrity.

These tests verify that the Run Ledger detects:
1. Corrupted entry hashes (tampered content)
2. Broken chain links (reordered/deleted entries)
3. A rewritten failure record (a failed activation made to look passed)
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from deckhand.core.run_ledger import LedgerIntegrityError, RunLedger
from deckhand.models.ledger import LedgerEntry
from deckhand.monitor.projection import MonitorProjection


def _execute(ledger: RunLedger, sql: str, params: tuple) -> None:
    conn = sqlite3.connect(str(ledger._db_path))
    conn.execute(sql, params)
    conn.commit()
    conn.close()


_NTH_ENTRY = (
    "(SELECT id FROM run_ledger WHERE run_id = ? ORDER BY id ASC LIMIT 1 OFFSET ?)"
)


class TestLedgerTamperDetection:
    """Direct SQLite manipulation to simulate an attacker with DB access."""

    @pytest.fixture
    def seeded_ledger(self, tmp_path: Path) -> tuple[RunLedger, str]:
        """Seed a ledger with a complete three-stage run."""
        ledger = RunLedger(tmp_path / "ledger.db")
        run_id = "dh-adversarial-001"
        for stage_id in ("provision", "publish", "activate"):
            ledger.append(LedgerEntry(
                run_id=run_id, stage_id=stage_id,
                state_transition="not_started->running",
            ))
            ledger.append(LedgerEntry(
                run_id=run_id, stage_id=stage_id,
                state_transition="running->passed",
            ))
        return ledger, run_id

    def test_corrupted_entry_hash_detected(self, seeded_ledger):
        ledger, run_id = seeded_ledger
        _execute(
            ledger,
            f"UPDATE run_ledger SET entry_hash = 'TAMPERED' WHERE id = {_NTH_ENTRY}",
            (run_id, 2),
        )
        with pytest.raises(LedgerIntegrityError, match="(Chain broken|Tampered)"):
            ledger.verify_chain(run_id)

    def test_rewritten_failure_detected(self, tmp_path: Path):
        """Rewriting a failed activation into a pass must be caught."""
        ledger = RunLedger(tmp_path / "ledger.db")
        run_id = "dh-adversarial-002"
        ledger.append(LedgerEntry(
            run_id=run_id, stage_id="activate", state_transition="not_started->running",
        ))
        ledger.append(LedgerEntry(
            run_id=run_id, stage_id="activate", state_transition="running->failed",
            detail="ConfigurationPropagationError: ALLOWED_HOSTS (undelivered)",
        ))
        _execute(
            ledger,
            "UPDATE run_ledger SET state_transition = 'running->passed', detail = '' "
            f"WHERE id = {_NTH_ENTRY}",
            (run_id, 1),
        )
        with pytest.raises(LedgerIntegrityError, match="Tampered"):
            ledger.verify_chain(run_id)

    def test_tampered_artifact_reference_detected(self, seeded_ledger):
        ledger, run_id = seeded_ledger
        _execute(
            ledger,
            "UPDATE run_ledger SET artifact_refs_json = '[\"evil/api:latest\"]' "
            f"WHERE id = {_NTH_ENTRY}",
            (run_id, 3),
        )
        with pytest.raises(LedgerIntegrityError, match="Tampered"):
            ledger.verify_chain(run_id)

    def test_deleted_entry_breaks_chain(self, seeded_ledger):
        ledger, run_id = seeded_ledger
        _execute(ledger, f"DELETE FROM run_ledger WHERE id = {_NTH_ENTRY}", (run_id, 1))
        with pytest.raises(LedgerIntegrityError, match="Chain broken"):
            ledger.verify_chain(run_id)

    def test_broken_chain_link_detected(self, seeded_ledger):
        ledger, run_id = seeded_ledger
        _execute(
            ledger,
            f"UPDATE run_ledger SET previous_entry_hash = 'WRONG_LINK' WHERE id = {_NTH_ENTRY}",
            (run_id, 2),
        )
        with pytest.raises(LedgerIntegrityError, match="Chain broken"):
            ledger.verify_chain(run_id)

    def test_tampering_is_confined_to_its_run(self, seeded_ledger):
        ledger, run_id = seeded_ledger
        ledger.append(LedgerEntry(
            run_id="dh-untouched", stage_id="provision",
            state_transition="not_started->running",
        ))
        _execute(
            ledger,
            f"UPDATE run_ledger SET detail = 'edited' WHERE id = {_NTH_ENTRY}",
            (run_id, 0),
        )
        assert ledger.verify_chain("dh-untouched") is True
        with pytest.raises(LedgerIntegrityError):
            ledger.verify_chain(run_id)

    def test_monitor_reports_invalid_chain(self, seeded_ledger):
        """The monitor shows a broken chain instead of crashing."""
        ledger, run_id = seeded_ledger
        _execute(
            ledger,
            f"UPDATE run_ledger SET detail = 'edited' WHERE id = {_NTH_ENTRY}",
            (run_id, 0),
        )
        snapshot = MonitorProjection(ledger).snapshot(run_id)
        assert snapshot.chain_valid is False
