"""MonitorProjection — pure read-only view over the RunLedger.

The monitor is a projection of the run ledger. It does not compute
truth, it displays it: every call re-reads the ledger and nothing is
cached between calls.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from deckhand.core.run_ledger import LedgerIntegrityError, RunLedger
from deckhand.models.ledger import LedgerEntry
from deckhand.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    StageDefinition,
    StageState,
)


class StageStatus(BaseModel):
    """Point-in-time status of a single stage, derived from ledger entries."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    state: StageState = StageState.NOT_STARTED
    entered_at: datetime | None = None
    detail: str = ""
    artifact_refs: list[str] = []


class MonitorSnapshot(BaseModel):
    """A frozen, point-in-time snapshot of one pipeline run.

    Computed fresh on every ``snapshot()`` call and never persisted.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    revision: str = ""
    stages: list[StageStatus] = []
    artifact_count: int = 0
    chain_valid: bool = True
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.stages if s.state == StageState.PASSED)

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def failed_stages(self) -> list[StageStatus]:
        return [s for s in self.stages if s.state == StageState.FAILED]

    @property
    def blocked_stages(self) -> list[StageStatus]:
        return [s for s in self.stages if s.state == StageState.BLOCKED]


class MonitorProjection:
    """Read-only projection over the RunLedger.

    Parameters
    ----------
    ledger:
        The RunLedger to project from.
    stage_definitions:
        Stage definitions for display names and ordering.
    """

    def __init__(
        self,
        ledger: RunLedger,
        stage_definitions: list[StageDefinition] | None = None,
    ) -> None:
        self._ledger = ledger
        definitions = sorted(
            stage_definitions or DEFAULT_STAGE_DEFINITIONS, key=lambda sd: sd.ordinal
        )
        self._stage_defs = {sd.stage_id: sd for sd in definitions}

    def snapshot(self, run_id: str) -> MonitorSnapshot:
        """Replay the run's ledger entries into a MonitorSnapshot."""
        entries = self._ledger.get_run_entries(run_id)
        replayed = self._replay(entries)

        stages = [
            replayed.get(
                stage_id,
                StageStatus(stage_id=stage_id, display_name=sd.display_name),
            )
            for stage_id, sd in self._stage_defs.items()
        ]
        refs = {ref for entry in entries for ref in entry.artifact_references}
        revision = next((e.revision for e in reversed(entries) if e.revision), "")

        return MonitorSnapshot(
            run_id=run_id,
            revision=revision,
            stages=stages,
            artifact_count=len(refs),
            chain_valid=self._check_chain_valid(run_id),
            last_updated=entries[-1].timestamp_utc if entries else datetime.now(timezone.utc),
        )

    def recent(self, limit: int = 10) -> list[MonitorSnapshot]:
        """Snapshots of the most recent runs, newest first."""
        return [self.snapshot(run_id) for run_id in self._ledger.get_all_run_ids()[:limit]]

    def _replay(self, entries: list[LedgerEntry]) -> dict[str, StageStatus]:
        result: dict[str, StageStatus] = {}
        for entry in entries:
            _, sep, to_state = entry.state_transition.partition("->")
            if not sep or entry.stage_id not in self._stage_defs:
                continue
            previous = result.get(entry.stage_id)
            refs = list(previous.artifact_refs) if previous else []
            refs.extend(entry.artifact_references)
            result[entry.stage_id] = StageStatus(
                stage_id=entry.stage_id,
                display_name=self._stage_defs[entry.stage_id].display_name,
                state=StageState(to_state),
                entered_at=entry.timestamp_utc,
                detail=entry.detail,
                artifact_refs=refs,
            )
        return result

    def _check_chain_valid(self, run_id: str) -> bool:
        """Check hash chain integrity without raising."""
        try:
            return self._ledger.verify_chain(run_id)
        except LedgerIntegrityError:
            return False
