"""Run ledger entry model (append-only, hash-chained).

One entry per stage transition. The ledger is the record of every
pipeline run, including the ones that failed and left the previous
deployment serving.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only run ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    stage_id: str
    state_transition: str  # "from_state->to_state", e.g. "not_started->running"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    revision: str = ""
    input_hash: str = ""
    output_hash: str = ""
    detail: str = ""  # error message on failure
    artifact_references: list[str] = []  # image references
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
