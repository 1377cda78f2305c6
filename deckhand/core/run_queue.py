"""Explicit serialization of pipeline triggers.

Activation replaces the running topology in place, which is not safe
under concurrent execution. Triggers are therefore never run in
parallel: they wait in this queue and are drained one at a time under a
lock. Two policies decide what happens to triggers that arrive while a
run is in progress:

``queue``
    FIFO. Every trigger eventually runs, in arrival order.
``supersede``
    Only the newest pending trigger survives; older pending ones are
    dropped (and logged). The run already in progress is never cancelled.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from deckhand.models.deployment import Trigger

logger = logging.getLogger(__name__)


class TriggerPolicy(str, Enum):
    QUEUE = "queue"
    SUPERSEDE = "supersede"


class RunOutcome(BaseModel):
    """Result of draining one trigger."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    trigger: Trigger
    succeeded: bool
    result: Any = None
    error: str = ""


class RunQueue:
    """Serializes pipeline runs triggered by source-revision events.

    Parameters
    ----------
    policy:
        What to do with pending triggers when a newer one arrives.
    """

    def __init__(self, policy: TriggerPolicy | str = TriggerPolicy.QUEUE) -> None:
        self.policy = TriggerPolicy(policy)
        self._pending: deque[Trigger] = deque()
        self._pending_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._superseded: list[Trigger] = []

    def submit(self, trigger: Trigger | str) -> Trigger:
        """Enqueue a trigger (or a bare revision string)."""
        if isinstance(trigger, str):
            trigger = Trigger(revision=trigger)
        with self._pending_lock:
            if self.policy == TriggerPolicy.SUPERSEDE and self._pending:
                for dropped in self._pending:
                    logger.info(
                        "Trigger %s (revision %s) superseded by %s",
                        dropped.trigger_id,
                        dropped.revision,
                        trigger.revision,
                    )
                self._superseded.extend(self._pending)
                self._pending.clear()
            self._pending.append(trigger)
        return trigger

    @property
    def pending(self) -> list[Trigger]:
        with self._pending_lock:
            return list(self._pending)

    @property
    def superseded(self) -> list[Trigger]:
        with self._pending_lock:
            return list(self._superseded)

    def _next(self) -> Trigger | None:
        with self._pending_lock:
            return self._pending.popleft() if self._pending else None

    def drain(self, runner: Callable[[Trigger], Any]) -> list[RunOutcome]:
        """Run pending triggers one at a time until the queue is empty.

        A concurrent ``drain`` blocks until this one finishes. A failed run
        is recorded and the queue moves on to the next trigger; the
        failure itself was already fatal to that run.
        """
        outcomes: list[RunOutcome] = []
        with self._run_lock:
            while (trigger := self._next()) is not None:
                logger.info("Starting run for revision %s", trigger.revision)
                try:
                    result = runner(trigger)
                except Exception as exc:
                    logger.error("Run for revision %s failed: %s", trigger.revision, exc)
                    outcomes.append(
                        RunOutcome(trigger=trigger, succeeded=False, error=str(exc))
                    )
                else:
                    outcomes.append(
                        RunOutcome(trigger=trigger, succeeded=True, result=result)
                    )
        return outcomes
