"""Stage prerequisite DAG with cascade blocking/unblocking.

The graph enforces:
- No stage runs unless all prerequisites are PASSED.
- When a stage fails, all transitive dependents are BLOCKED, so a failed
  publish can never be followed by an activation in the same run.
- When a failed stage is re-run and passes, dependents whose
  prerequisites are now met revert to NOT_STARTED.
"""

from __future__ import annotations

from collections import deque

from deckhand.models.stages import StageDefinition, StageState


class PrerequisiteNotMetError(RuntimeError):
    """Raised when a stage cannot run because prerequisites are not met."""


class CyclicDependencyError(ValueError):
    """Raised when the prerequisite graph contains a cycle."""


class PrerequisiteGraph:
    """Directed acyclic graph of stage prerequisites."""

    def __init__(self, stage_definitions: list[StageDefinition]) -> None:
        self._stages: dict[str, StageDefinition] = {
            sd.stage_id: sd for sd in stage_definitions
        }
        self._prerequisites: dict[str, list[str]] = {
            sd.stage_id: [p for p in sd.prerequisites if p in self._stages]
            for sd in stage_definitions
        }
        # Reverse edges: stage_id -> stages that depend on it
        self._dependents: dict[str, list[str]] = {sid: [] for sid in self._stages}
        for sid, prereqs in self._prerequisites.items():
            for prereq in prereqs:
                self._dependents[prereq].append(sid)

        if len(self.stage_ids) != len(self._stages):
            raise CyclicDependencyError(
                f"Prerequisite graph has a cycle among {sorted(self._stages)}."
            )

    @property
    def stage_ids(self) -> list[str]:
        """Return all stage_ids in topological order (Kahn's algorithm)."""
        in_degree = {sid: len(prereqs) for sid, prereqs in self._prerequisites.items()}
        by_ordinal = lambda s: self._stages[s].ordinal  # noqa: E731
        queue = deque(sorted((s for s, d in in_degree.items() if d == 0), key=by_ordinal))
        result = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in sorted(self._dependents[node], key=by_ordinal):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)
        return result

    def get_prerequisites(self, stage_id: str) -> list[str]:
        return list(self._prerequisites.get(stage_id, []))

    def get_dependents(self, stage_id: str) -> list[str]:
        """Return all transitive dependent stage_ids (BFS)."""
        result = []
        queue = deque(self._dependents.get(stage_id, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents.get(node, []))
        return result

    def get_stage_definition(self, stage_id: str) -> StageDefinition:
        return self._stages[stage_id]

    # ------------------------------------------------------------------
    # Prerequisite checking
    # ------------------------------------------------------------------

    def are_prerequisites_met(
        self, stage_id: str, states: dict[str, StageState]
    ) -> bool:
        return all(
            states.get(prereq) == StageState.PASSED
            for prereq in self._prerequisites.get(stage_id, [])
        )

    def get_blocking_reasons(
        self, stage_id: str, states: dict[str, StageState]
    ) -> list[str]:
        """Return human-readable reasons why a stage cannot start."""
        reasons = []
        for prereq in self._prerequisites.get(stage_id, []):
            state = states.get(prereq, StageState.NOT_STARTED)
            if state != StageState.PASSED:
                name = self._stages[prereq].display_name
                reasons.append(f"{name} ({prereq}) is {state.value}")
        return reasons

    # ------------------------------------------------------------------
    # Cascade blocking / unblocking
    # ------------------------------------------------------------------

    def cascade_block(
        self, failed_stage_id: str, states: dict[str, StageState]
    ) -> list[str]:
        """Block all transitive dependents of a failed stage.

        Returns the stage_ids that were newly blocked.
        """
        blocked: list[str] = []
        for stage_id in self.get_dependents(failed_stage_id):
            if states.get(stage_id, StageState.NOT_STARTED) == StageState.NOT_STARTED:
                states[stage_id] = StageState.BLOCKED
                blocked.append(stage_id)
        return blocked

    def cascade_unblock(
        self, passed_stage_id: str, states: dict[str, StageState]
    ) -> list[str]:
        """Unblock direct dependents whose prerequisites are now all met."""
        unblocked: list[str] = []
        for dependent_id in self._dependents.get(passed_stage_id, []):
            if states.get(dependent_id) == StageState.BLOCKED:
                if self.are_prerequisites_met(dependent_id, states):
                    states[dependent_id] = StageState.NOT_STARTED
                    unblocked.append(dependent_id)
        return unblocked
