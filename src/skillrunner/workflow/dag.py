"""Phase dependency graph and batch layering.

Phases are kept in a flat, declaration-ordered tuple and reference each
other by id. Batch indices are derived on construction and never stored
on the phases themselves.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from skillrunner.errors import CycleDetectedError, DependencyNotFoundError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from skillrunner.skills.models import Phase, Skill


class PhaseGraph:
    """Validated phase DAG with Kahn-style batch layering.

    A phase's batch index is 0 when it has no dependencies and otherwise
    1 + the largest batch index among its dependencies. Phases inside a
    batch keep declaration order and never depend on each other.

    Attributes:
        phases: Phases in declaration order.
        batches: Phase ids per batch, in increasing batch order.
    """

    def __init__(self, phases: Iterable[Phase]) -> None:
        """Build and validate the graph.

        Raises:
            DependencyNotFoundError: If a phase depends on an unknown id.
            CycleDetectedError: If the dependency relation has a cycle.
        """
        self.phases: tuple[Phase, ...] = tuple(phases)
        self._by_id: dict[str, Phase] = {p.id: p for p in self.phases}
        for phase in self.phases:
            for dep in phase.depends_on:
                if dep not in self._by_id:
                    raise DependencyNotFoundError(phase.id, dep)
        self.batches: tuple[tuple[str, ...], ...] = self._layer()
        self._batch_of: dict[str, int] = {
            phase_id: index for index, batch in enumerate(self.batches) for phase_id in batch
        }

    @classmethod
    def from_skill(cls, skill: Skill) -> PhaseGraph:
        """Build the graph for a skill's phases."""
        return cls(skill.phases)

    def _layer(self) -> tuple[tuple[str, ...], ...]:
        assigned: set[str] = set()
        remaining = list(self.phases)
        batches: list[tuple[str, ...]] = []
        while remaining:
            ready = [p for p in remaining if all(dep in assigned for dep in p.depends_on)]
            if not ready:
                raise CycleDetectedError([p.id for p in remaining])
            batches.append(tuple(p.id for p in ready))
            assigned.update(p.id for p in ready)
            remaining = [p for p in remaining if p.id not in assigned]
        return tuple(batches)

    @property
    def batch_count(self) -> int:
        """Number of batches."""
        return len(self.batches)

    def phase(self, phase_id: str) -> Phase:
        """Return a phase by id."""
        return self._by_id[phase_id]

    def batch_index(self, phase_id: str) -> int:
        """Return the batch a phase executes in."""
        return self._batch_of[phase_id]

    def batch_phases(self, index: int) -> list[Phase]:
        """Phases of one batch, in declaration order."""
        return [self._by_id[phase_id] for phase_id in self.batches[index]]

    def declaration_index(self, phase_id: str) -> int:
        """Position of a phase in the skill's declaration order."""
        return next(i for i, p in enumerate(self.phases) if p.id == phase_id)

    def descendants(self, phase_id: str) -> set[str]:
        """Ids of every phase that transitively depends on ``phase_id``."""
        found: set[str] = set()
        frontier = [phase_id]
        while frontier:
            current = frontier.pop()
            for phase in self.phases:
                if current in phase.depends_on and phase.id not in found:
                    found.add(phase.id)
                    frontier.append(phase.id)
        return found
