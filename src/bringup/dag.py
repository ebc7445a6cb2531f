# dag.py
from __future__ import annotations

import heapq
from collections import deque
from typing import Dict, Iterable, List, Optional, Set

from .errors import ConfigurationError
from .model import Classification, Step


class StepRegistry:
    """
    Ordered, dependency-linked set of steps.

    Requires:
      - step.id: str (unique)
      - step.needs: ids of steps that must run BEFORE this step, already registered
    """

    def __init__(self, steps: Iterable[Step] = ()):
        self._steps: Dict[str, Step] = {}
        self._index: Dict[str, int] = {}
        # Edge need -> step.id (need must run before step)
        self._adj: Dict[str, Set[str]] = {}
        for s in steps:
            self.register(s)

    def register(self, step: Step) -> Step:
        if step.id in self._steps:
            raise ConfigurationError(f"Duplicate step id: {step.id}", step=step.id)

        for need in step.needs:
            if need not in self._steps:
                raise ConfigurationError(
                    f"Step '{step.id}' needs unknown step '{need}'",
                    step=step.id,
                    details={"known": sorted(self._steps)},
                )

        self._index[step.id] = len(self._steps)
        self._steps[step.id] = step
        self._adj[step.id] = set()
        for need in step.needs:
            self._adj[need].add(step.id)
        return step

    def validate(self) -> None:
        """Check that every remediation points at a registered step."""
        for s in self._steps.values():
            for key, target in s.remediations.items():
                if target not in self._steps:
                    raise ConfigurationError(
                        f"Step '{s.id}' remediation for '{key}' targets unknown step '{target}'",
                        step=s.id,
                    )
                if target == s.id:
                    raise ConfigurationError(f"Step '{s.id}' cannot remediate itself", step=s.id)

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def __getitem__(self, step_id: str) -> Step:
        return self._steps[step_id]

    def get(self, step_id: str) -> Optional[Step]:
        return self._steps.get(step_id)

    def topological_order(self) -> List[Step]:
        """
        Deterministic linearization (Kahn). Among ready steps the one
        declared first wins.
        """
        indeg = {sid: len(s.needs) for sid, s in self._steps.items()}
        ready = [(self._index[sid], sid) for sid, d in indeg.items() if d == 0]
        heapq.heapify(ready)

        order: List[Step] = []
        while ready:
            _, sid = heapq.heappop(ready)
            order.append(self._steps[sid])
            for child in self._adj[sid]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    heapq.heappush(ready, (self._index[child], child))

        if len(order) != len(self._steps):
            stuck = sorted(sid for sid, d in indeg.items() if d > 0)
            raise ConfigurationError(f"DAG has a cycle. Stuck steps: {stuck}")
        return order

    def scheduled_steps(self) -> List[Step]:
        """Steps of the normal flow, in execution order."""
        return [s for s in self.topological_order() if not s.remediation_only and not s.cleanup]

    def cleanup_steps(self) -> List[Step]:
        return [s for s in self.topological_order() if s.cleanup]

    def dependents(self, step_id: str) -> Set[str]:
        """All steps that transitively need `step_id`."""
        seen: Set[str] = set()
        q = deque(self._adj.get(step_id, ()))
        while q:
            sid = q.popleft()
            if sid in seen:
                continue
            seen.add(sid)
            q.extend(self._adj[sid])
        return seen

    def remediation_for(self, step: Step, classification: Classification) -> Optional[str]:
        """Remediation key that applies to this failure: reason tag first, then kind."""
        for key in (classification.reason, classification.kind.value):
            if key and key in step.remediations:
                return key
        return None
