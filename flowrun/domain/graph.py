"""Structural traversal of a snapshot's graph.

Edges are data: conditions are never evaluated here, every edge (enabled or
not) counts as structure when deciding what lies "before" a job.
"""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Dict, Iterable, List, Optional, Set

from flowrun.domain.graph_model import Edge, GraphDefinition


class WorkflowGraph:
    def __init__(self, definition: GraphDefinition):
        self.definition = definition
        self._children: Dict[str, List[str]] = defaultdict(list)
        for edge in definition.edges:
            self._children[edge.source].append(edge.target)

    @property
    def trigger_ids(self) -> List[str]:
        return [t.id for t in self.definition.triggers]

    @property
    def job_ids(self) -> List[str]:
        return [j.id for j in self.definition.jobs]

    def has_job(self, job_id: str) -> bool:
        return self.definition.job(job_id) is not None

    def edges_from(self, node_id: str) -> List[Edge]:
        return [e for e in self.definition.edges if e.source == node_id]

    def first_job_for(self, trigger_id: str) -> Optional[str]:
        edges = self.edges_from(trigger_id)
        return edges[0].target if edges else None

    def _walk(self, roots: Iterable[str], blocked: Set[str] = frozenset()) -> Set[str]:
        seen: Set[str] = set()
        queue = deque(r for r in roots if r not in blocked)
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            for child in self._children.get(node, []):
                if child not in blocked and child not in seen:
                    queue.append(child)
        return seen

    def descendants_of(self, job_id: str) -> Set[str]:
        """Every node reachable from ``job_id``, excluding itself unless cyclic."""
        return self._walk(self._children.get(job_id, []))

    def upstream_of(self, job_id: str) -> Set[str]:
        """Jobs that run strictly before ``job_id``.

        Reachable from a trigger without passing through ``job_id``, minus
        anything downstream of ``job_id``. Sibling branches that never touch
        ``job_id`` are upstream too: their results stay valid for a rerun.
        """
        reachable = self._walk(self.trigger_ids, blocked={job_id})
        downstream = self.descendants_of(job_id) | {job_id}
        return {n for n in reachable - downstream if self.has_job(n)}
