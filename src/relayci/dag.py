# dag.py
from __future__ import annotations

from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Set

from .errors import ConfigurationError
from .matrix import by_template
from .model import InstanceId, JobInstance, JobState


class DependencyGraph:
    """
    Instance-level DAG with per-node state.

    Nodes live in an arena (``self.nodes``) in stable scheduling order;
    edges are adjacency sets of arena indexes:
      needs[i]      -> indexes that must be terminal before i starts
      dependents[i] -> indexes waiting on i

    A template-level need on a matrix template fans out to every instance
    of that template: the dependent waits for all of them.
    """

    def __init__(self, instances: Iterable[JobInstance]):
        self.nodes: List[JobInstance] = sorted(instances, key=lambda inst: inst.sort_key)
        self.index: Dict[InstanceId, int] = {}
        for i, node in enumerate(self.nodes):
            if node.id in self.index:
                raise ConfigurationError(f"Duplicate job instance: {node.id}")
            self.index[node.id] = i

        self.needs: List[Set[int]] = [set() for _ in self.nodes]
        self.dependents: List[Set[int]] = [set() for _ in self.nodes]

        groups = by_template(self.nodes)
        for i, node in enumerate(self.nodes):
            for need in node.template.needs:
                if need not in groups:
                    raise ConfigurationError(
                        f"Job '{node.id.template}' needs missing job '{need}'. "
                        f"Known jobs: {sorted(groups)}"
                    )
                # Edge need -> node (every instance of need must finish first)
                for dep in groups[need]:
                    j = self.index[dep.id]
                    self.needs[i].add(j)
                    self.dependents[j].add(i)

        self._check_acyclic()

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def _check_acyclic(self) -> None:
        indeg = [len(n) for n in self.needs]
        q = deque(i for i, d in enumerate(indeg) if d == 0)
        processed = 0
        while q:
            i = q.popleft()
            processed += 1
            for child in self.dependents[i]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        if processed != len(self.nodes):
            stuck = sorted({self.nodes[i].id.template for i, d in enumerate(indeg) if d > 0})
            cycle = self._cycle_members(indeg) or stuck
            raise ConfigurationError(
                f"Dependency cycle between jobs: {' -> '.join(cycle)}",
                members=cycle,
            )

    def _cycle_members(self, indeg: List[int]) -> List[str]:
        """Walk needs edges among stuck nodes until a template repeats."""
        start = next((i for i, d in enumerate(indeg) if d > 0), None)
        if start is None:
            return []
        seen: Dict[int, int] = {}
        path: List[int] = []
        node = start
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = min(j for j in self.needs[node] if indeg[j] > 0)
        loop = path[seen[node]:]
        names: List[str] = []
        for i in loop:
            name = self.nodes[i].id.template
            if not names or names[-1] != name:
                names.append(name)
        return names

    def levels(self) -> List[List[InstanceId]]:
        """
        Topological "levels" (stages): each stage only needs earlier stages.
        """
        indeg = [len(n) for n in self.needs]
        current = [i for i, d in enumerate(indeg) if d == 0]
        out: List[List[InstanceId]] = []
        while current:
            out.append([self.nodes[i].id for i in current])
            nxt: List[int] = []
            for i in current:
                for child in self.dependents[i]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            current = sorted(nxt)
        return out

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def __getitem__(self, iid: InstanceId) -> JobInstance:
        return self.nodes[self.index[iid]]

    def dependencies_of(self, iid: InstanceId) -> List[JobInstance]:
        return [self.nodes[j] for j in sorted(self.needs[self.index[iid]])]

    def downstream_of(self, iid: InstanceId) -> List[JobInstance]:
        """Every instance transitively waiting on ``iid``."""
        seen: Set[int] = set()
        q = deque(self.dependents[self.index[iid]])
        while q:
            i = q.popleft()
            if i in seen:
                continue
            seen.add(i)
            q.extend(self.dependents[i])
        return [self.nodes[i] for i in sorted(seen)]

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def resolve_initial_states(self) -> None:
        """PENDING -> BLOCKED if the node has needs, else PENDING -> RUNNABLE."""
        for i, node in enumerate(self.nodes):
            if node.state is JobState.PENDING:
                node.transition(JobState.BLOCKED if self.needs[i] else JobState.RUNNABLE)

    def runnable_set(self, completed: Set[InstanceId]) -> Set[InstanceId]:
        """
        Instances whose needs are all in ``completed`` and that have not
        started (PENDING, BLOCKED or RUNNABLE).
        """
        out: Set[InstanceId] = set()
        for i, node in enumerate(self.nodes):
            if node.state not in (JobState.PENDING, JobState.BLOCKED, JobState.RUNNABLE):
                continue
            if all(self.nodes[j].id in completed for j in self.needs[i]):
                out.add(node.id)
        return out

    def ordered(self, ids: Iterable[InstanceId]) -> List[InstanceId]:
        """Stable scheduling order: template name, then matrix enumeration order."""
        return sorted(ids, key=lambda iid: self.index[iid])

    def unfinished(self) -> List[JobInstance]:
        return [n for n in self.nodes if not n.state.terminal]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [
                {
                    "template": n.id.template,
                    "matrix": [[k, v] for k, v in n.id.matrix],
                    "name": n.display_name,
                    "state": n.state.value,
                }
                for n in self.nodes
            ],
            "edges": [[j, i] for i in range(len(self.nodes)) for j in sorted(self.needs[i])],
        }


def build_graph(instances: Iterable[JobInstance], *, templates: Optional[Iterable[str]] = None) -> DependencyGraph:
    """
    Build and validate the graph. ``templates`` (all declared job names) lets
    duplicate template names be reported before anything else.
    """
    if templates is not None:
        names = list(templates)
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigurationError(f"Duplicate job names found: {dupes}")
    return DependencyGraph(instances)
