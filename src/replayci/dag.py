# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Union

from .errors import CycleError, DuplicateJobError, UnknownDependencyError
from .model import Job, Workflow

# DFS colors
_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


class DependencyGraph:
    """
    The `needs` graph of a workflow.

    Edges point from a dependency to its dependents (needs -> job), so a
    job can only start once every node with an edge into it is terminal.
    """

    def __init__(self, needs: Dict[str, Set[str]]):
        self._needs = needs
        self._dependents: Dict[str, Set[str]] = {n: set() for n in needs}
        for name, deps in needs.items():
            for d in deps:
                self._dependents[d].add(name)
        self._ancestors: Dict[str, Set[str]] = {}

    @property
    def jobs(self) -> List[str]:
        return sorted(self._needs)

    def needs_of(self, job: str) -> Set[str]:
        return set(self._needs[job])

    def dependents_of(self, job: str) -> Set[str]:
        return set(self._dependents[job])

    def ancestors(self, job: str) -> Set[str]:
        """Dependency closure: every job that must be terminal before `job` starts."""
        if job not in self._ancestors:
            seen: Set[str] = set()
            stack = list(self._needs[job])
            while stack:
                n = stack.pop()
                if n in seen:
                    continue
                seen.add(n)
                stack.extend(self._needs[n])
            self._ancestors[job] = seen
        return set(self._ancestors[job])

    def is_ancestor(self, maybe_ancestor: str, job: str) -> bool:
        return maybe_ancestor in self.ancestors(job)

    def levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Jobs in the same stage may run in parallel.
        """
        indeg = {n: len(d) for n, d in self._needs.items()}
        q = deque(sorted(n for n, d in indeg.items() if d == 0))
        levels: List[List[str]] = []

        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in sorted(self._dependents[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)

        return levels

    def order(self) -> List[str]:
        """Deterministic topological order: every job after all of its needs."""
        return [name for level in self.levels() for name in level]


def _find_cycle(needs: Dict[str, Set[str]]) -> List[str] | None:
    """
    Three-color depth-first traversal. Reaching an in-progress node closes
    a cycle; the returned path starts and ends on that node.
    """
    color = {n: _UNVISITED for n in needs}

    for root in sorted(needs):
        if color[root] != _UNVISITED:
            continue
        color[root] = _IN_PROGRESS
        path = [root]
        stack = [iter(sorted(needs[root]))]

        while stack:
            child = next(stack[-1], None)
            if child is None:
                color[path.pop()] = _DONE
                stack.pop()
                continue
            if color[child] == _IN_PROGRESS:
                return path[path.index(child):] + [child]
            if color[child] == _UNVISITED:
                color[child] = _IN_PROGRESS
                path.append(child)
                stack.append(iter(sorted(needs[child])))

    return None


def build_dag(source: Union[Workflow, Iterable[Job]]) -> DependencyGraph:
    """
    Build the dependency graph of a workflow.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must finish BEFORE this job)

    Raises DuplicateJobError, UnknownDependencyError or CycleError.
    """
    if isinstance(source, Workflow):
        jobs = list(source.jobs.values())
    else:
        jobs = list(source)

    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJobError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    needs: Dict[str, Set[str]] = {}
    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise UnknownDependencyError(job.name, dep, names)
        needs[job.name] = set(job.needs)

    cycle = _find_cycle(needs)
    if cycle:
        raise CycleError(cycle)

    return DependencyGraph(needs)
